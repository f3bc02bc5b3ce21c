"""
Database Package for the KYB Compliance Gate

This package provides:
- SQLAlchemy ORM models for institutions and the KYB audit log
- A session provider with one transaction per ``session_scope()``
- Repositories for institutions and audit rows
- Alembic integration for migrations
"""

from database.models import (
    Base,
    Institution,
    KybAuditLog,
    KybStatus,
    KybAction,
    normalize_wallet,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    # Initialization
    init_db,
    close_db,
    # Testing support
    create_sqlite_engine,
    create_test_provider,
)
from database.repositories import (
    InstitutionRepository,
    AuditRepository,
    RepositoryError,
    DuplicateInstitutionError,
)

__all__ = [
    # Base
    'Base',
    # Models
    'Institution',
    'KybAuditLog',
    'KybStatus',
    'KybAction',
    'normalize_wallet',
    # Database provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    # Initialization
    'init_db',
    'close_db',
    # Testing support
    'create_sqlite_engine',
    'create_test_provider',
    # Repositories
    'InstitutionRepository',
    'AuditRepository',
    'RepositoryError',
    'DuplicateInstitutionError',
]
