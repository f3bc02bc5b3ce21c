"""
Repository Pattern for KYB Compliance Database Operations

Repositories never commit: the caller owns the transaction
(one ``session_scope()`` per transition).
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.models import (
    Institution,
    KybAuditLog,
    KybAction,
    KybStatus,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class DuplicateInstitutionError(RepositoryError):
    """Raised when attempting to create a second row for the same wallet."""
    pass


# ============================================
# INSTITUTION REPOSITORY
# ============================================

class InstitutionRepository:
    """Repository for institution compliance records."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, wallet_address: str, **fields: Any) -> Institution:
        """
        Create a new institution.

        Args:
            wallet_address: Canonical (already normalized) wallet address
            **fields: Additional column values

        Returns:
            Created Institution instance

        Raises:
            DuplicateInstitutionError: If the wallet already has a record
        """
        institution = Institution(wallet_address=wallet_address, **fields)
        try:
            with self.session.begin_nested():
                self.session.add(institution)
                self.session.flush()
        except IntegrityError as e:
            raise DuplicateInstitutionError(f"Institution already exists: {wallet_address}") from e

        logger.debug(f"Created institution: {wallet_address}")
        return institution

    def get_by_wallet(self, wallet_address: str, for_update: bool = False) -> Optional[Institution]:
        """
        Get institution by canonical wallet address.

        Args:
            wallet_address: Canonical wallet address
            for_update: Lock the row until the transaction ends (SELECT ... FOR UPDATE)

        Returns:
            Institution or None
        """
        query = select(Institution).where(Institution.wallet_address == wallet_address)
        if for_update:
            query = query.with_for_update()
            # Re-read current column values even if the row is in the identity map
            query = query.execution_options(populate_existing=True)
        return self.session.execute(query).scalar_one_or_none()

    def list_rescreen_candidates(self) -> List[Institution]:
        """Institutions holding a live credential: verified both off- and on-chain."""
        query = select(Institution).where(
            and_(
                Institution.on_chain_verified == True,  # noqa: E712
                Institution.kyb_status == KybStatus.VERIFIED,
            )
        ).order_by(Institution.id)
        return list(self.session.execute(query).scalars().all())

    def list_pending_revocations(self) -> List[Institution]:
        """Suspended institutions whose on-chain revoke has not been confirmed."""
        query = select(Institution).where(
            Institution.revoke_pending == True  # noqa: E712
        ).order_by(Institution.id)
        return list(self.session.execute(query).scalars().all())


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """Repository for KYB audit log operations (append and read only)."""

    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        wallet_address: str,
        action: KybAction,
        from_status: Optional[KybStatus] = None,
        to_status: Optional[KybStatus] = None,
        meta: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
    ) -> KybAuditLog:
        """
        Create an audit log entry.

        Args:
            wallet_address: Canonical wallet address
            action: Audited action
            from_status: Status before the action
            to_status: Status after the action
            meta: Structured context (tx hash, provider search id, ...)
            note: Free-text reason for manual actions

        Returns:
            Created KybAuditLog
        """
        entry = KybAuditLog(
            wallet_address=wallet_address,
            action=action.value if hasattr(action, 'value') else str(action),
            from_status=from_status.value if hasattr(from_status, 'value') else from_status,
            to_status=to_status.value if hasattr(to_status, 'value') else to_status,
            meta=meta,
            note=note,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_for_wallet(self, wallet_address: str) -> List[KybAuditLog]:
        """All audit rows for a wallet in insertion order."""
        query = select(KybAuditLog).where(
            KybAuditLog.wallet_address == wallet_address
        ).order_by(KybAuditLog.id)
        return list(self.session.execute(query).scalars().all())

