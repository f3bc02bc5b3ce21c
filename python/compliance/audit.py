"""
Append-only KYB audit trail.

Audit rows are written inside the caller's transaction, in a SAVEPOINT. A
failed audit write rolls back only the savepoint: the transition it
describes still commits and the failure is logged at ERROR.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database.models import KybAction, KybAuditLog, KybStatus
from database.repositories import AuditRepository

logger = logging.getLogger(__name__)


def append(
    session: Session,
    wallet: str,
    action: KybAction,
    from_status: Optional[KybStatus] = None,
    to_status: Optional[KybStatus] = None,
    meta: Optional[Dict[str, Any]] = None,
    note: Optional[str] = None,
) -> Optional[KybAuditLog]:
    """
    Record one audited action.

    Returns:
        The new row, or None if the write failed
    """
    # Pending state changes must fail on their own, not inside the savepoint
    session.flush()
    try:
        with session.begin_nested():
            entry = AuditRepository(session).log(
                wallet_address=wallet,
                action=action,
                from_status=from_status,
                to_status=to_status,
                meta=meta,
                note=note,
            )
    except SQLAlchemyError as e:
        logger.error(
            "Audit write failed: wallet=%s action=%s %s->%s: %s",
            wallet,
            action.value,
            getattr(from_status, "value", from_status),
            getattr(to_status, "value", to_status),
            e,
        )
        return None
    return entry


def history(session: Session, wallet: str) -> List[KybAuditLog]:
    """Audit rows for ``wallet`` in the order they were written."""
    return AuditRepository(session).list_for_wallet(wallet)
