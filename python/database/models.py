"""
SQLAlchemy ORM Models for the KYB Compliance Gate

Tables:
1. institutions - One row per wallet address; current compliance state
2. kyb_audit_logs - Append-only record of every state transition attempt

Design points:
- Wallet address is the natural key, always stored lowercase-normalized
- JSON columns use JSONB on PostgreSQL and plain JSON elsewhere (SQLite in tests)
- Institutions are never deleted; audit rows are never updated or deleted
- Timestamps for all records (created_at, updated_at)
"""

import re
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean, DateTime, Enum, Index, Integer, JSON, String, Text, CheckConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()

# JSONB on PostgreSQL, generic JSON on other dialects
JsonType = JSON().with_variant(JSONB(), "postgresql")

WALLET_PATTERN = re.compile(r"^0[xX][0-9a-fA-F]{40}$")


# ============================================
# ENUMS
# ============================================

class KybStatus(str, PyEnum):
    """Compliance status of an institution"""
    NOT_FOUND = "not_found"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    VERIFIED = "verified"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class KybAction(str, PyEnum):
    """Closed set of audited actions"""
    SUBMIT = "submit"
    APPROVE = "approve"
    DEMO_APPROVE = "demo_approve"
    REJECT = "reject"
    SANCTION_HIT = "sanction_hit"
    MANUAL_SUSPEND = "manual_suspend"
    REINSTATE = "reinstate"
    GRANT_BUYER_ROLE = "grant_buyer_role"
    ONCHAIN_VERIFY = "onchain_verify"
    ONCHAIN_REVOKE = "onchain_revoke"


def _enum_values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================
# INSTITUTION RECORD STORE
# ============================================

class Institution(Base, TimestampMixin):
    """
    Compliance record for one institution, keyed by wallet address.

    Created on first KYB submission and only ever transitioned between
    statuses afterwards. ``on_chain_verified`` may only be true while
    ``kyb_status`` is ``verified``.
    """
    __tablename__ = "institutions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Canonical lowercase 0x-prefixed hex; immutable after creation
    wallet_address: Mapped[str] = mapped_column(
        String(42),
        nullable=False,
        unique=True,
        index=True
    )

    # Descriptive attributes supplied at submission
    legal_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    jurisdiction: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    contact_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)

    kyb_status: Mapped[KybStatus] = mapped_column(
        Enum(
            KybStatus,
            name="kyb_status",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=KybStatus.PENDING,
        index=True
    )

    is_accredited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # On-chain credential state
    on_chain_verified: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True
    )
    on_chain_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    # Set between the local suspension commit and a confirmed on-chain revoke
    revoke_pending: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True
    )

    # Most recent screening
    sanction_hit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sanction_hit_details: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(
        JsonType,
        nullable=True
    )
    last_screened_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    # Verification provider applicant id (real provider mode only)
    provider_applicant_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        Index('ix_institution_status_onchain', 'kyb_status', 'on_chain_verified'),
        CheckConstraint(
            "on_chain_verified = false OR kyb_status = 'verified'",
            name='ck_onchain_requires_verified'
        ),
    )

    def to_status_dict(self) -> Dict[str, Any]:
        """Compliance fields exposed by the status endpoint."""
        return {
            "walletAddress": self.wallet_address,
            "kybStatus": self.kyb_status.value,
            "isAccredited": self.is_accredited,
            "jurisdiction": self.jurisdiction,
            "legalName": self.legal_name,
            "onChainVerified": self.on_chain_verified,
            "lastScreenedAt": self.last_screened_at.isoformat() if self.last_screened_at else None,
            "sanctionHit": self.sanction_hit,
        }

    def __repr__(self) -> str:
        return (
            f"<Institution(wallet={self.wallet_address}, status={self.kyb_status}, "
            f"on_chain={self.on_chain_verified})>"
        )


# ============================================
# AUDIT LOG
# ============================================

class KybAuditLog(Base):
    """
    Append-only KYB audit trail.

    One row per transition attempt. The sole durable evidence of why a
    status changed. Immutable - no updates or deletes allowed.
    """
    __tablename__ = "kyb_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)

    # One of KybAction values
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Structured context: transaction hash, provider search id, saga steps
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType, nullable=True)

    # Human-readable note (reason for manual actions)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # No updated_at - audit logs are immutable
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True
    )

    __table_args__ = (
        Index('ix_kyb_audit_wallet_created', 'wallet_address', 'created_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "walletAddress": self.wallet_address,
            "action": self.action,
            "fromStatus": self.from_status,
            "toStatus": self.to_status,
            "meta": self.meta,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<KybAuditLog(wallet={self.wallet_address}, action='{self.action}', "
            f"{self.from_status}->{self.to_status})>"
        )


# ============================================
# UTILITY FUNCTIONS
# ============================================

def normalize_wallet(address: Optional[str]) -> Optional[str]:
    """
    Normalize a wallet address to its canonical lowercase form.

    - Strips surrounding whitespace
    - Requires the 0x prefix (either case) and exactly 40 hex digits
    - Case-folds to lowercase

    Args:
        address: Wallet address as supplied by a caller

    Returns:
        Canonical address, or None if the input is not a 20-byte hex address
    """
    if not address or not isinstance(address, str):
        return None
    candidate = address.strip()
    if not WALLET_PATTERN.fullmatch(candidate):
        return None
    return candidate.lower()
