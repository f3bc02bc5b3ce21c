"""
KYB lifecycle transition table.

Only the transitions listed in ``TRANSITIONS`` are legal; every other
``(status, action)`` pair is rejected with ``InvalidTransitionError`` before
anything is written.
"""

from typing import Dict, Optional, Tuple

from database.models import KybAction, KybStatus, normalize_wallet

from compliance.exceptions import InvalidTransitionError, ValidationError

# (from_status, action) -> to_status
TRANSITIONS: Dict[Tuple[KybStatus, KybAction], KybStatus] = {
    (KybStatus.NOT_FOUND, KybAction.SUBMIT): KybStatus.PENDING,
    (KybStatus.PENDING, KybAction.APPROVE): KybStatus.VERIFIED,
    (KybStatus.PENDING, KybAction.DEMO_APPROVE): KybStatus.VERIFIED,
    (KybStatus.PENDING, KybAction.REJECT): KybStatus.REJECTED,
    (KybStatus.VERIFIED, KybAction.SANCTION_HIT): KybStatus.SUSPENDED,
    (KybStatus.VERIFIED, KybAction.MANUAL_SUSPEND): KybStatus.SUSPENDED,
    # Reserved: no operation exposes reinstatement yet
    (KybStatus.SUSPENDED, KybAction.REINSTATE): KybStatus.VERIFIED,
}


def required_status(action: KybAction) -> Optional[KybStatus]:
    """Status an action must start from, or None for non-transition actions."""
    for (from_status, candidate), _ in TRANSITIONS.items():
        if candidate == action:
            return from_status
    return None


def next_status(current: KybStatus, action: KybAction) -> KybStatus:
    """Resolve the status ``action`` leads to from ``current``.

    Raises:
        InvalidTransitionError: If the pair is not in the transition table
    """
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        allowed_from = required_status(action)
        raise InvalidTransitionError(
            action=action.value,
            from_status=current.value,
            allowed_from=allowed_from.value if allowed_from else None,
        ) from None


def is_legal(current: KybStatus, action: KybAction) -> bool:
    return (current, action) in TRANSITIONS


def canonical_wallet(address: Optional[str], field: str = "wallet") -> str:
    """Normalize a caller-supplied wallet address or raise ``ValidationError``.

    Every lookup and write must go through this so one logical institution is
    never split across two keys.
    """
    wallet = normalize_wallet(address)
    if wallet is None:
        raise ValidationError(
            "Invalid wallet address" if address else "Wallet address required",
            field=field,
            suggestion="Provide a 0x-prefixed address with 40 hexadecimal characters",
        )
    return wallet
