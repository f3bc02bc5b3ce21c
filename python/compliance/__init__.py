"""
KYB Compliance Core

- states: transition table and wallet normalisation
- lifecycle: submit / approve / reject / suspend / grant buyer role
- sweep: periodic sanctions rescreening
- synchronizer: the only writer of on-chain credentials
- audit: append-only audit trail
- retry: bounded tenacity retry for provider calls

Only the error taxonomy is re-exported here; import the other modules
directly.
"""

from compliance.exceptions import (
    ComplianceError,
    ValidationError,
    NotFoundError,
    UnauthorizedError,
    ForbiddenError,
    PreconditionError,
    InvalidTransitionError,
    ProviderError,
    ProviderTransientError,
    ProviderTerminalError,
)

__all__ = [
    'ComplianceError',
    'ValidationError',
    'NotFoundError',
    'UnauthorizedError',
    'ForbiddenError',
    'PreconditionError',
    'InvalidTransitionError',
    'ProviderError',
    'ProviderTransientError',
    'ProviderTerminalError',
]
