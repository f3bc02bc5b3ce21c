"""
Error taxonomy for the KYB compliance core.

Every error carries a stable ``code`` for programmatic handling and the HTTP
status the API layer maps it to. Provider errors are split by whether a retry
can help: transient errors (network, timeout) are retried with bounded
backoff, terminal errors (on-chain revert, provider rejection) are not.
"""

from typing import Optional


class ComplianceError(Exception):
    """Base class for all compliance errors

    Attributes:
        code: Error code for programmatic handling
        status_code: HTTP status the API layer responds with
        field: The input field that caused the error, if any
        suggestion: How the caller can fix the error, if known
    """
    code = "COMPLIANCE_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        suggestion: Optional[str] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.suggestion = suggestion
        if code:
            self.code = code


class ValidationError(ComplianceError):
    """Malformed wallet address or missing required field. Never retried."""
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(ComplianceError):
    """Unknown wallet for a status-dependent operation."""
    code = "NOT_FOUND"
    status_code = 404


class UnauthorizedError(ComplianceError):
    """Missing or incorrect shared secret."""
    code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenError(UnauthorizedError):
    """Operation disabled in the current provider mode."""
    code = "FORBIDDEN"
    status_code = 403


class PreconditionError(ComplianceError):
    """The institution is not in the state the operation requires.

    The message always names the actual status next to the required one.
    """
    code = "PRECONDITION_FAILED"
    status_code = 400

    def __init__(self, message: str, actual_status: Optional[str] = None,
                 required_status: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.actual_status = actual_status
        self.required_status = required_status


class InvalidTransitionError(PreconditionError):
    """A lifecycle action is not legal from the current status."""
    code = "INVALID_TRANSITION"

    def __init__(self, action: str, from_status: str, allowed_from: Optional[str] = None):
        if allowed_from:
            message = (
                f"Cannot {action} an institution with KYB status '{from_status}'; "
                f"requires '{allowed_from}'"
            )
        else:
            message = f"Action '{action}' is not a legal transition from '{from_status}'"
        super().__init__(message, actual_status=from_status, required_status=allowed_from)
        self.action = action


class ProviderError(ComplianceError):
    """Base class for failures of an external collaborator."""
    code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(self, message: str, provider: str = "unknown", **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider


class ProviderTransientError(ProviderError):
    """Network-class failure or timeout; eligible for bounded retry."""
    code = "PROVIDER_UNAVAILABLE"
    status_code = 503


class ProviderTerminalError(ProviderError):
    """On-chain revert or provider rejection; surfaced without retry."""
    code = "PROVIDER_REJECTED"
    status_code = 502
