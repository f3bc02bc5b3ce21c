"""
Shared logging helpers for the KYB compliance service

SECURITY: Wallet addresses, legal names and provider messages are
attacker-controlled and must be sanitized before they reach a log line.
"""

import re
from typing import Any


def sanitize_for_logging(text: Any) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text (non-strings are converted with str())

    Returns:
        Sanitized text safe for logging
    """
    if text is None or text == '':
        return ''
    # Remove newlines, carriage returns, and other control characters
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    # Collapse multiple spaces
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    # Truncate to reasonable length
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def describe_error(exc: BaseException) -> str:
    """One-line, log-safe description of an exception: ``Type: message``."""
    message = sanitize_for_logging(str(exc))
    if message:
        return f"{type(exc).__name__}: {message}"
    return type(exc).__name__
