"""
Bounded retry for calls to external providers.

Only ``ProviderTransientError`` is retried; terminal failures and anything
else propagate on the first attempt. After the last attempt the original
exception is re-raised, never a tenacity ``RetryError``.
"""

import logging
from typing import Any, Callable, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from compliance.exceptions import ProviderTransientError
from config_manager import RetryConfig

logger = logging.getLogger(__name__)


def provider_retrying(config: Optional[RetryConfig] = None, log: Optional[logging.Logger] = None) -> Retrying:
    cfg = config or RetryConfig()
    return Retrying(
        stop=stop_after_attempt(cfg.max_attempts),
        wait=wait_exponential(multiplier=1, min=cfg.min_wait, max=cfg.max_wait),
        retry=retry_if_exception_type(ProviderTransientError),
        before_sleep=before_sleep_log(log or logger, logging.WARNING),
        reraise=True,
    )


def call_with_retry(
    config: Optional[RetryConfig],
    fn: Callable[..., Any],
    *args: Any,
    log: Optional[logging.Logger] = None,
) -> Any:
    return provider_retrying(config, log)(fn, *args)
