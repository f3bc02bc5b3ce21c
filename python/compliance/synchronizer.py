"""
Credential Synchronizer

The only component that writes to the on-chain credential registry.

- Every call holds the wallet's lock for its whole duration, so a verify
  and a revoke for the same wallet are never in flight together
- Transient provider failures are retried with bounded exponential backoff
  (tenacity); terminal failures surface immediately
- ``verify`` runs an ordered saga of idempotent steps and reports the outcome
  of each one, so a half-written credential is visible and resumable
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from compliance.exceptions import PreconditionError, ProviderError
from compliance.locks import WalletLocks
from compliance.retry import call_with_retry
from config_manager import RetryConfig
from database.models import KybStatus
from log_utils import describe_error
from providers.registry import CredentialRegistry

logger = logging.getLogger(__name__)

STEP_SUCCEEDED = "succeeded"
STEP_FAILED = "failed"
STEP_SKIPPED = "skipped"

VERIFY_STEP = "verify_institution"
GRANT_STEP = "grant_buyer_role"


@dataclass
class StepResult:
    """Outcome of one saga step"""
    name: str
    status: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "status": self.status, "txHash": self.tx_hash, "error": self.error}


@dataclass
class SagaResult:
    """Ordered step outcomes of an on-chain verify"""
    wallet: str
    steps: List[StepResult] = field(default_factory=list)

    def step(self, name: str) -> Optional[StepResult]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    @property
    def tx_hash(self) -> Optional[str]:
        verify = self.step(VERIFY_STEP)
        return verify.tx_hash if verify else None

    @property
    def complete(self) -> bool:
        return all(step.status != STEP_FAILED for step in self.steps)

    @property
    def pending_steps(self) -> List[str]:
        return [step.name for step in self.steps if step.status == STEP_FAILED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "complete": self.complete,
            "pendingSteps": self.pending_steps,
            "steps": [step.to_dict() for step in self.steps],
        }


class CredentialSynchronizer:
    """Serialised, retried access to the on-chain credential registry."""

    def __init__(
        self,
        registry: CredentialRegistry,
        locks: Optional[WalletLocks] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.registry = registry
        self.retry_config = retry_config or RetryConfig()
        self.locks = locks or WalletLocks(acquire_timeout=self.retry_config.lock_timeout)

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return call_with_retry(self.retry_config, fn, *args, log=logger)

    def _already_verified(self, wallet: str) -> bool:
        """Best-effort read; an unreadable registry means 'write anyway'."""
        try:
            return self.registry.is_verified(wallet)
        except ProviderError as e:
            logger.debug("Registry read failed for %s, proceeding with write: %s", wallet, e)
            return False

    def verify(self, wallet: str, accredited: bool, jurisdiction: Optional[str]) -> SagaResult:
        """
        Write the on-chain credential: verify the institution, then grant the
        buyer role.

        Raises:
            ProviderError: If the verify step fails after retries
        """
        saga = SagaResult(wallet=wallet)
        with self.locks.hold(wallet):
            if self._already_verified(wallet):
                saga.steps.append(StepResult(VERIFY_STEP, STEP_SKIPPED))
                logger.info("Credential already present on-chain: wallet=%s", wallet)
            else:
                try:
                    tx_hash = self._call(
                        self.registry.verify_institution, wallet, accredited, jurisdiction or ""
                    )
                except ProviderError as e:
                    logger.error("On-chain verify failed: wallet=%s: %s", wallet, describe_error(e))
                    raise
                saga.steps.append(StepResult(VERIFY_STEP, STEP_SUCCEEDED, tx_hash=tx_hash))

            try:
                grant_tx = self._call(self.registry.grant_buyer_role, wallet)
                saga.steps.append(StepResult(GRANT_STEP, STEP_SUCCEEDED, tx_hash=grant_tx))
            except ProviderError as e:
                saga.steps.append(StepResult(GRANT_STEP, STEP_FAILED, error=describe_error(e)))
                logger.warning(
                    "partial on-chain credential: wallet=%s verified but %s failed: %s",
                    wallet, GRANT_STEP, describe_error(e),
                )

        logger.info("On-chain verify finished: wallet=%s complete=%s", wallet, saga.complete)
        return saga

    def revoke(self, wallet: str) -> Optional[str]:
        """
        Clear the on-chain credential.

        Returns:
            Transaction hash, or None if the registry already shows no credential

        Raises:
            ProviderError: If the revoke fails after retries
        """
        with self.locks.hold(wallet):
            try:
                if not self.registry.is_verified(wallet):
                    logger.info("Credential already absent on-chain: wallet=%s", wallet)
                    return None
            except ProviderError as e:
                logger.debug("Registry read failed for %s, proceeding with revoke: %s", wallet, e)
            try:
                tx_hash = self._call(self.registry.revoke_institution, wallet)
            except ProviderError as e:
                logger.error("On-chain revoke failed: wallet=%s: %s", wallet, describe_error(e))
                raise
        logger.info("On-chain revoke confirmed: wallet=%s tx=%s", wallet, tx_hash)
        return tx_hash

    def grant_buyer_role(self, wallet: str, kyb_status: KybStatus) -> str:
        """
        Grant the buyer role to an already verified institution.

        Raises:
            PreconditionError: Unless ``kyb_status`` is verified
            ProviderError: If the grant fails after retries
        """
        if kyb_status != KybStatus.VERIFIED:
            raise PreconditionError(
                f"KYB status is '{kyb_status.value}', must be 'verified' first",
                actual_status=kyb_status.value,
                required_status=KybStatus.VERIFIED.value,
            )
        with self.locks.hold(wallet):
            try:
                return self._call(self.registry.grant_buyer_role, wallet)
            except ProviderError as e:
                logger.error("On-chain grantBuyerRole failed: wallet=%s: %s", wallet, describe_error(e))
                raise
