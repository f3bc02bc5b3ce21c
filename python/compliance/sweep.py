"""
Rescreening Sweep

Periodically re-screens every institution that holds a live on-chain
credential and suspends any that now match a sanctions list. Institutions
are processed one at a time; a failure for one is recorded in the summary
and never stops the rest.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from compliance.exceptions import ProviderError
from compliance.lifecycle import KybLifecycle, utcnow
from compliance.retry import call_with_retry
from config_manager import RetryConfig, ScreeningConfig
from database.connection import DatabaseSessionProvider
from database.models import KybStatus
from database.repositories import InstitutionRepository
from log_utils import describe_error
from providers.screening import ScreeningClient, has_sanction_hit, top_matches

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    screened: int = 0
    revoked: int = 0
    errors: List[str] = field(default_factory=list)
    skipped_unnamed: int = 0
    reconciled: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "screened": self.screened,
            "revoked": self.revoked,
            "skippedUnnamed": self.skipped_unnamed,
            "reconciled": self.reconciled,
        }
        if self.errors:
            result["errors"] = list(self.errors)
        return result


class RescreeningSweep:
    """One pass over all credentialed institutions."""

    def __init__(
        self,
        db: DatabaseSessionProvider,
        lifecycle: KybLifecycle,
        screening: ScreeningClient,
        config: Optional[ScreeningConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.db = db
        self.lifecycle = lifecycle
        self.screening = screening
        self.config = config or ScreeningConfig()
        self.retry_config = retry_config or RetryConfig()
        self._now = clock

    def run(self) -> SweepSummary:
        summary = SweepSummary()
        self._reconcile(summary)

        with self.db.session_scope() as session:
            candidates = [
                (inst.wallet_address, inst.legal_name, inst.jurisdiction)
                for inst in InstitutionRepository(session).list_rescreen_candidates()
            ]

        logger.info("Rescreening %d institutions", len(candidates))
        for wallet, legal_name, jurisdiction in candidates:
            summary.screened += 1
            if not legal_name:
                summary.skipped_unnamed += 1
                continue
            try:
                self._rescreen(wallet, legal_name, jurisdiction, summary)
            except Exception as e:
                logger.error("Rescreening failed: wallet=%s: %s", wallet, describe_error(e))
                summary.errors.append(f"{wallet}: {describe_error(e)}")

        logger.info(
            "Rescreening finished: screened=%d revoked=%d errors=%d skipped_unnamed=%d reconciled=%d",
            summary.screened, summary.revoked, len(summary.errors),
            summary.skipped_unnamed, summary.reconciled,
        )
        return summary

    def _reconcile(self, summary: SweepSummary) -> None:
        """Retry on-chain revokes left pending by earlier suspensions."""
        with self.db.session_scope() as session:
            wallets = [
                inst.wallet_address
                for inst in InstitutionRepository(session).list_pending_revocations()
            ]
        for wallet in wallets:
            try:
                self.lifecycle.complete_revocation(wallet)
                summary.reconciled += 1
            except Exception as e:
                logger.error("Pending revoke still failing: wallet=%s: %s", wallet, describe_error(e))
                summary.errors.append(f"{wallet}: revoke retry failed: {describe_error(e)}")

    def _stamp_screened(self, wallet: str) -> None:
        with self.db.session_scope() as session:
            institution = InstitutionRepository(session).get_by_wallet(wallet, for_update=True)
            if institution is not None:
                institution.last_screened_at = self._now()

    def _rescreen(
        self,
        wallet: str,
        legal_name: str,
        jurisdiction: Optional[str],
        summary: SweepSummary,
    ) -> None:
        try:
            result = call_with_retry(self.retry_config, self.screening.screen, legal_name, jurisdiction, log=logger)
        except ProviderError:
            self._stamp_screened(wallet)
            raise

        if not has_sanction_hit(result, self.config.hit_threshold):
            with self.db.session_scope() as session:
                institution = InstitutionRepository(session).get_by_wallet(wallet, for_update=True)
                if institution is None:
                    return
                # Suspended since selection: keep the hit that suspended it
                if institution.kyb_status != KybStatus.VERIFIED or not institution.on_chain_verified:
                    logger.info(
                        "Skipping stale clean result: wallet=%s status=%s",
                        wallet, institution.kyb_status.value,
                    )
                    return
                institution.last_screened_at = self._now()
                institution.sanction_hit = False
            return

        matches = [m.to_dict() for m in top_matches(result, self.config.top_matches)]
        if not self.lifecycle.apply_sanction_hit(wallet, result.search_id, matches):
            return
        summary.revoked += 1

        try:
            self.lifecycle.complete_revocation(wallet)
        except ProviderError as e:
            summary.errors.append(f"{wallet}: suspended, on-chain revoke pending: {describe_error(e)}")
