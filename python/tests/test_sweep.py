"""
Tests for the sanctions rescreening sweep.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from compliance.exceptions import ProviderTerminalError, ProviderTransientError
from compliance.sweep import RescreeningSweep, SweepSummary
from config_manager import ScreeningConfig
from database.models import KybStatus

from conftest import (
    WALLET_A,
    WALLET_B,
    WALLET_C,
    assert_invariant,
    audit_actions,
    load_institution,
    terminal,
)


class TestSweepSummary:

    def test_errors_omitted_when_empty(self):
        data = SweepSummary(screened=2).to_dict()
        assert "errors" not in data
        assert data == {"screened": 2, "revoked": 0, "skippedUnnamed": 0, "reconciled": 0}

    def test_errors_present(self):
        assert SweepSummary(errors=["x"]).to_dict()["errors"] == ["x"]


class TestThreshold:
    """A hit is a match scoring at or above the configured threshold"""

    def test_score_at_threshold_revokes(self, sweep, screening, make_verified, db_provider):
        make_verified(WALLET_A, legal_name="Acme")
        screening.scores["Acme"] = [0.85]

        summary = sweep.run()

        assert summary.revoked == 1
        assert load_institution(db_provider, WALLET_A).kyb_status == KybStatus.SUSPENDED

    def test_score_just_below_threshold_is_clear(self, sweep, screening, make_verified, db_provider):
        make_verified(WALLET_A, legal_name="Acme")
        screening.scores["Acme"] = [0.849999]

        summary = sweep.run()

        assert summary.revoked == 0
        institution = load_institution(db_provider, WALLET_A)
        assert institution.kyb_status == KybStatus.VERIFIED
        assert not institution.sanction_hit

    def test_custom_threshold(self, db_provider, lifecycle, screening, make_verified):
        make_verified(WALLET_A, legal_name="Acme")
        screening.scores["Acme"] = [0.7]
        sweep = RescreeningSweep(db_provider, lifecycle, screening, ScreeningConfig(hit_threshold=0.6))

        assert sweep.run().revoked == 1


class TestSweep:

    def test_one_hit_among_clean(self, sweep, screening, registry, make_verified, db_provider):
        make_verified(WALLET_A, legal_name="Acme")
        make_verified(WALLET_B, legal_name="Bad Actor Holdings")
        make_verified(WALLET_C, legal_name="Clean Co")
        screening.scores["Bad Actor Holdings"] = [0.3, 0.97, 0.91, 0.88]

        summary = sweep.run()

        assert summary.to_dict() == {
            "screened": 3, "revoked": 1, "skippedUnnamed": 0, "reconciled": 0,
        }
        assert registry.count("revoke") == 1
        assert WALLET_B not in registry.verified
        assert {WALLET_A, WALLET_C} <= registry.verified

        institution = load_institution(db_provider, WALLET_B)
        assert institution.kyb_status == KybStatus.SUSPENDED
        assert not institution.on_chain_verified
        assert not institution.revoke_pending
        assert [m["score"] for m in institution.sanction_hit_details] == [0.97, 0.91, 0.88]
        assert audit_actions(db_provider, WALLET_B)[-2:] == ["sanction_hit", "onchain_revoke"]
        assert_invariant(db_provider)

    def test_stamps_last_screened(self, db_provider, lifecycle, screening, make_verified):
        make_verified(WALLET_A, legal_name="Acme")
        stamp = datetime(2030, 1, 1, tzinfo=timezone.utc)
        sweep = RescreeningSweep(db_provider, lifecycle, screening, clock=lambda: stamp)

        sweep.run()

        assert load_institution(db_provider, WALLET_A).last_screened_at.year == 2030

    def test_only_credentialed_institutions_are_screened(self, sweep, screening, lifecycle, registry):
        lifecycle.submit(WALLET_A, legal_name="Pending Co")
        lifecycle.submit(WALLET_B, legal_name="Unsynced Co")
        registry.failures["verify"] = [terminal()]
        lifecycle.approve(WALLET_B)

        summary = sweep.run()

        assert summary.screened == 0
        assert screening.searches == []

    def test_unnamed_institutions_are_skipped(self, sweep, screening, make_verified):
        make_verified(WALLET_A, legal_name=None)

        summary = sweep.run()

        assert summary.screened == 1
        assert summary.skipped_unnamed == 1
        assert screening.searches == []

    def test_failure_is_isolated(self, sweep, screening, make_verified, db_provider):
        make_verified(WALLET_A, legal_name="Acme")
        make_verified(WALLET_B, legal_name="Flaky Co")
        make_verified(WALLET_C, legal_name="Bad Co")
        screening.errors["Flaky Co"] = ProviderTransientError("timeout", provider="complyadvantage")
        screening.scores["Bad Co"] = [0.99]

        summary = sweep.run()

        assert summary.screened == 3
        assert summary.revoked == 1
        assert len(summary.errors) == 1
        assert summary.errors[0].startswith(WALLET_B)
        assert load_institution(db_provider, WALLET_B).kyb_status == KybStatus.VERIFIED
        assert load_institution(db_provider, WALLET_C).kyb_status == KybStatus.SUSPENDED
        assert screening.searches.count("Flaky Co") == 3

    def test_failed_revoke_is_suspended_and_reconciled(
        self, sweep, screening, registry, make_verified, db_provider
    ):
        make_verified(WALLET_A, legal_name="Bad Co")
        screening.scores["Bad Co"] = [0.99]
        registry.failures["revoke"] = [terminal("paused")]

        first = sweep.run()

        assert first.revoked == 1
        assert len(first.errors) == 1
        institution = load_institution(db_provider, WALLET_A)
        assert institution.kyb_status == KybStatus.SUSPENDED
        assert not institution.on_chain_verified
        assert institution.revoke_pending
        assert WALLET_A in registry.verified
        assert_invariant(db_provider)

        second = sweep.run()

        assert second.reconciled == 1
        assert second.screened == 0
        assert second.revoked == 0
        assert WALLET_A not in registry.verified
        assert not load_institution(db_provider, WALLET_A).revoke_pending

    def test_second_run_is_idempotent(self, sweep, screening, registry, make_verified):
        make_verified(WALLET_A, legal_name="Bad Co")
        screening.scores["Bad Co"] = [0.99]

        assert sweep.run().revoked == 1
        second = sweep.run()

        assert second.revoked == 0
        assert second.screened == 0
        assert registry.count("revoke") == 1

    def test_empty_database(self, sweep):
        assert sweep.run().to_dict() == {
            "screened": 0, "revoked": 0, "skippedUnnamed": 0, "reconciled": 0,
        }

    @pytest.mark.parametrize("score", [0.0, 0.5, 0.8499])
    def test_low_scores_never_revoke(self, sweep, screening, registry, make_verified, score):
        make_verified(WALLET_A, legal_name="Acme")
        screening.scores["Acme"] = [score]

        sweep.run()

        assert registry.count("revoke") == 0


class TestScreeningRetry:
    """Screening timeouts are retried before they count as errors"""

    def test_transient_failure_then_hit(self, sweep, screening, registry, make_verified, db_provider):
        make_verified(WALLET_A, legal_name="Acme")
        screening.failures["Acme"] = [ProviderTransientError("read timeout", provider="complyadvantage")]
        screening.scores["Acme"] = [0.95]

        summary = sweep.run()

        assert screening.searches == ["Acme", "Acme"]
        assert summary.revoked == 1
        assert "errors" not in summary.to_dict()
        assert load_institution(db_provider, WALLET_A).kyb_status == KybStatus.SUSPENDED
        assert WALLET_A not in registry.verified
        assert_invariant(db_provider)

    def test_terminal_failure_is_not_retried(self, sweep, screening, make_verified, db_provider):
        make_verified(WALLET_A, legal_name="Acme")
        screening.errors["Acme"] = ProviderTerminalError("invalid api key", provider="complyadvantage")

        summary = sweep.run()

        assert screening.searches == ["Acme"]
        assert len(summary.errors) == 1
        institution = load_institution(db_provider, WALLET_A)
        assert institution.kyb_status == KybStatus.VERIFIED
        assert institution.last_screened_at is not None


class TestStaleCandidates:
    """A clean result never overwrites a suspension made after selection"""

    def test_clean_result_after_concurrent_suspension(
        self, sweep, screening, lifecycle, make_verified, db_provider
    ):
        wallet = make_verified(WALLET_A, legal_name="Acme")
        evidence = [{"name": "Acme Sanctioned", "score": 0.99}]
        clean_screen = screening.screen

        def screen_after_suspension(name, jurisdiction=None):
            assert lifecycle.apply_sanction_hit(wallet, "search-other", evidence)
            return clean_screen(name, jurisdiction)

        screening.screen = screen_after_suspension

        summary = sweep.run()

        assert summary.revoked == 0
        institution = load_institution(db_provider, WALLET_A)
        assert institution.kyb_status == KybStatus.SUSPENDED
        assert institution.sanction_hit is True
        assert institution.sanction_hit_details == evidence
        assert_invariant(db_provider)
