"""
Shared fixtures for the KYB compliance gate tests.

Every test gets its own in-memory SQLite database, a fake on-chain registry
that records calls, and a fake screening client with scripted scores.
"""

import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from compliance.exceptions import ProviderError
from compliance.lifecycle import KybLifecycle
from compliance.locks import WalletLocks
from compliance.sweep import RescreeningSweep
from compliance.synchronizer import CredentialSynchronizer
from config_manager import RetryConfig, ScreeningConfig
from database.connection import create_test_provider
from database.models import Institution, KybAuditLog
from providers.registry import CredentialRegistry
from providers.screening import SanctionMatch, ScreeningClient, ScreeningResult

WALLET_A = "0x" + "a1" * 20
WALLET_B = "0x" + "b2" * 20
WALLET_C = "0x" + "c3" * 20


class FakeRegistry(CredentialRegistry):
    """In-memory registry. Queue exceptions per operation in ``failures``."""

    def __init__(self):
        self.verified = set()
        self.buyers = set()
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.reachable = True
        self._tx_counter = 0

    def _maybe_fail(self, operation: str) -> None:
        queue = self.failures.get(operation)
        if queue:
            raise queue.pop(0)

    def _next_tx(self) -> str:
        self._tx_counter += 1
        return "0x" + format(self._tx_counter, "064x")

    def verify_institution(self, wallet, accredited, jurisdiction):
        self.calls.append(("verify", wallet))
        self._maybe_fail("verify")
        self.verified.add(wallet)
        return self._next_tx()

    def revoke_institution(self, wallet):
        self.calls.append(("revoke", wallet))
        self._maybe_fail("revoke")
        self.verified.discard(wallet)
        return self._next_tx()

    def grant_buyer_role(self, wallet):
        self.calls.append(("grant", wallet))
        self._maybe_fail("grant")
        self.buyers.add(wallet)
        return self._next_tx()

    def is_verified(self, wallet):
        self._maybe_fail("is_verified")
        return wallet in self.verified

    def is_reachable(self):
        return self.reachable

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)


class FakeScreening(ScreeningClient):
    """Returns scripted scores per legal name; unknown names have no hits.

    ``errors`` fail every search for a name, ``failures`` queue one-shot errors.
    """

    def __init__(self):
        self.scores: Dict[str, List[float]] = {}
        self.errors: Dict[str, Exception] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.searches: List[str] = []

    def screen(self, name: str, jurisdiction: Optional[str] = None) -> ScreeningResult:
        self.searches.append(name)
        if name in self.errors:
            raise self.errors[name]
        if self.failures.get(name):
            raise self.failures[name].pop(0)
        hits = [
            SanctionMatch(name=f"{name} match {i}", score=score, match_types=["name_exact"], types=["sanction"])
            for i, score in enumerate(self.scores.get(name, []))
        ]
        return ScreeningResult(search_id=f"search-{len(self.searches)}", total_hits=len(hits), hits=hits)


@pytest.fixture
def db_provider():
    provider = create_test_provider()
    yield provider
    provider.close()


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def screening():
    return FakeScreening()


@pytest.fixture
def retry_config():
    return RetryConfig(max_attempts=3, min_wait=0, max_wait=0, lock_timeout=1.0)


@pytest.fixture
def synchronizer(registry, retry_config):
    return CredentialSynchronizer(
        registry,
        locks=WalletLocks(acquire_timeout=retry_config.lock_timeout),
        retry_config=retry_config,
    )


@pytest.fixture
def lifecycle(db_provider, synchronizer):
    return KybLifecycle(db_provider, synchronizer)


@pytest.fixture
def sweep(db_provider, lifecycle, screening, retry_config):
    return RescreeningSweep(db_provider, lifecycle, screening, ScreeningConfig(), retry_config=retry_config)


@pytest.fixture
def make_verified(lifecycle):
    """Submit and approve an institution; returns its canonical wallet."""
    def _make(wallet: str, legal_name: Optional[str] = "Acme Capital Ltd", jurisdiction: str = "GB") -> str:
        lifecycle.submit(wallet, legal_name=legal_name, jurisdiction=jurisdiction)
        result = lifecycle.approve(wallet)
        assert result.on_chain_verified
        return result.wallet
    return _make


def load_institution(db_provider, wallet: str) -> Optional[Institution]:
    with db_provider.session_scope() as session:
        return session.query(Institution).filter_by(wallet_address=wallet).one_or_none()


def audit_actions(db_provider, wallet: str) -> List[str]:
    with db_provider.session_scope() as session:
        rows = (
            session.query(KybAuditLog)
            .filter_by(wallet_address=wallet)
            .order_by(KybAuditLog.id)
            .all()
        )
        return [row.action for row in rows]


def assert_invariant(db_provider) -> None:
    """No institution may hold an on-chain flag without being verified."""
    with db_provider.session_scope() as session:
        for institution in session.query(Institution).all():
            assert not institution.on_chain_verified or institution.kyb_status.value == "verified", institution


def transient(message: str = "rpc timeout") -> ProviderError:
    from compliance.exceptions import ProviderTransientError
    return ProviderTransientError(message, provider="registry")


def terminal(message: str = "execution reverted") -> ProviderError:
    from compliance.exceptions import ProviderTerminalError
    return ProviderTerminalError(message, provider="registry")
