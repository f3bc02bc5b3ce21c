"""
Per-wallet mutual exclusion for on-chain writes.

A revoke and a verify for the same wallet must never be in flight at the same
time. The lock is held for the duration of one synchronizer call, never for a
whole request handler.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Generator, Optional

from compliance.exceptions import ProviderTransientError

logger = logging.getLogger(__name__)


class WalletLockTimeout(ProviderTransientError):
    """Another on-chain write for the same wallet did not finish in time."""
    code = "WALLET_BUSY"


class _WalletLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class WalletLocks:
    """Registry of one ``threading.Lock`` per wallet address.

    An entry lives only while some thread holds or waits for it, so the
    registry never grows past the number of wallets with writes in flight.

    Usage:
        locks = WalletLocks()
        with locks.hold(wallet):
            registry.revoke(wallet)
    """

    def __init__(self, acquire_timeout: Optional[float] = None):
        self._acquire_timeout = acquire_timeout
        self._locks: Dict[str, _WalletLock] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, wallet: str) -> _WalletLock:
        with self._registry_lock:
            entry = self._locks.get(wallet)
            if entry is None:
                entry = _WalletLock()
                self._locks[wallet] = entry
            entry.users += 1
            return entry

    def _checkin(self, wallet: str, entry: _WalletLock) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[wallet]

    @contextmanager
    def hold(self, wallet: str) -> Generator[None, None, None]:
        entry = self._checkout(wallet)
        try:
            timeout = -1 if self._acquire_timeout is None else self._acquire_timeout
            if not entry.lock.acquire(timeout=timeout):
                logger.warning("On-chain lock busy: wallet=%s", wallet)
                raise WalletLockTimeout(
                    f"Timed out waiting for on-chain lock on {wallet}", provider="wallet-lock"
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(wallet, entry)

    def is_locked(self, wallet: str) -> bool:
        with self._registry_lock:
            entry = self._locks.get(wallet)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        """Wallets with a write in flight or waiting."""
        with self._registry_lock:
            return len(self._locks)
