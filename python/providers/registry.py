"""
On-chain credential registry.

The registry is the factory contract that gates vault creation. Writes are
signed with the platform admin key and confirmed by waiting for the receipt;
a transaction counts as written only once its receipt reports success.

Error classification:
- RPC connection failures, request timeouts and receipt wait timeouts are
  ``ProviderTransientError`` (safe to retry)
- Contract reverts, failed receipts and node-side rejections are
  ``ProviderTerminalError``
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from compliance.exceptions import ProviderTerminalError, ProviderTransientError
from config_manager import RegistryConfig

logger = logging.getLogger(__name__)

PROVIDER_NAME = "registry"

FACTORY_ABI = [
    {
        "type": "function",
        "name": "verifyInstitution",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "inst", "type": "address"},
            {"name": "accredited", "type": "bool"},
            {"name": "jurisdiction", "type": "string"},
            {"name": "proof", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "revokeInstitution",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "inst", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "grantBuyerRole",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "verified",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "address"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


class CredentialRegistry(ABC):
    """Write and read access to on-chain institution credentials."""

    enabled = True

    @abstractmethod
    def verify_institution(self, wallet: str, accredited: bool, jurisdiction: str) -> str:
        """Mark ``wallet`` verified on-chain; returns the transaction hash."""

    @abstractmethod
    def revoke_institution(self, wallet: str) -> str:
        """Clear the on-chain credential; returns the transaction hash."""

    @abstractmethod
    def grant_buyer_role(self, wallet: str) -> str:
        """Grant the buyer role needed to create vaults; returns the transaction hash."""

    @abstractmethod
    def is_verified(self, wallet: str) -> bool:
        """Read the on-chain ``verified`` flag."""

    def is_reachable(self) -> bool:
        return False


class DisabledCredentialRegistry(CredentialRegistry):
    """Stand-in used when no chain credentials are configured.

    Every call fails terminally so callers record the credential as not
    written instead of pretending it was.
    """

    enabled = False

    def _unavailable(self) -> ProviderTerminalError:
        return ProviderTerminalError(
            "On-chain registry is not configured "
            "(set CHAIN_RPC_URL, FACTORY_CONTRACT_ADDRESS and PLATFORM_ADMIN_PRIVATE_KEY)",
            provider=PROVIDER_NAME,
        )

    def verify_institution(self, wallet: str, accredited: bool, jurisdiction: str) -> str:
        raise self._unavailable()

    def revoke_institution(self, wallet: str) -> str:
        raise self._unavailable()

    def grant_buyer_role(self, wallet: str) -> str:
        raise self._unavailable()

    def is_verified(self, wallet: str) -> bool:
        raise self._unavailable()


class Web3CredentialRegistry(CredentialRegistry):
    """web3.py implementation against the factory contract."""

    def __init__(self, config: RegistryConfig, w3: Optional[Web3] = None):
        if not config.enabled:
            raise ValueError("Web3 registry requires rpc_url, factory_address and admin_private_key")
        self.config = config
        self.w3 = w3 or Web3(Web3.HTTPProvider(
            config.rpc_url,
            request_kwargs={"timeout": config.request_timeout},
        ))
        private_key = config.admin_private_key
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        self.account = self.w3.eth.account.from_key(private_key)
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(config.factory_address),
            abi=FACTORY_ABI,
        )
        self._chain_id = config.chain_id

    def _guard(self, operation: str, call: Callable[[], Any]) -> Any:
        """Run an RPC interaction and map failures to provider errors."""
        try:
            return call()
        except ContractLogicError as e:
            raise ProviderTerminalError(
                f"{operation} reverted: {e}", provider=PROVIDER_NAME
            ) from e
        except TimeExhausted as e:
            raise ProviderTransientError(
                f"{operation} not confirmed within {self.config.receipt_timeout:.0f}s: {e}",
                provider=PROVIDER_NAME,
            ) from e
        except (requests.Timeout, requests.ConnectionError) as e:
            raise ProviderTransientError(
                f"{operation} RPC unavailable: {e}", provider=PROVIDER_NAME
            ) from e
        except (Web3Exception, ValueError) as e:
            raise ProviderTerminalError(
                f"{operation} rejected by node: {e}", provider=PROVIDER_NAME
            ) from e

    def _chain(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.w3.eth.chain_id
        return self._chain_id

    def _send(self, operation: str, function: Any) -> str:
        def submit() -> str:
            tx = function.build_transaction({
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
                "chainId": self._chain(),
            })
            signed = self.account.sign_transaction(tx)
            raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
            tx_hash = self.w3.eth.send_raw_transaction(raw)
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.receipt_timeout
            )
            if receipt["status"] != 1:
                raise ProviderTerminalError(
                    f"{operation} transaction {Web3.to_hex(tx_hash)} failed on-chain",
                    provider=PROVIDER_NAME,
                )
            return Web3.to_hex(tx_hash)

        tx_hash = self._guard(operation, submit)
        logger.info("%s confirmed: tx=%s", operation, tx_hash)
        return tx_hash

    def verify_institution(self, wallet: str, accredited: bool, jurisdiction: str) -> str:
        function = self.contract.functions.verifyInstitution(
            Web3.to_checksum_address(wallet), bool(accredited), jurisdiction or "", b""
        )
        return self._send("verifyInstitution", function)

    def revoke_institution(self, wallet: str) -> str:
        function = self.contract.functions.revokeInstitution(Web3.to_checksum_address(wallet))
        return self._send("revokeInstitution", function)

    def grant_buyer_role(self, wallet: str) -> str:
        function = self.contract.functions.grantBuyerRole(Web3.to_checksum_address(wallet))
        return self._send("grantBuyerRole", function)

    def is_verified(self, wallet: str) -> bool:
        return bool(self._guard(
            "verified",
            lambda: self.contract.functions.verified(Web3.to_checksum_address(wallet)).call(),
        ))

    def is_reachable(self) -> bool:
        try:
            return bool(self.w3.is_connected())
        except (requests.RequestException, Web3Exception, ValueError) as e:
            logger.warning("Registry reachability probe failed: %s", e)
            return False


def build_credential_registry(config: RegistryConfig) -> CredentialRegistry:
    if not config.enabled:
        logger.warning("Chain credentials not set, on-chain credential writes are disabled")
        return DisabledCredentialRegistry()
    return Web3CredentialRegistry(config)
