"""
KYB verification provider (Sumsub-style identity proofing).

The gate only needs two things from the provider: an applicant id for a
wallet and a short-lived SDK access token for the applicant's browser
session. Review outcomes reach the gate through the webhook, whose payload
digest is checked with ``verify_webhook_signature``.
"""

import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import requests

from compliance.exceptions import ProviderTerminalError, ProviderTransientError
from config_manager import VerificationConfig

logger = logging.getLogger(__name__)

PROVIDER_NAME = "sumsub"


@dataclass
class ApplicantSession:
    """Applicant id plus an SDK token for one KYB session"""
    applicant_id: Optional[str]
    token: str
    demo: bool = False


def build_signature(secret_key: str, ts: int, method: str, path: str, body: str = "") -> str:
    """HMAC-SHA256 over ``ts + METHOD + path + body``, hex encoded."""
    data = f"{ts}{method.upper()}{path}{body}"
    return hmac.new(secret_key.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_webhook_signature(secret_key: str, payload: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of the ``X-Payload-Digest`` header against the raw body."""
    if not signature:
        return False
    expected = hmac.new(secret_key.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class VerificationProvider(ABC):
    demo = False

    @abstractmethod
    def ensure_applicant(self, wallet: str, applicant_id: Optional[str] = None) -> Optional[str]:
        """Return the applicant id for ``wallet``, creating the applicant if needed."""

    @abstractmethod
    def refresh_token(self, wallet: str) -> ApplicantSession:
        """Issue a fresh SDK token for the applicant of ``wallet``."""

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> bool:
        return True


class DemoVerificationProvider(VerificationProvider):
    """Issues placeholder tokens; no applicant is created anywhere."""

    demo = True

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def _token(self, wallet: str) -> str:
        return f"demo-token-{wallet[2:10]}-{int(self._clock() * 1000)}"

    def ensure_applicant(self, wallet: str, applicant_id: Optional[str] = None) -> Optional[str]:
        return None

    def refresh_token(self, wallet: str) -> ApplicantSession:
        return ApplicantSession(applicant_id=None, token=self._token(wallet), demo=True)


class SumsubVerificationProvider(VerificationProvider):
    """Signed HTTP client for the Sumsub applicant and access-token endpoints."""

    def __init__(
        self,
        config: VerificationConfig,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        if config.demo:
            raise ValueError("Sumsub provider requires an app token and a secret key")
        self.config = config
        self.session = session or requests.Session()
        self._clock = clock

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        conflict_ok: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Signed request; returns None for HTTP 409 when ``conflict_ok`` is set."""
        ts = int(self._clock())
        body_str = json.dumps(body) if body is not None else ""
        headers = {
            "X-App-Token": self.config.app_token,
            "X-App-Access-Ts": str(ts),
            "X-App-Access-Sig": build_signature(self.config.secret_key, ts, method, path, body_str),
            "Content-Type": "application/json",
        }
        url = f"{self.config.base_url.rstrip('/')}{path}"
        try:
            response = self.session.request(
                method,
                url,
                data=body_str or None,
                headers=headers,
                timeout=self.config.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise ProviderTransientError(
                f"Verification provider request failed: {e}", provider=PROVIDER_NAME
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientError(
                f"Verification provider unavailable: {method} {path} -> HTTP {response.status_code}",
                provider=PROVIDER_NAME,
            )
        if response.status_code == 409 and conflict_ok:
            return None
        if response.status_code >= 400:
            raise ProviderTerminalError(
                f"Verification provider rejected {method} {path} -> HTTP {response.status_code}",
                provider=PROVIDER_NAME,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderTerminalError(
                f"Malformed verification provider response: {e}", provider=PROVIDER_NAME
            ) from e

    def _access_token(self, wallet: str) -> str:
        query = urlencode({"userId": wallet, "ttlInSecs": self.config.token_ttl_seconds})
        data = self._request("POST", f"/resources/accessTokens?{query}")
        try:
            return data["token"]
        except KeyError:
            raise ProviderTerminalError(
                "Access token missing from provider response", provider=PROVIDER_NAME
            ) from None

    def ensure_applicant(self, wallet: str, applicant_id: Optional[str] = None) -> Optional[str]:
        """
        Create the applicant for ``wallet`` unless its id is already known.

        The provider answers 409 when an applicant with this external user id
        exists (an earlier submission created it but the id was never stored);
        the existing applicant is then looked up and reused.
        """
        if applicant_id is not None:
            return applicant_id

        query = urlencode({"levelName": self.config.level_name})
        applicant = self._request(
            "POST",
            f"/resources/applicants?{query}",
            {"externalUserId": wallet, "type": "company"},
            conflict_ok=True,
        )
        if applicant is None:
            applicant = self._request("GET", f"/resources/applicants/-;externalUserId={wallet}/one")
            logger.info("Reusing existing verification applicant for %s", wallet)
        else:
            logger.info("Created verification applicant for %s", wallet)

        applicant_id = applicant.get("id")
        if not applicant_id:
            raise ProviderTerminalError("Applicant id missing from provider response", provider=PROVIDER_NAME)
        return applicant_id

    def refresh_token(self, wallet: str) -> ApplicantSession:
        return ApplicantSession(applicant_id=None, token=self._access_token(wallet))

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> bool:
        return verify_webhook_signature(self.config.secret_key, payload, signature)


def build_verification_provider(config: VerificationConfig) -> VerificationProvider:
    if config.demo:
        logger.warning("SUMSUB credentials not set, KYB verification runs in DEMO MODE")
        return DemoVerificationProvider()
    return SumsubVerificationProvider(config)
