"""
Sanctions screening client.

Two strategies share the ``ScreeningClient`` interface:
- ``ComplyAdvantageScreeningClient`` posts a search to the provider's HTTP API
- ``DemoScreeningClient`` returns zero hits, used when no API key is configured

``build_screening_client`` picks one from configuration once at startup.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from compliance.exceptions import ProviderTerminalError, ProviderTransientError
from config_manager import ScreeningConfig
from log_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

PROVIDER_NAME = "complyadvantage"


@dataclass
class SanctionMatch:
    """One candidate match returned by the screening provider"""
    name: str
    score: float
    match_types: List[str] = field(default_factory=list)
    types: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "matchTypes": list(self.match_types),
            "doc": {"name": self.name, "types": list(self.types)},
        }


@dataclass
class ScreeningResult:
    """Outcome of a single sanctions search"""
    search_id: str
    total_hits: int = 0
    hits: List[SanctionMatch] = field(default_factory=list)


def has_sanction_hit(result: ScreeningResult, threshold: float = 0.85) -> bool:
    """True if any match scores at or above ``threshold`` (inclusive)."""
    return any(hit.score >= threshold for hit in result.hits)


def top_matches(result: ScreeningResult, limit: int = 3) -> List[SanctionMatch]:
    """Highest-scoring matches first."""
    return sorted(result.hits, key=lambda hit: hit.score, reverse=True)[:limit]


class ScreeningClient(ABC):
    """Screens an entity name against sanctions lists."""

    demo = False

    @abstractmethod
    def screen(self, name: str, jurisdiction: Optional[str] = None) -> ScreeningResult:
        """
        Raises:
            ProviderTransientError: Network failure, timeout or provider 5xx/429
            ProviderTerminalError: Provider rejected the request or returned garbage
        """


class DemoScreeningClient(ScreeningClient):
    demo = True

    def screen(self, name: str, jurisdiction: Optional[str] = None) -> ScreeningResult:
        logger.info("Demo screening (no provider key configured): %s", sanitize_for_logging(name))
        return ScreeningResult(search_id="demo", total_hits=0, hits=[])


class ComplyAdvantageScreeningClient(ScreeningClient):
    """HTTP client for the ComplyAdvantage ``/searches`` endpoint."""

    def __init__(self, config: ScreeningConfig, session: Optional[requests.Session] = None):
        if not config.api_key:
            raise ValueError("ComplyAdvantage client requires an API key")
        self.config = config
        self.session = session or requests.Session()

    def _build_payload(self, name: str, jurisdiction: Optional[str]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "search_term": name,
            "fuzziness": self.config.fuzziness,
            "search_profile": self.config.search_profile,
        }
        if jurisdiction:
            payload["filters"] = {"countries": [jurisdiction]}
        return payload

    def screen(self, name: str, jurisdiction: Optional[str] = None) -> ScreeningResult:
        url = f"{self.config.base_url.rstrip('/')}/searches"
        try:
            response = self.session.post(
                url,
                json=self._build_payload(name, jurisdiction),
                headers={"Authorization": f"Token {self.config.api_key}"},
                timeout=self.config.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise ProviderTransientError(
                f"Screening request failed: {e}", provider=PROVIDER_NAME
            ) from e
        except requests.RequestException as e:
            raise ProviderTerminalError(
                f"Screening request could not be sent: {e}", provider=PROVIDER_NAME
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientError(
                f"Screening provider unavailable: HTTP {response.status_code}",
                provider=PROVIDER_NAME,
            )
        if response.status_code >= 400:
            raise ProviderTerminalError(
                f"Screening provider rejected search: HTTP {response.status_code}",
                provider=PROVIDER_NAME,
            )

        return self._parse_response(response)

    def _parse_response(self, response: requests.Response) -> ScreeningResult:
        try:
            data = response.json()["content"]["data"]
            hits = [
                SanctionMatch(
                    name=(hit.get("doc") or {}).get("name", ""),
                    score=float(hit.get("score", 0)),
                    match_types=list(hit.get("match_types") or []),
                    types=list((hit.get("doc") or {}).get("types") or []),
                )
                for hit in data.get("hits") or []
            ]
            return ScreeningResult(
                search_id=str(data["id"]),
                total_hits=int(data.get("total_hits", len(hits))),
                hits=hits,
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderTerminalError(
                f"Malformed screening response: {e}", provider=PROVIDER_NAME
            ) from e


def build_screening_client(config: ScreeningConfig) -> ScreeningClient:
    """Real client when an API key is configured, demo client otherwise."""
    if config.demo:
        logger.warning("COMPLY_ADVANTAGE_API_KEY not set, sanctions screening runs in DEMO MODE")
        return DemoScreeningClient()
    return ComplyAdvantageScreeningClient(config)
