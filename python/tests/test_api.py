"""
API endpoint tests for the FastAPI KYB Compliance Gate

Uses pytest and FastAPI's TestClient against an in-memory database, a fake
on-chain registry and scripted screening results. One async test drives the
app through httpx.AsyncClient with pytest-asyncio.
"""

import hashlib
import hmac
import logging
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager, RetryConfig, VerificationConfig
from database.connection import create_test_provider
from providers.verification import SumsubVerificationProvider
from security_logger import SecurityLogger

from conftest import WALLET_A, WALLET_B, FakeRegistry, FakeScreening, load_institution

# Configure pytest-asyncio mode
pytest_plugins = ['pytest_asyncio']

ADMIN_KEY = "admin-key-123"
CRON_SECRET = "cron-secret-456"
WEBHOOK_SECRET = "webhook-secret"


def make_state(environ=None, verification=None):
    """Wire the service with fakes; returns (state, registry, screening)."""
    from api import server

    config = ConfigManager(config_path="/nonexistent/config.yaml", environ=environ or {})
    config.retry = RetryConfig(max_attempts=3, min_wait=0, max_wait=0, lock_timeout=1.0)
    registry = FakeRegistry()
    screening = FakeScreening()
    state = server.build_state(
        config=config,
        db=create_test_provider(),
        screening=screening,
        verification=verification,
        registry=registry,
        security=SecurityLogger(enable_file=False),
    )
    return state, registry, screening


@pytest.fixture
def demo_service():
    """Demo-mode service: no admin key, cron secret configured."""
    from api import server

    state, registry, screening = make_state(environ={"CRON_SECRET": CRON_SECRET})
    with patch.object(server, '_state', state):
        yield TestClient(server.app), state, registry, screening
    state.db.close()


@pytest.fixture
def client(demo_service):
    return demo_service[0]


@pytest.fixture
def production_service():
    """Real verification provider (HTTP mocked) with admin key and cron secret."""
    from api import server

    verification = SumsubVerificationProvider(
        VerificationConfig(app_token="app", secret_key=WEBHOOK_SECRET),
        session=MagicMock(),
    )
    state, registry, screening = make_state(
        environ={"PLATFORM_ADMIN_API_KEY": ADMIN_KEY, "CRON_SECRET": CRON_SECRET},
        verification=verification,
    )
    with patch.object(server, '_state', state):
        yield TestClient(server.app), state, registry, screening
    state.db.close()


def submit(client, wallet=WALLET_A, legal_name="Acme Capital Ltd", **extra):
    return client.post(
        "/kyb/submit",
        json={"walletAddress": wallet, "legalName": legal_name, "jurisdiction": "GB", **extra},
    )


# ============================================
# SUBMISSION AND STATUS
# ============================================

class TestSubmit:
    """Tests for POST /kyb/submit"""

    def test_submit_returns_demo_token(self, client):
        response = submit(client)
        assert response.status_code == 200
        data = response.json()
        assert data["demo"] is True
        assert data["token"].startswith("demo-token-")

    def test_submit_invalid_wallet(self, client):
        response = submit(client, wallet="0x1234")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["field"] == "walletAddress"

    def test_submit_missing_wallet(self, client):
        response = client.post("/kyb/submit", json={"legalName": "Acme"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_submit_oversized_field(self, client):
        response = submit(client, legal_name="A" * 501)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_invalid_wallet_is_security_event(self, client, caplog):
        with caplog.at_level(logging.WARNING, logger="security"):
            submit(client, wallet="0xnot-a-wallet\nFAKE LOG LINE")
        events = [r.getMessage() for r in caplog.records if r.name == "security"]
        assert any("VALIDATION_FAILED" in e for e in events)
        assert not any("\nFAKE" in e for e in events)


class TestStatus:
    """Tests for GET /kyb/status"""

    def test_unknown_wallet(self, client):
        response = client.get("/kyb/status", params={"wallet": WALLET_A})
        assert response.status_code == 200
        assert response.json() == {"kybStatus": "not_found"}

    def test_pending_after_submit(self, client):
        submit(client)
        data = client.get("/kyb/status", params={"wallet": WALLET_A.upper().replace("0X", "0x")}).json()
        assert data["kybStatus"] == "pending"
        assert data["walletAddress"] == WALLET_A
        assert data["onChainVerified"] is False

    def test_missing_wallet(self, client):
        response = client.get("/kyb/status")
        assert response.status_code == 400

    def test_refresh_token_unknown(self, client):
        response = client.get("/kyb/refresh-token", params={"wallet": WALLET_A})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_refresh_token(self, client):
        submit(client)
        response = client.get("/kyb/refresh-token", params={"wallet": WALLET_A})
        assert response.status_code == 200
        assert response.json()["demo"] is True


# ============================================
# APPROVAL AND BUYER ROLE
# ============================================

class TestDemoApprove:
    """Tests for POST /kyb/demo-approve"""

    def test_approve_pending(self, demo_service):
        client, state, registry, _ = demo_service
        submit(client)

        response = client.post("/kyb/demo-approve", params={"wallet": WALLET_A})

        assert response.status_code == 200
        data = response.json()
        assert data["kybStatus"] == "verified"
        assert data["onChainVerified"] is True
        assert data["txHash"].startswith("0x")
        assert "error" not in data
        assert WALLET_A in registry.verified

    def test_on_chain_failure_is_partial_success(self, demo_service):
        client, state, registry, _ = demo_service
        from conftest import terminal
        registry.failures["verify"] = [terminal("execution reverted")]
        submit(client)

        response = client.post("/kyb/demo-approve", params={"wallet": WALLET_A})

        assert response.status_code == 200
        data = response.json()
        assert data["kybStatus"] == "verified"
        assert data["onChainVerified"] is False
        assert data["error"]["kind"] == "PROVIDER_REJECTED"

    def test_approve_twice(self, client):
        submit(client)
        client.post("/kyb/demo-approve", params={"wallet": WALLET_A})
        response = client.post("/kyb/demo-approve", params={"wallet": WALLET_A})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_TRANSITION"
        assert "verified" in error["message"]

    def test_approve_unknown(self, client):
        response = client.post("/kyb/demo-approve", params={"wallet": WALLET_B})
        assert response.status_code == 404

    def test_forbidden_with_real_provider(self, production_service):
        client = production_service[0]
        response = client.post("/kyb/demo-approve", params={"wallet": WALLET_A})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"


class TestGrantBuyerRole:
    """Tests for POST /kyb/grant-buyer-role"""

    def test_open_in_demo_without_admin_key(self, demo_service):
        client, _, registry, _ = demo_service
        submit(client)
        client.post("/kyb/demo-approve", params={"wallet": WALLET_A})

        response = client.post("/kyb/grant-buyer-role", params={"wallet": WALLET_A})

        assert response.status_code == 200
        assert response.json()["txHash"].startswith("0x")

    def test_pending_is_precondition_failure(self, client):
        submit(client)
        response = client.post("/kyb/grant-buyer-role", params={"wallet": WALLET_A})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "PRECONDITION_FAILED"
        assert "pending" in error["message"]

    def test_requires_admin_key_when_configured(self, production_service):
        client = production_service[0]
        response = client.post("/kyb/grant-buyer-role", params={"wallet": WALLET_A})
        assert response.status_code == 401

    def test_wrong_admin_key(self, production_service, caplog):
        client = production_service[0]
        with caplog.at_level(logging.WARNING, logger="security"):
            response = client.post(
                "/kyb/grant-buyer-role",
                params={"wallet": WALLET_A},
                headers={"X-Admin-Key": "wrong"},
            )
        assert response.status_code == 401
        assert any("AUTH_FAILED" in r.getMessage() for r in caplog.records)

    def test_correct_admin_key_reaches_handler(self, production_service):
        client = production_service[0]
        response = client.post(
            "/kyb/grant-buyer-role",
            params={"wallet": WALLET_A},
            headers={"X-Admin-Key": ADMIN_KEY},
        )
        assert response.status_code == 404

    def test_real_provider_without_admin_key_is_closed(self):
        from api import server

        verification = SumsubVerificationProvider(
            VerificationConfig(app_token="app", secret_key="secret"), session=MagicMock()
        )
        state, _, _ = make_state(verification=verification)
        with patch.object(server, '_state', state):
            response = TestClient(server.app).post(
                "/kyb/grant-buyer-role", params={"wallet": WALLET_A}
            )
        assert response.status_code == 401


# ============================================
# WEBHOOK
# ============================================

class TestWebhook:

    def test_demo_acknowledges(self, client):
        response = client.post("/kyb/webhook", json={"type": "applicantReviewed"})
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_valid_signature(self, production_service):
        client = production_service[0]
        payload = b'{"type":"applicantReviewed"}'
        digest = hmac.new(WEBHOOK_SECRET.encode(), payload, hashlib.sha256).hexdigest()
        response = client.post(
            "/kyb/webhook",
            content=payload,
            headers={"X-Payload-Digest": digest, "Content-Type": "application/json"},
        )
        assert response.status_code == 200

    def test_invalid_signature(self, production_service):
        client = production_service[0]
        response = client.post(
            "/kyb/webhook",
            content=b'{"type":"applicantReviewed"}',
            headers={"X-Payload-Digest": "0" * 64},
        )
        assert response.status_code == 401

    def test_webhook_does_not_change_status(self, production_service):
        client, state, _, _ = production_service
        state.lifecycle.submit(WALLET_A, legal_name="Acme")
        payload = b'{"type":"applicantReviewed","reviewResult":{"reviewAnswer":"GREEN"}}'
        digest = hmac.new(WEBHOOK_SECRET.encode(), payload, hashlib.sha256).hexdigest()

        client.post("/kyb/webhook", content=payload, headers={"X-Payload-Digest": digest})

        assert load_institution(state.db, WALLET_A).kyb_status.value == "pending"


# ============================================
# RESCREENING CRON
# ============================================

class TestCronRescreen:

    def test_requires_secret(self, client):
        assert client.get("/cron/rescreen").status_code == 401

    def test_wrong_secret(self, client):
        response = client.get("/cron/rescreen", headers={"X-Cron-Secret": "nope"})
        assert response.status_code == 401

    def test_unconfigured_secret_rejects_everything(self):
        from api import server

        state, _, _ = make_state()
        with patch.object(server, '_state', state):
            response = TestClient(server.app).get(
                "/cron/rescreen", headers={"X-Cron-Secret": ""}
            )
        assert response.status_code == 401

    def test_sweep_revokes_hit(self, demo_service):
        client, state, registry, screening = demo_service
        submit(client, wallet=WALLET_A, legal_name="Clean Co")
        submit(client, wallet=WALLET_B, legal_name="Bad Co")
        client.post("/kyb/demo-approve", params={"wallet": WALLET_A})
        client.post("/kyb/demo-approve", params={"wallet": WALLET_B})
        screening.scores["Bad Co"] = [0.97]

        response = client.get("/cron/rescreen", headers={"X-Cron-Secret": CRON_SECRET})

        assert response.status_code == 200
        assert response.json() == {
            "screened": 2, "revoked": 1, "skippedUnnamed": 0, "reconciled": 0,
        }
        status = client.get("/kyb/status", params={"wallet": WALLET_B}).json()
        assert status["kybStatus"] == "suspended"
        assert status["onChainVerified"] is False
        assert status["sanctionHit"] is True

    def test_sweep_reports_errors(self, demo_service):
        client, _, _, screening = demo_service
        from compliance.exceptions import ProviderTransientError
        submit(client, legal_name="Flaky Co")
        client.post("/kyb/demo-approve", params={"wallet": WALLET_A})
        screening.errors["Flaky Co"] = ProviderTransientError("timeout", provider="complyadvantage")

        data = client.get("/cron/rescreen", headers={"X-Cron-Secret": CRON_SECRET}).json()

        assert data["revoked"] == 0
        assert len(data["errors"]) == 1
        assert data["errors"][0].startswith(WALLET_A)


# ============================================
# HEALTH AND ERRORS
# ============================================

class TestHealth:

    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] is True
        assert data["registry"]["reachable"] is True
        assert data["demo"] == {"screening": True, "verification": True}

    def test_unreachable_registry_is_degraded(self, demo_service):
        client, state, registry, _ = demo_service
        registry.reachable = False
        state.registry_health.reset()

        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["registry"]["reachable"] is False

    def test_registry_probe_is_cached(self, demo_service):
        client, state, registry, _ = demo_service
        client.get("/health")
        registry.reachable = False
        assert client.get("/health").json()["registry"]["reachable"] is True

    def test_response_headers(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["x-request-id"] == "req-42"
        assert "x-processing-time-ms" in response.headers


class TestErrorHandling:

    def test_uninitialised_service(self):
        from api import server

        with patch.object(server, '_state', None):
            response = TestClient(server.app, raise_server_exceptions=False).get(
                "/kyb/status", params={"wallet": WALLET_A}
            )
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "CONFIGURATION_ERROR"

    def test_root_redirects_to_docs(self, client):
        response = client.get("/", follow_redirects=False)
        assert response.status_code in (302, 307)
        assert response.headers["location"] == "/api/docs"


class TestAsyncClient:

    @pytest.mark.asyncio
    async def test_submit_and_status(self, demo_service):
        from api import server

        transport = ASGITransport(app=server.app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post(
                "/kyb/submit", json={"walletAddress": WALLET_A, "legalName": "Acme"}
            )
            assert response.status_code == 200
            status = await ac.get("/kyb/status", params={"wallet": WALLET_A})
            assert status.json()["kybStatus"] == "pending"


class TestShutdown:

    @pytest.mark.asyncio
    async def test_shutdown_disposes_database(self):
        from api import server

        state, _, _ = make_state()
        with patch.object(server, '_state', state), \
                patch.object(server, '_executor') as executor, \
                patch.object(server, 'close_db') as close_db, \
                patch.object(state.db, 'close', wraps=state.db.close) as close:
            await server.shutdown()

        executor.shutdown.assert_called_once_with(wait=False)
        close.assert_called_once()
        close_db.assert_called_once()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
