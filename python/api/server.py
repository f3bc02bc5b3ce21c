"""
FastAPI KYB Compliance Gate API Server

Provides REST endpoints for KYB submission, status lookup, approval,
buyer-role grants, provider webhooks and the scheduled rescreening sweep.
The compliance core is synchronous; every call into it runs on a thread
pool so the event loop never blocks on the database, providers or chain.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import hmac
import json
import asyncio
import logging
import functools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request, Security
from fastapi.security import APIKeyHeader

from api.models import (
    SubmitRequest,
    TokenResponse,
    ApprovalResponse,
    GrantBuyerRoleResponse,
    SweepResponse,
    WebhookAck,
    HealthResponse,
    RegistryHealth,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from compliance.cache import TTLCache
from compliance.exceptions import ForbiddenError, UnauthorizedError, ValidationError
from compliance.lifecycle import KybLifecycle
from compliance.locks import WalletLocks
from compliance.sweep import RescreeningSweep
from compliance.synchronizer import CredentialSynchronizer
from config_manager import ConfigManager, ConfigurationError, get_config
from database.connection import DatabaseSessionProvider, close_db, init_db
from database.models import KybAction
from providers.registry import CredentialRegistry, build_credential_registry
from providers.screening import ScreeningClient, build_screening_client
from providers.verification import VerificationProvider, build_verification_provider
from security_logger import SecurityLogger, get_security_logger

# Setup logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# Environment variables with defaults
CONFIG_PATH = os.getenv("CONFIG_PATH")

_executor = ThreadPoolExecutor(max_workers=int(os.getenv("API_MAX_WORKERS", "4")))

# Shared-secret headers
admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)
cron_secret_header = APIKeyHeader(name="X-Cron-Secret", auto_error=False)


@dataclass
class ServiceState:
    """Everything the endpoints need, wired once at startup."""
    config: ConfigManager
    db: DatabaseSessionProvider
    lifecycle: KybLifecycle
    sweep: RescreeningSweep
    verification: VerificationProvider
    registry: CredentialRegistry
    security: SecurityLogger
    registry_health: TTLCache


def build_state(
    config: Optional[ConfigManager] = None,
    db: Optional[DatabaseSessionProvider] = None,
    screening: Optional[ScreeningClient] = None,
    verification: Optional[VerificationProvider] = None,
    registry: Optional[CredentialRegistry] = None,
    security: Optional[SecurityLogger] = None,
) -> ServiceState:
    """Wire providers and the compliance core from configuration.

    Any collaborator passed in is used as-is (tests pass fakes).
    """
    config = config or get_config(CONFIG_PATH)
    db = db or init_db()
    screening = screening or build_screening_client(config.screening)
    verification = verification or build_verification_provider(config.verification)
    registry = registry or build_credential_registry(config.registry)
    security = security or get_security_logger(
        log_dir=config.logging.security_log_dir,
        enable_file=config.logging.security_log_to_file,
    )

    synchronizer = CredentialSynchronizer(
        registry,
        locks=WalletLocks(acquire_timeout=config.retry.lock_timeout),
        retry_config=config.retry,
    )
    lifecycle = KybLifecycle(db, synchronizer, verification)
    sweep = RescreeningSweep(db, lifecycle, screening, config.screening, retry_config=config.retry)

    def probe_registry() -> Dict[str, Any]:
        return {
            "reachable": registry.is_reachable() if registry.enabled else False,
            "checkedAt": datetime.now(timezone.utc).isoformat(),
        }

    return ServiceState(
        config=config,
        db=db,
        lifecycle=lifecycle,
        sweep=sweep,
        verification=verification,
        registry=registry,
        security=security,
        registry_health=TTLCache(probe_registry, ttl=config.registry.health_cache_ttl),
    )


# Global state
_state: Optional[ServiceState] = None


def configure(state: Optional[ServiceState]) -> None:
    """Install (or clear) the service state."""
    global _state
    _state = state


def get_state() -> ServiceState:
    """Dependency to get the wired service state."""
    if _state is None:
        raise ConfigurationError("Service not initialized")
    return _state


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


async def run_blocking(
    request: Request,
    state: ServiceState,
    fn: Callable[..., Any],
    *args: Any,
    raw_wallet: Optional[str] = None,
) -> Any:
    """Run a compliance operation on the thread pool.

    Rejected wallet addresses are also recorded as security events.
    """
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(_executor, functools.partial(fn, *args))
    except ValidationError as e:
        state.security.log_validation_failure(
            field=e.field or "",
            error_code=e.code,
            input_value=raw_wallet or "",
            source=request.url.path,
            request_id=_request_id(request),
        )
        raise


def _reject(request: Request, state: ServiceState, reason: str, header: str) -> UnauthorizedError:
    state.security.log_auth_failure(
        source=request.url.path,
        reason=reason,
        request_id=_request_id(request),
        source_ip=_client_ip(request),
    )
    return UnauthorizedError("Unauthorized", suggestion=f"Provide a valid {header} header")


def _matches(provided: Optional[str], expected: str) -> bool:
    return bool(provided) and hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def verify_admin_key(
    request: Request,
    api_key: Optional[str] = Security(admin_key_header),
    state: ServiceState = Depends(get_state),
) -> str:
    """Verify the admin key for privileged endpoints.

    Open only when no admin key is configured AND verification runs in demo
    mode; a real deployment without an admin key rejects every call.
    """
    expected = state.config.auth.admin_api_key
    if not expected:
        if state.verification.demo:
            return "demo-mode"
        raise _reject(request, state, "not_configured", "X-Admin-Key")
    if not api_key:
        raise _reject(request, state, "missing_credential", "X-Admin-Key")
    if not _matches(api_key, expected):
        raise _reject(request, state, "invalid_credential", "X-Admin-Key")
    return api_key


async def verify_cron_secret(
    request: Request,
    secret: Optional[str] = Security(cron_secret_header),
    state: ServiceState = Depends(get_state),
) -> str:
    """Verify the cron secret. Without a configured secret the sweep is disabled."""
    expected = state.config.auth.cron_secret
    if not expected:
        raise _reject(request, state, "not_configured", "X-Cron-Secret")
    if not _matches(secret, expected):
        raise _reject(
            request, state, "missing_credential" if not secret else "invalid_credential", "X-Cron-Secret"
        )
    return secret


async def require_demo_mode(state: ServiceState = Depends(get_state)) -> None:
    if not state.verification.demo:
        raise ForbiddenError(
            "Not available in production mode",
            suggestion="Approvals arrive through the verification provider",
        )


# Create FastAPI application
app = FastAPI(
    title="KYB Compliance Gate API",
    description="KYB verification, sanctions rescreening and on-chain credential synchronisation",
    version=API_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error or illegal transition"},
    404: {"model": ErrorResponse, "description": "Unknown wallet"},
    502: {"model": ErrorResponse, "description": "Provider rejected the request"},
    503: {"model": ErrorResponse, "description": "Provider unavailable"},
}


@app.on_event("startup")
async def startup():
    """Wire configuration, database and providers on startup."""
    global _state
    if _state is not None:
        return

    logger.info("Starting KYB Compliance Gate API...")
    try:
        state = build_state()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise

    root_logger = logging.getLogger()
    root_logger.setLevel(state.config.logging.level.upper())
    for handler in root_logger.handlers:
        handler.setFormatter(logging.Formatter(state.config.logging.format))
    _state = state
    logger.info(
        "API ready: screening_demo=%s verification_demo=%s registry_enabled=%s",
        state.config.screening.demo,
        state.verification.demo,
        state.registry.enabled,
    )


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down KYB Compliance Gate API...")
    _executor.shutdown(wait=False)
    if _state is not None:
        _state.db.close()
    close_db()


@app.post(
    "/kyb/submit",
    response_model=TokenResponse,
    responses=ERROR_RESPONSES,
    summary="Submit a KYB application",
)
async def submit_kyb(
    body: SubmitRequest,
    request: Request,
    state: ServiceState = Depends(get_state),
):
    """Create or reactivate an institution and return a verification SDK token."""
    result = await run_blocking(
        request,
        state,
        state.lifecycle.submit,
        body.wallet_address,
        body.legal_name,
        body.jurisdiction,
        body.contact_email,
        raw_wallet=body.wallet_address,
    )
    return result.to_dict()


@app.get(
    "/kyb/status",
    responses=ERROR_RESPONSES,
    summary="KYB status for a wallet",
)
async def kyb_status(
    request: Request,
    wallet: Optional[str] = Query(default=None, description="Institution wallet"),
    state: ServiceState = Depends(get_state),
) -> Dict[str, Any]:
    """Compliance fields for the wallet, or ``{"kybStatus": "not_found"}``."""
    return await run_blocking(request, state, state.lifecycle.get_status, wallet, raw_wallet=wallet)


@app.get(
    "/kyb/refresh-token",
    response_model=TokenResponse,
    responses=ERROR_RESPONSES,
    summary="Refresh the verification SDK token",
)
async def refresh_token(
    request: Request,
    wallet: Optional[str] = Query(default=None),
    state: ServiceState = Depends(get_state),
):
    result = await run_blocking(request, state, state.lifecycle.refresh_token, wallet, raw_wallet=wallet)
    return result.to_dict()


@app.post(
    "/kyb/demo-approve",
    response_model=ApprovalResponse,
    response_model_exclude_none=True,
    responses={**ERROR_RESPONSES, 403: {"model": ErrorResponse, "description": "Real provider configured"}},
    summary="Approve a pending institution (demo mode only)",
    dependencies=[Depends(require_demo_mode)],
)
async def demo_approve(
    request: Request,
    wallet: Optional[str] = Query(default=None),
    state: ServiceState = Depends(get_state),
):
    """Approve instantly and write the on-chain credential.

    The approval stands even when the on-chain write fails; the response
    then carries ``onChainVerified: false`` and an ``error`` object.
    """
    result = await run_blocking(
        request, state, state.lifecycle.approve, wallet, KybAction.DEMO_APPROVE, raw_wallet=wallet
    )
    return result.to_dict()


@app.post(
    "/kyb/grant-buyer-role",
    response_model=GrantBuyerRoleResponse,
    responses={**ERROR_RESPONSES, 401: {"model": ErrorResponse, "description": "Missing or invalid admin key"}},
    summary="Grant the on-chain buyer role to a verified institution",
    dependencies=[Depends(verify_admin_key)],
)
async def grant_buyer_role(
    request: Request,
    wallet: Optional[str] = Query(default=None),
    state: ServiceState = Depends(get_state),
):
    return await run_blocking(request, state, state.lifecycle.grant_buyer_role, wallet, raw_wallet=wallet)


@app.post(
    "/kyb/webhook",
    response_model=WebhookAck,
    responses={401: {"model": ErrorResponse, "description": "Invalid payload signature"}},
    summary="Verification provider webhook",
)
async def kyb_webhook(request: Request, state: ServiceState = Depends(get_state)):
    """Acknowledge a provider event. No state transition is performed here."""
    payload = await request.body()
    if not state.verification.verify_webhook(payload, request.headers.get("X-Payload-Digest")):
        state.security.log_webhook_signature_failure(
            source=request.url.path,
            request_id=_request_id(request),
            payload_size=len(payload),
        )
        raise UnauthorizedError("Invalid webhook signature")

    try:
        event_type = json.loads(payload or b"{}").get("type")
    except (ValueError, AttributeError):
        event_type = None
    logger.info("Webhook acknowledged: type=%s", event_type)
    return {"ok": True}


@app.get(
    "/cron/rescreen",
    response_model=SweepResponse,
    response_model_exclude_none=True,
    responses={401: {"model": ErrorResponse, "description": "Missing or invalid cron secret"}},
    summary="Run the sanctions rescreening sweep",
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_rescreen(request: Request, state: ServiceState = Depends(get_state)):
    summary = await run_blocking(request, state, state.sweep.run)
    return summary.to_dict()


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Database health and cached registry reachability",
)
async def health_check(state: ServiceState = Depends(get_state)):
    """Always returns HTTP 200; degraded components are reported in the body."""
    loop = asyncio.get_running_loop()
    database_ok = await loop.run_in_executor(_executor, state.db.health_check)
    probe = await loop.run_in_executor(_executor, state.registry_health.get)

    healthy = database_ok and (probe["reachable"] or not state.registry.enabled)
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        database=database_ok,
        registry=RegistryHealth(
            enabled=state.registry.enabled,
            reachable=probe["reachable"],
            checked_at=probe["checkedAt"],
        ),
        demo={
            "screening": state.config.screening.demo,
            "verification": state.verification.demo,
        },
        version=API_VERSION,
    )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    api_config = get_config(CONFIG_PATH).api
    uvicorn.run(
        app,
        host=os.getenv("API_HOST", api_config.host),
        port=int(os.getenv("API_PORT", str(api_config.port))),
    )
