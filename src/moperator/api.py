# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the relay.

This module provides the operator REST API. It includes:

- Ingestion of parsed emails for a tenant (``POST /emails``)
- Retry queue inspection, processing and dead-letter replay
- Agent health summary, on-demand sweep and manual re-enable
- Prometheus metrics exposure

Every endpoint except ``/health`` is gated by the fixed-window rate limiter:
reads use the default allowance per client, writes the strict allowance per
``admin:{client}`` and ingestion the tenant allowance per ``tenant:{id}``.
Writes require the ``X-API-Token`` header when a token is configured.

Example:
    Creating and running the API application::

        from moperator.core import RelayCore
        from moperator.api import create_app

        core = RelayCore(config)
        app = create_app(core, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

import logging
import secrets
from typing import Any, AsyncContextManager, Callable, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict

from .core import RelayCore
from .models import EmailSnapshot, RateLimitConfig
from .rate_limit import get_client_id, retry_after_seconds

logger = logging.getLogger(__name__)

service: RelayCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


class RateLimitExceeded(Exception):
    """Raised by the rate limit dependencies; rendered as HTTP 429."""

    def __init__(self, reset_at: int):
        super().__init__("Too many requests")
        self.reset_at = reset_at


def _service() -> RelayCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or not secrets.compare_digest(api_token, expected):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


async def _enforce(client_key: str, config: RateLimitConfig, scope: str) -> None:
    svc = _service()
    result = await svc.rate_limiter.check(client_key, config)
    if not result.allowed:
        svc.metrics.inc_rate_limited(scope)
        raise RateLimitExceeded(result.reset_at)


def _per_minute(limit: int) -> RateLimitConfig:
    return RateLimitConfig(window_ms=60_000, max_requests=limit)


async def read_limit(request: Request) -> None:
    svc = _service()
    await _enforce(get_client_id(request.headers), _per_minute(svc.config.default_per_minute), "read")


async def write_limit(request: Request) -> None:
    svc = _service()
    client = get_client_id(request.headers)
    await _enforce(f"admin:{client}", _per_minute(svc.config.strict_per_minute), "write")


auth_dependency = Depends(require_token)
read_dependencies = [Depends(read_limit)]
write_dependencies = [Depends(write_limit), auth_dependency]


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class IngestPayload(BaseModel):
    """Parsed email routed for a tenant; labels are classified when omitted."""
    model_config = ConfigDict(populate_by_name=True)
    tenant_id: str
    email: EmailSnapshot
    labels: Optional[List[str]] = None
    reason: Optional[str] = None


class ItemsResponse(BaseModel):
    items: List[dict[str, Any]]
    count: int


def create_app(
    svc: RelayCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`moperator.core.RelayCore`.
    api_token:
        Optional secret protecting write endpoints through ``X-API-Token``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    global service
    service = svc

    api = FastAPI(title="Moperator Relay", lifespan=lifespan)
    api.state.api_token = api_token

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        retry_after = retry_after_seconds(exc.reset_at)
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests", "retryAfter": retry_after},
            headers={"Retry-After": str(retry_after)},
        )

    @api.get("/health")
    async def health():
        """Liveness endpoint (no authentication, no rate limit)."""
        return {"status": "ok"}

    @api.post("/emails", dependencies=[auth_dependency])
    async def ingest_email(payload: IngestPayload):
        """Route a parsed email to the tenant's subscribed agents."""
        svc_ = _service()
        tenant_limit = await svc_.rate_limiter.check_tenant(
            payload.tenant_id, svc_.config.tenant_per_minute
        )
        if not tenant_limit.allowed:
            svc_.metrics.inc_rate_limited("tenant")
            raise RateLimitExceeded(tenant_limit.reset_at)
        result = await svc_.ingest_email(
            payload.tenant_id, payload.email, labels=payload.labels, reason=payload.reason
        )
        return {"ok": True, **result.to_dict()}

    @api.get("/health/agents", dependencies=read_dependencies)
    async def health_agents():
        """Every agent's health status and aggregate counts."""
        return await _service().health.summary()

    @api.post("/health/check", dependencies=write_dependencies)
    async def health_check():
        """Run a health sweep over all active agents now."""
        stats = await _service().health.check_all_agents()
        return stats.to_dict()

    @api.post("/agents/{agent_id}/enable", dependencies=write_dependencies)
    async def enable_agent(agent_id: str, tenant_id: Optional[str] = None):
        """Re-enable an auto-disabled agent and reset its failure count."""
        agent = await _service().health.re_enable_agent(agent_id, tenant_id)
        if agent is None:
            raise HTTPException(404, "Agent not found")
        return {"agent": agent.to_dict(), "message": "Agent re-enabled successfully"}

    @api.get("/retry/stats", dependencies=read_dependencies)
    async def retry_stats():
        stats = await _service().retry_queue.stats()
        return stats.to_dict()

    @api.get("/retry/pending", response_model=ItemsResponse, dependencies=read_dependencies)
    async def retry_pending():
        items = await _service().retry_queue.list_pending()
        return ItemsResponse(items=[item.to_dict() for item in items], count=len(items))

    @api.get("/retry/dead", response_model=ItemsResponse, dependencies=read_dependencies)
    async def retry_dead():
        items = await _service().retry_queue.list_dead_letters()
        return ItemsResponse(items=[item.to_dict() for item in items], count=len(items))

    @api.post("/retry/process", dependencies=write_dependencies)
    async def retry_process():
        """Drain due retry items now."""
        stats = await _service().retry_queue.process()
        return stats.to_dict()

    @api.post("/retry/dead/{item_id}/replay", dependencies=write_dependencies)
    async def retry_replay(item_id: str):
        """Queue a fresh delivery for a dead-lettered item."""
        item = await _service().retry_queue.replay_dead_letter(item_id)
        if item is None:
            raise HTTPException(404, f"Dead letter '{item_id}' not found")
        return {"ok": True, "item": item.to_dict()}

    @api.post("/run-now", response_model=CommandStatus, response_model_exclude_none=True, dependencies=write_dependencies)
    async def run_now():
        """Wake the scheduler loop for an immediate retry and health pass."""
        _service().run_now()
        return CommandStatus(ok=True)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api
