from __future__ import annotations

import contextlib
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route

from settlement.engine.poller import ScorePoller
from settlement.engine.service import SettlementService
from settlement.engine.writer import SettlementWriter
from settlement.feed.client import EspnFeedClient
from settlement.logic.exceptions import (
    ConfigurationError,
    PersistenceFailureError,
    PoolNotFoundError,
    SettlementConflictError,
    SettlementError,
)
from settlement.server.settings import SettlementSettings
from settlement.server.types import SimulateRequest
from shared.build_info import build_metadata
from shared.db import Database, SqlitePoolRepository
from shared.logging import setup_logging

logger = structlog.get_logger()

if TYPE_CHECKING:
    from starlette.requests import Request

    from settlement.feed.protocol import ScoreFeed
    from shared.dal.pool_repository import PoolRepository

_MAX_REQUEST_BODY_SIZE = 4096
_DEFAULT_AUDIT_LIMIT = 100
_MAX_AUDIT_LIMIT = 500


def _error_response(error: SettlementError) -> JSONResponse:
    if isinstance(error, PoolNotFoundError):
        status_code = 404
    elif isinstance(error, (ConfigurationError, SettlementConflictError)):
        status_code = 409
    elif isinstance(error, PersistenceFailureError):
        status_code = 503
    else:
        status_code = 500
    return JSONResponse({"error": str(error), "type": type(error).__name__}, status_code=status_code)


async def _guarded(call: Callable[[], Awaitable[JSONResponse]]) -> JSONResponse:
    try:
        return await call()
    except SettlementError as e:
        logger.warning("request failed", error=str(e), error_type=type(e).__name__)
        return _error_response(e)


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", **build_metadata()})


async def status(request: Request) -> JSONResponse:
    poller: ScorePoller = request.app.state.poller
    return JSONResponse(
        {
            "status": "ok",
            **build_metadata(),
            "poller_running": poller.running,
            "polling_pools": poller.polling_pool_ids,
        },
    )


async def pool_scores(request: Request) -> JSONResponse:
    service: SettlementService = request.app.state.service
    pool_id = request.path_params["pool_id"]

    async def call() -> JSONResponse:
        pool, health_state = await service.get_pool(pool_id)
        return JSONResponse(
            {
                "pool_id": pool.pool_id,
                "game_id": pool.game_id,
                "is_locked": pool.is_locked,
                "version": pool.version,
                "scores": pool.scores.model_dump(mode="json"),
                "axis_numbers": pool.axis_numbers.model_dump(mode="json") if pool.axis_numbers else None,
                "health": health_state.model_dump(mode="json"),
            },
        )

    return await _guarded(call)


async def pool_winners(request: Request) -> JSONResponse:
    service: SettlementService = request.app.state.service
    pool_id = request.path_params["pool_id"]

    async def call() -> JSONResponse:
        winners = await service.get_winners(pool_id)
        total = sum((w.amount for w in winners), Decimal(0))
        return JSONResponse(
            {
                "pool_id": pool_id,
                "winners": [w.model_dump(mode="json") for w in winners],
                "total_paid": str(total),
            },
        )

    return await _guarded(call)


async def pool_audit(request: Request) -> JSONResponse:
    service: SettlementService = request.app.state.service
    pool_id = request.path_params["pool_id"]
    try:
        limit = int(request.query_params.get("limit", _DEFAULT_AUDIT_LIMIT))
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    if not 1 <= limit <= _MAX_AUDIT_LIMIT:
        return JSONResponse({"error": f"limit must be between 1 and {_MAX_AUDIT_LIMIT}"}, status_code=400)

    async def call() -> JSONResponse:
        events = await service.get_audit_events(pool_id, limit)
        return JSONResponse({"pool_id": pool_id, "events": [e.model_dump(mode="json") for e in events]})

    return await _guarded(call)


async def simulate(request: Request) -> JSONResponse:
    service: SettlementService = request.app.state.service
    pool_id = request.path_params["pool_id"]

    try:
        raw_body = await request.body()
        if len(raw_body) > _MAX_REQUEST_BODY_SIZE:
            return JSONResponse({"error": "Request body too large"}, status_code=413)
        body = json.loads(raw_body)
        simulate_request = SimulateRequest(**body)
    except (ValueError, TypeError, json.JSONDecodeError, UnicodeDecodeError, ValidationError):
        return JSONResponse({"error": "Invalid request body"}, status_code=400)

    async def call() -> JSONResponse:
        result = await service.simulate(pool_id, simulate_request.to_snapshot())
        return JSONResponse(result.model_dump(mode="json"))

    return await _guarded(call)


async def resettle(request: Request) -> JSONResponse:
    service: SettlementService = request.app.state.service
    pool_id = request.path_params["pool_id"]

    async def call() -> JSONResponse:
        result = await service.resettle(pool_id)
        return JSONResponse(result.model_dump(mode="json"))

    return await _guarded(call)


async def reset(request: Request) -> JSONResponse:
    service: SettlementService = request.app.state.service
    pool_id = request.path_params["pool_id"]

    async def call() -> JSONResponse:
        pool = await service.reset(pool_id)
        return JSONResponse({"pool_id": pool.pool_id, "version": pool.version, "is_locked": pool.is_locked})

    return await _guarded(call)


async def lock(request: Request) -> JSONResponse:
    service: SettlementService = request.app.state.service
    pool_id = request.path_params["pool_id"]

    async def call() -> JSONResponse:
        pool = await service.lock_pool(pool_id)
        return JSONResponse(
            {
                "pool_id": pool.pool_id,
                "version": pool.version,
                "is_locked": pool.is_locked,
                "axis_numbers": pool.axis_numbers.model_dump(mode="json") if pool.axis_numbers else None,
            },
        )

    return await _guarded(call)


async def resume(request: Request) -> JSONResponse:
    service: SettlementService = request.app.state.service
    pool_id = request.path_params["pool_id"]

    async def call() -> JSONResponse:
        health_state = await service.resume(pool_id)
        return JSONResponse({"pool_id": pool_id, "health": health_state.model_dump(mode="json")})

    return await _guarded(call)


def create_app(
    settings: SettlementSettings | None = None,
    repository: PoolRepository | None = None,
    feed: ScoreFeed | None = None,
) -> Starlette:
    if settings is None:  # pragma: no cover
        settings = SettlementSettings()

    # When the app opens its own database or feed client, it owns their lifecycle.
    owned_db: Database | None = None
    owns_feed = feed is None

    if repository is None:
        db = Database(settings.database_path)
        db.connect()
        owned_db = db
        repository = SqlitePoolRepository(db)

    if feed is None:
        feed = EspnFeedClient(settings.feed_base_url, timeout=settings.feed_timeout_seconds)

    writer = SettlementWriter(repository, max_attempts=settings.settlement_max_attempts)
    service = SettlementService(repository, writer)
    poller = ScorePoller(
        repository,
        feed,
        service,
        live_interval=settings.poll_interval_live_seconds,
        idle_interval=settings.poll_interval_idle_seconds,
        scan_interval=settings.pool_scan_interval_seconds,
        max_attempts=settings.fetch_max_attempts,
        backoff_base=settings.backoff_base_seconds,
        backoff_max=settings.backoff_max_seconds,
    )

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncIterator[None]:
        if settings.poller_enabled:
            poller.start()
        try:
            yield
        finally:
            await poller.stop()
            if owns_feed:
                await feed.aclose()
            if owned_db is not None:
                owned_db.close()

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/status", status, methods=["GET"]),
        Route("/pools/{pool_id}/scores", pool_scores, methods=["GET"]),
        Route("/pools/{pool_id}/winners", pool_winners, methods=["GET"]),
        Route("/pools/{pool_id}/audit", pool_audit, methods=["GET"]),
        Route("/pools/{pool_id}/simulate", simulate, methods=["POST"]),
        Route("/pools/{pool_id}/resettle", resettle, methods=["POST"]),
        Route("/pools/{pool_id}/reset", reset, methods=["POST"]),
        Route("/pools/{pool_id}/lock", lock, methods=["POST"]),
        Route("/pools/{pool_id}/resume", resume, methods=["POST"]),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )
    app.state.settings = settings
    app.state.repository = repository
    app.state.service = service
    app.state.poller = poller

    logger.info("settlement server ready", poller_enabled=settings.poller_enabled)
    return app


def get_app() -> Starlette:  # pragma: no cover  # deadcode: ignore
    """ASGI application factory for production use (e.g., uvicorn --factory)."""
    _settings = SettlementSettings()
    setup_logging(log_dir=_settings.log_dir)
    return create_app(settings=_settings)
