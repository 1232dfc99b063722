"""
HTTP server and process entry points for kv-offload.

Routes:
- POST /ingest: place a record in the fast or cold tier
- GET /get/{key}: cache-aside lookup across local cache, fast and cold tier
- GET|POST /seed-old-keys?count=N: write backdated records for sweep testing
- GET /health: component health
- GET /metrics: Prometheus text export

The offload sweeper runs as its own process (``run_sweeper``) so that a
slow sweep never competes with request handling for the event loop.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from aiohttp import web

from kv_offload import __version__
from kv_offload.config import Settings, load_settings
from kv_offload.core.cold_tier import ColdTierStore, create_cold_tier
from kv_offload.core.fast_tier import FastTierClient, create_fast_tier
from kv_offload.core.ingestion import (
    DEFAULT_SEED_COUNT,
    IngestionService,
    seed_backdated,
)
from kv_offload.core.local_cache import LocalCache, create_local_cache
from kv_offload.core.pressure import PressureMonitor
from kv_offload.core.retrieval import RetrievalService
from kv_offload.core.sweeper import (
    OffloadSweeper,
    SweeperTask,
    SweepPolicy,
    startup_check,
)
from kv_offload.errors import (
    ErrorContext,
    FastTierError,
    FatalStartupFailure,
    InvalidInput,
    KeyNotFoundError,
    KVOError,
    TransientTierFailure,
)
from kv_offload.monitoring import (
    HealthChecker,
    HealthStatus,
    check_cold_tier_health,
    check_fast_tier_health,
    check_sweeper_health,
    configure_logging,
    get_metrics,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = structlog.get_logger()


# =============================================================================
# Server State
# =============================================================================


@dataclass
class ServerState:
    """Container for server runtime state."""

    settings: Settings
    fast_tier: FastTierClient
    cold_tier: ColdTierStore
    local_cache: LocalCache
    pressure: PressureMonitor
    ingestion: IngestionService
    retrieval: RetrievalService
    health_checker: HealthChecker


STATE_KEY = web.AppKey("state", ServerState)


def build_state(
    settings: Settings,
    fast_tier: FastTierClient | None = None,
    cold_tier: ColdTierStore | None = None,
) -> ServerState:
    """
    Wire the request-path components.

    Tiers may be passed in to share them with tests; otherwise they are
    created from settings.
    """
    if fast_tier is None:
        fast_tier = create_fast_tier(settings.fast)
    if cold_tier is None:
        cold_tier = create_cold_tier(settings.cold)
    local_cache = create_local_cache(
        settings.local_cache.enabled, settings.local_cache.capacity
    )
    pressure = PressureMonitor(fast_tier)

    health_checker = HealthChecker(version=__version__)
    health_checker.register_check("fast_tier", lambda: check_fast_tier_health(fast_tier))
    health_checker.register_check("cold_tier", lambda: check_cold_tier_health(cold_tier))

    return ServerState(
        settings=settings,
        fast_tier=fast_tier,
        cold_tier=cold_tier,
        local_cache=local_cache,
        pressure=pressure,
        ingestion=IngestionService(
            fast_tier,
            cold_tier,
            pressure,
            local_cache,
            soft_threshold=settings.pressure.soft_threshold,
        ),
        retrieval=RetrievalService(fast_tier, cold_tier, local_cache),
        health_checker=health_checker,
    )


# =============================================================================
# Handlers
# =============================================================================


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"ok": False, "error": message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render errors that escape a handler as JSON."""
    try:
        return await handler(request)
    except KVOError as e:
        status = 503 if isinstance(e, TransientTierFailure) else 500
        return web.json_response({"ok": False, **e.to_dict()}, status=status)


async def handle_ingest(request: web.Request) -> web.Response:
    """Accept ``{key, value, ttl_sec?, cache_hint?}``."""
    state = request.app[STATE_KEY]
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "invalid event")

    try:
        async with ErrorContext("ingest", logger=logger):
            result = await state.ingestion.ingest_dict(body)
    except InvalidInput as e:
        return _error(400, f"invalid event: {e}")
    return web.json_response(result.to_dict())


async def handle_get(request: web.Request) -> web.Response:
    """Look a key up; the key is everything after ``/get/``."""
    state = request.app[STATE_KEY]
    key = request.match_info.get("key", "")
    try:
        async with ErrorContext("retrieve", logger=logger, key=key):
            result = await state.retrieval.retrieve(key)
    except InvalidInput as e:
        return _error(400, str(e))
    except KeyNotFoundError as e:
        return _error(404, str(e))
    return web.json_response(result.to_dict())


async def handle_seed(request: web.Request) -> web.Response:
    """Write backdated records so a sweep has something to move."""
    state = request.app[STATE_KEY]
    try:
        count = int(request.query.get("count", DEFAULT_SEED_COUNT))
    except ValueError:
        count = DEFAULT_SEED_COUNT

    try:
        seeded = await seed_backdated(state.fast_tier, count)
    except FastTierError as e:
        logger.warning("Seeding failed", error=str(e))
        return _error(503, str(e))

    interval = state.settings.sweeper.interval_seconds
    return web.json_response(
        {
            "ok": True,
            "seeded": seeded,
            "message": (
                "keys written with _ts 2 min ago; "
                f"the sweeper moves them within {interval:g}s once aged"
            ),
        }
    )


async def handle_health(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    health = await state.health_checker.check_all()
    status = 503 if health.status == HealthStatus.UNHEALTHY else 200
    return web.json_response(health.to_dict(), status=status)


async def handle_metrics(request: web.Request) -> web.Response:
    text = await get_metrics().export_prometheus()
    return web.Response(text=text, content_type="text/plain")


# =============================================================================
# Application
# =============================================================================


def create_app(
    settings: Settings | None = None,
    fast_tier: FastTierClient | None = None,
    cold_tier: ColdTierStore | None = None,
) -> web.Application:
    """Build the aiohttp application."""
    settings = settings or load_settings()

    async def lifespan(app: web.Application) -> AsyncIterator[None]:
        """Manage server lifecycle - initialize and cleanup resources."""
        logger.info(
            "Starting kv-offload server",
            version=__version__,
            fast_backend=settings.fast.backend,
            cold_backend=settings.cold.backend,
            cold_root=str(settings.cold.root_path),
        )
        state = build_state(settings, fast_tier, cold_tier)

        # Startup ping is advisory; ingestion falls back to the cold tier
        try:
            await state.fast_tier.ping()
        except FastTierError as e:
            logger.warning("Fast tier unreachable at startup", error=str(e))

        app[STATE_KEY] = state
        logger.info("Server components initialized")
        try:
            yield
        finally:
            logger.info("Shutting down kv-offload server")
            await state.fast_tier.close()
            logger.info("Shutdown complete")

    app = web.Application(middlewares=[error_middleware])
    app.cleanup_ctx.append(lifespan)
    app.router.add_post("/ingest", handle_ingest)
    app.router.add_get("/get/{key:.*}", handle_get)
    app.router.add_get("/seed-old-keys", handle_seed)
    app.router.add_post("/seed-old-keys", handle_seed)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/metrics", handle_metrics)
    return app


# =============================================================================
# Entry Points
# =============================================================================


def _install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass


async def run_server(settings: Settings | None = None) -> None:
    """Serve HTTP until SIGINT or SIGTERM."""
    settings = settings or load_settings()
    configure_logging(settings.log_level.value, settings.log_format == "json")

    runner = web.AppRunner(create_app(settings), access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, settings.server.host, settings.server.port)
    await site.start()
    logger.info("Listening", host=settings.server.host, port=settings.server.port)

    stop = asyncio.Event()
    _install_stop_handlers(stop)
    try:
        await stop.wait()
    finally:
        await runner.cleanup()


async def run_sweeper(
    settings: Settings | None = None,
    fast_tier: FastTierClient | None = None,
    cold_tier: ColdTierStore | None = None,
) -> int:
    """
    Run the offload sweeper until SIGINT or SIGTERM.

    Returns:
        Process exit code: 1 if the fast tier was unreachable at startup.
    """
    settings = settings or load_settings()
    configure_logging(settings.log_level.value, settings.log_format == "json")

    if fast_tier is None:
        fast_tier = create_fast_tier(settings.fast)
    if cold_tier is None:
        cold_tier = create_cold_tier(settings.cold)
    try:
        try:
            await startup_check(
                fast_tier, cold_tier, attempts=settings.sweeper.startup_attempts
            )
        except FatalStartupFailure as e:
            logger.error("Sweeper cannot start", **e.to_log_dict())
            return 1

        sweeper = OffloadSweeper(
            fast_tier,
            cold_tier,
            PressureMonitor(fast_tier),
            SweepPolicy.from_config(settings.sweeper, settings.pressure),
        )
        task = SweeperTask(sweeper, interval_seconds=settings.sweeper.interval_seconds)

        stop = asyncio.Event()
        _install_stop_handlers(stop)
        await task.start()
        try:
            await stop.wait()
        finally:
            await task.stop(timeout=settings.sweeper.interval_seconds)
        health = await check_sweeper_health(task)
        logger.info("Sweeper exiting", **health.metadata)
        return 0
    finally:
        await fast_tier.close()


def main() -> None:
    """Console entry point for the HTTP server."""
    asyncio.run(run_server())


def sweeper_main() -> int:
    """Console entry point for the offload sweeper."""
    return asyncio.run(run_sweeper())

