import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from token_aggregator.api.deps import ApiError, response_meta
from token_aggregator.api.routes import health_router, tokens_router, ws_router
from token_aggregator.core.config import settings
from token_aggregator.core.errors import InitializationError
from token_aggregator.core.logging import get_logger
from token_aggregator.ingestion.dexscreener import DexScreenerSource
from token_aggregator.ingestion.geckoterminal import GeckoTerminalSource
from token_aggregator.ingestion.jupiter import JupiterSource
from token_aggregator.realtime.hub import ConnectionHub
from token_aggregator.scheduler import UpdateScheduler, create_scheduler
from token_aggregator.schemas.api import ApiResponse, ErrorBody
from token_aggregator.services.aggregator import TokenAggregator
from token_aggregator.services.cache import MemoryCache, RedisCache, create_cache

log = get_logger("app")


def build_aggregator(hub: ConnectionHub) -> TokenAggregator:
    """Wire sources, cache and event sink from settings."""
    return TokenAggregator(
        cache=create_cache(settings),
        primary=DexScreenerSource(),
        discovery=JupiterSource(),
        pools=GeckoTerminalSource(),
        event_sink=hub,
        cache_ttl=settings.CACHE_TTL_SECONDS,
        default_page_size=settings.DEFAULT_PAGE_SIZE,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Log environment mode
    log.info(f"Starting application in {settings.ENV.upper()} mode")
    if settings.is_production:
        log.info("Production mode: Debug disabled, docs disabled, stricter logging")
    else:
        log.info("Development mode: Debug enabled, docs available")

    hub = ConnectionHub()
    aggregator = build_aggregator(hub)
    cache = aggregator.cache
    if isinstance(cache, RedisCache):
        await cache.connect()
    elif isinstance(cache, MemoryCache):
        cache.start_sweeper(settings.CACHE_SWEEP_INTERVAL_SECONDS)

    app.state.hub = hub
    app.state.aggregator = aggregator

    # Startup is aborted when the first refresh cannot run at all
    try:
        await aggregator.initialize()
    except InitializationError:
        log.exception("Failed to initialize token aggregator on startup")
        await cache.close()
        await aggregator.aclose()
        raise

    scheduler: Optional[UpdateScheduler] = None
    if settings.SCHEDULER_ENABLED:
        log.info("Starting update scheduler...")
        scheduler = create_scheduler(aggregator, hub)
        scheduler.start()
    else:
        log.info("Scheduler is disabled (SCHEDULER_ENABLED=false)")
    app.state.scheduler = scheduler

    yield

    # Shutdown
    log.info("Shutting down services...")
    if scheduler:
        await scheduler.stop()
    await hub.shutdown()
    await cache.close()
    await aggregator.aclose()
    log.info("Application shutdown complete")


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="Token Aggregator",
        description="Real-time token market data merged from multiple DEX sources",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else None,
        # Disable docs in production for security
        docs_url="/docs" if settings.docs_enabled else None,
        redoc_url="/redoc" if settings.docs_enabled else None,
        openapi_url="/openapi.json" if settings.docs_enabled else None,
        # Debug mode only in development
        debug=settings.debug_enabled,
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request.state.request_id = str(uuid.uuid4())
        request.state.started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        log.debug(f"{request.method} {request.url.path} -> {response.status_code}")
        return response

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        body = ApiResponse(
            success=False,
            error=ErrorBody(code=exc.code, message=exc.message),
            meta=response_meta(request),
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.get("/", tags=["meta"])
    def root():
        return {
            "name": "Token Aggregator",
            "version": "1.0.0",
            "endpoints": {
                "tokens": "/api/tokens",
                "search": "/api/tokens/search?q=",
                "health": "/api/health",
                "stats": "/api/health/stats",
                "websocket": "/ws",
            },
        }

    app.include_router(tokens_router, prefix="/api")
    app.include_router(health_router, prefix="/api")
    app.include_router(ws_router)
    return app


app = create_app()
