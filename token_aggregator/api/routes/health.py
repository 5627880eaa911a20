"""Health routes - liveness, readiness and service statistics."""

import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from token_aggregator.api.deps import get_aggregator, get_hub, get_scheduler, ok
from token_aggregator.core.config import settings
from token_aggregator.realtime.hub import ConnectionHub
from token_aggregator.scheduler import UpdateScheduler
from token_aggregator.schemas.api import HealthStatus, ServiceStatus
from token_aggregator.services.aggregator import TokenAggregator

router = APIRouter(prefix="/health", tags=["health"])

_STARTED = time.monotonic()


def _uptime_ms() -> int:
    return int((time.monotonic() - _STARTED) * 1000)


def format_uptime(ms: int) -> str:
    seconds = ms // 1000
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
    if days:
        return f"{days}d {hours % 24}h {minutes % 60}m"
    if hours:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


@router.get("")
async def health(
    request: Request,
    response: Response,
    aggregator: TokenAggregator = Depends(get_aggregator),
    hub: ConnectionHub = Depends(get_hub),
):
    """
    Overall service health.

    Returns 503 when no tokens are loaded or the cache backend is unreachable.
    """
    stats = aggregator.get_stats()
    active = set(stats["sources"])
    now = datetime.now(timezone.utc)
    cache_up = stats["cache"]["connected"]

    services = {
        "cache": ServiceStatus(status="up" if cache_up else "down", last_check=now),
        "websocket": ServiceStatus(status="up", last_check=now),
    }
    for source in aggregator.sources:
        services[source.name] = ServiceStatus(
            status="up" if source.name in active else "down",
            last_check=stats["last_refresh"],
        )

    status = "healthy"
    if stats["total_tokens"] == 0 or not cache_up:
        status = "degraded"
        response.status_code = 503

    return ok(
        request,
        HealthStatus(
            status=status,
            uptime_ms=_uptime_ms(),
            services=services,
            stats={
                "total_tokens": stats["total_tokens"],
                "active_connections": hub.stats()["active_connections"],
                "cache_hit_rate": stats["cache"]["hit_rate"],
            },
        ),
    )


@router.get("/live")
def liveness():
    """Liveness probe - the process is up."""
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/ready")
def readiness(response: Response, aggregator: TokenAggregator = Depends(get_aggregator)):
    """Readiness probe - at least one token has been loaded."""
    total = len(aggregator.get_all_tokens())
    if total > 0:
        return {"status": "ready", "tokens": total}
    response.status_code = 503
    return {"status": "not_ready", "message": "No tokens loaded yet"}


@router.get("/stats")
async def service_stats(
    request: Request,
    aggregator: TokenAggregator = Depends(get_aggregator),
    hub: ConnectionHub = Depends(get_hub),
    scheduler: Optional[UpdateScheduler] = Depends(get_scheduler),
):
    stats = aggregator.get_stats()
    uptime = _uptime_ms()
    ws = hub.stats()
    return ok(
        request,
        {
            "uptime_ms": uptime,
            "uptime_formatted": format_uptime(uptime),
            "aggregator": {
                "total_tokens": stats["total_tokens"],
                "active_sources": stats["sources"],
                "last_refresh": stats["last_refresh"],
                "reference_rate": stats["reference_rate"],
            },
            "cache": stats["cache"],
            "sources": aggregator.source_status(),
            "websocket": {
                "active_connections": ws["active_connections"],
                "total_connections": ws["total_connections"],
                "active_subscriptions": ws["subscriptions"],
            },
            "scheduler": scheduler.status() if scheduler else {"running": False, "jobs": []},
            "config": {
                "cache_ttl": settings.CACHE_TTL_SECONDS,
                "price_update_interval": settings.PRICE_UPDATE_INTERVAL_SECONDS,
                "full_refresh_interval": settings.FULL_REFRESH_INTERVAL_SECONDS,
            },
        },
    )
