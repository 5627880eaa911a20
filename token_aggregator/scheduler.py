"""Periodic background jobs: live broadcasts, full refreshes, reference rate."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict

from token_aggregator.core.config import Settings, settings
from token_aggregator.core.logging import get_logger
from token_aggregator.realtime.hub import ConnectionHub
from token_aggregator.services.aggregator import TokenAggregator

log = get_logger("scheduler")


class UpdateScheduler:
    """Three independent asyncio loops driven by fixed intervals.

    Usage:
        scheduler = UpdateScheduler(aggregator, hub)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        aggregator: TokenAggregator,
        hub: ConnectionHub,
        price_interval: float = 10,
        refresh_interval: float = 60,
        reference_rate_interval: float = 30,
        batch_size: int = 50,
    ):
        self.aggregator = aggregator
        self.hub = hub
        self.batch_size = batch_size
        self._intervals = {
            "price_update": price_interval,
            "full_refresh": refresh_interval,
            "reference_rate": reference_rate_interval,
        }
        self._jobs: Dict[str, Callable[[], Awaitable[None]]] = {
            "price_update": self.run_price_update,
            "full_refresh": self.run_full_refresh,
            "reference_rate": self.run_reference_rate,
        }
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self.running:
            log.warning("Scheduler is already running")
            return
        for name, job in self._jobs.items():
            self._tasks[name] = asyncio.create_task(self._loop(name, job, self._intervals[name]))
        log.info(
            f"Scheduler started: price updates every {self._intervals['price_update']}s, "
            f"full refresh every {self._intervals['full_refresh']}s"
        )

    async def stop(self) -> None:
        if not self.running:
            log.warning("Scheduler is not running")
            return
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        log.info("Scheduler stopped")

    async def _loop(self, name: str, job: Callable[[], Awaitable[None]], interval: float) -> None:
        log.info(f"Scheduled job '{name}' started (interval: {interval}s)")
        while True:
            try:
                await asyncio.sleep(interval)
                await job()
            except asyncio.CancelledError:
                log.info(f"Scheduled job '{name}' cancelled")
                break
            except Exception as exc:
                # Continue running despite errors
                log.exception(f"Scheduled job '{name}' error: {exc}")

    async def run_price_update(self) -> None:
        tokens = self.aggregator.get_all_tokens()
        if tokens:
            self.hub.broadcast_batch(tokens[: self.batch_size])
        log.debug(f"Price update completed, {len(tokens)} tokens")

    async def run_full_refresh(self) -> None:
        try:
            await self.aggregator.refresh_all()
        except Exception as exc:
            log.exception(f"Full refresh failed: {exc}")
            self.hub.broadcast_error("REFRESH_FAILED", "Failed to refresh token data")
            return
        tokens = self.aggregator.get_all_tokens()
        self.hub.broadcast_batch(tokens)
        log.info(f"Full refresh broadcast {len(tokens)} tokens")

    async def run_reference_rate(self) -> None:
        await self.aggregator.refresh_reference_rate()

    async def trigger_refresh(self) -> None:
        log.info("Manual refresh triggered")
        await self.run_full_refresh()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "jobs": [
                {"name": name, "running": name in self._tasks and not self._tasks[name].done()}
                for name in self._jobs
            ],
        }


def create_scheduler(aggregator: TokenAggregator, hub: ConnectionHub, config: Settings = settings) -> UpdateScheduler:
    """Build a scheduler from application settings."""
    return UpdateScheduler(
        aggregator,
        hub,
        price_interval=config.PRICE_UPDATE_INTERVAL_SECONDS,
        refresh_interval=config.FULL_REFRESH_INTERVAL_SECONDS,
        reference_rate_interval=config.REFERENCE_RATE_INTERVAL_SECONDS,
        batch_size=config.BATCH_BROADCAST_SIZE,
    )
