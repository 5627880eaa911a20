"""Domain event sinks fed by the aggregation engine during merges."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from token_aggregator.core.logging import get_logger
from token_aggregator.schemas.token import PriceUpdate, Token, VolumeSpike

log = get_logger("events")

PRICE_UPDATE = "price_update"
VOLUME_SPIKE = "volume_spike"
NEW_TOKEN = "new_token"


class EventSink(ABC):
    """Receives events synchronously while a merge is in progress."""

    @abstractmethod
    def on_price_update(self, event: PriceUpdate) -> None: ...

    @abstractmethod
    def on_volume_spike(self, event: VolumeSpike) -> None: ...

    @abstractmethod
    def on_new_token(self, token: Token) -> None: ...


class NullEventSink(EventSink):
    def on_price_update(self, event: PriceUpdate) -> None:
        pass

    def on_volume_spike(self, event: VolumeSpike) -> None:
        pass

    def on_new_token(self, token: Token) -> None:
        pass


class QueueEventSink(EventSink):
    """Pushes ``(kind, payload)`` tuples onto an asyncio queue.

    Consumers drain the queue at their own pace. When the queue is bounded
    and full, the event is dropped and logged.
    """

    def __init__(self, maxsize: int = 0):
        self.queue: "asyncio.Queue[Tuple[str, Dict[str, Any]]]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _put(self, kind: str, payload: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait((kind, payload))
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning(f"Event queue full, dropped {kind}")

    def on_price_update(self, event: PriceUpdate) -> None:
        self._put(PRICE_UPDATE, event.model_dump(mode="json"))

    def on_volume_spike(self, event: VolumeSpike) -> None:
        self._put(VOLUME_SPIKE, event.model_dump(mode="json"))

    def on_new_token(self, token: Token) -> None:
        self._put(NEW_TOKEN, token.model_dump(mode="json"))


def emit(sink: Optional[EventSink], kind: str, payload: Any) -> None:
    """Deliver one event, logging and discarding any subscriber error."""
    if sink is None:
        return
    handler = {
        PRICE_UPDATE: sink.on_price_update,
        VOLUME_SPIKE: sink.on_volume_spike,
        NEW_TOKEN: sink.on_new_token,
    }[kind]
    try:
        handler(payload)
    except Exception as exc:  # noqa: BLE001
        log.error(f"Event sink failed on {kind}: {exc}")
