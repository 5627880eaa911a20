"""WebSocket fan-out for live token events.

The hub is the aggregator's event sink. Merge callbacks are synchronous, so
each outgoing frame is scheduled as a task on the running loop rather than
awaited in place.

Frames in both directions are JSON objects ``{"event", "data", "timestamp"}``.
Clients may send ``subscribe`` (with ``filters`` and/or a ``tokens`` whitelist),
``unsubscribe`` and ``ping``.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from token_aggregator.core.logging import get_logger
from token_aggregator.schemas.query import TokenFilter, TokenSort
from token_aggregator.schemas.token import PriceUpdate, Token, VolumeSpike, utcnow
from token_aggregator.services.events import NEW_TOKEN, PRICE_UPDATE, VOLUME_SPIKE, EventSink

log = get_logger("realtime.hub")


class ClientSubscription(BaseModel):
    filters: Optional[TokenFilter] = None
    sort: Optional[TokenSort] = None
    tokens: List[str] = Field(default_factory=list)

    @property
    def active(self) -> bool:
        return bool(self.tokens) or self.filters is not None

    def wants(self, address: str) -> bool:
        return not self.tokens or address in self.tokens

    def accepts(self, token: Token) -> bool:
        if not self.wants(token.token_address):
            return False
        f = self.filters
        if f is None:
            return True
        if f.min_volume is not None and token.volume_usd < f.min_volume:
            return False
        if f.max_volume is not None and token.volume_usd > f.max_volume:
            return False
        if f.min_market_cap is not None and token.market_cap_usd < f.min_market_cap:
            return False
        if f.min_liquidity is not None and token.liquidity_usd < f.min_liquidity:
            return False
        if f.protocol and token.protocol.lower() != f.protocol.lower():
            return False
        return True


class ConnectedClient:
    def __init__(self, client_id: str, websocket: WebSocket):
        self.client_id = client_id
        self.websocket = websocket
        self.subscription = ClientSubscription()
        self.connected_at: datetime = utcnow()


def message(event: str, data: Any) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"event": event, "data": data, "timestamp": utcnow().isoformat()}


class ConnectionHub(EventSink):
    """Tracks live clients and routes events according to their subscriptions."""

    def __init__(self) -> None:
        self.clients: Dict[str, ConnectedClient] = {}
        self.total_connections = 0
        self._pending: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def connect(self, websocket: WebSocket) -> ConnectedClient:
        await websocket.accept()
        client = ConnectedClient(uuid.uuid4().hex, websocket)
        self.clients[client.client_id] = client
        self.total_connections += 1
        log.info(f"Client connected: {client.client_id} (total: {len(self.clients)})")
        await self._send(
            client,
            message(
                "connected",
                {
                    "client_id": client.client_id,
                    "message": "Connected to token aggregator",
                    "server_time": utcnow().isoformat(),
                },
            ),
        )
        return client

    def disconnect(self, client_id: str, reason: str = "closed") -> None:
        if self.clients.pop(client_id, None) is not None:
            log.info(f"Client disconnected: {client_id} (reason: {reason}, remaining: {len(self.clients)})")

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client session until it disconnects."""
        client = await self.connect(websocket)
        reason = "error"
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_message(client, raw)
        except WebSocketDisconnect as exc:
            reason = f"code {exc.code}"
        finally:
            self.disconnect(client.client_id, reason=reason)

    async def handle_message(self, client: ConnectedClient, raw: str) -> None:
        try:
            payload = json.loads(raw)
        except ValueError:
            await self._send(client, message("error", {"code": "INVALID_MESSAGE", "message": "Malformed JSON"}))
            return
        if not isinstance(payload, dict):
            await self._send(client, message("error", {"code": "INVALID_MESSAGE", "message": "Expected an object"}))
            return

        event = payload.get("event")
        if event == "subscribe":
            try:
                client.subscription = ClientSubscription.model_validate(payload.get("data") or {})
            except ValidationError as exc:
                await self._send(client, message("error", {"code": "INVALID_SUBSCRIPTION", "message": str(exc)}))
                return
            log.debug(f"Client {client.client_id} subscribed: {client.subscription}")
            data = client.subscription.model_dump(mode="json")
            data["message"] = "Subscription updated"
            await self._send(client, message("subscribed", data))
        elif event == "unsubscribe":
            client.subscription = ClientSubscription()
            await self._send(client, message("unsubscribed", {"message": "Unsubscribed from all updates"}))
        elif event == "ping":
            await self._send(client, message("pong", {"timestamp": utcnow().isoformat()}))
        else:
            await self._send(client, message("error", {"code": "UNKNOWN_EVENT", "message": f"Unknown event: {event}"}))

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def _send(self, client: ConnectedClient, frame: Dict[str, Any]) -> bool:
        try:
            await client.websocket.send_json(frame)
            return True
        except Exception as exc:  # noqa: BLE001
            log.error(f"Failed to send to client {client.client_id}: {exc}")
            return False

    def _schedule(self, client: ConnectedClient, frame: Dict[str, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._send(client, frame))
        except RuntimeError:
            log.warning(f"No running loop; dropped {frame['event']} for {client.client_id}")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every scheduled frame to be written."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def on_price_update(self, event: PriceUpdate) -> None:
        frame = message(PRICE_UPDATE, event)
        sent = 0
        for client in list(self.clients.values()):
            if client.subscription.wants(event.token_address):
                self._schedule(client, frame)
                sent += 1
        log.debug(f"Price update for {event.token_address} queued to {sent} clients")

    def on_volume_spike(self, event: VolumeSpike) -> None:
        frame = message(VOLUME_SPIKE, event)
        for client in list(self.clients.values()):
            if client.subscription.wants(event.token_address):
                self._schedule(client, frame)

    def on_new_token(self, token: Token) -> None:
        frame = message(NEW_TOKEN, token)
        for client in list(self.clients.values()):
            self._schedule(client, frame)

    def broadcast_batch(self, tokens: List[Token]) -> None:
        """Send each client the subset of ``tokens`` its subscription accepts."""
        for client in list(self.clients.values()):
            selected = [t for t in tokens if client.subscription.accepts(t)]
            if selected:
                self._schedule(
                    client,
                    message(
                        "batch_update",
                        {"tokens": [t.model_dump(mode="json") for t in selected], "count": len(selected)},
                    ),
                )
        log.debug(f"Batch update of {len(tokens)} tokens queued to {len(self.clients)} clients")

    def broadcast_error(self, code: str, text: str) -> None:
        frame = message("error", {"code": code, "message": text})
        for client in list(self.clients.values()):
            self._schedule(client, frame)

    def stats(self) -> Dict[str, int]:
        return {
            "active_connections": len(self.clients),
            "total_connections": self.total_connections,
            "subscriptions": sum(1 for c in self.clients.values() if c.subscription.active),
        }

    async def shutdown(self) -> None:
        log.info("Shutting down WebSocket hub...")
        await self.drain()
        frame = message("server_shutdown", {"message": "Server is shutting down"})
        for client in list(self.clients.values()):
            await self._send(client, frame)
            try:
                await client.websocket.close()
            except Exception as exc:  # noqa: BLE001
                log.debug(f"Close failed for {client.client_id}: {exc}")
        self.clients.clear()
        log.info("WebSocket hub closed")
