"""WebSocket route - live token events."""

from fastapi import APIRouter, WebSocket

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def token_events(websocket: WebSocket):
    await websocket.app.state.hub.serve(websocket)
