"""WebSocket endpoint for real-time pipeline events.

Observers connect to ``/ws/events`` and receive ``connected`` first, then
``new-run``, ``run-update`` and ``topic-stats`` events plus heartbeats.
``/ws/events?topic=<slug>`` narrows the stream to one topic; heartbeats
still arrive. Events only reach observers connected to the process
running the job.
"""

import json
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from topic_tracker.events.broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)

router = APIRouter()

# Set during app lifespan
_broadcaster: EventBroadcaster | None = None


def set_broadcaster(broadcaster: EventBroadcaster | None) -> None:
    global _broadcaster
    _broadcaster = broadcaster


def get_broadcaster() -> EventBroadcaster | None:
    return _broadcaster


def _reply_to(raw: str) -> str | None:
    """Answer client pings; anything else from the observer is ignored."""
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if isinstance(msg, dict) and msg.get("type") == "ping":
        return json.dumps({"type": "pong"})
    return None


@router.websocket("/ws/events")
async def ws_events(
    ws: WebSocket,
    topic: str | None = Query(default=None, description="Only follow this topic slug"),
) -> None:
    broadcaster = _broadcaster
    if broadcaster is None:
        await ws.close(code=1011, reason="Broadcaster not available")
        return

    await ws.accept()

    if not await broadcaster.connect(ws, topic_slug=topic or None):
        await ws.close(code=1008, reason="Max connections reached")
        return

    try:
        while True:
            reply = _reply_to(await ws.receive_text())
            if reply is not None:
                await ws.send_text(reply)
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(ws)
