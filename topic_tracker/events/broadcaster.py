"""WebSocket event broadcaster for pipeline observers.

Observers connect to ``/ws/events`` and receive JSON messages of the form
``{"type": ..., "data": ..., "timestamp": ...}``:

    connected     sent once, right after registration
    new-run       a Run was created for a topic
    run-update    a Run changed status (running, completed, failed)
    topic-stats   per-topic counters after a job finished
    heartbeat     every ``heartbeat_interval`` seconds

Delivery is best effort and local to the process that runs the pipeline.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from starlette.websockets import WebSocket

from topic_tracker.storage.schemas import Run

logger = logging.getLogger(__name__)


class EventType:
    CONNECTED = "connected"
    NEW_RUN = "new-run"
    RUN_UPDATE = "run-update"
    TOPIC_STATS = "topic-stats"
    HEARTBEAT = "heartbeat"


class EventPublisher(Protocol):
    """What the orchestrator and job processor need to announce progress."""

    async def broadcast_new_run(self, run: Run) -> None:
        ...

    async def broadcast_run_update(
        self, run_id: str, status: str, topic_slug: str, **data: Any
    ) -> None:
        ...

    async def broadcast_topic_stats(self, stats: list[dict[str, Any]]) -> None:
        ...


class NullPublisher:
    """Publisher for processes without observers (CLI, standalone workers)."""

    async def broadcast_new_run(self, run: Run) -> None:
        return None

    async def broadcast_run_update(
        self, run_id: str, status: str, topic_slug: str, **data: Any
    ) -> None:
        return None

    async def broadcast_topic_stats(self, stats: list[dict[str, Any]]) -> None:
        return None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ObserverConnection:
    """A connected WebSocket observer, optionally following a single topic."""

    ws: WebSocket
    topic_slug: str | None = None
    connected_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class EventBroadcaster:
    """Fans pipeline events out to connected WebSocket observers.

    Lifecycle:
        1. ``start()`` - spawn the heartbeat task
        2. ``connect(ws)`` / ``disconnect(ws)`` - manage observers
        3. ``stop()`` - cancel the heartbeat, forget observers
    """

    def __init__(
        self,
        max_connections: int = 100,
        heartbeat_interval: int = 30,
    ) -> None:
        self._max_connections = max_connections
        self._heartbeat_interval = heartbeat_interval
        self._observers: dict[WebSocket, ObserverConnection] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._running = False

    @property
    def active_connections(self) -> int:
        return len(self._observers)

    @property
    def is_running(self) -> bool:
        return self._running

    async def connect(self, ws: WebSocket, topic_slug: str | None = None) -> bool:
        """Register an accepted WebSocket and greet it with ``connected``.

        With ``topic_slug`` the observer only receives events of that topic
        (heartbeats excepted).

        Returns:
            True if registered, False if max connections reached or the
            greeting could not be sent.
        """
        if len(self._observers) >= self._max_connections:
            return False

        try:
            await ws.send_text(self._encode(
                EventType.CONNECTED,
                {"message": "Connected to topic events", "topic": topic_slug},
            ))
        except Exception as e:
            logger.warning("Failed to greet WebSocket observer: %s", e)
            return False

        self._observers[ws] = ObserverConnection(ws=ws, topic_slug=topic_slug)
        logger.info(
            "WebSocket observer connected (total=%d, topic=%s)",
            len(self._observers), topic_slug,
        )
        return True

    def disconnect(self, ws: WebSocket) -> None:
        removed = self._observers.pop(ws, None)
        if removed:
            logger.info("WebSocket observer disconnected (total=%d)", len(self._observers))

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._heartbeat_task = asyncio.create_task(
            self._send_heartbeats(), name="event-broadcaster-heartbeat",
        )
        logger.info("EventBroadcaster started (heartbeat=%ds)", self._heartbeat_interval)

    async def stop(self) -> None:
        self._running = False

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        self._observers.clear()
        logger.info("EventBroadcaster stopped")

    async def broadcast(
        self, event_type: str, payload: Any, topic_slug: str | None = None
    ) -> int:
        """Send an event to every interested observer.

        An event with ``topic_slug`` skips observers following another
        topic. Observers whose send fails are dropped; the others still
        receive it.

        Returns:
            Number of observers the event was delivered to.
        """
        if not self._observers:
            return 0
        message = self._encode(event_type, payload)
        return await self._send_all(
            lambda observer: message if _follows(observer, topic_slug) else None
        )

    async def broadcast_new_run(self, run: Run) -> None:
        await self.broadcast(EventType.NEW_RUN, run.to_dict(), topic_slug=run.topic_slug)

    async def broadcast_run_update(
        self, run_id: str, status: str, topic_slug: str, **data: Any
    ) -> None:
        await self.broadcast(
            EventType.RUN_UPDATE,
            {"run_id": run_id, "status": status, "topic_slug": topic_slug, **data},
            topic_slug=topic_slug,
        )

    async def broadcast_topic_stats(self, stats: list[dict[str, Any]]) -> None:
        """Send stats; observers following one topic get only its entry."""
        if not self._observers:
            return
        everything = self._encode(EventType.TOPIC_STATS, stats)

        def message_for(observer: ObserverConnection) -> str | None:
            if observer.topic_slug is None:
                return everything
            own = [s for s in stats if s.get("slug") == observer.topic_slug]
            return self._encode(EventType.TOPIC_STATS, own) if own else None

        await self._send_all(message_for)

    @staticmethod
    def _encode(event_type: str, payload: Any) -> str:
        return json.dumps(
            {"type": event_type, "data": payload, "timestamp": _now()},
            default=str,
        )

    async def _send_all(
        self, message_for: Callable[[ObserverConnection], str | None]
    ) -> int:
        delivered = 0
        disconnected: list[WebSocket] = []

        for ws, observer in list(self._observers.items()):
            message = message_for(observer)
            if message is None:
                continue
            try:
                await ws.send_text(message)
                delivered += 1
            except Exception:
                disconnected.append(ws)

        for ws in disconnected:
            self.disconnect(ws)
        return delivered

    async def _send_heartbeats(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self._heartbeat_interval)
                if self._observers:
                    await self.broadcast(EventType.HEARTBEAT, {})
        except asyncio.CancelledError:
            pass


def _follows(observer: ObserverConnection, topic_slug: str | None) -> bool:
    return observer.topic_slug is None or topic_slug is None or observer.topic_slug == topic_slug
