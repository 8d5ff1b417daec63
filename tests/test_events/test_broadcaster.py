"""Tests for EventBroadcaster: observer management, fan-out and heartbeat."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from tests.factories import make_run
from topic_tracker.events.broadcaster import EventBroadcaster, EventType, NullPublisher


def _mock_ws():
    """Create a mock WebSocket."""
    ws = AsyncMock()
    ws.send_text = AsyncMock()
    return ws


def _sent(ws) -> list[dict]:
    return [json.loads(c.args[0]) for c in ws.send_text.await_args_list]


# ── Connection Management ────────────────────────────────


class TestConnectionManagement:
    """Test connect/disconnect and max connections."""

    @pytest.mark.asyncio
    async def test_connect_sends_greeting(self):
        broadcaster = EventBroadcaster(max_connections=10)
        ws = _mock_ws()

        assert await broadcaster.connect(ws) is True

        assert broadcaster.active_connections == 1
        greeting = _sent(ws)[0]
        assert greeting["type"] == EventType.CONNECTED
        assert "timestamp" in greeting

    @pytest.mark.asyncio
    async def test_max_connections(self):
        broadcaster = EventBroadcaster(max_connections=1)

        assert await broadcaster.connect(_mock_ws()) is True
        assert await broadcaster.connect(_mock_ws()) is False
        assert broadcaster.active_connections == 1

    @pytest.mark.asyncio
    async def test_failed_greeting_not_registered(self):
        broadcaster = EventBroadcaster()
        ws = _mock_ws()
        ws.send_text.side_effect = RuntimeError("closed")

        assert await broadcaster.connect(ws) is False
        assert broadcaster.active_connections == 0

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self):
        broadcaster = EventBroadcaster()
        ws = _mock_ws()
        await broadcaster.connect(ws)

        broadcaster.disconnect(ws)
        broadcaster.disconnect(ws)

        assert broadcaster.active_connections == 0


# ── Broadcast ────────────────────────────────────────────


class TestBroadcast:
    """Test event fan-out."""

    @pytest.mark.asyncio
    async def test_no_observers(self):
        assert await EventBroadcaster().broadcast(EventType.HEARTBEAT, {}) == 0

    @pytest.mark.asyncio
    async def test_failed_observer_is_pruned(self):
        """A dead socket is dropped while the others still get the event."""
        broadcaster = EventBroadcaster()
        healthy, dead = _mock_ws(), _mock_ws()
        await broadcaster.connect(healthy)
        await broadcaster.connect(dead)
        dead.send_text.side_effect = RuntimeError("gone")

        delivered = await broadcaster.broadcast(EventType.TOPIC_STATS, [{"slug": "python-releases"}])

        assert delivered == 1
        assert broadcaster.active_connections == 1
        assert _sent(healthy)[-1]["data"] == [{"slug": "python-releases"}]

    @pytest.mark.asyncio
    async def test_run_events(self):
        broadcaster = EventBroadcaster()
        ws = _mock_ws()
        await broadcaster.connect(ws)

        await broadcaster.broadcast_new_run(make_run())
        await broadcaster.broadcast_run_update("run-1", "completed", "python-releases", processed=3)

        new_run, update = _sent(ws)[1:]
        assert new_run["type"] == EventType.NEW_RUN
        assert new_run["data"]["id"] == "run-1"
        assert new_run["data"]["created_at"] == "2024-01-02T10:00:00+00:00"
        assert update["type"] == EventType.RUN_UPDATE
        assert update["data"] == {
            "run_id": "run-1",
            "status": "completed",
            "topic_slug": "python-releases",
            "processed": 3,
        }

    @pytest.mark.asyncio
    async def test_topic_observer_only_gets_its_topic(self):
        broadcaster = EventBroadcaster()
        everything, python_only = _mock_ws(), _mock_ws()
        await broadcaster.connect(everything)
        await broadcaster.connect(python_only, topic_slug="python-releases")

        await broadcaster.broadcast_run_update("run-2", "running", "rust-news")
        await broadcaster.broadcast_run_update("run-1", "running", "python-releases")
        await broadcaster.broadcast(EventType.HEARTBEAT, {})

        assert _sent(python_only)[0]["data"]["topic"] == "python-releases"
        assert [e["type"] for e in _sent(python_only)[1:]] == [
            EventType.RUN_UPDATE,
            EventType.HEARTBEAT,
        ]
        assert _sent(python_only)[1]["data"]["run_id"] == "run-1"
        assert len(_sent(everything)) == 4

    @pytest.mark.asyncio
    async def test_topic_stats_narrowed_per_observer(self):
        broadcaster = EventBroadcaster()
        everything, python_only, dormant_only = _mock_ws(), _mock_ws(), _mock_ws()
        await broadcaster.connect(everything)
        await broadcaster.connect(python_only, topic_slug="python-releases")
        await broadcaster.connect(dormant_only, topic_slug="dormant")
        stats = [{"slug": "python-releases", "runs": 2}, {"slug": "rust-news", "runs": 1}]

        await broadcaster.broadcast_topic_stats(stats)

        assert _sent(everything)[-1]["data"] == stats
        assert _sent(python_only)[-1]["data"] == [{"slug": "python-releases", "runs": 2}]
        assert len(_sent(dormant_only)) == 1

    @pytest.mark.asyncio
    async def test_null_publisher_accepts_events(self):
        publisher = NullPublisher()

        await publisher.broadcast_new_run(make_run())
        await publisher.broadcast_run_update("run-1", "running", "python-releases")
        await publisher.broadcast_topic_stats([])


# ── Lifecycle ────────────────────────────────────────────


class TestLifecycle:
    """Test start/stop and heartbeat."""

    @pytest.mark.asyncio
    async def test_heartbeat_sent_to_observers(self):
        broadcaster = EventBroadcaster(heartbeat_interval=0.01)
        ws = _mock_ws()
        await broadcaster.connect(ws)

        await broadcaster.start()
        await asyncio.sleep(0.05)
        await broadcaster.stop()

        types = [m["type"] for m in _sent(ws)]
        assert EventType.HEARTBEAT in types
        assert broadcaster.is_running is False
        assert broadcaster.active_connections == 0

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        broadcaster = EventBroadcaster(heartbeat_interval=60)

        await broadcaster.start()
        first_task = broadcaster._heartbeat_task
        await broadcaster.start()

        assert broadcaster._heartbeat_task is first_task
        await broadcaster.stop()
