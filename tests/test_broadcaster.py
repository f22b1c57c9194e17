"""
Unit Tests for the Realtime Broadcaster

Proves:
1. One handle per identity; re-registration replaces, close removes
2. A broken or slow handle never blocks delivery to the others
3. The polling tick pushes only active/recent runs
4. A rate-limited tick is abandoned without a partial broadcast
5. The loop skips slots missed while a tick overran
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from pipeline_controller.aggregator import build_run_record
from pipeline_controller.broadcaster import (
    BroadcastEvent,
    ConnectionRegistry,
    EventType,
    RealtimeBroadcaster,
    filter_active,
)
from pipeline_controller.models import WorkflowKind, WorkflowRef, utcnow

from tests.conftest import FakeSocket, make_run, rate_limit_error


APP1_BUILD = WorkflowRef("acme", "app1-service", "build.yml", "app1", WorkflowKind.BUILD)


def iso(dt):
    return dt.isoformat().replace("+00:00", "Z")


# -----------------------------------------------------------------------------
# Connection Registry
# -----------------------------------------------------------------------------
class TestConnectionRegistry:
    """Tests for identity -> handle bookkeeping."""

    def test_register_and_get(self):
        registry = ConnectionRegistry()
        socket = FakeSocket()
        registry.register("dev1", socket)
        assert registry.get("dev1") is socket
        assert len(registry) == 1

    def test_reregistration_replaces_handle(self):
        registry = ConnectionRegistry()
        first, second = FakeSocket(), FakeSocket()
        registry.register("dev1", first)
        registry.register("dev1", second)
        assert registry.get("dev1") is second
        assert len(registry) == 1

    def test_unregister_by_handle(self):
        registry = ConnectionRegistry()
        socket = FakeSocket()
        registry.register("dev1", socket)
        assert registry.unregister(socket) == "dev1"
        assert registry.get("dev1") is None

    def test_unregister_stale_handle_keeps_replacement(self):
        registry = ConnectionRegistry()
        old, new = FakeSocket(), FakeSocket()
        registry.register("dev1", old)
        registry.register("dev1", new)
        assert registry.unregister(old) is None
        assert registry.get("dev1") is new

    def test_prune_only_matching_handle(self):
        registry = ConnectionRegistry()
        old, new = FakeSocket(), FakeSocket()
        registry.register("dev1", new)
        registry.prune("dev1", old)
        assert registry.get("dev1") is new


# -----------------------------------------------------------------------------
# Broadcast
# -----------------------------------------------------------------------------
class TestBroadcast:
    """Tests for event delivery."""

    def test_event_serialization(self):
        event = BroadcastEvent(type=EventType.WORKFLOW_TRIGGERED, data={"repo": "app1-service"})
        payload = json.loads(event.to_json())
        assert payload["type"] == "workflow_triggered"
        assert payload["data"] == {"repo": "app1-service"}
        assert "timestamp" in payload

    @pytest.mark.asyncio
    async def test_broadcast_to_all(self):
        registry = ConnectionRegistry()
        a, b = FakeSocket(), FakeSocket()
        registry.register("a", a)
        registry.register("b", b)

        delivered = await RealtimeBroadcaster(registry).broadcast("workflow_cancelled", {"run_id": 1})

        assert delivered == 2
        assert json.loads(a.sent[0])["data"] == {"run_id": 1}
        assert len(b.sent) == 1

    @pytest.mark.asyncio
    async def test_broadcast_to_target_only(self):
        registry = ConnectionRegistry()
        a, b = FakeSocket(), FakeSocket()
        registry.register("a", a)
        registry.register("b", b)

        delivered = await RealtimeBroadcaster(registry).broadcast("x", {}, target_identity="b")

        assert delivered == 1
        assert a.sent == []
        assert len(b.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_target_is_noop(self):
        registry = ConnectionRegistry()
        registry.register("a", FakeSocket())
        assert await RealtimeBroadcaster(registry).broadcast("x", {}, target_identity="zz") == 0

    @pytest.mark.asyncio
    async def test_broken_handle_skipped_and_pruned(self):
        registry = ConnectionRegistry()
        broken, healthy = FakeSocket(fail=True), FakeSocket()
        registry.register("broken", broken)
        registry.register("healthy", healthy)

        delivered = await RealtimeBroadcaster(registry).broadcast("x", {})

        assert delivered == 1
        assert len(healthy.sent) == 1
        assert registry.get("broken") is None

    @pytest.mark.asyncio
    async def test_slow_consumer_does_not_delay_others(self):
        registry = ConnectionRegistry()
        slow, fast = FakeSocket(delay=5), FakeSocket()
        registry.register("slow", slow)
        registry.register("fast", fast)

        broadcaster = RealtimeBroadcaster(registry, send_timeout=0.05)
        delivered = await asyncio.wait_for(broadcaster.broadcast("x", {}), timeout=1)

        assert delivered == 1
        assert len(fast.sent) == 1
        assert registry.get("slow") is None


# -----------------------------------------------------------------------------
# Polling tick
# -----------------------------------------------------------------------------
def fake_aggregator(builds=None, releases=None, error=None):
    aggregator = MagicMock()
    if error is not None:
        aggregator.fetch_builds = AsyncMock(side_effect=error)
    else:
        aggregator.fetch_builds = AsyncMock(return_value=builds or [])
    aggregator.fetch_releases = AsyncMock(return_value=releases or [])
    return aggregator


class TestTick:
    """Tests for one polling pass."""

    def test_filter_active(self):
        now = utcnow()
        running = build_run_record(
            make_run(1, status="in_progress", conclusion=None, created_at=iso(now - timedelta(hours=2))),
            APP1_BUILD, [],
        )
        recent = build_run_record(
            make_run(2, created_at=iso(now - timedelta(seconds=60))), APP1_BUILD, []
        )
        old = build_run_record(
            make_run(3, created_at=iso(now - timedelta(minutes=10))), APP1_BUILD, []
        )
        assert [r.id for r in filter_active([running, recent, old], now)] == [1, 2]

    @pytest.mark.asyncio
    async def test_tick_pushes_active_runs(self):
        active = build_run_record(make_run(1, status="queued", conclusion=None), APP1_BUILD, [])
        registry = ConnectionRegistry()
        socket = FakeSocket()
        registry.register("dev1", socket)

        broadcaster = RealtimeBroadcaster(registry, fake_aggregator(builds=[active]))
        result = await broadcaster.tick()

        assert [r.id for r in result["builds"]] == [1]
        payload = json.loads(socket.sent[0])
        assert payload["type"] == EventType.WORKFLOW_UPDATE
        assert payload["data"]["builds"][0]["id"] == 1
        assert payload["data"]["releases"] == []

    @pytest.mark.asyncio
    async def test_tick_without_active_runs_sends_nothing(self):
        old = build_run_record(make_run(1, created_at="2020-01-01T00:00:00Z"), APP1_BUILD, [])
        registry = ConnectionRegistry()
        socket = FakeSocket()
        registry.register("dev1", socket)

        result = await RealtimeBroadcaster(registry, fake_aggregator(builds=[old])).tick()

        assert result is None
        assert socket.sent == []

    @pytest.mark.asyncio
    async def test_rate_limited_tick_is_abandoned(self):
        registry = ConnectionRegistry()
        socket = FakeSocket()
        registry.register("dev1", socket)
        aggregator = fake_aggregator(error=rate_limit_error())

        result = await RealtimeBroadcaster(registry, aggregator).tick()

        assert result is None
        assert socket.sent == []
        aggregator.fetch_builds.assert_awaited_once_with(raise_on_rate_limit=True)
        aggregator.fetch_releases.assert_not_called()


# -----------------------------------------------------------------------------
# Loop lifecycle
# -----------------------------------------------------------------------------
class TestLoop:
    """Tests for the fixed-cadence polling loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        aggregator = fake_aggregator()
        broadcaster = RealtimeBroadcaster(ConnectionRegistry(), aggregator, interval=0.01)

        await broadcaster.start()
        assert broadcaster.running
        await asyncio.sleep(0.05)
        await broadcaster.stop()

        assert not broadcaster.running
        assert aggregator.fetch_builds.await_count >= 1

    @pytest.mark.asyncio
    async def test_overrunning_tick_skips_slots(self):
        async def slow_fetch(**kwargs):
            await asyncio.sleep(0.035)
            return []

        aggregator = fake_aggregator()
        aggregator.fetch_builds = AsyncMock(side_effect=slow_fetch)
        broadcaster = RealtimeBroadcaster(ConnectionRegistry(), aggregator, interval=0.01)

        await broadcaster.start()
        await asyncio.sleep(0.1)
        await broadcaster.stop()

        assert broadcaster.ticks_skipped >= 1
        # ticks never overlap, so there are far fewer calls than elapsed slots
        assert aggregator.fetch_builds.await_count <= 4
