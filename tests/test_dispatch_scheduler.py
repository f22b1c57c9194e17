"""
Unit Tests for the Dispatch Scheduler

Proves:
1. Past or present fire times are rejected
2. A dispatch is either cancelled or fired, never both
3. Firing reports success or failure through the notify callback
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from pipeline_controller.broadcaster import EventType
from pipeline_controller.dispatch_scheduler import CancelOutcome, DispatchScheduler
from pipeline_controller.errors import GatewayError, InvalidInput
from pipeline_controller.models import WorkflowKind, WorkflowRef, utcnow

from tests.conftest import FakeGateway


RELEASE_REF = WorkflowRef(
    "acme", "release-pipelines", "app1-release.yml", "app1", WorkflowKind.RELEASE
)


def soon(seconds: float = 0.02) -> datetime:
    return utcnow() + timedelta(seconds=seconds)


# -----------------------------------------------------------------------------
# Scheduling
# -----------------------------------------------------------------------------
class TestSchedule:
    """Tests for arming dispatches."""

    @pytest.mark.asyncio
    async def test_schedule_returns_dispatch(self):
        scheduler = DispatchScheduler(FakeGateway())
        fire_at = soon(60)

        dispatch = scheduler.schedule(RELEASE_REF, "main", fire_at, "alice.frontend", {"version": "1.0"})

        assert dispatch.id.startswith("release-pipelines-app1-release.yml-")
        assert dispatch.fire_at == fire_at
        assert dispatch.owner == "alice.frontend"
        assert dispatch.inputs == {"version": "1.0"}
        assert scheduler.list() == [dispatch]
        assert scheduler.get(dispatch.id) is dispatch
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_ids_are_unique(self):
        scheduler = DispatchScheduler(FakeGateway())
        fire_at = soon(60)
        first = scheduler.schedule(RELEASE_REF, "main", fire_at, "a")
        second = scheduler.schedule(RELEASE_REF, "main", fire_at, "a")
        assert first.id != second.id
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_past_time_rejected(self):
        scheduler = DispatchScheduler(FakeGateway())
        with pytest.raises(InvalidInput):
            scheduler.schedule(RELEASE_REF, "main", utcnow() - timedelta(seconds=1), "a")
        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_present_time_rejected(self):
        now = utcnow()
        scheduler = DispatchScheduler(FakeGateway(), clock=lambda: now)
        with pytest.raises(InvalidInput):
            scheduler.schedule(RELEASE_REF, "main", now, "a")

    @pytest.mark.asyncio
    async def test_naive_time_treated_as_utc(self):
        scheduler = DispatchScheduler(FakeGateway())
        naive = (utcnow() + timedelta(minutes=5)).replace(tzinfo=None)
        dispatch = scheduler.schedule(RELEASE_REF, "main", naive, "a")
        assert dispatch.fire_at.tzinfo is not None
        await scheduler.shutdown()


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------
class TestCancel:
    """Tests for disarming dispatches."""

    @pytest.mark.asyncio
    async def test_cancel_pending(self):
        gateway = FakeGateway()
        scheduler = DispatchScheduler(gateway)
        dispatch = scheduler.schedule(RELEASE_REF, "main", soon(0.05), "a")

        assert scheduler.cancel(dispatch.id) == CancelOutcome.CANCELLED
        await asyncio.sleep(0.1)

        assert gateway.dispatched == []
        assert scheduler.list() == []

    @pytest.mark.asyncio
    async def test_cancel_unknown(self):
        assert DispatchScheduler(FakeGateway()).cancel("nope") == CancelOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_cancel_twice(self):
        scheduler = DispatchScheduler(FakeGateway())
        dispatch = scheduler.schedule(RELEASE_REF, "main", soon(60), "a")
        assert scheduler.cancel(dispatch.id) == CancelOutcome.CANCELLED
        assert scheduler.cancel(dispatch.id) == CancelOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_cancel_after_fire(self):
        gateway = FakeGateway()
        scheduler = DispatchScheduler(gateway)
        dispatch = scheduler.schedule(RELEASE_REF, "main", soon(), "a")

        await asyncio.sleep(0.1)

        assert len(gateway.dispatched) == 1
        assert scheduler.cancel(dispatch.id) == CancelOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_shutdown_drops_everything(self):
        gateway = FakeGateway()
        scheduler = DispatchScheduler(gateway)
        scheduler.schedule(RELEASE_REF, "main", soon(0.05), "a")
        scheduler.schedule(RELEASE_REF, "develop", soon(0.05), "a")

        await scheduler.shutdown()
        await asyncio.sleep(0.1)

        assert len(scheduler) == 0
        assert gateway.dispatched == []


# -----------------------------------------------------------------------------
# Firing
# -----------------------------------------------------------------------------
class TestFire:
    """Tests for the dispatch at fire time."""

    @pytest.mark.asyncio
    async def test_fire_dispatches_and_notifies(self):
        gateway = FakeGateway()
        notify = AsyncMock()
        scheduler = DispatchScheduler(gateway, notify=notify)
        dispatch = scheduler.schedule(RELEASE_REF, "main", soon(), "a", {"version": "2.0"})

        await asyncio.sleep(0.1)

        assert gateway.dispatched == [{
            "owner": "acme",
            "repo": "release-pipelines",
            "workflow_id": "app1-release.yml",
            "ref": "main",
            "inputs": {"version": "2.0"},
        }]
        notify.assert_awaited_once()
        event_type, data = notify.await_args.args
        assert event_type == EventType.SCHEDULED_WORKFLOW_TRIGGERED
        assert data["id"] == dispatch.id
        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_fire_failure_notifies(self):
        gateway = FakeGateway()
        gateway.dispatch_errors["release-pipelines"] = GatewayError("ref not found", status_code=422)
        notify = AsyncMock()
        scheduler = DispatchScheduler(gateway, notify=notify)
        scheduler.schedule(RELEASE_REF, "missing-branch", soon(), "a")

        await asyncio.sleep(0.1)

        event_type, data = notify.await_args.args
        assert event_type == EventType.SCHEDULED_WORKFLOW_FAILED
        assert "ref not found" in data["error"]
        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_notify_failure_does_not_break_scheduler(self):
        gateway = FakeGateway()
        notify = AsyncMock(side_effect=RuntimeError("socket gone"))
        scheduler = DispatchScheduler(gateway, notify=notify)
        scheduler.schedule(RELEASE_REF, "main", soon(), "a")

        await asyncio.sleep(0.1)

        assert len(gateway.dispatched) == 1
        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_dispatch_in_flight(self):
        gateway = FakeGateway()
        delivered = []

        async def slow_notify(event_type, data):
            await asyncio.sleep(0.1)
            delivered.append(event_type)

        scheduler = DispatchScheduler(gateway, notify=slow_notify)
        scheduler.schedule(RELEASE_REF, "main", soon(0.01), "a")

        await asyncio.sleep(0.05)
        assert len(gateway.dispatched) == 1
        assert scheduler.firing == 1

        await scheduler.shutdown()

        assert delivered == [EventType.SCHEDULED_WORKFLOW_TRIGGERED]
        assert scheduler.firing == 0
