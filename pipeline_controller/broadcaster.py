"""
Realtime Broadcaster

Pushes typed events {type, data, timestamp} to connected dashboard clients
and periodically re-aggregates state to push active runs.

Connection registry:
- identity -> transport handle; re-registration replaces the old handle
- handles are removed on close notification (unregister by handle)
- a handle only needs an async send_text(str) method (FastAPI WebSocket)

Delivery:
- sends run concurrently with a per-send timeout; a slow consumer never
  delays the others
- a failed send is logged and skipped, and the broken handle is pruned

Polling loop:
- fires on a fixed cadence, independent of the cache TTL
- the tick runs inside the loop task, so at most one aggregation pass is
  outstanding; slots missed while a tick overran are skipped, not queued
- a rate-limited tick is abandoned (no partial broadcast) and logged
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .config import RECENT_RUN_WINDOW_SECONDS, REALTIME_POLL_INTERVAL, SEND_TIMEOUT
from .errors import GatewayError
from .models import RunRecord, utcnow

logger = logging.getLogger("broadcaster")


class EventType:
    """Event type names pushed to clients."""
    WORKFLOW_UPDATE = "workflow_update"
    WORKFLOW_TRIGGERED = "workflow_triggered"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    BULK_BUILDS_TRIGGERED = "bulk_builds_triggered"
    BULK_RELEASES_TRIGGERED = "bulk_releases_triggered"
    SCHEDULED_WORKFLOW_TRIGGERED = "scheduled_workflow_triggered"
    SCHEDULED_WORKFLOW_FAILED = "scheduled_workflow_failed"
    SERVICE_RESTART_INITIATED = "service_restart_initiated"


@dataclass
class BroadcastEvent:
    type: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


# -----------------------------------------------------------------------------
# Connection Registry
# -----------------------------------------------------------------------------
class ConnectionRegistry:
    """
    At most one transport handle per identity.

    Every mutation is a single dict operation with no await in between, so
    it is atomic on the event loop.
    """

    def __init__(self):
        self._connections: Dict[str, Any] = {}

    def register(self, identity: str, handle: Any) -> None:
        previous = self._connections.get(identity)
        self._connections[identity] = handle
        if previous is not None and previous is not handle:
            logger.info(f"WebSocket re-registered for user: {identity}")
        else:
            logger.info(f"WebSocket authenticated for user: {identity}")

    def unregister(self, handle: Any) -> Optional[str]:
        """Drop the entry owning this handle. Returns its identity, if any."""
        for identity, registered in list(self._connections.items()):
            if registered is handle:
                del self._connections[identity]
                logger.info(f"WebSocket disconnected for user: {identity}")
                return identity
        return None

    def prune(self, identity: str, handle: Any) -> None:
        """Remove identity only if it still points at this (broken) handle."""
        if self._connections.get(identity) is handle:
            del self._connections[identity]

    def get(self, identity: str) -> Optional[Any]:
        return self._connections.get(identity)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._connections)

    def identities(self) -> List[str]:
        return list(self._connections)

    def __len__(self) -> int:
        return len(self._connections)


def filter_active(runs: List[RunRecord], now: Optional[datetime] = None) -> List[RunRecord]:
    """Runs that are queued/in progress or were created within the recent window."""
    now = now or utcnow()
    window = timedelta(seconds=RECENT_RUN_WINDOW_SECONDS)
    return [r for r in runs if r.is_active() or now - r.created_datetime < window]


# -----------------------------------------------------------------------------
# Broadcaster
# -----------------------------------------------------------------------------
class RealtimeBroadcaster:
    def __init__(
        self,
        registry: ConnectionRegistry,
        aggregator=None,
        interval: float = REALTIME_POLL_INTERVAL,
        send_timeout: float = SEND_TIMEOUT,
    ):
        self.registry = registry
        self.aggregator = aggregator
        self.interval = interval
        self.send_timeout = send_timeout
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.ticks_skipped = 0

    async def _send(self, identity: str, handle: Any, message: str) -> bool:
        try:
            await asyncio.wait_for(handle.send_text(message), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Send to {identity} timed out; dropping connection")
        except Exception as e:
            logger.warning(f"Send to {identity} failed: {e}")
        self.registry.prune(identity, handle)
        return False

    async def broadcast(
        self,
        event_type: str,
        data: Dict[str, Any],
        target_identity: Optional[str] = None,
    ) -> int:
        """
        Push an event to every connection, or only to target_identity.

        Returns the number of successful deliveries.
        """
        event = BroadcastEvent(type=event_type, data=data)
        message = event.to_json()

        if target_identity is not None:
            handle = self.registry.get(target_identity)
            targets = {target_identity: handle} if handle is not None else {}
        else:
            targets = self.registry.snapshot()

        if not targets:
            return 0

        results = await asyncio.gather(
            *(self._send(identity, handle, message) for identity, handle in targets.items())
        )
        return sum(1 for ok in results if ok)

    async def tick(self) -> Optional[Dict[str, List[RunRecord]]]:
        """
        One polling pass. Returns the active runs that were pushed, or None
        when nothing was pushed (empty active set or abandoned tick).
        """
        if self.aggregator is None:
            return None
        try:
            builds = await self.aggregator.fetch_builds(raise_on_rate_limit=True)
            releases = await self.aggregator.fetch_releases(raise_on_rate_limit=True)
        except GatewayError as e:
            if e.rate_limited:
                logger.warning(f"GitHub rate limit hit, skipping real-time tick: {e}")
            else:
                logger.error(f"Real-time polling error: {e}")
            return None

        now = utcnow()
        active_builds = filter_active(builds, now)
        active_releases = filter_active(releases, now)
        if not active_builds and not active_releases:
            return None

        await self.broadcast(
            EventType.WORKFLOW_UPDATE,
            {
                "builds": [r.to_dict() for r in active_builds],
                "releases": [r.to_dict() for r in active_releases],
            },
        )
        return {"builds": active_builds, "releases": active_releases}

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_fire = loop.time() + self.interval
        while self._running:
            try:
                await asyncio.sleep(max(0.0, next_fire - loop.time()))
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Real-time polling error: {e}")

            next_fire += self.interval
            now = loop.time()
            if next_fire <= now:
                missed = int((now - next_fire) // self.interval) + 1
                next_fire += missed * self.interval
                self.ticks_skipped += missed
                logger.warning(f"Real-time tick overran; skipped {missed} slot(s)")

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Real-time polling started, every {self.interval}s")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Real-time polling stopped")

    @property
    def running(self) -> bool:
        return self._running
