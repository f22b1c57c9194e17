"""
Dispatch Scheduler

In-memory deferred one-shot workflow dispatch.

Each scheduled dispatch owns one asyncio task that sleeps until fire_at.
The table id -> (dispatch, task) is the cancellation-token map:

- cancel() pops the entry and cancels its task
- the task pops its own entry right after waking, before dispatching

Both pops are a single synchronous dict operation on the event loop, so
exactly one side wins: a dispatch is either cancelled or fired, never both.
The loser sees the entry gone and reports NOT_FOUND (cancel) or exits
quietly (task).

A task that has won its pop moves to the firing set until its dispatch and
notification complete. shutdown() cancels armed timers but waits for firing
tasks, so a dispatch already sent to GitHub is always reported.

Schedules do not survive a restart.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .broadcaster import EventType
from .errors import InvalidInput
from .models import ScheduledDispatch, WorkflowRef, utcnow

logger = logging.getLogger("dispatch_scheduler")

NotifyCallback = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class CancelOutcome(str, Enum):
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


class DispatchScheduler:
    def __init__(
        self,
        gateway,
        notify: Optional[NotifyCallback] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.notify = notify
        self._clock = clock
        self._entries: Dict[str, Tuple[ScheduledDispatch, asyncio.Task]] = {}
        self._firing: Set[asyncio.Task] = set()

    def schedule(
        self,
        workflow_ref: WorkflowRef,
        ref: str,
        fire_at: datetime,
        owner: str,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> ScheduledDispatch:
        """Arm a one-shot dispatch. fire_at must be in the future."""
        if fire_at.tzinfo is None:
            fire_at = fire_at.replace(tzinfo=timezone.utc)

        now = self._clock()
        if fire_at <= now:
            raise InvalidInput("Scheduled time must be in the future")

        dispatch = ScheduledDispatch(
            id=f"{workflow_ref.repo}-{workflow_ref.workflow_id}-{uuid.uuid4().hex[:12]}",
            workflow_ref=workflow_ref,
            ref=ref,
            inputs=dict(inputs or {}),
            fire_at=fire_at,
            owner=owner,
        )
        delay = (fire_at - now).total_seconds()
        task = asyncio.create_task(self._fire_after(dispatch.id, delay))
        self._entries[dispatch.id] = (dispatch, task)

        logger.info(
            f"Scheduled {workflow_ref.repo}/{workflow_ref.workflow_id}@{ref} "
            f"for {fire_at.isoformat()} by {owner} ({dispatch.id})"
        )
        return dispatch

    def cancel(self, dispatch_id: str) -> CancelOutcome:
        """Disarm a pending dispatch. Unknown, already-cancelled or fired ids are NOT_FOUND."""
        entry = self._entries.pop(dispatch_id, None)
        if entry is None:
            return CancelOutcome.NOT_FOUND

        _, task = entry
        task.cancel()
        logger.info(f"Cancelled scheduled dispatch {dispatch_id}")
        return CancelOutcome.CANCELLED

    def list(self) -> List[ScheduledDispatch]:
        return [dispatch for dispatch, _ in self._entries.values()]

    def get(self, dispatch_id: str) -> Optional[ScheduledDispatch]:
        entry = self._entries.get(dispatch_id)
        return entry[0] if entry else None

    def __len__(self) -> int:
        return len(self._entries)

    async def _fire_after(self, dispatch_id: str, delay: float) -> None:
        await asyncio.sleep(delay)

        entry = self._entries.pop(dispatch_id, None)
        if entry is None:
            return
        dispatch, task = entry
        self._firing.add(task)
        try:
            await self._fire(dispatch)
        finally:
            self._firing.discard(task)

    @property
    def firing(self) -> int:
        return len(self._firing)

    async def _fire(self, dispatch: ScheduledDispatch) -> None:
        wf = dispatch.workflow_ref
        try:
            await self.gateway.dispatch(wf.owner, wf.repo, wf.workflow_id, dispatch.ref, dispatch.inputs)
        except Exception as e:
            logger.error(f"Scheduled workflow error ({dispatch.id}): {e}")
            await self._notify(EventType.SCHEDULED_WORKFLOW_FAILED, {
                "id": dispatch.id,
                "repo": wf.repo,
                "workflow_id": wf.workflow_id,
                "ref": dispatch.ref,
                "error": str(e),
            })
            return

        logger.info(f"Scheduled workflow triggered ({dispatch.id})")
        await self._notify(EventType.SCHEDULED_WORKFLOW_TRIGGERED, {
            "id": dispatch.id,
            "repo": wf.repo,
            "workflow_id": wf.workflow_id,
            "ref": dispatch.ref,
        })

    async def _notify(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.notify is None:
            return
        try:
            await self.notify(event_type, data)
        except Exception as e:
            logger.error(f"Scheduled dispatch notification failed: {e}")

    async def shutdown(self) -> None:
        """Cancel every armed timer and wait for dispatches already firing."""
        entries = list(self._entries.values())
        self._entries.clear()
        for _, task in entries:
            task.cancel()
        for _, task in entries:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if entries:
            logger.info(f"Dropped {len(entries)} scheduled dispatches on shutdown")

        firing = list(self._firing)
        if firing:
            logger.info(f"Waiting for {len(firing)} scheduled dispatches in flight")
            await asyncio.gather(*firing, return_exceptions=True)
