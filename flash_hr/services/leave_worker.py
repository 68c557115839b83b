from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any

from sqlalchemy.orm import Session

from flash_hr.services.leave_periods import (
    ConsolidationReport,
    LeaveDayEvent,
    LeavePeriodConsolidator,
    SqlLeavePeriodStore,
)
from flash_hr.settings import Settings, get_settings

logger = logging.getLogger("flash_hr.leave_worker")


def build_consolidator(db: Session) -> LeavePeriodConsolidator:
    settings = get_settings()
    return LeavePeriodConsolidator(
        SqlLeavePeriodStore(db),
        merge_bridged_periods=settings.leave_merge_bridged_periods,
        reason_template=settings.leave_auto_reason_template,
    )


class LeaveConsolidationWorker:
    """Consumes leave-day batches submitted by attendance marking.

    Each batch is consolidated in a worker thread with its own session, so a
    slow or failing store never holds up the request that produced the batch.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        max_queue_size: int = 1000,
        poll_interval_seconds: float = 1.0,
        shutdown_timeout_seconds: float = 10.0,
    ):
        self._session_factory = session_factory
        self._queue: asyncio.Queue[list[LeaveDayEvent]] = asyncio.Queue(maxsize=max(1, max_queue_size))
        self._poll_interval_seconds = max(0.01, poll_interval_seconds)
        self.shutdown_timeout_seconds = max(0.0, shutdown_timeout_seconds)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, events: Sequence[LeaveDayEvent]) -> bool:
        batch = list(events)
        if not batch:
            return True
        try:
            self._queue.put_nowait(batch)
        except asyncio.QueueFull:
            logger.warning(
                "leave_worker_queue_full",
                extra={
                    "dropped_events": len(batch),
                    "employee_ids": sorted({event.employee_id for event in batch}),
                },
            )
            return False
        return True

    async def join(self) -> None:
        await self._queue.join()

    def _process(self, batch: list[LeaveDayEvent]) -> ConsolidationReport:
        with self._session_factory() as db:
            return build_consolidator(db).record_leave_days(batch)

    async def _consume(self, batch: list[LeaveDayEvent]) -> None:
        try:
            report = await asyncio.to_thread(self._process, batch)
        except Exception:
            logger.exception("leave_worker_batch_failed", extra={"events": len(batch)})
        else:
            log = logger.warning if report.failed else logger.info
            log("leave_worker_batch_processed", extra={"events": len(batch), "outcomes": report.to_dict()})
        finally:
            self._queue.task_done()

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                batch = await asyncio.wait_for(self._queue.get(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                continue
            await self._consume(batch)

    async def drain(self) -> int:
        """Consolidate every batch still queued. Returns how many batches were taken."""

        drained = 0
        while True:
            try:
                batch = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return drained
            drained += 1
            await self._consume(batch)


def dispatch_leave_days(app_state: Any, db: Session, events: Sequence[LeaveDayEvent]) -> None:
    """Hand leave days to the worker, or consolidate them inline when it is not running.

    Never raises: the attendance write that produced the events has already
    been committed and its response does not depend on consolidation.
    """

    if not events:
        return

    worker: LeaveConsolidationWorker | None = getattr(app_state, "leave_worker", None)
    if worker is not None:
        worker.submit(events)
        return

    try:
        report = build_consolidator(db).record_leave_days(events)
    except Exception:
        logger.exception("leave_inline_consolidation_failed", extra={"events": len(events)})
        return

    if report.failed:
        logger.warning("leave_inline_consolidation_partial", extra={"events": len(events), "outcomes": report.to_dict()})


def start_leave_worker(app_state: Any, session_factory: Callable[[], Session], settings: Settings) -> bool:
    """Attach a running worker to `app_state`. Must be called from inside the event loop."""

    if not settings.leave_worker_enabled or getattr(app_state, "leave_worker_task", None) is not None:
        return False

    worker = LeaveConsolidationWorker(
        session_factory,
        max_queue_size=settings.leave_worker_queue_size,
        poll_interval_seconds=settings.leave_worker_poll_seconds,
        shutdown_timeout_seconds=settings.leave_worker_shutdown_seconds,
    )
    stop_event = asyncio.Event()
    app_state.leave_worker = worker
    app_state.leave_worker_stop_event = stop_event
    app_state.leave_worker_task = asyncio.create_task(worker.run(stop_event))
    logger.info(
        "leave_worker_started",
        extra={
            "queue_size": settings.leave_worker_queue_size,
            "merge_bridged_periods": settings.leave_merge_bridged_periods,
        },
    )
    return True


async def stop_leave_worker(app_state: Any) -> None:
    worker: LeaveConsolidationWorker | None = getattr(app_state, "leave_worker", None)
    stop_event: asyncio.Event | None = getattr(app_state, "leave_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app_state, "leave_worker_task", None)

    # Detach first so requests arriving during shutdown consolidate inline.
    app_state.leave_worker = None
    app_state.leave_worker_stop_event = None
    app_state.leave_worker_task = None

    if stop_event is not None:
        stop_event.set()
    if task is not None:
        # Let the batch in flight finish; the loop exits within one poll interval.
        timeout = worker.shutdown_timeout_seconds if worker is not None else 0.0
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("leave_worker_stop_timeout", extra={"timeout_seconds": timeout})

    drained = 0
    if worker is not None and worker.pending:
        logger.info("leave_worker_draining", extra={"pending_batches": worker.pending})
        drained = await worker.drain()
    logger.info("leave_worker_stopped", extra={"drained_batches": drained})
