from __future__ import annotations

import asyncio
import unittest
from datetime import date
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from flash_hr.db import Base
from flash_hr.models import Employee, LeavePeriod, LeaveType
from flash_hr.services.leave_periods import LeaveDayEvent
from flash_hr.services.leave_worker import (
    LeaveConsolidationWorker,
    dispatch_leave_days,
    start_leave_worker,
    stop_leave_worker,
)
from flash_hr.settings import Settings


def _session_factory():  # type: ignore[no-untyped-def]
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as db:
        db.add(Employee(employee_id="E1", full_name="Ali Raza"))
        db.commit()
    return factory


def _periods(factory) -> list[tuple[str, LeaveType, date, date]]:  # type: ignore[no-untyped-def]
    with factory() as db:
        rows = db.scalars(select(LeavePeriod).order_by(LeavePeriod.from_date)).all()
        return [(item.employee_id, item.leave_type, item.from_date, item.to_date) for item in rows]


class LeaveConsolidationWorkerTests(unittest.TestCase):
    def test_submitted_batches_are_consolidated(self) -> None:
        factory = _session_factory()

        async def scenario() -> None:
            worker = LeaveConsolidationWorker(factory, poll_interval_seconds=0.05)
            stop_event = asyncio.Event()
            task = asyncio.create_task(worker.run(stop_event))

            self.assertTrue(worker.submit([LeaveDayEvent("E1", date(2024, 4, 1), LeaveType.SICK)]))
            self.assertTrue(
                worker.submit(
                    [
                        LeaveDayEvent("E1", date(2024, 4, 2), LeaveType.SICK),
                        LeaveDayEvent("E1", date(2024, 4, 3), LeaveType.SICK),
                    ]
                )
            )
            await asyncio.wait_for(worker.join(), timeout=5)
            self.assertEqual(worker.pending, 0)

            stop_event.set()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())

        self.assertEqual(_periods(factory), [("E1", LeaveType.SICK, date(2024, 4, 1), date(2024, 4, 3))])

    def test_failing_batch_does_not_stop_worker(self) -> None:
        factory = _session_factory()

        async def scenario() -> None:
            worker = LeaveConsolidationWorker(factory, poll_interval_seconds=0.05)
            stop_event = asyncio.Event()
            task = asyncio.create_task(worker.run(stop_event))

            failing = MagicMock()
            failing.record_leave_days.side_effect = RuntimeError("store down")
            with patch("flash_hr.services.leave_worker.build_consolidator", return_value=failing):
                with self.assertLogs("flash_hr.leave_worker", level="ERROR") as captured:
                    worker.submit([LeaveDayEvent("E1", date(2024, 4, 1), LeaveType.SICK)])
                    await asyncio.wait_for(worker.join(), timeout=5)
            self.assertTrue(any("leave_worker_batch_failed" in line for line in captured.output))

            worker.submit([LeaveDayEvent("E1", date(2024, 4, 9), LeaveType.CASUAL)])
            await asyncio.wait_for(worker.join(), timeout=5)

            stop_event.set()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())

        self.assertEqual(_periods(factory), [("E1", LeaveType.CASUAL, date(2024, 4, 9), date(2024, 4, 9))])

    def test_full_queue_rejects_batch(self) -> None:
        worker = LeaveConsolidationWorker(MagicMock(), max_queue_size=1)

        self.assertTrue(worker.submit([LeaveDayEvent("E1", date(2024, 4, 1), LeaveType.SICK)]))
        with self.assertLogs("flash_hr.leave_worker", level="WARNING") as captured:
            accepted = worker.submit([LeaveDayEvent("E2", date(2024, 4, 1), LeaveType.SICK)])

        self.assertFalse(accepted)
        self.assertEqual(worker.pending, 1)
        self.assertTrue(any("leave_worker_queue_full" in line for line in captured.output))

    def test_empty_batch_is_not_queued(self) -> None:
        worker = LeaveConsolidationWorker(MagicMock())

        self.assertTrue(worker.submit([]))
        self.assertEqual(worker.pending, 0)


class DispatchLeaveDaysTests(unittest.TestCase):
    def test_running_worker_receives_events(self) -> None:
        worker = MagicMock()
        events = [LeaveDayEvent("E1", date(2024, 4, 1), LeaveType.SICK)]

        dispatch_leave_days(SimpleNamespace(leave_worker=worker), MagicMock(), events)

        worker.submit.assert_called_once_with(events)

    def test_without_worker_events_are_consolidated_inline(self) -> None:
        factory = _session_factory()
        with factory() as db:
            dispatch_leave_days(
                SimpleNamespace(),
                db,
                [
                    LeaveDayEvent("E1", date(2024, 4, 5), LeaveType.ANNUAL),
                    LeaveDayEvent("E1", date(2024, 4, 4), LeaveType.ANNUAL),
                ],
            )

        self.assertEqual(_periods(factory), [("E1", LeaveType.ANNUAL, date(2024, 4, 4), date(2024, 4, 5))])

    def test_inline_failure_is_logged_not_raised(self) -> None:
        with patch("flash_hr.services.leave_worker.build_consolidator", side_effect=RuntimeError("boom")):
            with self.assertLogs("flash_hr.leave_worker", level="ERROR") as captured:
                dispatch_leave_days(
                    SimpleNamespace(leave_worker=None),
                    MagicMock(),
                    [LeaveDayEvent("E1", date(2024, 4, 1), LeaveType.SICK)],
                )

        self.assertTrue(any("leave_inline_consolidation_failed" in line for line in captured.output))

    def test_no_events_is_noop(self) -> None:
        with patch("flash_hr.services.leave_worker.build_consolidator") as build:
            dispatch_leave_days(SimpleNamespace(), MagicMock(), [])
        build.assert_not_called()


class WorkerLifecycleTests(unittest.TestCase):
    def test_start_then_stop_attaches_and_detaches_worker(self) -> None:
        factory = _session_factory()
        settings = Settings(leave_worker_poll_seconds=0.05)
        state = SimpleNamespace()

        async def scenario() -> None:
            self.assertTrue(start_leave_worker(state, factory, settings))
            self.assertFalse(start_leave_worker(state, factory, settings))

            state.leave_worker.submit([LeaveDayEvent("E1", date(2024, 4, 20), LeaveType.PAID)])
            await asyncio.wait_for(state.leave_worker.join(), timeout=5)
            await stop_leave_worker(state)

        asyncio.run(scenario())

        self.assertIsNone(state.leave_worker)
        self.assertIsNone(state.leave_worker_task)
        self.assertEqual(_periods(factory), [("E1", LeaveType.PAID, date(2024, 4, 20), date(2024, 4, 20))])

    def test_stop_consolidates_batches_still_queued(self) -> None:
        factory = _session_factory()
        settings = Settings(leave_worker_poll_seconds=0.05)
        state = SimpleNamespace()

        async def scenario() -> None:
            start_leave_worker(state, factory, settings)
            state.leave_worker.submit([LeaveDayEvent("E1", date(2024, 4, 1), LeaveType.SICK)])
            state.leave_worker.submit([LeaveDayEvent("E1", date(2024, 4, 2), LeaveType.SICK)])
            await stop_leave_worker(state)

        asyncio.run(scenario())

        self.assertEqual(_periods(factory), [("E1", LeaveType.SICK, date(2024, 4, 1), date(2024, 4, 2))])

    def test_drain_empties_the_queue(self) -> None:
        factory = _session_factory()
        worker = LeaveConsolidationWorker(factory)

        async def scenario() -> int:
            worker.submit([LeaveDayEvent("E1", date(2024, 4, 10), LeaveType.CASUAL)])
            worker.submit([LeaveDayEvent("E1", date(2024, 4, 11), LeaveType.CASUAL)])
            return await worker.drain()

        drained = asyncio.run(scenario())

        self.assertEqual(drained, 2)
        self.assertEqual(worker.pending, 0)
        self.assertEqual(_periods(factory), [("E1", LeaveType.CASUAL, date(2024, 4, 10), date(2024, 4, 11))])

    def test_disabled_worker_is_not_started(self) -> None:
        state = SimpleNamespace()

        started = start_leave_worker(state, MagicMock(), Settings(leave_worker_enabled=False))

        self.assertFalse(started)
        self.assertIsNone(getattr(state, "leave_worker", None))


if __name__ == "__main__":
    unittest.main()
