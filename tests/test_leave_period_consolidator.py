from __future__ import annotations

import unittest
from datetime import date, timedelta
from types import SimpleNamespace

from flash_hr.errors import InvalidArgument, LeavePeriodConflict, QueryFailed, StoreUnavailable
from flash_hr.models import LeaveType
from flash_hr.services.leave_periods import (
    ConsolidationOutcome,
    LeaveDayEvent,
    LeavePeriodConsolidator,
    _KeyedLocks,
)


class InMemoryLeavePeriodStore:
    def __init__(self) -> None:
        self.periods: dict[int, SimpleNamespace] = {}
        self.fail_days: set[date] = set()
        self.fail_merges = False
        self._next_id = 1

    def _matching(self, employee_id, leave_type):  # type: ignore[no-untyped-def]
        return [
            period
            for period in sorted(self.periods.values(), key=lambda item: item.id)
            if period.employee_id == employee_id and period.leave_type == leave_type
        ]

    def find_period(self, employee_id, leave_type, *, from_date=None, to_date=None):  # type: ignore[no-untyped-def]
        for period in self._matching(employee_id, leave_type):
            if from_date is not None and period.from_date != from_date:
                continue
            if to_date is not None and period.to_date != to_date:
                continue
            return period
        return None

    def find_covering_period(self, employee_id, leave_type, day):  # type: ignore[no-untyped-def]
        if day in self.fail_days:
            raise QueryFailed(f"simulated failure for {day}")
        for period in self._matching(employee_id, leave_type):
            if period.from_date <= day <= period.to_date:
                return period
        return None

    def update_period(self, period_id, *, from_date=None, to_date=None):  # type: ignore[no-untyped-def]
        period = self.periods[period_id]
        if from_date is not None:
            period.from_date = from_date
        if to_date is not None:
            period.to_date = to_date

    def create_period(self, *, employee_id, leave_type, from_date, to_date, reason):  # type: ignore[no-untyped-def]
        period = SimpleNamespace(
            id=self._next_id,
            employee_id=employee_id,
            leave_type=leave_type,
            from_date=from_date,
            to_date=to_date,
            reason=reason,
        )
        self.periods[period.id] = period
        self._next_id += 1
        return period

    def merge_periods(self, keep_id, drop_id, *, to_date):  # type: ignore[no-untyped-def]
        if self.fail_merges:
            raise StoreUnavailable("simulated outage during merge")
        self.periods.pop(drop_id)
        self.periods[keep_id].to_date = to_date

    def ranges(self, employee_id: str = "E1", leave_type: LeaveType = LeaveType.CASUAL) -> list[tuple[date, date]]:
        return sorted((item.from_date, item.to_date) for item in self._matching(employee_id, leave_type))


class _RacingStore(InMemoryLeavePeriodStore):
    """Another writer inserts the same one-day period just before our first create."""

    def __init__(self) -> None:
        super().__init__()
        self.create_calls = 0

    def create_period(self, **kwargs):  # type: ignore[no-untyped-def]
        self.create_calls += 1
        if self.create_calls == 1:
            super().create_period(**kwargs)
            raise LeavePeriodConflict("simulated concurrent insert")
        return super().create_period(**kwargs)


def _d(day: int) -> date:
    return date(2024, 1, day)


class LeavePeriodConsolidatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryLeavePeriodStore()
        self.consolidator = LeavePeriodConsolidator(self.store)

    def test_chronological_run_becomes_single_period(self) -> None:
        for day in range(1, 8):
            self.consolidator.record_leave_day("E1", _d(day), LeaveType.CASUAL)

        self.assertEqual(self.store.ranges(), [(_d(1), _d(7))])

    def test_reverse_chronological_run_becomes_single_period(self) -> None:
        for day in range(7, 0, -1):
            self.consolidator.record_leave_day("E1", _d(day), LeaveType.CASUAL)

        self.assertEqual(self.store.ranges(), [(_d(1), _d(7))])

    def test_reprocessing_any_included_day_is_noop(self) -> None:
        for day in range(1, 6):
            self.consolidator.record_leave_day("E1", _d(day), LeaveType.CASUAL)

        for day in range(1, 6):
            outcome = self.consolidator.record_leave_day("E1", _d(day), LeaveType.CASUAL)
            self.assertEqual(outcome, ConsolidationOutcome.UNCHANGED)

        self.assertEqual(self.store.ranges(), [(_d(1), _d(5))])
        self.assertEqual(len(self.store.periods), 1)

    def test_out_of_order_days_extend_both_directions(self) -> None:
        outcomes = [
            self.consolidator.record_leave_day("E1", "2024-01-05", LeaveType.CASUAL),
            self.consolidator.record_leave_day("E1", "2024-01-06", LeaveType.CASUAL),
            self.consolidator.record_leave_day("E1", "2024-01-04", LeaveType.CASUAL),
        ]

        self.assertEqual(
            outcomes,
            [
                ConsolidationOutcome.CREATED,
                ConsolidationOutcome.EXTENDED_FORWARD,
                ConsolidationOutcome.EXTENDED_BACKWARD,
            ],
        )
        self.assertEqual(self.store.ranges(), [(_d(4), _d(6))])

    def test_leave_types_never_merge(self) -> None:
        self.consolidator.record_leave_day("E1", _d(5), LeaveType.CASUAL)
        self.consolidator.record_leave_day("E1", _d(5), LeaveType.SICK)

        self.assertEqual(self.store.ranges(leave_type=LeaveType.CASUAL), [(_d(5), _d(5))])
        self.assertEqual(self.store.ranges(leave_type=LeaveType.SICK), [(_d(5), _d(5))])
        self.assertEqual(len(self.store.periods), 2)

    def test_employees_never_merge(self) -> None:
        self.consolidator.record_leave_day("E1", _d(5), LeaveType.CASUAL)
        self.consolidator.record_leave_day("E2", _d(6), LeaveType.CASUAL)

        self.assertEqual(self.store.ranges("E1"), [(_d(5), _d(5))])
        self.assertEqual(self.store.ranges("E2"), [(_d(6), _d(6))])

    def test_isolated_day_creates_single_day_period_with_generated_reason(self) -> None:
        self.consolidator.record_leave_day("E1", _d(10), LeaveType.CASUAL)
        outcome = self.consolidator.record_leave_day("E1", _d(20), LeaveType.CASUAL)

        self.assertEqual(outcome, ConsolidationOutcome.CREATED)
        created = self.store.find_period("E1", LeaveType.CASUAL, from_date=_d(20), to_date=_d(20))
        self.assertIsNotNone(created)
        self.assertEqual(created.reason, "Auto-created from attendance (casual)")

    def test_note_becomes_reason_of_new_period(self) -> None:
        self.consolidator.record_leave_day("E1", _d(3), LeaveType.SICK, note="Fever")

        period = self.store.find_period("E1", LeaveType.SICK, from_date=_d(3))
        self.assertEqual(period.reason, "Fever")

    def test_reason_template_is_configurable(self) -> None:
        consolidator = LeavePeriodConsolidator(self.store, reason_template="Marked {leave_type} leave")
        consolidator.record_leave_day("E1", _d(3), LeaveType.ANNUAL)

        period = self.store.find_period("E1", LeaveType.ANNUAL, from_date=_d(3))
        self.assertEqual(period.reason, "Marked annual leave")

    def test_same_day_twice_leaves_one_record(self) -> None:
        first = self.consolidator.record_leave_day("E1", _d(9), LeaveType.CASUAL)
        second = self.consolidator.record_leave_day("E1", _d(9), LeaveType.CASUAL)

        self.assertEqual(first, ConsolidationOutcome.CREATED)
        self.assertEqual(second, ConsolidationOutcome.UNCHANGED)
        self.assertEqual(len(self.store.periods), 1)

    def test_bridging_day_extends_forward_only_by_default(self) -> None:
        # Both neighbours exist: only the period ending the day before is extended
        # and the period starting the day after is left as a separate row.
        self.consolidator.record_leave_day("E1", _d(5), LeaveType.CASUAL)
        self.consolidator.record_leave_day("E1", _d(7), LeaveType.CASUAL)
        outcome = self.consolidator.record_leave_day("E1", _d(6), LeaveType.CASUAL)

        self.assertEqual(outcome, ConsolidationOutcome.EXTENDED_FORWARD)
        self.assertEqual(self.store.ranges(), [(_d(5), _d(6)), (_d(7), _d(7))])

    def test_bridging_day_reprocessed_does_not_overlap_neighbour(self) -> None:
        self.consolidator.record_leave_day("E1", _d(5), LeaveType.CASUAL)
        self.consolidator.record_leave_day("E1", _d(7), LeaveType.CASUAL)
        self.consolidator.record_leave_day("E1", _d(6), LeaveType.CASUAL)

        outcome = self.consolidator.record_leave_day("E1", _d(6), LeaveType.CASUAL)

        self.assertEqual(outcome, ConsolidationOutcome.UNCHANGED)
        self.assertEqual(self.store.ranges(), [(_d(5), _d(6)), (_d(7), _d(7))])

    def test_bridging_day_merges_when_enabled(self) -> None:
        consolidator = LeavePeriodConsolidator(self.store, merge_bridged_periods=True)
        consolidator.record_leave_day("E1", _d(5), LeaveType.CASUAL)
        consolidator.record_leave_day("E1", _d(7), LeaveType.CASUAL)
        outcome = consolidator.record_leave_day("E1", _d(6), LeaveType.CASUAL)

        self.assertEqual(outcome, ConsolidationOutcome.MERGED)
        self.assertEqual(self.store.ranges(), [(_d(5), _d(7))])

    def test_failed_merge_keeps_both_neighbours(self) -> None:
        consolidator = LeavePeriodConsolidator(self.store, merge_bridged_periods=True)
        consolidator.record_leave_day("E1", _d(5), LeaveType.CASUAL)
        consolidator.record_leave_day("E1", _d(7), LeaveType.CASUAL)
        self.store.fail_merges = True

        report = consolidator.record_leave_days([LeaveDayEvent("E1", _d(6), LeaveType.CASUAL)])

        self.assertEqual(report.failed, 1)
        self.assertEqual(self.store.ranges(), [(_d(5), _d(5)), (_d(7), _d(7))])

    def test_locks_are_released_after_use(self) -> None:
        locks = _KeyedLocks()
        consolidator = LeavePeriodConsolidator(self.store, locks=locks)

        with locks.hold(("E1", LeaveType.SICK)):
            consolidator.record_leave_day("E1", _d(3), LeaveType.CASUAL)
            self.assertEqual(len(locks), 1)
        consolidator.record_leave_day("E2", _d(3), LeaveType.CASUAL)

        self.assertEqual(len(locks), 0)

    def test_accepts_string_inputs(self) -> None:
        self.consolidator.record_leave_day(" E1 ", "2024-02-29", "Sick")

        self.assertEqual(self.store.ranges(leave_type=LeaveType.SICK), [(date(2024, 2, 29), date(2024, 2, 29))])

    def test_month_boundary_is_adjacent(self) -> None:
        self.consolidator.record_leave_day("E1", date(2024, 1, 31), LeaveType.UNPAID)
        self.consolidator.record_leave_day("E1", date(2024, 2, 1), LeaveType.UNPAID)

        self.assertEqual(
            self.store.ranges(leave_type=LeaveType.UNPAID),
            [(date(2024, 1, 31), date(2024, 2, 1))],
        )

    def test_invalid_arguments_fail_fast(self) -> None:
        with self.assertRaises(InvalidArgument):
            self.consolidator.record_leave_day("", _d(1), LeaveType.CASUAL)
        with self.assertRaises(InvalidArgument):
            self.consolidator.record_leave_day("E1", _d(1), "")
        with self.assertRaises(InvalidArgument):
            self.consolidator.record_leave_day("E1", _d(1), "sabbatical")
        with self.assertRaises(InvalidArgument):
            self.consolidator.record_leave_day("E1", "05/01/2024", LeaveType.CASUAL)
        self.assertEqual(self.store.periods, {})

    def test_conflicting_create_is_retried_against_fresh_state(self) -> None:
        store = _RacingStore()
        consolidator = LeavePeriodConsolidator(store)

        outcome = consolidator.record_leave_day("E1", _d(12), LeaveType.CASUAL)

        self.assertEqual(outcome, ConsolidationOutcome.UNCHANGED)
        self.assertEqual(store.create_calls, 1)
        self.assertEqual(store.ranges(), [(_d(12), _d(12))])


class RecordLeaveDaysTests(unittest.TestCase):
    def test_batch_applies_events_sequentially(self) -> None:
        store = InMemoryLeavePeriodStore()
        consolidator = LeavePeriodConsolidator(store)
        events = [LeaveDayEvent("E1", _d(1) + timedelta(days=offset), LeaveType.CASUAL) for offset in range(4)]

        report = consolidator.record_leave_days(events)

        self.assertEqual(store.ranges(), [(_d(1), _d(4))])
        self.assertEqual(report.outcomes[ConsolidationOutcome.CREATED], 1)
        self.assertEqual(report.outcomes[ConsolidationOutcome.EXTENDED_FORWARD], 3)
        self.assertEqual(report.failed, 0)
        self.assertEqual(report.processed, 4)

    def test_failing_event_does_not_block_the_rest(self) -> None:
        store = InMemoryLeavePeriodStore()
        store.fail_days.add(_d(15))
        consolidator = LeavePeriodConsolidator(store)
        events = [
            LeaveDayEvent("E1", _d(10), LeaveType.CASUAL),
            LeaveDayEvent("E2", _d(15), LeaveType.SICK),
            LeaveDayEvent("E3", _d(20), LeaveType.ANNUAL),
        ]

        with self.assertLogs("flash_hr.leave_periods", level="WARNING") as captured:
            report = consolidator.record_leave_days(events)

        self.assertEqual(report.failed, 1)
        self.assertEqual(report.failed_events, [events[1]])
        self.assertEqual(report.outcomes[ConsolidationOutcome.CREATED], 2)
        self.assertEqual(store.ranges("E1"), [(_d(10), _d(10))])
        self.assertEqual(store.ranges("E3", LeaveType.ANNUAL), [(_d(20), _d(20))])
        self.assertEqual(store.ranges("E2", LeaveType.SICK), [])
        self.assertTrue(any("leave_period_consolidation_failed" in line for line in captured.output))

    def test_invalid_event_is_counted_as_failure(self) -> None:
        store = InMemoryLeavePeriodStore()
        consolidator = LeavePeriodConsolidator(store)

        with self.assertLogs("flash_hr.leave_periods", level="WARNING"):
            report = consolidator.record_leave_days(
                [
                    LeaveDayEvent("E1", _d(1), "not-a-type"),
                    LeaveDayEvent("E1", _d(2), LeaveType.CASUAL),
                ]
            )

        self.assertEqual(report.failed, 1)
        self.assertEqual(store.ranges(), [(_d(2), _d(2))])
        self.assertEqual(report.to_dict()["failed"], 1)
        self.assertEqual(report.to_dict()["created"], 1)


if __name__ == "__main__":
    unittest.main()
