"""
Unit tests for app/services/dependency_validator.py (validate_unit_graph is pure).

Unit ids are plain ints; timings map id → (planned_start_at, planned_end_at).
"""

from datetime import datetime, timezone

import pytest

from app.core.exceptions import CycleDetected, GapViolation
from app.services.dependency_validator import Edge, validate_unit_graph

pytestmark = pytest.mark.unit


def t(hour, minute=0, day=8):
    return datetime(2030, 1, day, hour, minute, tzinfo=timezone.utc)


class TestAcyclicity:
    def test_topological_order_of_a_chain(self):
        report = validate_unit_graph([1, 2, 3], [Edge(1, 2), Edge(2, 3)])
        assert report.topological_order == [1, 2, 3]
        assert report.cycle is None
        assert report.ok

    def test_only_units_on_the_cycle_are_flagged(self):
        edges = [Edge(1, 2), Edge(2, 3), Edge(3, 2), Edge(3, 4)]

        report = validate_unit_graph([1, 2, 3, 4], edges, order_id=9)

        assert isinstance(report.cycle, CycleDetected)
        assert report.cycle_unit_ids == {2, 3}
        assert report.cycle.order_id == 9
        assert report.is_schedulable(1)
        assert report.is_schedulable(4)
        assert not report.is_schedulable(2)
        assert not report.ok

    def test_raise_for_unit_on_cycle(self):
        report = validate_unit_graph([1, 2], [Edge(1, 2), Edge(2, 1)])
        with pytest.raises(CycleDetected):
            report.raise_for_unit(1)

    def test_cycle_edges_get_cycle_verdict(self):
        report = validate_unit_graph([1, 2, 3], [Edge(1, 2, id=1), Edge(2, 1, id=2), Edge(2, 3, id=3)])
        verdicts = {v.dependency_id: v.verdict for v in report.verdicts}
        assert verdicts[1] == "cycle"
        assert verdicts[2] == "cycle"
        assert verdicts[3] == "unresolved"

    def test_isolated_units_are_kept(self):
        report = validate_unit_graph([5, 6], [])
        assert sorted(report.topological_order) == [5, 6]


class TestGaps:
    def test_finish_to_start_overlap_is_a_hard_violation(self):
        timings = {1: (t(9), t(10)), 2: (t(9, 45), t(10, 30)), 3: (t(11), t(12))}
        edges = [Edge(1, 2, id=10), Edge(2, 3, id=11)]

        report = validate_unit_graph([1, 2, 3], edges, timings)

        violation = report.hard_violations[0]
        assert isinstance(violation, GapViolation)
        assert violation.actual_gap_min == -15
        assert violation.min_gap_min == 0
        # successor and everything downstream of it are blocked
        assert set(report.blocked_by) == {2, 3}
        assert report.is_schedulable(1)
        with pytest.raises(GapViolation):
            report.raise_for_unit(3)

    def test_start_to_start_measures_from_predecessor_start(self):
        timings = {1: (t(9), t(10)), 2: (t(9, 30), t(10, 30))}
        report = validate_unit_graph([1, 2], [Edge(1, 2, "start_to_start", min_gap_min=15)], timings)

        verdict = report.verdicts[0]
        assert verdict.verdict == "ok"
        assert verdict.actual_gap_min == 30

    def test_max_gap_exceeded(self):
        timings = {1: (t(9), t(10)), 2: (t(11), t(12))}
        report = validate_unit_graph([1, 2], [Edge(1, 2, "max_gap", max_gap_min=30)], timings)

        assert report.verdicts[0].verdict == "violation"
        assert report.verdicts[0].actual_gap_min == 60

    def test_min_gap_type_without_ordering_allows_negative_gap(self):
        timings = {1: (t(9), t(10)), 2: (t(9, 30), t(10))}
        report = validate_unit_graph([1, 2], [Edge(1, 2, "min_gap")], timings)
        assert report.verdicts[0].verdict == "ok"

    def test_soft_violation_is_only_a_warning(self):
        timings = {1: (t(9), t(10)), 2: (t(10), t(11))}
        edge = Edge(1, 2, "finish_to_start", min_gap_min=30, hard_block=False)

        report = validate_unit_graph([1, 2], [edge], timings)

        assert report.ok
        assert len(report.warnings) == 1
        assert report.blocked_by == {}
        assert report.to_dict()["warnings"]

    def test_same_day_compares_utc_dates(self):
        timings = {1: (t(23, 0), t(23, 30)), 2: (t(0, 30, day=9), t(1, 0, day=9))}
        report = validate_unit_graph([1, 2], [Edge(1, 2, "same_day")], timings)

        assert report.verdicts[0].verdict == "violation"
        assert report.blocked_by.keys() == {2}

    def test_missing_timing_is_unresolved(self):
        timings = {1: (t(9), t(10)), 2: (None, None)}
        report = validate_unit_graph([1, 2], [Edge(1, 2, min_gap_min=10)], timings)

        assert report.verdicts[0].verdict == "unresolved"
        assert report.ok

    def test_to_dict_shape(self):
        report = validate_unit_graph([1, 2], [Edge(1, 2, id=4)], {1: (t(9), t(10)), 2: (t(10), t(11))}, order_id=3)
        body = report.to_dict()
        assert body["order_id"] == 3
        assert body["ok"] is True
        assert body["edges"][0]["dependency_id"] == 4
        assert body["edges"][0]["verdict"] == "ok"
        assert body["cycle_unit_ids"] == []
        assert body["blocked_unit_ids"] == []
