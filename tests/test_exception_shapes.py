"""
Tests for app/services/exception_shapes.py — one legal field shape per override action.
"""

from datetime import date, datetime, timezone

import pytest

from app.core.exceptions import InvalidExceptionShape, InvalidTargetShape
from app.services.exception_shapes import (
    CancelOccurrence,
    PauseWindow,
    RescheduleOccurrence,
    SkipOccurrence,
    build_variant,
    variant_to_columns,
)

pytestmark = pytest.mark.unit

CONTRACT_ID = 12
KEY = "12#20300108T090000Z"


class TestTargetedActions:
    def test_skip_by_key(self):
        v = build_variant("skip_occurrence", {"target_occurrence_key": KEY, "reason": "holiday"},
                          contract_id=CONTRACT_ID)
        assert isinstance(v, SkipOccurrence)
        assert v.target.occurrence_key == KEY
        assert v.reason == "holiday"

    def test_cancel_by_local_date(self):
        v = build_variant("cancel_occurrence", {"target_local_date": "2030-01-08"}, contract_id=CONTRACT_ID)
        assert isinstance(v, CancelOccurrence)
        assert v.target.local_date == date(2030, 1, 8)
        assert v.target.matches("anything", date(2030, 1, 8))

    def test_skip_with_override_fields_is_rejected(self):
        with pytest.raises(InvalidExceptionShape) as exc_info:
            build_variant(
                "skip_occurrence",
                {"target_occurrence_key": KEY, "override_start_at": "2030-01-08T10:00:00Z"},
                contract_id=CONTRACT_ID,
            )
        assert exc_info.value.fields == ["override_start_at"]

    def test_missing_target_is_rejected(self):
        with pytest.raises(InvalidTargetShape):
            build_variant("skip_occurrence", {"reason": "x"}, contract_id=CONTRACT_ID)

    def test_both_targets_are_rejected(self):
        with pytest.raises(InvalidTargetShape):
            build_variant(
                "skip_occurrence",
                {"target_occurrence_key": KEY, "target_local_date": "2030-01-08"},
                contract_id=CONTRACT_ID,
            )

    def test_key_of_another_contract_is_rejected(self):
        with pytest.raises(InvalidTargetShape):
            build_variant("skip_occurrence", {"target_occurrence_key": "99#20300108T090000Z"},
                          contract_id=CONTRACT_ID)

    def test_malformed_local_date_is_a_target_error(self):
        with pytest.raises(InvalidTargetShape):
            build_variant("cancel_occurrence", {"target_local_date": "08/01/2030"}, contract_id=CONTRACT_ID)


class TestReschedule:
    def test_reschedule_requires_explicit_window(self):
        with pytest.raises(InvalidExceptionShape) as exc_info:
            build_variant("reschedule_occurrence", {"target_occurrence_key": KEY}, contract_id=CONTRACT_ID)
        assert set(exc_info.value.fields) == {"override_start_at", "override_end_at"}

    def test_inverted_window_is_rejected(self):
        with pytest.raises(InvalidExceptionShape):
            build_variant(
                "reschedule_occurrence",
                {
                    "target_occurrence_key": KEY,
                    "override_start_at": "2030-01-08T11:00:00Z",
                    "override_end_at": "2030-01-08T10:00:00Z",
                },
                contract_id=CONTRACT_ID,
            )

    def test_naive_datetime_is_rejected(self):
        with pytest.raises(InvalidExceptionShape):
            build_variant(
                "reschedule_occurrence",
                {
                    "target_occurrence_key": KEY,
                    "override_start_at": "2030-01-08T10:00:00",
                    "override_end_at": "2030-01-08T11:00:00",
                },
                contract_id=CONTRACT_ID,
            )

    def test_reschedule_keeps_optional_overrides(self):
        v = build_variant(
            "reschedule_occurrence",
            {
                "target_occurrence_key": KEY,
                "override_start_at": "2030-01-08T10:00:00Z",
                "override_end_at": "2030-01-08T11:00:00Z",
                "override_location_id": 3,
            },
            contract_id=CONTRACT_ID,
        )
        assert isinstance(v, RescheduleOccurrence)
        assert v.start_at == datetime(2030, 1, 8, 10, tzinfo=timezone.utc)
        assert v.location_id == 3
        assert v.sellable_id is None


class TestPauseWindow:
    def test_pause_window_is_half_open(self):
        v = build_variant(
            "pause_window",
            {"override_start_at": "2030-01-07T00:00:00Z", "override_end_at": "2030-01-14T00:00:00Z"},
            contract_id=CONTRACT_ID,
        )
        assert isinstance(v, PauseWindow)
        assert v.contains(datetime(2030, 1, 7, tzinfo=timezone.utc))
        assert not v.contains(datetime(2030, 1, 14, tzinfo=timezone.utc))

    def test_pause_window_with_target_is_rejected(self):
        with pytest.raises(InvalidExceptionShape):
            build_variant(
                "pause_window",
                {
                    "target_local_date": "2030-01-08",
                    "override_start_at": "2030-01-07T00:00:00Z",
                    "override_end_at": "2030-01-14T00:00:00Z",
                },
                contract_id=CONTRACT_ID,
            )

    def test_columns_carry_only_the_window(self):
        v = PauseWindow(
            start_at=datetime(2030, 1, 7, tzinfo=timezone.utc),
            end_at=datetime(2030, 1, 14, tzinfo=timezone.utc),
        )
        cols = variant_to_columns(v)
        assert cols["action"] == "pause_window"
        assert cols["target_occurrence_key"] is None
        assert cols["target_local_date"] is None
        assert cols["override_location_id"] is None


def test_unknown_action_is_rejected():
    with pytest.raises(InvalidExceptionShape):
        build_variant("postpone_forever", {"target_occurrence_key": KEY}, contract_id=CONTRACT_ID)
