"""
Unit tests for app/services/recurrence.py.

Pure functions only, no database:
  - rule parsing (RRULE / RDATE / EXDATE, rejected DTSTART, unknown zone)
  - wall-clock stability across a DST change
  - occurrence key derivation
  - generation window clamping
"""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from app.core.exceptions import RecurrenceParseError
from app.services import recurrence
from app.services.recurrence import Window

UTC = timezone.utc
NY = ZoneInfo("America/New_York")

pytestmark = pytest.mark.unit


class TestParseRule:
    def test_weekly_rule_expands_inside_window(self):
        anchor = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
        rule = recurrence.parse_rule("RRULE:FREQ=WEEKLY;BYDAY=TU", anchor, "UTC")
        window = Window(datetime(2030, 1, 6, tzinfo=UTC), datetime(2030, 1, 20, tzinfo=UTC))

        instants = recurrence.expand_window(rule, window)

        assert instants == [
            datetime(2030, 1, 8, 9, 0, tzinfo=UTC),
            datetime(2030, 1, 15, 9, 0, tzinfo=UTC),
        ]

    def test_bare_rrule_without_prefix_is_accepted(self):
        anchor = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
        rule = recurrence.parse_rule("FREQ=DAILY;COUNT=3", anchor, "UTC")
        window = Window(datetime(2030, 1, 1, tzinfo=UTC), datetime(2030, 2, 1, tzinfo=UTC))
        assert len(recurrence.expand_window(rule, window)) == 3

    def test_exdate_removes_a_slot(self):
        anchor = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
        text = "RRULE:FREQ=WEEKLY;BYDAY=TU\nEXDATE:20300108T090000Z"
        rule = recurrence.parse_rule(text, anchor, "UTC")
        window = Window(datetime(2030, 1, 6, tzinfo=UTC), datetime(2030, 1, 20, tzinfo=UTC))

        assert recurrence.expand_window(rule, window) == [datetime(2030, 1, 15, 9, 0, tzinfo=UTC)]

    def test_rdate_adds_a_slot(self):
        anchor = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
        text = "RRULE:FREQ=WEEKLY;BYDAY=TU\nRDATE:20300110T090000Z"
        rule = recurrence.parse_rule(text, anchor, "UTC")
        window = Window(datetime(2030, 1, 6, tzinfo=UTC), datetime(2030, 1, 13, tzinfo=UTC))

        assert recurrence.expand_window(rule, window) == [
            datetime(2030, 1, 8, 9, 0, tzinfo=UTC),
            datetime(2030, 1, 10, 9, 0, tzinfo=UTC),
        ]

    @pytest.mark.parametrize("text", ["", "   ", "FREQ=SOMETIMES", "RRULE:FREQ=WEEKLY;BYDAY=XX"])
    def test_unparsable_rule_raises(self, text):
        anchor = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
        with pytest.raises(RecurrenceParseError):
            recurrence.parse_rule(text, anchor, "UTC")

    def test_embedded_dtstart_is_rejected(self):
        anchor = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
        with pytest.raises(RecurrenceParseError) as exc_info:
            recurrence.parse_rule("DTSTART:20300101T090000Z\nRRULE:FREQ=DAILY", anchor, "UTC", contract_id=5)
        assert exc_info.value.contract_id == 5

    def test_unknown_timezone_raises(self):
        anchor = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
        with pytest.raises(RecurrenceParseError):
            recurrence.parse_rule("FREQ=DAILY", anchor, "Mars/Olympus_Mons")


class TestDstWallClock:
    def test_local_time_is_kept_across_spring_forward(self):
        # 2030-03-10 is the US spring-forward Sunday.
        anchor = datetime(2030, 3, 5, 9, 0, tzinfo=NY)
        rule = recurrence.parse_rule("FREQ=WEEKLY;BYDAY=TU", anchor, "America/New_York")
        window = Window(datetime(2030, 3, 1, tzinfo=NY), datetime(2030, 3, 20, tzinfo=NY))

        instants = recurrence.expand_window(rule, window)

        assert [i.hour for i in instants] == [9, 9, 9]
        assert [i.astimezone(UTC).hour for i in instants] == [14, 13, 13]


class TestWindowAndOverlap:
    def test_window_is_half_open(self):
        w = Window(datetime(2030, 1, 1, tzinfo=UTC), datetime(2030, 1, 2, tzinfo=UTC))
        assert w.contains(datetime(2030, 1, 1, tzinfo=UTC))
        assert not w.contains(datetime(2030, 1, 2, tzinfo=UTC))

    def test_empty_window_expands_to_nothing(self):
        anchor = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
        rule = recurrence.parse_rule("FREQ=DAILY", anchor, "UTC")
        t = datetime(2030, 1, 5, tzinfo=UTC)
        assert recurrence.expand_window(rule, Window(t, t)) == []

    def test_touching_intervals_do_not_overlap(self):
        a, b, c = (datetime(2030, 1, 1, h, tzinfo=UTC) for h in (9, 10, 11))
        assert not recurrence.overlaps(a, b, b, c)
        assert recurrence.overlaps(a, c, b, c)


class TestOccurrenceKey:
    def test_key_uses_utc_instant(self):
        instant = datetime(2030, 3, 5, 9, 0, tzinfo=NY)
        assert recurrence.occurrence_key(7, instant) == "7#20300305T140000Z"

    def test_same_instant_in_any_zone_gives_same_key(self):
        local = datetime(2030, 1, 8, 4, 0, tzinfo=NY)
        utc = datetime(2030, 1, 8, 9, 0, tzinfo=UTC)
        assert recurrence.occurrence_key(1, local) == recurrence.occurrence_key(1, utc)


class TestGenerationWindow:
    NOW = datetime(2030, 1, 6, 12, 0, tzinfo=UTC)

    def _window(self, **kw):
        params = dict(
            now=self.NOW, tz=ZoneInfo("UTC"), horizon_days=14, max_generated_ahead_days=60,
            effective_start_date=date(2030, 1, 1), effective_end_date=None,
        )
        params.update(kw)
        return recurrence.generation_window(**params)

    def test_window_starts_at_local_midnight_today(self):
        w = self._window()
        assert w.start == datetime(2030, 1, 6, tzinfo=UTC)
        assert w.end == datetime(2030, 1, 20, tzinfo=UTC)

    def test_horizon_is_clamped_by_max_generated_ahead_days(self):
        w = self._window(max_generated_ahead_days=7)
        assert w.end - w.start == timedelta(days=7)

    def test_effective_end_date_is_inclusive(self):
        w = self._window(effective_end_date=date(2030, 1, 10))
        assert w.end == datetime(2030, 1, 11, tzinfo=UTC)

    def test_future_effective_start_moves_window_start(self):
        w = self._window(effective_start_date=date(2030, 1, 9))
        assert w.start == datetime(2030, 1, 9, tzinfo=UTC)

    def test_zero_horizon_is_empty(self):
        assert self._window(max_generated_ahead_days=0).is_empty
