"""
Recurrence expansion for standing reservation contracts.

RRULE dialect: full RFC-5545 as implemented by ``dateutil.rrule.rrulestr``
(FREQ/INTERVAL/COUNT/UNTIL/BYDAY/BYMONTHDAY/BYSETPOS/..., plus RDATE and
EXDATE lines). DTSTART always comes from the contract anchor, so a DTSTART
line inside the rule text is rejected. Because DTSTART is zoned, UNTIL must
be written in UTC (``...Z``), as RFC-5545 requires.

Expansion is done on local wall-clock time in the contract timezone: a
weekly 09:00 slot stays at 09:00 local across DST changes, and its UTC
instant shifts instead.

Usage:
    rule = parse_rule("FREQ=WEEKLY;BYDAY=TU", anchor, "America/New_York")
    for start_local in expand_window(rule, window_start, window_end):
        key = occurrence_key(contract_id, start_local)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.rrule import rrulestr

from app.core.exceptions import RecurrenceParseError

logger = logging.getLogger(__name__)

# Upper bound on instants scanned when looking for the next unsuppressed slot.
MAX_POINTER_SCAN = 1000


@dataclass(frozen=True)
class Window:
    """Half-open [start, end) interval of aware datetimes."""

    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start


def overlaps(s1: datetime, e1: datetime, s2: datetime, e2: datetime) -> bool:
    """Half-open interval overlap: touching endpoints do not overlap."""
    return s1 < e2 and s2 < e1


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RecurrenceParseError(name or "", f"unknown timezone {name!r}") from exc


def parse_rule(rule_text: str, anchor_start_at: datetime, tz_name: str, *, contract_id: int | None = None):
    """Parse ``rule_text`` into a dateutil rruleset anchored at the local anchor.

    Raises RecurrenceParseError for anything dateutil refuses, for an
    embedded DTSTART, or for an unknown timezone.
    """
    if not rule_text or not rule_text.strip():
        raise RecurrenceParseError(rule_text or "", "empty rule", contract_id=contract_id)
    if "DTSTART" in rule_text.upper():
        raise RecurrenceParseError(
            rule_text, "DTSTART comes from the contract anchor, remove it from the rule",
            contract_id=contract_id,
        )

    tz = resolve_timezone(tz_name)
    dtstart = anchor_start_at.astimezone(tz)
    try:
        return rrulestr(rule_text.strip(), dtstart=dtstart, forceset=True)
    except (ValueError, TypeError, KeyError, IndexError) as exc:
        raise RecurrenceParseError(rule_text, str(exc), contract_id=contract_id) from exc


def expand_window(ruleset, window: Window, *, rule_text: str = "", contract_id: int | None = None) -> list[datetime]:
    """Return the local instants of ``ruleset`` inside ``window`` ([start, end))."""
    if window.is_empty:
        return []
    try:
        instants = ruleset.between(window.start, window.end, inc=True)
    except (ValueError, TypeError) as exc:
        # e.g. a floating EXDATE compared against zoned instants
        raise RecurrenceParseError(rule_text, str(exc), contract_id=contract_id) from exc
    return [i for i in instants if window.contains(i)]


def next_instant(ruleset, after: datetime, *, inclusive: bool = True, rule_text: str = "",
                 contract_id: int | None = None) -> datetime | None:
    try:
        return ruleset.after(after, inc=inclusive)
    except (ValueError, TypeError) as exc:
        raise RecurrenceParseError(rule_text, str(exc), contract_id=contract_id) from exc


def occurrence_key(contract_id: int, instant: datetime) -> str:
    """Deterministic slot identity: contract id + UTC instant.

    Derived only from the contract and the original recurrence slot, never
    from wall-clock time, so repeated expansion yields the same keys.
    """
    utc = instant.astimezone(timezone.utc)
    return f"{contract_id}#{utc:%Y%m%dT%H%M%SZ}"


def local_midnight(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def generation_window(
    *,
    now: datetime,
    tz: ZoneInfo,
    horizon_days: int,
    max_generated_ahead_days: int,
    effective_start_date: date,
    effective_end_date: date | None,
) -> Window:
    """Window from local today to today + horizon, capped by the contract.

    The horizon is clamped to ``max_generated_ahead_days``; the end is also
    capped at the day after ``effective_end_date`` (inclusive end date).
    """
    today = now.astimezone(tz).date()
    today_start = local_midnight(today, tz)
    start = max(today_start, local_midnight(effective_start_date, tz))

    days = max(0, min(horizon_days, max_generated_ahead_days))
    end = local_midnight(today + timedelta(days=days), tz)
    if effective_end_date is not None:
        end = min(end, local_midnight(effective_end_date + timedelta(days=1), tz))
    return Window(start=start, end=end)
