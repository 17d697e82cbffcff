"""
Standing reservation exception variants.

Each override action has exactly one legal field shape. Instead of passing
a row with a pile of nullable columns around, the planner works with one
frozen dataclass per action that carries only the fields that action may
use:

    SkipOccurrence        target
    CancelOccurrence      target
    RescheduleOccurrence  target + start/end (+ optional location / sellable)
    PauseWindow           start/end

``build_variant`` validates an API payload and raises InvalidExceptionShape
or InvalidTargetShape; ``variant_from_row`` rebuilds the variant from a
stored StandingReservationException.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from app.core.exceptions import InvalidExceptionShape, InvalidTargetShape, ValidationError
from app.utils.helpers import parse_date, parse_datetime

_OVERRIDE_FIELDS = ("override_start_at", "override_end_at", "override_location_id", "override_sellable_id")
_TARGET_FIELDS = ("target_occurrence_key", "target_local_date")


@dataclass(frozen=True)
class OccurrenceTarget:
    """Exactly one of occurrence_key / local_date."""

    occurrence_key: str | None = None
    local_date: date | None = None

    def matches(self, key: str, local_day: date) -> bool:
        if self.occurrence_key is not None:
            return self.occurrence_key == key
        return self.local_date == local_day


@dataclass(frozen=True)
class SkipOccurrence:
    target: OccurrenceTarget
    reason: str | None = None
    exception_id: int | None = None

    action = "skip_occurrence"


@dataclass(frozen=True)
class CancelOccurrence:
    target: OccurrenceTarget
    reason: str | None = None
    exception_id: int | None = None

    action = "cancel_occurrence"


@dataclass(frozen=True)
class RescheduleOccurrence:
    target: OccurrenceTarget
    start_at: datetime
    end_at: datetime
    location_id: int | None = None
    sellable_id: int | None = None
    reason: str | None = None
    exception_id: int | None = None

    action = "reschedule_occurrence"


@dataclass(frozen=True)
class PauseWindow:
    start_at: datetime
    end_at: datetime
    reason: str | None = None
    exception_id: int | None = None

    action = "pause_window"

    def contains(self, instant: datetime) -> bool:
        return self.start_at <= instant < self.end_at


TARGETED_VARIANTS = (SkipOccurrence, CancelOccurrence, RescheduleOccurrence)


def _present(data: dict, fields) -> list[str]:
    return [f for f in fields if data.get(f) not in (None, "")]


def _build_target(data: dict, contract_id: int) -> OccurrenceTarget:
    given = _present(data, _TARGET_FIELDS)
    if not given:
        raise InvalidTargetShape(
            "Exactly one of target_occurrence_key or target_local_date is required",
            details={"fields": list(_TARGET_FIELDS)},
        )
    if len(given) > 1:
        raise InvalidTargetShape(
            "target_occurrence_key and target_local_date are mutually exclusive",
            details={"fields": given},
        )
    key = data.get("target_occurrence_key")
    if key is not None:
        if not isinstance(key, str) or not key.startswith(f"{contract_id}#"):
            raise InvalidTargetShape(
                f"Occurrence key {key!r} does not belong to contract {contract_id}",
                details={"target_occurrence_key": key},
            )
        return OccurrenceTarget(occurrence_key=key)
    try:
        return OccurrenceTarget(local_date=parse_date(data["target_local_date"], "target_local_date"))
    except ValidationError as exc:
        raise InvalidTargetShape(str(exc), details={"target_local_date": data["target_local_date"]}) from exc


def _build_window(action: str, data: dict) -> tuple[datetime, datetime]:
    missing = [f for f in ("override_start_at", "override_end_at") if data.get(f) in (None, "")]
    if missing:
        raise InvalidExceptionShape(action, "an explicit start and end are required", missing)
    try:
        start = parse_datetime(data["override_start_at"], "override_start_at")
        end = parse_datetime(data["override_end_at"], "override_end_at")
    except ValidationError as exc:
        raise InvalidExceptionShape(action, str(exc), ["override_start_at", "override_end_at"]) from exc
    if end <= start:
        raise InvalidExceptionShape(action, "override_end_at must be after override_start_at",
                                    ["override_start_at", "override_end_at"])
    return start, end


def build_variant(action: str, data: dict, *, contract_id: int):
    """Validate ``data`` for ``action`` and return the matching variant.

    Never coerces: a field that is not legal for the action is an error,
    not something to drop silently.
    """
    reason = data.get("reason")

    if action in ("skip_occurrence", "cancel_occurrence"):
        extra = _present(data, _OVERRIDE_FIELDS)
        if extra:
            raise InvalidExceptionShape(action, "override fields are not allowed", extra)
        target = _build_target(data, contract_id)
        cls = SkipOccurrence if action == "skip_occurrence" else CancelOccurrence
        return cls(target=target, reason=reason)

    if action == "reschedule_occurrence":
        target = _build_target(data, contract_id)
        start, end = _build_window(action, data)
        return RescheduleOccurrence(
            target=target,
            start_at=start,
            end_at=end,
            location_id=data.get("override_location_id"),
            sellable_id=data.get("override_sellable_id"),
            reason=reason,
        )

    if action == "pause_window":
        extra = _present(data, _TARGET_FIELDS + ("override_location_id", "override_sellable_id"))
        if extra:
            raise InvalidExceptionShape(action, "a pause window takes no target or overrides", extra)
        start, end = _build_window(action, data)
        return PauseWindow(start_at=start, end_at=end, reason=reason)

    raise InvalidExceptionShape(str(action), "unknown exception action", ["action"])


def variant_from_row(row):
    """Rebuild the variant for a stored exception row."""
    target = OccurrenceTarget(
        occurrence_key=row.target_occurrence_key,
        local_date=row.target_local_date if row.target_occurrence_key is None else None,
    )
    if row.action == "skip_occurrence":
        return SkipOccurrence(target=target, reason=row.reason, exception_id=row.id)
    if row.action == "cancel_occurrence":
        return CancelOccurrence(target=target, reason=row.reason, exception_id=row.id)
    if row.action == "reschedule_occurrence":
        return RescheduleOccurrence(
            target=target,
            start_at=row.override_start_at,
            end_at=row.override_end_at,
            location_id=row.override_location_id,
            sellable_id=row.override_sellable_id,
            reason=row.reason,
            exception_id=row.id,
        )
    if row.action == "pause_window":
        return PauseWindow(
            start_at=row.override_start_at, end_at=row.override_end_at,
            reason=row.reason, exception_id=row.id,
        )
    raise InvalidExceptionShape(row.action, "unknown exception action", ["action"])


def variant_to_columns(variant) -> dict:
    """Column values for persisting ``variant`` as a StandingReservationException."""
    columns = {
        "action": variant.action,
        "reason": variant.reason,
        "target_occurrence_key": None,
        "target_local_date": None,
        "override_start_at": None,
        "override_end_at": None,
        "override_location_id": None,
        "override_sellable_id": None,
    }
    if isinstance(variant, TARGETED_VARIANTS):
        columns["target_occurrence_key"] = variant.target.occurrence_key
        columns["target_local_date"] = variant.target.local_date
    if isinstance(variant, (RescheduleOccurrence, PauseWindow)):
        columns["override_start_at"] = variant.start_at
        columns["override_end_at"] = variant.end_at
    if isinstance(variant, RescheduleOccurrence):
        columns["override_location_id"] = variant.location_id
        columns["override_sellable_id"] = variant.sellable_id
    return columns
