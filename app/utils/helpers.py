"""Shared request-parsing helpers for blueprints and services.

parse_datetime:  ISO-8601 string → aware UTC datetime (raises ValidationError)
parse_date:      ISO date string → date (raises ValidationError)
parse_int:       JSON / query value → int (raises ValidationError)
require_fields:  check for mandatory JSON keys (raises ValidationError)
"""
import logging
from datetime import date, datetime, timezone

from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def parse_datetime(value, field: str = "datetime") -> datetime | None:
    """Convert an ISO-format string to an aware UTC datetime.

    Accepts a trailing ``Z``. Naive input is rejected: every instant the
    scheduling core stores must carry an offset.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"{field} is not an ISO-8601 datetime", details={field: str(value)}) from exc
    if parsed.tzinfo is None:
        raise ValidationError(f"{field} must include a UTC offset", details={field: str(value)})
    return parsed.astimezone(timezone.utc)


def parse_date(value, field: str = "date") -> date | None:
    """Parse a YYYY-MM-DD string (or pass a date through)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"{field} must be YYYY-MM-DD", details={field: str(value)}) from exc


def parse_int(value, field: str = "value") -> int | None:
    """Coerce a JSON / query value to int; garbage becomes a 422, not a 500."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={field: str(value)})
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: str(value)}) from exc


def require_fields(data: dict, *fields: str) -> None:
    """Raise ValidationError listing every missing (or empty) field."""
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            details={f: "required" for f in missing},
        )
