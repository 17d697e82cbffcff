"""
Standing Reservation Service — contracts, exceptions and the Recurrence Planner.

Contract lifecycle:
    draft → active → paused ⇄ active → completed | cancelled → archived

Planner (expand_contract):
  1. Expand the RRULE in the contract timezone over [today, today + horizon)
  2. Derive occurrence_key = "<contract_id>#<UTC instant>" per slot
  3. Apply active exceptions in fixed precedence:
       pause_window  → slot suppressed, no row written
       skip / cancel → row written (or moved) to skipped / cancelled
       reschedule    → window (and optionally location/sellable) replaced, key kept
  4. INSERT ... ON CONFLICT DO NOTHING keyed on (tenant, contract, occurrence_key)

Racing workers converge on the same row set; a key collision is a
GenerationConflict that is counted and logged, never raised.

Suspension: while now is inside an active pause_window, or the contract is
paused and resume_at has not passed, the contract is not expanded at all.

Usage:
    from app.services.standing_reservation_service import expand_contract

    result = expand_contract(tenant_id=1, contract_id=42, horizon_days=30)
    result.inserted, result.occurrences
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from app.core.exceptions import (
    GenerationConflict,
    InvalidTransition,
    NotFoundError,
    RecurrenceParseError,
    ValidationError,
)
from app.models import db
from app.models.base import utcnow
from app.models.catalog import Location, Sellable
from app.models.standing_reservation import (
    OCCURRENCE_OPEN_STATUSES,
    StandingReservationContract,
    StandingReservationException,
    StandingReservationOccurrence,
    validate_contract_transition,
)
from app.services import recurrence
from app.services.exception_shapes import (
    CancelOccurrence,
    PauseWindow,
    RescheduleOccurrence,
    SkipOccurrence,
    build_variant,
    variant_from_row,
    variant_to_columns,
)
from app.services.helpers.scoped_queries import get_scoped
from app.utils.helpers import parse_date, parse_datetime, require_fields

logger = logging.getLogger(__name__)

PAUSE_SKIP_REASON = "pause_window"
PLANNABLE_CONTRACT_STATUSES = ("active", "paused")

_CONTRACT_ACTIONS = {
    "activate": "active",
    "pause": "paused",
    "resume": "active",
    "complete": "completed",
    "cancel": "cancelled",
    "archive": "archived",
}


# ═════════════════════════════════════════════════════════════════════════════
# Contracts
# ═════════════════════════════════════════════════════════════════════════════


def create_contract(tenant_id: int, data: dict) -> StandingReservationContract:
    """Create a draft contract after validating anchor, rule and timezone."""
    require_fields(data, "name", "sellable_id", "anchor_start_at", "recurrence_rule")

    has_user = data.get("customer_user_ref") not in (None, "")
    has_group = data.get("customer_group_ref") not in (None, "")
    if has_user == has_group:
        raise ValidationError(
            "Exactly one of customer_user_ref or customer_group_ref is required",
            details={"customer": "exactly one anchor"},
        )

    sellable = get_scoped(Sellable, data["sellable_id"], tenant_id=tenant_id)
    location_id = data.get("location_id")
    if location_id is not None:
        get_scoped(Location, location_id, tenant_id=tenant_id)

    anchor = parse_datetime(data["anchor_start_at"], "anchor_start_at")
    tz_name = data.get("timezone") or "UTC"
    recurrence.parse_rule(data["recurrence_rule"], anchor, tz_name)

    duration = int(data.get("default_duration_min") or sellable.default_duration_min or 60)
    if duration <= 0:
        raise ValidationError("default_duration_min must be positive")
    horizon = int(data.get("max_generated_ahead_days", 60))
    if horizon < 0:
        raise ValidationError("max_generated_ahead_days must be >= 0")

    tz = recurrence.resolve_timezone(tz_name)
    effective_start = (
        parse_date(data.get("effective_start_date"), "effective_start_date")
        or anchor.astimezone(tz).date()
    )
    effective_end = parse_date(data.get("effective_end_date"), "effective_end_date")
    if effective_end is not None and effective_end < effective_start:
        raise ValidationError("effective_end_date must not be before effective_start_date")

    contract = StandingReservationContract(
        tenant_id=tenant_id,
        sellable_id=sellable.id,
        location_id=location_id,
        customer_user_ref=data.get("customer_user_ref") if has_user else None,
        customer_group_ref=data.get("customer_group_ref") if has_group else None,
        name=data["name"],
        description=data.get("description", ""),
        status="draft",
        timezone=tz_name,
        anchor_start_at=anchor,
        default_duration_min=duration,
        recurrence_rule=data["recurrence_rule"].strip(),
        effective_start_date=effective_start,
        effective_end_date=effective_end,
        auto_create_orders=bool(data.get("auto_create_orders", True)),
        max_generated_ahead_days=horizon,
        policy_snapshot=data.get("policy_snapshot") or {},
        metadata_json=data.get("metadata") or {},
    )
    db.session.add(contract)
    db.session.commit()
    logger.info("Standing reservation contract created id=%s tenant=%s", contract.id, tenant_id)
    return contract


def get_contract(tenant_id: int, contract_id: int) -> StandingReservationContract:
    return get_scoped(StandingReservationContract, contract_id, tenant_id=tenant_id)


def list_contracts(tenant_id: int, *, status: str | None = None) -> list[StandingReservationContract]:
    stmt = select(StandingReservationContract).where(StandingReservationContract.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(StandingReservationContract.status == status)
    return db.session.execute(stmt.order_by(StandingReservationContract.id)).scalars().all()


def _freeze_policy(contract: StandingReservationContract) -> dict:
    snapshot = dict(contract.policy_snapshot or {})
    snapshot.setdefault("sellable_id", contract.sellable_id)
    snapshot.setdefault("location_id", contract.location_id)
    snapshot.setdefault("default_duration_min", contract.default_duration_min)
    snapshot.setdefault("timezone", contract.timezone)
    snapshot["frozen_at"] = utcnow().isoformat()
    return snapshot


def transition_contract(
    tenant_id: int,
    contract_id: int,
    action: str,
    *,
    resume_at: datetime | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> StandingReservationContract:
    """Run one contract lifecycle action.

    Actions: activate, pause, resume, complete, cancel, archive.
    Cancelling or completing a contract cancels its still-open occurrences
    that start after ``now``.
    """
    now = now or utcnow()
    contract = get_contract(tenant_id, contract_id)
    target = _CONTRACT_ACTIONS.get(action)
    if target is None:
        raise ValidationError(f"Unknown contract action: {action}", details={"action": action})
    if not validate_contract_transition(contract.status, target):
        raise InvalidTransition("StandingReservationContract", contract.id, contract.status, target)

    if action == "activate" and contract.status != "draft":
        raise InvalidTransition("StandingReservationContract", contract.id, contract.status, target,
                                "only draft contracts are activated; use resume")
    if action == "resume" and contract.status != "paused":
        raise InvalidTransition("StandingReservationContract", contract.id, contract.status, target)

    if action == "activate":
        contract.policy_snapshot = _freeze_policy(contract)
        contract.activated_at = now
    elif action == "pause":
        if resume_at is not None and resume_at <= now:
            raise ValidationError("resume_at must be in the future", details={"resume_at": resume_at.isoformat()})
        contract.paused_at = now
        contract.resume_at = resume_at
    elif action == "resume":
        contract.paused_at = None
        contract.resume_at = None
    elif action in ("complete", "cancel"):
        contract.ended_at = now
        closed = _close_open_occurrences(contract, now, reason or f"contract_{target}")
        if closed:
            logger.info("Contract id=%s %s: %d open occurrences cancelled", contract.id, target, closed)

    previous = contract.status
    contract.status = target
    db.session.commit()
    logger.info("Contract id=%s %s → %s", contract.id, previous, target)
    return contract


def activate_contract(tenant_id: int, contract_id: int, **kw) -> StandingReservationContract:
    return transition_contract(tenant_id, contract_id, "activate", **kw)


def pause_contract(tenant_id: int, contract_id: int, *, resume_at: datetime | None = None, **kw):
    return transition_contract(tenant_id, contract_id, "pause", resume_at=resume_at, **kw)


def resume_contract(tenant_id: int, contract_id: int, **kw) -> StandingReservationContract:
    return transition_contract(tenant_id, contract_id, "resume", **kw)


def complete_contract(tenant_id: int, contract_id: int, **kw) -> StandingReservationContract:
    return transition_contract(tenant_id, contract_id, "complete", **kw)


def cancel_contract(tenant_id: int, contract_id: int, **kw) -> StandingReservationContract:
    return transition_contract(tenant_id, contract_id, "cancel", **kw)


def archive_contract(tenant_id: int, contract_id: int, **kw) -> StandingReservationContract:
    return transition_contract(tenant_id, contract_id, "archive", **kw)


def _close_open_occurrences(contract, now: datetime, reason: str) -> int:
    rows = db.session.execute(
        select(StandingReservationOccurrence).where(
            StandingReservationOccurrence.tenant_id == contract.tenant_id,
            StandingReservationOccurrence.contract_id == contract.id,
            StandingReservationOccurrence.status.in_(OCCURRENCE_OPEN_STATUSES),
            StandingReservationOccurrence.planned_start_at >= now,
        )
    ).scalars().all()
    for occ in rows:
        stamp = max(now, occ.generated_at)
        occ.status = "cancelled"
        occ.cancelled_at = stamp
        occ.cancel_reason = reason
    return len(rows)


# ═════════════════════════════════════════════════════════════════════════════
# Exceptions (overrides)
# ═════════════════════════════════════════════════════════════════════════════


def create_exception(
    tenant_id: int,
    contract_id: int,
    data: dict,
    *,
    created_by: str | None = None,
) -> StandingReservationException:
    """Validate the override shape for its action and persist it.

    Raises InvalidExceptionShape / InvalidTargetShape for malformed input.
    """
    contract = get_contract(tenant_id, contract_id)
    if contract.is_terminal:
        raise ValidationError(f"Contract id={contract.id} is {contract.status}; overrides are closed")

    variant = build_variant(data.get("action"), data, contract_id=contract.id)
    if isinstance(variant, RescheduleOccurrence):
        if variant.location_id is not None:
            get_scoped(Location, variant.location_id, tenant_id=tenant_id)
        if variant.sellable_id is not None:
            get_scoped(Sellable, variant.sellable_id, tenant_id=tenant_id)

    row = StandingReservationException(
        tenant_id=tenant_id,
        contract_id=contract.id,
        is_active=True,
        created_by=created_by,
        **variant_to_columns(variant),
    )
    db.session.add(row)
    db.session.commit()
    logger.info("Contract id=%s exception created id=%s action=%s", contract.id, row.id, row.action)
    return row


def deactivate_exception(tenant_id: int, exception_id: int) -> StandingReservationException:
    """Toggle an override off. Rows are never deleted."""
    row = get_scoped(StandingReservationException, exception_id, tenant_id=tenant_id)
    if row.is_active:
        row.is_active = False
        db.session.commit()
        logger.info("Exception id=%s deactivated", row.id)
    return row


def list_exceptions(tenant_id: int, contract_id: int, *, active_only: bool = False) -> list:
    contract = get_contract(tenant_id, contract_id)
    stmt = select(StandingReservationException).where(
        StandingReservationException.tenant_id == tenant_id,
        StandingReservationException.contract_id == contract.id,
    )
    if active_only:
        stmt = stmt.where(StandingReservationException.is_active.is_(True))
    return db.session.execute(stmt.order_by(StandingReservationException.id)).scalars().all()


def _active_variants(contract) -> list:
    rows = db.session.execute(
        select(StandingReservationException).where(
            StandingReservationException.tenant_id == contract.tenant_id,
            StandingReservationException.contract_id == contract.id,
            StandingReservationException.is_active.is_(True),
        ).order_by(StandingReservationException.id)
    ).scalars().all()
    return [variant_from_row(r) for r in rows]


# ═════════════════════════════════════════════════════════════════════════════
# Recurrence Planner
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class SlotPlan:
    """What the planner intends for one recurrence slot."""

    key: str
    slot_start: datetime
    local_date: object
    start_at: datetime
    end_at: datetime
    location_id: int | None
    sellable_id: int | None
    status: str = "planned"
    reason: str | None = None
    exception_id: int | None = None
    suppressed: bool = False


@dataclass
class ExpansionResult:
    contract_id: int
    window_start: datetime | None = None
    window_end: datetime | None = None
    occurrences: list = field(default_factory=list)
    inserted: int = 0
    updated: int = 0
    absorbed_conflicts: int = 0
    suppressed_keys: list[str] = field(default_factory=list)
    skipped_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "contract_id": self.contract_id,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "inserted": self.inserted,
            "updated": self.updated,
            "absorbed_conflicts": self.absorbed_conflicts,
            "suppressed_keys": self.suppressed_keys,
            "skipped_reason": self.skipped_reason,
            "warnings": self.warnings,
            "occurrences": [o.to_dict() for o in self.occurrences],
        }


def _plan_slot(contract, slot_start: datetime, variants: list) -> SlotPlan:
    key = recurrence.occurrence_key(contract.id, slot_start)
    local_date = slot_start.date()
    plan = SlotPlan(
        key=key,
        slot_start=slot_start,
        local_date=local_date,
        start_at=slot_start,
        end_at=slot_start + timedelta(minutes=contract.default_duration_min),
        location_id=contract.location_id,
        sellable_id=contract.sellable_id,
    )

    for v in variants:
        if isinstance(v, PauseWindow) and v.contains(slot_start):
            plan.suppressed = True
            plan.reason = v.reason or PAUSE_SKIP_REASON
            plan.exception_id = v.exception_id
            return plan

    for v in variants:
        if isinstance(v, (SkipOccurrence, CancelOccurrence)) and v.target.matches(key, local_date):
            plan.status = "skipped" if isinstance(v, SkipOccurrence) else "cancelled"
            plan.reason = v.reason or v.action
            plan.exception_id = v.exception_id
            return plan

    for v in variants:
        if isinstance(v, RescheduleOccurrence) and v.target.matches(key, local_date):
            plan.start_at = v.start_at
            plan.end_at = v.end_at
            if v.location_id is not None:
                plan.location_id = v.location_id
            if v.sellable_id is not None:
                plan.sellable_id = v.sellable_id
            plan.reason = v.reason
            plan.exception_id = v.exception_id
            return plan

    return plan


def _row_values(contract, plan: SlotPlan, now: datetime) -> dict:
    """Column values (by column name) for one new occurrence row."""
    values = {
        "tenant_id": contract.tenant_id,
        "contract_id": contract.id,
        "occurrence_key": plan.key,
        "occurrence_local_date": plan.local_date,
        "planned_start_at": plan.start_at,
        "planned_end_at": plan.end_at,
        "location_id": plan.location_id,
        "sellable_id": plan.sellable_id,
        "status": plan.status,
        "booking_order_id": None,
        "source_exception_id": plan.exception_id,
        "generated_at": now,
        "booked_at": None,
        "fulfilled_at": None,
        "cancelled_at": now if plan.status == "cancelled" else None,
        "skipped_at": now if plan.status == "skipped" else None,
        "failed_at": None,
        "skip_reason": plan.reason if plan.status == "skipped" else None,
        "cancel_reason": plan.reason if plan.status == "cancelled" else None,
        "failure_reason": None,
        "metadata": {},
        "created_at": now,
        "updated_at": now,
    }
    return values


def _insert_if_absent(rows: list[dict]) -> set[str]:
    """Insert rows, skipping keys another worker already wrote.

    Returns the occurrence keys that this call actually inserted.
    """
    if not rows:
        return set()
    table = StandingReservationOccurrence.__table__
    conflict_cols = ["tenant_id", "contract_id", "occurrence_key"]
    dialect = db.engine.dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(table).values(rows).on_conflict_do_nothing(index_elements=conflict_cols)
    elif dialect == "sqlite":
        stmt = sqlite_insert(table).values(rows).on_conflict_do_nothing(index_elements=conflict_cols)
    else:
        db.session.execute(table.insert().values(rows))
        return {r["occurrence_key"] for r in rows}
    result = db.session.execute(stmt.returning(table.c.occurrence_key))
    return set(result.scalars().all())


def _apply_to_existing(occ, plan: SlotPlan, now: datetime) -> bool:
    """Bring a still-open existing row in line with late exceptions.

    Rows that are booked or terminal are never touched. Returns True when
    the row changed.
    """
    if occ.status not in OCCURRENCE_OPEN_STATUSES:
        return False
    stamp = max(now, occ.generated_at)

    if plan.suppressed:
        occ.status = "skipped"
        occ.skipped_at = stamp
        occ.skip_reason = plan.reason
        occ.source_exception_id = plan.exception_id
        return True
    if plan.status == "skipped":
        occ.status = "skipped"
        occ.skipped_at = stamp
        occ.skip_reason = plan.reason
        occ.source_exception_id = plan.exception_id
        return True
    if plan.status == "cancelled":
        occ.status = "cancelled"
        occ.cancelled_at = stamp
        occ.cancel_reason = plan.reason
        occ.source_exception_id = plan.exception_id
        return True
    if plan.exception_id is not None and (
        occ.planned_start_at != plan.start_at
        or occ.planned_end_at != plan.end_at
        or occ.location_id != plan.location_id
        or occ.sellable_id != plan.sellable_id
    ):
        occ.planned_start_at = plan.start_at
        occ.planned_end_at = plan.end_at
        occ.location_id = plan.location_id
        occ.sellable_id = plan.sellable_id
        occ.source_exception_id = plan.exception_id
        return True
    return False


def _pause_containing(variants: list, instant: datetime) -> PauseWindow | None:
    for v in variants:
        if isinstance(v, PauseWindow) and v.contains(instant):
            return v
    return None


def next_planned_pointer(contract, ruleset, variants: list, start: datetime) -> datetime | None:
    """First recurrence slot at or after ``start`` that no pause window suppresses.

    The pointer advances past pause windows even when they extend beyond
    the generation horizon; it is None once the rule or the effective end
    date is exhausted.
    """
    tz = recurrence.resolve_timezone(contract.timezone)
    limit = None
    if contract.effective_end_date is not None:
        limit = recurrence.local_midnight(contract.effective_end_date + timedelta(days=1), tz)

    candidate = recurrence.next_instant(ruleset, start.astimezone(tz), inclusive=True,
                                        rule_text=contract.recurrence_rule, contract_id=contract.id)
    for _ in range(recurrence.MAX_POINTER_SCAN):
        if candidate is None or (limit is not None and candidate >= limit):
            return None
        if _pause_containing(variants, candidate) is None:
            return candidate
        candidate = recurrence.next_instant(ruleset, candidate, inclusive=False,
                                            rule_text=contract.recurrence_rule, contract_id=contract.id)
    logger.warning("Contract id=%s: no unsuppressed slot within %d candidates",
                   contract.id, recurrence.MAX_POINTER_SCAN)
    return None


def _suspension(contract, variants: list, now: datetime) -> tuple[str | None, datetime | None]:
    """Return (reason, resume_point) when generation must be skipped entirely."""
    if contract.status == "paused":
        if contract.resume_at is not None and contract.resume_at <= now:
            return None, None
        return "contract_paused", contract.resume_at
    pause = _pause_containing(variants, now)
    if pause is not None:
        return "pause_window", pause.end_at
    return None, None


def expand_contract(
    tenant_id: int,
    contract_id: int,
    *,
    horizon_days: int | None = None,
    now: datetime | None = None,
) -> ExpansionResult:
    """Expand one contract into occurrences for [today, today + horizon).

    Idempotent: a second call with the same inputs inserts nothing and
    returns the same occurrence set.

    Raises:
        RecurrenceParseError: the rule cannot be parsed; nothing is written.
        ValidationError: the contract is not active or paused.
    """
    now = now or utcnow()
    contract = get_contract(tenant_id, contract_id)
    if contract.status not in PLANNABLE_CONTRACT_STATUSES:
        raise ValidationError(
            f"Contract id={contract.id} is {contract.status}; only active or paused contracts are expanded",
            details={"status": contract.status},
        )

    ruleset = recurrence.parse_rule(
        contract.recurrence_rule, contract.anchor_start_at, contract.timezone, contract_id=contract.id,
    )
    variants = _active_variants(contract)
    result = ExpansionResult(contract_id=contract.id)

    reason, resume_point = _suspension(contract, variants, now)
    if reason is not None:
        contract.next_planned_occurrence_at = (
            next_planned_pointer(contract, ruleset, variants, resume_point) if resume_point else None
        )
        db.session.commit()
        result.skipped_reason = reason
        logger.info("Contract id=%s generation skipped (%s)", contract.id, reason)
        return result

    if contract.status == "paused":
        # resume_at has passed
        contract.status = "active"
        contract.paused_at = None
        contract.resume_at = None
        logger.info("Contract id=%s auto-resumed", contract.id)

    default_horizon = current_app.config.get("PLANNER_DEFAULT_HORIZON_DAYS", 60)
    tz = recurrence.resolve_timezone(contract.timezone)
    window = recurrence.generation_window(
        now=now,
        tz=tz,
        horizon_days=horizon_days if horizon_days is not None else min(default_horizon, contract.max_generated_ahead_days),
        max_generated_ahead_days=contract.max_generated_ahead_days,
        effective_start_date=contract.effective_start_date,
        effective_end_date=contract.effective_end_date,
    )
    result.window_start, result.window_end = window.start, window.end

    instants = recurrence.expand_window(
        ruleset, window, rule_text=contract.recurrence_rule, contract_id=contract.id,
    )
    plans = [_plan_slot(contract, inst, variants) for inst in instants]
    keys = [p.key for p in plans]

    existing = {
        occ.occurrence_key: occ
        for occ in db.session.execute(
            select(StandingReservationOccurrence).where(
                StandingReservationOccurrence.tenant_id == tenant_id,
                StandingReservationOccurrence.contract_id == contract.id,
                StandingReservationOccurrence.occurrence_key.in_(keys),
            )
        ).scalars()
    } if keys else {}

    new_rows = []
    for plan in plans:
        occ = existing.get(plan.key)
        if occ is not None:
            if _apply_to_existing(occ, plan, now):
                result.updated += 1
            if plan.suppressed:
                result.suppressed_keys.append(plan.key)
            continue
        if plan.suppressed:
            result.suppressed_keys.append(plan.key)
            continue
        new_rows.append(_row_values(contract, plan, now))

    db.session.flush()
    inserted_keys = _insert_if_absent(new_rows)
    inserted = len(inserted_keys)
    result.inserted = inserted
    for row in new_rows:
        if row["occurrence_key"] not in inserted_keys:
            conflict = GenerationConflict(row["occurrence_key"])
            logger.debug("Contract id=%s: absorbed %s", contract.id, conflict)
            result.absorbed_conflicts += 1
            result.warnings.append(str(conflict))

    if inserted:
        contract.last_occurrence_generated_at = now
    contract.next_planned_occurrence_at = next_planned_pointer(contract, ruleset, variants, now)
    db.session.commit()

    visible = [p.key for p in plans if not p.suppressed]
    result.occurrences = db.session.execute(
        select(StandingReservationOccurrence).where(
            StandingReservationOccurrence.tenant_id == tenant_id,
            StandingReservationOccurrence.contract_id == contract.id,
            StandingReservationOccurrence.occurrence_key.in_(visible),
        ).order_by(StandingReservationOccurrence.occurrence_key)
    ).scalars().all() if visible else []

    logger.info(
        "Contract id=%s expanded: window=[%s, %s) slots=%d inserted=%d updated=%d suppressed=%d",
        contract.id, window.start.isoformat(), window.end.isoformat(),
        len(plans), inserted, result.updated, len(result.suppressed_keys),
    )
    return result


def _record_generation_error(contract_id: int, error: str, now: datetime) -> None:
    db.session.execute(
        update(StandingReservationContract)
        .where(StandingReservationContract.id == contract_id)
        .values(generation_error=error, generation_error_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def plan_all_contracts(*, tenant_id: int | None = None, now: datetime | None = None) -> dict:
    """Expand every active/paused contract; a failure stays with its own contract.

    A rule that fails to parse is stamped on the contract (generation_error)
    and left out of later sweeps until the rule is replaced. Contracts that
    end or vanish between the listing and their turn are reported and skipped.
    """
    now = now or utcnow()
    Contract = StandingReservationContract
    stmt = select(Contract.id, Contract.tenant_id).where(
        Contract.status.in_(PLANNABLE_CONTRACT_STATUSES),
        Contract.generation_error.is_(None),
    )
    if tenant_id is not None:
        stmt = stmt.where(Contract.tenant_id == tenant_id)
    targets = db.session.execute(stmt.order_by(Contract.id)).all()

    report = {"contracts": 0, "inserted": 0, "skipped": 0, "parse_errors": [], "errors": []}
    for contract_id, contract_tenant in targets:
        try:
            result = expand_contract(contract_tenant, contract_id, now=now)
        except RecurrenceParseError as exc:
            db.session.rollback()
            _record_generation_error(contract_id, str(exc), now)
            logger.warning("Contract id=%s excluded from generation: %s", contract_id, exc,
                           extra={"tenant_id": contract_tenant, "contract_id": contract_id})
            report["parse_errors"].append({"contract_id": contract_id, "error": str(exc)})
            continue
        except (ValidationError, NotFoundError) as exc:
            db.session.rollback()
            logger.info("Contract id=%s not expanded: %s", contract_id, exc,
                        extra={"tenant_id": contract_tenant, "contract_id": contract_id})
            report["errors"].append({"contract_id": contract_id, "error": str(exc)})
            continue
        report["contracts"] += 1
        report["inserted"] += result.inserted
        if result.skipped_reason:
            report["skipped"] += 1
    return report


def list_occurrences(tenant_id: int, contract_id: int, *, status: str | None = None) -> list:
    contract = get_contract(tenant_id, contract_id)
    stmt = select(StandingReservationOccurrence).where(
        StandingReservationOccurrence.tenant_id == tenant_id,
        StandingReservationOccurrence.contract_id == contract.id,
    )
    if status:
        stmt = stmt.where(StandingReservationOccurrence.status == status)
    return db.session.execute(stmt.order_by(StandingReservationOccurrence.planned_start_at)).scalars().all()
