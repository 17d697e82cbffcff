"""
Assignment Allocator — binds resources to fulfillment units without double-booking.

Lifecycle (FulfillmentAssignment.status):
    proposed    → reserved | confirmed | cancelled
    reserved    → confirmed | in_progress | cancelled
    confirmed   → in_progress | cancelled
    in_progress → completed | cancelled

Overlap exclusivity:
    Active assignments (reserved / confirmed / in_progress) with
    conflict_policy='enforce_no_overlap' never share a resource over
    overlapping half-open windows [s1, e1) and [s2, e2) (s1 < e2 and s2 < e1).
    The check runs after locking the resource row (SELECT ... FOR UPDATE);
    on PostgreSQL an exclusion constraint backs it up and its IntegrityError
    is reported as ResourceConflict.

Every change appends one FulfillmentAssignmentEvent (full before/after
snapshot) in the same transaction as the projection update.

Usage:
    a = propose_assignment(tenant_id, unit_id, resource_id, starts_at, ends_at)
    confirm_assignment(tenant_id, a.id, actor_ref="dispatcher:17")
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import InvalidTransition, ResourceConflict, ValidationError
from app.integrations.availability_gateway import get_availability_gateway
from app.models import db
from app.models.catalog import Resource
from app.models.fulfillment import (
    ACTIVE_ASSIGNMENT_STATUSES,
    ASSIGNMENT_TERMINAL_STATUSES,
    CONFLICT_POLICIES,
    OVERLAP_CONSTRAINT_NAME,
    UNIT_TERMINAL_STATUSES,
    FulfillmentAssignment,
    FulfillmentAssignmentEvent,
    FulfillmentUnit,
    validate_assignment_transition,
)
from app.services.dependency_validator import validate_graph
from app.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

_ENTITY = "FulfillmentAssignment"
INITIAL_STATUSES = {"proposed", "reserved"}
_DIMENSIONS = ("status", "resource_id", "starts_at", "ends_at", "conflict_policy")


# ═════════════════════════════════════════════════════════════════════════════
# Guards
# ═════════════════════════════════════════════════════════════════════════════


def _check_policy(conflict_policy: str) -> None:
    if conflict_policy not in CONFLICT_POLICIES:
        raise ValidationError(
            f"Unknown conflict_policy: {conflict_policy}",
            details={"conflict_policy": conflict_policy, "allowed": sorted(CONFLICT_POLICIES)},
        )


def _check_window(starts_at: datetime | None, ends_at: datetime | None, status: str) -> None:
    if (starts_at is None) != (ends_at is None):
        raise ValidationError("starts_at and ends_at go together", details={"window": "incomplete"})
    if starts_at is None and status in ACTIVE_ASSIGNMENT_STATUSES:
        raise ValidationError(f"A {status} assignment needs a window", details={"window": "required"})
    if starts_at is not None and ends_at <= starts_at:
        raise ValidationError("ends_at must be after starts_at", details={"window": "inverted"})


def _lock_resource(tenant_id: int, resource_id: int) -> Resource:
    resource = get_scoped(Resource, resource_id, tenant_id=tenant_id, for_update=True)
    if not resource.is_active:
        raise ValidationError(f"Resource id={resource.id} is inactive", details={"resource_id": resource.id})
    return resource


def _check_unit(unit: FulfillmentUnit) -> None:
    if unit.status in UNIT_TERMINAL_STATUSES:
        raise ValidationError(
            f"Unit id={unit.id} is {unit.status}; it cannot be assigned", details={"unit_status": unit.status},
        )


def _check_availability(availability, tenant_id, resource_id, starts_at, ends_at) -> None:
    if starts_at is None:
        return
    gateway = availability or get_availability_gateway()
    verdict = gateway.check(tenant_id, resource_id, starts_at, ends_at)
    if not verdict.open:
        raise ValidationError(
            f"Resource id={resource_id} is not available for the requested window",
            details={"resource_id": resource_id, "reason": verdict.reason},
        )


def find_conflicts(
    tenant_id: int,
    resource_id: int,
    starts_at: datetime,
    ends_at: datetime,
    *,
    exclude_id: int | None = None,
) -> list[int]:
    """Ids of active enforce_no_overlap assignments overlapping [starts_at, ends_at)."""
    A = FulfillmentAssignment
    stmt = select(A.id).where(
        A.tenant_id == tenant_id,
        A.resource_id == resource_id,
        A.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
        A.conflict_policy == "enforce_no_overlap",
        A.starts_at < ends_at,
        A.ends_at > starts_at,
    )
    if exclude_id is not None:
        stmt = stmt.where(A.id != exclude_id)
    return list(db.session.execute(stmt.order_by(A.id)).scalars().all())


def _enforce_exclusivity(tenant_id, resource_id, starts_at, ends_at, *, exclude_id=None) -> None:
    conflicts = find_conflicts(tenant_id, resource_id, starts_at, ends_at, exclude_id=exclude_id)
    if conflicts:
        logger.info("Resource id=%s conflict with assignments %s", resource_id, conflicts)
        raise ResourceConflict(resource_id, conflicts, starts_at, ends_at)


def _needs_exclusivity(snapshot: dict) -> bool:
    return snapshot["status"] in ACTIVE_ASSIGNMENT_STATUSES and snapshot["conflict_policy"] == "enforce_no_overlap"


def _commit(resource_id: int, starts_at, ends_at) -> None:
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        if OVERLAP_CONSTRAINT_NAME in str(exc.orig):
            raise ResourceConflict(resource_id, [], starts_at, ends_at) from exc
        raise


# ═════════════════════════════════════════════════════════════════════════════
# Events
# ═════════════════════════════════════════════════════════════════════════════


def _record(
    assignment: FulfillmentAssignment,
    event_type: str,
    before: dict | None,
    *,
    actor_ref: str | None,
    request_key: str | None,
    reason_code: str | None,
    details: dict | None = None,
) -> FulfillmentAssignmentEvent:
    before = before or {}
    after = assignment.snapshot()
    event = FulfillmentAssignmentEvent(
        tenant_id=assignment.tenant_id,
        fulfillment_assignment_id=assignment.id,
        event_type=event_type,
        previous_status=before.get("status"),
        next_status=after["status"],
        previous_resource_id=before.get("resource_id"),
        next_resource_id=after["resource_id"],
        previous_starts_at=before.get("starts_at"),
        next_starts_at=after["starts_at"],
        previous_ends_at=before.get("ends_at"),
        next_ends_at=after["ends_at"],
        previous_conflict_policy=before.get("conflict_policy"),
        next_conflict_policy=after["conflict_policy"],
        actor_ref=actor_ref,
        request_key=request_key,
        reason_code=reason_code,
        details=details or {},
    )
    db.session.add(event)
    return event


def _replayed(tenant_id: int, request_key: str | None, event_type: str) -> FulfillmentAssignment | None:
    """Assignment already produced by an earlier call with the same request key."""
    if not request_key:
        return None
    E = FulfillmentAssignmentEvent
    assignment_id = db.session.execute(
        select(E.fulfillment_assignment_id).where(
            E.tenant_id == tenant_id, E.request_key == request_key, E.event_type == event_type,
        ).order_by(E.id).limit(1)
    ).scalar_one_or_none()
    if assignment_id is None:
        return None
    return get_scoped(FulfillmentAssignment, assignment_id, tenant_id=tenant_id)


# ═════════════════════════════════════════════════════════════════════════════
# Operations
# ═════════════════════════════════════════════════════════════════════════════


def get_assignment(tenant_id: int, assignment_id: int) -> FulfillmentAssignment:
    return get_scoped(FulfillmentAssignment, assignment_id, tenant_id=tenant_id)


def propose_assignment(
    tenant_id: int,
    unit_id: int,
    resource_id: int,
    starts_at: datetime | None,
    ends_at: datetime | None,
    conflict_policy: str = "enforce_no_overlap",
    *,
    initial_status: str = "reserved",
    role_label: str | None = None,
    is_primary: bool = False,
    actor_ref: str | None = None,
    request_key: str | None = None,
    reason_code: str | None = None,
    availability=None,
) -> FulfillmentAssignment:
    """Bind ``resource_id`` to ``unit_id`` for [starts_at, ends_at).

    Retrying with the same ``request_key`` returns the assignment the first
    call created instead of proposing a second one.

    Raises:
        ResourceConflict: an active enforce_no_overlap assignment overlaps.
        CycleDetected / GapViolation: the unit is not schedulable yet.
        ValidationError: bad window, terminal unit, inactive or unavailable resource.
    """
    _check_policy(conflict_policy)
    if initial_status not in INITIAL_STATUSES:
        raise ValidationError(
            f"initial_status must be one of {sorted(INITIAL_STATUSES)}", details={"initial_status": initial_status},
        )
    _check_window(starts_at, ends_at, initial_status)

    previous = _replayed(tenant_id, request_key, "created")
    if previous is not None:
        logger.info("Assignment id=%s returned for repeated request_key=%s", previous.id, request_key)
        return previous

    unit = get_scoped(FulfillmentUnit, unit_id, tenant_id=tenant_id)
    _check_unit(unit)
    validate_graph(tenant_id, unit.booking_order_id).raise_for_unit(unit.id)

    resource = _lock_resource(tenant_id, resource_id)
    _check_availability(availability, tenant_id, resource.id, starts_at, ends_at)
    if initial_status in ACTIVE_ASSIGNMENT_STATUSES and conflict_policy == "enforce_no_overlap":
        _enforce_exclusivity(tenant_id, resource.id, starts_at, ends_at)

    assignment = FulfillmentAssignment(
        tenant_id=tenant_id,
        fulfillment_unit_id=unit.id,
        resource_id=resource.id,
        status=initial_status,
        conflict_policy=conflict_policy,
        role_label=role_label,
        is_primary=bool(is_primary),
        starts_at=starts_at,
        ends_at=ends_at,
        assigned_by=actor_ref,
    )
    db.session.add(assignment)
    db.session.flush()
    _record(assignment, "created", None, actor_ref=actor_ref, request_key=request_key, reason_code=reason_code)
    _commit(resource.id, starts_at, ends_at)

    logger.info(
        "Assignment created id=%s unit=%s resource=%s [%s]", assignment.id, unit.id, resource.id, initial_status,
        extra={"tenant_id": tenant_id, "assignment_id": assignment.id},
    )
    return assignment


def _transition(
    tenant_id: int,
    assignment_id: int,
    target: str,
    *,
    actor_ref: str | None,
    request_key: str | None,
    reason_code: str | None,
    availability=None,
) -> FulfillmentAssignment:
    assignment = get_assignment(tenant_id, assignment_id)
    if not validate_assignment_transition(assignment.status, target):
        raise InvalidTransition(_ENTITY, assignment.id, assignment.status, target)

    before = assignment.snapshot()
    after = dict(before, status=target)

    if target in ACTIVE_ASSIGNMENT_STATUSES:
        unit = get_scoped(FulfillmentUnit, assignment.fulfillment_unit_id, tenant_id=tenant_id)
        _check_unit(unit)
        _check_window(assignment.starts_at, assignment.ends_at, target)
        if not assignment.is_active:
            # entering the active set
            _lock_resource(tenant_id, assignment.resource_id)
            _check_availability(availability, tenant_id, assignment.resource_id,
                                assignment.starts_at, assignment.ends_at)
            if _needs_exclusivity(after):
                _enforce_exclusivity(tenant_id, assignment.resource_id, assignment.starts_at,
                                     assignment.ends_at, exclude_id=assignment.id)

    assignment.status = target
    event_type = target if target in ASSIGNMENT_TERMINAL_STATUSES else "status_changed"
    _record(assignment, event_type, before, actor_ref=actor_ref, request_key=request_key, reason_code=reason_code)
    _commit(assignment.resource_id, assignment.starts_at, assignment.ends_at)

    logger.info(
        "Assignment id=%s %s → %s", assignment.id, before["status"], target,
        extra={"tenant_id": tenant_id, "assignment_id": assignment.id},
    )
    return assignment


def confirm_assignment(tenant_id: int, assignment_id: int, *, actor_ref=None, request_key=None,
                       reason_code=None, availability=None) -> FulfillmentAssignment:
    return _transition(tenant_id, assignment_id, "confirmed", actor_ref=actor_ref, request_key=request_key,
                       reason_code=reason_code, availability=availability)


def start_assignment(tenant_id: int, assignment_id: int, *, actor_ref=None, request_key=None,
                     reason_code=None) -> FulfillmentAssignment:
    return _transition(tenant_id, assignment_id, "in_progress", actor_ref=actor_ref, request_key=request_key,
                       reason_code=reason_code)


def complete_assignment(tenant_id: int, assignment_id: int, *, actor_ref=None, request_key=None,
                        reason_code=None) -> FulfillmentAssignment:
    return _transition(tenant_id, assignment_id, "completed", actor_ref=actor_ref, request_key=request_key,
                       reason_code=reason_code)


def cancel_assignment(tenant_id: int, assignment_id: int, *, reason_code: str | None = None,
                      actor_ref=None, request_key=None) -> FulfillmentAssignment:
    return _transition(tenant_id, assignment_id, "cancelled", actor_ref=actor_ref, request_key=request_key,
                       reason_code=reason_code)


def reassign_assignment(
    tenant_id: int,
    assignment_id: int,
    *,
    resource_id: int | None = None,
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
    conflict_policy: str | None = None,
    actor_ref: str | None = None,
    request_key: str | None = None,
    reason_code: str | None = None,
    availability=None,
) -> FulfillmentAssignment:
    """Change resource, window and/or conflict policy of a live assignment.

    Exclusivity is re-checked whenever the result is an active
    enforce_no_overlap assignment. No-op calls write no event.
    """
    assignment = get_assignment(tenant_id, assignment_id)
    if assignment.status in ASSIGNMENT_TERMINAL_STATUSES:
        raise InvalidTransition(_ENTITY, assignment.id, assignment.status, assignment.status,
                                "terminal assignments cannot be reassigned")
    if conflict_policy is not None:
        _check_policy(conflict_policy)

    before = assignment.snapshot()
    after = dict(before)
    if resource_id is not None:
        after["resource_id"] = resource_id
    if starts_at is not None or ends_at is not None:
        after["starts_at"] = starts_at if starts_at is not None else before["starts_at"]
        after["ends_at"] = ends_at if ends_at is not None else before["ends_at"]
    if conflict_policy is not None:
        after["conflict_policy"] = conflict_policy
    if after == before:
        return assignment

    _check_window(after["starts_at"], after["ends_at"], after["status"])
    resource_changed = after["resource_id"] != before["resource_id"]
    window_changed = (after["starts_at"], after["ends_at"]) != (before["starts_at"], before["ends_at"])

    _lock_resource(tenant_id, after["resource_id"])
    if resource_changed or window_changed:
        _check_availability(availability, tenant_id, after["resource_id"], after["starts_at"], after["ends_at"])
    if _needs_exclusivity(after):
        _enforce_exclusivity(tenant_id, after["resource_id"], after["starts_at"], after["ends_at"],
                             exclude_id=assignment.id)

    assignment.resource_id = after["resource_id"]
    assignment.starts_at = after["starts_at"]
    assignment.ends_at = after["ends_at"]
    assignment.conflict_policy = after["conflict_policy"]

    if resource_changed:
        event_type = "resource_changed"
    elif window_changed:
        event_type = "window_changed"
    else:
        event_type = "conflict_policy_changed"
    _record(assignment, event_type, before, actor_ref=actor_ref, request_key=request_key, reason_code=reason_code)
    _commit(assignment.resource_id, assignment.starts_at, assignment.ends_at)

    logger.info(
        "Assignment id=%s %s", assignment.id, event_type,
        extra={"tenant_id": tenant_id, "assignment_id": assignment.id},
    )
    return assignment


# ═════════════════════════════════════════════════════════════════════════════
# History
# ═════════════════════════════════════════════════════════════════════════════


def assignment_history(tenant_id: int, assignment_id: int) -> list[FulfillmentAssignmentEvent]:
    assignment = get_assignment(tenant_id, assignment_id)
    return db.session.execute(
        select(FulfillmentAssignmentEvent).where(
            FulfillmentAssignmentEvent.tenant_id == tenant_id,
            FulfillmentAssignmentEvent.fulfillment_assignment_id == assignment.id,
        ).order_by(FulfillmentAssignmentEvent.id)
    ).scalars().all()


def replay_assignment_events(events) -> dict:
    """Fold an assignment's event log into its current state.

    Each event's ``previous_*`` values must match the state folded so far;
    a gap in the chain raises ValueError.
    """
    state: dict | None = None
    for event in events:
        if event.event_type == "created":
            if state is not None:
                raise ValueError(f"Event id={event.id}: second 'created' event")
        elif state is None:
            raise ValueError(f"Event id={event.id}: history does not start with 'created'")
        else:
            for dim in _DIMENSIONS:
                if getattr(event, f"previous_{dim}") != state[dim]:
                    raise ValueError(f"Event id={event.id}: previous_{dim} does not match replayed state")
        state = {dim: getattr(event, f"next_{dim}") for dim in _DIMENSIONS}
    return state or {}
