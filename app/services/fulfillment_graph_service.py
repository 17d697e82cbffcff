"""
Fulfillment Graph Builder — order → units + dependency edges.

build_graph(tenant_id, order_id):
    1. Order must be confirmed or in_progress.
    2. One FulfillmentUnit per template component: every required component,
       plus optional ones named in order.selected_options["components"].
    3. One FulfillmentDependency per template relationship whose ends are both
       in the graph (type, gaps and hard_block copied as-is).
    4. Timing: components are laid end to end in sort_order from the order's
       confirmed start using their duration hints. A unit without a hint, or
       one that would overrun the confirmed end, keeps null timing.

A self-referencing template relationship raises SelfLoopRejected before
anything is flushed. Rebuilding an order that already has units returns the
existing graph unchanged.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select

from app.core.exceptions import ConflictError, InvalidTransition, SelfLoopRejected, ValidationError
from app.models import db
from app.models.base import utcnow
from app.models.catalog import ComponentRelationship, SellableComponent
from app.models.fulfillment import (
    DEPENDENCY_TYPES,
    GRAPH_READY_ORDER_STATUSES,
    UNIT_KINDS,
    BookingOrder,
    FulfillmentDependency,
    FulfillmentUnit,
    validate_unit_transition,
)
from app.services.dependency_validator import Edge, validate_graph, validate_unit_graph
from app.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

# Moving a unit into one of these requires a schedulable graph position.
_GATED_UNIT_STATUSES = {"ready", "in_progress"}


def _units(tenant_id: int, order_id: int) -> list[FulfillmentUnit]:
    return db.session.execute(
        select(FulfillmentUnit).where(
            FulfillmentUnit.tenant_id == tenant_id,
            FulfillmentUnit.booking_order_id == order_id,
        ).order_by(FulfillmentUnit.id)
    ).scalars().all()


def _edges(tenant_id: int, order_id: int) -> list[FulfillmentDependency]:
    return db.session.execute(
        select(FulfillmentDependency).where(
            FulfillmentDependency.tenant_id == tenant_id,
            FulfillmentDependency.booking_order_id == order_id,
        ).order_by(FulfillmentDependency.id)
    ).scalars().all()


def get_graph(tenant_id: int, order_id: int) -> dict:
    order = get_scoped(BookingOrder, order_id, tenant_id=tenant_id)
    return {
        "order_id": order.id,
        "units": [u.to_dict() for u in _units(tenant_id, order.id)],
        "edges": [e.to_dict() for e in _edges(tenant_id, order.id)],
    }


def _check_gaps(min_gap_min, max_gap_min) -> None:
    for name, value in (("min_gap_min", min_gap_min), ("max_gap_min", max_gap_min)):
        if value is not None and value < 0:
            raise ValidationError(f"{name} must be >= 0", details={name: value})
    if min_gap_min is not None and max_gap_min is not None and min_gap_min > max_gap_min:
        raise ValidationError(
            "min_gap_min must not exceed max_gap_min",
            details={"min_gap_min": min_gap_min, "max_gap_min": max_gap_min},
        )


def _layout(components, start: datetime | None, end: datetime | None) -> dict[int, tuple]:
    """component id → (planned_start_at, planned_end_at), None where unresolved."""
    timing = {}
    cursor = start
    for comp in components:
        if cursor is None or not comp.duration_min:
            timing[comp.id] = (None, None)
            continue
        unit_end = cursor + timedelta(minutes=comp.duration_min)
        if end is not None and unit_end > end:
            timing[comp.id] = (None, None)
            cursor = None
            continue
        timing[comp.id] = (cursor, unit_end)
        cursor = unit_end
    return timing


def build_graph(tenant_id: int, order_id: int) -> dict:
    """Materialize units and edges for a confirmed order.

    Raises:
        ValidationError: order not confirmed / in progress, or bad template.
        SelfLoopRejected: a template relationship points at its own component.
    """
    order = get_scoped(BookingOrder, order_id, tenant_id=tenant_id, for_update=True)
    if order.status not in GRAPH_READY_ORDER_STATUSES:
        raise ValidationError(
            f"Order id={order.id} is {order.status}; graphs are built for confirmed orders only",
            details={"status": order.status},
        )

    if _units(tenant_id, order.id):
        logger.debug("Order id=%s already has a graph", order.id)
        return get_graph(tenant_id, order.id)

    components = db.session.execute(
        select(SellableComponent).where(
            SellableComponent.tenant_id == tenant_id,
            SellableComponent.sellable_id == order.sellable_id,
        ).order_by(SellableComponent.sort_order, SellableComponent.id)
    ).scalars().all()
    relationships = db.session.execute(
        select(ComponentRelationship).where(
            ComponentRelationship.tenant_id == tenant_id,
            ComponentRelationship.sellable_id == order.sellable_id,
        ).order_by(ComponentRelationship.id)
    ).scalars().all()

    for rel in relationships:
        if rel.predecessor_component_id == rel.successor_component_id:
            raise SelfLoopRejected("ComponentRelationship", rel.id)

    selected = set((order.selected_options or {}).get("components") or [])
    chosen = [c for c in components if c.mode == "required" or c.slug in selected]
    for comp in chosen:
        if comp.kind not in UNIT_KINDS:
            raise ValidationError(
                f"Component {comp.slug!r} has unknown kind {comp.kind!r}", details={"component_id": comp.id},
            )

    timing = _layout(chosen, order.confirmed_start_at, order.confirmed_end_at)
    unit_by_component = {}
    for comp in chosen:
        planned_start, planned_end = timing[comp.id]
        unit = FulfillmentUnit(
            tenant_id=tenant_id,
            booking_order_id=order.id,
            sellable_component_id=comp.id,
            code=comp.slug,
            kind=comp.kind,
            status="planned",
            planned_start_at=planned_start,
            planned_end_at=planned_end,
            location_id=order.location_id,
            assignment_policy=dict(comp.assignment_policy or {}),
        )
        db.session.add(unit)
        unit_by_component[comp.id] = unit
    db.session.flush()

    edge_count = 0
    for rel in relationships:
        pred = unit_by_component.get(rel.predecessor_component_id)
        succ = unit_by_component.get(rel.successor_component_id)
        if pred is None or succ is None:
            continue
        db.session.add(FulfillmentDependency(
            tenant_id=tenant_id,
            booking_order_id=order.id,
            predecessor_unit_id=pred.id,
            successor_unit_id=succ.id,
            dependency_type=rel.dependency_type,
            min_gap_min=rel.min_gap_min,
            max_gap_min=rel.max_gap_min,
            hard_block=rel.hard_block,
        ))
        edge_count += 1

    db.session.commit()
    logger.info(
        "Graph built for order id=%s: %d units, %d edges", order.id, len(unit_by_component), edge_count,
        extra={"tenant_id": tenant_id, "order_id": order.id},
    )
    return get_graph(tenant_id, order.id)


def add_dependency(
    tenant_id: int,
    order_id: int,
    predecessor_unit_id: int,
    successor_unit_id: int,
    *,
    dependency_type: str = "finish_to_start",
    min_gap_min: int | None = None,
    max_gap_min: int | None = None,
    hard_block: bool = True,
) -> FulfillmentDependency:
    """Add a manual edge between two units of the same order."""
    if predecessor_unit_id == successor_unit_id:
        raise SelfLoopRejected("FulfillmentUnit", predecessor_unit_id)
    if dependency_type not in DEPENDENCY_TYPES:
        raise ValidationError(f"Unknown dependency_type: {dependency_type}", details={"dependency_type": dependency_type})
    _check_gaps(min_gap_min, max_gap_min)

    order = get_scoped(BookingOrder, order_id, tenant_id=tenant_id)
    pred = get_scoped(FulfillmentUnit, predecessor_unit_id, tenant_id=tenant_id)
    succ = get_scoped(FulfillmentUnit, successor_unit_id, tenant_id=tenant_id)
    if pred.booking_order_id != order.id or succ.booking_order_id != order.id:
        raise ValidationError(
            "Both units must belong to the order; graphs never span orders",
            details={"order_id": order.id},
        )

    existing = _edges(tenant_id, order.id)
    for e in existing:
        if (e.predecessor_unit_id, e.successor_unit_id, e.dependency_type) == (pred.id, succ.id, dependency_type):
            raise ConflictError("FulfillmentDependency", "edge", f"{pred.id}->{succ.id} ({dependency_type})")

    candidate = Edge(pred.id, succ.id, dependency_type, min_gap_min, max_gap_min, hard_block)
    report = validate_unit_graph([u.id for u in _units(tenant_id, order.id)], [*existing, candidate],
                                 order_id=order.id)
    if report.cycle is not None:
        raise report.cycle

    dep = FulfillmentDependency(
        tenant_id=tenant_id,
        booking_order_id=order.id,
        predecessor_unit_id=pred.id,
        successor_unit_id=succ.id,
        dependency_type=dependency_type,
        min_gap_min=min_gap_min,
        max_gap_min=max_gap_min,
        hard_block=hard_block,
    )
    db.session.add(dep)
    db.session.commit()
    logger.info("Dependency created id=%s %s→%s (%s)", dep.id, pred.id, succ.id, dependency_type)
    return dep


def transition_unit(tenant_id: int, unit_id: int, new_status: str, *, now: datetime | None = None) -> FulfillmentUnit:
    """Move a unit through its lifecycle and stamp actual start / end."""
    now = now or utcnow()
    unit = get_scoped(FulfillmentUnit, unit_id, tenant_id=tenant_id)
    if not validate_unit_transition(unit.status, new_status):
        raise InvalidTransition("FulfillmentUnit", unit.id, unit.status, new_status)

    if new_status in _GATED_UNIT_STATUSES:
        validate_graph(tenant_id, unit.booking_order_id).raise_for_unit(unit.id)

    if new_status == "in_progress" and unit.actual_start_at is None:
        unit.actual_start_at = now
    if new_status in ("completed", "failed"):
        unit.actual_end_at = max(now, unit.actual_start_at) if unit.actual_start_at else now

    previous = unit.status
    unit.status = new_status
    db.session.commit()
    logger.info("Unit id=%s %s → %s", unit.id, previous, new_status)
    return unit
