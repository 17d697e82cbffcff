"""
Occurrence Lifecycle Manager — from a planned slot to a booked order.

State machine (StandingReservationOccurrence.status):
    planned → generated → booked → fulfilled
    planned | generated → skipped | cancelled | failed
    booked → cancelled | failed

Materialization race:
    Two workers may both see the same occurrence as due. Each asks the order
    gateway for an order, then runs

        UPDATE standing_reservation_occurrences
           SET status='booked', booking_order_id=:order, booked_at=:now
         WHERE id=:id AND booking_order_id IS NULL AND status IN ('planned','generated')

    Exactly one UPDATE hits a row. The other gets rowcount 0, discards the
    order it just created and raises AlreadyBooked. When the order service
    answered both callers with the same commerce order (same Idempotency-Key)
    only the loser's local mirror row goes; the shared order stays live.

Timestamps: every lifecycle stamp is clamped to >= generated_at, so a clock
that reads earlier than the generation run never produces an inverted row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import select, update

from app.core.exceptions import AlreadyBooked, InvalidTransition, ValidationError
from app.integrations.order_gateway import OrderRequest, OrderServiceError, get_order_gateway
from app.models import db
from app.models.base import utcnow
from app.models.fulfillment import BookingOrder
from app.models.standing_reservation import (
    CONTRACT_TERMINAL_STATUSES,
    OCCURRENCE_OPEN_STATUSES,
    StandingReservationContract,
    StandingReservationOccurrence,
    validate_occurrence_transition,
)
from app.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

_ENTITY = "StandingReservationOccurrence"

# target status → (timestamp column, reason column)
_TERMINAL_COLUMNS = {
    "fulfilled": ("fulfilled_at", None),
    "skipped": ("skipped_at", "skip_reason"),
    "cancelled": ("cancelled_at", "cancel_reason"),
    "failed": ("failed_at", "failure_reason"),
}


def _stamp(occ, now: datetime) -> datetime:
    return max(now, occ.generated_at) if occ.generated_at else now


def _load(tenant_id: int, occurrence_id: int):
    occ = get_scoped(StandingReservationOccurrence, occurrence_id, tenant_id=tenant_id)
    contract = get_scoped(StandingReservationContract, occ.contract_id, tenant_id=tenant_id)
    return occ, contract


def _require_transition(occ, target: str) -> None:
    if not validate_occurrence_transition(occ.status, target):
        raise InvalidTransition(_ENTITY, occ.id, occ.status, target)


def _require_live_contract(occ, contract, target: str) -> None:
    if contract.status in CONTRACT_TERMINAL_STATUSES:
        raise InvalidTransition(
            _ENTITY, occ.id, occ.status, target, f"contract id={contract.id} is {contract.status}",
        )


# ═════════════════════════════════════════════════════════════════════════════
# Materialization
# ═════════════════════════════════════════════════════════════════════════════


def materialize_order(
    tenant_id: int,
    occurrence_id: int,
    *,
    gateway=None,
    actor_ref: str | None = None,
    now: datetime | None = None,
):
    """Create the order for one occurrence and link it, exactly once.

    Returns:
        The BookingOrder linked to the occurrence.

    Raises:
        AlreadyBooked: another caller linked an order first.
        InvalidTransition: the occurrence is terminal or the contract ended.
    """
    now = now or utcnow()
    gateway = gateway or get_order_gateway()
    occ, contract = _load(tenant_id, occurrence_id)

    if occ.booking_order_id is not None:
        raise AlreadyBooked(occ.id, occ.booking_order_id)
    _require_transition(occ, "booked")
    _require_live_contract(occ, contract, "booked")

    request = OrderRequest(
        tenant_id=tenant_id,
        sellable_id=occ.sellable_id or contract.sellable_id,
        location_id=occ.location_id,
        requested_start_at=occ.planned_start_at,
        requested_end_at=occ.planned_end_at,
        source_occurrence_id=occ.id,
        idempotency_key=occ.occurrence_key,
        policy_snapshot=dict(contract.policy_snapshot or {}),
    )
    order = gateway.create_order(request)

    Occ = StandingReservationOccurrence
    result = db.session.execute(
        update(Occ)
        .where(
            Occ.id == occ.id,
            Occ.tenant_id == tenant_id,
            Occ.booking_order_id.is_(None),
            Occ.status.in_(OCCURRENCE_OPEN_STATUSES),
        )
        .values(status="booked", booking_order_id=order.id, booked_at=_stamp(occ, now), updated_at=now)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        winner = db.session.execute(
            select(Occ.booking_order_id).where(Occ.id == occ.id, Occ.tenant_id == tenant_id)
        ).scalar_one_or_none()
        winner_order = db.session.get(BookingOrder, winner) if winner is not None else None
        gateway.discard_order(order, winner=winner_order)
        db.session.commit()
        logger.info("Occurrence id=%s materialization lost the race (order=%s)", occ.id, winner)
        raise AlreadyBooked(occ.id, winner)

    db.session.commit()
    db.session.refresh(occ)
    logger.info(
        "Occurrence booked id=%s order=%s actor=%s", occ.id, order.id, actor_ref or "system",
        extra={"tenant_id": tenant_id, "contract_id": contract.id, "order_id": order.id},
    )
    return order


def mark_generated(tenant_id: int, occurrence_id: int) -> StandingReservationOccurrence:
    """Flag a due occurrence as awaiting a manual booking."""
    occ, contract = _load(tenant_id, occurrence_id)
    _require_transition(occ, "generated")
    _require_live_contract(occ, contract, "generated")
    occ.status = "generated"
    db.session.commit()
    logger.info("Occurrence generated id=%s", occ.id)
    return occ


# ═════════════════════════════════════════════════════════════════════════════
# Terminal moves
# ═════════════════════════════════════════════════════════════════════════════


def _finish(tenant_id: int, occurrence_id: int, target: str, reason: str | None, now: datetime | None):
    now = now or utcnow()
    occ, _contract = _load(tenant_id, occurrence_id)
    _require_transition(occ, target)
    if target == "fulfilled" and occ.booked_at is None:
        raise InvalidTransition(_ENTITY, occ.id, occ.status, target, "occurrence was never booked")

    stamp_col, reason_col = _TERMINAL_COLUMNS[target]
    occ.status = target
    setattr(occ, stamp_col, _stamp(occ, now))
    if reason_col is not None:
        setattr(occ, reason_col, reason)
    db.session.commit()
    logger.info("Occurrence %s id=%s reason=%s", target, occ.id, reason)
    return occ


def mark_fulfilled(tenant_id: int, occurrence_id: int, *, reason: str | None = None, now: datetime | None = None):
    return _finish(tenant_id, occurrence_id, "fulfilled", reason, now)


def cancel_occurrence(tenant_id: int, occurrence_id: int, reason: str, *, now: datetime | None = None):
    if not reason:
        raise ValidationError("A cancel reason is required", details={"reason": "required"})
    return _finish(tenant_id, occurrence_id, "cancelled", reason, now)


def skip_occurrence(tenant_id: int, occurrence_id: int, reason: str, *, now: datetime | None = None):
    if not reason:
        raise ValidationError("A skip reason is required", details={"reason": "required"})
    return _finish(tenant_id, occurrence_id, "skipped", reason, now)


def fail_occurrence(tenant_id: int, occurrence_id: int, reason: str | None = None, *, now: datetime | None = None):
    return _finish(tenant_id, occurrence_id, "failed", reason or "unspecified", now)


# ═════════════════════════════════════════════════════════════════════════════
# Due-occurrence sweep
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class MaterializationReport:
    orders: list = field(default_factory=list)
    generated: int = 0
    already_booked: int = 0
    stopped: int = 0
    errors: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "orders": [o.id for o in self.orders],
            "materialized": len(self.orders),
            "generated": self.generated,
            "already_booked": self.already_booked,
            "stopped": self.stopped,
            "errors": self.errors,
        }


def materialize_due_occurrences(
    tenant_id: int | None = None,
    *,
    now: datetime | None = None,
    lead_hours: int | None = None,
    gateway=None,
) -> MaterializationReport:
    """Book (or flag) every open occurrence starting within the lead window.

    auto_create_orders=True  → materialize_order
    auto_create_orders=False → mark_generated (manual booking)
    """
    now = now or utcnow()
    if lead_hours is None:
        lead_hours = current_app.config.get("MATERIALIZE_LEAD_HOURS", 48)
    horizon = now + timedelta(hours=lead_hours)

    Occ = StandingReservationOccurrence
    Contract = StandingReservationContract
    stmt = (
        select(Occ.id, Occ.tenant_id, Occ.status, Contract.auto_create_orders)
        .join(Contract, Contract.id == Occ.contract_id)
        .where(
            Contract.status == "active",
            Occ.status.in_(OCCURRENCE_OPEN_STATUSES),
            Occ.planned_start_at >= now,
            Occ.planned_start_at < horizon,
        )
        .order_by(Occ.planned_start_at, Occ.id)
    )
    if tenant_id is not None:
        stmt = stmt.where(Occ.tenant_id == tenant_id)
    due = db.session.execute(stmt).all()

    report = MaterializationReport()
    for occ_id, occ_tenant, status, auto_create in due:
        try:
            if auto_create:
                report.orders.append(
                    materialize_order(occ_tenant, occ_id, gateway=gateway, actor_ref="occurrence_materializer", now=now)
                )
            elif status == "planned":
                mark_generated(occ_tenant, occ_id)
                report.generated += 1
        except AlreadyBooked:
            report.already_booked += 1
        except InvalidTransition as exc:
            db.session.rollback()
            report.stopped += 1
            logger.info("Occurrence id=%s not materialized: %s", occ_id, exc)
        except OrderServiceError as exc:
            db.session.rollback()
            report.errors.append({"occurrence_id": occ_id, "error": str(exc)})
            logger.warning("Occurrence id=%s: order service failed: %s", occ_id, exc)

    logger.info(
        "Due occurrences: %d scanned, %d booked, %d generated, %d lost races",
        len(due), len(report.orders), report.generated, report.already_booked,
    )
    return report
