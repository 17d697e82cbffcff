"""
Bookable Fulfillment Platform
Fulfillment domain models.

Models:
    - BookingOrder:                local mirror of the commerce order a graph is built for
    - FulfillmentUnit:             one atomic work item belonging to an order
    - FulfillmentDependency:       predecessor → successor edge between two units of one order
    - FulfillmentAssignment:       one resource bound to one unit for an explicit window
    - FulfillmentAssignmentEvent:  append-only snapshot-diff record of assignment changes

Architecture:
    BookingOrder ──1:N──▶ FulfillmentUnit ──1:N──▶ FulfillmentAssignment ──1:N──▶ FulfillmentAssignmentEvent
    FulfillmentUnit ──N:M──▶ FulfillmentUnit  (via FulfillmentDependency, scoped to one order)

    Every parent carries a (tenant_id, id) unique key and every child points
    at it with a composite foreign key, so links never cross tenants.

Lifecycle states:
    BookingOrder:           draft → quoted → awaiting_payment → confirmed → in_progress → completed
                            | cancelled | expired | failed
    FulfillmentUnit:        planned → ready → in_progress → completed | failed  (held / blocked / cancelled)
    FulfillmentAssignment:  proposed → reserved → confirmed → in_progress → completed  | cancelled
"""

from sqlalchemy import DDL, event

from app.models import db
from app.models.base import TenantModel, UTCDateTime, isoformat, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

BOOKING_ORDER_STATUSES = {
    "draft", "quoted", "awaiting_payment", "confirmed",
    "in_progress", "completed", "cancelled", "expired", "failed",
}
GRAPH_READY_ORDER_STATUSES = {"confirmed", "in_progress"}

UNIT_KINDS = {
    "service_task", "rental_segment", "transport_leg",
    "queue_service", "async_review",
}
UNIT_STATUSES = {
    "planned", "ready", "held", "in_progress",
    "completed", "failed", "cancelled", "blocked",
}
UNIT_TERMINAL_STATUSES = {"completed", "failed", "cancelled"}

UNIT_TRANSITIONS = {
    "planned": {"ready", "held", "blocked", "in_progress", "cancelled"},
    "ready": {"held", "blocked", "in_progress", "cancelled"},
    "held": {"ready", "planned", "cancelled"},
    "blocked": {"ready", "planned", "cancelled"},
    "in_progress": {"completed", "failed", "held", "cancelled"},
    "completed": set(),
    "failed": set(),
    "cancelled": set(),
}

DEPENDENCY_TYPES = {
    "finish_to_start", "start_to_start", "must_follow",
    "same_day", "min_gap", "max_gap", "hard_block_if_missing",
}
# Types where the successor may never start before the predecessor.
ORDERING_DEPENDENCY_TYPES = {"finish_to_start", "start_to_start", "must_follow"}

ASSIGNMENT_STATUSES = {
    "proposed", "reserved", "confirmed", "in_progress", "completed", "cancelled",
}
ACTIVE_ASSIGNMENT_STATUSES = {"reserved", "confirmed", "in_progress"}
ASSIGNMENT_TERMINAL_STATUSES = {"completed", "cancelled"}

ASSIGNMENT_TRANSITIONS = {
    "proposed": {"reserved", "confirmed", "cancelled"},
    "reserved": {"confirmed", "in_progress", "cancelled"},
    "confirmed": {"in_progress", "cancelled"},
    "in_progress": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

CONFLICT_POLICIES = {"enforce_no_overlap", "allow_overlap"}

ASSIGNMENT_EVENT_TYPES = {
    "created", "status_changed", "resource_changed", "window_changed",
    "conflict_policy_changed", "cancelled", "completed",
}

OVERLAP_CONSTRAINT_NAME = "fulfillment_assignments_no_overlap_excl"


def validate_unit_transition(old_status: str, new_status: str) -> bool:
    """Return True if the unit status transition is allowed."""
    return new_status in UNIT_TRANSITIONS.get(old_status, set())


def validate_assignment_transition(old_status: str, new_status: str) -> bool:
    """Return True if the assignment status transition is allowed."""
    return new_status in ASSIGNMENT_TRANSITIONS.get(old_status, set())


def _sql_in(column: str, values) -> str:
    quoted = ",".join(f"'{v}'" for v in sorted(values))
    return f"{column} IN ({quoted})"


# ═════════════════════════════════════════════════════════════════════════════
# BookingOrder
# ═════════════════════════════════════════════════════════════════════════════


class BookingOrder(TenantModel):
    """
    Order snapshot returned by the commerce service.

    Prices and payments live in commerce; this row only keeps what the
    scheduling core needs: the sellable, the requested and confirmed
    windows, and the policy snapshot the order was created under.
    """

    __tablename__ = "booking_orders"
    __table_args__ = (
        db.CheckConstraint(_sql_in("status", BOOKING_ORDER_STATUSES), name="ck_booking_order_status"),
        db.CheckConstraint(
            "requested_start_at IS NULL OR requested_end_at IS NULL "
            "OR requested_end_at > requested_start_at",
            name="ck_booking_order_requested_window",
        ),
        db.CheckConstraint(
            "confirmed_start_at IS NULL OR confirmed_end_at IS NULL "
            "OR confirmed_end_at > confirmed_start_at",
            name="ck_booking_order_confirmed_window",
        ),
        db.UniqueConstraint("tenant_id", "id", name="uq_booking_order_tenant_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    sellable_id = db.Column(
        db.Integer, db.ForeignKey("sellables.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    location_id = db.Column(
        db.Integer, db.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True,
    )
    source_occurrence_id = db.Column(
        db.Integer, nullable=True, index=True,
        comment="Standing reservation occurrence this order was materialized from",
    )
    external_ref = db.Column(db.String(120), nullable=True, comment="Order id in the commerce service")
    status = db.Column(db.String(30), nullable=False, default="confirmed")
    requested_start_at = db.Column(UTCDateTime, nullable=True)
    requested_end_at = db.Column(UTCDateTime, nullable=True)
    confirmed_start_at = db.Column(UTCDateTime, nullable=True)
    confirmed_end_at = db.Column(UTCDateTime, nullable=True)
    policy_snapshot = db.Column(db.JSON, default=dict)
    selected_options = db.Column(db.JSON, default=dict, comment="e.g. {'components': ['slug', ...]}")

    units = db.relationship(
        "FulfillmentUnit", backref="booking_order", lazy="dynamic",
        primaryjoin="BookingOrder.id == foreign(FulfillmentUnit.booking_order_id)",
        order_by="FulfillmentUnit.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "sellable_id": self.sellable_id,
            "location_id": self.location_id,
            "source_occurrence_id": self.source_occurrence_id,
            "external_ref": self.external_ref,
            "status": self.status,
            "requested_start_at": isoformat(self.requested_start_at),
            "requested_end_at": isoformat(self.requested_end_at),
            "confirmed_start_at": isoformat(self.confirmed_start_at),
            "confirmed_end_at": isoformat(self.confirmed_end_at),
            "policy_snapshot": self.policy_snapshot or {},
            "selected_options": self.selected_options or {},
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<BookingOrder {self.id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# FulfillmentUnit
# ═════════════════════════════════════════════════════════════════════════════


class FulfillmentUnit(TenantModel):
    """Atomic work item created from one sellable component."""

    __tablename__ = "fulfillment_units"
    __table_args__ = (
        db.UniqueConstraint("booking_order_id", "code", name="uq_fulfillment_unit_order_code"),
        db.CheckConstraint(_sql_in("kind", UNIT_KINDS), name="ck_fulfillment_unit_kind"),
        db.CheckConstraint(_sql_in("status", UNIT_STATUSES), name="ck_fulfillment_unit_status"),
        db.CheckConstraint(
            "planned_start_at IS NULL OR planned_end_at IS NULL OR planned_end_at > planned_start_at",
            name="ck_fulfillment_unit_planned_window",
        ),
        db.CheckConstraint(
            "actual_start_at IS NULL OR actual_end_at IS NULL OR actual_end_at >= actual_start_at",
            name="ck_fulfillment_unit_actual_window",
        ),
        db.UniqueConstraint("tenant_id", "id", name="uq_fulfillment_unit_tenant_id"),
        db.ForeignKeyConstraint(
            ["tenant_id", "booking_order_id"], ["booking_orders.tenant_id", "booking_orders.id"],
            ondelete="CASCADE", name="fk_fulfillment_unit_order",
        ),
        db.Index("ix_fulfillment_units_tenant_order", "tenant_id", "booking_order_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    booking_order_id = db.Column(db.Integer, nullable=False)
    sellable_component_id = db.Column(
        db.Integer, db.ForeignKey("sellable_components.id", ondelete="SET NULL"), nullable=True,
    )
    code = db.Column(db.String(120), nullable=False, comment="Component slug, unique within the order")
    kind = db.Column(db.String(30), nullable=False, default="service_task")
    status = db.Column(db.String(20), nullable=False, default="planned")
    planned_start_at = db.Column(UTCDateTime, nullable=True)
    planned_end_at = db.Column(UTCDateTime, nullable=True)
    actual_start_at = db.Column(UTCDateTime, nullable=True)
    actual_end_at = db.Column(UTCDateTime, nullable=True)
    location_id = db.Column(
        db.Integer, db.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True,
    )
    assignment_policy = db.Column(db.JSON, default=dict)

    assignments = db.relationship(
        "FulfillmentAssignment", backref="unit", lazy="dynamic",
        primaryjoin="FulfillmentUnit.id == foreign(FulfillmentAssignment.fulfillment_unit_id)",
        order_by="FulfillmentAssignment.id",
    )

    @property
    def has_timing(self) -> bool:
        return self.planned_start_at is not None and self.planned_end_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "booking_order_id": self.booking_order_id,
            "sellable_component_id": self.sellable_component_id,
            "code": self.code,
            "kind": self.kind,
            "status": self.status,
            "planned_start_at": isoformat(self.planned_start_at),
            "planned_end_at": isoformat(self.planned_end_at),
            "actual_start_at": isoformat(self.actual_start_at),
            "actual_end_at": isoformat(self.actual_end_at),
            "location_id": self.location_id,
            "assignment_policy": self.assignment_policy or {},
        }

    def __repr__(self):
        return f"<FulfillmentUnit {self.code} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# FulfillmentDependency
# ═════════════════════════════════════════════════════════════════════════════


class FulfillmentDependency(TenantModel):
    """Directed timing/ordering constraint between two units of one order."""

    __tablename__ = "fulfillment_dependencies"
    __table_args__ = (
        db.UniqueConstraint(
            "predecessor_unit_id", "successor_unit_id", "dependency_type",
            name="uq_fulfillment_dependency",
        ),
        db.CheckConstraint(
            "predecessor_unit_id != successor_unit_id",
            name="ck_fulfillment_dependency_no_self_loop",
        ),
        db.CheckConstraint(_sql_in("dependency_type", DEPENDENCY_TYPES), name="ck_fulfillment_dependency_type"),
        db.CheckConstraint(
            "(min_gap_min IS NULL OR min_gap_min >= 0) AND (max_gap_min IS NULL OR max_gap_min >= 0)",
            name="ck_fulfillment_dependency_gap_non_negative",
        ),
        db.CheckConstraint(
            "min_gap_min IS NULL OR max_gap_min IS NULL OR min_gap_min <= max_gap_min",
            name="ck_fulfillment_dependency_gap_order",
        ),
        db.ForeignKeyConstraint(
            ["tenant_id", "booking_order_id"], ["booking_orders.tenant_id", "booking_orders.id"],
            ondelete="CASCADE", name="fk_fulfillment_dependency_order",
        ),
        db.ForeignKeyConstraint(
            ["tenant_id", "predecessor_unit_id"], ["fulfillment_units.tenant_id", "fulfillment_units.id"],
            ondelete="CASCADE", name="fk_fulfillment_dependency_predecessor",
        ),
        db.ForeignKeyConstraint(
            ["tenant_id", "successor_unit_id"], ["fulfillment_units.tenant_id", "fulfillment_units.id"],
            ondelete="CASCADE", name="fk_fulfillment_dependency_successor",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    booking_order_id = db.Column(db.Integer, nullable=False, index=True)
    predecessor_unit_id = db.Column(db.Integer, nullable=False)
    successor_unit_id = db.Column(db.Integer, nullable=False)
    dependency_type = db.Column(db.String(30), nullable=False, default="finish_to_start")
    min_gap_min = db.Column(db.Integer, nullable=True)
    max_gap_min = db.Column(db.Integer, nullable=True)
    hard_block = db.Column(db.Boolean, nullable=False, default=True)

    predecessor = db.relationship(
        "FulfillmentUnit", primaryjoin="FulfillmentUnit.id == foreign(FulfillmentDependency.predecessor_unit_id)",
    )
    successor = db.relationship(
        "FulfillmentUnit", primaryjoin="FulfillmentUnit.id == foreign(FulfillmentDependency.successor_unit_id)",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "booking_order_id": self.booking_order_id,
            "predecessor_unit_id": self.predecessor_unit_id,
            "successor_unit_id": self.successor_unit_id,
            "dependency_type": self.dependency_type,
            "min_gap_min": self.min_gap_min,
            "max_gap_min": self.max_gap_min,
            "hard_block": self.hard_block,
        }

    def __repr__(self):
        return f"<FulfillmentDependency {self.predecessor_unit_id} → {self.successor_unit_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# FulfillmentAssignment
# ═════════════════════════════════════════════════════════════════════════════


class FulfillmentAssignment(TenantModel):
    """
    Resource bound to a unit for [starts_at, ends_at).

    The current row is a projection; FulfillmentAssignmentEvent is the
    history it is derived from and is written in the same transaction.
    """

    __tablename__ = "fulfillment_assignments"
    __table_args__ = (
        db.CheckConstraint(_sql_in("status", ASSIGNMENT_STATUSES), name="ck_fulfillment_assignment_status"),
        db.CheckConstraint(
            _sql_in("conflict_policy", CONFLICT_POLICIES), name="ck_fulfillment_assignment_conflict_policy",
        ),
        db.CheckConstraint(
            "starts_at IS NULL OR ends_at IS NULL OR ends_at > starts_at",
            name="ck_fulfillment_assignment_window",
        ),
        db.CheckConstraint(
            "status NOT IN ('reserved','confirmed','in_progress') "
            "OR (starts_at IS NOT NULL AND ends_at IS NOT NULL)",
            name="ck_fulfillment_assignment_active_window",
        ),
        db.UniqueConstraint("tenant_id", "id", name="uq_fulfillment_assignment_tenant_id"),
        db.ForeignKeyConstraint(
            ["tenant_id", "fulfillment_unit_id"], ["fulfillment_units.tenant_id", "fulfillment_units.id"],
            ondelete="CASCADE", name="fk_fulfillment_assignment_unit",
        ),
        db.ForeignKeyConstraint(
            ["tenant_id", "resource_id"], ["resources.tenant_id", "resources.id"],
            ondelete="RESTRICT", name="fk_fulfillment_assignment_resource",
        ),
        db.Index("ix_fulfillment_assignments_resource_window", "tenant_id", "resource_id", "starts_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    fulfillment_unit_id = db.Column(db.Integer, nullable=False, index=True)
    resource_id = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="proposed")
    conflict_policy = db.Column(db.String(30), nullable=False, default="enforce_no_overlap")
    role_label = db.Column(db.String(80), nullable=True)
    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    starts_at = db.Column(UTCDateTime, nullable=True)
    ends_at = db.Column(UTCDateTime, nullable=True)
    assigned_by = db.Column(db.String(150), nullable=True)
    assigned_at = db.Column(UTCDateTime, default=utcnow, nullable=False)

    events = db.relationship(
        "FulfillmentAssignmentEvent", backref="assignment", lazy="dynamic",
        primaryjoin="FulfillmentAssignment.id == foreign(FulfillmentAssignmentEvent.fulfillment_assignment_id)",
        order_by="FulfillmentAssignmentEvent.id",
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ASSIGNMENT_STATUSES

    def snapshot(self) -> dict:
        """Current values of the dimensions tracked by assignment events."""
        return {
            "status": self.status,
            "resource_id": self.resource_id,
            "starts_at": self.starts_at,
            "ends_at": self.ends_at,
            "conflict_policy": self.conflict_policy,
        }

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "fulfillment_unit_id": self.fulfillment_unit_id,
            "resource_id": self.resource_id,
            "status": self.status,
            "conflict_policy": self.conflict_policy,
            "role_label": self.role_label,
            "is_primary": self.is_primary,
            "starts_at": isoformat(self.starts_at),
            "ends_at": isoformat(self.ends_at),
            "assigned_by": self.assigned_by,
            "assigned_at": isoformat(self.assigned_at),
        }

    def __repr__(self):
        return f"<FulfillmentAssignment {self.id} unit={self.fulfillment_unit_id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# FulfillmentAssignmentEvent
# ═════════════════════════════════════════════════════════════════════════════


class FulfillmentAssignmentEvent(TenantModel):
    """
    Immutable before/after record of one assignment change.

    Rows are only ever inserted; the mapper listeners below turn any
    ORM update or delete into an error.
    """

    __tablename__ = "fulfillment_assignment_events"
    __table_args__ = (
        db.CheckConstraint(_sql_in("event_type", ASSIGNMENT_EVENT_TYPES), name="ck_assignment_event_type"),
        db.CheckConstraint(
            "event_type = 'created' "
            "OR previous_status IS NOT NULL OR next_status IS NOT NULL "
            "OR previous_resource_id IS NOT NULL OR next_resource_id IS NOT NULL "
            "OR previous_starts_at IS NOT NULL OR next_starts_at IS NOT NULL "
            "OR previous_ends_at IS NOT NULL OR next_ends_at IS NOT NULL "
            "OR previous_conflict_policy IS NOT NULL OR next_conflict_policy IS NOT NULL",
            name="ck_assignment_event_has_dimension",
        ),
        db.ForeignKeyConstraint(
            ["tenant_id", "fulfillment_assignment_id"],
            ["fulfillment_assignments.tenant_id", "fulfillment_assignments.id"],
            ondelete="CASCADE", name="fk_assignment_event_assignment",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    fulfillment_assignment_id = db.Column(db.Integer, nullable=False, index=True)
    event_type = db.Column(db.String(40), nullable=False)
    previous_status = db.Column(db.String(20), nullable=True)
    next_status = db.Column(db.String(20), nullable=True)
    previous_resource_id = db.Column(db.Integer, nullable=True)
    next_resource_id = db.Column(db.Integer, nullable=True)
    previous_starts_at = db.Column(UTCDateTime, nullable=True)
    next_starts_at = db.Column(UTCDateTime, nullable=True)
    previous_ends_at = db.Column(UTCDateTime, nullable=True)
    next_ends_at = db.Column(UTCDateTime, nullable=True)
    previous_conflict_policy = db.Column(db.String(30), nullable=True)
    next_conflict_policy = db.Column(db.String(30), nullable=True)
    actor_ref = db.Column(db.String(150), nullable=True, comment="User id or worker name")
    request_key = db.Column(db.String(120), nullable=True, comment="Caller-supplied idempotency key")
    reason_code = db.Column(db.String(80), nullable=True)
    occurred_at = db.Column(UTCDateTime, default=utcnow, nullable=False)
    details = db.Column(db.JSON, default=dict)

    def to_dict(self):
        return {
            "id": self.id,
            "fulfillment_assignment_id": self.fulfillment_assignment_id,
            "event_type": self.event_type,
            "previous_status": self.previous_status,
            "next_status": self.next_status,
            "previous_resource_id": self.previous_resource_id,
            "next_resource_id": self.next_resource_id,
            "previous_starts_at": isoformat(self.previous_starts_at),
            "next_starts_at": isoformat(self.next_starts_at),
            "previous_ends_at": isoformat(self.previous_ends_at),
            "next_ends_at": isoformat(self.next_ends_at),
            "previous_conflict_policy": self.previous_conflict_policy,
            "next_conflict_policy": self.next_conflict_policy,
            "actor_ref": self.actor_ref,
            "request_key": self.request_key,
            "reason_code": self.reason_code,
            "occurred_at": isoformat(self.occurred_at),
            "details": self.details or {},
        }

    def __repr__(self):
        return f"<FulfillmentAssignmentEvent {self.event_type} assignment={self.fulfillment_assignment_id}>"


@event.listens_for(FulfillmentAssignmentEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise ValueError(f"Assignment event id={target.id} is append-only")


@event.listens_for(FulfillmentAssignmentEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise ValueError(f"Assignment event id={target.id} is append-only")


# PostgreSQL backs the allocator's overlap check with an exclusion constraint.
_OVERLAP_EXCLUSION_SQL = (
    f"ALTER TABLE fulfillment_assignments ADD CONSTRAINT {OVERLAP_CONSTRAINT_NAME} "
    "EXCLUDE USING gist ("
    "  resource_id WITH =,"
    "  tstzrange(starts_at, ends_at, '[)') WITH &&"
    ") WHERE ("
    "  status IN ('reserved','confirmed','in_progress')"
    "  AND conflict_policy = 'enforce_no_overlap'"
    ")"
)

event.listen(
    FulfillmentAssignment.__table__,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    FulfillmentAssignment.__table__,
    "after_create",
    DDL(_OVERLAP_EXCLUSION_SQL).execute_if(dialect="postgresql"),
)
