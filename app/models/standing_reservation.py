"""
Bookable Fulfillment Platform
Standing reservation models — recurring booking commitments.

Models:
    - StandingReservationContract:    the recurrence "recipe" (anchor, timezone, RRULE, horizon)
    - StandingReservationException:   one-off override: skip, cancel, reschedule or pause window
    - StandingReservationOccurrence:  one concrete generated instance, never deleted

Architecture:
    StandingReservationContract ──1:N──▶ StandingReservationException
    StandingReservationContract ──1:N──▶ StandingReservationOccurrence ──0..1──▶ BookingOrder

    Children reference the contract through (tenant_id, contract_id), so a
    row can never hang off another tenant's contract.

Lifecycle states:
    Contract:    draft → active → paused ⇄ active → completed | cancelled → archived
    Occurrence:  planned → generated → booked → fulfilled  |  skipped | cancelled | failed
"""

from sqlalchemy import event

from app.models import db
from app.models.base import TenantModel, UTCDateTime, isoformat, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

CONTRACT_STATUSES = {"draft", "active", "paused", "completed", "cancelled", "archived"}
CONTRACT_TERMINAL_STATUSES = {"completed", "cancelled", "archived"}

CONTRACT_TRANSITIONS = {
    "draft": {"active", "cancelled"},
    "active": {"paused", "completed", "cancelled"},
    "paused": {"active", "completed", "cancelled"},
    "completed": {"archived"},
    "cancelled": {"archived"},
    "archived": set(),
}

EXCEPTION_ACTIONS = {
    "skip_occurrence", "cancel_occurrence", "reschedule_occurrence", "pause_window",
}

OCCURRENCE_STATUSES = {
    "planned", "generated", "booked", "fulfilled", "skipped", "cancelled", "failed",
}
OCCURRENCE_OPEN_STATUSES = {"planned", "generated"}
OCCURRENCE_TERMINAL_STATUSES = {"fulfilled", "skipped", "cancelled", "failed"}

OCCURRENCE_TRANSITIONS = {
    "planned": {"generated", "booked", "skipped", "cancelled", "failed"},
    "generated": {"booked", "skipped", "cancelled", "failed"},
    "booked": {"fulfilled", "cancelled", "failed"},
    "fulfilled": set(),
    "skipped": set(),
    "cancelled": set(),
    "failed": set(),
}


def validate_contract_transition(old_status: str, new_status: str) -> bool:
    """Return True if the contract status transition is allowed."""
    return new_status in CONTRACT_TRANSITIONS.get(old_status, set())


def validate_occurrence_transition(old_status: str, new_status: str) -> bool:
    """Return True if the occurrence status transition is allowed."""
    return new_status in OCCURRENCE_TRANSITIONS.get(old_status, set())


# ═════════════════════════════════════════════════════════════════════════════
# StandingReservationContract
# ═════════════════════════════════════════════════════════════════════════════


class StandingReservationContract(TenantModel):
    """
    Durable recurring booking commitment.

    Exactly one customer anchor is set: an individual (customer_user_ref)
    or a group account (customer_group_ref). The planner owns the two
    bookkeeping columns next_planned_occurrence_at and
    last_occurrence_generated_at.
    """

    __tablename__ = "standing_reservation_contracts"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('draft','active','paused','completed','cancelled','archived')",
            name="ck_sr_contract_status",
        ),
        db.CheckConstraint(
            "(customer_user_ref IS NOT NULL AND customer_group_ref IS NULL) "
            "OR (customer_user_ref IS NULL AND customer_group_ref IS NOT NULL)",
            name="ck_sr_contract_customer_anchor",
        ),
        db.CheckConstraint("default_duration_min > 0", name="ck_sr_contract_duration"),
        db.CheckConstraint("max_generated_ahead_days >= 0", name="ck_sr_contract_horizon"),
        db.CheckConstraint(
            "effective_end_date IS NULL OR effective_end_date >= effective_start_date",
            name="ck_sr_contract_effective_range",
        ),
        db.CheckConstraint(
            "resume_at IS NULL OR paused_at IS NULL OR resume_at > paused_at",
            name="ck_sr_contract_pause_window",
        ),
        db.UniqueConstraint("tenant_id", "id", name="uq_sr_contract_tenant_id"),
        db.Index("ix_sr_contracts_tenant_status", "tenant_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    sellable_id = db.Column(
        db.Integer, db.ForeignKey("sellables.id", ondelete="RESTRICT"), nullable=False,
    )
    location_id = db.Column(
        db.Integer, db.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True,
    )
    customer_user_ref = db.Column(db.String(120), nullable=True)
    customer_group_ref = db.Column(db.String(120), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(20), nullable=False, default="draft")

    timezone = db.Column(db.String(64), nullable=False, default="UTC", comment="IANA zone used for recurrence math")
    anchor_start_at = db.Column(UTCDateTime, nullable=False, comment="DTSTART of the recurrence")
    default_duration_min = db.Column(db.Integer, nullable=False, default=60)
    recurrence_rule = db.Column(db.Text, nullable=False, comment="RFC-5545 RRULE (plus optional RDATE/EXDATE lines)")
    effective_start_date = db.Column(db.Date, nullable=False)
    effective_end_date = db.Column(db.Date, nullable=True)

    auto_create_orders = db.Column(db.Boolean, nullable=False, default=True)
    max_generated_ahead_days = db.Column(db.Integer, nullable=False, default=60)

    # Planner bookkeeping
    next_planned_occurrence_at = db.Column(UTCDateTime, nullable=True)
    last_occurrence_generated_at = db.Column(UTCDateTime, nullable=True)
    generation_error = db.Column(
        db.Text, nullable=True, comment="Set when the rule failed to parse; the planner skips the contract",
    )
    generation_error_at = db.Column(UTCDateTime, nullable=True)

    paused_at = db.Column(UTCDateTime, nullable=True)
    resume_at = db.Column(UTCDateTime, nullable=True)
    activated_at = db.Column(UTCDateTime, nullable=True)
    ended_at = db.Column(UTCDateTime, nullable=True)

    policy_snapshot = db.Column(db.JSON, default=dict, comment="Frozen at activation")
    metadata_json = db.Column("metadata", db.JSON, default=dict)

    exceptions = db.relationship(
        "StandingReservationException", backref="contract", lazy="dynamic",
        primaryjoin="StandingReservationContract.id == foreign(StandingReservationException.contract_id)",
        order_by="StandingReservationException.id",
    )
    occurrences = db.relationship(
        "StandingReservationOccurrence", backref="contract", lazy="dynamic",
        primaryjoin="StandingReservationContract.id == foreign(StandingReservationOccurrence.contract_id)",
        order_by="StandingReservationOccurrence.planned_start_at",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in CONTRACT_TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "sellable_id": self.sellable_id,
            "location_id": self.location_id,
            "customer_user_ref": self.customer_user_ref,
            "customer_group_ref": self.customer_group_ref,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "timezone": self.timezone,
            "anchor_start_at": isoformat(self.anchor_start_at),
            "default_duration_min": self.default_duration_min,
            "recurrence_rule": self.recurrence_rule,
            "effective_start_date": isoformat(self.effective_start_date),
            "effective_end_date": isoformat(self.effective_end_date),
            "auto_create_orders": self.auto_create_orders,
            "max_generated_ahead_days": self.max_generated_ahead_days,
            "next_planned_occurrence_at": isoformat(self.next_planned_occurrence_at),
            "last_occurrence_generated_at": isoformat(self.last_occurrence_generated_at),
            "generation_error": self.generation_error,
            "generation_error_at": isoformat(self.generation_error_at),
            "paused_at": isoformat(self.paused_at),
            "resume_at": isoformat(self.resume_at),
            "policy_snapshot": self.policy_snapshot or {},
            "metadata": self.metadata_json or {},
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<StandingReservationContract {self.id} [{self.status}]>"


@event.listens_for(StandingReservationContract.recurrence_rule, "set")
def _clear_generation_error(target, value, oldvalue, initiator):
    # a new rule gets a fresh chance with the planner
    if value != oldvalue:
        target.generation_error = None
        target.generation_error_at = None


# ═════════════════════════════════════════════════════════════════════════════
# StandingReservationException
# ═════════════════════════════════════════════════════════════════════════════


class StandingReservationException(TenantModel):
    """
    Override attached to a contract.

    Shape per action (enforced in the service and mirrored here):
        skip / cancel:  one target (key or local date), no overrides
        reschedule:     one target + override_start_at + override_end_at
        pause_window:   no target, override_start_at + override_end_at only
    """

    __tablename__ = "standing_reservation_exceptions"
    __table_args__ = (
        db.CheckConstraint(
            "action IN ('skip_occurrence','cancel_occurrence','reschedule_occurrence','pause_window')",
            name="ck_sr_exception_action",
        ),
        db.CheckConstraint(
            "override_start_at IS NULL OR override_end_at IS NULL OR override_end_at > override_start_at",
            name="ck_sr_exception_window",
        ),
        db.CheckConstraint(
            "(action IN ('skip_occurrence','cancel_occurrence') "
            " AND (target_occurrence_key IS NOT NULL OR target_local_date IS NOT NULL) "
            " AND override_start_at IS NULL AND override_end_at IS NULL "
            " AND override_location_id IS NULL AND override_sellable_id IS NULL) "
            "OR (action = 'reschedule_occurrence' "
            " AND (target_occurrence_key IS NOT NULL OR target_local_date IS NOT NULL) "
            " AND override_start_at IS NOT NULL AND override_end_at IS NOT NULL) "
            "OR (action = 'pause_window' "
            " AND target_occurrence_key IS NULL AND target_local_date IS NULL "
            " AND override_start_at IS NOT NULL AND override_end_at IS NOT NULL "
            " AND override_location_id IS NULL AND override_sellable_id IS NULL)",
            name="ck_sr_exception_shape",
        ),
        db.ForeignKeyConstraint(
            ["tenant_id", "contract_id"],
            ["standing_reservation_contracts.tenant_id", "standing_reservation_contracts.id"],
            ondelete="CASCADE", name="fk_sr_exception_contract",
        ),
        db.Index("ix_sr_exceptions_contract_active", "contract_id", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(30), nullable=False)
    target_occurrence_key = db.Column(db.String(120), nullable=True)
    target_local_date = db.Column(db.Date, nullable=True)
    override_start_at = db.Column(UTCDateTime, nullable=True)
    override_end_at = db.Column(UTCDateTime, nullable=True)
    override_location_id = db.Column(
        db.Integer, db.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True,
    )
    override_sellable_id = db.Column(
        db.Integer, db.ForeignKey("sellables.id", ondelete="SET NULL"), nullable=True,
    )
    reason = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.String(150), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "contract_id": self.contract_id,
            "action": self.action,
            "target_occurrence_key": self.target_occurrence_key,
            "target_local_date": isoformat(self.target_local_date),
            "override_start_at": isoformat(self.override_start_at),
            "override_end_at": isoformat(self.override_end_at),
            "override_location_id": self.override_location_id,
            "override_sellable_id": self.override_sellable_id,
            "reason": self.reason,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<StandingReservationException {self.action} contract={self.contract_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# StandingReservationOccurrence
# ═════════════════════════════════════════════════════════════════════════════


class StandingReservationOccurrence(TenantModel):
    """
    One generated slot. The row is the audit record of its own lifecycle.

    occurrence_key is derived from the contract id and the UTC instant of
    the original recurrence slot, so it survives reschedules.
    """

    __tablename__ = "standing_reservation_occurrences"
    __table_args__ = (
        db.UniqueConstraint(
            "tenant_id", "contract_id", "occurrence_key", name="uq_sr_occurrence_key",
        ),
        db.UniqueConstraint("booking_order_id", name="uq_sr_occurrence_booking_order"),
        db.CheckConstraint(
            "status IN ('planned','generated','booked','fulfilled','skipped','cancelled','failed')",
            name="ck_sr_occurrence_status",
        ),
        db.CheckConstraint("planned_end_at > planned_start_at", name="ck_sr_occurrence_window"),
        db.CheckConstraint(
            "status != 'booked' OR (booking_order_id IS NOT NULL AND booked_at IS NOT NULL)",
            name="ck_sr_occurrence_booked_shape",
        ),
        db.CheckConstraint(
            "status != 'fulfilled' OR (booking_order_id IS NOT NULL "
            "AND booked_at IS NOT NULL AND fulfilled_at IS NOT NULL)",
            name="ck_sr_occurrence_fulfilled_shape",
        ),
        db.CheckConstraint(
            "status != 'skipped' OR (booking_order_id IS NULL "
            "AND skipped_at IS NOT NULL AND skip_reason IS NOT NULL)",
            name="ck_sr_occurrence_skipped_shape",
        ),
        db.CheckConstraint(
            "status != 'cancelled' OR cancelled_at IS NOT NULL",
            name="ck_sr_occurrence_cancelled_shape",
        ),
        db.ForeignKeyConstraint(
            ["tenant_id", "contract_id"],
            ["standing_reservation_contracts.tenant_id", "standing_reservation_contracts.id"],
            ondelete="CASCADE", name="fk_sr_occurrence_contract",
        ),
        db.Index("ix_sr_occurrences_due", "tenant_id", "status", "planned_start_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(db.Integer, nullable=False)
    occurrence_key = db.Column(db.String(120), nullable=False)
    occurrence_local_date = db.Column(db.Date, nullable=False)
    planned_start_at = db.Column(UTCDateTime, nullable=False)
    planned_end_at = db.Column(UTCDateTime, nullable=False)
    location_id = db.Column(
        db.Integer, db.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True,
    )
    sellable_id = db.Column(
        db.Integer, db.ForeignKey("sellables.id", ondelete="SET NULL"), nullable=True,
    )
    status = db.Column(db.String(20), nullable=False, default="planned")
    booking_order_id = db.Column(
        db.Integer, db.ForeignKey("booking_orders.id", ondelete="SET NULL"), nullable=True,
    )
    source_exception_id = db.Column(
        db.Integer, db.ForeignKey("standing_reservation_exceptions.id", ondelete="SET NULL"),
        nullable=True, comment="Exception that shaped this row, if any",
    )

    generated_at = db.Column(UTCDateTime, nullable=False, default=utcnow)
    booked_at = db.Column(UTCDateTime, nullable=True)
    fulfilled_at = db.Column(UTCDateTime, nullable=True)
    cancelled_at = db.Column(UTCDateTime, nullable=True)
    skipped_at = db.Column(UTCDateTime, nullable=True)
    failed_at = db.Column(UTCDateTime, nullable=True)
    skip_reason = db.Column(db.Text, nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)
    metadata_json = db.Column("metadata", db.JSON, default=dict)

    booking_order = db.relationship("BookingOrder", foreign_keys=[booking_order_id])

    @property
    def is_terminal(self) -> bool:
        return self.status in OCCURRENCE_TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "contract_id": self.contract_id,
            "occurrence_key": self.occurrence_key,
            "occurrence_local_date": isoformat(self.occurrence_local_date),
            "planned_start_at": isoformat(self.planned_start_at),
            "planned_end_at": isoformat(self.planned_end_at),
            "location_id": self.location_id,
            "sellable_id": self.sellable_id,
            "status": self.status,
            "booking_order_id": self.booking_order_id,
            "source_exception_id": self.source_exception_id,
            "generated_at": isoformat(self.generated_at),
            "booked_at": isoformat(self.booked_at),
            "fulfilled_at": isoformat(self.fulfilled_at),
            "cancelled_at": isoformat(self.cancelled_at),
            "skipped_at": isoformat(self.skipped_at),
            "failed_at": isoformat(self.failed_at),
            "skip_reason": self.skip_reason,
            "cancel_reason": self.cancel_reason,
            "failure_reason": self.failure_reason,
        }

    def __repr__(self):
        return f"<StandingReservationOccurrence {self.occurrence_key} [{self.status}]>"
