"""Scheduling core — tenants, catalog, standing reservations, fulfillment graph, assignments

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 09:00:00.000000

Changes:
  - Create tenants, locations, resources, sellables, sellable_components,
    sellable_component_relationships
  - Create booking_orders
  - Create standing_reservation_contracts / _exceptions / _occurrences
  - Create fulfillment_units, fulfillment_dependencies,
    fulfillment_assignments, fulfillment_assignment_events
  - Create scheduled_jobs
  - Parents carry a (tenant_id, id) unique key; children reference it with
    composite foreign keys so no link can cross tenants
  - PostgreSQL only: btree_gist + exclusion constraint forbidding
    overlapping active enforce_no_overlap assignments per resource
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1b2c3d4e5f6"
down_revision = None
branch_labels = None
depends_on = None

OVERLAP_CONSTRAINT_NAME = "fulfillment_assignments_no_overlap_excl"


def _tenant_columns():
    return [
        sa.Column("tenant_id", sa.Integer(),
                  sa.ForeignKey("tenants.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    # ── Tenant ──
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("settings", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── Catalog & registry ──
    op.create_table(
        "locations",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
    )

    op.create_table(
        "resources",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("resource_type", sa.String(20), nullable=False, server_default="staff"),
        sa.Column("capabilities", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint(
            "resource_type IN ('staff','vehicle','room','equipment','other')",
            name="ck_resource_type",
        ),
        sa.UniqueConstraint("tenant_id", "id", name="uq_resource_tenant_id"),
    )

    op.create_table(
        "sellables",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("slug", sa.String(120), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("default_duration_min", sa.Integer(), nullable=True),
        sa.UniqueConstraint("tenant_id", "slug", name="uq_sellable_tenant_slug"),
    )

    op.create_table(
        "sellable_components",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("sellable_id", sa.Integer(),
                  sa.ForeignKey("sellables.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("slug", sa.String(120), nullable=False),
        sa.Column("kind", sa.String(30), nullable=False, server_default="service_task"),
        sa.Column("mode", sa.String(20), nullable=False, server_default="required"),
        sa.Column("duration_min", sa.Integer(), nullable=True,
                  comment="Duration hint used to lay out unit timing"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("assignment_policy", sa.JSON(), nullable=True),
        sa.UniqueConstraint("sellable_id", "slug", name="uq_sellable_component_slug"),
        sa.CheckConstraint("mode IN ('required','optional')", name="ck_sellable_component_mode"),
        sa.CheckConstraint("duration_min IS NULL OR duration_min > 0", name="ck_sellable_component_duration"),
    )

    op.create_table(
        "sellable_component_relationships",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("sellable_id", sa.Integer(),
                  sa.ForeignKey("sellables.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("predecessor_component_id", sa.Integer(),
                  sa.ForeignKey("sellable_components.id", ondelete="CASCADE"), nullable=False),
        sa.Column("successor_component_id", sa.Integer(),
                  sa.ForeignKey("sellable_components.id", ondelete="CASCADE"), nullable=False),
        sa.Column("dependency_type", sa.String(30), nullable=False, server_default="finish_to_start"),
        sa.Column("min_gap_min", sa.Integer(), nullable=True),
        sa.Column("max_gap_min", sa.Integer(), nullable=True),
        sa.Column("hard_block", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint(
            "predecessor_component_id", "successor_component_id", "dependency_type",
            name="uq_component_relationship",
        ),
        sa.CheckConstraint(
            "min_gap_min IS NULL OR max_gap_min IS NULL OR min_gap_min <= max_gap_min",
            name="ck_component_relationship_gap_order",
        ),
    )

    # ── BookingOrder ──
    op.create_table(
        "booking_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("sellable_id", sa.Integer(),
                  sa.ForeignKey("sellables.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("location_id", sa.Integer(),
                  sa.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("source_occurrence_id", sa.Integer(), nullable=True, index=True),
        sa.Column("external_ref", sa.String(120), nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="confirmed"),
        sa.Column("requested_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requested_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("policy_snapshot", sa.JSON(), nullable=True),
        sa.Column("selected_options", sa.JSON(), nullable=True),
        sa.CheckConstraint(
            "status IN ('awaiting_payment','cancelled','completed','confirmed','draft',"
            "'expired','failed','in_progress','quoted')",
            name="ck_booking_order_status",
        ),
        sa.CheckConstraint(
            "requested_start_at IS NULL OR requested_end_at IS NULL "
            "OR requested_end_at > requested_start_at",
            name="ck_booking_order_requested_window",
        ),
        sa.CheckConstraint(
            "confirmed_start_at IS NULL OR confirmed_end_at IS NULL "
            "OR confirmed_end_at > confirmed_start_at",
            name="ck_booking_order_confirmed_window",
        ),
        sa.UniqueConstraint("tenant_id", "id", name="uq_booking_order_tenant_id"),
    )

    # ── Standing reservations ──
    op.create_table(
        "standing_reservation_contracts",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("sellable_id", sa.Integer(),
                  sa.ForeignKey("sellables.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("location_id", sa.Integer(),
                  sa.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("customer_user_ref", sa.String(120), nullable=True),
        sa.Column("customer_group_ref", sa.String(120), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("anchor_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("default_duration_min", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("recurrence_rule", sa.Text(), nullable=False),
        sa.Column("effective_start_date", sa.Date(), nullable=False),
        sa.Column("effective_end_date", sa.Date(), nullable=True),
        sa.Column("auto_create_orders", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("max_generated_ahead_days", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("next_planned_occurrence_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_occurrence_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("generation_error", sa.Text(), nullable=True),
        sa.Column("generation_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resume_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("policy_snapshot", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.CheckConstraint(
            "status IN ('draft','active','paused','completed','cancelled','archived')",
            name="ck_sr_contract_status",
        ),
        sa.CheckConstraint(
            "(customer_user_ref IS NOT NULL AND customer_group_ref IS NULL) "
            "OR (customer_user_ref IS NULL AND customer_group_ref IS NOT NULL)",
            name="ck_sr_contract_customer_anchor",
        ),
        sa.CheckConstraint("default_duration_min > 0", name="ck_sr_contract_duration"),
        sa.CheckConstraint("max_generated_ahead_days >= 0", name="ck_sr_contract_horizon"),
        sa.CheckConstraint(
            "effective_end_date IS NULL OR effective_end_date >= effective_start_date",
            name="ck_sr_contract_effective_range",
        ),
        sa.CheckConstraint(
            "resume_at IS NULL OR paused_at IS NULL OR resume_at > paused_at",
            name="ck_sr_contract_pause_window",
        ),
        sa.UniqueConstraint("tenant_id", "id", name="uq_sr_contract_tenant_id"),
    )
    op.create_index("ix_sr_contracts_tenant_status", "standing_reservation_contracts", ["tenant_id", "status"])

    op.create_table(
        "standing_reservation_exceptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("target_occurrence_key", sa.String(120), nullable=True),
        sa.Column("target_local_date", sa.Date(), nullable=True),
        sa.Column("override_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("override_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("override_location_id", sa.Integer(),
                  sa.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("override_sellable_id", sa.Integer(),
                  sa.ForeignKey("sellables.id", ondelete="SET NULL"), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(150), nullable=True),
        sa.CheckConstraint(
            "action IN ('skip_occurrence','cancel_occurrence','reschedule_occurrence','pause_window')",
            name="ck_sr_exception_action",
        ),
        sa.CheckConstraint(
            "override_start_at IS NULL OR override_end_at IS NULL OR override_end_at > override_start_at",
            name="ck_sr_exception_window",
        ),
        sa.CheckConstraint(
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
        sa.ForeignKeyConstraint(
            ["tenant_id", "contract_id"],
            ["standing_reservation_contracts.tenant_id", "standing_reservation_contracts.id"],
            ondelete="CASCADE", name="fk_sr_exception_contract",
        ),
    )
    op.create_index("ix_sr_exceptions_contract_active", "standing_reservation_exceptions",
                    ["contract_id", "is_active"])

    op.create_table(
        "standing_reservation_occurrences",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("occurrence_key", sa.String(120), nullable=False),
        sa.Column("occurrence_local_date", sa.Date(), nullable=False),
        sa.Column("planned_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("planned_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("location_id", sa.Integer(),
                  sa.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("sellable_id", sa.Integer(),
                  sa.ForeignKey("sellables.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="planned"),
        sa.Column("booking_order_id", sa.Integer(),
                  sa.ForeignKey("booking_orders.id", ondelete="SET NULL"), nullable=True),
        sa.Column("source_exception_id", sa.Integer(),
                  sa.ForeignKey("standing_reservation_exceptions.id", ondelete="SET NULL"), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("booked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fulfilled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("skipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("skip_reason", sa.Text(), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.UniqueConstraint("tenant_id", "contract_id", "occurrence_key", name="uq_sr_occurrence_key"),
        sa.UniqueConstraint("booking_order_id", name="uq_sr_occurrence_booking_order"),
        sa.CheckConstraint(
            "status IN ('planned','generated','booked','fulfilled','skipped','cancelled','failed')",
            name="ck_sr_occurrence_status",
        ),
        sa.CheckConstraint("planned_end_at > planned_start_at", name="ck_sr_occurrence_window"),
        sa.CheckConstraint(
            "status != 'booked' OR (booking_order_id IS NOT NULL AND booked_at IS NOT NULL)",
            name="ck_sr_occurrence_booked_shape",
        ),
        sa.CheckConstraint(
            "status != 'fulfilled' OR (booking_order_id IS NOT NULL "
            "AND booked_at IS NOT NULL AND fulfilled_at IS NOT NULL)",
            name="ck_sr_occurrence_fulfilled_shape",
        ),
        sa.CheckConstraint(
            "status != 'skipped' OR (booking_order_id IS NULL "
            "AND skipped_at IS NOT NULL AND skip_reason IS NOT NULL)",
            name="ck_sr_occurrence_skipped_shape",
        ),
        sa.CheckConstraint(
            "status != 'cancelled' OR cancelled_at IS NOT NULL",
            name="ck_sr_occurrence_cancelled_shape",
        ),
        sa.ForeignKeyConstraint(
            ["tenant_id", "contract_id"],
            ["standing_reservation_contracts.tenant_id", "standing_reservation_contracts.id"],
            ondelete="CASCADE", name="fk_sr_occurrence_contract",
        ),
    )
    op.create_index("ix_sr_occurrences_due", "standing_reservation_occurrences",
                    ["tenant_id", "status", "planned_start_at"])

    # ── Fulfillment graph ──
    op.create_table(
        "fulfillment_units",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("booking_order_id", sa.Integer(), nullable=False),
        sa.Column("sellable_component_id", sa.Integer(),
                  sa.ForeignKey("sellable_components.id", ondelete="SET NULL"), nullable=True),
        sa.Column("code", sa.String(120), nullable=False),
        sa.Column("kind", sa.String(30), nullable=False, server_default="service_task"),
        sa.Column("status", sa.String(20), nullable=False, server_default="planned"),
        sa.Column("planned_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("planned_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("location_id", sa.Integer(),
                  sa.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("assignment_policy", sa.JSON(), nullable=True),
        sa.UniqueConstraint("booking_order_id", "code", name="uq_fulfillment_unit_order_code"),
        sa.CheckConstraint(
            "kind IN ('async_review','queue_service','rental_segment','service_task','transport_leg')",
            name="ck_fulfillment_unit_kind",
        ),
        sa.CheckConstraint(
            "status IN ('blocked','cancelled','completed','failed','held','in_progress','planned','ready')",
            name="ck_fulfillment_unit_status",
        ),
        sa.CheckConstraint(
            "planned_start_at IS NULL OR planned_end_at IS NULL OR planned_end_at > planned_start_at",
            name="ck_fulfillment_unit_planned_window",
        ),
        sa.CheckConstraint(
            "actual_start_at IS NULL OR actual_end_at IS NULL OR actual_end_at >= actual_start_at",
            name="ck_fulfillment_unit_actual_window",
        ),
        sa.UniqueConstraint("tenant_id", "id", name="uq_fulfillment_unit_tenant_id"),
        sa.ForeignKeyConstraint(
            ["tenant_id", "booking_order_id"], ["booking_orders.tenant_id", "booking_orders.id"],
            ondelete="CASCADE", name="fk_fulfillment_unit_order",
        ),
    )
    op.create_index("ix_fulfillment_units_tenant_order", "fulfillment_units", ["tenant_id", "booking_order_id"])

    op.create_table(
        "fulfillment_dependencies",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("booking_order_id", sa.Integer(), nullable=False, index=True),
        sa.Column("predecessor_unit_id", sa.Integer(), nullable=False),
        sa.Column("successor_unit_id", sa.Integer(), nullable=False),
        sa.Column("dependency_type", sa.String(30), nullable=False, server_default="finish_to_start"),
        sa.Column("min_gap_min", sa.Integer(), nullable=True),
        sa.Column("max_gap_min", sa.Integer(), nullable=True),
        sa.Column("hard_block", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint(
            "predecessor_unit_id", "successor_unit_id", "dependency_type",
            name="uq_fulfillment_dependency",
        ),
        sa.CheckConstraint(
            "predecessor_unit_id != successor_unit_id",
            name="ck_fulfillment_dependency_no_self_loop",
        ),
        sa.CheckConstraint(
            "dependency_type IN ('finish_to_start','hard_block_if_missing','max_gap','min_gap',"
            "'must_follow','same_day','start_to_start')",
            name="ck_fulfillment_dependency_type",
        ),
        sa.CheckConstraint(
            "(min_gap_min IS NULL OR min_gap_min >= 0) AND (max_gap_min IS NULL OR max_gap_min >= 0)",
            name="ck_fulfillment_dependency_gap_non_negative",
        ),
        sa.CheckConstraint(
            "min_gap_min IS NULL OR max_gap_min IS NULL OR min_gap_min <= max_gap_min",
            name="ck_fulfillment_dependency_gap_order",
        ),
        sa.ForeignKeyConstraint(
            ["tenant_id", "booking_order_id"], ["booking_orders.tenant_id", "booking_orders.id"],
            ondelete="CASCADE", name="fk_fulfillment_dependency_order",
        ),
        sa.ForeignKeyConstraint(
            ["tenant_id", "predecessor_unit_id"], ["fulfillment_units.tenant_id", "fulfillment_units.id"],
            ondelete="CASCADE", name="fk_fulfillment_dependency_predecessor",
        ),
        sa.ForeignKeyConstraint(
            ["tenant_id", "successor_unit_id"], ["fulfillment_units.tenant_id", "fulfillment_units.id"],
            ondelete="CASCADE", name="fk_fulfillment_dependency_successor",
        ),
    )

    # ── Assignments ──
    op.create_table(
        "fulfillment_assignments",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("fulfillment_unit_id", sa.Integer(), nullable=False, index=True),
        sa.Column("resource_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="proposed"),
        sa.Column("conflict_policy", sa.String(30), nullable=False, server_default="enforce_no_overlap"),
        sa.Column("role_label", sa.String(80), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_by", sa.String(150), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('cancelled','completed','confirmed','in_progress','proposed','reserved')",
            name="ck_fulfillment_assignment_status",
        ),
        sa.CheckConstraint(
            "conflict_policy IN ('allow_overlap','enforce_no_overlap')",
            name="ck_fulfillment_assignment_conflict_policy",
        ),
        sa.CheckConstraint(
            "starts_at IS NULL OR ends_at IS NULL OR ends_at > starts_at",
            name="ck_fulfillment_assignment_window",
        ),
        sa.CheckConstraint(
            "status NOT IN ('reserved','confirmed','in_progress') "
            "OR (starts_at IS NOT NULL AND ends_at IS NOT NULL)",
            name="ck_fulfillment_assignment_active_window",
        ),
        sa.UniqueConstraint("tenant_id", "id", name="uq_fulfillment_assignment_tenant_id"),
        sa.ForeignKeyConstraint(
            ["tenant_id", "fulfillment_unit_id"], ["fulfillment_units.tenant_id", "fulfillment_units.id"],
            ondelete="CASCADE", name="fk_fulfillment_assignment_unit",
        ),
        sa.ForeignKeyConstraint(
            ["tenant_id", "resource_id"], ["resources.tenant_id", "resources.id"],
            ondelete="RESTRICT", name="fk_fulfillment_assignment_resource",
        ),
    )
    op.create_index("ix_fulfillment_assignments_resource_window", "fulfillment_assignments",
                    ["tenant_id", "resource_id", "starts_at"])

    op.create_table(
        "fulfillment_assignment_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_tenant_columns(),
        sa.Column("fulfillment_assignment_id", sa.Integer(), nullable=False, index=True),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("previous_status", sa.String(20), nullable=True),
        sa.Column("next_status", sa.String(20), nullable=True),
        sa.Column("previous_resource_id", sa.Integer(), nullable=True),
        sa.Column("next_resource_id", sa.Integer(), nullable=True),
        sa.Column("previous_starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("previous_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("previous_conflict_policy", sa.String(30), nullable=True),
        sa.Column("next_conflict_policy", sa.String(30), nullable=True),
        sa.Column("actor_ref", sa.String(150), nullable=True),
        sa.Column("request_key", sa.String(120), nullable=True),
        sa.Column("reason_code", sa.String(80), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.CheckConstraint(
            "event_type IN ('cancelled','completed','conflict_policy_changed','created',"
            "'resource_changed','status_changed','window_changed')",
            name="ck_assignment_event_type",
        ),
        sa.CheckConstraint(
            "event_type = 'created' "
            "OR previous_status IS NOT NULL OR next_status IS NOT NULL "
            "OR previous_resource_id IS NOT NULL OR next_resource_id IS NOT NULL "
            "OR previous_starts_at IS NOT NULL OR next_starts_at IS NOT NULL "
            "OR previous_ends_at IS NOT NULL OR next_ends_at IS NOT NULL "
            "OR previous_conflict_policy IS NOT NULL OR next_conflict_policy IS NOT NULL",
            name="ck_assignment_event_has_dimension",
        ),
        sa.ForeignKeyConstraint(
            ["tenant_id", "fulfillment_assignment_id"],
            ["fulfillment_assignments.tenant_id", "fulfillment_assignments.id"],
            ondelete="CASCADE", name="fk_assignment_event_assignment",
        ),
    )

    # ── Scheduled jobs ──
    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("schedule_type", sa.String(30), nullable=True),
        sa.Column("schedule_config", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_status", sa.String(20), nullable=True),
        sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
        sa.Column("last_run_result", sa.JSON(), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── Overlap exclusion (PostgreSQL only) ──
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
        op.execute(
            f"ALTER TABLE fulfillment_assignments ADD CONSTRAINT {OVERLAP_CONSTRAINT_NAME} "
            "EXCLUDE USING gist ("
            "  resource_id WITH =,"
            "  tstzrange(starts_at, ends_at, '[)') WITH &&"
            ") WHERE ("
            "  status IN ('reserved','confirmed','in_progress')"
            "  AND conflict_policy = 'enforce_no_overlap'"
            ")"
        )


def downgrade():
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute(
            f"ALTER TABLE fulfillment_assignments DROP CONSTRAINT IF EXISTS {OVERLAP_CONSTRAINT_NAME}"
        )

    op.drop_table("scheduled_jobs")
    op.drop_table("fulfillment_assignment_events")
    op.drop_index("ix_fulfillment_assignments_resource_window", table_name="fulfillment_assignments")
    op.drop_table("fulfillment_assignments")
    op.drop_table("fulfillment_dependencies")
    op.drop_index("ix_fulfillment_units_tenant_order", table_name="fulfillment_units")
    op.drop_table("fulfillment_units")
    op.drop_index("ix_sr_occurrences_due", table_name="standing_reservation_occurrences")
    op.drop_table("standing_reservation_occurrences")
    op.drop_index("ix_sr_exceptions_contract_active", table_name="standing_reservation_exceptions")
    op.drop_table("standing_reservation_exceptions")
    op.drop_index("ix_sr_contracts_tenant_status", table_name="standing_reservation_contracts")
    op.drop_table("standing_reservation_contracts")
    op.drop_table("booking_orders")
    op.drop_table("sellable_component_relationships")
    op.drop_table("sellable_components")
    op.drop_table("sellables")
    op.drop_table("resources")
    op.drop_table("locations")
    op.drop_table("tenants")
