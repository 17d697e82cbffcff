"""
Tests for the Fulfillment Graph Builder (app/services/fulfillment_graph_service.py).

The shared ``sellable`` fixture is prep (30) ─fs─▶ session (60) ─fs─▶ cleanup (15, optional);
``confirmed_order`` runs 2030-01-08 09:00–12:00 UTC with cleanup selected.
"""

from datetime import date

import pytest
from conftest import utc
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import (
    ConflictError,
    CycleDetected,
    GapViolation,
    InvalidTransition,
    NotFoundError,
    SelfLoopRejected,
    ValidationError,
)
from app.models import db
from app.models.catalog import ComponentRelationship, Resource, SellableComponent
from app.models.fulfillment import (
    BookingOrder,
    FulfillmentAssignment,
    FulfillmentDependency,
    FulfillmentUnit,
)
from app.models.standing_reservation import StandingReservationOccurrence
from app.services import fulfillment_graph_service as graph_service
from app.services.dependency_validator import validate_graph

pytestmark = pytest.mark.integration


def _units_by_code(graph: dict) -> dict:
    return {u["code"]: u for u in graph["units"]}


def _order(tenant, sellable, *, start, end, status="confirmed", components=None):
    order = BookingOrder(
        tenant_id=tenant.id,
        sellable_id=sellable.id,
        status=status,
        confirmed_start_at=start,
        confirmed_end_at=end,
        selected_options={"components": components or []},
    )
    db.session.add(order)
    db.session.commit()
    return order


class TestBuildGraph:
    def test_units_are_laid_out_end_to_end(self, tenant, confirmed_order):
        graph = graph_service.build_graph(tenant.id, confirmed_order.id)

        units = _units_by_code(graph)
        assert list(units) == ["prep", "session", "cleanup"]
        assert units["prep"]["planned_start_at"] == utc(2030, 1, 8, 9, 0).isoformat()
        assert units["session"]["planned_start_at"] == utc(2030, 1, 8, 9, 30).isoformat()
        assert units["cleanup"]["planned_end_at"] == utc(2030, 1, 8, 10, 45).isoformat()
        assert {u["status"] for u in graph["units"]} == {"planned"}
        assert len(graph["edges"]) == 2

    def test_unselected_optional_component_is_left_out(self, tenant, sellable):
        order = _order(tenant, sellable, start=utc(2030, 1, 8, 9, 0), end=utc(2030, 1, 8, 12, 0))

        graph = graph_service.build_graph(tenant.id, order.id)

        assert list(_units_by_code(graph)) == ["prep", "session"]
        assert len(graph["edges"]) == 1

    def test_overflow_leaves_remaining_units_unscheduled(self, tenant, sellable):
        order = _order(tenant, sellable, start=utc(2030, 1, 8, 9, 0), end=utc(2030, 1, 8, 10, 0),
                       components=["cleanup"])

        units = _units_by_code(graph_service.build_graph(tenant.id, order.id))

        assert units["prep"]["planned_end_at"] == utc(2030, 1, 8, 9, 30).isoformat()
        assert units["session"]["planned_start_at"] is None
        assert units["cleanup"]["planned_start_at"] is None

    def test_component_without_duration_keeps_the_cursor(self, tenant, sellable, confirmed_order):
        prep = SellableComponent.query.filter_by(sellable_id=sellable.id, slug="prep").one()
        prep.duration_min = None
        db.session.commit()

        units = _units_by_code(graph_service.build_graph(tenant.id, confirmed_order.id))

        assert units["prep"]["planned_start_at"] is None
        assert units["session"]["planned_start_at"] == utc(2030, 1, 8, 9, 0).isoformat()

    def test_build_is_idempotent(self, tenant, confirmed_order):
        first = graph_service.build_graph(tenant.id, confirmed_order.id)
        second = graph_service.build_graph(tenant.id, confirmed_order.id)

        assert [u["id"] for u in second["units"]] == [u["id"] for u in first["units"]]
        assert FulfillmentUnit.query.count() == 3
        assert FulfillmentDependency.query.count() == 2

    def test_unconfirmed_order_is_rejected(self, tenant, sellable):
        order = _order(tenant, sellable, start=None, end=None, status="draft")
        with pytest.raises(ValidationError):
            graph_service.build_graph(tenant.id, order.id)

    def test_template_self_loop_is_rejected_before_writing(self, tenant, sellable, confirmed_order):
        prep = SellableComponent.query.filter_by(sellable_id=sellable.id, slug="prep").one()
        db.session.add(ComponentRelationship(
            tenant_id=tenant.id, sellable_id=sellable.id,
            predecessor_component_id=prep.id, successor_component_id=prep.id,
        ))
        db.session.commit()

        with pytest.raises(SelfLoopRejected):
            graph_service.build_graph(tenant.id, confirmed_order.id)
        assert FulfillmentUnit.query.count() == 0

    def test_other_tenant_sees_nothing(self, other_tenant, confirmed_order):
        with pytest.raises(NotFoundError):
            graph_service.build_graph(other_tenant.id, confirmed_order.id)


class TestAddDependency:
    @pytest.fixture()
    def units(self, tenant, confirmed_order):
        graph = graph_service.build_graph(tenant.id, confirmed_order.id)
        return {code: u["id"] for code, u in _units_by_code(graph).items()}

    def test_back_edge_is_a_cycle(self, tenant, confirmed_order, units):
        with pytest.raises(CycleDetected) as exc_info:
            graph_service.add_dependency(tenant.id, confirmed_order.id, units["cleanup"], units["prep"])
        assert set(exc_info.value.unit_ids) == set(units.values())
        assert FulfillmentDependency.query.count() == 2

    def test_self_loop_is_rejected(self, tenant, confirmed_order, units):
        with pytest.raises(SelfLoopRejected):
            graph_service.add_dependency(tenant.id, confirmed_order.id, units["prep"], units["prep"])

    def test_duplicate_edge_is_a_conflict(self, tenant, confirmed_order, units):
        with pytest.raises(ConflictError):
            graph_service.add_dependency(tenant.id, confirmed_order.id, units["prep"], units["session"])

    def test_unknown_type_is_rejected(self, tenant, confirmed_order, units):
        with pytest.raises(ValidationError):
            graph_service.add_dependency(tenant.id, confirmed_order.id, units["prep"], units["cleanup"],
                                         dependency_type="whenever")

    def test_inverted_gap_bounds_are_rejected(self, tenant, confirmed_order, units):
        with pytest.raises(ValidationError):
            graph_service.add_dependency(tenant.id, confirmed_order.id, units["prep"], units["cleanup"],
                                         dependency_type="min_gap", min_gap_min=30, max_gap_min=10)

    def test_edges_never_span_orders(self, tenant, sellable, confirmed_order, units):
        other = _order(tenant, sellable, start=utc(2030, 1, 9, 9, 0), end=utc(2030, 1, 9, 12, 0))
        other_units = _units_by_code(graph_service.build_graph(tenant.id, other.id))

        with pytest.raises(ValidationError):
            graph_service.add_dependency(tenant.id, confirmed_order.id, units["prep"],
                                         other_units["session"]["id"])

    def test_new_edge_is_validated_with_the_graph(self, tenant, confirmed_order, units):
        dep = graph_service.add_dependency(tenant.id, confirmed_order.id, units["prep"], units["cleanup"],
                                           dependency_type="max_gap", max_gap_min=30)

        report = validate_graph(tenant.id, confirmed_order.id)

        verdict = next(v for v in report.verdicts if v.dependency_id == dep.id)
        assert verdict.verdict == "violation"
        assert verdict.actual_gap_min == 60
        assert report.blocked_by.keys() == {units["cleanup"]}


class TestUnitTransitions:
    @pytest.fixture()
    def units(self, tenant, confirmed_order):
        graph = graph_service.build_graph(tenant.id, confirmed_order.id)
        return {code: u["id"] for code, u in _units_by_code(graph).items()}

    def test_in_progress_and_completed_stamp_actuals(self, tenant, units):
        unit = graph_service.transition_unit(tenant.id, units["prep"], "in_progress", now=utc(2030, 1, 8, 9, 2))
        assert unit.actual_start_at == utc(2030, 1, 8, 9, 2)

        unit = graph_service.transition_unit(tenant.id, units["prep"], "completed", now=utc(2030, 1, 8, 9, 31))
        assert unit.status == "completed"
        assert unit.actual_end_at == utc(2030, 1, 8, 9, 31)

    def test_hard_gap_violation_blocks_ready(self, tenant, confirmed_order, units):
        graph_service.add_dependency(tenant.id, confirmed_order.id, units["prep"], units["session"],
                                     dependency_type="min_gap", min_gap_min=15)

        with pytest.raises(GapViolation):
            graph_service.transition_unit(tenant.id, units["session"], "ready")
        with pytest.raises(GapViolation):
            graph_service.transition_unit(tenant.id, units["cleanup"], "ready")
        assert graph_service.transition_unit(tenant.id, units["prep"], "ready").status == "ready"

    def test_soft_violation_does_not_block(self, tenant, confirmed_order, units):
        graph_service.add_dependency(tenant.id, confirmed_order.id, units["prep"], units["session"],
                                     dependency_type="min_gap", min_gap_min=15, hard_block=False)

        assert graph_service.transition_unit(tenant.id, units["session"], "ready").status == "ready"

    def test_illegal_transition(self, tenant, units):
        with pytest.raises(InvalidTransition):
            graph_service.transition_unit(tenant.id, units["prep"], "completed")

    def test_failed_unit_is_terminal(self, tenant, units):
        graph_service.transition_unit(tenant.id, units["prep"], "in_progress", now=utc(2030, 1, 8, 9, 0))

        unit = graph_service.transition_unit(tenant.id, units["prep"], "failed", now=utc(2030, 1, 8, 9, 20))

        assert unit.status == "failed"
        assert unit.actual_end_at == utc(2030, 1, 8, 9, 20)
        with pytest.raises(InvalidTransition):
            graph_service.transition_unit(tenant.id, units["prep"], "ready")

    def test_planned_unit_cannot_fail_directly(self, tenant, units):
        with pytest.raises(InvalidTransition):
            graph_service.transition_unit(tenant.id, units["prep"], "failed")


# ═════════════════════════════════════════════════════════════════════════════
# Tenant-safe references
# ═════════════════════════════════════════════════════════════════════════════


class TestTenantSafeReferences:
    """Composite (tenant_id, id) foreign keys reject rows pointing across tenants."""

    @pytest.fixture()
    def units(self, tenant, confirmed_order):
        graph = graph_service.build_graph(tenant.id, confirmed_order.id)
        return {code: u["id"] for code, u in _units_by_code(graph).items()}

    def test_dependency_cannot_reference_another_tenants_units(self, other_tenant, confirmed_order, units):
        db.session.add(FulfillmentDependency(
            tenant_id=other_tenant.id,
            booking_order_id=confirmed_order.id,
            predecessor_unit_id=units["prep"],
            successor_unit_id=units["cleanup"],
        ))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

    def test_assignment_cannot_reference_another_tenants_resource(self, tenant, other_tenant, units):
        foreign = Resource(tenant_id=other_tenant.id, name="Elsewhere", resource_type="staff")
        db.session.add(foreign)
        db.session.commit()

        db.session.add(FulfillmentAssignment(
            tenant_id=tenant.id,
            fulfillment_unit_id=units["session"],
            resource_id=foreign.id,
            status="proposed",
        ))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

    def test_occurrence_cannot_reference_another_tenants_contract(self, other_tenant, make_contract):
        contract = make_contract(activate=False)
        db.session.add(StandingReservationOccurrence(
            tenant_id=other_tenant.id,
            contract_id=contract.id,
            occurrence_key=f"{contract.id}#20300108T090000Z",
            occurrence_local_date=date(2030, 1, 8),
            planned_start_at=utc(2030, 1, 8, 9, 0),
            planned_end_at=utc(2030, 1, 8, 10, 0),
        ))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()
