"""
Tests for the Assignment Allocator (app/services/assignment_service.py).

Covers:
  - Resource exclusivity (overlap, touching windows, allow_overlap, proposed)
  - Assignment lifecycle and the event log
  - Reassignment event types and no-op calls
  - Idempotent request keys
  - Guards: inactive / unavailable resource, cycle-blocked unit, tenant isolation
"""

import pytest
from conftest import utc

from app.core.exceptions import (
    CycleDetected,
    InvalidTransition,
    NotFoundError,
    ResourceConflict,
    ValidationError,
)
from app.integrations.availability_gateway import AvailabilityVerdict
from app.models import db
from app.models.catalog import Resource
from app.models.fulfillment import FulfillmentDependency
from app.services import assignment_service as svc
from app.services import fulfillment_graph_service as graph_service

pytestmark = pytest.mark.integration

NINE = utc(2030, 1, 8, 9, 0)
TEN = utc(2030, 1, 8, 10, 0)
ELEVEN = utc(2030, 1, 8, 11, 0)


@pytest.fixture()
def units(tenant, confirmed_order):
    graph = graph_service.build_graph(tenant.id, confirmed_order.id)
    return {u["code"]: u["id"] for u in graph["units"]}


class _ClosedCalendar:
    def __init__(self):
        self.calls = []

    def check(self, tenant_id, resource_id, starts_at, ends_at):
        self.calls.append((resource_id, starts_at, ends_at))
        return AvailabilityVerdict(open=False, reason="blackout")


# ═════════════════════════════════════════════════════════════════════════════
# Exclusivity
# ═════════════════════════════════════════════════════════════════════════════


class TestExclusivity:
    def test_overlap_is_rejected_with_conflicting_ids(self, tenant, units, resource):
        first = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)

        with pytest.raises(ResourceConflict) as exc_info:
            svc.propose_assignment(tenant.id, units["session"], resource.id, utc(2030, 1, 8, 9, 30), ELEVEN)

        assert exc_info.value.conflicting_assignment_ids == [first.id]
        assert exc_info.value.details["resource_id"] == resource.id

    def test_touching_windows_do_not_conflict(self, tenant, units, resource):
        svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)
        second = svc.propose_assignment(tenant.id, units["session"], resource.id, TEN, ELEVEN)
        assert second.status == "reserved"

    def test_allow_overlap_skips_the_check(self, tenant, units, resource):
        svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)
        shared = svc.propose_assignment(tenant.id, units["session"], resource.id, NINE, TEN,
                                        conflict_policy="allow_overlap")
        assert shared.conflict_policy == "allow_overlap"

    def test_proposed_assignment_does_not_hold_the_resource(self, tenant, units, resource):
        proposed = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN,
                                          initial_status="proposed")
        reserved = svc.propose_assignment(tenant.id, units["session"], resource.id, NINE, TEN)

        assert svc.find_conflicts(tenant.id, resource.id, NINE, TEN) == [reserved.id]
        # entering the active set re-checks exclusivity
        with pytest.raises(ResourceConflict):
            svc.confirm_assignment(tenant.id, proposed.id)

    def test_other_resource_is_free(self, tenant, units, resource, second_resource):
        svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)
        other = svc.propose_assignment(tenant.id, units["session"], second_resource.id, NINE, TEN)
        assert other.resource_id == second_resource.id

    def test_cancel_frees_the_resource(self, tenant, units, resource):
        first = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)
        svc.cancel_assignment(tenant.id, first.id, reason_code="customer_request")

        again = svc.propose_assignment(tenant.id, units["session"], resource.id, NINE, TEN)
        assert again.status == "reserved"

    def test_bad_window_is_rejected(self, tenant, units, resource):
        with pytest.raises(ValidationError):
            svc.propose_assignment(tenant.id, units["prep"], resource.id, TEN, NINE)
        with pytest.raises(ValidationError):
            svc.propose_assignment(tenant.id, units["prep"], resource.id, None, None)

    def test_unknown_policy_is_rejected(self, tenant, units, resource):
        with pytest.raises(ValidationError):
            svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN, conflict_policy="first_come")


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle + events
# ═════════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    def test_full_lifecycle_writes_one_event_per_move(self, tenant, units, resource):
        a = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN, actor_ref="ops:1")
        svc.confirm_assignment(tenant.id, a.id)
        svc.start_assignment(tenant.id, a.id)
        done = svc.complete_assignment(tenant.id, a.id)

        assert done.status == "completed"
        history = svc.assignment_history(tenant.id, a.id)
        assert [e.event_type for e in history] == ["created", "status_changed", "status_changed", "completed"]
        assert history[0].actor_ref == "ops:1"
        assert history[0].previous_status is None
        assert history[-1].previous_status == "in_progress"

    def test_terminal_assignment_cannot_move(self, tenant, units, resource):
        a = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)
        svc.cancel_assignment(tenant.id, a.id)
        with pytest.raises(InvalidTransition):
            svc.confirm_assignment(tenant.id, a.id)
        with pytest.raises(InvalidTransition):
            svc.reassign_assignment(tenant.id, a.id, starts_at=TEN, ends_at=ELEVEN)

    def test_replay_folds_history_into_current_state(self, tenant, units, resource, second_resource):
        a = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)
        svc.reassign_assignment(tenant.id, a.id, resource_id=second_resource.id)
        svc.confirm_assignment(tenant.id, a.id)

        state = svc.replay_assignment_events(svc.assignment_history(tenant.id, a.id))

        assert state["status"] == "confirmed"
        assert state["resource_id"] == second_resource.id
        assert state["starts_at"] == NINE

    def test_replay_detects_a_gap_in_the_chain(self, tenant, units, resource):
        a = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)
        svc.confirm_assignment(tenant.id, a.id)
        svc.start_assignment(tenant.id, a.id)
        created, _confirmed, started = svc.assignment_history(tenant.id, a.id)

        with pytest.raises(ValueError):
            svc.replay_assignment_events([created, started])

    def test_replay_requires_created_first(self, tenant, units, resource):
        a = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)
        svc.confirm_assignment(tenant.id, a.id)
        history = svc.assignment_history(tenant.id, a.id)

        with pytest.raises(ValueError):
            svc.replay_assignment_events(history[1:])


class TestReassign:
    def test_event_type_follows_what_changed(self, tenant, units, resource, second_resource):
        a = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)

        svc.reassign_assignment(tenant.id, a.id, resource_id=second_resource.id)
        svc.reassign_assignment(tenant.id, a.id, starts_at=TEN, ends_at=ELEVEN)
        svc.reassign_assignment(tenant.id, a.id, conflict_policy="allow_overlap")

        types = [e.event_type for e in svc.assignment_history(tenant.id, a.id)]
        assert types == ["created", "resource_changed", "window_changed", "conflict_policy_changed"]

    def test_noop_writes_no_event(self, tenant, units, resource):
        a = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)

        svc.reassign_assignment(tenant.id, a.id, resource_id=resource.id, starts_at=NINE)

        assert len(svc.assignment_history(tenant.id, a.id)) == 1

    def test_moving_onto_a_busy_resource_conflicts(self, tenant, units, resource, second_resource):
        busy = svc.propose_assignment(tenant.id, units["session"], second_resource.id, NINE, TEN)
        a = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)

        with pytest.raises(ResourceConflict) as exc_info:
            svc.reassign_assignment(tenant.id, a.id, resource_id=second_resource.id)
        assert exc_info.value.conflicting_assignment_ids == [busy.id]
        assert svc.get_assignment(tenant.id, a.id).resource_id == resource.id

    def test_shrinking_own_window_is_not_a_self_conflict(self, tenant, units, resource):
        a = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, ELEVEN)
        moved = svc.reassign_assignment(tenant.id, a.id, ends_at=TEN)
        assert moved.ends_at == TEN


# ═════════════════════════════════════════════════════════════════════════════
# Guards
# ═════════════════════════════════════════════════════════════════════════════


class TestGuards:
    def test_request_key_replays_the_first_result(self, tenant, units, resource):
        first = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN, request_key="req-1")
        again = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN, request_key="req-1")

        assert again.id == first.id
        assert len(svc.assignment_history(tenant.id, first.id)) == 1

    def test_inactive_resource_is_rejected(self, tenant, units, resource):
        resource.is_active = False
        db.session.commit()
        with pytest.raises(ValidationError):
            svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)

    def test_closed_calendar_rejects_the_window(self, tenant, units, resource):
        calendar = _ClosedCalendar()
        with pytest.raises(ValidationError) as exc_info:
            svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN, availability=calendar)
        assert exc_info.value.details["reason"] == "blackout"
        assert calendar.calls == [(resource.id, NINE, TEN)]

    def test_unit_on_a_cycle_cannot_be_assigned(self, tenant, confirmed_order, units, resource):
        # a cycle can only come from rows written outside add_dependency
        db.session.add(FulfillmentDependency(
            tenant_id=tenant.id, booking_order_id=confirmed_order.id,
            predecessor_unit_id=units["cleanup"], successor_unit_id=units["prep"],
        ))
        db.session.commit()

        with pytest.raises(CycleDetected):
            svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)

    def test_cancelled_unit_cannot_be_assigned(self, tenant, units, resource):
        graph_service.transition_unit(tenant.id, units["cleanup"], "cancelled")
        with pytest.raises(ValidationError):
            svc.propose_assignment(tenant.id, units["cleanup"], resource.id, NINE, TEN)

    def test_other_tenant_cannot_see_the_assignment(self, tenant, other_tenant, units, resource):
        a = svc.propose_assignment(tenant.id, units["prep"], resource.id, NINE, TEN)
        with pytest.raises(NotFoundError):
            svc.get_assignment(other_tenant.id, a.id)
        with pytest.raises(NotFoundError):
            svc.cancel_assignment(other_tenant.id, a.id)

    def test_other_tenant_resource_is_not_found(self, tenant, other_tenant, units):
        foreign = Resource(tenant_id=other_tenant.id, name="Foreign", resource_type="staff")
        db.session.add(foreign)
        db.session.commit()

        with pytest.raises(NotFoundError):
            svc.propose_assignment(tenant.id, units["prep"], foreign.id, NINE, TEN)
