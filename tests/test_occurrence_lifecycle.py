"""
Tests for the Occurrence Lifecycle Manager (app/services/occurrence_lifecycle.py)
and the order gateways it talks to (app/integrations/order_gateway.py).

Covered:
  1. materialize_order: link, policy snapshot, exactly-once under a race
  2. Terminal moves: reasons, fulfilled-after-booked, timestamp clamping
  3. Due sweep: auto_create on/off, lead window, paused contracts, gateway errors
  4. HttpOrderGateway retry / backoff with a fake session
"""

from datetime import timedelta

import pytest
import requests
from conftest import NOW, utc
from sqlalchemy import update

from app.core.exceptions import AlreadyBooked, InvalidTransition, ValidationError
from app.integrations.order_gateway import (
    HttpOrderGateway,
    LocalOrderGateway,
    OrderRequest,
    OrderServiceError,
)
from app.models import db
from app.models.fulfillment import BookingOrder
from app.models.standing_reservation import StandingReservationOccurrence
from app.services import occurrence_lifecycle as lifecycle
from app.services import standing_reservation_service as srs

pytestmark = pytest.mark.integration


def _occurrences(tenant, contract, horizon_days=14):
    return srs.expand_contract(tenant.id, contract.id, horizon_days=horizon_days, now=NOW).occurrences


# ── Fakes ────────────────────────────────────────────────────────────────────


class _RacingGateway(LocalOrderGateway):
    """Another worker links its own order between our create_order and our update."""

    def __init__(self):
        self.winner = None
        self.discarded = []

    def create_order(self, request):
        self.winner = super().create_order(request)
        Occ = StandingReservationOccurrence
        db.session.execute(
            update(Occ)
            .where(Occ.id == request.source_occurrence_id)
            .values(status="booked", booking_order_id=self.winner.id, booked_at=NOW)
            .execution_options(synchronize_session=False)
        )
        return super().create_order(request)

    def discard_order(self, order, *, winner=None):
        self.discarded.append(order.id)
        super().discard_order(order, winner=winner)


class _FailingGateway(LocalOrderGateway):
    def create_order(self, request):
        raise OrderServiceError("order service error: HTTP 503", 503)


class _FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body
        self.content = b"{}" if body is not None else b""

    def json(self):
        return self._body


class _FakeSession:
    """Replays canned responses (or raises canned exceptions) for .post()."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers or {}, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class _CommerceSession:
    """In-memory commerce service; with ``idempotent`` it replays orders per Idempotency-Key."""

    def __init__(self, idempotent=True):
        self.idempotent = idempotent
        self.by_key = {}
        self.created = 0
        self.voided = []

    def post(self, url, json=None, headers=None, timeout=None):
        if url.endswith("/void"):
            self.voided.append(url.split("/")[-2])
            return _FakeResponse(200, {})
        key = (headers or {}).get("Idempotency-Key")
        if not (self.idempotent and key in self.by_key):
            self.created += 1
            self.by_key[key] = f"ord-{self.created}"
        return _FakeResponse(201, {
            "id": self.by_key[key],
            "status": "confirmed",
            "confirmed_start_at": json["requested_start_at"],
            "confirmed_end_at": json["requested_end_at"],
        })


class _RacingHttpGateway(HttpOrderGateway):
    """Like _RacingGateway, but both workers talk to the commerce service."""

    def __init__(self, session):
        super().__init__("https://commerce.test/api", session=session, backoff=(0,))
        self.winner = None

    def create_order(self, request):
        self.winner = super().create_order(request)
        Occ = StandingReservationOccurrence
        db.session.execute(
            update(Occ)
            .where(Occ.id == request.source_occurrence_id)
            .values(status="booked", booking_order_id=self.winner.id, booked_at=NOW)
            .execution_options(synchronize_session=False)
        )
        return super().create_order(request)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Materialization
# ═════════════════════════════════════════════════════════════════════════════


class TestMaterializeOrder:
    def test_materialize_links_a_confirmed_order(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]

        order = lifecycle.materialize_order(tenant.id, occ.id, now=NOW)

        db.session.refresh(occ)
        assert occ.status == "booked"
        assert occ.booking_order_id == order.id
        assert occ.booked_at == NOW
        assert order.status == "confirmed"
        assert order.source_occurrence_id == occ.id
        assert order.confirmed_start_at == occ.planned_start_at
        assert order.policy_snapshot["sellable_id"] == contract.sellable_id

    def test_second_materialize_is_already_booked(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]
        order = lifecycle.materialize_order(tenant.id, occ.id, now=NOW)

        with pytest.raises(AlreadyBooked) as exc_info:
            lifecycle.materialize_order(tenant.id, occ.id, now=NOW)

        assert exc_info.value.booking_order_id == order.id
        assert BookingOrder.query.count() == 1

    def test_losing_the_race_discards_the_duplicate_order(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]
        gateway = _RacingGateway()

        with pytest.raises(AlreadyBooked) as exc_info:
            lifecycle.materialize_order(tenant.id, occ.id, gateway=gateway, now=NOW)

        assert exc_info.value.booking_order_id == gateway.winner.id
        assert len(gateway.discarded) == 1
        assert gateway.discarded[0] != gateway.winner.id
        assert [o.id for o in BookingOrder.query.all()] == [gateway.winner.id]
        db.session.refresh(occ)
        assert occ.booking_order_id == gateway.winner.id

    def test_losing_the_race_keeps_a_shared_commerce_order(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]
        commerce = _CommerceSession(idempotent=True)
        gateway = _RacingHttpGateway(commerce)

        with pytest.raises(AlreadyBooked):
            lifecycle.materialize_order(tenant.id, occ.id, gateway=gateway, now=NOW)

        assert commerce.voided == []
        assert [o.external_ref for o in BookingOrder.query.all()] == ["ord-1"]
        db.session.refresh(occ)
        assert occ.booking_order_id == gateway.winner.id

    def test_losing_the_race_voids_its_own_commerce_order(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]
        commerce = _CommerceSession(idempotent=False)
        gateway = _RacingHttpGateway(commerce)

        with pytest.raises(AlreadyBooked):
            lifecycle.materialize_order(tenant.id, occ.id, gateway=gateway, now=NOW)

        assert commerce.voided == ["ord-2"]
        assert [o.external_ref for o in BookingOrder.query.all()] == ["ord-1"]

    def test_skipped_occurrence_cannot_be_materialized(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]
        lifecycle.skip_occurrence(tenant.id, occ.id, "holiday", now=NOW)

        with pytest.raises(InvalidTransition):
            lifecycle.materialize_order(tenant.id, occ.id, now=NOW)
        assert BookingOrder.query.count() == 0

    def test_ended_contract_blocks_materialization(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]
        # cancelled after the slot started: the past occurrence stays planned
        srs.cancel_contract(tenant.id, contract.id, now=utc(2030, 1, 9))

        with pytest.raises(InvalidTransition):
            lifecycle.materialize_order(tenant.id, occ.id, now=NOW)

    def test_generated_occurrence_can_still_be_booked(self, tenant, make_contract):
        contract = make_contract(auto_create_orders=False)
        occ = _occurrences(tenant, contract)[0]
        lifecycle.mark_generated(tenant.id, occ.id)

        lifecycle.materialize_order(tenant.id, occ.id, now=NOW)

        db.session.refresh(occ)
        assert occ.status == "booked"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Terminal moves
# ═════════════════════════════════════════════════════════════════════════════


class TestTerminalMoves:
    def test_fulfilled_requires_a_booking(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]
        with pytest.raises(InvalidTransition):
            lifecycle.mark_fulfilled(tenant.id, occ.id, now=NOW)

    def test_booked_occurrence_is_fulfilled(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]
        lifecycle.materialize_order(tenant.id, occ.id, now=NOW)

        occ = lifecycle.mark_fulfilled(tenant.id, occ.id, now=utc(2030, 1, 8, 10, 0))

        assert occ.status == "fulfilled"
        assert occ.fulfilled_at == utc(2030, 1, 8, 10, 0)

    @pytest.mark.parametrize("move", [lifecycle.cancel_occurrence, lifecycle.skip_occurrence])
    def test_reason_is_required(self, tenant, make_contract, move):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]
        with pytest.raises(ValidationError):
            move(tenant.id, occ.id, "", now=NOW)

    def test_fail_records_default_reason(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]
        occ = lifecycle.fail_occurrence(tenant.id, occ.id, now=NOW)
        assert occ.status == "failed"
        assert occ.failure_reason == "unspecified"

    def test_stamps_never_precede_generation(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]

        occ = lifecycle.cancel_occurrence(tenant.id, occ.id, "customer request", now=NOW - timedelta(days=2))

        assert occ.cancelled_at == occ.generated_at == NOW

    def test_terminal_occurrence_stays_terminal(self, tenant, make_contract):
        contract = make_contract()
        occ = _occurrences(tenant, contract)[0]
        lifecycle.cancel_occurrence(tenant.id, occ.id, "customer request", now=NOW)
        with pytest.raises(InvalidTransition):
            lifecycle.skip_occurrence(tenant.id, occ.id, "holiday", now=NOW)


# ═════════════════════════════════════════════════════════════════════════════
# 3. Due sweep
# ═════════════════════════════════════════════════════════════════════════════

SWEEP_NOW = utc(2030, 1, 7, 12, 0)  # Jan 8 09:00 is 21h away, Jan 15 is not


class TestDueSweep:
    def test_auto_create_books_due_occurrences_only(self, tenant, make_contract):
        contract = make_contract()
        first, second = _occurrences(tenant, contract)

        report = lifecycle.materialize_due_occurrences(now=SWEEP_NOW, lead_hours=48)

        assert report.to_dict()["materialized"] == 1
        db.session.refresh(first)
        db.session.refresh(second)
        assert first.status == "booked"
        assert second.status == "planned"

    def test_second_sweep_is_a_no_op(self, tenant, make_contract):
        contract = make_contract()
        _occurrences(tenant, contract)
        lifecycle.materialize_due_occurrences(now=SWEEP_NOW, lead_hours=48)

        report = lifecycle.materialize_due_occurrences(now=SWEEP_NOW, lead_hours=48)

        assert report.to_dict()["materialized"] == 0
        assert BookingOrder.query.count() == 1

    def test_manual_contracts_are_flagged_generated(self, tenant, make_contract):
        contract = make_contract(auto_create_orders=False)
        first, _ = _occurrences(tenant, contract)

        report = lifecycle.materialize_due_occurrences(now=SWEEP_NOW, lead_hours=48)

        assert report.generated == 1
        assert report.orders == []
        db.session.refresh(first)
        assert first.status == "generated"
        assert BookingOrder.query.count() == 0

    def test_paused_contracts_are_not_materialized(self, tenant, make_contract):
        contract = make_contract()
        _occurrences(tenant, contract)
        srs.pause_contract(tenant.id, contract.id, now=NOW)

        report = lifecycle.materialize_due_occurrences(now=SWEEP_NOW, lead_hours=48)

        assert report.to_dict()["materialized"] == 0

    def test_sweep_is_scoped_to_tenant(self, tenant, other_tenant, make_contract):
        contract = make_contract()
        _occurrences(tenant, contract)

        report = lifecycle.materialize_due_occurrences(other_tenant.id, now=SWEEP_NOW, lead_hours=48)

        assert report.orders == []

    def test_gateway_failure_is_reported_and_row_stays_open(self, tenant, make_contract):
        contract = make_contract()
        first, _ = _occurrences(tenant, contract)

        report = lifecycle.materialize_due_occurrences(now=SWEEP_NOW, lead_hours=48, gateway=_FailingGateway())

        assert report.errors == [{"occurrence_id": first.id, "error": "order service error: HTTP 503"}]
        db.session.refresh(first)
        assert first.status == "planned"


# ═════════════════════════════════════════════════════════════════════════════
# 4. HttpOrderGateway
# ═════════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def order_request(tenant, sellable):
    return OrderRequest(
        tenant_id=tenant.id,
        sellable_id=sellable.id,
        requested_start_at=utc(2030, 1, 8, 9, 0),
        requested_end_at=utc(2030, 1, 8, 10, 0),
        idempotency_key="1#20300108T090000Z",
    )


_CONFIRMED = {
    "id": "ord-77",
    "status": "confirmed",
    "confirmed_start_at": "2030-01-08T09:00:00Z",
    "confirmed_end_at": "2030-01-08T10:00:00Z",
}


class TestHttpOrderGateway:
    def test_retries_server_errors_then_mirrors_the_order(self, order_request):
        session = _FakeSession(_FakeResponse(503, {}), _FakeResponse(201, _CONFIRMED))
        gateway = HttpOrderGateway("https://commerce.test/api/", session=session, backoff=(0,))

        order = gateway.create_order(order_request)

        assert len(session.calls) == 2
        assert session.calls[0]["url"] == "https://commerce.test/api/orders"
        assert session.calls[0]["headers"] == {"Idempotency-Key": "1#20300108T090000Z"}
        assert order.external_ref == "ord-77"
        assert order.confirmed_end_at == utc(2030, 1, 8, 10, 0)

    def test_connection_errors_are_retried(self, order_request):
        session = _FakeSession(requests.ConnectionError("refused"), _FakeResponse(200, _CONFIRMED))
        gateway = HttpOrderGateway("https://commerce.test/api", session=session, backoff=(0,))

        assert gateway.create_order(order_request).external_ref == "ord-77"

    def test_client_errors_are_not_retried(self, order_request):
        session = _FakeSession(_FakeResponse(409, {"error": "duplicate"}))
        gateway = HttpOrderGateway("https://commerce.test/api", session=session, backoff=(0,))

        with pytest.raises(OrderServiceError) as exc_info:
            gateway.create_order(order_request)

        assert exc_info.value.status_code == 409
        assert len(session.calls) == 1

    def test_gives_up_after_three_attempts(self, order_request):
        session = _FakeSession(*[_FakeResponse(502, {}) for _ in range(3)])
        gateway = HttpOrderGateway("https://commerce.test/api", session=session, backoff=(0,))

        with pytest.raises(OrderServiceError):
            gateway.create_order(order_request)

        assert len(session.calls) == 3
        assert BookingOrder.query.count() == 0

    def test_discard_voids_the_remote_order(self, order_request):
        session = _FakeSession(_FakeResponse(201, _CONFIRMED), _FakeResponse(200, {}))
        gateway = HttpOrderGateway("https://commerce.test/api", session=session, backoff=(0,))
        order = gateway.create_order(order_request)

        gateway.discard_order(order)

        assert session.calls[1]["url"] == "https://commerce.test/api/orders/ord-77/void"
        assert BookingOrder.query.count() == 0
