"""
Commerce / order service gateway.

The Occurrence Lifecycle Manager never creates orders on its own: it sends
a materialization request through a gateway and gets back a BookingOrder
row (the local mirror of the commerce order) with the confirmed window.

Two implementations:
  - LocalOrderGateway: the order service is this database; the mirror row
    *is* the order. Used when ORDER_SERVICE_URL is empty (dev / tests).
  - HttpOrderGateway:  POSTs to the commerce service with the occurrence
    key as Idempotency-Key, retries with backoff, then stores the mirror.

Both expose the same two calls:
    order = gateway.create_order(request)             # flushed BookingOrder
    gateway.discard_order(order, winner=linked)       # race loser throws its order away

The race loser only voids a commerce order that differs from the one the
winner linked; with an idempotent service both racers receive the same id.

Testability: pass a fake ``session`` (anything with ``.post``) to
HttpOrderGateway instead of letting it create a real requests.Session.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

import requests
from flask import current_app

from app.models import db
from app.models.fulfillment import BookingOrder
from app.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = (1, 4)
_DEFAULT_TIMEOUT = 15


class OrderServiceError(Exception):
    """The commerce service refused or failed a materialization request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass
class OrderRequest:
    """Everything the commerce service needs to snapshot an order."""

    tenant_id: int
    sellable_id: int
    requested_start_at: datetime
    requested_end_at: datetime
    location_id: int | None = None
    source_occurrence_id: int | None = None
    idempotency_key: str | None = None
    policy_snapshot: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "sellable_id": self.sellable_id,
            "location_id": self.location_id,
            "requested_start_at": self.requested_start_at.isoformat(),
            "requested_end_at": self.requested_end_at.isoformat(),
            "source_occurrence_id": self.source_occurrence_id,
            "policy_snapshot": self.policy_snapshot,
        }


def _mirror(request: OrderRequest, *, status: str, external_ref: str | None,
            confirmed_start_at: datetime | None, confirmed_end_at: datetime | None) -> BookingOrder:
    order = BookingOrder(
        tenant_id=request.tenant_id,
        sellable_id=request.sellable_id,
        location_id=request.location_id,
        source_occurrence_id=request.source_occurrence_id,
        external_ref=external_ref,
        status=status,
        requested_start_at=request.requested_start_at,
        requested_end_at=request.requested_end_at,
        confirmed_start_at=confirmed_start_at,
        confirmed_end_at=confirmed_end_at,
        policy_snapshot=dict(request.policy_snapshot or {}),
        selected_options=dict((request.policy_snapshot or {}).get("selected_options") or {}),
    )
    db.session.add(order)
    db.session.flush()
    return order


class LocalOrderGateway:
    """Order service backed by the local booking_orders table."""

    def create_order(self, request: OrderRequest) -> BookingOrder:
        order = _mirror(
            request,
            status="confirmed",
            external_ref=None,
            confirmed_start_at=request.requested_start_at,
            confirmed_end_at=request.requested_end_at,
        )
        logger.debug("Local order created id=%s for occurrence=%s", order.id, request.source_occurrence_id)
        return order

    def discard_order(self, order: BookingOrder, *, winner: BookingOrder | None = None) -> None:
        db.session.delete(order)
        db.session.flush()


class HttpOrderGateway:
    """Commerce service REST gateway.

    Usage:
        gateway = HttpOrderGateway("https://commerce.internal/api", session=fake_session)
        order = gateway.create_order(order_request)
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
        backoff: tuple[float, ...] = _RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session
        self.timeout = timeout
        self.backoff = backoff

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _post(self, path: str, payload: dict, headers: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        last_error = None
        for attempt in range(_RETRY_MAX + 1):
            try:
                resp = self.session.post(url, json=payload, headers=headers or {}, timeout=self.timeout)
            except requests.RequestException as exc:
                last_error = OrderServiceError(f"order service unreachable: {exc}")
            else:
                if resp.status_code < 300:
                    return resp.json() if resp.content else {}
                if resp.status_code < 500:
                    raise OrderServiceError(
                        f"order service rejected request: HTTP {resp.status_code}", resp.status_code,
                    )
                last_error = OrderServiceError(f"order service error: HTTP {resp.status_code}", resp.status_code)

            if attempt < _RETRY_MAX:
                delay = self.backoff[min(attempt, len(self.backoff) - 1)] if self.backoff else 0
                logger.warning("Order service call %s failed (attempt %d), retrying in %ss: %s",
                               path, attempt + 1, delay, last_error)
                if delay:
                    time.sleep(delay)
        raise last_error

    def create_order(self, request: OrderRequest) -> BookingOrder:
        headers = {"Idempotency-Key": request.idempotency_key} if request.idempotency_key else {}
        body = self._post("/orders", request.to_payload(), headers)
        order = _mirror(
            request,
            status=body.get("status", "confirmed"),
            external_ref=str(body["id"]) if body.get("id") is not None else None,
            confirmed_start_at=parse_datetime(body.get("confirmed_start_at"), "confirmed_start_at"),
            confirmed_end_at=parse_datetime(body.get("confirmed_end_at"), "confirmed_end_at"),
        )
        logger.info("Commerce order %s mirrored as id=%s", order.external_ref, order.id)
        return order

    def discard_order(self, order: BookingOrder, *, winner: BookingOrder | None = None) -> None:
        # An idempotent commerce service hands both racers the same order;
        # voiding it would cancel the winner's booking.
        shared = winner is not None and winner.external_ref == order.external_ref
        if shared:
            logger.info("Commerce order %s is shared with the winning occurrence link; not voided",
                        order.external_ref)
        elif order.external_ref:
            try:
                self._post(f"/orders/{order.external_ref}/void", {"reason": "duplicate_materialization"})
            except OrderServiceError:
                logger.exception("Could not void commerce order %s", order.external_ref)
        db.session.delete(order)
        db.session.flush()


def get_order_gateway():
    """Gateway selected by ORDER_SERVICE_URL (empty → local)."""
    base_url = current_app.config.get("ORDER_SERVICE_URL") or ""
    if not base_url:
        return LocalOrderGateway()
    return HttpOrderGateway(base_url, timeout=current_app.config.get("ORDER_SERVICE_TIMEOUT", _DEFAULT_TIMEOUT))
