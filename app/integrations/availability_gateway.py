"""
Calendar / availability gateway.

The allocator does not know business hours or blackout dates; it asks this
gateway whether a resource may be booked for a window and rejects the
assignment when the answer is no. Scheduling state (who is already booked)
is never delegated here.

  - OpenAvailabilityGateway: everything is open (AVAILABILITY_SERVICE_URL empty)
  - HttpAvailabilityGateway: GET <base>/availability?resource_id=...&start=...&end=...
                             → {"open": true|false, "reason": "..."}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

import requests
from flask import current_app

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10


@dataclass
class AvailabilityVerdict:
    open: bool
    reason: str | None = None


class OpenAvailabilityGateway:
    def check(self, tenant_id: int, resource_id: int, starts_at: datetime, ends_at: datetime) -> AvailabilityVerdict:
        return AvailabilityVerdict(open=True)


class HttpAvailabilityGateway:
    """Availability service client. Fails closed: an unreachable service means not open."""

    def __init__(self, base_url: str, *, session: requests.Session | None = None,
                 timeout: int = _DEFAULT_TIMEOUT) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session
        self.timeout = timeout

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def check(self, tenant_id: int, resource_id: int, starts_at: datetime, ends_at: datetime) -> AvailabilityVerdict:
        params = {
            "tenant_id": tenant_id,
            "resource_id": resource_id,
            "start": starts_at.isoformat(),
            "end": ends_at.isoformat(),
        }
        try:
            resp = self.session.get(f"{self.base_url}/availability", params=params, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Availability check failed for resource=%s: %s", resource_id, exc)
            return AvailabilityVerdict(open=False, reason="availability_service_unavailable")
        return AvailabilityVerdict(open=bool(body.get("open")), reason=body.get("reason"))


def get_availability_gateway():
    base_url = current_app.config.get("AVAILABILITY_SERVICE_URL") or ""
    if not base_url:
        return OpenAvailabilityGateway()
    return HttpAvailabilityGateway(base_url, timeout=current_app.config.get("AVAILABILITY_SERVICE_TIMEOUT", 10))
