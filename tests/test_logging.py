"""
Tests for app/middleware/logging_config.py: JSON output and request context.
"""

import json
import logging
import sys

import pytest
from flask import g

from app.middleware.logging_config import JSONFormatter, RequestContextFilter

pytestmark = pytest.mark.unit


def _record(msg="Contract id=%s expanded", args=(7,), **extra):
    record = logging.LogRecord("app.services.standing_reservation_service", logging.INFO,
                               __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_message_and_structured_fields(self):
        line = JSONFormatter().format(_record(tenant_id=1, contract_id=7))
        entry = json.loads(line)

        assert entry["message"] == "Contract id=7 expanded"
        assert entry["level"] == "INFO"
        assert entry["tenant_id"] == 1
        assert entry["contract_id"] == 7
        assert "order_id" not in entry

    def test_exception_is_serialised(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]


class TestRequestContextFilter:
    def test_request_id_is_attached_inside_a_request(self, app):
        with app.test_request_context("/api/v1/fulfillment/assignments", method="POST"):
            g.request_id = "abc123"
            record = _record()
            RequestContextFilter().filter(record)

        assert record.request_id == "abc123"
        assert record.method == "POST"
        assert record.path == "/api/v1/fulfillment/assignments"

    def test_outside_a_request_nothing_is_added(self):
        record = _record()
        assert RequestContextFilter().filter(record) is True
        assert getattr(record, "request_id", None) is None
