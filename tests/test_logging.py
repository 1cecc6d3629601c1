"""
Tests: logging setup (formatters and request context filter).
"""

import json
import logging

from flask import g

from campusflow.middleware.logging_config import JSONFormatter, ReadableFormatter, RequestContextFilter


def _record(msg="Request approved", **extra):
    record = logging.LogRecord("campusflow.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRequestContextFilter:
    def test_stamps_request_and_actor(self, app):
        with app.test_request_context("/api/v1/inbox"):
            g.request_id = "abc123"
            g.actor_id = 7
            record = _record()
            assert RequestContextFilter().filter(record) is True
        assert record.request_id == "abc123"
        assert record.actor_id == 7

    def test_explicit_extra_wins(self, app):
        with app.test_request_context("/api/v1/inbox"):
            g.actor_id = 7
            record = _record(actor_id=99)
            RequestContextFilter().filter(record)
        assert record.actor_id == 99

    def test_outside_a_request(self):
        record = _record()
        RequestContextFilter().filter(record)
        assert record.request_id is None
        assert record.actor_id is None


class TestFormatters:
    def test_json_carries_context_and_extras(self):
        record = _record(request_id="abc123", actor_id=7, request_ref="REQ-2026-0001",
                         event_type="request.approve")
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Request approved"
        assert entry["request_id"] == "abc123"
        assert entry["actor_id"] == 7
        assert entry["request_ref"] == "REQ-2026-0001"
        assert entry["event_type"] == "request.approve"
        assert "duration_ms" not in entry

    def test_readable_line(self):
        record = _record(request_id="abc123", actor_id=7, request_ref="REQ-2026-0001", duration_ms=12.4)
        line = ReadableFormatter().format(record)
        assert "[abc123 u7]" in line
        assert "(REQ-2026-0001)" in line
        assert "[12ms]" in line

    def test_response_echoes_request_id(self, client):
        res = client.get("/api/v1/health/live", headers={"X-Request-ID": "trace-42"})
        assert res.headers["X-Request-ID"] == "trace-42"
