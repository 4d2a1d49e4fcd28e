"""
test_logging.py — Log context, formatters and the request middleware.

Run with:
    pytest tests/test_logging.py -v
"""

from __future__ import annotations

import json
import logging

from fastapi.testclient import TestClient

from backend.app.core.logging_config import (
    JSONFormatter,
    PrettyFormatter,
    get_log_context,
    log_context,
)
from backend.app.main import create_app


def _record(msg: str = "Alert 12 sent", **extra) -> logging.LogRecord:
    record = logging.LogRecord("backend.app.alerts", logging.INFO, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogContext:
    """Test nested context merging."""

    def test_nested_blocks_merge_and_restore(self):
        with log_context(request_id="abc", actor_id=2):
            with log_context(ws_user=5, actor_id=None):
                assert get_log_context() == {"request_id": "abc", "actor_id": 2, "ws_user": 5}
            assert get_log_context() == {"request_id": "abc", "actor_id": 2}
        assert get_log_context() == {}


class TestFormatters:
    """Test JSON and console output."""

    def test_json_promotes_alert_fields(self):
        with log_context(request_id="req-1"):
            line = JSONFormatter().format(_record(alert_id=12, recipient_count=40))
        entry = json.loads(line)
        assert entry["message"] == "Alert 12 sent"
        assert entry["alert_id"] == 12
        assert entry["recipient_count"] == 40
        assert entry["context"] == {"request_id": "req-1"}
        assert "incident_id" not in entry

    def test_pretty_tags(self):
        with log_context(request_id="3f2a91c0ffee", actor_id=2):
            line = PrettyFormatter(use_color=False).format(_record(alert_id=12))
        assert "[3f2a91c0] actor=2 alert=12 backend.app.alerts: Alert 12 sent" in line


class TestRequestMiddleware:
    """Test correlation headers on HTTP responses."""

    def test_request_id_echoed(self, services):
        with TestClient(create_app(services)) as client:
            resp = client.get("/health/live", headers={"X-Request-ID": "trace-42"})
        assert resp.headers["X-Request-ID"] == "trace-42"
        assert resp.headers["X-Process-Time"].endswith("ms")

    def test_request_id_generated(self, services):
        with TestClient(create_app(services)) as client:
            resp = client.get("/")
        assert len(resp.headers["X-Request-ID"]) == 16
