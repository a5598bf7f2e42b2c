"""Tests for the logging and request timing middleware."""

import json
import logging

from bpm_bridge.middleware.logging_config import JSONFormatter, ReadableFormatter, RequestContextFilter


def _record(msg="hello", **extra):
    record = logging.LogRecord("bpm_bridge.test", logging.INFO, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_json_formatter_includes_form_context(self):
        out = json.loads(JSONFormatter().format(_record(form_id="PS-1", sync_type="WITHDRAW")))

        assert out["message"] == "hello"
        assert out["form_id"] == "PS-1"
        assert out["sync_type"] == "WITHDRAW"
        assert "request_id" not in out

    def test_readable_formatter_tags_form_and_sync_type(self):
        line = ReadableFormatter().format(_record(form_id="PS-1", sync_type="CANCEL", duration_ms=12.4))
        assert "[PS-1/CANCEL]" in line
        assert "(12ms)" in line


class TestRequestContextFilter:
    def test_request_id_is_stamped_inside_a_request(self, app):
        with app.test_request_context("/api/v1/forms"):
            from flask import g
            g.request_id = "req-42"
            record = _record()
            RequestContextFilter().filter(record)
        assert record.request_id == "req-42"

    def test_outside_a_request_nothing_is_added(self):
        record = _record()
        assert RequestContextFilter().filter(record) is True
        assert getattr(record, "request_id", None) is None


class TestRequestTiming:
    def test_headers_are_set(self, client):
        res = client.get("/api/v1/forms")
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0
        assert len(res.headers["X-Request-ID"]) == 12

    def test_slow_request_is_logged_with_form_id(self, app, client, make_form, caplog, monkeypatch):
        make_form("PS-1")
        monkeypatch.setitem(app.config, "SLOW_REQUEST_MS", "0.000001")

        with caplog.at_level(logging.WARNING, logger="bpm_bridge.middleware.timing"):
            client.get("/api/v1/forms/PS-1")

        slow = [r for r in caplog.records if r.getMessage().startswith("Slow request")]
        assert slow
        assert slow[0].form_id == "PS-1"
