"""
Logging configuration tests: request context stamping and both formatters.
"""

import json
import logging

from flask import g

from tracewell.middleware.logging_config import (
    JSONFormatter,
    ReadableFormatter,
    RequestContextFilter,
)


def _record(msg="Story %s moved", args=("ONCO-20260301-AAAA",), **extra):
    record = logging.LogRecord("tracewell.services.story_lifecycle", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRequestContextFilter:
    def test_stamps_request_id_and_user(self, app):
        with app.test_request_context("/api/v1/stories", headers={"X-User-Id": "pgm-1"}):
            g.request_id = "req-42"
            record = _record()
            assert RequestContextFilter().filter(record) is True
        assert record.request_id == "req-42"
        assert record.user_id == "pgm-1"

    def test_explicit_extra_wins(self, app):
        with app.test_request_context("/api/v1/stories", headers={"X-User-Id": "pgm-1"}):
            record = _record(user_id="admin-1")
            RequestContextFilter().filter(record)
        assert record.user_id == "admin-1"

    def test_outside_request_leaves_record_alone(self):
        record = _record()
        assert RequestContextFilter().filter(record) is True
        assert not hasattr(record, "request_id")


class TestFormatters:
    def test_json_carries_service_and_context(self):
        line = JSONFormatter().format(_record(story_id="ONCO-20260301-AAAA", user_id="pgm-1", cycle_id=None))
        entry = json.loads(line)
        assert entry["service"] == "tracewell"
        assert entry["msg"] == "Story ONCO-20260301-AAAA moved"
        assert entry["story_id"] == "ONCO-20260301-AAAA"
        assert entry["user_id"] == "pgm-1"
        assert "cycle_id" not in entry

    def test_readable_appends_context_tag(self):
        line = ReadableFormatter().format(_record(request_id="req-42", story_id="ONCO-20260301-AAAA"))
        assert line.endswith("(request=req-42 story=ONCO-20260301-AAAA)")

    def test_readable_without_context(self):
        line = ReadableFormatter().format(_record())
        assert line.endswith("Story ONCO-20260301-AAAA moved")
