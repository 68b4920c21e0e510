"""
Tests for structured logging
"""

import json
import logging

from campus.logging_config import RequestIdFilter, StructuredFormatter, request_id_var


class TestStructuredFormatter:
    def make_record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("campus.services.cap_service", logging.WARNING, __file__, 1, "cap %s", (150,), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_formats_json(self):
        data = json.loads(StructuredFormatter().format(self.make_record()))

        assert data["level"] == "WARNING"
        assert data["logger"] == "campus.services.cap_service"
        assert data["message"] == "cap 150"

    def test_includes_known_extras(self):
        data = json.loads(StructuredFormatter().format(self.make_record(tenant_id=7, error_code="BILLING_INCONSISTENT")))

        assert data["tenant_id"] == 7
        assert data["error_code"] == "BILLING_INCONSISTENT"

    def test_request_id_filter(self):
        token = request_id_var.set("req-123")
        try:
            record = self.make_record()
            assert RequestIdFilter().filter(record) is True
            assert record.request_id == "req-123"
        finally:
            request_id_var.reset(token)
