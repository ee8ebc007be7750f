"""
Unit tests for structured logging processors.
"""

from shared.logging import (
    ServiceContext, add_correlation_context, clear_context, mask_email,
    redact_sensitive_fields, set_request_id, set_user_context
)


class TestLoggingProcessors:
    """Test cases for logging processors."""

    def teardown_method(self):
        clear_context()

    def test_service_context_derives_component(self):
        """Test component name comes from the dotted logger name."""
        processor = ServiceContext("layout")

        event = processor(None, "info", {"logger": "layout.lookup.overrides", "event": "x"})

        assert event["service"] == "layout"
        assert event["component"] == "lookup.overrides"

    def test_service_context_ignores_foreign_loggers(self):
        """Test loggers outside the service get no component."""
        event = ServiceContext("layout")(None, "info", {"logger": "uvicorn.error"})

        assert "component" not in event

    def test_correlation_context(self):
        """Test request and user ids are attached."""
        request_id = set_request_id("req-1")
        set_user_context("user-1")

        event = add_correlation_context(None, "info", {})

        assert request_id == "req-1"
        assert event["request_id"] == "req-1"
        assert event["user_id"] == "user-1"
        assert event["request_elapsed_ms"] >= 0

    def test_correlation_context_cleared(self):
        """Test nothing is attached outside a request."""
        set_request_id()
        clear_context()

        assert add_correlation_context(None, "info", {}) == {}

    def test_generated_request_id(self):
        """Test an id is generated when the caller sends none."""
        assert len(set_request_id()) == 36

    def test_email_redaction(self):
        """Test email fields are masked."""
        event = redact_sensitive_fields(None, "info", {"user_email": "jane.doe@example.com", "user_id": "u1"})

        assert event["user_email"] == "j***@example.com"
        assert event["user_id"] == "u1"
        assert mask_email(None) is None
        assert mask_email("not-an-email") == "not-an-email"
