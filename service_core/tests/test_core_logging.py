"""
Unit tests for structured logging context.
"""

from shared.logging import (
    add_correlation_context,
    add_service_context,
    bind_request_context,
    request_id_var,
    tenant_id_var,
)


class TestRequestContext:
    """Test cases for request/tenant correlation."""

    def test_bind_and_reset(self):
        context = bind_request_context("req-1", "acme")

        assert request_id_var.get() == "req-1"
        assert tenant_id_var.get() == "acme"

        context.reset()

        assert request_id_var.get() is None
        assert tenant_id_var.get() is None

    def test_nested_bindings_restore_outer(self):
        outer = bind_request_context("outer", "acme")
        inner = bind_request_context("inner", None)

        assert tenant_id_var.get() is None

        inner.reset()
        assert request_id_var.get() == "outer"
        assert tenant_id_var.get() == "acme"
        outer.reset()

    def test_request_id_is_generated(self):
        context = bind_request_context()
        try:
            assert len(context.request_id) == 36
            assert request_id_var.get() == context.request_id
        finally:
            context.reset()


class TestProcessors:
    """Test cases for the event processors."""

    def test_correlation_ids_are_added(self):
        context = bind_request_context("req-2", "acme")
        try:
            event = add_correlation_context(None, "info", {"event": "x"})
        finally:
            context.reset()

        assert event["request_id"] == "req-2"
        assert event["tenant_id"] == "acme"

    def test_explicit_tenant_wins(self):
        context = bind_request_context("req-3", "acme")
        try:
            event = add_correlation_context(None, "info", {"event": "x", "tenant_id": "globex"})
        finally:
            context.reset()

        assert event["tenant_id"] == "globex"

    def test_service_from_logger_name(self):
        event = add_service_context(None, "info", {"event": "x", "logger": "core.cache"})

        assert event["service"] == "core"
