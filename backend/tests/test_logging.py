"""
Tests for log correlation context and the operation timing helper.
"""

from unittest.mock import MagicMock

import pytest

from storefront.core.logging import (
    add_correlation_ids,
    clear_context,
    get_request_id,
    log_performance,
    set_idempotency_key,
    set_request_id,
    set_user_id,
)


@pytest.fixture(autouse=True)
def reset_context():
    yield
    clear_context()


class TestCorrelationIds:
    def test_bound_ids_added_to_event(self):
        set_request_id("req-1")
        set_user_id("user-1")
        set_idempotency_key("key-1")

        event = add_correlation_ids(None, "info", {"event": "Order created"})

        assert event["request_id"] == "req-1"
        assert event["user_id"] == "user-1"
        assert event["idempotency_key"] == "key-1"

    def test_explicit_event_fields_win(self):
        set_user_id("user-1")

        event = add_correlation_ids(None, "info", {"event": "x", "user_id": "other"})

        assert event["user_id"] == "other"

    def test_cleared_context_adds_nothing(self):
        set_request_id("req-1")
        clear_context()

        assert add_correlation_ids(None, "info", {"event": "x"}) == {"event": "x"}
        assert get_request_id() == ""

    def test_request_id_generated(self):
        request_id = set_request_id()

        assert request_id
        assert get_request_id() == request_id


class TestLogPerformance:
    def test_completed_block_logged_as_info(self):
        logger = MagicMock()

        with log_performance(logger, "create_order", order_id="o1"):
            pass

        logger.info.assert_called_once()
        assert logger.info.call_args.kwargs["operation"] == "create_order"
        assert logger.info.call_args.kwargs["order_id"] == "o1"
        logger.warning.assert_not_called()

    def test_slow_block_logged_as_warning(self):
        logger = MagicMock()

        with log_performance(logger, "reconcile", slow_threshold_ms=-1):
            pass

        logger.warning.assert_called_once()
        logger.info.assert_not_called()

    def test_failure_logged_and_reraised(self):
        logger = MagicMock()

        with pytest.raises(ValueError):
            with log_performance(logger, "create_order"):
                raise ValueError("boom")

        assert logger.error.call_args.kwargs["error_type"] == "ValueError"
        logger.info.assert_not_called()
