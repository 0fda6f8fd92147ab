"""
Tests for matching succeeded payment intents to orders.
"""

from datetime import datetime, timedelta, timezone

import pytest

from storefront.services.orders.repository import OrderRepository
from storefront.services.payments.reconciliation import (
    PaymentReconciler,
    billing_email,
    intent_amount,
)
from tests.fakes import payment_intent


@pytest.fixture
def reconciler(store, settings):
    return PaymentReconciler(OrderRepository(store), settings)


def pending_order(store, **values):
    row = {"payment_status": "pending", "total_amount": 50, "email": "buyer@example.com"}
    row.update(values)
    return store.seed("orders", **row)


def test_billing_email_and_amount():
    intent = payment_intent(amount=1999, email="a@example.com")

    assert billing_email(intent) == "a@example.com"
    assert billing_email({"receipt_email": "r@example.com", "charges": {"data": []}}) == "r@example.com"
    assert billing_email(payment_intent()) is None
    assert str(intent_amount(intent)) == "19.99"


class TestDirectStrategies:
    @pytest.mark.asyncio
    async def test_order_id(self, store, reconciler):
        order = store.seed("orders", status="processing")

        match = await reconciler.match_succeeded(payment_intent(metadata={"order_id": order["id"]}))

        assert match.matched_by == "order_id"
        assert not match.heuristic
        assert match.order["payment_status"] == "paid"
        assert match.order["status"] == "confirmed"
        assert match.order["payment_details"]["stripePaymentIntentId"] == "pi_test_1"
        assert match.order["payment_details"]["matched_by"] == "order_id"

    @pytest.mark.asyncio
    async def test_idempotency_key_in_meta(self, store, reconciler):
        order = store.seed("orders", meta={"idempotency_key": "k1"})

        match = await reconciler.match_succeeded(payment_intent(metadata={"idempotency_key": "k1"}))

        assert match.matched_by == "idempotency_key_meta"
        assert match.order["id"] == order["id"]

    @pytest.mark.asyncio
    async def test_idempotency_key_column(self, store, reconciler):
        order = store.seed("orders", idempotency_key="k2", meta={})

        match = await reconciler.match_succeeded(payment_intent(metadata={"idempotency_key": "k2"}))

        assert match.matched_by == "idempotency_key_top"
        assert match.order["id"] == order["id"]

    @pytest.mark.asyncio
    async def test_recorded_payment_intent(self, store, reconciler):
        order = store.seed("orders", payment_details={"stripePaymentIntentId": "pi_recorded"})

        match = await reconciler.match_succeeded(payment_intent(intent_id="pi_recorded"))

        assert match.matched_by == "payment_details"
        assert match.order["id"] == order["id"]

    @pytest.mark.asyncio
    async def test_client_timestamp(self, store, reconciler):
        order = store.seed("orders", meta={"client_ts": 1700000000123})

        match = await reconciler.match_succeeded(
            payment_intent(intent_id="pi_other", metadata={"client_ts": "1700000000123"})
        )

        assert match.matched_by == "meta_client_ts"
        assert match.order["id"] == order["id"]

    @pytest.mark.asyncio
    async def test_order_id_beats_heuristic(self, store, reconciler):
        named = store.seed("orders", total_amount=80)
        bystander = pending_order(store)

        match = await reconciler.match_succeeded(
            payment_intent(metadata={"order_id": named["id"]}, email="buyer@example.com")
        )

        assert match.matched_by == "order_id"
        assert match.order["id"] == named["id"]
        untouched = next(row for row in store.rows("orders") if row["id"] == bystander["id"])
        assert untouched["payment_status"] == "pending"

    @pytest.mark.asyncio
    async def test_unknown_order_id_falls_through(self, store, reconciler):
        order = store.seed("orders", meta={"idempotency_key": "k1"})

        match = await reconciler.match_succeeded(
            payment_intent(metadata={"order_id": "ORD-unknown", "idempotency_key": "k1"})
        )

        assert match.matched_by == "idempotency_key_meta"
        assert match.order["id"] == order["id"]


class TestHeuristicStrategies:
    @pytest.mark.asyncio
    async def test_email_and_amount(self, store, reconciler):
        order = pending_order(store)

        match = await reconciler.match_succeeded(payment_intent(email="buyer@example.com"))

        assert match.matched_by == "email_amount"
        assert match.heuristic
        assert match.order["id"] == order["id"]

    @pytest.mark.asyncio
    async def test_amount_only_without_email(self, store, reconciler):
        order = pending_order(store, email=None)

        match = await reconciler.match_succeeded(payment_intent())

        assert match.matched_by == "amount_only"
        assert match.order["id"] == order["id"]

    @pytest.mark.asyncio
    async def test_ambiguous_candidates_are_not_matched(self, store, reconciler):
        pending_order(store)
        pending_order(store)

        match = await reconciler.match_succeeded(payment_intent(email="buyer@example.com"))

        assert match is None
        assert {row["payment_status"] for row in store.rows("orders")} == {"pending"}

    @pytest.mark.asyncio
    async def test_old_orders_are_not_candidates(self, store, reconciler):
        pending_order(store, created_at=datetime.now(timezone.utc) - timedelta(hours=3))

        assert await reconciler.match_succeeded(payment_intent(email="buyer@example.com")) is None

    @pytest.mark.asyncio
    async def test_amount_must_match(self, store, reconciler):
        pending_order(store)

        assert await reconciler.match_succeeded(
            payment_intent(amount=4999, email="buyer@example.com")
        ) is None

    @pytest.mark.asyncio
    async def test_lookup_failure_means_no_match(self, store, reconciler):
        pending_order(store)
        store.broken_paths.add("payment_status")

        assert await reconciler.match_succeeded(payment_intent(email="buyer@example.com")) is None


class TestMarkPaid:
    @pytest.mark.asyncio
    async def test_terminal_status_kept(self, store, reconciler):
        order = store.seed("orders", status="delivered")

        updated = await reconciler.mark_paid(order, payment_intent(), "reconcile")

        assert updated["status"] == "delivered"
        assert updated["payment_status"] == "paid"

    @pytest.mark.asyncio
    async def test_existing_payment_details_merged(self, store, reconciler):
        order = store.seed("orders", payment_details={"provider": "stripe"})

        updated = await reconciler.mark_paid(order, payment_intent(), "order_id")

        assert updated["payment_details"]["provider"] == "stripe"
        assert updated["payment_details"]["stripeRaw"]["id"] == "pi_test_1"

    @pytest.mark.asyncio
    async def test_payment_details_column_missing(self, store, reconciler):
        order = store.seed("orders")
        store.mark_unknown("orders", "payment_details")

        updated = await reconciler.mark_paid(order, payment_intent(), "order_id")

        assert updated["payment_status"] == "paid"
        assert "payment_details" not in updated

    @pytest.mark.asyncio
    async def test_write_failure_returns_none(self, store, reconciler):
        order = store.seed("orders")
        store.failing_tables.add("orders")

        assert await reconciler.mark_paid(order, payment_intent(), "order_id") is None


class TestMarkFailed:
    @pytest.mark.asyncio
    async def test_marks_order_failed(self, store, reconciler):
        order = store.seed("orders", payment_status="pending")

        updated = await reconciler.mark_failed(order["id"], payment_intent(status="requires_payment_method"))

        assert updated["payment_status"] == "failed"
        assert updated["payment_details"]["stripePaymentIntentId"] == "pi_test_1"

    @pytest.mark.asyncio
    async def test_existing_payment_details_kept(self, store, reconciler):
        order = store.seed(
            "orders",
            payment_status="pending",
            payment_details={"provider": "stripe", "matched_by": "order_id"},
        )

        updated = await reconciler.mark_failed(order["id"], payment_intent(status="canceled"))

        assert updated["payment_details"]["provider"] == "stripe"
        assert updated["payment_details"]["matched_by"] == "order_id"
        assert updated["payment_details"]["stripePaymentIntentId"] == "pi_test_1"

    @pytest.mark.asyncio
    async def test_unknown_order(self, reconciler):
        assert await reconciler.mark_failed("11111111-2222-3333-4444-555555555555", payment_intent()) is None
