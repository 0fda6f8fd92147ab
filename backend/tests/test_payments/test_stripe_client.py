"""
Tests for the Stripe client wrapper.

Stripe SDK calls are patched; webhook payloads are signed locally with the
test signing secret.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import stripe

from storefront.services.payments.stripe_client import (
    StripeAuthenticationError,
    StripeClient,
    StripeClientError,
    StripeConnectionError,
    StripePaymentError,
    StripeRateLimitError,
    StripeSignatureError,
    stripe_to_dict,
)
from tests.fakes import WEBHOOK_SECRET, payment_intent, sign_stripe_payload, stripe_event


class TestCreatePaymentIntent:
    def test_success(self, stripe_client):
        with patch("stripe.PaymentIntent.create", return_value=payment_intent()) as create:
            intent = stripe_client.create_payment_intent(
                5000, "USD", metadata={"order_id": 42, "note": None}
            )

        assert intent["id"] == "pi_test_1"
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 5000
        assert kwargs["currency"] == "usd"
        assert kwargs["automatic_payment_methods"] == {"enabled": True}
        assert kwargs["metadata"] == {"order_id": "42"}
        assert kwargs["api_key"] == "sk_test_storefront"

    def test_retries_transient_errors(self):
        sleeps = []
        client = StripeClient(api_key="sk_test", webhook_secret="", sleep=sleeps.append)
        side_effect = [stripe.RateLimitError("slow down"), stripe.APIConnectionError("reset"), payment_intent()]

        with patch("stripe.PaymentIntent.create", side_effect=side_effect) as create:
            intent = client.create_payment_intent(5000, "usd")

        assert intent["status"] == "succeeded"
        assert create.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_rate_limit_exhausted(self, stripe_client):
        with patch("stripe.PaymentIntent.create", side_effect=stripe.RateLimitError("slow down")) as create:
            with pytest.raises(StripeRateLimitError):
                stripe_client.create_payment_intent(5000, "usd")

        assert create.call_count == stripe_client.max_retries + 1

    def test_connection_exhausted(self, stripe_client):
        with patch("stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("down")):
            with pytest.raises(StripeConnectionError):
                stripe_client.create_payment_intent(5000, "usd")

    def test_card_error_not_retried(self, stripe_client):
        error = stripe.CardError("Your card was declined.", param=None, code="card_declined")

        with patch("stripe.PaymentIntent.create", side_effect=error) as create:
            with pytest.raises(StripePaymentError) as exc_info:
                stripe_client.create_payment_intent(5000, "usd")

        assert create.call_count == 1
        assert exc_info.value.code == "card_declined"
        assert exc_info.value.message.startswith("Card error:")

    def test_authentication_error(self, stripe_client):
        with patch("stripe.PaymentIntent.create", side_effect=stripe.AuthenticationError("bad key")):
            with pytest.raises(StripeAuthenticationError):
                stripe_client.create_payment_intent(5000, "usd")

    def test_invalid_request(self, stripe_client):
        error = stripe.InvalidRequestError("Amount must be at least 50 cents", param="amount")

        with patch("stripe.PaymentIntent.create", side_effect=error):
            with pytest.raises(StripeClientError, match="Invalid request"):
                stripe_client.create_payment_intent(10, "usd")


def test_backoff_is_capped():
    client = StripeClient(api_key="sk_test", initial_backoff=1.0, max_backoff=4.0)

    assert [client._calculate_backoff(n) for n in range(4)] == [1.0, 2.0, 4.0, 4.0]


def test_stripe_to_dict_converts_nested_objects():
    inner = MagicMock()
    inner.to_dict_recursive.return_value = {"email": "a@example.com"}

    assert stripe_to_dict({"billing": inner, "items": [1, "a"]}) == {
        "billing": {"email": "a@example.com"},
        "items": [1, "a"],
    }


class TestConstructWebhookEvent:
    def test_valid_signature(self, stripe_client):
        payload = json.dumps(stripe_event("payment_intent.succeeded", payment_intent())).encode()

        event = stripe_client.construct_webhook_event(
            payload, sign_stripe_payload(payload, WEBHOOK_SECRET)
        )

        assert event["type"] == "payment_intent.succeeded"
        assert event["data"]["object"]["id"] == "pi_test_1"

    def test_wrong_secret(self, stripe_client):
        payload = json.dumps(stripe_event("payment_intent.succeeded", payment_intent())).encode()

        with pytest.raises(StripeSignatureError) as exc_info:
            stripe_client.construct_webhook_event(
                payload, sign_stripe_payload(payload, "whsec_other")
            )

        assert exc_info.value.code == "INVALID_SIGNATURE"

    def test_tampered_payload(self, stripe_client):
        payload = json.dumps(stripe_event("payment_intent.succeeded", payment_intent())).encode()
        signature = sign_stripe_payload(payload, WEBHOOK_SECRET)

        with pytest.raises(StripeSignatureError):
            stripe_client.construct_webhook_event(payload.replace(b"5000", b"1"), signature)

    def test_signed_garbage(self, stripe_client):
        payload = b"not json"

        with pytest.raises(StripeSignatureError) as exc_info:
            stripe_client.construct_webhook_event(
                payload, sign_stripe_payload(payload, WEBHOOK_SECRET)
            )

        assert exc_info.value.code == "INVALID_PAYLOAD"
