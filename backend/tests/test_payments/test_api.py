"""
End-to-end tests for the Stripe and M-Pesa endpoints.
"""

import json
from unittest.mock import patch

import httpx
import stripe
from fastapi import status

from tests.fakes import WEBHOOK_SECRET, payment_intent, sign_stripe_payload, stripe_event

CHECKOUT_ID = "ws_CO_191220191020363925"


class TestCreatePaymentIntentEndpoint:
    def test_success(self, test_client):
        with patch("stripe.PaymentIntent.create", return_value=payment_intent()):
            response = test_client.post("/stripe/create-payment-intent", json={"amount": 50})

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "ok": True,
            "clientSecret": "pi_test_1_secret_abc",
            "id": "pi_test_1",
            "order": None,
        }

    def test_authenticated_checkout_creates_provisional_order(
        self, test_client, auth_headers, user, store
    ):
        body = {
            "amount": 50,
            "order": {"total_amount": 50, "items": [{"product_id": "sku-1"}], "shipping_address": "X"},
        }

        with patch("stripe.PaymentIntent.create", return_value=payment_intent()):
            response = test_client.post(
                "/stripe/create-payment-intent",
                json=body,
                headers=auth_headers(user, idempotency_key="pay-9"),
            )

        assert response.status_code == status.HTTP_200_OK
        order = response.json()["order"]
        assert order["user_id"] == user.id
        assert order["payment_details"]["stripePaymentIntentId"] == "pi_test_1"
        assert len(store.rows("orders")) == 1

    def test_missing_amount(self, test_client):
        response = test_client.post("/stripe/create-payment-intent", json={})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"ok": False, "error": "amount or amount_cents required"}

    def test_stripe_rejection(self, test_client):
        error = stripe.CardError("Your card was declined.", param=None, code="card_declined")

        with patch("stripe.PaymentIntent.create", side_effect=error):
            response = test_client.post("/stripe/create-payment-intent", json={"amount": 50})

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["ok"] is False
        assert response.json()["error"].startswith("Card error")


class TestWebhookEndpoint:
    def post_event(self, test_client, event, secret=WEBHOOK_SECRET):
        payload = json.dumps(event).encode()
        return test_client.post(
            "/stripe/webhook",
            content=payload,
            headers={
                "Content-Type": "application/json",
                "Stripe-Signature": sign_stripe_payload(payload, secret),
            },
        )

    def test_matched_payment(self, test_client, store):
        order = store.seed("orders", payment_status="pending")
        event = stripe_event(
            "payment_intent.succeeded", payment_intent(metadata={"order_id": order["id"]})
        )

        response = self.post_event(test_client, event)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"received": True, "matched_by": "order_id"}
        assert store.rows("orders")[0]["status"] == "confirmed"

    def test_unmatched_payment_acknowledged(self, test_client):
        response = self.post_event(
            test_client, stripe_event("payment_intent.succeeded", payment_intent())
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["message"] == "processed but no matching order found"

    def test_bad_signature(self, test_client):
        response = self.post_event(
            test_client,
            stripe_event("payment_intent.succeeded", payment_intent()),
            secret="whsec_forged",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.text.startswith("Webhook Error:")

    def test_missing_signature(self, test_client):
        response = test_client.post("/stripe/webhook", content=b"{}")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.text == "Webhook Error: Missing Stripe-Signature header"


class TestMpesaEndpoints:
    def test_initiate(self, test_client):
        response = test_client.post(
            "/api/payments/mpesa", json={"phone": "0712345678", "amount": 10, "accountRef": "ORD-1"}
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["ok"] is True
        assert data["checkoutId"] == CHECKOUT_ID

    def test_missing_phone(self, test_client):
        response = test_client.post("/api/payments/mpesa", json={"amount": 10})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"ok": False, "error": "phone & amount required"}

    def test_no_checkout_id(self, test_client, daraja_stub):
        daraja_stub.stk_response = httpx.Response(
            400, json={"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"}
        )

        response = test_client.post("/api/payments/mpesa", json={"phone": "0712345678", "amount": 10})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["error"] == "M-Pesa initiation failed (no checkoutId)"
        assert data["darajaMessage"] == "Bad Request - Invalid Amount"
        assert data["daraja"]["errorCode"] == "400.002.02"

    def test_non_json_gateway_response(self, test_client, daraja_stub):
        daraja_stub.stk_response = httpx.Response(502, text="Bad Gateway")

        response = test_client.post("/api/payments/mpesa", json={"phone": "0712345678", "amount": 10})

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert response.json()["darajaRaw"] == "Bad Gateway"

    def test_token_failure(self, test_client, daraja_stub):
        daraja_stub.token_response = httpx.Response(400, json={"errorMessage": "Invalid credentials"})

        response = test_client.post("/api/payments/mpesa", json={"phone": "0712345678", "amount": 10})

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["error"].startswith("Daraja token error")

    def test_callback_then_status(self, test_client):
        test_client.post("/api/payments/mpesa", json={"phone": "0712345678", "amount": 10})

        callback = test_client.post(
            "/api/payments/mpesa/callback",
            json={
                "Body": {
                    "stkCallback": {
                        "CheckoutRequestID": CHECKOUT_ID,
                        "ResultCode": 0,
                        "ResultDesc": "The service request is processed successfully.",
                    }
                }
            },
        )
        status_response = test_client.get(
            "/api/payments/mpesa/status", params={"checkoutId": CHECKOUT_ID}
        )

        assert callback.json() == {"ok": True}
        assert status_response.status_code == status.HTTP_200_OK
        assert status_response.json()["status"] == "success"
        assert status_response.json()["info"]["request"]["Amount"] == 10

    def test_callback_with_non_json_body(self, test_client):
        response = test_client.post("/api/payments/mpesa/callback", content=b"not json")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"ok": True}

    def test_status_requires_checkout_id(self, test_client):
        response = test_client.get("/api/payments/mpesa/status")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"ok": False, "error": "checkoutId required"}

    def test_status_unknown_checkout(self, test_client):
        response = test_client.get("/api/payments/mpesa/status", params={"checkoutId": "ws_CO_x"})

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {"ok": False, "error": "not found"}
