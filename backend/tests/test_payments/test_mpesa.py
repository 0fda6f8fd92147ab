"""
Tests for the M-Pesa STK push bridge and its Daraja client.

Daraja is replaced by an ``httpx.MockTransport`` scripted through the
``daraja_stub`` fixture.
"""

import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from storefront.services.payments.mpesa.daraja_client import (
    DarajaAuthError,
    DarajaClient,
    DarajaResponseError,
    daraja_timestamp,
    stk_password,
)
from storefront.services.payments.mpesa.service import (
    MpesaConfigurationError,
    MpesaNotFoundError,
    MpesaService,
    MpesaValidationError,
    StkPushInitiationError,
    normalize_msisdn,
)

CHECKOUT_ID = "ws_CO_191220191020363925"


@pytest.fixture
def service(pending_store, daraja_client, settings):
    return MpesaService(pending_store, daraja=daraja_client, settings=settings)


def stk_callback(checkout_id=CHECKOUT_ID, result_code=0, description="The service request is processed successfully."):
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": checkout_id,
                "ResultCode": result_code,
                "ResultDesc": description,
            }
        }
    }


@pytest.mark.parametrize(
    "phone,expected",
    [
        ("0712345678", "254712345678"),
        ("0712 345 678", "254712345678"),
        ("+254712345678", "254712345678"),
        ("254712345678", "254712345678"),
        ("712345678", "254712345678"),
        ("(0712)-345-678", "254712345678"),
        ("0112345678", "254112345678"),
    ],
)
def test_normalize_msisdn(phone, expected):
    assert normalize_msisdn(phone) == expected


def test_daraja_timestamp_uses_east_africa_time():
    assert daraja_timestamp(datetime(2024, 1, 31, 22, 30, 5, tzinfo=timezone.utc)) == "20240201013005"


def test_stk_password():
    password = stk_password("174379", "passkey", "20240201013005")

    assert base64.b64decode(password).decode() == "174379passkey20240201013005"


class TestInitiateStkPush:
    @pytest.mark.asyncio
    async def test_success(self, service, daraja_stub, pending_store):
        result = await service.initiate_stk_push("0712 345 678", "99.6", account_ref="ORD-77")

        assert result["ok"] is True
        assert result["checkoutId"] == CHECKOUT_ID

        token_request = daraja_stub.requests[0]
        assert token_request.url.params["grant_type"] == "client_credentials"
        expected_basic = base64.b64encode(b"consumer-key:consumer-secret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected_basic}"

        stk_request = daraja_stub.stk_requests[0]
        assert stk_request.headers["Authorization"] == "Bearer daraja-token"
        payload = json.loads(stk_request.content)
        assert payload["Amount"] == 100
        assert payload["PartyA"] == payload["PhoneNumber"] == "254712345678"
        assert payload["BusinessShortCode"] == payload["PartyB"] == "174379"
        assert payload["TransactionType"] == "CustomerPayBillOnline"
        assert payload["AccountReference"] == "ORD-77"
        assert payload["TransactionDesc"] == "Payment"
        assert base64.b64decode(payload["Password"]).decode() == (
            f"174379test-passkey{payload['Timestamp']}"
        )

        entry = await pending_store.get(CHECKOUT_ID)
        assert entry["status"] == "initiated"
        assert "Password" not in entry["request"]
        assert entry["request"]["Amount"] == 100
        assert entry["daraja"]["ResponseCode"] == "0"

    @pytest.mark.asyncio
    async def test_default_account_reference(self, service, daraja_stub):
        await service.initiate_stk_push("0712345678", 10)

        payload = json.loads(daraja_stub.stk_requests[0].content)
        assert payload["AccountReference"].startswith("ORD-")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phone,amount", [(None, 10), ("", 10), ("0712345678", None)])
    async def test_phone_and_amount_required(self, service, daraja_stub, phone, amount):
        with pytest.raises(MpesaValidationError, match="phone & amount required"):
            await service.initiate_stk_push(phone, amount)

        assert daraja_stub.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["ten", "nan", "inf"])
    async def test_invalid_amount(self, service, amount):
        with pytest.raises(MpesaValidationError, match="invalid amount"):
            await service.initiate_stk_push("0712345678", amount)

    @pytest.mark.asyncio
    async def test_missing_configuration(self, pending_store, daraja_client, daraja_stub, settings):
        service = MpesaService(
            pending_store,
            daraja=daraja_client,
            settings=settings.model_copy(update={"daraja_passkey": ""}),
        )

        with pytest.raises(MpesaConfigurationError, match="Daraja env vars missing"):
            await service.initiate_stk_push("0712345678", 10)

        assert daraja_stub.requests == []

    @pytest.mark.asyncio
    async def test_no_checkout_id(self, service, daraja_stub, pending_store):
        daraja_stub.stk_response = httpx.Response(
            400,
            json={
                "requestId": "1234-5678",
                "errorCode": "400.002.02",
                "errorMessage": "Bad Request - Invalid Amount",
            },
        )

        with pytest.raises(StkPushInitiationError) as exc_info:
            await service.initiate_stk_push("0712345678", 10)

        assert exc_info.value.message == "M-Pesa initiation failed (no checkoutId)"
        assert exc_info.value.daraja_message == "Bad Request - Invalid Amount"
        assert exc_info.value.daraja["errorCode"] == "400.002.02"

    @pytest.mark.asyncio
    async def test_non_json_response(self, service, daraja_stub):
        daraja_stub.stk_response = httpx.Response(503, text="<html>Service Unavailable</html>")

        with pytest.raises(DarajaResponseError) as exc_info:
            await service.initiate_stk_push("0712345678", 10)

        assert exc_info.value.raw == "<html>Service Unavailable</html>"

    @pytest.mark.asyncio
    async def test_token_rejected(self, service, daraja_stub):
        daraja_stub.token_response = httpx.Response(401, text="Unauthorized")

        with pytest.raises(DarajaAuthError, match="Daraja token error"):
            await service.initiate_stk_push("0712345678", 10)

        assert daraja_stub.stk_requests == []


@pytest.mark.asyncio
async def test_missing_consumer_keys(settings, daraja_stub):
    client = DarajaClient(
        settings.model_copy(update={"daraja_consumer_secret": ""}),
        transport=httpx.MockTransport(daraja_stub),
    )

    with pytest.raises(DarajaAuthError, match="Missing Daraja keys"):
        await client.get_access_token()

    assert daraja_stub.requests == []


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_success_callback(self, service, pending_store):
        await pending_store.put(CHECKOUT_ID, {"status": "initiated", "createdAt": "t0"})

        assert await service.handle_callback(stk_callback()) == {"ok": True}

        entry = await pending_store.get(CHECKOUT_ID)
        assert entry["status"] == "success"
        assert entry["resultCode"] == 0
        assert entry["resultDesc"] == "The service request is processed successfully."
        assert entry["createdAt"] == "t0"
        assert entry["raw"]["CheckoutRequestID"] == CHECKOUT_ID

    @pytest.mark.asyncio
    async def test_string_result_code_counts_as_success(self, service, pending_store):
        await service.handle_callback(stk_callback(result_code="0"))

        assert (await pending_store.get(CHECKOUT_ID))["status"] == "success"

    @pytest.mark.asyncio
    async def test_cancelled_by_user(self, service, pending_store):
        await service.handle_callback(stk_callback(result_code=1032, description="Request cancelled by user"))

        entry = await pending_store.get(CHECKOUT_ID)
        assert entry["status"] == "failed"
        assert entry["resultCode"] == 1032

    @pytest.mark.asyncio
    async def test_bare_callback_object(self, service, pending_store):
        bare = stk_callback()["Body"]["stkCallback"]

        await service.handle_callback(bare)

        assert (await pending_store.get(CHECKOUT_ID))["status"] == "success"

    @pytest.mark.asyncio
    async def test_callback_without_checkout_id(self, service, pending_store):
        assert await service.handle_callback({"Body": {"stkCallback": {"ResultCode": 1}}}) == {"ok": True}

        keys = list(pending_store._entries)
        assert len(keys) == 1
        assert keys[0].startswith("cb_")
        assert pending_store._entries[keys[0]]["status"] == "callback_no_id"

    @pytest.mark.asyncio
    async def test_garbage_callback_acknowledged(self, service):
        assert await service.handle_callback(["not", "an", "object"]) == {"ok": True}


class TestStatus:
    @pytest.mark.asyncio
    async def test_known_checkout(self, service, pending_store):
        await pending_store.put(CHECKOUT_ID, {"status": "initiated"})

        result = await service.get_status(CHECKOUT_ID)

        assert result == {"ok": True, "status": "initiated", "info": {"status": "initiated"}}

    @pytest.mark.asyncio
    async def test_entry_without_status_reads_pending(self, service, pending_store):
        await pending_store.put(CHECKOUT_ID, {"createdAt": "t0"})

        assert (await service.get_status(CHECKOUT_ID))["status"] == "pending"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("checkout_id", [None, "", "null", "undefined"])
    async def test_checkout_id_required(self, service, checkout_id):
        with pytest.raises(MpesaValidationError, match="checkoutId required"):
            await service.get_status(checkout_id)

    @pytest.mark.asyncio
    async def test_unknown_checkout(self, service):
        with pytest.raises(MpesaNotFoundError):
            await service.get_status("ws_CO_unknown")
