"""
M-Pesa STK push bridge.

Initiates STK pushes through Daraja, records each initiated push in the
pending transaction store under its checkout id, applies Daraja's
asynchronous callbacks to those entries and answers status polls.

Pending transaction states: ``initiated`` -> ``success`` | ``failed``.
Callbacks that carry no checkout id are kept under a synthetic key with
status ``callback_no_id`` for later inspection.
"""

import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger
from storefront.services.payments.mpesa.daraja_client import (
    TRANSACTION_TYPE,
    DarajaClient,
    daraja_timestamp,
    stk_password,
)
from storefront.services.payments.mpesa.pending_store import PendingTransactionStore

logger = get_logger(__name__)

STATUS_INITIATED = "initiated"
STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_CALLBACK_NO_ID = "callback_no_id"

GATEWAY_MESSAGE_FIELDS = (
    "errorMessage",
    "error",
    "error_description",
    "Message",
    "ResponseDescription",
    "responseMessage",
)
MISSING_CHECKOUT_IDS = ("", "null", "undefined")

_NON_DIAL_CHARS = re.compile(r"[^0-9+]")


class MpesaServiceError(Exception):
    """Base exception for M-Pesa service errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class MpesaValidationError(MpesaServiceError):
    """Raised for malformed STK push or status requests."""


class MpesaConfigurationError(MpesaServiceError):
    """Raised when Daraja settings needed for a push are missing."""


class MpesaNotFoundError(MpesaServiceError):
    """Raised when a checkout id is unknown."""


class StkPushInitiationError(MpesaServiceError):
    """Raised when Daraja does not return a checkout id."""

    def __init__(self, message: str, daraja: dict[str, Any], daraja_message: Optional[str]):
        super().__init__(message)
        self.daraja = daraja
        self.daraja_message = daraja_message


def normalize_msisdn(phone: Any, country_code: str = "254") -> str:
    """
    Normalize a phone number to international MSISDN form.

    >>> normalize_msisdn("0712 345 678")
    '254712345678'
    >>> normalize_msisdn("+254712345678")
    '254712345678'
    >>> normalize_msisdn("712345678")
    '254712345678'
    """
    msisdn = _NON_DIAL_CHARS.sub("", str(phone))
    if msisdn.startswith("+"):
        msisdn = msisdn[1:]
    if msisdn.startswith("0") and len(msisdn) == 10:
        msisdn = f"{country_code}{msisdn[1:]}"
    if not msisdn.startswith(country_code) and len(msisdn) == 9:
        msisdn = f"{country_code}{msisdn}"
    return msisdn


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _gateway_message(response: Mapping[str, Any]) -> Optional[str]:
    for field in GATEWAY_MESSAGE_FIELDS:
        if response.get(field) is not None:
            return response[field]
    return None


class MpesaService:
    """
    M-Pesa STK push service.

    Attributes:
        store: Pending transaction store
        daraja: Daraja API client
    """

    def __init__(
        self,
        store: PendingTransactionStore,
        daraja: Optional[DarajaClient] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.daraja = daraja or DarajaClient(self.settings)

    async def initiate_stk_push(
        self,
        phone: Optional[str],
        amount: Any,
        account_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Send an STK push prompt to the customer's phone.

        Args:
            phone: Customer phone number in any common local form
            amount: Amount, rounded to whole shillings
            account_ref: Account reference shown to the customer
            description: Transaction description

        Returns:
            Dictionary with ``ok``, ``checkoutId`` and Daraja's response

        Raises:
            MpesaValidationError: If phone or amount is missing or invalid
            MpesaConfigurationError: If shortcode, passkey or callback URL is missing
            DarajaError: If Daraja cannot be reached or authenticated against
            StkPushInitiationError: If Daraja returns no checkout id
        """
        if not phone or amount is None:
            raise MpesaValidationError("phone & amount required")
        try:
            value = float(amount)
        except (TypeError, ValueError) as e:
            raise MpesaValidationError("invalid amount", amount=amount) from e
        if not math.isfinite(value):
            raise MpesaValidationError("invalid amount", amount=amount)

        settings = self.settings
        if not settings.daraja_configured:
            logger.error(
                "Daraja settings missing",
                shortcode=bool(settings.daraja_shortcode),
                passkey=bool(settings.daraja_passkey),
                callback_url=bool(settings.daraja_callback_url),
            )
            raise MpesaConfigurationError("Daraja env vars missing")

        msisdn = normalize_msisdn(phone, settings.msisdn_country_code)
        token = await self.daraja.get_access_token()
        timestamp = daraja_timestamp()

        payload = {
            "BusinessShortCode": settings.daraja_shortcode,
            "Password": stk_password(settings.daraja_shortcode, settings.daraja_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": int(round(value)),
            "PartyA": msisdn,
            "PartyB": settings.daraja_shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": settings.daraja_callback_url,
            "AccountReference": account_ref or f"ORD-{int(time.time() * 1000)}",
            "TransactionDesc": description or "Payment",
        }
        logger.info(
            "Initiating STK push",
            msisdn=msisdn,
            amount=payload["Amount"],
            account_reference=payload["AccountReference"],
        )

        response = await self.daraja.stk_push(payload, token)
        checkout_id = response.get("CheckoutRequestID") or response.get("MerchantRequestID")
        if not checkout_id:
            message = _gateway_message(response)
            logger.warning("No checkout id in Daraja response", daraja_message=message)
            raise StkPushInitiationError(
                "M-Pesa initiation failed (no checkoutId)",
                daraja=response,
                daraja_message=message,
            )

        await self.store.put(
            checkout_id,
            {
                "status": STATUS_INITIATED,
                "createdAt": _now_iso(),
                "request": {k: v for k, v in payload.items() if k != "Password"},
                "daraja": response,
            },
        )
        logger.info("STK push initiated", checkout_id=checkout_id)
        return {"ok": True, "checkoutId": checkout_id, "daraja": response}

    async def handle_callback(self, body: Any) -> dict[str, Any]:
        """
        Apply a Daraja STK callback to its pending transaction.

        Accepts the full ``{"Body": {"stkCallback": ...}}`` envelope or the
        bare callback object. Always acknowledges.
        """
        body = body if isinstance(body, Mapping) else {}
        envelope = body.get("Body")
        callback = (envelope.get("stkCallback") if isinstance(envelope, Mapping) else None) or body
        if not isinstance(callback, Mapping):
            callback = {}
        stk = callback.get("stkCallback") or callback
        if not isinstance(stk, Mapping):
            stk = {}

        checkout_id = stk.get("CheckoutRequestID") or stk.get("MerchantRequestID")
        if not checkout_id:
            synthetic_id = f"cb_{int(time.time() * 1000)}"
            logger.warning(
                "STK callback without checkout id; storing raw payload",
                synthetic_id=synthetic_id,
            )
            await self.store.put(
                synthetic_id,
                {"status": STATUS_CALLBACK_NO_ID, "updatedAt": _now_iso(), "raw": dict(callback)},
            )
            return {"ok": True}

        result_code = stk.get("ResultCode")
        entry = await self.store.merge(
            checkout_id,
            {
                "status": STATUS_SUCCESS if str(result_code) == "0" else STATUS_FAILED,
                "resultCode": result_code,
                "resultDesc": stk.get("ResultDesc")
                or stk.get("ResultDescription")
                or stk.get("resultDesc"),
                "updatedAt": _now_iso(),
                "raw": dict(stk),
            },
        )
        logger.info(
            "STK callback recorded",
            checkout_id=checkout_id,
            status=entry["status"],
            result_code=result_code,
        )
        return {"ok": True}

    async def get_status(self, checkout_id: Optional[str]) -> dict[str, Any]:
        """
        Current state of a pending transaction.

        Raises:
            MpesaValidationError: If no usable checkout id was given
            MpesaNotFoundError: If the checkout id is unknown
        """
        checkout_id = str(checkout_id or "")
        if checkout_id in MISSING_CHECKOUT_IDS:
            raise MpesaValidationError("checkoutId required")

        info = await self.store.get(checkout_id)
        if info is None:
            raise MpesaNotFoundError("not found", checkout_id=checkout_id)
        return {"ok": True, "status": info.get("status") or STATUS_PENDING, "info": info}
