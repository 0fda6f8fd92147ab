"""
Stripe API client wrapper with error handling and retry logic.

This module provides the Stripe client used by the payment bridge: payment
intent creation and retrieval with exponential backoff on transient
failures, and webhook payload verification against the signing secret.
Stripe objects are returned as plain dictionaries so callers never depend
on the SDK's object model.
"""

import json
import time
from typing import Any, Callable, Optional

import stripe
from stripe import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    CardError,
    IdempotencyError,
    InvalidRequestError,
    RateLimitError,
    SignatureVerificationError,
    StripeError,
)

from storefront.core.config import get_settings
from storefront.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_WEBHOOK_TOLERANCE = 300


class StripeClientError(Exception):
    """Base exception for Stripe client errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        stripe_error: Optional[StripeError] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.stripe_error = stripe_error
        self.context = context


class StripePaymentError(StripeClientError):
    """Exception for payment processing errors."""


class StripeAuthenticationError(StripeClientError):
    """Exception for authentication errors."""


class StripeRateLimitError(StripeClientError):
    """Exception for rate limit errors."""


class StripeConnectionError(StripeClientError):
    """Exception for connection errors."""


class StripeSignatureError(StripeClientError):
    """Exception for webhook payloads that fail verification."""


def stripe_to_dict(obj: Any) -> Any:
    """Convert a Stripe SDK object into plain dictionaries and lists."""
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    for name in ("to_dict_recursive", "to_dict"):
        converter = getattr(obj, name, None)
        if callable(converter):
            obj = converter()
            break
    if isinstance(obj, dict):
        return {key: stripe_to_dict(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [stripe_to_dict(value) for value in obj]
    return obj


class StripeClient:
    """
    Stripe API client with error handling and retry logic.

    Connection failures, rate limiting and generic API errors are retried
    with exponential backoff; every other Stripe error is translated into
    the StripeClientError family immediately.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 32.0,
        backoff_multiplier: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize Stripe client with configuration.

        Args:
            api_key: Stripe secret API key (defaults to settings)
            webhook_secret: Stripe webhook signing secret (defaults to settings)
            max_retries: Maximum number of retry attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds
            backoff_multiplier: Backoff multiplier for exponential backoff
            sleep: Blocking sleep used between retries
        """
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        )
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self._sleep = sleep

        stripe.max_network_retries = 0

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _calculate_backoff(self, attempt: int) -> float:
        """
        Calculate exponential backoff delay.

        Args:
            attempt: Current retry attempt number (0-indexed)

        Returns:
            Backoff delay in seconds
        """
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    def _execute_with_retry(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Execute Stripe API call with exponential backoff retry logic.

        Args:
            operation: Operation name for logging
            func: Stripe API function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result from Stripe API call

        Raises:
            StripeClientError: If operation fails after all retries
        """
        last_error: Optional[StripeError] = None

        for attempt in range(self.max_retries + 1):
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(
                        f"Stripe operation succeeded after retry: {operation}",
                        attempt=attempt,
                    )
                return result

            except AuthenticationError as e:
                logger.error(f"Stripe authentication error: {operation}", error=str(e))
                raise StripeAuthenticationError(
                    f"Authentication failed: {e.user_message or str(e)}",
                    code=e.code,
                    stripe_error=e,
                ) from e

            except CardError as e:
                logger.warning(
                    f"Stripe card error: {operation}",
                    error=str(e),
                    code=e.code,
                )
                raise StripePaymentError(
                    f"Card error: {e.user_message or str(e)}",
                    code=e.code,
                    stripe_error=e,
                ) from e

            except (InvalidRequestError, IdempotencyError) as e:
                logger.error(
                    f"Stripe rejected request: {operation}",
                    error=str(e),
                    code=e.code,
                )
                raise StripeClientError(
                    f"Invalid request: {e.user_message or str(e)}",
                    code=e.code,
                    stripe_error=e,
                ) from e

            except (RateLimitError, APIConnectionError, APIError) as e:
                last_error = e
                if attempt >= self.max_retries:
                    break
                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    f"Transient Stripe error, retrying: {operation}",
                    error_type=type(e).__name__,
                    attempt=attempt,
                    backoff_seconds=backoff,
                )
                self._sleep(backoff)

            except StripeError as e:
                logger.error(
                    f"Unexpected Stripe error: {operation}",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise StripeClientError(
                    f"Stripe error: {e.user_message or str(e)}",
                    code=getattr(e, "code", None),
                    stripe_error=e,
                ) from e

        logger.error(
            f"Stripe operation failed after all retries: {operation}",
            max_retries=self.max_retries,
            last_error=str(last_error),
        )
        if isinstance(last_error, RateLimitError):
            raise StripeRateLimitError(
                f"Rate limit exceeded: {last_error.user_message or str(last_error)}",
                code=last_error.code,
                stripe_error=last_error,
            )
        if isinstance(last_error, APIConnectionError):
            raise StripeConnectionError(
                f"Connection error: {last_error.user_message or str(last_error)}",
                stripe_error=last_error,
            )
        raise StripeClientError(
            f"Operation failed after {self.max_retries} retries",
            stripe_error=last_error,
        )

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Create a Stripe payment intent with automatic payment methods.

        Args:
            amount: Payment amount in cents
            currency: Three-letter ISO currency code
            metadata: Metadata attached to the intent; values are stringified
            idempotency_key: Stripe request idempotency key

        Returns:
            The payment intent as a dictionary

        Raises:
            StripeClientError: If payment intent creation fails
        """
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "api_key": self.api_key,
        }
        if metadata:
            params["metadata"] = {
                key: str(value) for key, value in metadata.items() if value is not None
            }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = stripe_to_dict(
            self._execute_with_retry(
                "create_payment_intent",
                stripe.PaymentIntent.create,
                **params,
            )
        )

        logger.info(
            "Payment intent created",
            payment_intent_id=intent.get("id"),
            amount=amount,
            currency=currency,
        )
        return intent

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        """
        Retrieve a payment intent by ID.

        Raises:
            StripeClientError: If retrieval fails
        """
        intent = self._execute_with_retry(
            "retrieve_payment_intent",
            stripe.PaymentIntent.retrieve,
            payment_intent_id,
            api_key=self.api_key,
        )
        return stripe_to_dict(intent)

    def construct_webhook_event(
        self,
        payload: bytes,
        signature: str,
        tolerance: int = DEFAULT_WEBHOOK_TOLERANCE,
    ) -> dict[str, Any]:
        """
        Verify a webhook payload against the signing secret and parse it.

        Args:
            payload: Raw webhook payload bytes
            signature: ``Stripe-Signature`` header value
            tolerance: Maximum age of the signature in seconds

        Returns:
            The event as a dictionary

        Raises:
            StripeSignatureError: If the payload or signature is invalid
        """
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text, signature, self.webhook_secret, tolerance
            )
            event = json.loads(text)
        except SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed", error=str(e))
            raise StripeSignatureError(
                str(e) or "Webhook signature verification failed",
                code="INVALID_SIGNATURE",
                stripe_error=e,
            ) from e
        except ValueError as e:
            logger.warning("Invalid webhook payload", error=str(e))
            raise StripeSignatureError(
                "Invalid webhook payload", code="INVALID_PAYLOAD"
            ) from e

        if not isinstance(event, dict):
            raise StripeSignatureError("Invalid webhook payload", code="INVALID_PAYLOAD")

        logger.info(
            "Webhook event verified",
            event_id=event.get("id"),
            event_type=event.get("type"),
        )
        return event


def get_stripe_client() -> StripeClient:
    """Get a Stripe client configured from settings."""
    return StripeClient()
