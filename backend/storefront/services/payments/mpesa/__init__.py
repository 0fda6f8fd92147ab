"""M-Pesa (Daraja) STK push integration."""

from storefront.services.payments.mpesa.daraja_client import (
    DarajaAuthError,
    DarajaClient,
    DarajaError,
    DarajaResponseError,
)
from storefront.services.payments.mpesa.pending_store import (
    InMemoryPendingStore,
    PendingTransactionStore,
    RedisPendingStore,
    get_pending_store,
)
from storefront.services.payments.mpesa.service import (
    MpesaConfigurationError,
    MpesaNotFoundError,
    MpesaService,
    MpesaServiceError,
    MpesaValidationError,
    StkPushInitiationError,
    normalize_msisdn,
)

__all__ = [
    "DarajaAuthError",
    "DarajaClient",
    "DarajaError",
    "DarajaResponseError",
    "InMemoryPendingStore",
    "MpesaConfigurationError",
    "MpesaNotFoundError",
    "MpesaService",
    "MpesaServiceError",
    "MpesaValidationError",
    "PendingTransactionStore",
    "RedisPendingStore",
    "StkPushInitiationError",
    "get_pending_store",
    "normalize_msisdn",
]
