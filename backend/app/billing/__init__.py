"""Billing reconciliation core: ledger, gateways, orchestration and sync."""

from .accounts import BillingAccountService
from .cache import InMemorySyncCache, SyncResultCache
from .config import BillingConfig, load_billing_config
from .exceptions import (
    AuthenticationError,
    BillingError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)
from .gateways import InvoicingGateway, PaymentGateway
from .ledger import LedgerStore
from .models import (
    BillingCycle,
    BillingHistoryPage,
    BillingRecord,
    BillingRecordDetail,
    BillingStatus,
    BillingSummary,
    CurrencyTotals,
    Customer,
    ExternalInvoice,
    ExternalMandate,
    ExternalPayment,
    InvoiceLineItem,
    InvoicingPartyProfile,
    MandateStatus,
    PaymentEvent,
    Receipt,
    ReceiptDownload,
    ReceiptPage,
    SyncResult,
    WebhookResult,
)
from .orchestrator import BillingOrchestrator
from .retry import RetryPolicy, with_retry
from .sync import ReconciliationService
from .webhooks import SIGNATURE_HEADER, WebhookEventProcessor

__all__ = [
    "AuthenticationError",
    "BillingAccountService",
    "BillingConfig",
    "BillingCycle",
    "BillingError",
    "BillingHistoryPage",
    "BillingOrchestrator",
    "BillingRecord",
    "BillingRecordDetail",
    "BillingStatus",
    "BillingSummary",
    "ConflictError",
    "CurrencyTotals",
    "Customer",
    "ExternalInvoice",
    "ExternalMandate",
    "ExternalPayment",
    "ExternalServiceError",
    "InMemorySyncCache",
    "InvoiceLineItem",
    "InvoicingGateway",
    "InvoicingPartyProfile",
    "LedgerStore",
    "MandateStatus",
    "NotFoundError",
    "PaymentEvent",
    "PaymentGateway",
    "Receipt",
    "ReceiptDownload",
    "ReceiptPage",
    "ReconciliationService",
    "RetryPolicy",
    "SIGNATURE_HEADER",
    "SyncResult",
    "SyncResultCache",
    "TransientStorageError",
    "ValidationError",
    "WebhookEventProcessor",
    "WebhookResult",
    "load_billing_config",
    "with_retry",
]
