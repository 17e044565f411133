"""Application wiring for the billing services."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import lru_cache
from threading import Lock
from typing import Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

from ..billing import (
    BillingAccountService,
    BillingConfig,
    BillingOrchestrator,
    ExternalInvoice,
    ExternalMandate,
    ExternalPayment,
    InMemorySyncCache,
    InvoiceLineItem,
    InvoicingGateway,
    InvoicingPartyProfile,
    NotFoundError,
    PaymentGateway,
    ReconciliationService,
    RetryPolicy,
    WebhookEventProcessor,
    load_billing_config,
)
from ..billing.invoicing import HttpInvoicingGateway
from ..billing.payments import HttpPaymentGateway
from ..billing.repository import PostgresLedgerRepository


logger = logging.getLogger("billing")


class LocalSandboxInvoicingGateway(InvoicingGateway):
    """In-process invoicing service for local development and tests."""

    def __init__(self) -> None:
        self._parties: Dict[str, str] = {}
        self._invoices: Dict[str, ExternalInvoice] = {}
        self._lock = Lock()

    def find_invoicing_party(self, email: str) -> Optional[str]:
        with self._lock:
            return self._parties.get(email.lower())

    def create_invoicing_party(self, profile: InvoicingPartyProfile) -> str:
        with self._lock:
            party_id = self._parties.setdefault(profile.email.lower(), f"party_{uuid4().hex[:12]}")
        logger.info("Sandbox invoicing party %s for %s", party_id, profile.email)
        return party_id

    def create_invoice(
        self,
        party_id: str,
        line_items: Sequence[InvoiceLineItem],
        reference: str,
        *,
        currency: str,
        due_date: Optional[datetime] = None,
    ) -> ExternalInvoice:
        invoice = ExternalInvoice(
            invoice_id=f"inv_{uuid4().hex[:12]}",
            party_id=party_id,
            invoice_number=reference,
            reference=reference,
            status="sent",
            total=sum(item.unit_amount * item.quantity for item in line_items),
            currency=currency,
            due_date=due_date,
            created_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._invoices[invoice.invoice_id] = invoice
        return invoice

    def get_invoice(self, invoice_id: str) -> ExternalInvoice:
        with self._lock:
            invoice = self._invoices.get(invoice_id)
        if invoice is None:
            raise NotFoundError("Sandbox invoice not found", detail={"invoice_id": invoice_id})
        return invoice

    def list_invoices(self, party_id: str) -> List[ExternalInvoice]:
        with self._lock:
            return [invoice for invoice in self._invoices.values() if invoice.party_id == party_id]

    def update_invoice_status(self, invoice_id: str, status: str) -> None:
        invoice = self.get_invoice(invoice_id)
        update: Dict[str, object] = {"status": status}
        if status == "paid":
            update["paid_at"] = datetime.now(timezone.utc)
        with self._lock:
            self._invoices[invoice_id] = invoice.model_copy(update=update)

    def get_invoice_document_url(self, invoice_id: str) -> Optional[str]:
        return f"https://billing.local/invoices/{invoice_id}.pdf"


class LocalSandboxPaymentGateway(PaymentGateway):
    """In-process payment service; every mandate is treated as active."""

    def __init__(self) -> None:
        self._payments: Dict[str, ExternalPayment] = {}
        self._lock = Lock()

    def create_payment(
        self,
        mandate_id: str,
        amount: int,
        currency: str,
        reference: str,
        *,
        description: Optional[str] = None,
        charge_date: Optional[datetime] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> ExternalPayment:
        payment = ExternalPayment(
            payment_id=f"PM{uuid4().hex[:12].upper()}",
            mandate_id=mandate_id,
            status="pending_submission",
            amount=amount,
            currency=currency,
            description=description,
            reference=reference,
            charge_date=charge_date,
            created_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._payments[payment.payment_id] = payment
        return payment

    def list_payments(self, mandate_id: str) -> List[ExternalPayment]:
        with self._lock:
            return [payment for payment in self._payments.values() if payment.mandate_id == mandate_id]

    def get_mandate(self, mandate_id: str) -> ExternalMandate:
        return ExternalMandate(mandate_id=mandate_id, status="active", scheme="bacs")


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


def _retry_policy(config: BillingConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.ledger_retry_attempts,
        backoff_seconds=config.ledger_retry_backoff_seconds,
    )


@lru_cache(maxsize=1)
def get_ledger_store() -> PostgresLedgerRepository:
    return PostgresLedgerRepository()


@lru_cache(maxsize=1)
def get_invoicing_gateway() -> InvoicingGateway:
    config = get_billing_config()
    if not config.uses_live_gateways:
        logger.info("Using sandbox invoicing gateway")
        return LocalSandboxInvoicingGateway()
    return HttpInvoicingGateway(
        api_url=config.invoicing_api_url,
        token_url=config.invoicing_token_url,
        client_id=config.invoicing_client_id,
        client_secret=config.invoicing_client_secret,
        refresh_token=config.invoicing_refresh_token,
        organization_id=config.invoicing_organization_id,
        timeout=config.external_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    config = get_billing_config()
    if not config.uses_live_gateways:
        logger.info("Using sandbox payment gateway")
        return LocalSandboxPaymentGateway()
    return HttpPaymentGateway(
        api_url=config.payments_api_url,
        access_token=config.payments_access_token,
        timeout=config.external_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_sync_cache() -> InMemorySyncCache:
    return InMemorySyncCache(ttl_seconds=get_billing_config().sync_cache_ttl_seconds)


@lru_cache(maxsize=1)
def get_billing_orchestrator() -> BillingOrchestrator:
    return BillingOrchestrator(
        get_ledger_store(),
        get_invoicing_gateway(),
        get_payment_gateway(),
        retry_policy=_retry_policy(get_billing_config()),
    )


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookEventProcessor:
    config = get_billing_config()
    if not config.payments_webhook_secret:
        logger.warning("PAYMENTS_WEBHOOK_SECRET is not set; all webhook deliveries will be rejected")
    return WebhookEventProcessor(
        get_ledger_store(),
        get_invoicing_gateway(),
        webhook_secret=config.payments_webhook_secret,
        retry_policy=_retry_policy(config),
    )


@lru_cache(maxsize=1)
def get_reconciliation_service() -> ReconciliationService:
    return ReconciliationService(
        get_ledger_store(),
        get_invoicing_gateway(),
        get_payment_gateway(),
        get_sync_cache(),
        retry_policy=_retry_policy(get_billing_config()),
    )


@lru_cache(maxsize=1)
def get_billing_account_service() -> BillingAccountService:
    return BillingAccountService(
        get_ledger_store(),
        get_invoicing_gateway(),
        get_payment_gateway(),
        retry_policy=_retry_policy(get_billing_config()),
    )


__all__ = [
    "LocalSandboxInvoicingGateway",
    "LocalSandboxPaymentGateway",
    "get_billing_account_service",
    "get_billing_config",
    "get_billing_orchestrator",
    "get_invoicing_gateway",
    "get_ledger_store",
    "get_payment_gateway",
    "get_reconciliation_service",
    "get_sync_cache",
    "get_webhook_processor",
]
