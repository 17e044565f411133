"""Creates billing cycles across the invoicing service, payment service and ledger."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence
from uuid import uuid4

from .exceptions import ExternalServiceError, NotFoundError, ValidationError
from .gateways import InvoicingGateway, PaymentGateway, call_gateway
from .ledger import LedgerAccess, LedgerStore
from .models import (
    BillingCycle,
    BillingRecord,
    BillingStatus,
    Customer,
    ExternalInvoice,
    ExternalPayment,
    InvoiceLineItem,
    InvoicingPartyProfile,
    Receipt,
)
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

RECEIPT_MIME_TYPE = "application/pdf"


def new_record_id() -> str:
    return f"bill_{uuid4().hex}"


def new_receipt_id() -> str:
    return f"rcpt_{uuid4().hex}"


def invoice_file_name(invoice_id: str) -> str:
    return f"invoice-{invoice_id}.pdf"


class BillingOrchestrator(LedgerAccess):
    """Produces one consistent billing cycle per request.

    Steps run strictly in order because each depends on identifiers produced by
    the previous one: customer lookup, invoicing party, invoice, optional
    payment, then the ledger write. The call is not idempotent; callers that need
    de-duplication must key on their own request reference.
    """

    def __init__(
        self,
        store: LedgerStore,
        invoicing: InvoicingGateway,
        payments: PaymentGateway,
        *,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._invoicing = invoicing
        self._payments = payments
        self._retry_policy = retry_policy
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create_billing_cycle(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        description: str,
        due_date: Optional[datetime] = None,
        line_items: Optional[Sequence[InvoiceLineItem]] = None,
        *,
        reference: Optional[str] = None,
    ) -> BillingCycle:
        currency = self._validate(amount, currency, description)
        now = self._clock()

        customer = self._ledger(self._store.get_customer, customer_id)
        if customer is None:
            raise NotFoundError("Customer not found", detail={"customer_id": customer_id})

        log_context = {"customer_id": customer.customer_id, "billing_amount": amount, "billing_currency": currency}
        logger.info("Starting billing cycle", extra=log_context)

        party_id = self._resolve_invoicing_party(customer)
        items = list(line_items or []) or [InvoiceLineItem(name=description, quantity=1, unit_amount=amount)]
        invoice_reference = reference or f"INV-{int(now.timestamp() * 1000)}"

        try:
            invoice = call_gateway(
                "invoicing",
                "create_invoice",
                self._invoicing.create_invoice,
                party_id,
                items,
                invoice_reference,
                currency=currency,
                due_date=due_date,
            )
        except ExternalServiceError:
            logger.exception("Invoice creation failed; aborting billing cycle", extra=log_context)
            raise

        payment = self._create_payment(customer, invoice, amount, currency, description, due_date)
        document_url = self._fetch_document_url(invoice.invoice_id)

        record = BillingRecord(
            record_id=new_record_id(),
            customer_id=customer.customer_id,
            external_payment_id=payment.payment_id if payment else None,
            external_invoice_id=invoice.invoice_id,
            amount=amount,
            currency=currency,
            status=BillingStatus.PENDING,
            description=description,
            due_date=due_date,
            created_at=now,
            updated_at=now,
        )
        receipt = Receipt(
            receipt_id=new_receipt_id(),
            record_id=record.record_id,
            customer_id=customer.customer_id,
            external_invoice_id=invoice.invoice_id,
            external_payment_id=record.external_payment_id,
            file_name=invoice_file_name(invoice.invoice_id),
            file_url=document_url,
            mime_type=RECEIPT_MIME_TYPE,
            created_at=now,
        )
        try:
            stored_record, stored_receipt = self._ledger(self._store.create_billing_record, record, receipt)
        except Exception:
            logger.exception(
                "Failed to persist billing cycle after invoice creation",
                extra={
                    **log_context,
                    "external_invoice_id": invoice.invoice_id,
                    "external_payment_id": record.external_payment_id,
                },
            )
            raise

        logger.info(
            "Billing cycle created",
            extra={
                **log_context,
                "billing_record_id": stored_record.record_id,
                "external_invoice_id": invoice.invoice_id,
                "external_payment_id": stored_record.external_payment_id,
            },
        )
        return BillingCycle(
            billing_record=stored_record,
            receipt=stored_receipt,
            external_invoice=invoice,
            external_payment=payment,
        )

    def _validate(self, amount: int, currency: str, description: str) -> str:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("amount must be an integer number of minor currency units")
        if amount < 0:
            raise ValidationError("amount must be >= 0")
        normalized = (currency or "").strip().upper()
        if len(normalized) != 3 or not normalized.isalpha():
            raise ValidationError("currency must be a three-letter code")
        if not (description or "").strip():
            raise ValidationError("description must not be empty")
        return normalized

    def _resolve_invoicing_party(self, customer: Customer) -> str:
        if customer.invoicing_party_id:
            return customer.invoicing_party_id

        try:
            party_id = call_gateway(
                "invoicing", "find_invoicing_party", self._invoicing.find_invoicing_party, customer.email
            )
            if not party_id:
                logger.info("Creating invoicing party", extra={"customer_id": customer.customer_id})
                party_id = call_gateway(
                    "invoicing",
                    "create_invoicing_party",
                    self._invoicing.create_invoicing_party,
                    InvoicingPartyProfile.from_customer(customer),
                )
        except ExternalServiceError:
            logger.exception(
                "Could not resolve invoicing party; aborting billing cycle",
                extra={"customer_id": customer.customer_id},
            )
            raise

        self._ledger(self._store.set_invoicing_party_id, customer.customer_id, party_id)
        return party_id

    def _create_payment(
        self,
        customer: Customer,
        invoice: ExternalInvoice,
        amount: int,
        currency: str,
        description: str,
        due_date: Optional[datetime],
    ) -> Optional[ExternalPayment]:
        if not customer.has_active_mandate:
            logger.info(
                "No active mandate; billing cycle stays pending without a payment",
                extra={"customer_id": customer.customer_id, "mandate_status": customer.mandate_status.value},
            )
            return None

        try:
            return call_gateway(
                "payments",
                "create_payment",
                self._payments.create_payment,
                customer.mandate_id,
                amount,
                currency,
                invoice.invoice_id,
                description=description,
                charge_date=due_date,
                metadata={"invoice_id": invoice.invoice_id, "customer_id": customer.customer_id},
            )
        except ExternalServiceError:
            logger.exception(
                "Payment creation failed; continuing without a payment",
                extra={"customer_id": customer.customer_id, "external_invoice_id": invoice.invoice_id},
            )
            return None

    def _fetch_document_url(self, invoice_id: str) -> Optional[str]:
        try:
            return call_gateway(
                "invoicing",
                "get_invoice_document_url",
                self._invoicing.get_invoice_document_url,
                invoice_id,
            )
        except ExternalServiceError:
            logger.warning(
                "Invoice document not available yet",
                extra={"external_invoice_id": invoice_id},
                exc_info=True,
            )
            return None


__all__ = ["BillingOrchestrator", "invoice_file_name", "new_receipt_id", "new_record_id"]
