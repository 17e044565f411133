"""Pull-based reconciliation of external invoices and payments into the ledger."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .cache import SyncResultCache
from .exceptions import ConflictError, ExternalServiceError, NotFoundError, TransientStorageError
from .gateways import InvoicingGateway, PaymentGateway, call_gateway
from .ledger import LedgerAccess, LedgerStore
from .models import (
    BillingRecord,
    BillingStatus,
    Customer,
    ExternalInvoice,
    ExternalPayment,
    Receipt,
    SyncResult,
)
from .orchestrator import RECEIPT_MIME_TYPE, invoice_file_name, new_receipt_id, new_record_id
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy
from .statuses import map_invoice_status, map_payment_status

logger = logging.getLogger(__name__)


class _Tally:
    def __init__(self) -> None:
        self.created_ids: List[str] = []
        self.updated = 0


class ReconciliationService(LedgerAccess):
    """Creates missing local records from the external invoice and payment sets.

    Creates are guarded by a lookup and by the store's uniqueness constraints,
    so concurrent passes (or a racing webhook) converge on one record per
    external id. Results are cached per customer to bound gateway traffic.
    """

    def __init__(
        self,
        store: LedgerStore,
        invoicing: InvoicingGateway,
        payments: PaymentGateway,
        cache: SyncResultCache,
        *,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._invoicing = invoicing
        self._payments = payments
        self._cache = cache
        self._retry_policy = retry_policy
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def sync_customer(self, customer_id: str) -> SyncResult:
        cached = self._cache.get(customer_id)
        if cached is not None:
            logger.debug("Returning cached sync result", extra={"customer_id": customer_id})
            return cached

        customer = self._ledger(self._store.get_customer, customer_id)
        if customer is None:
            raise NotFoundError("Customer not found", detail={"customer_id": customer_id})

        failed_sources: List[str] = []
        invoices = _Tally()
        payments = _Tally()

        try:
            self._sync_invoices(customer, invoices)
        except Exception:
            failed_sources.append("invoices")
            logger.exception("Invoice reconciliation failed", extra={"customer_id": customer_id})

        try:
            self._sync_payments(customer, payments)
        except Exception:
            failed_sources.append("payments")
            logger.exception("Payment reconciliation failed", extra={"customer_id": customer_id})

        result = SyncResult(
            customer_id=customer_id,
            invoices_synced=len(invoices.created_ids),
            payments_synced=len(payments.created_ids),
            records_created=len(invoices.created_ids) + len(payments.created_ids),
            records_updated=invoices.updated + payments.updated,
            invoice_ids=invoices.created_ids,
            payment_ids=payments.created_ids,
            failed_sources=failed_sources,
            synced_at=self._clock(),
        )
        self._cache.set(customer_id, result)
        logger.info(
            "Billing data sync completed",
            extra={
                "customer_id": customer_id,
                "records_created": result.records_created,
                "records_updated": result.records_updated,
                "failed_sources": failed_sources,
            },
        )
        return result

    def clear_sync_cache(self, customer_id: Optional[str] = None) -> None:
        if customer_id is None:
            self._cache.clear()
            logger.info("Cleared all sync cache entries")
        else:
            self._cache.invalidate(customer_id)
            logger.info("Cleared sync cache", extra={"customer_id": customer_id})

    def _resolve_party_id(self, customer: Customer) -> Optional[str]:
        if customer.invoicing_party_id:
            return customer.invoicing_party_id
        if not customer.email:
            return None
        return call_gateway("invoicing", "find_invoicing_party", self._invoicing.find_invoicing_party, customer.email)

    def _sync_invoices(self, customer: Customer, tally: _Tally) -> None:
        party_id = self._resolve_party_id(customer)
        if not party_id:
            logger.info("Customer has no invoicing party; nothing to sync", extra={"customer_id": customer.customer_id})
            return

        invoices = call_gateway("invoicing", "list_invoices", self._invoicing.list_invoices, party_id)
        for invoice in invoices:
            try:
                self._reconcile_invoice(customer, invoice, tally)
            except TransientStorageError:
                raise
            except Exception:
                logger.exception(
                    "Skipping invoice that could not be reconciled",
                    extra={"customer_id": customer.customer_id, "external_invoice_id": invoice.invoice_id},
                )

    def _reconcile_invoice(self, customer: Customer, invoice: ExternalInvoice, tally: _Tally) -> None:
        status = map_invoice_status(invoice.status)
        if status is None:
            logger.warning(
                "Skipping invoice with unrecognized status",
                extra={"external_invoice_id": invoice.invoice_id, "external_status": invoice.status},
            )
            return

        paid_at = (invoice.paid_at or self._clock()) if status == BillingStatus.PAID else None
        existing = self._ledger(self._store.find_billing_record_by_invoice_id, invoice.invoice_id)
        if existing is not None:
            if self._overwrite_status(existing, status, paid_at):
                tally.updated += 1
            return

        if self._create_from_invoice(customer, invoice, status, paid_at):
            tally.created_ids.append(invoice.invoice_id)

    def _sync_payments(self, customer: Customer, tally: _Tally) -> None:
        if not customer.mandate_id:
            return

        payments = call_gateway("payments", "list_payments", self._payments.list_payments, customer.mandate_id)
        for payment in payments:
            try:
                self._reconcile_payment(customer, payment, tally)
            except TransientStorageError:
                raise
            except Exception:
                logger.exception(
                    "Skipping payment that could not be reconciled",
                    extra={"customer_id": customer.customer_id, "external_payment_id": payment.payment_id},
                )

    def _reconcile_payment(self, customer: Customer, payment: ExternalPayment, tally: _Tally) -> None:
        status = map_payment_status(payment.status)
        if status is None:
            logger.warning(
                "Skipping payment with unrecognized status",
                extra={"external_payment_id": payment.payment_id, "external_status": payment.status},
            )
            return

        paid_at = (payment.charge_date or self._clock()) if status == BillingStatus.PAID else None
        existing = self._ledger(self._store.find_billing_record_by_payment_id, payment.payment_id)
        if existing is not None:
            if self._overwrite_status(existing, status, paid_at):
                tally.updated += 1
            return

        if self._create_from_payment(customer, payment, status, paid_at):
            tally.created_ids.append(payment.payment_id)

    def _overwrite_status(self, record: BillingRecord, status: BillingStatus, paid_at: Optional[datetime]) -> bool:
        # Only settled external states are authoritative; a pending external view
        # never rolls back a local outcome.
        if not status.is_terminal or record.status == status:
            return False
        updated = self._ledger(
            self._store.transition_billing_record_status,
            record.record_id,
            expected=record.status,
            status=status,
            paid_at=paid_at,
        )
        if updated is None:
            return False
        logger.info(
            "Reconciled billing record status",
            extra={
                "billing_record_id": record.record_id,
                "previous_status": record.status.value,
                "billing_status": status.value,
            },
        )
        return True

    def _create_from_invoice(
        self,
        customer: Customer,
        invoice: ExternalInvoice,
        status: BillingStatus,
        paid_at: Optional[datetime],
    ) -> bool:
        now = self._clock()
        record = BillingRecord(
            record_id=new_record_id(),
            customer_id=customer.customer_id,
            external_invoice_id=invoice.invoice_id,
            amount=invoice.total,
            currency=invoice.currency,
            status=status,
            description=invoice.reference or "Invoice",
            due_date=invoice.due_date,
            paid_at=paid_at,
            created_at=invoice.created_at or now,
            updated_at=now,
        )
        receipt = Receipt(
            receipt_id=new_receipt_id(),
            record_id=record.record_id,
            customer_id=customer.customer_id,
            external_invoice_id=invoice.invoice_id,
            file_name=invoice_file_name(invoice.invoice_id),
            file_url=self._document_url(invoice.invoice_id),
            mime_type=RECEIPT_MIME_TYPE,
            created_at=now,
        )
        return self._insert(record, receipt)

    def _create_from_payment(
        self,
        customer: Customer,
        payment: ExternalPayment,
        status: BillingStatus,
        paid_at: Optional[datetime],
    ) -> bool:
        now = self._clock()
        record = BillingRecord(
            record_id=new_record_id(),
            customer_id=customer.customer_id,
            external_payment_id=payment.payment_id,
            amount=payment.amount,
            currency=payment.currency,
            status=status,
            description=payment.description or payment.reference or "Payment",
            due_date=payment.charge_date,
            paid_at=paid_at,
            created_at=payment.created_at or now,
            updated_at=now,
        )
        receipt = Receipt(
            receipt_id=new_receipt_id(),
            record_id=record.record_id,
            customer_id=customer.customer_id,
            external_payment_id=payment.payment_id,
            file_name=None,
            file_url=None,
            mime_type=None,
            created_at=now,
        )
        return self._insert(record, receipt)

    def _insert(self, record: BillingRecord, receipt: Receipt) -> bool:
        try:
            self._ledger(self._store.create_billing_record, record, receipt)
        except ConflictError:
            logger.info(
                "Billing record created concurrently; skipping",
                extra={
                    "external_invoice_id": record.external_invoice_id,
                    "external_payment_id": record.external_payment_id,
                },
            )
            return False
        return True

    def _document_url(self, invoice_id: str) -> Optional[str]:
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


__all__ = ["ReconciliationService"]
