"""Read-side and maintenance operations over a customer's billing account."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .exceptions import ExternalServiceError, NotFoundError, ValidationError
from .gateways import InvoicingGateway, PaymentGateway, call_gateway
from .ledger import LedgerAccess, LedgerStore
from .models import (
    BillingHistoryPage,
    BillingRecord,
    BillingRecordDetail,
    BillingStatus,
    BillingSummary,
    CurrencyTotals,
    Customer,
    Receipt,
    ReceiptDownload,
    ReceiptPage,
)
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy
from .statuses import map_mandate_status

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 50
RECENT_RECORDS = 5


class BillingAccountService(LedgerAccess):
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

    def _require_customer(self, customer_id: str) -> Customer:
        customer = self._ledger(self._store.get_customer, customer_id)
        if customer is None:
            raise NotFoundError("Customer not found", detail={"customer_id": customer_id})
        return customer

    def _require_record(self, customer_id: str, record_id: str) -> BillingRecord:
        record = self._ledger(self._store.get_billing_record, record_id)
        if record is None or record.customer_id != customer_id:
            raise NotFoundError("Billing record not found", detail={"billing_record_id": record_id})
        return record

    def get_billing_history(
        self,
        customer_id: str,
        page: int = 1,
        limit: int = 10,
        status: Optional[BillingStatus] = None,
    ) -> BillingHistoryPage:
        """Return one page of records, newest first."""

        _check_paging(page, limit)
        self._require_customer(customer_id)
        records = self._ledger(
            self._store.list_billing_records,
            customer_id,
            status=status,
            limit=limit,
            offset=(page - 1) * limit,
        )
        total = self._ledger(self._store.count_billing_records, customer_id, status=status)
        return BillingHistoryPage(records=list(records), page=page, limit=limit, total=total)

    def get_billing_record(self, customer_id: str, record_id: str) -> BillingRecordDetail:
        record = self._require_record(customer_id, record_id)
        receipts = self._ledger(self._store.list_receipts, customer_id, record_id=record_id)
        return BillingRecordDetail(record=record, receipts=list(receipts))

    def list_record_receipts(self, customer_id: str, record_id: str) -> List[Receipt]:
        self._require_record(customer_id, record_id)
        return list(self._ledger(self._store.list_receipts, customer_id, record_id=record_id))

    def list_receipts(self, customer_id: str, page: int = 1, limit: int = 10) -> ReceiptPage:
        """Return one page of the customer's receipts, newest first."""

        _check_paging(page, limit)
        self._require_customer(customer_id)
        receipts = self._ledger(
            self._store.list_receipts,
            customer_id,
            limit=limit,
            offset=(page - 1) * limit,
        )
        total = self._ledger(self._store.count_receipts, customer_id)
        return ReceiptPage(receipts=list(receipts), page=page, limit=limit, total=total)

    def get_billing_summary(self, customer_id: str) -> BillingSummary:
        self._require_customer(customer_id)
        records = list(self._ledger(self._store.list_billing_records, customer_id))

        breakdown: Dict[BillingStatus, int] = {status: 0 for status in BillingStatus}
        by_currency: Dict[str, Dict[BillingStatus, int]] = {}
        counts: Dict[str, int] = {}
        for record in records:
            breakdown[record.status] += 1
            amounts = by_currency.setdefault(record.currency, {status: 0 for status in BillingStatus})
            amounts[record.status] += record.amount
            counts[record.currency] = counts.get(record.currency, 0) + 1

        totals = [
            CurrencyTotals(
                currency=currency,
                record_count=counts[currency],
                total_amount=sum(amounts.values()),
                paid_amount=amounts[BillingStatus.PAID],
                pending_amount=amounts[BillingStatus.PENDING],
                failed_amount=amounts[BillingStatus.FAILED],
            )
            for currency, amounts in sorted(by_currency.items())
        ]
        return BillingSummary(
            customer_id=customer_id,
            total_records=len(records),
            totals=totals,
            status_breakdown=breakdown,
            recent_records=records[:RECENT_RECORDS],
        )

    def download_receipt(self, customer_id: str, receipt_id: str) -> ReceiptDownload:
        receipt = self._ledger(self._store.get_receipt, receipt_id)
        if receipt is None or receipt.customer_id != customer_id:
            raise NotFoundError("Receipt not found", detail={"receipt_id": receipt_id})

        marked = self._ledger(self._store.mark_receipt_downloaded, receipt_id, self._clock()) or receipt
        logger.info(
            "Receipt downloaded",
            extra={"customer_id": customer_id, "receipt_id": receipt_id},
        )
        return ReceiptDownload(
            receipt_id=marked.receipt_id,
            download_url=marked.file_url,
            file_name=marked.file_name,
            file_size=marked.file_size,
            mime_type=marked.mime_type,
        )

    def refresh_receipt_documents(self, customer_id: str) -> int:
        """Backfill missing document URLs; returns how many were filled."""

        self._require_customer(customer_id)
        filled = 0
        for receipt in self._ledger(self._store.list_receipts_missing_document, customer_id):
            if not receipt.external_invoice_id:
                continue
            try:
                url = call_gateway(
                    "invoicing",
                    "get_invoice_document_url",
                    self._invoicing.get_invoice_document_url,
                    receipt.external_invoice_id,
                )
            except ExternalServiceError:
                logger.warning(
                    "Could not fetch receipt document",
                    extra={"receipt_id": receipt.receipt_id, "external_invoice_id": receipt.external_invoice_id},
                    exc_info=True,
                )
                continue
            if not url:
                continue
            self._ledger(self._store.set_receipt_document, receipt.receipt_id, url)
            filled += 1

        logger.info("Receipt documents refreshed", extra={"customer_id": customer_id, "receipts_filled": filled})
        return filled

    def refresh_mandate_status(self, customer_id: str) -> Customer:
        customer = self._require_customer(customer_id)
        if not customer.mandate_id:
            return customer

        mandate = call_gateway("payments", "get_mandate", self._payments.get_mandate, customer.mandate_id)
        status = map_mandate_status(mandate.status)
        if status is None:
            logger.warning(
                "Unrecognized mandate status",
                extra={"customer_id": customer_id, "mandate_id": customer.mandate_id, "external_status": mandate.status},
            )
            return customer
        if status == customer.mandate_status:
            return customer

        updated = self._ledger(self._store.update_mandate_status, customer_id, status)
        logger.info(
            "Mandate status refreshed",
            extra={
                "customer_id": customer_id,
                "previous_status": customer.mandate_status.value,
                "mandate_status": status.value,
            },
        )
        return updated or customer.model_copy(update={"mandate_status": status})

    def check_ledger(self) -> None:
        """Raise when the ledger store cannot be reached."""

        self._ledger(self._store.ping)


def _check_paging(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if not 1 <= limit <= MAX_HISTORY_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")


__all__ = ["BillingAccountService", "MAX_HISTORY_LIMIT"]
