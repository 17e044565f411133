"""Persistence contract consumed by the billing core."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional, Protocol, Sequence, Tuple, TypeVar

from .models import BillingRecord, BillingStatus, Customer, MandateStatus, PaymentEvent, Receipt
from .retry import RetryPolicy, with_retry

T = TypeVar("T")


class LedgerStore(Protocol):
    """Durable storage for customers, billing records and receipts.

    Implementations enforce uniqueness of non-null ``external_payment_id`` and
    ``external_invoice_id`` and raise :class:`ConflictError` when a write
    violates it. Connectivity failures surface as
    :class:`TransientStorageError`.
    """

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        ...

    def set_invoicing_party_id(self, customer_id: str, party_id: str) -> Optional[Customer]:
        ...

    def update_mandate_status(self, customer_id: str, status: MandateStatus) -> Optional[Customer]:
        ...

    def get_billing_record(self, record_id: str) -> Optional[BillingRecord]:
        ...

    def find_billing_record_by_payment_id(self, payment_id: str) -> Optional[BillingRecord]:
        ...

    def find_billing_record_by_invoice_id(self, invoice_id: str) -> Optional[BillingRecord]:
        ...

    def create_billing_record(self, record: BillingRecord, receipt: Receipt) -> Tuple[BillingRecord, Receipt]:
        """Insert a billing record and its receipt in one transaction."""

    def transition_billing_record_status(
        self,
        record_id: str,
        *,
        expected: BillingStatus,
        status: BillingStatus,
        paid_at: Optional[datetime],
    ) -> Optional[BillingRecord]:
        """Move a record out of ``expected``; ``None`` when it no longer holds that status."""

    def list_billing_records(
        self,
        customer_id: str,
        *,
        status: Optional[BillingStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Sequence[BillingRecord]:
        ...

    def count_billing_records(self, customer_id: str, *, status: Optional[BillingStatus] = None) -> int:
        ...

    def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        ...

    def list_receipts(
        self,
        customer_id: str,
        *,
        record_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Sequence[Receipt]:
        """Receipts owned by ``customer_id``, newest first, optionally for one record."""

    def count_receipts(self, customer_id: str) -> int:
        ...

    def list_receipts_missing_document(self, customer_id: str) -> Sequence[Receipt]:
        ...

    def set_receipt_document(self, receipt_id: str, file_url: str) -> Optional[Receipt]:
        ...

    def mark_receipt_downloaded(self, receipt_id: str, downloaded_at: datetime) -> Optional[Receipt]:
        ...

    def record_webhook_event(self, event: PaymentEvent) -> bool:
        """Remember an event id; ``False`` when it was already recorded."""

    def ping(self) -> None:
        ...


class LedgerAccess:
    """Mixin routing every ledger call through :func:`with_retry`."""

    _store: LedgerStore
    _retry_policy: RetryPolicy
    _sleep: Callable[[float], None]

    def _ledger(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return with_retry(lambda: operation(*args, **kwargs), policy=self._retry_policy, sleep=self._sleep)


__all__ = ["LedgerAccess", "LedgerStore"]
