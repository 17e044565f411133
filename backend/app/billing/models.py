"""Domain models for the billing reconciliation core."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _page_count(total: int, limit: int) -> int:
    return (total + limit - 1) // limit if limit else 0


class MandateStatus(str, Enum):
    """Lifecycle of a customer's standing payment authorization."""

    NONE = "none"
    PENDING_SUBMISSION = "pending_submission"
    SUBMITTED = "submitted"
    ACTIVE = "active"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingStatus(str, Enum):
    """Status of a local billing record."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not BillingStatus.PENDING


class Customer(BaseModel):
    """Billing-relevant view of a registered customer."""

    customer_id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    company_name: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None
    invoicing_party_id: Optional[str] = None
    mandate_id: Optional[str] = None
    mandate_status: MandateStatus = MandateStatus.NONE
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.company_name or self.email

    @property
    def has_active_mandate(self) -> bool:
        return bool(self.mandate_id) and self.mandate_status == MandateStatus.ACTIVE


class BillingRecord(BaseModel):
    """One charge cycle held in the ledger."""

    record_id: str
    customer_id: str
    external_payment_id: Optional[str] = None
    external_invoice_id: Optional[str] = None
    amount: int = Field(ge=0, description="Amount in the minor currency unit")
    currency: str = Field(min_length=3, max_length=3)
    status: BillingStatus = BillingStatus.PENDING
    description: str = ""
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class Receipt(BaseModel):
    """Document reference created alongside a billing record."""

    receipt_id: str
    record_id: str
    customer_id: str
    external_invoice_id: Optional[str] = None
    external_payment_id: Optional[str] = None
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = "application/pdf"
    is_downloaded: bool = False
    downloaded_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class InvoicingPartyProfile(BaseModel):
    """Customer details sent when creating a remote invoicing party."""

    name: str
    email: str
    phone: Optional[str] = None
    company_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_customer(cls, customer: Customer) -> "InvoicingPartyProfile":
        return cls(
            name=customer.display_name,
            email=customer.email,
            phone=customer.phone,
            company_name=customer.company_name,
            address=customer.address_line1,
            city=customer.city,
            state=customer.state,
            postcode=customer.postcode,
            country=customer.country,
        )


class InvoiceLineItem(BaseModel):
    """Single invoice line; ``unit_amount`` is in the minor currency unit."""

    name: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    unit_amount: int = Field(ge=0, alias="unitAmount")
    tax_percentage: float = Field(default=0.0, ge=0, alias="taxPercentage")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ExternalInvoice(BaseModel):
    """Invoice as reported by the invoicing service."""

    invoice_id: str
    party_id: Optional[str] = None
    invoice_number: Optional[str] = None
    reference: Optional[str] = None
    status: str
    total: int = Field(ge=0)
    currency: str = "GBP"
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class ExternalPayment(BaseModel):
    """Payment collection request as reported by the payment service."""

    payment_id: str
    mandate_id: Optional[str] = None
    status: str
    amount: int = Field(ge=0)
    currency: str = "GBP"
    description: Optional[str] = None
    reference: Optional[str] = None
    charge_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class ExternalMandate(BaseModel):
    """Mandate as reported by the payment service."""

    mandate_id: str
    status: str
    scheme: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PaymentEvent(BaseModel):
    """Single inbound event from the payment service."""

    event_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("id", "eventId", "event_id")
    )
    resource_type: str = Field(validation_alias=AliasChoices("resourceType", "resource_type"))
    resource_id: str = Field(validation_alias=AliasChoices("resourceId", "resource_id"))
    action: str
    created_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("createdAt", "created_at")
    )

    model_config = ConfigDict(frozen=True)

    @field_validator("resource_type", "action")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def is_payment(self) -> bool:
        return self.resource_type in {"payment", "payments"}


class BillingCycle(BaseModel):
    """Everything produced by one successful billing cycle."""

    billing_record: BillingRecord
    receipt: Receipt
    external_invoice: ExternalInvoice
    external_payment: Optional[ExternalPayment] = None

    model_config = ConfigDict(frozen=True)


class WebhookResult(BaseModel):
    """Outcome of a webhook batch; per-event detail is only logged."""

    events_processed: int = 0
    records_updated: int = 0
    events_failed: int = 0

    model_config = ConfigDict(frozen=True)


class SyncResult(BaseModel):
    """Counts produced by one reconciliation pass for a customer."""

    customer_id: str
    invoices_synced: int = 0
    payments_synced: int = 0
    records_created: int = 0
    records_updated: int = 0
    invoice_ids: List[str] = Field(default_factory=list)
    payment_ids: List[str] = Field(default_factory=list)
    failed_sources: List[str] = Field(default_factory=list)
    synced_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class BillingHistoryPage(BaseModel):
    records: List[BillingRecord]
    page: int
    limit: int
    total: int

    model_config = ConfigDict(frozen=True)

    @property
    def total_pages(self) -> int:
        return _page_count(self.total, self.limit)


class BillingRecordDetail(BaseModel):
    """A billing record with its receipts, newest first."""

    record: BillingRecord
    receipts: List[Receipt] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class ReceiptPage(BaseModel):
    receipts: List[Receipt]
    page: int
    limit: int
    total: int

    model_config = ConfigDict(frozen=True)

    @property
    def total_pages(self) -> int:
        return _page_count(self.total, self.limit)


class CurrencyTotals(BaseModel):
    """Amounts for one currency, in its minor unit."""

    currency: str
    record_count: int = 0
    total_amount: int = 0
    paid_amount: int = 0
    pending_amount: int = 0
    failed_amount: int = 0

    model_config = ConfigDict(frozen=True)


class BillingSummary(BaseModel):
    """Aggregate view of a customer's ledger; amounts never mix currencies."""

    customer_id: str
    total_records: int = 0
    totals: List[CurrencyTotals] = Field(default_factory=list)
    status_breakdown: Dict[BillingStatus, int] = Field(
        default_factory=lambda: {status: 0 for status in BillingStatus}
    )
    recent_records: List[BillingRecord] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class ReceiptDownload(BaseModel):
    receipt_id: str
    download_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None

    model_config = ConfigDict(frozen=True)


__all__ = [
    "BillingCycle",
    "BillingHistoryPage",
    "BillingRecord",
    "BillingRecordDetail",
    "BillingStatus",
    "BillingSummary",
    "CurrencyTotals",
    "Customer",
    "ExternalInvoice",
    "ExternalMandate",
    "ExternalPayment",
    "InvoiceLineItem",
    "InvoicingPartyProfile",
    "MandateStatus",
    "PaymentEvent",
    "Receipt",
    "ReceiptDownload",
    "ReceiptPage",
    "SyncResult",
    "WebhookResult",
]
