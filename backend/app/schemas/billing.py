"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    BillingCycle,
    BillingHistoryPage,
    BillingRecord,
    BillingRecordDetail,
    BillingStatus,
    BillingSummary,
    CurrencyTotals,
    Customer,
    ExternalInvoice,
    ExternalPayment,
    InvoiceLineItem,
    MandateStatus,
    Receipt,
    ReceiptDownload,
    ReceiptPage,
    SyncResult,
    WebhookResult,
)


class CreateBillingCycleRequest(BaseModel):
    customer_id: str = Field(alias="customerId", min_length=1)
    amount: int = Field(ge=0, strict=True)
    currency: str = Field(min_length=3, max_length=3)
    description: str = Field(min_length=1)
    due_date: Optional[datetime] = Field(alias="dueDate", default=None)
    line_items: List[InvoiceLineItem] = Field(alias="lineItems", default_factory=list)
    reference: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class BillingRecordResponse(BaseModel):
    record_id: str = Field(alias="recordId")
    customer_id: str = Field(alias="customerId")
    external_payment_id: Optional[str] = Field(alias="externalPaymentId", default=None)
    external_invoice_id: Optional[str] = Field(alias="externalInvoiceId", default=None)
    amount: int
    currency: str
    status: BillingStatus
    description: str = ""
    due_date: Optional[datetime] = Field(alias="dueDate", default=None)
    paid_at: Optional[datetime] = Field(alias="paidAt", default=None)
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_record(cls, record: BillingRecord) -> "BillingRecordResponse":
        return cls(**record.model_dump())


class ReceiptResponse(BaseModel):
    receipt_id: str = Field(alias="receiptId")
    record_id: str = Field(alias="recordId")
    customer_id: str = Field(alias="customerId")
    external_invoice_id: Optional[str] = Field(alias="externalInvoiceId", default=None)
    external_payment_id: Optional[str] = Field(alias="externalPaymentId", default=None)
    file_name: Optional[str] = Field(alias="fileName", default=None)
    file_url: Optional[str] = Field(alias="fileUrl", default=None)
    file_size: Optional[int] = Field(alias="fileSize", default=None)
    mime_type: Optional[str] = Field(alias="mimeType", default=None)
    is_downloaded: bool = Field(alias="isDownloaded", default=False)
    downloaded_at: Optional[datetime] = Field(alias="downloadedAt", default=None)
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_receipt(cls, receipt: Receipt) -> "ReceiptResponse":
        return cls(**receipt.model_dump())


class InvoiceResponse(BaseModel):
    invoice_id: str = Field(alias="invoiceId")
    party_id: Optional[str] = Field(alias="partyId", default=None)
    invoice_number: Optional[str] = Field(alias="invoiceNumber", default=None)
    reference: Optional[str] = None
    status: str
    total: int
    currency: str
    due_date: Optional[datetime] = Field(alias="dueDate", default=None)
    paid_at: Optional[datetime] = Field(alias="paidAt", default=None)
    created_at: Optional[datetime] = Field(alias="createdAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_invoice(cls, invoice: ExternalInvoice) -> "InvoiceResponse":
        return cls(**invoice.model_dump())


class PaymentResponse(BaseModel):
    payment_id: str = Field(alias="paymentId")
    mandate_id: Optional[str] = Field(alias="mandateId", default=None)
    status: str
    amount: int
    currency: str
    description: Optional[str] = None
    reference: Optional[str] = None
    charge_date: Optional[datetime] = Field(alias="chargeDate", default=None)
    created_at: Optional[datetime] = Field(alias="createdAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_payment(cls, payment: ExternalPayment) -> "PaymentResponse":
        return cls(**payment.model_dump())


class BillingCycleResponse(BaseModel):
    billing_record: BillingRecordResponse = Field(alias="billingRecord")
    receipt: ReceiptResponse
    invoice: InvoiceResponse
    payment: Optional[PaymentResponse] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_cycle(cls, cycle: BillingCycle) -> "BillingCycleResponse":
        payment = cycle.external_payment
        return cls(
            billing_record=BillingRecordResponse.from_record(cycle.billing_record),
            receipt=ReceiptResponse.from_receipt(cycle.receipt),
            invoice=InvoiceResponse.from_invoice(cycle.external_invoice),
            payment=PaymentResponse.from_payment(payment) if payment is not None else None,
        )


class WebhookAcknowledgement(BaseModel):
    received: bool = True
    events_processed: int = Field(alias="eventsProcessed")
    records_updated: int = Field(alias="recordsUpdated")
    events_failed: int = Field(alias="eventsFailed")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: WebhookResult) -> "WebhookAcknowledgement":
        return cls(
            events_processed=result.events_processed,
            records_updated=result.records_updated,
            events_failed=result.events_failed,
        )


class SyncRequest(BaseModel):
    customer_id: str = Field(alias="customerId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class SyncResponse(BaseModel):
    customer_id: str = Field(alias="customerId")
    invoices_synced: int = Field(alias="invoicesSynced")
    payments_synced: int = Field(alias="paymentsSynced")
    records_created: int = Field(alias="recordsCreated")
    records_updated: int = Field(alias="recordsUpdated")
    invoice_ids: List[str] = Field(alias="invoiceIds")
    payment_ids: List[str] = Field(alias="paymentIds")
    failed_sources: List[str] = Field(alias="failedSources")
    synced_at: datetime = Field(alias="syncedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncResponse":
        return cls(**result.model_dump())


class BillingHistoryResponse(BaseModel):
    records: List[BillingRecordResponse]
    page: int
    limit: int
    total: int
    total_pages: int = Field(alias="totalPages")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_page(cls, page: BillingHistoryPage) -> "BillingHistoryResponse":
        return cls(
            records=[BillingRecordResponse.from_record(record) for record in page.records],
            page=page.page,
            limit=page.limit,
            total=page.total,
            total_pages=page.total_pages,
        )


class BillingRecordDetailResponse(BaseModel):
    billing_record: BillingRecordResponse = Field(alias="billingRecord")
    receipts: List[ReceiptResponse]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_detail(cls, detail: BillingRecordDetail) -> "BillingRecordDetailResponse":
        return cls(
            billing_record=BillingRecordResponse.from_record(detail.record),
            receipts=[ReceiptResponse.from_receipt(receipt) for receipt in detail.receipts],
        )


class ReceiptListResponse(BaseModel):
    receipts: List[ReceiptResponse]
    page: int
    limit: int
    total: int
    total_pages: int = Field(alias="totalPages")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_page(cls, page: ReceiptPage) -> "ReceiptListResponse":
        return cls(
            receipts=[ReceiptResponse.from_receipt(receipt) for receipt in page.receipts],
            page=page.page,
            limit=page.limit,
            total=page.total,
            total_pages=page.total_pages,
        )


class CurrencyTotalsResponse(BaseModel):
    currency: str
    record_count: int = Field(alias="recordCount")
    total_amount: int = Field(alias="totalAmount")
    paid_amount: int = Field(alias="paidAmount")
    pending_amount: int = Field(alias="pendingAmount")
    failed_amount: int = Field(alias="failedAmount")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_totals(cls, totals: CurrencyTotals) -> "CurrencyTotalsResponse":
        return cls(**totals.model_dump())


class BillingSummaryResponse(BaseModel):
    customer_id: str = Field(alias="customerId")
    total_records: int = Field(alias="totalRecords")
    totals: List[CurrencyTotalsResponse]
    status_breakdown: Dict[str, int] = Field(alias="statusBreakdown")
    recent_records: List[BillingRecordResponse] = Field(alias="recentRecords")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: BillingSummary) -> "BillingSummaryResponse":
        breakdown = {
            (status.value if isinstance(status, BillingStatus) else str(status)): count
            for status, count in summary.status_breakdown.items()
        }
        return cls(
            customer_id=summary.customer_id,
            total_records=summary.total_records,
            totals=[CurrencyTotalsResponse.from_totals(totals) for totals in summary.totals],
            status_breakdown=breakdown,
            recent_records=[BillingRecordResponse.from_record(record) for record in summary.recent_records],
        )


class ReceiptDownloadResponse(BaseModel):
    receipt_id: str = Field(alias="receiptId")
    download_url: Optional[str] = Field(alias="downloadUrl", default=None)
    file_name: Optional[str] = Field(alias="fileName", default=None)
    file_size: Optional[int] = Field(alias="fileSize", default=None)
    mime_type: Optional[str] = Field(alias="mimeType", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_download(cls, download: ReceiptDownload) -> "ReceiptDownloadResponse":
        return cls(**download.model_dump())


class ReceiptRefreshResponse(BaseModel):
    customer_id: str = Field(alias="customerId")
    receipts_updated: int = Field(alias="receiptsUpdated")

    model_config = ConfigDict(populate_by_name=True)


class MandateStatusResponse(BaseModel):
    customer_id: str = Field(alias="customerId")
    mandate_id: Optional[str] = Field(alias="mandateId", default=None)
    mandate_status: MandateStatus = Field(alias="mandateStatus")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_customer(cls, customer: Customer) -> "MandateStatusResponse":
        return cls(
            customer_id=customer.customer_id,
            mandate_id=customer.mandate_id,
            mandate_status=customer.mandate_status,
        )


class HealthResponse(BaseModel):
    status: str
    service: str
    checked_at: datetime = Field(alias="checkedAt")

    model_config = ConfigDict(populate_by_name=True)
