"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from ..billing import BillingError, BillingStatus
from ..billing.webhooks import SIGNATURE_HEADER
from ..schemas.billing import (
    BillingCycleResponse,
    BillingHistoryResponse,
    BillingRecordDetailResponse,
    BillingSummaryResponse,
    CreateBillingCycleRequest,
    HealthResponse,
    MandateStatusResponse,
    ReceiptDownloadResponse,
    ReceiptListResponse,
    ReceiptRefreshResponse,
    ReceiptResponse,
    SyncRequest,
    SyncResponse,
    WebhookAcknowledgement,
)
from ..services.billing import (
    get_billing_account_service,
    get_billing_orchestrator,
    get_reconciliation_service,
    get_webhook_processor,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])
webhook_router = APIRouter(prefix="/webhooks", tags=["billing"])


@router.post("/cycle", response_model=BillingCycleResponse, status_code=status.HTTP_201_CREATED)
def create_billing_cycle(payload: CreateBillingCycleRequest) -> BillingCycleResponse:
    orchestrator = get_billing_orchestrator()
    try:
        cycle = orchestrator.create_billing_cycle(
            payload.customer_id,
            payload.amount,
            payload.currency,
            payload.description,
            payload.due_date,
            payload.line_items or None,
            reference=payload.reference,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return BillingCycleResponse.from_cycle(cycle)


@router.post("/sync", response_model=SyncResponse)
def sync_billing_data(payload: SyncRequest) -> SyncResponse:
    service = get_reconciliation_service()
    try:
        result = service.sync_customer(payload.customer_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SyncResponse.from_result(result)


@router.delete("/sync/{customer_id}", status_code=status.HTTP_204_NO_CONTENT)
def clear_sync_cache(customer_id: str) -> None:
    get_reconciliation_service().clear_sync_cache(customer_id)


@router.get("/customers/{customer_id}/history", response_model=BillingHistoryResponse)
def get_billing_history(
    customer_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    status_filter: Optional[BillingStatus] = Query(None, alias="status"),
) -> BillingHistoryResponse:
    service = get_billing_account_service()
    try:
        history = service.get_billing_history(customer_id, page=page, limit=limit, status=status_filter)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return BillingHistoryResponse.from_page(history)


@router.get("/customers/{customer_id}/history/{record_id}", response_model=BillingRecordDetailResponse)
def get_billing_record(customer_id: str, record_id: str) -> BillingRecordDetailResponse:
    service = get_billing_account_service()
    try:
        detail = service.get_billing_record(customer_id, record_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return BillingRecordDetailResponse.from_detail(detail)


@router.get("/customers/{customer_id}/history/{record_id}/receipts", response_model=List[ReceiptResponse])
def list_record_receipts(customer_id: str, record_id: str) -> List[ReceiptResponse]:
    service = get_billing_account_service()
    try:
        receipts = service.list_record_receipts(customer_id, record_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return [ReceiptResponse.from_receipt(receipt) for receipt in receipts]


@router.get("/customers/{customer_id}/summary", response_model=BillingSummaryResponse)
def get_billing_summary(customer_id: str) -> BillingSummaryResponse:
    service = get_billing_account_service()
    try:
        summary = service.get_billing_summary(customer_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return BillingSummaryResponse.from_summary(summary)


@router.get("/customers/{customer_id}/receipts", response_model=ReceiptListResponse)
def list_receipts(
    customer_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
) -> ReceiptListResponse:
    service = get_billing_account_service()
    try:
        receipts = service.list_receipts(customer_id, page=page, limit=limit)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ReceiptListResponse.from_page(receipts)


@router.post(
    "/customers/{customer_id}/receipts/{receipt_id}/download",
    response_model=ReceiptDownloadResponse,
)
def download_receipt(customer_id: str, receipt_id: str) -> ReceiptDownloadResponse:
    service = get_billing_account_service()
    try:
        download = service.download_receipt(customer_id, receipt_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ReceiptDownloadResponse.from_download(download)


@router.post("/customers/{customer_id}/receipts/refresh", response_model=ReceiptRefreshResponse)
def refresh_receipt_documents(customer_id: str) -> ReceiptRefreshResponse:
    service = get_billing_account_service()
    try:
        filled = service.refresh_receipt_documents(customer_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ReceiptRefreshResponse(customer_id=customer_id, receipts_updated=filled)


@router.post("/customers/{customer_id}/mandate/refresh", response_model=MandateStatusResponse)
def refresh_mandate_status(customer_id: str) -> MandateStatusResponse:
    service = get_billing_account_service()
    try:
        customer = service.refresh_mandate_status(customer_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return MandateStatusResponse.from_customer(customer)


@router.get("/health", response_model=HealthResponse)
def billing_health() -> HealthResponse:
    try:
        get_billing_account_service().check_ledger()
    except Exception as exc:
        logger.exception("Billing health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "storage_unavailable", "message": "Ledger store is unreachable"},
        ) from exc
    return HealthResponse(status="ok", service="billing", checked_at=datetime.now(timezone.utc))


@webhook_router.post("/payments", response_model=WebhookAcknowledgement)
async def receive_payment_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
) -> WebhookAcknowledgement:
    raw_body = await request.body()
    processor = get_webhook_processor()
    try:
        result = await run_in_threadpool(processor.process_payment_events, raw_body, signature)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return WebhookAcknowledgement.from_result(result)


@webhook_router.get("/health", response_model=HealthResponse)
def webhook_health() -> HealthResponse:
    return HealthResponse(status="ok", service="webhooks", checked_at=datetime.now(timezone.utc))


__all__ = ["router", "webhook_router"]
