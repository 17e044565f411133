"""Translation tables from external status strings to internal enums."""
from __future__ import annotations

from typing import Dict, Optional

from .models import BillingStatus, MandateStatus

# Payment statuses and webhook actions share vocabulary, so one table covers both.
PAYMENT_STATUS_MAP: Dict[str, BillingStatus] = {
    "pending_customer_approval": BillingStatus.PENDING,
    "pending_submission": BillingStatus.PENDING,
    "submitted": BillingStatus.PENDING,
    "created": BillingStatus.PENDING,
    "customer_approval_granted": BillingStatus.PENDING,
    "resubmission_requested": BillingStatus.PENDING,
    "confirmed": BillingStatus.PAID,
    "paid_out": BillingStatus.PAID,
    "paid": BillingStatus.PAID,
    "failed": BillingStatus.FAILED,
    "charged_back": BillingStatus.FAILED,
    "late_failure_settled": BillingStatus.FAILED,
    "chargeback_settled": BillingStatus.FAILED,
    "cancelled": BillingStatus.CANCELLED,
    "customer_approval_denied": BillingStatus.CANCELLED,
}

INVOICE_STATUS_MAP: Dict[str, BillingStatus] = {
    "paid": BillingStatus.PAID,
    "void": BillingStatus.CANCELLED,
    "draft": BillingStatus.PENDING,
    "sent": BillingStatus.PENDING,
    "viewed": BillingStatus.PENDING,
    "overdue": BillingStatus.PENDING,
    "partially_paid": BillingStatus.PENDING,
    "unpaid": BillingStatus.PENDING,
    "pending_approval": BillingStatus.PENDING,
    "approved": BillingStatus.PENDING,
}

MANDATE_STATUS_MAP: Dict[str, MandateStatus] = {
    "pending_customer_approval": MandateStatus.PENDING_SUBMISSION,
    "pending_submission": MandateStatus.PENDING_SUBMISSION,
    "submitted": MandateStatus.SUBMITTED,
    "active": MandateStatus.ACTIVE,
    "failed": MandateStatus.FAILED,
    "suspended_by_payer": MandateStatus.FAILED,
    "cancelled": MandateStatus.CANCELLED,
    "consumed": MandateStatus.CANCELLED,
    "blocked": MandateStatus.CANCELLED,
    "expired": MandateStatus.EXPIRED,
}


def _key(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def map_payment_status(value: Optional[str]) -> Optional[BillingStatus]:
    """Return the internal status for a payment status or event action, if known."""

    return PAYMENT_STATUS_MAP.get(_key(value))


def map_invoice_status(value: Optional[str]) -> Optional[BillingStatus]:
    return INVOICE_STATUS_MAP.get(_key(value))


def map_mandate_status(value: Optional[str]) -> Optional[MandateStatus]:
    return MANDATE_STATUS_MAP.get(_key(value))


__all__ = [
    "INVOICE_STATUS_MAP",
    "MANDATE_STATUS_MAP",
    "PAYMENT_STATUS_MAP",
    "map_invoice_status",
    "map_mandate_status",
    "map_payment_status",
]
