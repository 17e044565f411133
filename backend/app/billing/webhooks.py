"""Ingestion of asynchronous payment-status events."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .exceptions import AuthenticationError, ExternalServiceError, ValidationError
from .gateways import InvoicingGateway, call_gateway
from .ledger import LedgerAccess, LedgerStore
from .models import BillingRecord, BillingStatus, PaymentEvent, WebhookResult
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy
from .statuses import map_payment_status

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Webhook-Signature"
INVOICE_PAID_STATUS = "paid"


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""

    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


class WebhookEventProcessor(LedgerAccess):
    """Applies payment events to billing records exactly once."""

    def __init__(
        self,
        store: LedgerStore,
        invoicing: InvoicingGateway,
        *,
        webhook_secret: Optional[str],
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._invoicing = invoicing
        self._secret = webhook_secret
        self._retry_policy = retry_policy
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not self._secret:
            raise AuthenticationError("Webhook secret is not configured")
        if not signature:
            raise AuthenticationError("Missing webhook signature")
        expected = compute_signature(self._secret, raw_body)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise AuthenticationError("Invalid webhook signature")

    def parse_events(self, raw_body: bytes) -> List[Any]:
        """Return the raw ``events`` items; each one is validated separately."""

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")
        events = payload.get("events", [])
        if not isinstance(events, list):
            raise ValidationError("Webhook events must be a list")
        return events

    def process_payment_events(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        """Authenticate and apply a batch; per-event failures are logged and skipped."""

        try:
            self.verify_signature(raw_body, signature)
        except AuthenticationError:
            logger.warning("Rejected webhook batch with bad signature")
            raise
        items = self.parse_events(raw_body)

        updated = 0
        failed = 0
        for item in items:
            try:
                event = PaymentEvent.model_validate(item)
            except PydanticValidationError as exc:
                failed += 1
                logger.warning("Skipping malformed payment event", extra={"error_count": exc.error_count()})
                continue
            try:
                if self._apply_event(event):
                    updated += 1
            except Exception:
                failed += 1
                logger.exception(
                    "Failed to process payment event",
                    extra={"event_id": event.event_id, "resource_id": event.resource_id, "event_action": event.action},
                )

        result = WebhookResult(events_processed=len(items), records_updated=updated, events_failed=failed)
        logger.info(
            "Webhook batch processed",
            extra={
                "events_processed": result.events_processed,
                "records_updated": result.records_updated,
                "events_failed": result.events_failed,
            },
        )
        return result

    def _apply_event(self, event: PaymentEvent) -> bool:
        if not event.is_payment:
            logger.debug("Ignoring non-payment event", extra={"resource_type": event.resource_type})
            return False

        status = map_payment_status(event.action)
        if status is None:
            logger.warning(
                "Unrecognized payment event action",
                extra={"event_id": event.event_id, "resource_id": event.resource_id, "event_action": event.action},
            )
            return False

        record = self._ledger(self._store.find_billing_record_by_payment_id, event.resource_id)
        if record is None:
            logger.info(
                "No billing record for payment event yet",
                extra={"resource_id": event.resource_id, "event_action": event.action},
            )
            self._remember(event)
            return False

        updated = self._transition(record, status, event)
        self._remember(event)
        return updated

    def _transition(self, record: BillingRecord, status: BillingStatus, event: PaymentEvent) -> bool:
        if record.status == status:
            logger.debug(
                "Billing record already in reported status",
                extra={"billing_record_id": record.record_id, "billing_status": status.value},
            )
            return False
        if record.status.is_terminal:
            logger.warning(
                "Ignoring transition out of terminal status",
                extra={
                    "billing_record_id": record.record_id,
                    "billing_status": record.status.value,
                    "reported_status": status.value,
                },
            )
            return False

        paid_at = (event.created_at or self._clock()) if status == BillingStatus.PAID else None
        updated = self._ledger(
            self._store.transition_billing_record_status,
            record.record_id,
            expected=BillingStatus.PENDING,
            status=status,
            paid_at=paid_at,
        )
        if updated is None:
            # A concurrent delivery already moved the record.
            return False

        logger.info(
            "Billing record status updated",
            extra={"billing_record_id": updated.record_id, "billing_status": updated.status.value},
        )
        if updated.status == BillingStatus.PAID and updated.external_invoice_id:
            self._propagate_paid(updated)
        return True

    def _propagate_paid(self, record: BillingRecord) -> None:
        try:
            call_gateway(
                "invoicing",
                "update_invoice_status",
                self._invoicing.update_invoice_status,
                record.external_invoice_id,
                INVOICE_PAID_STATUS,
            )
        except ExternalServiceError:
            logger.exception(
                "Failed to mark external invoice paid",
                extra={"billing_record_id": record.record_id, "external_invoice_id": record.external_invoice_id},
            )

    def _remember(self, event: PaymentEvent) -> None:
        if not event.event_id:
            return
        if not self._ledger(self._store.record_webhook_event, event):
            logger.info("Payment event redelivered", extra={"event_id": event.event_id})


__all__ = ["SIGNATURE_HEADER", "WebhookEventProcessor", "compute_signature"]
