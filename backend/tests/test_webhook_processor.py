"""Unit tests for payment webhook ingestion."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from backend.app.billing import (
    AuthenticationError,
    BillingStatus,
    RetryPolicy,
    ValidationError,
    WebhookEventProcessor,
)
from backend.app.billing.webhooks import compute_signature
from backend.tests.billing_fakes import make_record

SECRET = "whsec_test"


def _body(*events) -> bytes:
    return json.dumps({"events": list(events)}).encode("utf-8")


def _event(action: str, resource_id: str = "PM0001", event_id: str = "EV1", **extra) -> dict:
    payload = {
        "id": event_id,
        "resourceType": "payments",
        "resourceId": resource_id,
        "action": action,
        "createdAt": "2024-03-02T09:30:00Z",
    }
    payload.update(extra)
    return payload


@pytest.fixture
def webhook_components(ledger, invoicing, clock, sleeper):
    processor = WebhookEventProcessor(
        ledger,
        invoicing,
        webhook_secret=SECRET,
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0.5),
        sleep=sleeper,
        clock=clock,
    )
    return ledger, invoicing, processor


def _deliver(processor: WebhookEventProcessor, body: bytes):
    return processor.process_payment_events(body, compute_signature(SECRET, body))


def test_confirmed_event_marks_record_paid_and_propagates_once(webhook_components):
    ledger, invoicing, processor = webhook_components
    ledger.insert_record(make_record())
    body = _body(_event("confirmed"))

    result = _deliver(processor, body)

    record = ledger.records["bill-1"]
    assert record.status == BillingStatus.PAID
    assert record.paid_at == datetime(2024, 3, 2, 9, 30, tzinfo=timezone.utc)
    assert invoicing.status_updates == [("inv-1", "paid")]
    assert result.events_processed == 1
    assert result.records_updated == 1
    assert result.events_failed == 0


def test_replayed_batch_is_a_no_op(webhook_components):
    ledger, invoicing, processor = webhook_components
    ledger.insert_record(make_record())
    body = _body(_event("confirmed"))

    _deliver(processor, body)
    snapshot = dict(ledger.records)
    result = _deliver(processor, body)

    assert ledger.records == snapshot
    assert invoicing.status_updates == [("inv-1", "paid")]
    assert result.records_updated == 0


def test_paid_out_after_confirmed_does_not_propagate_again(webhook_components):
    ledger, invoicing, processor = webhook_components
    ledger.insert_record(make_record())

    _deliver(processor, _body(_event("confirmed", event_id="EV1")))
    _deliver(processor, _body(_event("paid_out", event_id="EV2")))

    assert invoicing.status_updates == [("inv-1", "paid")]


def test_failed_event_marks_record_failed_without_propagation(webhook_components):
    ledger, invoicing, processor = webhook_components
    ledger.insert_record(make_record())

    _deliver(processor, _body(_event("failed")))

    assert ledger.records["bill-1"].status == BillingStatus.FAILED
    assert ledger.records["bill-1"].paid_at is None
    assert invoicing.status_updates == []


def test_terminal_record_is_never_moved(webhook_components):
    ledger, invoicing, processor = webhook_components
    ledger.insert_record(make_record(status=BillingStatus.FAILED))

    result = _deliver(processor, _body(_event("confirmed")))

    assert ledger.records["bill-1"].status == BillingStatus.FAILED
    assert invoicing.status_updates == []
    assert result.records_updated == 0


def test_unknown_payment_is_ignored_and_recorded(webhook_components):
    ledger, invoicing, processor = webhook_components

    result = _deliver(processor, _body(_event("confirmed", resource_id="PM_UNKNOWN")))

    assert ledger.records == {}
    assert invoicing.total_calls == 0
    assert result.events_processed == 1
    assert result.records_updated == 0
    assert "EV1" in ledger.webhook_events


def test_non_payment_and_unknown_actions_are_skipped(webhook_components):
    ledger, _, processor = webhook_components
    ledger.insert_record(make_record())
    body = _body(
        _event("created", event_id="EV1", resourceType="mandates"),
        _event("teleported", event_id="EV2"),
    )

    result = _deliver(processor, body)

    assert ledger.records["bill-1"].status == BillingStatus.PENDING
    assert result.events_processed == 2
    assert result.records_updated == 0
    assert result.events_failed == 0


def test_one_bad_event_does_not_block_the_rest(webhook_components):
    ledger, _, processor = webhook_components
    ledger.insert_record(make_record())
    ledger.insert_record(make_record(record_id="bill-2", external_payment_id="PM0002", external_invoice_id="inv-2"))
    ledger.transient_failures["find_billing_record_by_payment_id"] = 3

    result = _deliver(
        processor,
        _body(_event("confirmed", event_id="EV1"), _event("confirmed", resource_id="PM0002", event_id="EV2")),
    )

    assert result.events_failed == 1
    assert result.records_updated == 1
    assert ledger.records["bill-1"].status == BillingStatus.PENDING
    assert ledger.records["bill-2"].status == BillingStatus.PAID


def test_propagation_failure_keeps_local_update(webhook_components):
    ledger, invoicing, processor = webhook_components
    ledger.insert_record(make_record())
    invoicing.failing.add("update_invoice_status")

    result = _deliver(processor, _body(_event("confirmed")))

    assert ledger.records["bill-1"].status == BillingStatus.PAID
    assert result.records_updated == 1
    assert result.events_failed == 0


def test_invalid_signature_rejects_whole_batch(webhook_components):
    ledger, _, processor = webhook_components
    ledger.insert_record(make_record())
    body = _body(_event("confirmed"))

    with pytest.raises(AuthenticationError):
        processor.process_payment_events(body, "deadbeef")

    assert ledger.records["bill-1"].status == BillingStatus.PENDING
    assert ledger.calls["find_billing_record_by_payment_id"] == 0


def test_missing_signature_is_rejected(webhook_components):
    _, _, processor = webhook_components

    with pytest.raises(AuthenticationError):
        processor.process_payment_events(_body(), None)


def test_unconfigured_secret_rejects_everything(ledger, invoicing):
    processor = WebhookEventProcessor(ledger, invoicing, webhook_secret=None)
    body = _body()

    with pytest.raises(AuthenticationError):
        processor.process_payment_events(body, compute_signature("anything", body))


def test_malformed_json_is_a_validation_error(webhook_components):
    _, _, processor = webhook_components
    body = b"{not json"

    with pytest.raises(ValidationError):
        _deliver(processor, body)


def test_malformed_event_is_counted_and_the_rest_applied(webhook_components):
    ledger, invoicing, processor = webhook_components
    ledger.insert_record(make_record())
    missing_resource = {"id": "EV2", "resourceType": "payments", "action": "confirmed"}
    body = _body(_event("confirmed", event_id="EV1"), missing_resource, "not-an-event")

    result = _deliver(processor, body)

    assert ledger.records["bill-1"].status == BillingStatus.PAID
    assert invoicing.status_updates == [("inv-1", "paid")]
    assert result.events_processed == 3
    assert result.records_updated == 1
    assert result.events_failed == 2


def test_events_must_be_a_list(webhook_components):
    _, _, processor = webhook_components
    body = json.dumps({"events": {"id": "EV1"}}).encode("utf-8")

    with pytest.raises(ValidationError):
        _deliver(processor, body)


def test_snake_case_event_fields_are_accepted(webhook_components):
    ledger, _, processor = webhook_components
    ledger.insert_record(make_record())
    body = json.dumps(
        {"events": [{"resource_type": "payments", "resource_id": "PM0001", "action": "cancelled"}]}
    ).encode("utf-8")

    result = _deliver(processor, body)

    assert ledger.records["bill-1"].status == BillingStatus.CANCELLED
    assert result.records_updated == 1
