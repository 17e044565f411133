"""Unit tests for pull-based billing reconciliation."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from backend.app.billing import (
    BillingStatus,
    ConflictError,
    ExternalInvoice,
    ExternalPayment,
    InMemorySyncCache,
    MandateStatus,
    NotFoundError,
    ReconciliationService,
    RetryPolicy,
)
from backend.tests.billing_fakes import make_customer, make_record


@pytest.fixture
def sync_components(ledger, invoicing, payments, clock, sleeper):
    cache = InMemorySyncCache(ttl_seconds=300, clock=clock)
    service = ReconciliationService(
        ledger,
        invoicing,
        payments,
        cache,
        retry_policy=RetryPolicy(max_attempts=2, backoff_seconds=0.1),
        sleep=sleeper,
        clock=clock,
    )
    ledger.add_customer(make_customer(invoicing_party_id="party-1"))
    return ledger, invoicing, payments, cache, service


def _invoice(invoice_id: str, status: str = "sent", total: int = 5000, **extra) -> ExternalInvoice:
    return ExternalInvoice(invoice_id=invoice_id, party_id="party-1", status=status, total=total, currency="GBP", **extra)


def _payment(payment_id: str, status: str = "pending_submission", amount: int = 5000) -> ExternalPayment:
    return ExternalPayment(payment_id=payment_id, mandate_id="MD001", status=status, amount=amount, currency="GBP")


def test_missing_external_items_become_local_records(sync_components):
    ledger, invoicing, payments, _, service = sync_components
    invoicing.invoices["party-1"] = [_invoice("inv-9", reference="INV-9")]
    payments.payments["MD001"] = [_payment("PM0009", status="confirmed")]

    result = service.sync_customer("cust-1")

    assert result.invoices_synced == 1
    assert result.payments_synced == 1
    assert result.records_created == 2
    assert result.invoice_ids == ["inv-9"]
    assert result.payment_ids == ["PM0009"]
    assert result.failed_sources == []

    invoice_record = ledger.find_billing_record_by_invoice_id("inv-9")
    assert invoice_record.status == BillingStatus.PENDING
    assert invoice_record.description == "INV-9"
    payment_record = ledger.find_billing_record_by_payment_id("PM0009")
    assert payment_record.status == BillingStatus.PAID
    assert payment_record.paid_at is not None

    receipts = {r.record_id: r for r in ledger.receipts.values()}
    assert receipts[invoice_record.record_id].file_name == "invoice-inv-9.pdf"
    assert receipts[invoice_record.record_id].file_url == "https://docs.test/inv-9.pdf"
    assert receipts[payment_record.record_id].file_url is None
    assert receipts[payment_record.record_id].mime_type is None


def test_second_sync_hits_cache_without_gateway_calls(sync_components):
    ledger, invoicing, payments, _, service = sync_components
    invoicing.invoices["party-1"] = [_invoice("inv-9")]

    first = service.sync_customer("cust-1")
    invoice_calls = invoicing.total_calls
    payment_calls = payments.total_calls
    records = dict(ledger.records)
    second = service.sync_customer("cust-1")

    assert second == first
    assert invoicing.total_calls == invoice_calls
    assert payments.total_calls == payment_calls
    assert ledger.records == records


def test_cache_expires_after_ttl(sync_components, clock):
    _, invoicing, _, _, service = sync_components

    service.sync_customer("cust-1")
    clock.advance(minutes=5, seconds=1)
    service.sync_customer("cust-1")

    assert invoicing.calls["list_invoices"] == 2


def test_clear_sync_cache_forces_a_fresh_pass(sync_components):
    _, invoicing, _, cache, service = sync_components

    service.sync_customer("cust-1")
    service.clear_sync_cache("cust-1")
    service.sync_customer("cust-1")

    assert invoicing.calls["list_invoices"] == 2
    service.clear_sync_cache()
    assert len(cache) == 0


def test_existing_records_are_not_duplicated(sync_components):
    ledger, invoicing, payments, cache, service = sync_components
    ledger.insert_record(make_record(external_invoice_id="inv-9", external_payment_id="PM0009"))
    invoicing.invoices["party-1"] = [_invoice("inv-9")]
    payments.payments["MD001"] = [_payment("PM0009")]

    result = service.sync_customer("cust-1")

    assert result.records_created == 0
    assert result.records_updated == 0
    assert len(ledger.records) == 1
    assert ledger.calls["create_billing_record"] == 0


def test_concurrent_insert_conflict_is_a_no_op(sync_components):
    ledger, invoicing, _, _, service = sync_components
    invoicing.invoices["party-1"] = [_invoice("inv-9")]
    ledger.fail_on_create = ConflictError("duplicate external_invoice_id")

    result = service.sync_customer("cust-1")

    assert result.records_created == 0
    assert result.failed_sources == []


def test_invoice_source_failure_does_not_block_payments(sync_components):
    ledger, invoicing, payments, cache, service = sync_components
    invoicing.failing.add("list_invoices")
    payments.payments["MD001"] = [_payment("PM0009")]

    result = service.sync_customer("cust-1")

    assert result.failed_sources == ["invoices"]
    assert result.payments_synced == 1
    assert cache.get("cust-1") == result


def test_payment_source_failure_does_not_block_invoices(sync_components):
    _, invoicing, payments, _, service = sync_components
    invoicing.invoices["party-1"] = [_invoice("inv-9")]
    payments.failing.add("list_payments")

    result = service.sync_customer("cust-1")

    assert result.failed_sources == ["payments"]
    assert result.invoices_synced == 1


def test_bad_invoice_is_skipped_and_the_rest_reconciled(sync_components):
    ledger, invoicing, payments, _, service = sync_components
    invoicing.invoices["party-1"] = [
        ExternalInvoice(invoice_id="inv-euro", party_id="party-1", status="sent", total=100, currency="EURO"),
        _invoice("inv-9"),
    ]
    payments.payments["MD001"] = [_payment("PM0009", status="confirmed")]

    result = service.sync_customer("cust-1")

    assert result.failed_sources == []
    assert result.invoice_ids == ["inv-9"]
    assert result.payment_ids == ["PM0009"]
    assert ledger.find_billing_record_by_invoice_id("inv-euro") is None
    assert ledger.find_billing_record_by_payment_id("PM0009").status == BillingStatus.PAID


def test_ledger_outage_during_invoices_still_reconciles_payments(sync_components):
    ledger, invoicing, payments, _, service = sync_components
    invoicing.invoices["party-1"] = [_invoice("inv-9"), _invoice("inv-10")]
    payments.payments["MD001"] = [_payment("PM0009")]
    ledger.transient_failures["find_billing_record_by_invoice_id"] = 2

    result = service.sync_customer("cust-1")

    assert result.failed_sources == ["invoices"]
    assert result.payment_ids == ["PM0009"]
    assert ledger.calls["find_billing_record_by_invoice_id"] == 2


def test_unexpected_invoice_error_does_not_block_payments(sync_components, monkeypatch):
    _, _, payments, _, service = sync_components
    payments.payments["MD001"] = [_payment("PM0009")]

    def explode(customer):
        raise LookupError("party directory unavailable")

    monkeypatch.setattr(service, "_resolve_party_id", explode)

    result = service.sync_customer("cust-1")

    assert result.failed_sources == ["invoices"]
    assert result.payments_synced == 1


def test_external_terminal_status_overwrites_local_record(sync_components):
    ledger, invoicing, _, _, service = sync_components
    ledger.insert_record(make_record(external_invoice_id="inv-9", external_payment_id=None))
    paid_at = datetime(2024, 2, 28, tzinfo=timezone.utc)
    invoicing.invoices["party-1"] = [_invoice("inv-9", status="paid", paid_at=paid_at)]

    result = service.sync_customer("cust-1")

    record = ledger.records["bill-1"]
    assert record.status == BillingStatus.PAID
    assert record.paid_at == paid_at
    assert result.records_updated == 1
    assert invoicing.status_updates == []


def test_external_pending_status_does_not_roll_back(sync_components):
    ledger, _, payments, _, service = sync_components
    ledger.insert_record(make_record(status=BillingStatus.PAID))
    payments.payments["MD001"] = [_payment("PM0001", status="submitted")]

    result = service.sync_customer("cust-1")

    assert ledger.records["bill-1"].status == BillingStatus.PAID
    assert result.records_updated == 0


def test_unrecognized_external_status_is_skipped(sync_components):
    ledger, invoicing, _, _, service = sync_components
    invoicing.invoices["party-1"] = [_invoice("inv-9", status="haunted")]

    result = service.sync_customer("cust-1")

    assert result.records_created == 0
    assert ledger.records == {}


def test_party_is_looked_up_by_email_but_never_created(ledger, invoicing, payments, clock):
    service = ReconciliationService(ledger, invoicing, payments, InMemorySyncCache(clock=clock), clock=clock)
    ledger.add_customer(make_customer(mandate_id=None, mandate_status=MandateStatus.NONE))

    result = service.sync_customer("cust-1")

    assert invoicing.calls["find_invoicing_party"] == 1
    assert invoicing.calls["create_invoicing_party"] == 0
    assert invoicing.calls["list_invoices"] == 0
    assert payments.calls["list_payments"] == 0
    assert result.records_created == 0


def test_unknown_customer_raises_not_found(sync_components):
    _, _, _, cache, service = sync_components

    with pytest.raises(NotFoundError):
        service.sync_customer("missing")

    assert cache.get("missing") is None
