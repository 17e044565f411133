"""Tests for the PostgreSQL ledger repository using a scripted connection."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

import psycopg2
import psycopg2.errors
import pytest

from backend.app.billing import (
    BillingStatus,
    ConflictError,
    MandateStatus,
    PaymentEvent,
    Receipt,
    TransientStorageError,
)
from backend.app.billing import repository as repository_module
from backend.app.billing.repository import PostgresLedgerRepository, is_transient_connection_error
from backend.tests.billing_fakes import make_record

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class ScriptedCursor:
    def __init__(self, rows: List[Optional[dict]], error: Optional[Exception] = None, rowcount: int = 1) -> None:
        self.rows = list(rows)
        self.error = error
        self.rowcount = rowcount
        self.executed: List[tuple] = []
        self.closed = False

    def execute(self, sql: str, params: Any = None) -> None:
        self.executed.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error

    def fetchone(self) -> Optional[dict]:
        return self.rows.pop(0) if self.rows else None

    def fetchall(self) -> List[dict]:
        rows, self.rows = self.rows, []
        return rows

    def close(self) -> None:
        self.closed = True


class ScriptedConnection:
    def __init__(self, cursor: ScriptedCursor) -> None:
        self._cursor = cursor
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, cursor_factory=None) -> ScriptedCursor:
        return self._cursor

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = True


def _record_row(**overrides) -> dict:
    row = {
        "id": "bill-1",
        "customer_id": "cust-1",
        "external_payment_id": "PM0001",
        "external_invoice_id": "inv-1",
        "amount": 5000,
        "currency": "GBP",
        "status": "pending",
        "description": "March subscription",
        "due_date": None,
        "paid_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_customer_row_is_mapped():
    cursor = ScriptedCursor(
        [
            {
                "id": "cust-1",
                "email": "ada@example.com",
                "first_name": "Ada",
                "last_name": None,
                "mandate_id": "MD001",
                "mandate_status": "active",
                "created_at": NOW,
                "updated_at": NOW,
            }
        ]
    )
    repository = PostgresLedgerRepository(conn=ScriptedConnection(cursor))

    customer = repository.get_customer("cust-1")

    assert customer.customer_id == "cust-1"
    assert customer.last_name == ""
    assert customer.mandate_status == MandateStatus.ACTIVE
    assert customer.has_active_mandate
    assert cursor.executed[0][1] == ("cust-1",)
    assert cursor.closed


def test_transition_is_conditional_on_expected_status():
    cursor = ScriptedCursor([_record_row(status="paid", paid_at=NOW)])
    repository = PostgresLedgerRepository(conn=ScriptedConnection(cursor))

    updated = repository.transition_billing_record_status(
        "bill-1", expected=BillingStatus.PENDING, status=BillingStatus.PAID, paid_at=NOW
    )

    sql, params = cursor.executed[0]
    assert "WHERE id = %s AND status = %s" in sql
    assert params == ("paid", NOW, "bill-1", "pending")
    assert updated.status == BillingStatus.PAID


def test_transition_returns_none_when_status_moved():
    repository = PostgresLedgerRepository(conn=ScriptedConnection(ScriptedCursor([])))

    assert (
        repository.transition_billing_record_status(
            "bill-1", expected=BillingStatus.PENDING, status=BillingStatus.FAILED, paid_at=None
        )
        is None
    )


def test_unique_violation_becomes_conflict():
    cursor = ScriptedCursor([], error=psycopg2.errors.UniqueViolation("duplicate key"))
    repository = PostgresLedgerRepository(conn=ScriptedConnection(cursor))
    record = make_record()

    with pytest.raises(ConflictError):
        repository.create_billing_record(record, _receipt_for(record))


def test_connection_loss_becomes_transient_error():
    cursor = ScriptedCursor([], error=psycopg2.OperationalError("server closed the connection unexpectedly"))
    repository = PostgresLedgerRepository(conn=ScriptedConnection(cursor))

    with pytest.raises(TransientStorageError):
        repository.get_billing_record("bill-1")


def test_connect_failure_becomes_transient_error(monkeypatch):
    def refuse():
        raise psycopg2.OperationalError("could not connect to server")

    monkeypatch.setattr(repository_module, "get_conn", refuse)
    repository = PostgresLedgerRepository()

    with pytest.raises(TransientStorageError):
        repository.ping()


def test_managed_connection_commits_and_closes(monkeypatch):
    connection = ScriptedConnection(ScriptedCursor([{"?column?": 1}]))
    monkeypatch.setattr(repository_module, "get_conn", lambda: connection)

    PostgresLedgerRepository().ping()

    assert connection.commits == 1
    assert connection.rollbacks == 0
    assert connection.closed


def test_managed_connection_rolls_back_on_error(monkeypatch):
    connection = ScriptedConnection(ScriptedCursor([], error=psycopg2.errors.UniqueViolation("dup")))
    monkeypatch.setattr(repository_module, "get_conn", lambda: connection)
    record = make_record()

    with pytest.raises(ConflictError):
        PostgresLedgerRepository().create_billing_record(record, _receipt_for(record))

    assert connection.commits == 0
    assert connection.rollbacks == 1
    assert connection.closed


class DroppedConnection(ScriptedConnection):
    """Connection whose server went away mid-query; rollback is no longer possible."""

    def __init__(self, *, mark_closed: bool) -> None:
        super().__init__(ScriptedCursor([]))
        self._mark_closed = mark_closed
        self._cursor.execute = self._drop

    def _drop(self, sql: str, params: Any = None) -> None:
        if self._mark_closed:
            self.closed = True
        raise psycopg2.OperationalError("server closed the connection unexpectedly")

    def rollback(self) -> None:
        raise psycopg2.InterfaceError("connection already closed")


@pytest.mark.parametrize("mark_closed", [True, False])
def test_dropped_connection_stays_transient_when_rollback_fails(monkeypatch, mark_closed):
    connection = DroppedConnection(mark_closed=mark_closed)
    monkeypatch.setattr(repository_module, "get_conn", lambda: connection)

    with pytest.raises(TransientStorageError):
        PostgresLedgerRepository().get_customer("cust-1")

    assert connection.commits == 0
    assert connection.closed


def test_record_receipts_are_scoped_to_customer_and_record():
    cursor = ScriptedCursor(
        [
            {
                "id": "rcpt-1",
                "billing_record_id": "bill-1",
                "customer_id": "cust-1",
                "external_invoice_id": "inv-1",
                "external_payment_id": None,
                "file_name": "invoice-inv-1.pdf",
                "file_url": None,
                "file_size": None,
                "mime_type": "application/pdf",
                "is_downloaded": False,
                "downloaded_at": None,
                "created_at": NOW,
            }
        ]
    )
    repository = PostgresLedgerRepository(conn=ScriptedConnection(cursor))

    receipts = repository.list_receipts("cust-1", record_id="bill-1")

    sql, params = cursor.executed[0]
    assert "billing_record_id = %s" in sql
    assert params == ("cust-1", "bill-1", "bill-1", None, 0)
    assert [receipt.record_id for receipt in receipts] == ["bill-1"]


def test_webhook_event_without_id_is_not_stored():
    cursor = ScriptedCursor([])
    repository = PostgresLedgerRepository(conn=ScriptedConnection(cursor))
    event = PaymentEvent(resource_type="payments", resource_id="PM1", action="confirmed")

    assert repository.record_webhook_event(event) is True
    assert cursor.executed == []


def test_duplicate_webhook_event_is_reported():
    cursor = ScriptedCursor([], rowcount=0)
    repository = PostgresLedgerRepository(conn=ScriptedConnection(cursor))
    event = PaymentEvent(id="EV1", resource_type="payments", resource_id="PM1", action="confirmed")

    assert repository.record_webhook_event(event) is False
    assert "ON CONFLICT (event_id) DO NOTHING" in cursor.executed[0][0]


def test_transient_classification():
    assert is_transient_connection_error(psycopg2.OperationalError("connection reset"))
    assert not is_transient_connection_error(psycopg2.errors.UniqueViolation("dup"))
    assert not is_transient_connection_error(ValueError("nope"))


def _receipt_for(record) -> Receipt:
    return Receipt(receipt_id="rcpt-1", record_id=record.record_id, customer_id=record.customer_id)
