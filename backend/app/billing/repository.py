"""Persistence layer for the billing ledger."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .exceptions import ConflictError, TransientStorageError
from .models import BillingRecord, BillingStatus, Customer, MandateStatus, PaymentEvent, Receipt

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]

logger = logging.getLogger(__name__)

# SQLSTATEs for a server that is restarting or refusing connections.
_TRANSIENT_PGCODES = {"57P01", "57P02", "57P03"}


def is_transient_connection_error(exc: BaseException) -> bool:
    """Return ``True`` for connection-level failures worth retrying."""

    if not isinstance(exc, psycopg2.OperationalError):
        return False
    pgcode = getattr(exc, "pgcode", None)
    if pgcode is None:
        return True
    return pgcode.startswith("08") or pgcode in _TRANSIENT_PGCODES


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    try:
        connection = get_conn()
    except psycopg2.OperationalError as exc:
        if is_transient_connection_error(exc):
            raise TransientStorageError("Ledger store connection failed") from exc
        raise
    try:
        yield connection, True
        connection.commit()
    except Exception:
        _rollback(connection)
        raise
    finally:
        connection.close()


def _rollback(connection: PgConnection) -> None:
    # A dropped server connection cannot roll back; the caller re-raises the original error.
    if connection.closed:
        return
    try:
        connection.rollback()
    except psycopg2.InterfaceError:
        logger.warning("Rollback skipped on unusable ledger connection")


def _row_to_customer(row: dict) -> Customer:
    return Customer(
        customer_id=str(row["id"]),
        email=row["email"],
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name") or "",
        company_name=row.get("company_name"),
        phone=row.get("phone"),
        address_line1=row.get("address_line1"),
        city=row.get("city"),
        state=row.get("state"),
        postcode=row.get("postcode"),
        country=row.get("country"),
        invoicing_party_id=row.get("invoicing_party_id"),
        mandate_id=row.get("mandate_id"),
        mandate_status=MandateStatus(row.get("mandate_status") or MandateStatus.NONE.value),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_billing_record(row: dict) -> BillingRecord:
    return BillingRecord(
        record_id=str(row["id"]),
        customer_id=str(row["customer_id"]),
        external_payment_id=row.get("external_payment_id"),
        external_invoice_id=row.get("external_invoice_id"),
        amount=int(row["amount"]),
        currency=row["currency"],
        status=BillingStatus(row["status"]),
        description=row.get("description") or "",
        due_date=row.get("due_date"),
        paid_at=row.get("paid_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_receipt(row: dict) -> Receipt:
    return Receipt(
        receipt_id=str(row["id"]),
        record_id=str(row["billing_record_id"]),
        customer_id=str(row["customer_id"]),
        external_invoice_id=row.get("external_invoice_id"),
        external_payment_id=row.get("external_payment_id"),
        file_name=row.get("file_name"),
        file_url=row.get("file_url"),
        file_size=row.get("file_size"),
        mime_type=row.get("mime_type"),
        is_downloaded=bool(row.get("is_downloaded")),
        downloaded_at=row.get("downloaded_at"),
        created_at=row["created_at"],
    )


class PostgresLedgerRepository:
    """Concrete ledger store persisting billing models in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, _managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                finally:
                    if not connection.closed:
                        cursor.close()
        except psycopg2.errors.UniqueViolation as exc:
            raise ConflictError(
                "Billing record already exists for this external reference",
                detail={"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except psycopg2.OperationalError as exc:
            if is_transient_connection_error(exc):
                raise TransientStorageError("Ledger store connection lost") from exc
            raise

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM customers
                WHERE id = %s
                LIMIT 1
                """,
                (customer_id,),
            )
            row = cursor.fetchone()
            return _row_to_customer(row) if row else None

    def set_invoicing_party_id(self, customer_id: str, party_id: str) -> Optional[Customer]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE customers
                SET invoicing_party_id = %s, updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (party_id, customer_id),
            )
            row = cursor.fetchone()
            return _row_to_customer(row) if row else None

    def update_mandate_status(self, customer_id: str, status: MandateStatus) -> Optional[Customer]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE customers
                SET mandate_status = %s, updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (status.value, customer_id),
            )
            row = cursor.fetchone()
            return _row_to_customer(row) if row else None

    def get_billing_record(self, record_id: str) -> Optional[BillingRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_records
                WHERE id = %s
                LIMIT 1
                """,
                (record_id,),
            )
            row = cursor.fetchone()
            return _row_to_billing_record(row) if row else None

    def find_billing_record_by_payment_id(self, payment_id: str) -> Optional[BillingRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_records
                WHERE external_payment_id = %s
                LIMIT 1
                """,
                (payment_id,),
            )
            row = cursor.fetchone()
            return _row_to_billing_record(row) if row else None

    def find_billing_record_by_invoice_id(self, invoice_id: str) -> Optional[BillingRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_records
                WHERE external_invoice_id = %s
                LIMIT 1
                """,
                (invoice_id,),
            )
            row = cursor.fetchone()
            return _row_to_billing_record(row) if row else None

    def create_billing_record(self, record: BillingRecord, receipt: Receipt) -> Tuple[BillingRecord, Receipt]:
        """Insert a billing record and its receipt atomically."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_records (
                    id,
                    customer_id,
                    external_payment_id,
                    external_invoice_id,
                    amount,
                    currency,
                    status,
                    description,
                    due_date,
                    paid_at,
                    created_at,
                    updated_at
                )
                VALUES (%(id)s, %(customer_id)s, %(external_payment_id)s, %(external_invoice_id)s,
                        %(amount)s, %(currency)s, %(status)s, %(description)s, %(due_date)s,
                        %(paid_at)s, %(created_at)s, %(updated_at)s)
                RETURNING *
                """,
                {
                    "id": record.record_id,
                    "customer_id": record.customer_id,
                    "external_payment_id": record.external_payment_id,
                    "external_invoice_id": record.external_invoice_id,
                    "amount": record.amount,
                    "currency": record.currency,
                    "status": record.status.value,
                    "description": record.description,
                    "due_date": record.due_date,
                    "paid_at": record.paid_at,
                    "created_at": record.created_at,
                    "updated_at": record.updated_at,
                },
            )
            record_row = cursor.fetchone()
            if not record_row:
                raise RuntimeError("Failed to persist billing record")

            cursor.execute(
                """
                INSERT INTO receipts (
                    id,
                    billing_record_id,
                    customer_id,
                    external_invoice_id,
                    external_payment_id,
                    file_name,
                    file_url,
                    file_size,
                    mime_type,
                    created_at
                )
                VALUES (%(id)s, %(billing_record_id)s, %(customer_id)s, %(external_invoice_id)s,
                        %(external_payment_id)s, %(file_name)s, %(file_url)s, %(file_size)s,
                        %(mime_type)s, %(created_at)s)
                RETURNING *
                """,
                {
                    "id": receipt.receipt_id,
                    "billing_record_id": record.record_id,
                    "customer_id": receipt.customer_id,
                    "external_invoice_id": receipt.external_invoice_id,
                    "external_payment_id": receipt.external_payment_id,
                    "file_name": receipt.file_name,
                    "file_url": receipt.file_url,
                    "file_size": receipt.file_size,
                    "mime_type": receipt.mime_type,
                    "created_at": receipt.created_at,
                },
            )
            receipt_row = cursor.fetchone()
            if not receipt_row:
                raise RuntimeError("Failed to persist receipt")
            return _row_to_billing_record(record_row), _row_to_receipt(receipt_row)

    def transition_billing_record_status(
        self,
        record_id: str,
        *,
        expected: BillingStatus,
        status: BillingStatus,
        paid_at: Optional[datetime],
    ) -> Optional[BillingRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_records
                SET status = %s,
                    paid_at = COALESCE(%s, paid_at),
                    updated_at = NOW()
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (status.value, paid_at, record_id, expected.value),
            )
            row = cursor.fetchone()
            return _row_to_billing_record(row) if row else None

    def list_billing_records(
        self,
        customer_id: str,
        *,
        status: Optional[BillingStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[BillingRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_records
                WHERE customer_id = %s
                  AND (%s::text IS NULL OR status = %s)
                ORDER BY created_at DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                (
                    customer_id,
                    status.value if status else None,
                    status.value if status else None,
                    limit,
                    offset,
                ),
            )
            rows = cursor.fetchall() or []
            return [_row_to_billing_record(row) for row in rows]

    def count_billing_records(self, customer_id: str, *, status: Optional[BillingStatus] = None) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT COUNT(*) AS total
                FROM billing_records
                WHERE customer_id = %s
                  AND (%s::text IS NULL OR status = %s)
                """,
                (customer_id, status.value if status else None, status.value if status else None),
            )
            row = cursor.fetchone()
            return int(row["total"]) if row else 0

    def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM receipts
                WHERE id = %s
                LIMIT 1
                """,
                (receipt_id,),
            )
            row = cursor.fetchone()
            return _row_to_receipt(row) if row else None

    def list_receipts(
        self,
        customer_id: str,
        *,
        record_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Receipt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM receipts
                WHERE customer_id = %s
                  AND (%s::text IS NULL OR billing_record_id = %s)
                ORDER BY created_at DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                (customer_id, record_id, record_id, limit, offset),
            )
            rows = cursor.fetchall() or []
            return [_row_to_receipt(row) for row in rows]

    def count_receipts(self, customer_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT COUNT(*) AS total
                FROM receipts
                WHERE customer_id = %s
                """,
                (customer_id,),
            )
            row = cursor.fetchone()
            return int(row["total"]) if row else 0

    def list_receipts_missing_document(self, customer_id: str) -> List[Receipt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM receipts
                WHERE customer_id = %s
                  AND file_url IS NULL
                  AND external_invoice_id IS NOT NULL
                ORDER BY created_at DESC
                """,
                (customer_id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_receipt(row) for row in rows]

    def set_receipt_document(self, receipt_id: str, file_url: str) -> Optional[Receipt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE receipts
                SET file_url = %s
                WHERE id = %s
                RETURNING *
                """,
                (file_url, receipt_id),
            )
            row = cursor.fetchone()
            return _row_to_receipt(row) if row else None

    def mark_receipt_downloaded(self, receipt_id: str, downloaded_at: datetime) -> Optional[Receipt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE receipts
                SET is_downloaded = TRUE, downloaded_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (downloaded_at, receipt_id),
            )
            row = cursor.fetchone()
            return _row_to_receipt(row) if row else None

    def record_webhook_event(self, event: PaymentEvent) -> bool:
        if not event.event_id:
            return True
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (
                    event_id,
                    resource_type,
                    resource_id,
                    action,
                    occurred_at,
                    received_at
                )
                VALUES (%s, %s, %s, %s, %s, NOW())
                ON CONFLICT (event_id) DO NOTHING
                """,
                (
                    event.event_id,
                    event.resource_type,
                    event.resource_id,
                    event.action,
                    event.created_at,
                ),
            )
            return cursor.rowcount > 0

    def ping(self) -> None:
        with self._cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()


__all__ = ["PostgresLedgerRepository", "is_transient_connection_error", "managed_connection"]
