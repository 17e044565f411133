"""Capability contracts for the external invoicing and payment services."""
from __future__ import annotations

import json
import socket
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence, TypeVar
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request

from .exceptions import ExternalServiceError
from .models import (
    ExternalInvoice,
    ExternalMandate,
    ExternalPayment,
    InvoiceLineItem,
    InvoicingPartyProfile,
)


T = TypeVar("T")


class InvoicingGateway(Protocol):
    """Remote ledger-of-record that owns invoices and their documents."""

    def find_invoicing_party(self, email: str) -> Optional[str]:
        """Return the party id registered for ``email``, if any."""

    def create_invoicing_party(self, profile: InvoicingPartyProfile) -> str:
        ...

    def create_invoice(
        self,
        party_id: str,
        line_items: Sequence[InvoiceLineItem],
        reference: str,
        *,
        currency: str,
        due_date: Optional[datetime] = None,
    ) -> ExternalInvoice:
        ...

    def get_invoice(self, invoice_id: str) -> ExternalInvoice:
        ...

    def list_invoices(self, party_id: str) -> Sequence[ExternalInvoice]:
        ...

    def update_invoice_status(self, invoice_id: str, status: str) -> None:
        ...

    def get_invoice_document_url(self, invoice_id: str) -> Optional[str]:
        ...


class PaymentGateway(Protocol):
    """Payment collection service working against pre-authorized mandates."""

    def create_payment(
        self,
        mandate_id: str,
        amount: int,
        currency: str,
        reference: str,
        *,
        description: Optional[str] = None,
        charge_date: Optional[datetime] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> ExternalPayment:
        ...

    def list_payments(self, mandate_id: str) -> Sequence[ExternalPayment]:
        ...

    def get_mandate(self, mandate_id: str) -> ExternalMandate:
        ...


class JsonHttpClient:
    """Minimal JSON-over-HTTP client with a hard timeout on every call."""

    def __init__(self, *, service: str, base_url: str, timeout: float = 10.0) -> None:
        self.service = service
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        url: Optional[str] = None,
        form: bool = False,
    ) -> Dict[str, Any]:
        target = url or f"{self.base_url}/{path.lstrip('/')}"
        if params:
            filtered = {key: value for key, value in params.items() if value is not None}
            target = f"{target}?{urllib_parse.urlencode(filtered)}"

        data: Optional[bytes] = None
        request_headers = {"Accept": "application/json"}
        if body is not None:
            if form:
                data = urllib_parse.urlencode(body).encode("utf-8")
                request_headers["Content-Type"] = "application/x-www-form-urlencoded"
            else:
                data = json.dumps(body, default=_json_default).encode("utf-8")
                request_headers["Content-Type"] = "application/json"
        request_headers.update(headers or {})

        req = urllib_request.Request(target, data=data, headers=request_headers, method=method)
        try:
            with urllib_request.urlopen(req, timeout=self.timeout) as response:
                raw = response.read()
        except urllib_error.HTTPError as exc:
            raise ExternalServiceError(
                f"{self.service} {operation} returned HTTP {exc.code}",
                service=self.service,
                operation=operation,
                detail={"status": exc.code},
            ) from exc
        except (urllib_error.URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
            raise ExternalServiceError(
                f"{self.service} {operation} failed: {exc}",
                service=self.service,
                operation=operation,
            ) from exc

        if not raw:
            return {}
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ExternalServiceError(
                f"{self.service} {operation} returned an undecodable body",
                service=self.service,
                operation=operation,
            ) from exc
        if not isinstance(payload, dict):
            raise ExternalServiceError(
                f"{self.service} {operation} returned an unexpected body",
                service=self.service,
                operation=operation,
            )
        return payload


def call_gateway(service: str, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Invoke a gateway method, normalizing unexpected failures to :class:`ExternalServiceError`."""

    try:
        return func(*args, **kwargs)
    except ExternalServiceError:
        raise
    except Exception as exc:
        raise ExternalServiceError(
            f"{service} {operation} failed: {exc}",
            service=service,
            operation=operation,
        ) from exc


def _json_default(value: object) -> object:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def parse_optional_datetime(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def to_minor_units(value: object) -> int:
    """Convert a decimal amount such as ``"50.00"`` into minor units."""

    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount {value!r}") from exc
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(amount: int) -> str:
    return str((Decimal(amount) / 100).quantize(Decimal("0.01")))


__all__ = [
    "InvoicingGateway",
    "JsonHttpClient",
    "call_gateway",
    "PaymentGateway",
    "parse_optional_datetime",
    "to_major_units",
    "to_minor_units",
]
