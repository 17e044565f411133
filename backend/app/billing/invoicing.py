"""HTTP client for the external invoicing service."""
from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from .exceptions import ExternalServiceError
from .gateways import JsonHttpClient, parse_optional_datetime, to_major_units, to_minor_units
from .models import ExternalInvoice, InvoiceLineItem, InvoicingPartyProfile

logger = logging.getLogger(__name__)

SERVICE_NAME = "invoicing"
# Refresh slightly before the advertised expiry so in-flight calls keep a valid token.
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class HttpInvoicingGateway:
    """Talks to a Books-style REST API authenticated by an OAuth refresh token."""

    def __init__(
        self,
        *,
        api_url: str,
        token_url: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        refresh_token: Optional[str],
        organization_id: Optional[str],
        timeout: float = 10.0,
        clock: Optional[Callable[[], float]] = None,
        http_client: Optional[JsonHttpClient] = None,
    ) -> None:
        self._client = http_client or JsonHttpClient(service=SERVICE_NAME, base_url=api_url, timeout=timeout)
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._organization_id = organization_id
        self._clock = clock or time.monotonic
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = Lock()

    def _get_access_token(self) -> str:
        with self._token_lock:
            if self._access_token and self._clock() < self._token_expires_at:
                return self._access_token
            if not (self._refresh_token and self._client_id and self._client_secret):
                raise ExternalServiceError(
                    "Invoicing credentials are not configured",
                    service=SERVICE_NAME,
                    operation="authenticate",
                )
            payload = self._client.request(
                "POST",
                "",
                operation="authenticate",
                url=self._token_url,
                body={
                    "refresh_token": self._refresh_token,
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "refresh_token",
                },
                form=True,
            )
            token = payload.get("access_token")
            if not token:
                raise ExternalServiceError(
                    "Invoicing token response did not include an access token",
                    service=SERVICE_NAME,
                    operation="authenticate",
                )
            expires_in = float(payload.get("expires_in") or 3600)
            self._access_token = str(token)
            self._token_expires_at = self._clock() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
            return self._access_token

    def _call(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        token = self._get_access_token()
        query = {"organization_id": self._organization_id, **(params or {})}
        return self._client.request(
            method,
            path,
            operation=operation,
            params=query,
            body=body,
            headers={"Authorization": f"Zoho-oauthtoken {token}"},
        )

    def find_invoicing_party(self, email: str) -> Optional[str]:
        payload = self._call("GET", "contacts", operation="find_invoicing_party", params={"email": email})
        contacts = payload.get("contacts") or []
        if not contacts:
            return None
        contact_id = contacts[0].get("contact_id")
        return str(contact_id) if contact_id else None

    def create_invoicing_party(self, profile: InvoicingPartyProfile) -> str:
        payload = self._call(
            "POST",
            "contacts",
            operation="create_invoicing_party",
            body={
                "contact_name": profile.name,
                "company_name": profile.company_name,
                "email": profile.email,
                "phone": profile.phone,
                "billing_address": {
                    "address": profile.address,
                    "city": profile.city,
                    "state": profile.state,
                    "zip": profile.postcode,
                    "country": profile.country,
                },
            },
        )
        contact = payload.get("contact") or {}
        contact_id = contact.get("contact_id")
        if not contact_id:
            raise ExternalServiceError(
                "Invoicing service did not return a party id",
                service=SERVICE_NAME,
                operation="create_invoicing_party",
            )
        return str(contact_id)

    def create_invoice(
        self,
        party_id: str,
        line_items: Sequence[InvoiceLineItem],
        reference: str,
        *,
        currency: str,
        due_date=None,
    ) -> ExternalInvoice:
        body: Dict[str, Any] = {
            "customer_id": party_id,
            "reference_number": reference,
            "currency_code": currency,
            "line_items": [
                {
                    "name": item.name,
                    "quantity": item.quantity,
                    "rate": to_major_units(item.unit_amount),
                    "tax_percentage": item.tax_percentage,
                }
                for item in line_items
            ],
            "terms": "Payment due on receipt",
        }
        if due_date is not None:
            body["due_date"] = due_date.date().isoformat()
        payload = self._call("POST", "invoices", operation="create_invoice", body=body)
        return self._invoice_from_payload(payload.get("invoice"), operation="create_invoice")

    def get_invoice(self, invoice_id: str) -> ExternalInvoice:
        payload = self._call("GET", f"invoices/{invoice_id}", operation="get_invoice")
        return self._invoice_from_payload(payload.get("invoice"), operation="get_invoice")

    def list_invoices(self, party_id: str) -> List[ExternalInvoice]:
        payload = self._call("GET", "invoices", operation="list_invoices", params={"customer_id": party_id})
        return [
            self._invoice_from_payload(item, operation="list_invoices")
            for item in payload.get("invoices") or []
        ]

    def update_invoice_status(self, invoice_id: str, status: str) -> None:
        self._call("POST", f"invoices/{invoice_id}/status/{status}", operation="update_invoice_status")

    def get_invoice_document_url(self, invoice_id: str) -> Optional[str]:
        payload = self._call("GET", f"invoices/{invoice_id}/pdf", operation="get_invoice_document_url")
        url = payload.get("download_url") or payload.get("pdf_url")
        return str(url) if url else None

    def _invoice_from_payload(self, payload: object, *, operation: str) -> ExternalInvoice:
        if not isinstance(payload, dict):
            raise ExternalServiceError(
                "Invoice payload missing from response",
                service=SERVICE_NAME,
                operation=operation,
            )
        try:
            return ExternalInvoice(
                invoice_id=str(payload["invoice_id"]),
                party_id=payload.get("customer_id") and str(payload.get("customer_id")),
                invoice_number=payload.get("invoice_number"),
                reference=payload.get("reference_number") or payload.get("reference"),
                status=str(payload.get("status") or "draft"),
                total=to_minor_units(payload.get("total") or 0),
                currency=str(payload.get("currency_code") or "GBP"),
                due_date=parse_optional_datetime(payload.get("due_date")),
                paid_at=parse_optional_datetime(payload.get("last_payment_date") or payload.get("paid_at")),
                created_at=parse_optional_datetime(payload.get("created_time") or payload.get("date")),
            )
        except (KeyError, ValueError, PydanticValidationError) as exc:
            raise ExternalServiceError(
                f"Malformed invoice payload: {exc}",
                service=SERVICE_NAME,
                operation=operation,
            ) from exc


__all__ = ["HttpInvoicingGateway"]
