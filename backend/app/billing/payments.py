"""HTTP client for the external payment-collection service."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from .exceptions import ExternalServiceError
from .gateways import JsonHttpClient, parse_optional_datetime
from .models import ExternalMandate, ExternalPayment

logger = logging.getLogger(__name__)

SERVICE_NAME = "payments"
API_VERSION = "2015-07-06"


class HttpPaymentGateway:
    """Bearer-token REST client for direct-debit payments and mandates."""

    def __init__(
        self,
        *,
        api_url: str,
        access_token: Optional[str],
        timeout: float = 10.0,
        http_client: Optional[JsonHttpClient] = None,
    ) -> None:
        self._client = http_client or JsonHttpClient(service=SERVICE_NAME, base_url=api_url, timeout=timeout)
        self._access_token = access_token

    def _headers(self, *, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        if not self._access_token:
            raise ExternalServiceError(
                "Payment service access token is not configured",
                service=SERVICE_NAME,
                operation="authenticate",
            )
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "GoCardless-Version": API_VERSION,
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

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
        body: Dict[str, Any] = {
            "amount": amount,
            "currency": currency.upper(),
            "reference": reference,
            "description": description,
            "metadata": dict(metadata or {}),
            "links": {"mandate": mandate_id},
        }
        if charge_date is not None:
            body["charge_date"] = charge_date.date().isoformat()
        payload = self._client.request(
            "POST",
            "payments",
            operation="create_payment",
            body={"payments": body},
            headers=self._headers(idempotency_key=uuid4().hex),
        )
        return self._payment_from_payload(payload.get("payments"), operation="create_payment")

    def list_payments(self, mandate_id: str) -> List[ExternalPayment]:
        payload = self._client.request(
            "GET",
            "payments",
            operation="list_payments",
            params={"mandate": mandate_id},
            headers=self._headers(),
        )
        items = payload.get("payments") or []
        if not isinstance(items, list):
            raise ExternalServiceError(
                "Payment list response is not a list",
                service=SERVICE_NAME,
                operation="list_payments",
            )
        return [self._payment_from_payload(item, operation="list_payments") for item in items]

    def get_mandate(self, mandate_id: str) -> ExternalMandate:
        payload = self._client.request(
            "GET",
            f"mandates/{mandate_id}",
            operation="get_mandate",
            headers=self._headers(),
        )
        mandate = payload.get("mandates")
        if not isinstance(mandate, dict) or not mandate.get("id"):
            raise ExternalServiceError(
                "Mandate payload missing from response",
                service=SERVICE_NAME,
                operation="get_mandate",
            )
        return ExternalMandate(
            mandate_id=str(mandate["id"]),
            status=str(mandate.get("status") or ""),
            scheme=mandate.get("scheme"),
        )

    def _payment_from_payload(self, payload: object, *, operation: str) -> ExternalPayment:
        if not isinstance(payload, dict):
            raise ExternalServiceError(
                "Payment payload missing from response",
                service=SERVICE_NAME,
                operation=operation,
            )
        links = payload.get("links") or {}
        try:
            return ExternalPayment(
                payment_id=str(payload["id"]),
                mandate_id=links.get("mandate"),
                status=str(payload.get("status") or ""),
                amount=int(payload.get("amount") or 0),
                currency=str(payload.get("currency") or "GBP"),
                description=payload.get("description"),
                reference=payload.get("reference"),
                charge_date=parse_optional_datetime(payload.get("charge_date")),
                created_at=parse_optional_datetime(payload.get("created_at")),
            )
        except (KeyError, TypeError, ValueError, PydanticValidationError) as exc:
            raise ExternalServiceError(
                f"Malformed payment payload: {exc}",
                service=SERVICE_NAME,
                operation=operation,
            ) from exc


__all__ = ["HttpPaymentGateway"]
