"""Error taxonomy for the billing core."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


class BillingError(Exception):
    """Base class for failures surfaced by the billing core."""

    code = "billing_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        body.update(self.detail)
        return body

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class NotFoundError(BillingError, LookupError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ValidationError(BillingError, ValueError):
    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(BillingError):
    code = "authentication_error"
    status_code = status.HTTP_401_UNAUTHORIZED


class ExternalServiceError(BillingError):
    """A gateway call failed, timed out, or returned something unusable."""

    code = "external_service_error"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        service: str,
        operation: str,
        detail: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, detail={"service": service, "operation": operation, **(detail or {})})
        self.service = service
        self.operation = operation


class ConflictError(BillingError):
    """A uniqueness constraint rejected a write."""

    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class TransientStorageError(BillingError):
    """The ledger store could not be reached; safe to retry."""

    code = "storage_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


__all__ = [
    "AuthenticationError",
    "BillingError",
    "ConflictError",
    "ExternalServiceError",
    "NotFoundError",
    "TransientStorageError",
    "ValidationError",
]
