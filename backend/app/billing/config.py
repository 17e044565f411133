"""Billing configuration helpers."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

PAYMENTS_API_URLS = {
    "live": "https://api.gocardless.com",
    "sandbox": "https://api-sandbox.gocardless.com",
}


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the ledger store, external gateways and sync throttling."""

    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout: int
    gateway_mode: str
    invoicing_api_url: str
    invoicing_token_url: str
    invoicing_client_id: Optional[str]
    invoicing_client_secret: Optional[str]
    invoicing_refresh_token: Optional[str]
    invoicing_organization_id: Optional[str]
    payments_access_token: Optional[str]
    payments_environment: str
    payments_webhook_secret: Optional[str]
    external_timeout_seconds: float
    sync_cache_ttl_seconds: float
    ledger_retry_attempts: int
    ledger_retry_backoff_seconds: float

    @property
    def payments_api_url(self) -> str:
        return PAYMENTS_API_URLS.get(self.payments_environment, PAYMENTS_API_URLS["sandbox"])

    @property
    def uses_live_gateways(self) -> bool:
        return self.gateway_mode == "live"

    def db_settings(self) -> Dict[str, Any]:
        """Keyword arguments accepted by ``psycopg2.connect``."""

        return dict(
            host=self.db_host,
            port=self.db_port,
            dbname=self.db_name,
            user=self.db_user,
            password=self.db_password,
            connect_timeout=self.db_connect_timeout,
        )


def _to_int(value: Optional[str], *, name: str, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _to_float(value: Optional[str], *, name: str, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _choice(value: Optional[str], *, allowed: set, default: str) -> str:
    lowered = (value or "").strip().lower()
    return lowered if lowered in allowed else default


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    connect_timeout = _to_float(env_mapping.get("DB_CONNECT_TIMEOUT"), name="DB_CONNECT_TIMEOUT", default=5.0)
    if connect_timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")

    return BillingConfig(
        db_host=env_mapping.get("DB_HOST", "127.0.0.1"),
        db_port=_to_int(env_mapping.get("DB_PORT"), name="DB_PORT", default=5432),
        db_name=env_mapping.get("DB_NAME", "billing_db"),
        db_user=env_mapping.get("DB_USER", "billing_user"),
        db_password=env_mapping.get("DB_PASSWORD", "billing_pass"),
        db_connect_timeout=int(math.ceil(connect_timeout)),
        gateway_mode=_choice(env_mapping.get("BILLING_GATEWAY_MODE"), allowed={"sandbox", "live"}, default="sandbox"),
        invoicing_api_url=env_mapping.get("INVOICING_API_URL", "https://www.zohoapis.com/books/v3").rstrip("/"),
        invoicing_token_url=env_mapping.get("INVOICING_TOKEN_URL", "https://accounts.zoho.com/oauth/v2/token"),
        invoicing_client_id=env_mapping.get("INVOICING_CLIENT_ID") or None,
        invoicing_client_secret=env_mapping.get("INVOICING_CLIENT_SECRET") or None,
        invoicing_refresh_token=env_mapping.get("INVOICING_REFRESH_TOKEN") or None,
        invoicing_organization_id=env_mapping.get("INVOICING_ORGANIZATION_ID") or None,
        payments_access_token=env_mapping.get("PAYMENTS_ACCESS_TOKEN") or None,
        payments_environment=_choice(env_mapping.get("PAYMENTS_ENVIRONMENT"), allowed={"sandbox", "live"}, default="sandbox"),
        payments_webhook_secret=env_mapping.get("PAYMENTS_WEBHOOK_SECRET") or None,
        external_timeout_seconds=max(
            0.1,
            _to_float(env_mapping.get("EXTERNAL_TIMEOUT_SECONDS"), name="EXTERNAL_TIMEOUT_SECONDS", default=10.0),
        ),
        sync_cache_ttl_seconds=max(
            0.0,
            _to_float(env_mapping.get("SYNC_CACHE_TTL_SECONDS"), name="SYNC_CACHE_TTL_SECONDS", default=300.0),
        ),
        ledger_retry_attempts=max(
            1,
            _to_int(env_mapping.get("LEDGER_RETRY_ATTEMPTS"), name="LEDGER_RETRY_ATTEMPTS", default=3),
        ),
        ledger_retry_backoff_seconds=max(
            0.0,
            _to_float(
                env_mapping.get("LEDGER_RETRY_BACKOFF_SECONDS"),
                name="LEDGER_RETRY_BACKOFF_SECONDS",
                default=1.0,
            ),
        ),
    )


__all__ = ["BillingConfig", "PAYMENTS_API_URLS", "load_billing_config"]
