from __future__ import annotations

import pytest

from backend.app.billing import load_billing_config
from backend.app.billing.config import PAYMENTS_API_URLS


def test_defaults_favour_local_development():
    config = load_billing_config({})

    assert config.gateway_mode == "sandbox"
    assert not config.uses_live_gateways
    assert config.sync_cache_ttl_seconds == 300
    assert config.external_timeout_seconds == 10
    assert config.ledger_retry_attempts == 3
    assert config.ledger_retry_backoff_seconds == 1.0
    assert config.payments_webhook_secret is None
    assert config.payments_api_url == PAYMENTS_API_URLS["sandbox"]
    assert config.db_settings()["dbname"] == "billing_db"


def test_values_are_read_from_environment():
    config = load_billing_config(
        {
            "DB_HOST": "db.internal",
            "DB_PORT": "6543",
            "DB_CONNECT_TIMEOUT": "2.5",
            "BILLING_GATEWAY_MODE": "LIVE",
            "PAYMENTS_ENVIRONMENT": "live",
            "PAYMENTS_WEBHOOK_SECRET": "whsec",
            "INVOICING_API_URL": "https://books.test/api/v3/",
            "SYNC_CACHE_TTL_SECONDS": "60",
            "LEDGER_RETRY_ATTEMPTS": "5",
        }
    )

    assert config.uses_live_gateways
    assert config.payments_api_url == PAYMENTS_API_URLS["live"]
    assert config.payments_webhook_secret == "whsec"
    assert config.invoicing_api_url == "https://books.test/api/v3"
    assert config.sync_cache_ttl_seconds == 60
    assert config.ledger_retry_attempts == 5
    assert config.db_settings() == {
        "host": "db.internal",
        "port": 6543,
        "dbname": "billing_db",
        "user": "billing_user",
        "password": "billing_pass",
        "connect_timeout": 3,
    }


def test_out_of_range_values_are_clamped():
    config = load_billing_config(
        {
            "LEDGER_RETRY_ATTEMPTS": "0",
            "LEDGER_RETRY_BACKOFF_SECONDS": "-1",
            "SYNC_CACHE_TTL_SECONDS": "-5",
            "BILLING_GATEWAY_MODE": "chaos",
        }
    )

    assert config.ledger_retry_attempts == 1
    assert config.ledger_retry_backoff_seconds == 0.0
    assert config.sync_cache_ttl_seconds == 0.0
    assert config.gateway_mode == "sandbox"


@pytest.mark.parametrize("name", ["DB_PORT", "LEDGER_RETRY_ATTEMPTS", "EXTERNAL_TIMEOUT_SECONDS"])
def test_malformed_numbers_name_the_variable(name):
    with pytest.raises(ValueError, match=name):
        load_billing_config({name: "lots"})


def test_negative_connect_timeout_is_rejected():
    with pytest.raises(ValueError, match="DB_CONNECT_TIMEOUT"):
        load_billing_config({"DB_CONNECT_TIMEOUT": "-1"})
