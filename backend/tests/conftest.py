from __future__ import annotations

import pytest

from backend.tests.billing_fakes import (
    FakeInvoicingGateway,
    FakePaymentGateway,
    FixedClock,
    InMemoryLedgerStore,
    SleepRecorder,
)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def ledger() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def invoicing() -> FakeInvoicingGateway:
    return FakeInvoicingGateway()


@pytest.fixture
def payments() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
