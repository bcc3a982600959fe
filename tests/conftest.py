"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("LEDGER_API_URL", "http://localhost:3000")
os.environ.setdefault("LEDGER_API_TOKEN", "test-token")

from rebate_ledger.cashflow import InMemoryCashFlowLedger
from rebate_ledger.config import LedgerSettings
from rebate_ledger.errors import StorageError
from rebate_ledger.models import (
    AdAccount,
    Agency,
    Platform,
    RebateConfig,
    RebatePeriod,
    RebateReceivable,
)
from rebate_ledger.service import RebateLedger
from rebate_ledger.settlement import InMemorySettlementJournal
from rebate_ledger.storage import EntityKind, InMemoryLedgerStore

BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class FlakyStore(InMemoryLedgerStore):
    """In-memory store whose puts can be made to fail per kind."""

    def __init__(self, records=None):
        super().__init__(records)
        self.failures: dict[EntityKind, int] = {}
        self.skips: dict[EntityKind, int] = {}

    def fail_puts(self, kind: EntityKind, times: int = 1, after: int = 0) -> None:
        """Fail the next ``times`` puts of ``kind`` once ``after`` puts have succeeded."""
        self.failures[kind] = times
        self.skips[kind] = after

    async def put(self, kind, record):
        if self.skips.get(kind, 0) > 0:
            self.skips[kind] -= 1
        elif self.failures.get(kind, 0) > 0:
            self.failures[kind] -= 1
            raise StorageError(f"{kind.value} write failed")
        return await super().put(kind, record)


@pytest.fixture
def settings():
    """Settings with defaults, isolated from the cached instance."""
    return LedgerSettings()


@pytest.fixture
def agency():
    """A 10% monthly-rebate agency."""
    return Agency(
        id="agency-1",
        name="Blue Harbor Media",
        platform=Platform.FB,
        rebate_rate=Decimal("10"),
        rebate_config=RebateConfig(rate=Decimal("10"), period=RebatePeriod.MONTHLY),
        credit_term="consume this month, settle day 15 next month",
    )


@pytest.fixture
def account(agency):
    return AdAccount(
        id="acct-1",
        agency_id=agency.id,
        agency_name=agency.name,
        account_name="Blue Harbor US 1",
        currency="USD",
    )


@pytest.fixture
def seed_records(agency, account):
    return {
        EntityKind.AGENCY: [agency.to_record()],
        EntityKind.AD_ACCOUNT: [account.to_record()],
    }


@pytest.fixture
def store(seed_records):
    return FlakyStore(seed_records)


@pytest.fixture
def cash_flow():
    return InMemoryCashFlowLedger()


@pytest.fixture
def journal():
    return InMemorySettlementJournal()


@pytest.fixture
def ledger(store, cash_flow, journal, settings):
    """RebateLedger over the in-memory collaborators."""
    return RebateLedger(store, cash_flow, journal, settings)


@pytest.fixture
def make_receivable():
    """Factory for receivables created ``age`` minutes after a fixed base time."""

    def _make(
        balance,
        age=0,
        rate="10",
        account_id="acct-1",
        currency="USD",
        receivable_id=None,
    ):
        amount = Decimal(str(balance))
        created = BASE_TIME + timedelta(minutes=age)
        return RebateReceivable(
            id=receivable_id or f"rr-{age}",
            recharge_id=f"rc-{age}",
            ad_account_id=account_id,
            agency_id="agency-1",
            rebate_amount=amount,
            rebate_rate=Decimal(rate),
            currency=currency,
            current_balance=amount,
            created_at=created,
            updated_at=created,
        )

    return _make
