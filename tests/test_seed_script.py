"""Tests for the seed script's store writes and demo replay."""

import importlib.util
from decimal import Decimal
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from rebate_ledger import InMemoryCashFlowLedger, InMemorySettlementJournal, RebateLedger
from rebate_ledger.models import AdAccount, AdConsumption
from rebate_ledger.storage import EntityKind, InMemoryLedgerStore

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "seed_ledger.py"


@pytest.fixture
def seed_script():
    spec = importlib.util.spec_from_file_location("seed_ledger", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestSeedScript:
    @pytest.mark.asyncio
    async def test_write_seed_logs_counts(self, seed_script):
        store = InMemoryLedgerStore()

        with capture_logs() as logs:
            account_ids = await seed_script.write_seed(store, None)

        assert account_ids == ["acct-bh-us-1", "acct-nw-eu-1", "acct-plain-1"]
        assert store.count(EntityKind.AGENCY) == 3
        written = [log for log in logs if log["event"] == "seed_written"]
        assert written[0]["agencies"] == 3
        assert written[0]["accounts"] == 3

    @pytest.mark.asyncio
    async def test_demo_settles_every_unsettled_month(self, seed_script, settings):
        store = InMemoryLedgerStore()
        account_ids = await seed_script.write_seed(store, None)
        ledger = RebateLedger(
            store, InMemoryCashFlowLedger(), InMemorySettlementJournal(), settings
        )

        await seed_script.replay_demo(ledger, store, account_ids)

        consumptions = [
            AdConsumption.from_record(r) for r in await store.list(EntityKind.AD_CONSUMPTION)
        ]
        assert len(consumptions) == 6
        assert all(c.is_settled for c in consumptions)
        blue_harbor = AdAccount.from_record(await store.get(EntityKind.AD_ACCOUNT, "acct-bh-us-1"))
        # Reconciled: 1000 recharged - 1029.09 spent + 102.91 settled rebate
        assert blue_harbor.current_balance == Decimal("73.82")
