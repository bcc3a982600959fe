"""Tests for balance reconciliation."""

from datetime import date
from decimal import Decimal

import pytest
from structlog.testing import capture_logs

from rebate_ledger.cashflow import (
    CashFlowEntry,
    EntryCategory,
    EntryStatus,
    EntryType,
    InMemoryCashFlowLedger,
)
from rebate_ledger.models import AdAccount, AdConsumption, AdRecharge
from rebate_ledger.reconciler import BalanceReconciler, reconcile
from rebate_ledger.storage import EntityKind, InMemoryLedgerStore


def _recharge(rid, amount, rebate="0", account_id="acct-1"):
    return AdRecharge(
        id=rid,
        ad_account_id=account_id,
        agency_id="agency-1",
        amount=Decimal(amount),
        currency="USD",
        date=date(2024, 5, 1),
        month="2024-05",
        rebate_amount=Decimal(rebate),
    )


def _consumption(cid, amount, settled=False, account_id="acct-1", rebate="0"):
    return AdConsumption(
        id=cid,
        ad_account_id=account_id,
        agency_id="agency-1",
        month="2024-05",
        date=date(2024, 5, 2),
        amount=Decimal(amount),
        currency="USD",
        estimated_rebate=Decimal(rebate),
        is_settled=settled,
    )


def _settled_entry(related_id, amount, status=EntryStatus.CONFIRMED, is_reversal=False):
    return CashFlowEntry(
        type=EntryType.INCOME,
        category=EntryCategory.REBATE_SETTLED.value,
        amount=Decimal(amount),
        currency="USD",
        related_id=related_id,
        status=status,
        is_reversal=is_reversal,
    )


class TestReconcileProjection:
    """Tests for the pure balance projection."""

    def test_recharge_minus_consumption_plus_settled_rebate(self):
        projections = reconcile(
            ["acct-1"],
            [_recharge("rc-1", "1000", rebate="100")],
            [_consumption("c-1", "200", settled=True), _consumption("c-2", "300")],
            [_settled_entry("c-1", "20")],
        )

        projection = projections["acct-1"]
        assert projection.current_balance == Decimal("520")
        assert projection.rebate_receivable == Decimal("80")

    def test_entries_for_unsettled_consumptions_are_ignored(self):
        projections = reconcile(
            ["acct-1"],
            [_recharge("rc-1", "1000")],
            [_consumption("c-1", "200", settled=False)],
            [_settled_entry("c-1", "20")],
        )

        assert projections["acct-1"].current_balance == Decimal("800")

    @pytest.mark.parametrize(
        "entry",
        [
            _settled_entry("c-1", "20", status=EntryStatus.PENDING),
            _settled_entry("c-1", "20", is_reversal=True),
            _settled_entry("c-404", "20"),
        ],
    )
    def test_unmatched_entries_are_ignored(self, entry):
        projections = reconcile(
            ["acct-1"],
            [_recharge("rc-1", "1000")],
            [_consumption("c-1", "200", settled=True)],
            [entry],
        )

        assert projections["acct-1"].current_balance == Decimal("800")

    def test_entries_credit_the_consumptions_account(self):
        projections = reconcile(
            ["acct-1", "acct-2"],
            [_recharge("rc-1", "100"), _recharge("rc-2", "100", account_id="acct-2")],
            [_consumption("c-2", "50", settled=True, account_id="acct-2")],
            [_settled_entry("c-2", "5")],
        )

        assert projections["acct-1"].current_balance == Decimal("100")
        assert projections["acct-2"].current_balance == Decimal("55")

    def test_joined_related_ids_count_once(self):
        projections = reconcile(
            ["acct-1"],
            [_recharge("rc-1", "1000")],
            [
                _consumption("c-1", "200", settled=True),
                _consumption("c-2", "300", settled=True),
            ],
            [_settled_entry("c-1,c-2", "50")],
        )

        assert projections["acct-1"].current_balance == Decimal("550")

    def test_balance_is_clamped_at_zero(self):
        projections = reconcile(
            ["acct-1"],
            [_recharge("rc-1", "100")],
            [_consumption("c-1", "150")],
            [],
        )

        assert projections["acct-1"].current_balance == Decimal("0")

    def test_account_without_history(self):
        projection = reconcile(["acct-9"], [], [], [])["acct-9"]

        assert projection.current_balance == Decimal("0")
        assert projection.rebate_receivable == Decimal("0")


def _store_with(account_balance, rebate_receivable="0"):
    account = AdAccount(
        id="acct-1",
        agency_id="agency-1",
        account_name="Blue Harbor US 1",
        currency="USD",
        current_balance=Decimal(account_balance),
        rebate_receivable=Decimal(rebate_receivable),
    )
    return InMemoryLedgerStore(
        {
            EntityKind.AD_ACCOUNT: [account.to_record()],
            EntityKind.AD_RECHARGE: [_recharge("rc-1", "1000").to_record()],
        }
    ), account


class TestBalanceReconciler:
    """Tests for drift detection and persistence."""

    @pytest.mark.asyncio
    async def test_small_drift_is_not_persisted(self):
        store, account = _store_with("1000.005")
        reconciler = BalanceReconciler(store, InMemoryCashFlowLedger())

        result = await reconciler.reconcile_account(account)

        assert result.persisted is False
        stored = await store.get(EntityKind.AD_ACCOUNT, "acct-1")
        assert Decimal(stored["currentBalance"]) == Decimal("1000.005")

    @pytest.mark.asyncio
    async def test_drift_is_corrected_and_logged(self):
        store, account = _store_with("900")

        with capture_logs() as logs:
            reconciler = BalanceReconciler(store, InMemoryCashFlowLedger())
            result = await reconciler.reconcile_account(account)

        assert result.persisted is True
        assert result.previous_balance == Decimal("900")
        assert result.current_balance == Decimal("1000")
        stored = await store.get(EntityKind.AD_ACCOUNT, "acct-1")
        assert Decimal(stored["currentBalance"]) == Decimal("1000")
        drift_logs = [log for log in logs if log["event"] == "balance_drift_corrected"]
        assert len(drift_logs) == 1
        assert drift_logs[0]["previous_balance"] == "900"

    @pytest.mark.asyncio
    async def test_negative_balance_is_always_clamped(self):
        store, account = _store_with("1000")
        await store.put(
            EntityKind.AD_CONSUMPTION, _consumption("c-1", "1000.004").to_record()
        )
        account.current_balance = Decimal("-0.004")

        result = await BalanceReconciler(store, InMemoryCashFlowLedger()).reconcile_account(
            account
        )

        assert result.persisted is True
        assert result.current_balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_custom_epsilon(self):
        store, account = _store_with("999.50")
        reconciler = BalanceReconciler(store, InMemoryCashFlowLedger(), epsilon=Decimal("1"))

        result = await reconciler.reconcile_account(account)

        assert result.persisted is False

    @pytest.mark.asyncio
    async def test_reconcile_all(self):
        store, _ = _store_with("0")
        other = AdAccount(
            id="acct-2", agency_id="agency-1", account_name="Other", currency="USD"
        )
        await store.put(EntityKind.AD_ACCOUNT, other.to_record())

        results = await BalanceReconciler(store, InMemoryCashFlowLedger()).reconcile_all()

        by_id = {r.ad_account_id: r for r in results}
        assert by_id["acct-1"].persisted is True
        assert by_id["acct-1"].current_balance == Decimal("1000")
        assert by_id["acct-2"].persisted is False
