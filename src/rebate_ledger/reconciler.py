"""Balance reconciliation.

An account's balance is a projection of its history:

    balance = Σ recharge.amount − Σ consumption.amount + Σ settled rebate

where the settled-rebate term only counts confirmed "rebate settled"
cash-flow entries that point at a consumption of the account which is itself
marked settled. The persisted balance is a cache of that projection and is
rewritten only when it has drifted by more than the configured epsilon.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

import structlog

from rebate_ledger.amounts import CENT, ZERO
from rebate_ledger.cashflow import CashFlowEntry, CashFlowLedger, EntryCategory
from rebate_ledger.models import AdAccount, AdConsumption, AdRecharge
from rebate_ledger.storage.base import EntityKind, LedgerStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BalanceProjection:
    """Balances derived from history for one account."""

    ad_account_id: str
    total_recharge: Decimal
    total_consumption: Decimal
    total_settled_rebate: Decimal
    total_accrued_rebate: Decimal

    @property
    def current_balance(self) -> Decimal:
        value = self.total_recharge - self.total_consumption + self.total_settled_rebate
        return value if value > 0 else ZERO

    @property
    def rebate_receivable(self) -> Decimal:
        value = self.total_accrued_rebate - self.total_settled_rebate
        return value if value > 0 else ZERO


@dataclass(frozen=True)
class ReconcileResult:
    ad_account_id: str
    previous_balance: Decimal
    current_balance: Decimal
    previous_rebate_receivable: Decimal
    rebate_receivable: Decimal
    persisted: bool


def _related_ids(entry: CashFlowEntry) -> list[str]:
    # Older settlement rows joined every consumption id into one field
    return [part.strip() for part in (entry.related_id or "").split(",") if part.strip()]


def settled_rebates_by_account(
    consumptions: Iterable[AdConsumption],
    entries: Iterable[CashFlowEntry],
) -> dict[str, Decimal]:
    """Confirmed settled rebate per account, matched through settled consumptions."""
    settled = {c.id: c for c in consumptions if c.is_settled}
    totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for entry in entries:
        if not entry.is_confirmed_rebate_settlement:
            continue
        for related in _related_ids(entry):
            consumption = settled.get(related)
            if consumption is not None:
                totals[consumption.ad_account_id] += entry.amount
                break
    return dict(totals)


def reconcile(
    account_ids: Iterable[str],
    recharges: Iterable[AdRecharge],
    consumptions: Iterable[AdConsumption],
    entries: Iterable[CashFlowEntry],
) -> dict[str, BalanceProjection]:
    """Project balances for the given accounts from the full history."""
    consumption_list = list(consumptions)
    recharge_totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    accrued_totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    consumption_totals: dict[str, Decimal] = defaultdict(lambda: ZERO)

    for recharge in recharges:
        recharge_totals[recharge.ad_account_id] += recharge.amount
        accrued_totals[recharge.ad_account_id] += recharge.rebate_amount
    for consumption in consumption_list:
        consumption_totals[consumption.ad_account_id] += consumption.amount
    settled = settled_rebates_by_account(consumption_list, entries)

    return {
        account_id: BalanceProjection(
            ad_account_id=account_id,
            total_recharge=recharge_totals[account_id],
            total_consumption=consumption_totals[account_id],
            total_settled_rebate=settled.get(account_id, ZERO),
            total_accrued_rebate=accrued_totals[account_id],
        )
        for account_id in account_ids
    }


def has_drifted(persisted: Decimal, projected: Decimal, epsilon: Decimal) -> bool:
    return abs(projected - persisted) > epsilon


class BalanceReconciler:
    """Re-derives persisted account balances from history."""

    def __init__(
        self,
        store: LedgerStore,
        cash_flow: CashFlowLedger,
        epsilon: Decimal = CENT,
    ):
        self._store = store
        self._cash_flow = cash_flow
        self._epsilon = epsilon
        self._logger = logger.bind(component="balance_reconciler")

    async def _load_history(
        self, ad_account_id: str | None = None
    ) -> tuple[list[AdRecharge], list[AdConsumption], list[CashFlowEntry]]:
        filters = {"adAccountId": ad_account_id} if ad_account_id else {}
        recharges = [
            AdRecharge.from_record(r)
            for r in await self._store.list(EntityKind.AD_RECHARGE, **filters)
        ]
        consumptions = [
            AdConsumption.from_record(r)
            for r in await self._store.list(EntityKind.AD_CONSUMPTION, **filters)
        ]
        entries = await self._cash_flow.list(category=EntryCategory.REBATE_SETTLED.value)
        return recharges, consumptions, entries

    async def _apply(
        self, account: AdAccount, projection: BalanceProjection
    ) -> ReconcileResult:
        new_balance = projection.current_balance
        new_receivable = projection.rebate_receivable
        balance_drift = has_drifted(account.current_balance, new_balance, self._epsilon)
        receivable_drift = has_drifted(
            account.rebate_receivable, new_receivable, self._epsilon
        )
        # Clamping never waits for the epsilon
        negative = account.current_balance < 0 or account.rebate_receivable < 0

        result = ReconcileResult(
            ad_account_id=account.id,
            previous_balance=account.current_balance,
            current_balance=new_balance if (balance_drift or negative) else account.current_balance,
            previous_rebate_receivable=account.rebate_receivable,
            rebate_receivable=new_receivable
            if (receivable_drift or negative)
            else account.rebate_receivable,
            persisted=balance_drift or receivable_drift or negative,
        )
        if not result.persisted:
            return result

        account.current_balance = result.current_balance
        account.rebate_receivable = result.rebate_receivable
        await self._store.put(EntityKind.AD_ACCOUNT, account.to_record())
        self._logger.info(
            "balance_drift_corrected",
            ad_account_id=account.id,
            previous_balance=str(result.previous_balance),
            current_balance=str(result.current_balance),
            previous_rebate_receivable=str(result.previous_rebate_receivable),
            rebate_receivable=str(result.rebate_receivable),
        )
        return result

    async def reconcile_account(self, account: AdAccount) -> ReconcileResult:
        """Reconcile one account, persisting only on drift."""
        recharges, consumptions, entries = await self._load_history(account.id)
        # Entries for other accounts' consumptions find no match and drop out
        projection = reconcile([account.id], recharges, consumptions, entries)[account.id]
        return await self._apply(account, projection)

    async def reconcile_all(self) -> list[ReconcileResult]:
        """Reconcile every account in the store."""
        accounts = [
            AdAccount.from_record(r) for r in await self._store.list(EntityKind.AD_ACCOUNT)
        ]
        recharges, consumptions, entries = await self._load_history()
        projections = reconcile([a.id for a in accounts], recharges, consumptions, entries)
        results = [await self._apply(a, projections[a.id]) for a in accounts]
        corrected = sum(1 for r in results if r.persisted)
        self._logger.info("reconcile_completed", accounts=len(results), corrected=corrected)
        return results
