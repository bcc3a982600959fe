"""RebateLedger - the async entry point for ledger operations.

The ledger coordinates the pure engines (accrual and write-off, bill
aggregation, settlement planning, reconciliation) against a persistence
collaborator and the external cash-flow ledger. Every mutating operation on
an ad account runs under that account's lock, so each account has a single
logical writer while different accounts proceed concurrently.

Usage:
    ledger = RebateLedger(InMemoryLedgerStore(), InMemoryCashFlowLedger())
    await ledger.record_recharge("acct-1", "1000")
    await ledger.record_consumption("acct-1", "909.09")
    await ledger.settle_month("acct-1", "2024-05")
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

import structlog

from rebate_ledger.amounts import ZERO, percent_of, positive_amount, rebate_rate, to_decimal
from rebate_ledger.bills import upsert_draft_bill
from rebate_ledger.cashflow import (
    CashFlowEntry,
    CashFlowLedger,
    EntryCategory,
    EntryStatus,
    EntryType,
    InMemoryCashFlowLedger,
)
from rebate_ledger.config import LedgerSettings, get_settings
from rebate_ledger.errors import (
    AccountNotFoundError,
    AgencyNotFoundError,
    LedgerError,
    RecordNotFoundError,
    ValidationError,
)
from rebate_ledger.models import (
    AdAccount,
    AdConsumption,
    AdRecharge,
    Agency,
    BillType,
    MonthlyBill,
    PaymentStatus,
    Platform,
    RebateConfig,
    RebatePeriod,
    RebateReceivable,
    ReceivableAdjustment,
    new_id,
)
from rebate_ledger.rebates import (
    WriteoffRatePolicy,
    WriteoffResult,
    accrue_rebate,
    adjust_receivable,
    apply_recharge_to_account,
    open_receivables,
    rate_for,
    write_off,
)
from rebate_ledger.reconciler import BalanceReconciler, ReconcileResult
from rebate_ledger.schedule import due_date, month_of, rebate_due_date
from rebate_ledger.settlement import (
    FileSettlementJournal,
    InMemorySettlementJournal,
    SettlementEngine,
    SettlementJournal,
    SettlementStaging,
    plan_settlement,
)
from rebate_ledger.storage.base import EntityKind, LedgerStore

logger = structlog.get_logger(__name__)

_AGENCY_FIELDS = {
    "name",
    "platform",
    "rebate_rate",
    "rebate_config",
    "settlement_currency",
    "credit_term",
    "contact",
    "phone",
    "notes",
}


@dataclass
class RechargeResult:
    recharge: AdRecharge
    account: AdAccount
    receivable: RebateReceivable | None = None
    bills: list[MonthlyBill] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ConsumptionResult:
    consumption: AdConsumption
    account: AdAccount
    writeoff: WriteoffResult | None = None
    pending_entry: CashFlowEntry | None = None
    # Spend that exceeded the balance and was not deducted
    clamped_amount: Decimal = ZERO
    warnings: list[str] = field(default_factory=list)


@dataclass
class SettlementResult:
    staging_id: str
    ad_account_id: str
    month: str
    consumption_ids: list[str]
    total_rebate: Decimal
    bill: MonthlyBill | None

    @classmethod
    def from_staging(
        cls, staging: SettlementStaging, bill: MonthlyBill | None
    ) -> SettlementResult:
        return cls(
            staging_id=staging.id,
            ad_account_id=staging.ad_account_id,
            month=staging.month,
            consumption_ids=list(staging.consumption_ids),
            total_rebate=staging.total_rebate,
            bill=bill,
        )


@dataclass
class AgencyUpdate:
    agency: Agency
    accounts_updated: int


class RebateLedger:
    """Advertising rebate ledger over a pluggable store."""

    def __init__(
        self,
        store: LedgerStore,
        cash_flow: CashFlowLedger | None = None,
        journal: SettlementJournal | None = None,
        settings: LedgerSettings | None = None,
    ):
        self._settings = settings or get_settings()
        self._store = store
        self._cash_flow = cash_flow if cash_flow is not None else InMemoryCashFlowLedger()
        if journal is None:
            if self._settings.staging_dir is not None:
                journal = FileSettlementJournal(self._settings.staging_dir)
            else:
                journal = InMemorySettlementJournal()
        self._journal = journal

        self._policy = WriteoffRatePolicy(self._settings.writeoff_rate_policy)
        self._settled_threshold = self._settings.settled_threshold
        self._reconciler = BalanceReconciler(
            store, self._cash_flow, epsilon=self._settings.balance_epsilon
        )
        self._settlement = SettlementEngine(store, self._cash_flow, self._journal)

        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._logger = logger.bind(component="rebate_ledger", policy=self._policy.value)

    @property
    def cash_flow(self) -> CashFlowLedger:
        return self._cash_flow

    @property
    def journal(self) -> SettlementJournal:
        return self._journal

    def lock_for(self, ad_account_id: str) -> asyncio.Lock:
        """The lock serializing writes to one account."""
        return self._locks[ad_account_id]

    # === Loading ===

    async def get_account(self, ad_account_id: str) -> AdAccount:
        record = await self._store.get(EntityKind.AD_ACCOUNT, ad_account_id)
        if record is None:
            raise AccountNotFoundError(
                f"ad account {ad_account_id} not found",
                details={"ad_account_id": ad_account_id},
            )
        return AdAccount.from_record(record)

    async def get_agency(self, agency_id: str) -> Agency:
        record = await self._store.get(EntityKind.AGENCY, agency_id)
        if record is None:
            raise AgencyNotFoundError(
                f"agency {agency_id} not found", details={"agency_id": agency_id}
            )
        return Agency.from_record(record)

    async def _find_agency(self, account: AdAccount) -> Agency | None:
        """Agency for rebate purposes; missing agencies degrade to no rebate."""
        try:
            return await self.get_agency(account.agency_id)
        except AgencyNotFoundError:
            self._logger.warning(
                "agency_not_found",
                ad_account_id=account.id,
                agency_id=account.agency_id,
            )
            return None

    async def _bills_for(self, ad_account_id: str, month: str) -> list[MonthlyBill]:
        return [
            MonthlyBill.from_record(r)
            for r in await self._store.list(
                EntityKind.MONTHLY_BILL, adAccountId=ad_account_id, month=month
            )
        ]

    # === Recharge ===

    async def record_recharge(
        self,
        ad_account_id: str,
        amount: Any,
        on: date | None = None,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        voucher: str | None = None,
        notes: str | None = None,
    ) -> RechargeResult:
        """Credit principal, accrue the agency's rebate and merge draft bills."""
        principal = positive_amount(amount)
        recharge_date = on or date.today()

        async with self.lock_for(ad_account_id):
            account = await self.get_account(ad_account_id)
            agency = await self._find_agency(account)
            rate = rebate_rate(rate_for(agency))

            recharge = AdRecharge(
                id=new_id(),
                ad_account_id=account.id,
                agency_id=account.agency_id,
                amount=principal,
                currency=account.currency,
                date=recharge_date,
                month=month_of(recharge_date),
                rebate_amount=percent_of(principal, rate),
                rebate_rate=rate,
                payment_status=payment_status,
                voucher=voucher,
                notes=notes,
            )
            await self._store.put(EntityKind.AD_RECHARGE, recharge.to_record())
            apply_recharge_to_account(account, recharge)
            await self._store.put(EntityKind.AD_ACCOUNT, account.to_record())

            result = RechargeResult(recharge=recharge, account=account)
            self._logger.info(
                "recharge_recorded",
                recharge_id=recharge.id,
                ad_account_id=account.id,
                amount=str(recharge.amount),
                rebate_amount=str(recharge.rebate_amount),
                currency=recharge.currency,
            )

            try:
                existing = await self._store.list(
                    EntityKind.REBATE_RECEIVABLE, rechargeId=recharge.id
                )
                receivable = accrue_rebate(
                    account,
                    recharge,
                    RebateReceivable.from_record(existing[0]) if existing else None,
                )
                if receivable is not None:
                    await self._store.put(EntityKind.REBATE_RECEIVABLE, receivable.to_record())
                    result.receivable = receivable
            except LedgerError as exc:
                self._logger.warning(
                    "rebate_accrual_failed", recharge_id=recharge.id, error=str(exc)
                )
                result.warnings.append(f"rebate receivable not created: {exc}")

            try:
                result.bills = await self._merge_recharge_bills(recharge)
            except LedgerError as exc:
                self._logger.warning(
                    "recharge_bill_failed", recharge_id=recharge.id, error=str(exc)
                )
                result.warnings.append(f"draft bill not updated: {exc}")

        return result

    async def _merge_recharge_bills(self, recharge: AdRecharge) -> list[MonthlyBill]:
        bills = await self._bills_for(recharge.ad_account_id, recharge.month)
        merged: list[MonthlyBill] = []

        deltas = [(BillType.ADVERTISING, recharge.amount, recharge.rebate_amount)]
        if recharge.rebate_amount > 0:
            deltas.append(
                (BillType.ADVERTISING_REBATE, recharge.rebate_amount, recharge.rebate_amount)
            )
        for bill_type, amount_delta, rebate_delta in deltas:
            upsert = upsert_draft_bill(
                bills,
                month=recharge.month,
                bill_category=bill_type.category,
                bill_type=bill_type,
                agency_id=recharge.agency_id,
                ad_account_id=recharge.ad_account_id,
                currency=recharge.currency,
                amount_delta=amount_delta,
                rebate_delta=rebate_delta,
                recharge_ids=[recharge.id],
            )
            if upsert.changed:
                await self._store.put(EntityKind.MONTHLY_BILL, upsert.bill.to_record())
            if upsert.created:
                bills.append(upsert.bill)
            merged.append(upsert.bill)
        return merged

    async def set_recharge_payment_status(
        self, recharge_id: str, status: PaymentStatus
    ) -> AdRecharge:
        """Move a Pending recharge to Paid or Cancelled.

        Paid and Cancelled are terminal. A cancelled recharge still counts
        toward the reconciled balance.
        """
        if status == PaymentStatus.PENDING:
            raise ValidationError("recharges cannot move back to Pending")
        record = await self._store.get(EntityKind.AD_RECHARGE, recharge_id)
        if record is None:
            raise RecordNotFoundError(
                f"recharge {recharge_id} not found", details={"recharge_id": recharge_id}
            )

        async with self.lock_for(str(record["adAccountId"])):
            recharge = AdRecharge.from_record(
                await self._store.get(EntityKind.AD_RECHARGE, recharge_id) or record
            )
            if recharge.payment_status != PaymentStatus.PENDING:
                raise ValidationError(
                    f"recharge is already {recharge.payment_status.value}",
                    details={"recharge_id": recharge_id},
                )
            recharge.payment_status = status
            await self._store.put(EntityKind.AD_RECHARGE, recharge.to_record())
        self._logger.info(
            "recharge_payment_status_changed", recharge_id=recharge_id, status=status.value
        )
        return recharge

    # === Consumption ===

    async def record_consumption(
        self,
        ad_account_id: str,
        amount: Any,
        on: date | None = None,
        campaign_name: str | None = None,
        store_id: str | None = None,
        voucher: str | None = None,
        notes: str | None = None,
    ) -> ConsumptionResult:
        """Burn spend from an account and write its rebate share off FIFO."""
        spend = positive_amount(amount)
        consumption_date = on or date.today()
        month = month_of(consumption_date)

        async with self.lock_for(ad_account_id):
            account = await self.get_account(ad_account_id)
            agency = await self._find_agency(account)
            rate = rebate_rate(rate_for(agency))

            consumption = AdConsumption(
                id=new_id(),
                ad_account_id=account.id,
                agency_id=account.agency_id,
                month=month,
                date=consumption_date,
                amount=spend,
                currency=account.currency,
                estimated_rebate=percent_of(spend, rate),
                rebate_rate=rate,
                due_date=due_date(agency.credit_term, month) if agency else None,
                rebate_due_date=rebate_due_date(agency.rebate_config, month) if agency else None,
                campaign_name=campaign_name,
                store_id=store_id,
                voucher=voucher,
                notes=notes,
            )
            result = ConsumptionResult(consumption=consumption, account=account)

            remaining = account.current_balance - spend
            if remaining < 0:
                result.clamped_amount = -remaining
                self._logger.warning(
                    "consumption_exceeds_balance",
                    ad_account_id=account.id,
                    balance=str(account.current_balance),
                    amount=str(spend),
                )
                remaining = ZERO
            account.current_balance = remaining

            await self._store.put(EntityKind.AD_CONSUMPTION, consumption.to_record())
            await self._store.put(EntityKind.AD_ACCOUNT, account.to_record())
            self._logger.info(
                "consumption_recorded",
                consumption_id=consumption.id,
                ad_account_id=account.id,
                amount=str(spend),
                estimated_rebate=str(consumption.estimated_rebate),
                balance=str(account.current_balance),
            )

            # Receivables only reference consumptions that were saved
            try:
                result.writeoff = await self._write_off(account, consumption)
            except LedgerError as exc:
                self._logger.warning(
                    "rebate_writeoff_failed", consumption_id=consumption.id, error=str(exc)
                )
                result.warnings.append(f"rebate write-off skipped: {exc}")

            if consumption.estimated_rebate > 0:
                try:
                    result.pending_entry = await self._cash_flow.append(
                        CashFlowEntry(
                            type=EntryType.INCOME,
                            category=EntryCategory.REBATE_PENDING.value,
                            amount=consumption.estimated_rebate,
                            currency=consumption.currency,
                            related_id=consumption.id,
                            status=EntryStatus.PENDING,
                            summary=(
                                f"Advertising rebate pending settlement - "
                                f"{account.account_name} - {month}"
                            ),
                        )
                    )
                except LedgerError as exc:
                    self._logger.warning(
                        "pending_rebate_entry_failed",
                        consumption_id=consumption.id,
                        error=str(exc),
                    )
                    result.warnings.append(f"pending rebate entry not recorded: {exc}")

        return result

    async def _write_off(self, account: AdAccount, consumption: AdConsumption) -> WriteoffResult:
        receivables = [
            RebateReceivable.from_record(r)
            for r in await self._store.list(
                EntityKind.REBATE_RECEIVABLE, adAccountId=account.id
            )
        ]
        outcome = write_off(
            open_receivables(receivables, account.id, consumption.currency),
            consumption_id=consumption.id,
            consumption_amount=consumption.amount,
            consumption_rate=consumption.rebate_rate,
            policy=self._policy,
            settled_threshold=self._settled_threshold,
        )
        for receivable in outcome.touched:
            await self._store.put(EntityKind.REBATE_RECEIVABLE, receivable.to_record())
        return outcome

    # === Settlement ===

    async def settle_month(
        self,
        ad_account_id: str,
        month: str,
        consumption_ids: Sequence[str] | None = None,
    ) -> SettlementResult:
        """Settle an account's month, all or nothing.

        Without ``consumption_ids`` every unsettled consumption of the month
        is settled. A staged settlement left incomplete for the same account
        and month is finished first; when it already covers the request, its
        outcome is returned instead of staging a new batch.
        """
        async with self.lock_for(ad_account_id):
            replayed = await self._replay_staged(ad_account_id, month)
            account = await self.get_account(ad_account_id)
            agency = await self._find_agency(account)

            if consumption_ids is None:
                records = await self._store.list(
                    EntityKind.AD_CONSUMPTION, adAccountId=ad_account_id, month=month
                )
                consumptions = [AdConsumption.from_record(r) for r in records]
                consumption_ids = [c.id for c in consumptions if not c.is_settled]
                if replayed and not consumption_ids:
                    return replayed[-1]
            else:
                covered = {cid for r in replayed for cid in r.consumption_ids}
                if replayed and set(consumption_ids) <= covered:
                    return replayed[-1]
                consumptions = []
                for cid in consumption_ids:
                    record = await self._store.get(EntityKind.AD_CONSUMPTION, cid)
                    if record is not None:
                        consumptions.append(AdConsumption.from_record(record))

            staging = plan_settlement(account, agency, month, consumption_ids, consumptions)
            await self._settlement.stage(staging)
            bill = await self._settlement.apply(staging)

        return SettlementResult.from_staging(staging, bill)

    async def _replay_staged(self, ad_account_id: str, month: str) -> list[SettlementResult]:
        """Finish staged settlements for one account and month. Caller holds the lock."""
        results = []
        for staging in await self._journal.pending():
            if staging.ad_account_id != ad_account_id or staging.month != month:
                continue
            self._logger.info(
                "settlement_replaying",
                staging_id=staging.id,
                ad_account_id=ad_account_id,
                steps_done=sorted(staging.steps_done),
            )
            bill = await self._settlement.apply(staging)
            results.append(SettlementResult.from_staging(staging, bill))
        if results:
            account = await self.get_account(ad_account_id)
            await self._reconciler.reconcile_account(account)
        return results

    async def recover_pending_settlements(self) -> list[str]:
        """Replay staged settlements left incomplete, then reconcile their accounts."""
        recovered = []
        for staging in await self._journal.pending():
            self._logger.info(
                "settlement_recovering",
                staging_id=staging.id,
                ad_account_id=staging.ad_account_id,
                steps_done=sorted(staging.steps_done),
            )
            async with self.lock_for(staging.ad_account_id):
                await self._settlement.apply(staging)
                account = await self.get_account(staging.ad_account_id)
                await self._reconciler.reconcile_account(account)
            recovered.append(staging.id)
        return recovered

    # === Reconciliation ===

    async def reconcile_account(self, ad_account_id: str) -> ReconcileResult:
        async with self.lock_for(ad_account_id):
            account = await self.get_account(ad_account_id)
            return await self._reconciler.reconcile_account(account)

    async def reconcile_all(self) -> list[ReconcileResult]:
        results = []
        for record in await self._store.list(EntityKind.AD_ACCOUNT):
            results.append(await self.reconcile_account(str(record["id"])))
        return results

    # === Receivables ===

    async def adjust_receivable(
        self,
        receivable_id: str,
        amount: Any,
        reason: str,
        adjusted_by: str,
    ) -> ReceivableAdjustment:
        """Manually reduce a receivable's outstanding balance."""
        change = to_decimal(amount)
        record = await self._store.get(EntityKind.REBATE_RECEIVABLE, receivable_id)
        if record is None:
            raise RecordNotFoundError(
                f"receivable {receivable_id} not found",
                details={"receivable_id": receivable_id},
            )
        ad_account_id = str(record["adAccountId"])

        async with self.lock_for(ad_account_id):
            # Re-read under the lock; a write-off may have landed meanwhile
            record = await self._store.get(EntityKind.REBATE_RECEIVABLE, receivable_id)
            if record is None:
                raise RecordNotFoundError(
                    f"receivable {receivable_id} not found",
                    details={"receivable_id": receivable_id},
                )
            receivable = RebateReceivable.from_record(record)
            adjustment = adjust_receivable(
                receivable,
                change,
                reason,
                adjusted_by,
                settled_threshold=self._settled_threshold,
            )
            await self._store.put(EntityKind.REBATE_RECEIVABLE, receivable.to_record())

        self._logger.info(
            "receivable_adjusted",
            receivable_id=receivable_id,
            amount=str(adjustment.amount),
            balance_after=str(adjustment.balance_after),
            adjusted_by=adjusted_by,
        )
        return adjustment

    # === Agencies ===

    async def update_agency(self, agency_id: str, **changes: Any) -> AgencyUpdate:
        """Apply field changes to an agency and cascade a rename to its accounts."""
        unknown = set(changes) - _AGENCY_FIELDS
        if unknown:
            raise ValidationError(
                "unknown agency fields", details={"fields": sorted(unknown)}
            )
        agency = await self.get_agency(agency_id)
        previous_name = agency.name

        if "name" in changes:
            name = str(changes["name"] or "").strip()
            if not name:
                raise ValidationError("agency name is required")
            agency.name = name
        if "platform" in changes:
            try:
                agency.platform = Platform(changes["platform"])
            except ValueError as exc:
                raise ValidationError(
                    f"invalid platform {changes['platform']!r}"
                ) from exc
        if "rebate_rate" in changes:
            agency.rebate_rate = rebate_rate(changes["rebate_rate"])
        if "rebate_config" in changes:
            agency.rebate_config = self._rebate_config(changes["rebate_config"])
        for key in ("settlement_currency", "credit_term", "contact", "phone", "notes"):
            if key in changes:
                setattr(agency, key, changes[key])

        await self._store.put(EntityKind.AGENCY, agency.to_record())
        self._logger.info("agency_updated", agency_id=agency_id, fields=sorted(changes))

        updated = 0
        if agency.name != previous_name:
            updated = await self.cascade_agency_name(agency)
        return AgencyUpdate(agency=agency, accounts_updated=updated)

    @staticmethod
    def _rebate_config(value: Any) -> RebateConfig | None:
        if value is None:
            return None
        if isinstance(value, RebateConfig):
            value = value.to_record()
        if not isinstance(value, dict):
            raise ValidationError("rebate_config must be a mapping")
        try:
            period = RebatePeriod(value.get("period", RebatePeriod.MONTHLY.value))
        except ValueError as exc:
            raise ValidationError(f"invalid rebate period {value.get('period')!r}") from exc
        return RebateConfig(
            rate=rebate_rate(value.get("rate"), "rebate_config.rate"), period=period
        )

    async def cascade_agency_name(self, agency: Agency) -> int:
        """Copy the agency's name onto its accounts; returns how many changed."""
        updated = 0
        for record in await self._store.list(EntityKind.AD_ACCOUNT, agencyId=agency.id):
            async with self.lock_for(str(record["id"])):
                fresh = await self._store.get(EntityKind.AD_ACCOUNT, str(record["id"]))
                if fresh is None:
                    continue
                account = AdAccount.from_record(fresh)
                if account.agency_name == agency.name:
                    continue
                account.agency_name = agency.name
                await self._store.put(EntityKind.AD_ACCOUNT, account.to_record())
                updated += 1
        if updated:
            self._logger.info(
                "agency_name_cascaded", agency_id=agency.id, accounts_updated=updated
            )
        return updated
