"""Monthly rebate settlement.

Settling an account's month converts the estimated rebate on its unsettled
consumptions into spendable balance. The batch touches several records
(consumptions, the account, the cash-flow ledger, a draft bill), so it is
driven by a write-ahead :class:`SettlementStaging` record: each step is
idempotent and recorded in ``steps_done`` as it completes, and an incomplete
record can be replayed after a crash.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import structlog

from rebate_ledger.amounts import ZERO, to_decimal
from rebate_ledger.bills import upsert_draft_bill
from rebate_ledger.cashflow import (
    CashFlowEntry,
    CashFlowLedger,
    EntryCategory,
    EntryStatus,
    EntryType,
)
from rebate_ledger.errors import (
    AccountNotFoundError,
    SettlementError,
    StorageError,
    ValidationError,
)
from rebate_ledger.models import (
    AdAccount,
    AdConsumption,
    Agency,
    BillCategory,
    BillType,
    MonthlyBill,
    new_id,
    utcnow,
)
from rebate_ledger.schedule import parse_month
from rebate_ledger.storage.base import EntityKind, LedgerStore

logger = structlog.get_logger(__name__)


class SettlementStep(str, Enum):
    MARK_SETTLED = "mark_settled"
    CREDIT_BALANCE = "credit_balance"
    CASH_FLOW = "cash_flow"
    BILL = "bill"


STEP_ORDER = (
    SettlementStep.MARK_SETTLED,
    SettlementStep.CREDIT_BALANCE,
    SettlementStep.CASH_FLOW,
    SettlementStep.BILL,
)


@dataclass
class SettlementStaging:
    """Write-ahead record of one settlement batch."""

    ad_account_id: str
    agency_id: str
    month: str
    currency: str
    consumption_ids: list[str]
    total_rebate: Decimal
    total_consumption: Decimal
    settled_at: datetime = field(default_factory=utcnow)
    steps_done: set[str] = field(default_factory=set)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def is_done(self, step: SettlementStep) -> bool:
        return step.value in self.steps_done

    @property
    def is_complete(self) -> bool:
        return all(self.is_done(step) for step in STEP_ORDER)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "adAccountId": self.ad_account_id,
            "agencyId": self.agency_id,
            "month": self.month,
            "currency": self.currency,
            "consumptionIds": list(self.consumption_ids),
            "totalRebate": str(self.total_rebate),
            "totalConsumption": str(self.total_consumption),
            "settledAt": self.settled_at.isoformat(),
            "stepsDone": sorted(self.steps_done),
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> SettlementStaging:
        return cls(
            id=record["id"],
            ad_account_id=record["adAccountId"],
            agency_id=record.get("agencyId", ""),
            month=record["month"],
            currency=record["currency"],
            consumption_ids=list(record["consumptionIds"]),
            total_rebate=to_decimal(record["totalRebate"], "totalRebate"),
            total_consumption=to_decimal(record["totalConsumption"], "totalConsumption"),
            settled_at=datetime.fromisoformat(record["settledAt"]),
            steps_done=set(record.get("stepsDone") or []),
            created_at=datetime.fromisoformat(record["createdAt"]),
        )


class SettlementJournal(Protocol):
    async def save(self, staging: SettlementStaging) -> None: ...

    async def pending(self) -> list[SettlementStaging]: ...

    async def complete(self, staging_id: str) -> None: ...


class InMemorySettlementJournal:
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    async def save(self, staging: SettlementStaging) -> None:
        self._records[staging.id] = staging.to_record()

    async def pending(self) -> list[SettlementStaging]:
        return [SettlementStaging.from_record(r) for r in self._records.values()]

    async def complete(self, staging_id: str) -> None:
        self._records.pop(staging_id, None)


class FileSettlementJournal:
    """One JSON file per staging record, replaced atomically on every save."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, staging_id: str) -> Path:
        return self.directory / f"settlement-{staging_id}.json"

    async def save(self, staging: SettlementStaging) -> None:
        path = self._path(staging.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(staging.to_record(), indent=2), encoding="utf-8")
        os.replace(tmp, path)

    async def pending(self) -> list[SettlementStaging]:
        records = []
        for path in sorted(self.directory.glob("settlement-*.json")):
            records.append(
                SettlementStaging.from_record(json.loads(path.read_text(encoding="utf-8")))
            )
        return sorted(records, key=lambda s: s.created_at)

    async def complete(self, staging_id: str) -> None:
        self._path(staging_id).unlink(missing_ok=True)


def settlement_currency(account: AdAccount, agency: Agency | None) -> str:
    if agency is not None and agency.settlement_currency:
        return agency.settlement_currency
    return account.currency


def plan_settlement(
    account: AdAccount,
    agency: Agency | None,
    month: str,
    consumption_ids: Sequence[str],
    consumptions: Iterable[AdConsumption],
    now: datetime | None = None,
) -> SettlementStaging:
    """Validate a batch and build its staging record. Nothing is mutated.

    ``consumptions`` are the records loaded for ``consumption_ids``; ids with
    no loaded record are reported as missing.
    """
    parse_month(month)
    ids = list(dict.fromkeys(consumption_ids))
    if not ids:
        raise ValidationError("no consumptions selected for settlement")

    by_id = {c.id: c for c in consumptions}
    missing = [cid for cid in ids if cid not in by_id]
    if missing:
        raise SettlementError("consumptions not found", details={"missing": missing})

    problems: dict[str, str] = {}
    for cid in ids:
        consumption = by_id[cid]
        if consumption.ad_account_id != account.id:
            problems[cid] = "belongs to another account"
        elif consumption.month != month:
            problems[cid] = f"booked in {consumption.month}"
        elif consumption.is_settled:
            problems[cid] = "already settled"
    if problems:
        raise SettlementError(
            f"cannot settle {account.id} for {month}",
            details={"consumptions": problems},
        )

    batch = [by_id[cid] for cid in ids]
    return SettlementStaging(
        ad_account_id=account.id,
        agency_id=account.agency_id,
        month=month,
        currency=settlement_currency(account, agency),
        consumption_ids=ids,
        total_rebate=sum((c.estimated_rebate for c in batch), ZERO),
        total_consumption=sum((c.amount for c in batch), ZERO),
        settled_at=now or utcnow(),
    )


class SettlementEngine:
    """Applies staged settlements step by step."""

    def __init__(
        self,
        store: LedgerStore,
        cash_flow: CashFlowLedger,
        journal: SettlementJournal,
    ):
        self._store = store
        self._cash_flow = cash_flow
        self._journal = journal
        self._logger = logger.bind(component="settlement_engine")

    async def stage(self, staging: SettlementStaging) -> None:
        await self._journal.save(staging)
        self._logger.info(
            "settlement_staged",
            staging_id=staging.id,
            ad_account_id=staging.ad_account_id,
            month=staging.month,
            consumptions=len(staging.consumption_ids),
            total_rebate=str(staging.total_rebate),
        )

    async def apply(self, staging: SettlementStaging) -> MonthlyBill | None:
        """Run every outstanding step, then drop the staging record.

        Errors propagate and leave the record in the journal for replay.
        """
        bill: MonthlyBill | None = None
        for step in STEP_ORDER:
            if staging.is_done(step):
                continue
            try:
                if step == SettlementStep.MARK_SETTLED:
                    await self._mark_settled(staging)
                elif step == SettlementStep.CREDIT_BALANCE:
                    await self._credit_balance(staging)
                elif step == SettlementStep.CASH_FLOW:
                    await self._append_cash_flow(staging)
                else:
                    bill = await self._merge_bill(staging)
            except (StorageError, SettlementError) as e:
                self._logger.error(
                    "settlement_step_failed",
                    staging_id=staging.id,
                    step=step.value,
                    error=str(e),
                )
                raise
            staging.steps_done.add(step.value)
            await self._journal.save(staging)

        await self._journal.complete(staging.id)
        self._logger.info(
            "settlement_completed",
            staging_id=staging.id,
            ad_account_id=staging.ad_account_id,
            month=staging.month,
            total_rebate=str(staging.total_rebate),
        )
        return bill

    async def _load_consumptions(self, staging: SettlementStaging) -> list[AdConsumption]:
        consumptions = []
        for cid in staging.consumption_ids:
            record = await self._store.get(EntityKind.AD_CONSUMPTION, cid)
            if record is None:
                raise SettlementError(
                    "staged consumption disappeared",
                    details={"staging_id": staging.id, "consumption_id": cid},
                )
            consumptions.append(AdConsumption.from_record(record))
        return consumptions

    async def _mark_settled(self, staging: SettlementStaging) -> None:
        for consumption in await self._load_consumptions(staging):
            if consumption.is_settled:
                continue
            consumption.is_settled = True
            consumption.settled_at = staging.settled_at
            await self._store.put(EntityKind.AD_CONSUMPTION, consumption.to_record())

    async def _credit_balance(self, staging: SettlementStaging) -> None:
        record = await self._store.get(EntityKind.AD_ACCOUNT, staging.ad_account_id)
        if record is None:
            raise AccountNotFoundError(
                f"ad account {staging.ad_account_id} not found",
                details={"staging_id": staging.id},
            )
        account = AdAccount.from_record(record)
        account.current_balance += staging.total_rebate
        # Settled rebate leaves the receivable counter as it becomes balance
        account.rebate_receivable -= staging.total_rebate
        if account.rebate_receivable < 0:
            account.rebate_receivable = ZERO
        await self._store.put(EntityKind.AD_ACCOUNT, account.to_record())

    async def _append_cash_flow(self, staging: SettlementStaging) -> None:
        for consumption in await self._load_consumptions(staging):
            if consumption.estimated_rebate <= 0:
                continue
            existing = await self._cash_flow.list(
                category=EntryCategory.REBATE_SETTLED.value, related_id=consumption.id
            )
            if existing:
                continue
            await self._cash_flow.append(
                CashFlowEntry(
                    type=EntryType.INCOME,
                    category=EntryCategory.REBATE_SETTLED.value,
                    amount=consumption.estimated_rebate,
                    currency=consumption.currency,
                    related_id=consumption.id,
                    status=EntryStatus.CONFIRMED,
                    summary=f"Advertising rebate settled - {staging.ad_account_id} - {staging.month}",
                    created_at=staging.settled_at,
                )
            )

    async def _merge_bill(self, staging: SettlementStaging) -> MonthlyBill:
        bills = [
            MonthlyBill.from_record(r)
            for r in await self._store.list(
                EntityKind.MONTHLY_BILL, adAccountId=staging.ad_account_id, month=staging.month
            )
        ]
        result = upsert_draft_bill(
            bills,
            month=staging.month,
            bill_category=BillCategory.RECEIVABLE,
            bill_type=BillType.ADVERTISING_REBATE,
            agency_id=staging.agency_id,
            ad_account_id=staging.ad_account_id,
            currency=staging.currency,
            amount_delta=staging.total_consumption,
            rebate_delta=staging.total_rebate,
            consumption_ids=staging.consumption_ids,
            notes=f"Rebate receivable for {staging.ad_account_id} {staging.month}",
        )
        if result.changed:
            await self._store.put(EntityKind.MONTHLY_BILL, result.bill.to_record())
        return result.bill
