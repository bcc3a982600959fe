"""Create-or-merge aggregation of draft monthly bills."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal

import structlog

from rebate_ledger.errors import IdempotencyError
from rebate_ledger.models import (
    BillCategory,
    BillStatus,
    BillType,
    MonthlyBill,
    new_id,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BillUpsert:
    """Result of an upsert: the bill and whether anything was written."""

    bill: MonthlyBill
    created: bool
    changed: bool


def recompute_net(bill: MonthlyBill) -> None:
    """Advertising payables owe the full total; rebate receivables net to the rebate."""
    if bill.bill_type == BillType.ADVERTISING:
        bill.net_amount = bill.total_amount
    else:
        bill.net_amount = bill.rebate_amount


def find_draft(
    bills: Iterable[MonthlyBill],
    month: str,
    bill_type: BillType,
    agency_id: str,
    ad_account_id: str,
    currency: str,
) -> MonthlyBill | None:
    key = (month, bill_type, agency_id, ad_account_id, currency)
    for bill in bills:
        if bill.status == BillStatus.DRAFT and bill.key == key:
            return bill
    return None


def upsert_draft_bill(
    bills: Iterable[MonthlyBill],
    month: str,
    bill_category: BillCategory,
    bill_type: BillType,
    agency_id: str,
    ad_account_id: str,
    currency: str,
    amount_delta: Decimal,
    rebate_delta: Decimal,
    recharge_ids: Sequence[str] = (),
    consumption_ids: Sequence[str] = (),
    notes: str | None = None,
) -> BillUpsert:
    """Merge deltas into the matching Draft bill, or seed a new one.

    A retried call whose linked ids are all on the bill already is a no-op.
    A call that repeats only some of them is rejected, since its deltas
    cannot be split per id.
    """
    incoming = [*recharge_ids, *consumption_ids]
    existing = find_draft(bills, month, bill_type, agency_id, ad_account_id, currency)

    if existing is None:
        bill = MonthlyBill(
            id=new_id(),
            month=month,
            bill_category=bill_category,
            bill_type=bill_type,
            agency_id=agency_id,
            ad_account_id=ad_account_id,
            currency=currency,
            total_amount=amount_delta,
            rebate_amount=rebate_delta,
            recharge_ids=list(dict.fromkeys(recharge_ids)),
            consumption_ids=list(dict.fromkeys(consumption_ids)),
            notes=notes,
        )
        recompute_net(bill)
        logger.info(
            "draft_bill_created",
            bill_id=bill.id,
            month=month,
            bill_type=bill_type.value,
            currency=currency,
            total_amount=str(bill.total_amount),
        )
        return BillUpsert(bill=bill, created=True, changed=True)

    already = [linked for linked in incoming if linked in existing.linked_ids]
    if incoming and len(already) == len(incoming):
        logger.info("draft_bill_replay_ignored", bill_id=existing.id, linked_ids=already)
        return BillUpsert(bill=existing, created=False, changed=False)
    if already:
        raise IdempotencyError(
            "bill merge repeats some linked ids",
            details={"bill_id": existing.id, "repeated": already},
        )

    existing.total_amount += amount_delta
    existing.rebate_amount += rebate_delta
    existing.recharge_ids.extend(recharge_ids)
    existing.consumption_ids.extend(consumption_ids)
    if notes:
        existing.notes = notes
    recompute_net(existing)
    logger.info(
        "draft_bill_merged",
        bill_id=existing.id,
        total_amount=str(existing.total_amount),
        rebate_amount=str(existing.rebate_amount),
    )
    return BillUpsert(bill=existing, created=False, changed=True)
