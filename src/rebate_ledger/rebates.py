"""Rebate accrual and FIFO proportional write-off.

Accrual happens on recharge: the agency owes ``amount × rate ÷ 100`` back,
tracked as a RebateReceivable that is not spendable.

Write-off happens on consumption. A gross consumption is treated as blended
spend in which the fraction ``rate ÷ (100 + rate)`` is funded by rebate, so
each consumption consumes that share of the outstanding receivables, oldest
first. With a 10% agency, 1,100 of spend consumes 100 of rebate.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

import structlog

from rebate_ledger.amounts import CENT, HUNDRED, ZERO, percent_of, quantize
from rebate_ledger.errors import ValidationError
from rebate_ledger.models import (
    AdAccount,
    AdRecharge,
    Agency,
    RebateReceivable,
    ReceivableAdjustment,
    ReceivableStatus,
    WriteoffRecord,
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)

DEFAULT_SETTLED_THRESHOLD = CENT


class WriteoffRatePolicy(str, Enum):
    """Which rebate rate drives the write-off ratio.

    CONSUMPTION uses the consumption's snapshot rate for every receivable.
    RECEIVABLE uses each receivable's own rate captured at recharge time.
    """

    CONSUMPTION = "consumption"
    RECEIVABLE = "receivable"


def rate_for(agency: Agency | None) -> Decimal:
    """Agency's current effective rebate rate; zero when the agency is unknown."""
    if agency is None:
        return ZERO
    return agency.effective_rebate_rate


def writeoff_ratio(rate: Decimal) -> Decimal:
    """Fraction of gross consumption funded by rebate: ``rate / (100 + rate)``."""
    if rate <= 0:
        return ZERO
    return rate / (HUNDRED + rate)


def accrue_rebate(
    account: AdAccount,
    recharge: AdRecharge,
    existing: RebateReceivable | None = None,
) -> RebateReceivable | None:
    """Create the receivable for a confirmed recharge.

    Returns ``None`` when the recharge carries no rebate or a receivable for
    it already exists.
    """
    if recharge.rebate_amount <= 0 or existing is not None:
        return None
    return RebateReceivable(
        id=new_id(),
        recharge_id=recharge.id,
        ad_account_id=account.id,
        agency_id=recharge.agency_id,
        rebate_amount=recharge.rebate_amount,
        rebate_rate=recharge.rebate_rate,
        currency=recharge.currency,
        current_balance=recharge.rebate_amount,
    )


def apply_recharge_to_account(account: AdAccount, recharge: AdRecharge) -> None:
    """Credit principal to the balance and rebate to the receivable counter."""
    account.current_balance += recharge.amount
    account.rebate_receivable += recharge.rebate_amount


def estimated_rebate(amount: Decimal, rate: Decimal) -> Decimal:
    return percent_of(amount, rate)


def fifo_order(receivables: Iterable[RebateReceivable]) -> list[RebateReceivable]:
    """Oldest-created first; input order breaks ties."""
    return sorted(receivables, key=lambda r: r.created_at)


def open_receivables(
    receivables: Iterable[RebateReceivable], ad_account_id: str, currency: str
) -> list[RebateReceivable]:
    """Unsettled receivables with a positive balance for one account + currency."""
    return fifo_order(
        r
        for r in receivables
        if r.ad_account_id == ad_account_id and r.currency == currency and r.is_open
    )


@dataclass
class WriteoffResult:
    """Outcome of writing a consumption off against receivables."""

    consumption_id: str
    touched: list[RebateReceivable] = field(default_factory=list)
    total_written_off: Decimal = ZERO
    unallocated_consumption: Decimal = ZERO


def _close_or_progress(
    receivable: RebateReceivable, threshold: Decimal
) -> None:
    if receivable.current_balance <= threshold:
        receivable.advance_status(ReceivableStatus.SETTLED)
    else:
        receivable.advance_status(ReceivableStatus.IN_WRITEOFF)


def write_off(
    receivables: Iterable[RebateReceivable],
    consumption_id: str,
    consumption_amount: Decimal,
    consumption_rate: Decimal,
    policy: WriteoffRatePolicy = WriteoffRatePolicy.CONSUMPTION,
    settled_threshold: Decimal = DEFAULT_SETTLED_THRESHOLD,
    now: datetime | None = None,
) -> WriteoffResult:
    """Write a consumption off against receivables in FIFO order.

    ``receivables`` must already be filtered to the consumption's account and
    currency (see :func:`open_receivables`); they are mutated in place and the
    ones that changed are returned on the result.
    """
    timestamp = now or utcnow()
    result = WriteoffResult(consumption_id=consumption_id)
    remaining = consumption_amount

    for receivable in fifo_order(receivables):
        if remaining <= 0:
            break
        if not receivable.is_open:
            continue

        if policy == WriteoffRatePolicy.RECEIVABLE:
            ratio = writeoff_ratio(receivable.rebate_rate)
        else:
            ratio = writeoff_ratio(consumption_rate)
        if ratio <= 0:
            if policy == WriteoffRatePolicy.CONSUMPTION:
                break
            continue

        amount = min(quantize(remaining * ratio), receivable.current_balance)
        if amount <= 0:
            break

        new_balance = receivable.current_balance - amount
        if new_balance < 0:
            new_balance = ZERO
        receivable.current_balance = new_balance
        receivable.writeoff_records.append(
            WriteoffRecord(
                consumption_id=consumption_id,
                amount=amount,
                remaining_balance=new_balance,
                created_at=timestamp,
            )
        )
        _close_or_progress(receivable, settled_threshold)
        receivable.updated_at = timestamp

        result.touched.append(receivable)
        result.total_written_off += amount
        remaining -= amount / ratio

        logger.debug(
            "rebate_written_off",
            receivable_id=receivable.id,
            consumption_id=consumption_id,
            amount=str(amount),
            remaining_balance=str(new_balance),
            status=receivable.status.value,
        )

    result.unallocated_consumption = remaining if remaining > 0 else ZERO
    return result


def adjust_receivable(
    receivable: RebateReceivable,
    amount: Decimal,
    reason: str,
    adjusted_by: str,
    settled_threshold: Decimal = DEFAULT_SETTLED_THRESHOLD,
    now: datetime | None = None,
) -> ReceivableAdjustment:
    """Manually reduce a receivable's balance.

    ``amount`` is the signed change and must be negative; the balance is
    floored at zero. Settled receivables cannot be adjusted.
    """
    if amount >= 0:
        raise ValidationError(
            "receivable adjustments must be negative", details={"amount": str(amount)}
        )
    if not reason or not reason.strip():
        raise ValidationError("adjustment reason is required")
    if receivable.status == ReceivableStatus.SETTLED:
        raise ValidationError(
            "receivable is already settled", details={"receivable_id": receivable.id}
        )

    timestamp = now or utcnow()
    before = receivable.current_balance
    after = before + amount
    if after < 0:
        after = ZERO
    adjustment = ReceivableAdjustment(
        amount=after - before,
        reason=reason.strip(),
        adjusted_by=adjusted_by,
        balance_before=before,
        balance_after=after,
        adjusted_at=timestamp,
    )
    receivable.current_balance = after
    receivable.adjustments.append(adjustment)
    _close_or_progress(receivable, settled_threshold)
    receivable.updated_at = timestamp
    return adjustment
