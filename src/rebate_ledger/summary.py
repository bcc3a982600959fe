"""Read-side rollups over ledger records."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from decimal import Decimal

from rebate_ledger.amounts import ZERO
from rebate_ledger.models import AdConsumption, Agency, RebateReceivable


def unsettled_rebate_totals(receivables: Iterable[RebateReceivable]) -> dict[str, Decimal]:
    """Outstanding receivable balance per currency."""
    totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for receivable in receivables:
        if receivable.is_open:
            totals[receivable.currency] += receivable.current_balance
    return dict(totals)


def pending_rebate_by_currency(
    consumptions: Iterable[AdConsumption],
    agencies: Iterable[Agency],
) -> dict[str, Decimal]:
    """Estimated rebate still awaiting settlement, per settlement currency.

    Consumptions of unknown agencies are reported in their own currency.
    """
    agency_currency = {a.id: a.settlement_currency for a in agencies}
    totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for consumption in consumptions:
        if consumption.is_settled or consumption.estimated_rebate <= 0:
            continue
        currency = agency_currency.get(consumption.agency_id) or consumption.currency
        totals[currency] += consumption.estimated_rebate
    return dict(totals)


def group_unsettled_consumptions(
    consumptions: Iterable[AdConsumption],
) -> dict[tuple[str, str], list[AdConsumption]]:
    """Unsettled consumptions keyed by (account id, month), in input order."""
    groups: dict[tuple[str, str], list[AdConsumption]] = defaultdict(list)
    for consumption in consumptions:
        if not consumption.is_settled:
            groups[(consumption.ad_account_id, consumption.month)].append(consumption)
    return dict(groups)
