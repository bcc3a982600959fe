"""Tests for read-side rebate rollups."""

from datetime import date
from decimal import Decimal

from rebate_ledger.models import AdConsumption, Agency, ReceivableStatus
from rebate_ledger.summary import (
    group_unsettled_consumptions,
    pending_rebate_by_currency,
    unsettled_rebate_totals,
)


def _consumption(cid, rebate, account_id="acct-1", month="2024-05", currency="USD",
                 agency_id="agency-1", settled=False):
    return AdConsumption(
        id=cid,
        ad_account_id=account_id,
        agency_id=agency_id,
        month=month,
        date=date.fromisoformat(f"{month}-01"),
        amount=Decimal(rebate) * 10,
        currency=currency,
        estimated_rebate=Decimal(rebate),
        is_settled=settled,
    )


def test_unsettled_rebate_totals(make_receivable):
    usd = make_receivable(100, age=0)
    eur = make_receivable(40, age=1, currency="EUR")
    settled = make_receivable(25, age=2)
    settled.status = ReceivableStatus.SETTLED
    drained = make_receivable(0, age=3)

    totals = unsettled_rebate_totals([usd, eur, settled, drained])

    assert totals == {"USD": Decimal("100"), "EUR": Decimal("40")}


def test_pending_rebate_uses_settlement_currency():
    agencies = [
        Agency(id="agency-1", name="Blue Harbor", settlement_currency="CNY"),
        Agency(id="agency-2", name="Northwind"),
    ]
    consumptions = [
        _consumption("c-1", "20"),
        _consumption("c-2", "5", agency_id="agency-2", currency="EUR"),
        _consumption("c-3", "7", agency_id="agency-9"),
        _consumption("c-4", "30", settled=True),
        _consumption("c-5", "0"),
    ]

    totals = pending_rebate_by_currency(consumptions, agencies)

    assert totals == {"CNY": Decimal("20"), "EUR": Decimal("5"), "USD": Decimal("7")}


def test_group_unsettled_consumptions():
    consumptions = [
        _consumption("c-1", "1"),
        _consumption("c-2", "1", month="2024-06"),
        _consumption("c-3", "1"),
        _consumption("c-4", "1", settled=True),
        _consumption("c-5", "1", account_id="acct-2"),
    ]

    groups = group_unsettled_consumptions(consumptions)

    assert [c.id for c in groups[("acct-1", "2024-05")]] == ["c-1", "c-3"]
    assert [c.id for c in groups[("acct-1", "2024-06")]] == ["c-2"]
    assert [c.id for c in groups[("acct-2", "2024-05")]] == ["c-5"]
    assert len(groups) == 3


def test_rollups_are_package_exports():
    import rebate_ledger
    from rebate_ledger import summary

    assert rebate_ledger.group_unsettled_consumptions is summary.group_unsettled_consumptions
    assert rebate_ledger.pending_rebate_by_currency is summary.pending_rebate_by_currency
    assert rebate_ledger.unsettled_rebate_totals is summary.unsettled_rebate_totals
