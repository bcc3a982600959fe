"""Tests for draft bill aggregation."""

from decimal import Decimal

import pytest

from rebate_ledger.bills import find_draft, upsert_draft_bill
from rebate_ledger.errors import IdempotencyError
from rebate_ledger.models import BillCategory, BillStatus, BillType


def _upsert(bills, amount, rebate="0", recharge_ids=(), consumption_ids=(), **overrides):
    params = {
        "month": "2024-05",
        "bill_category": BillCategory.PAYABLE,
        "bill_type": BillType.ADVERTISING,
        "agency_id": "agency-1",
        "ad_account_id": "acct-1",
        "currency": "USD",
    }
    params.update(overrides)
    return upsert_draft_bill(
        bills,
        amount_delta=Decimal(amount),
        rebate_delta=Decimal(rebate),
        recharge_ids=recharge_ids,
        consumption_ids=consumption_ids,
        **params,
    )


class TestUpsertDraftBill:
    def test_creates_new_draft(self):
        result = _upsert([], "1000", "100", recharge_ids=["rc-1"])

        assert result.created is True
        bill = result.bill
        assert bill.status == BillStatus.DRAFT
        assert bill.total_amount == Decimal("1000")
        assert bill.rebate_amount == Decimal("100")
        # Advertising payables owe the full recharge
        assert bill.net_amount == Decimal("1000")
        assert bill.recharge_ids == ["rc-1"]

    def test_two_recharges_merge_into_one_bill(self):
        bills = [_upsert([], "1000", recharge_ids=["rc-1"]).bill]

        result = _upsert(bills, "500", recharge_ids=["rc-2"])

        assert result.created is False
        assert result.bill is bills[0]
        assert bills[0].total_amount == Decimal("1500")
        assert bills[0].net_amount == Decimal("1500")
        assert bills[0].recharge_ids == ["rc-1", "rc-2"]

    def test_rebate_bill_nets_to_rebate(self):
        result = _upsert(
            [],
            "500",
            "50",
            consumption_ids=["c-1"],
            bill_category=BillCategory.RECEIVABLE,
            bill_type=BillType.ADVERTISING_REBATE,
        )

        assert result.bill.total_amount == Decimal("500")
        assert result.bill.net_amount == Decimal("50")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"month": "2024-06"},
            {"currency": "EUR"},
            {"ad_account_id": "acct-2"},
            {"agency_id": "agency-2"},
            {"bill_type": BillType.ADVERTISING_REBATE, "bill_category": BillCategory.RECEIVABLE},
        ],
    )
    def test_different_key_creates_separate_bill(self, overrides):
        bills = [_upsert([], "1000", recharge_ids=["rc-1"]).bill]

        result = _upsert(bills, "500", recharge_ids=["rc-2"], **overrides)

        assert result.created is True
        assert bills[0].total_amount == Decimal("1000")

    def test_non_draft_bill_is_never_merged(self):
        approved = _upsert([], "1000", recharge_ids=["rc-1"]).bill
        approved.status = BillStatus.APPROVED

        result = _upsert([approved], "500", recharge_ids=["rc-2"])

        assert result.created is True
        assert approved.total_amount == Decimal("1000")
        assert find_draft([approved], "2024-05", BillType.ADVERTISING, "agency-1", "acct-1", "USD") is None


class TestIdempotence:
    def test_replay_is_a_no_op(self):
        bills = [_upsert([], "1000", recharge_ids=["rc-1"]).bill]

        result = _upsert(bills, "1000", recharge_ids=["rc-1"])

        assert result.changed is False
        assert bills[0].total_amount == Decimal("1000")
        assert bills[0].recharge_ids == ["rc-1"]

    def test_partial_replay_is_rejected(self):
        bills = [_upsert([], "100", consumption_ids=["c-1"]).bill]

        with pytest.raises(IdempotencyError) as exc_info:
            _upsert(bills, "300", consumption_ids=["c-1", "c-2"])

        assert exc_info.value.details["repeated"] == ["c-1"]
        assert bills[0].total_amount == Decimal("100")
