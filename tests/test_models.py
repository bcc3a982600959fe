"""Tests for ledger entities and their records."""

from datetime import date
from decimal import Decimal

from rebate_ledger.models import (
    AdConsumption,
    AdRecharge,
    Agency,
    BillCategory,
    BillType,
    MonthlyBill,
    PaymentStatus,
    RebateConfig,
    RebateReceivable,
    ReceivableStatus,
)


class TestAgency:
    def test_effective_rate_prefers_config(self, agency):
        agency.rebate_rate = Decimal("6")
        assert agency.effective_rebate_rate == Decimal("10")

    def test_zero_config_rate_falls_back(self, agency):
        agency.rebate_config = RebateConfig(rate=Decimal("0"))
        agency.rebate_rate = Decimal("6")
        assert agency.effective_rebate_rate == Decimal("6")

    def test_record_round_trip(self, agency):
        restored = Agency.from_record(agency.to_record())
        assert restored == agency


class TestLegacyRecords:
    def test_consumption_without_flag_is_unsettled(self):
        consumption = AdConsumption.from_record(
            {"id": "c1", "adAccountId": "acct-1", "date": "2024-05-03", "amount": 100}
        )
        assert consumption.is_settled is False
        assert consumption.month == "2024-05"
        assert consumption.date == date(2024, 5, 3)

    def test_only_explicit_true_is_settled(self):
        consumption = AdConsumption.from_record(
            {"id": "c1", "adAccountId": "acct-1", "date": "2024-05-03", "isSettled": "true"}
        )
        assert consumption.is_settled is False

    def test_chinese_status_values(self):
        receivable = RebateReceivable.from_record(
            {
                "id": "rr1",
                "rechargeId": "rc1",
                "adAccountId": "acct-1",
                "rebateAmount": 100,
                "currentBalance": 40,
                "status": "核销中",
            }
        )
        assert receivable.status == ReceivableStatus.IN_WRITEOFF
        assert receivable.current_balance == Decimal("40")

    def test_recharge_defaults_to_pending(self):
        recharge = AdRecharge.from_record(
            {"id": "rc1", "adAccountId": "acct-1", "amount": "1000", "date": "2024-05-01"}
        )
        assert recharge.payment_status == PaymentStatus.PENDING
        assert recharge.month == "2024-05"

    def test_bill_category_derived_from_type(self):
        bill = MonthlyBill.from_record(
            {"id": "b1", "month": "2024-05", "billType": "广告返点", "currency": "USD"}
        )
        assert bill.bill_type == BillType.ADVERTISING_REBATE
        assert bill.bill_category == BillCategory.RECEIVABLE


class TestReceivableStatus:
    def test_status_never_regresses(self, make_receivable):
        receivable = make_receivable(100)
        receivable.advance_status(ReceivableStatus.SETTLED)
        receivable.advance_status(ReceivableStatus.IN_WRITEOFF)
        assert receivable.status == ReceivableStatus.SETTLED

    def test_writeoff_records_survive_round_trip(self, make_receivable):
        receivable = make_receivable(100)
        receivable.current_balance = Decimal("17.36")
        restored = RebateReceivable.from_record(receivable.to_record())
        assert restored.current_balance == Decimal("17.36")
        assert restored.created_at == receivable.created_at
