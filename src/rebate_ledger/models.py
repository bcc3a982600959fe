"""Ledger entities for advertising recharge, consumption and rebate tracking.

Entities are plain dataclasses. At the storage boundary they are converted to
and from dict records whose keys follow the back-office API's camelCase
naming, with money serialized as strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from rebate_ledger.amounts import ZERO, to_decimal


def new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Platform(str, Enum):
    """Advertising platform an agency resells."""

    FB = "FB"
    GOOGLE = "Google"
    TIKTOK = "TikTok"
    OTHER = "OTHER"


class RebatePeriod(str, Enum):
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    CANCELLED = "Cancelled"


class ReceivableStatus(str, Enum):
    """Lifecycle of a rebate receivable. Only ever moves forward."""

    PENDING_WRITEOFF = "PendingWriteoff"
    IN_WRITEOFF = "InWriteoff"
    SETTLED = "Settled"

    @property
    def rank(self) -> int:
        return _RECEIVABLE_RANK[self]


_RECEIVABLE_RANK = {
    ReceivableStatus.PENDING_WRITEOFF: 0,
    ReceivableStatus.IN_WRITEOFF: 1,
    ReceivableStatus.SETTLED: 2,
}


class BillCategory(str, Enum):
    PAYABLE = "Payable"
    RECEIVABLE = "Receivable"


class BillType(str, Enum):
    ADVERTISING = "Advertising"
    ADVERTISING_REBATE = "AdvertisingRebate"

    @property
    def category(self) -> BillCategory:
        if self is BillType.ADVERTISING:
            return BillCategory.PAYABLE
        return BillCategory.RECEIVABLE


class BillStatus(str, Enum):
    DRAFT = "Draft"
    PENDING_FINANCE_REVIEW = "Pending_Finance_Review"
    PENDING_APPROVAL = "Pending_Approval"
    APPROVED = "Approved"
    CASHIER_APPROVED = "Cashier_Approved"
    PAID = "Paid"


# Localized values found in older back-office records.
_ENUM_ALIASES: dict[type[Enum], dict[str, str]] = {
    Platform: {"其他": "OTHER", "Other": "OTHER"},
    RebatePeriod: {"月": "Monthly", "季": "Quarterly"},
    ReceivableStatus: {"待核销": "PendingWriteoff", "核销中": "InWriteoff", "已结清": "Settled"},
    BillType: {"广告": "Advertising", "广告返点": "AdvertisingRebate"},
}


def _enum(enum_cls: type[Enum], value: Any, default: Enum | None = None) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, enum_cls):
        return value
    raw = str(value)
    raw = _ENUM_ALIASES.get(enum_cls, {}).get(raw, raw)
    return enum_cls(raw)


def _money(value: Any, default: Decimal = ZERO) -> Decimal:
    if value is None or value == "":
        return default
    return to_decimal(value)


def _date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class RebateConfig:
    """Agency rebate terms."""

    rate: Decimal
    period: RebatePeriod = RebatePeriod.MONTHLY

    def to_record(self) -> dict[str, Any]:
        return {"rate": str(self.rate), "period": self.period.value}

    @classmethod
    def from_record(cls, record: dict[str, Any] | None) -> RebateConfig | None:
        if not record:
            return None
        return cls(
            rate=_money(record.get("rate")),
            period=_enum(RebatePeriod, record.get("period"), RebatePeriod.MONTHLY),
        )


@dataclass
class Agency:
    """Advertising agency that recharges accounts and owes rebates."""

    id: str
    name: str
    platform: Platform = Platform.OTHER
    rebate_rate: Decimal = ZERO
    rebate_config: RebateConfig | None = None
    settlement_currency: str | None = None
    credit_term: str | None = None
    contact: str | None = None
    phone: str | None = None
    notes: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def effective_rebate_rate(self) -> Decimal:
        """Configured rate, falling back to the legacy flat rate."""
        if self.rebate_config is not None and self.rebate_config.rate:
            return self.rebate_config.rate
        return self.rebate_rate or ZERO

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "platform": self.platform.value,
            "rebateRate": str(self.rebate_rate),
            "rebateConfig": self.rebate_config.to_record() if self.rebate_config else None,
            "settlementCurrency": self.settlement_currency,
            "creditTerm": self.credit_term,
            "contact": self.contact,
            "phone": self.phone,
            "notes": self.notes,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Agency:
        return cls(
            id=str(record["id"]),
            name=record.get("name", ""),
            platform=_enum(Platform, record.get("platform"), Platform.OTHER),
            rebate_rate=_money(record.get("rebateRate")),
            rebate_config=RebateConfig.from_record(record.get("rebateConfig")),
            settlement_currency=record.get("settlementCurrency"),
            credit_term=record.get("creditTerm"),
            contact=record.get("contact"),
            phone=record.get("phone"),
            notes=record.get("notes"),
            created_at=_datetime(record.get("createdAt")) or utcnow(),
        )


@dataclass
class AdAccount:
    """Advertising account funded through an agency."""

    id: str
    agency_id: str
    account_name: str
    currency: str
    agency_name: str = ""
    current_balance: Decimal = ZERO
    rebate_receivable: Decimal = ZERO
    credit_limit: Decimal = ZERO
    country: str | None = None
    notes: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agencyId": self.agency_id,
            "agencyName": self.agency_name,
            "accountName": self.account_name,
            "currency": self.currency,
            "currentBalance": str(self.current_balance),
            "rebateReceivable": str(self.rebate_receivable),
            "creditLimit": str(self.credit_limit),
            "country": self.country,
            "notes": self.notes,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> AdAccount:
        return cls(
            id=str(record["id"]),
            agency_id=str(record.get("agencyId", "")),
            agency_name=record.get("agencyName") or "",
            account_name=record.get("accountName", ""),
            currency=record.get("currency", "USD"),
            current_balance=_money(record.get("currentBalance")),
            rebate_receivable=_money(record.get("rebateReceivable")),
            credit_limit=_money(record.get("creditLimit")),
            country=record.get("country"),
            notes=record.get("notes"),
            created_at=_datetime(record.get("createdAt")) or utcnow(),
        )


@dataclass
class AdRecharge:
    """Principal paid into an ad account. Immutable except payment status."""

    id: str
    ad_account_id: str
    agency_id: str
    amount: Decimal
    currency: str
    date: date
    month: str
    rebate_amount: Decimal = ZERO
    rebate_rate: Decimal = ZERO
    payment_status: PaymentStatus = PaymentStatus.PENDING
    voucher: str | None = None
    notes: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "adAccountId": self.ad_account_id,
            "agencyId": self.agency_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "rebateAmount": str(self.rebate_amount),
            "rebateRate": str(self.rebate_rate),
            "date": _iso(self.date),
            "month": self.month,
            "paymentStatus": self.payment_status.value,
            "voucher": self.voucher,
            "notes": self.notes,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> AdRecharge:
        recharge_date = _date(record.get("date")) or date.today()
        return cls(
            id=str(record["id"]),
            ad_account_id=str(record["adAccountId"]),
            agency_id=str(record.get("agencyId", "")),
            amount=_money(record.get("amount")),
            currency=record.get("currency", "USD"),
            date=recharge_date,
            month=record.get("month") or f"{recharge_date.year:04d}-{recharge_date.month:02d}",
            rebate_amount=_money(record.get("rebateAmount")),
            rebate_rate=_money(record.get("rebateRate")),
            payment_status=_enum(
                PaymentStatus, record.get("paymentStatus"), PaymentStatus.PENDING
            ),
            voucher=record.get("voucher"),
            notes=record.get("notes"),
            created_at=_datetime(record.get("createdAt")) or utcnow(),
        )


@dataclass
class AdConsumption:
    """Campaign spend burned from an ad account."""

    id: str
    ad_account_id: str
    agency_id: str
    month: str
    date: date
    amount: Decimal
    currency: str
    estimated_rebate: Decimal = ZERO
    rebate_rate: Decimal = ZERO
    due_date: date | None = None
    rebate_due_date: date | None = None
    is_settled: bool = False
    settled_at: datetime | None = None
    campaign_name: str | None = None
    store_id: str | None = None
    voucher: str | None = None
    notes: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "adAccountId": self.ad_account_id,
            "agencyId": self.agency_id,
            "month": self.month,
            "date": _iso(self.date),
            "amount": str(self.amount),
            "currency": self.currency,
            "estimatedRebate": str(self.estimated_rebate),
            "rebateRate": str(self.rebate_rate),
            "dueDate": _iso(self.due_date),
            "rebateDueDate": _iso(self.rebate_due_date),
            "isSettled": self.is_settled,
            "settledAt": _iso(self.settled_at),
            "campaignName": self.campaign_name,
            "storeId": self.store_id,
            "voucher": self.voucher,
            "notes": self.notes,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> AdConsumption:
        consumption_date = _date(record.get("date")) or date.today()
        return cls(
            id=str(record["id"]),
            ad_account_id=str(record["adAccountId"]),
            agency_id=str(record.get("agencyId") or ""),
            month=record.get("month")
            or f"{consumption_date.year:04d}-{consumption_date.month:02d}",
            date=consumption_date,
            amount=_money(record.get("amount")),
            currency=record.get("currency", "USD"),
            estimated_rebate=_money(record.get("estimatedRebate")),
            rebate_rate=_money(record.get("rebateRate")),
            due_date=_date(record.get("dueDate")),
            rebate_due_date=_date(record.get("rebateDueDate")),
            # Legacy rows may lack the flag; only an explicit True is settled.
            is_settled=record.get("isSettled") is True,
            settled_at=_datetime(record.get("settledAt")),
            campaign_name=record.get("campaignName"),
            store_id=record.get("storeId"),
            voucher=record.get("voucher"),
            notes=record.get("notes"),
            created_at=_datetime(record.get("createdAt")) or utcnow(),
        )


@dataclass(frozen=True)
class WriteoffRecord:
    """One slice of a receivable consumed by a consumption."""

    consumption_id: str
    amount: Decimal
    remaining_balance: Decimal
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "consumptionId": self.consumption_id,
            "writeoffAmount": str(self.amount),
            "remainingBalance": str(self.remaining_balance),
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> WriteoffRecord:
        return cls(
            id=str(record.get("id") or new_id()),
            consumption_id=str(record["consumptionId"]),
            amount=_money(record.get("writeoffAmount")),
            remaining_balance=_money(record.get("remainingBalance")),
            created_at=_datetime(record.get("createdAt")) or utcnow(),
        )


@dataclass(frozen=True)
class ReceivableAdjustment:
    """Manual write-down of a receivable."""

    amount: Decimal
    reason: str
    adjusted_by: str
    balance_before: Decimal
    balance_after: Decimal
    id: str = field(default_factory=new_id)
    adjusted_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "reason": self.reason,
            "adjustedBy": self.adjusted_by,
            "balanceBefore": str(self.balance_before),
            "balanceAfter": str(self.balance_after),
            "adjustedAt": _iso(self.adjusted_at),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ReceivableAdjustment:
        return cls(
            id=str(record.get("id") or new_id()),
            amount=_money(record.get("amount")),
            reason=record.get("reason", ""),
            adjusted_by=record.get("adjustedBy", ""),
            balance_before=_money(record.get("balanceBefore")),
            balance_after=_money(record.get("balanceAfter")),
            adjusted_at=_datetime(record.get("adjustedAt")) or utcnow(),
        )


@dataclass
class RebateReceivable:
    """Rebate owed by the agency for one recharge, written off by consumption."""

    id: str
    recharge_id: str
    ad_account_id: str
    agency_id: str
    rebate_amount: Decimal
    currency: str
    current_balance: Decimal
    rebate_rate: Decimal = ZERO
    status: ReceivableStatus = ReceivableStatus.PENDING_WRITEOFF
    writeoff_records: list[WriteoffRecord] = field(default_factory=list)
    adjustments: list[ReceivableAdjustment] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return self.status != ReceivableStatus.SETTLED and self.current_balance > 0

    def advance_status(self, status: ReceivableStatus) -> None:
        """Move status forward; attempts to regress are ignored."""
        if status.rank > self.status.rank:
            self.status = status

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rechargeId": self.recharge_id,
            "adAccountId": self.ad_account_id,
            "agencyId": self.agency_id,
            "rebateAmount": str(self.rebate_amount),
            "rebateRate": str(self.rebate_rate),
            "currency": self.currency,
            "currentBalance": str(self.current_balance),
            "status": self.status.value,
            "writeoffRecords": [r.to_record() for r in self.writeoff_records],
            "adjustments": [a.to_record() for a in self.adjustments],
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> RebateReceivable:
        return cls(
            id=str(record["id"]),
            recharge_id=str(record["rechargeId"]),
            ad_account_id=str(record["adAccountId"]),
            agency_id=str(record.get("agencyId") or ""),
            rebate_amount=_money(record.get("rebateAmount")),
            rebate_rate=_money(record.get("rebateRate")),
            currency=record.get("currency", "USD"),
            current_balance=_money(record.get("currentBalance")),
            status=_enum(
                ReceivableStatus, record.get("status"), ReceivableStatus.PENDING_WRITEOFF
            ),
            writeoff_records=[
                WriteoffRecord.from_record(r) for r in record.get("writeoffRecords") or []
            ],
            adjustments=[
                ReceivableAdjustment.from_record(a) for a in record.get("adjustments") or []
            ],
            created_at=_datetime(record.get("createdAt")) or utcnow(),
            updated_at=_datetime(record.get("updatedAt")) or utcnow(),
        )


@dataclass
class MonthlyBill:
    """Monthly aggregate of recharges or settled rebates for one account."""

    id: str
    month: str
    bill_category: BillCategory
    bill_type: BillType
    agency_id: str
    ad_account_id: str
    currency: str
    total_amount: Decimal = ZERO
    rebate_amount: Decimal = ZERO
    net_amount: Decimal = ZERO
    recharge_ids: list[str] = field(default_factory=list)
    consumption_ids: list[str] = field(default_factory=list)
    status: BillStatus = BillStatus.DRAFT
    notes: str | None = None
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, BillType, str, str, str]:
        return (self.month, self.bill_type, self.agency_id, self.ad_account_id, self.currency)

    @property
    def linked_ids(self) -> set[str]:
        return set(self.recharge_ids) | set(self.consumption_ids)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "month": self.month,
            "billCategory": self.bill_category.value,
            "billType": self.bill_type.value,
            "agencyId": self.agency_id,
            "adAccountId": self.ad_account_id,
            "currency": self.currency,
            "totalAmount": str(self.total_amount),
            "rebateAmount": str(self.rebate_amount),
            "netAmount": str(self.net_amount),
            "rechargeIds": list(self.recharge_ids),
            "consumptionIds": list(self.consumption_ids),
            "status": self.status.value,
            "notes": self.notes,
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> MonthlyBill:
        bill_type = _enum(BillType, record.get("billType"), BillType.ADVERTISING)
        return cls(
            id=str(record["id"]),
            month=record["month"],
            bill_category=_enum(BillCategory, record.get("billCategory"), bill_type.category),
            bill_type=bill_type,
            agency_id=str(record.get("agencyId") or ""),
            ad_account_id=str(record.get("adAccountId") or ""),
            currency=record.get("currency", "USD"),
            total_amount=_money(record.get("totalAmount")),
            rebate_amount=_money(record.get("rebateAmount")),
            net_amount=_money(record.get("netAmount")),
            recharge_ids=list(record.get("rechargeIds") or []),
            consumption_ids=list(record.get("consumptionIds") or []),
            status=_enum(BillStatus, record.get("status"), BillStatus.DRAFT),
            notes=record.get("notes"),
            created_by=record.get("createdBy") or "system",
            created_at=_datetime(record.get("createdAt")) or utcnow(),
        )

