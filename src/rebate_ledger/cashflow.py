"""External cash-flow ledger collaborator.

The rebate ledger appends bookkeeping entries here but never edits them:
consumption records a pending rebate, settlement records the confirmed
rebate income. The reconciler reads confirmed entries back.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

import structlog

from rebate_ledger.amounts import to_decimal
from rebate_ledger.models import new_id, utcnow

logger = structlog.get_logger(__name__)


class EntryType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class EntryStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class EntryCategory(str, Enum):
    """Categories this core writes. Anything else belongs to other domains."""

    REBATE_PENDING = "advertising-rebate-pending"
    REBATE_SETTLED = "advertising-rebate-settled"


# Localized category labels found in older cash-flow records.
_CATEGORY_ALIASES = {
    "运营-广告-待结算": EntryCategory.REBATE_PENDING.value,
    "运营-广告-已结算": EntryCategory.REBATE_SETTLED.value,
}


@dataclass
class CashFlowEntry:
    """An append-only bookkeeping line."""

    type: EntryType
    category: str
    amount: Decimal
    currency: str
    related_id: str | None
    status: EntryStatus
    summary: str = ""
    is_reversal: bool = False
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_confirmed_rebate_settlement(self) -> bool:
        return (
            self.type == EntryType.INCOME
            and self.category == EntryCategory.REBATE_SETTLED.value
            and self.status == EntryStatus.CONFIRMED
            and not self.is_reversal
            and bool(self.related_id)
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "category": self.category,
            "amount": str(self.amount),
            "currency": self.currency,
            "relatedId": self.related_id,
            "status": self.status.value,
            "summary": self.summary,
            "isReversal": self.is_reversal,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> CashFlowEntry:
        category = str(record.get("category", ""))
        created = record.get("createdAt")
        return cls(
            id=str(record.get("id") or new_id()),
            type=EntryType(record.get("type", "income")),
            category=_CATEGORY_ALIASES.get(category, category),
            # Legacy rows store income as signed numbers
            amount=abs(to_decimal(record.get("amount", "0"))),
            currency=record.get("currency", "USD"),
            related_id=record.get("relatedId"),
            # Rows without a status predate the pending/confirmed split
            status=EntryStatus(record.get("status") or "confirmed"),
            summary=record.get("summary", ""),
            is_reversal=bool(record.get("isReversal", False)),
            created_at=datetime.fromisoformat(created) if created else utcnow(),
        )


class CashFlowLedger(Protocol):
    """Append-only ledger collaborator."""

    async def append(self, entry: CashFlowEntry) -> CashFlowEntry: ...

    async def list(
        self,
        category: str | None = None,
        related_id: str | None = None,
        status: EntryStatus | None = None,
    ) -> list[CashFlowEntry]: ...


class InMemoryCashFlowLedger:
    """Process-local cash-flow ledger with append hooks.

    Hooks are called synchronously after every append, in registration
    order.
    """

    def __init__(self, entries: list[CashFlowEntry] | None = None):
        self._entries: list[CashFlowEntry] = list(entries or [])
        self._hooks: list[Callable[[CashFlowEntry], None]] = []
        self._logger = logger.bind(component="cash_flow_ledger")

    def add_hook(self, hook: Callable[[CashFlowEntry], None]) -> None:
        self._hooks.append(hook)

    def remove_hook(self, hook: Callable[[CashFlowEntry], None]) -> None:
        if hook in self._hooks:
            self._hooks.remove(hook)

    @property
    def entries(self) -> list[CashFlowEntry]:
        return list(self._entries)

    async def append(self, entry: CashFlowEntry) -> CashFlowEntry:
        self._entries.append(entry)
        self._logger.debug(
            "cash_flow_appended",
            entry_id=entry.id,
            category=entry.category,
            amount=str(entry.amount),
            status=entry.status.value,
        )
        for hook in self._hooks:
            hook(entry)
        return entry

    async def list(
        self,
        category: str | None = None,
        related_id: str | None = None,
        status: EntryStatus | None = None,
    ) -> list[CashFlowEntry]:
        return [
            e
            for e in self._entries
            if (category is None or e.category == category)
            and (related_id is None or e.related_id == related_id)
            and (status is None or e.status == status)
        ]
