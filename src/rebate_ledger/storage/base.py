"""Persistence collaborator interface."""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol


class EntityKind(str, Enum):
    """Record collections the ledger reads and writes."""

    AGENCY = "agency"
    AD_ACCOUNT = "ad_account"
    AD_RECHARGE = "ad_recharge"
    AD_CONSUMPTION = "ad_consumption"
    REBATE_RECEIVABLE = "rebate_receivable"
    MONTHLY_BILL = "monthly_bill"


class LedgerStore(Protocol):
    """Async record store keyed by kind and id.

    Records are plain dicts with camelCase keys. ``list`` filters are exact
    matches on record keys, e.g. ``list(EntityKind.AD_CONSUMPTION,
    adAccountId="a1", month="2024-05")``.
    """

    async def list(self, kind: EntityKind, **filters: Any) -> list[dict[str, Any]]: ...

    async def get(self, kind: EntityKind, record_id: str) -> dict[str, Any] | None: ...

    async def put(self, kind: EntityKind, record: dict[str, Any]) -> dict[str, Any]: ...


def matches(record: dict[str, Any], filters: dict[str, Any]) -> bool:
    return all(record.get(key) == value for key, value in filters.items())
