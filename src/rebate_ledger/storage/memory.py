"""Process-local store, used by tests and the seed script."""

from __future__ import annotations

import copy
from typing import Any

from rebate_ledger.errors import ValidationError
from rebate_ledger.storage.base import EntityKind, matches


class InMemoryLedgerStore:
    """Dict-backed store; records are deep-copied on the way in and out."""

    def __init__(
        self, records: dict[EntityKind, list[dict[str, Any]]] | None = None
    ) -> None:
        self._records: dict[EntityKind, dict[str, dict[str, Any]]] = {
            kind: {} for kind in EntityKind
        }
        for kind, items in (records or {}).items():
            for item in items:
                self._records[kind][str(item["id"])] = copy.deepcopy(item)

    async def list(self, kind: EntityKind, **filters: Any) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(record)
            for record in self._records[kind].values()
            if matches(record, filters)
        ]

    async def get(self, kind: EntityKind, record_id: str) -> dict[str, Any] | None:
        record = self._records[kind].get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, kind: EntityKind, record: dict[str, Any]) -> dict[str, Any]:
        record_id = record.get("id")
        if not record_id:
            raise ValidationError(f"{kind.value} record has no id")
        # Re-putting keeps the original insertion position
        self._records[kind][str(record_id)] = copy.deepcopy(record)
        return copy.deepcopy(record)

    def count(self, kind: EntityKind) -> int:
        return len(self._records[kind])
