"""Tests for the in-memory ledger store."""

import pytest

from rebate_ledger.errors import ValidationError
from rebate_ledger.storage import EntityKind, InMemoryLedgerStore


class TestInMemoryLedgerStore:
    @pytest.mark.asyncio
    async def test_seeded_records_are_listed(self):
        store = InMemoryLedgerStore(
            {EntityKind.AGENCY: [{"id": "a-1", "name": "Blue Harbor"}]}
        )

        assert await store.list(EntityKind.AGENCY) == [{"id": "a-1", "name": "Blue Harbor"}]
        assert await store.list(EntityKind.AD_ACCOUNT) == []
        assert store.count(EntityKind.AGENCY) == 1

    @pytest.mark.asyncio
    async def test_list_filters_on_exact_keys(self):
        store = InMemoryLedgerStore()
        await store.put(EntityKind.AD_CONSUMPTION, {"id": "c-1", "month": "2024-05"})
        await store.put(EntityKind.AD_CONSUMPTION, {"id": "c-2", "month": "2024-06"})

        result = await store.list(EntityKind.AD_CONSUMPTION, month="2024-06")

        assert [r["id"] for r in result] == ["c-2"]

    @pytest.mark.asyncio
    async def test_records_are_copied(self):
        store = InMemoryLedgerStore()
        record = {"id": "acct-1", "currentBalance": "100"}
        await store.put(EntityKind.AD_ACCOUNT, record)

        record["currentBalance"] = "0"
        fetched = await store.get(EntityKind.AD_ACCOUNT, "acct-1")
        fetched["currentBalance"] = "-1"

        stored = await store.get(EntityKind.AD_ACCOUNT, "acct-1")
        assert stored["currentBalance"] == "100"

    @pytest.mark.asyncio
    async def test_put_replaces_in_place(self):
        store = InMemoryLedgerStore()
        await store.put(EntityKind.MONTHLY_BILL, {"id": "b-1", "totalAmount": "1"})
        await store.put(EntityKind.MONTHLY_BILL, {"id": "b-2", "totalAmount": "2"})
        await store.put(EntityKind.MONTHLY_BILL, {"id": "b-1", "totalAmount": "3"})

        bills = await store.list(EntityKind.MONTHLY_BILL)

        assert [(b["id"], b["totalAmount"]) for b in bills] == [("b-1", "3"), ("b-2", "2")]

    @pytest.mark.asyncio
    async def test_get_missing(self):
        assert await InMemoryLedgerStore().get(EntityKind.AGENCY, "nope") is None

    @pytest.mark.asyncio
    async def test_put_requires_id(self):
        with pytest.raises(ValidationError):
            await InMemoryLedgerStore().put(EntityKind.AGENCY, {"name": "No Id"})
