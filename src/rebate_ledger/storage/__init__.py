"""Persistence collaborators for the rebate ledger."""

from rebate_ledger.storage.base import EntityKind, LedgerStore
from rebate_ledger.storage.http import HttpLedgerStore
from rebate_ledger.storage.memory import InMemoryLedgerStore

__all__ = ["EntityKind", "HttpLedgerStore", "InMemoryLedgerStore", "LedgerStore"]
