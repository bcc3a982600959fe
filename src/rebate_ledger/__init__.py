"""Rebate Ledger - advertising recharge, consumption and rebate accounting."""

__version__ = "0.1.0"

from rebate_ledger.cashflow import CashFlowEntry, CashFlowLedger, InMemoryCashFlowLedger
from rebate_ledger.config import configure_logging, get_settings
from rebate_ledger.errors import (
    AccountNotFoundError,
    AgencyNotFoundError,
    IdempotencyError,
    LedgerError,
    NotFoundError,
    RecordNotFoundError,
    SettlementError,
    StorageError,
    StorageRequestError,
    ValidationError,
)
from rebate_ledger.models import (
    AdAccount,
    AdConsumption,
    AdRecharge,
    Agency,
    MonthlyBill,
    RebateReceivable,
)
from rebate_ledger.rebates import WriteoffRatePolicy
from rebate_ledger.reconciler import BalanceReconciler, reconcile
from rebate_ledger.service import RebateLedger
from rebate_ledger.settlement import FileSettlementJournal, InMemorySettlementJournal
from rebate_ledger.storage import HttpLedgerStore, InMemoryLedgerStore, LedgerStore
from rebate_ledger.summary import (
    group_unsettled_consumptions,
    pending_rebate_by_currency,
    unsettled_rebate_totals,
)

__all__ = [
    # Version
    "__version__",
    # Service
    "RebateLedger",
    "BalanceReconciler",
    "reconcile",
    "WriteoffRatePolicy",
    # Entities
    "Agency",
    "AdAccount",
    "AdRecharge",
    "AdConsumption",
    "RebateReceivable",
    "MonthlyBill",
    "CashFlowEntry",
    # Collaborators
    "LedgerStore",
    "InMemoryLedgerStore",
    "HttpLedgerStore",
    "CashFlowLedger",
    "InMemoryCashFlowLedger",
    "InMemorySettlementJournal",
    "FileSettlementJournal",
    # Errors
    "LedgerError",
    "ValidationError",
    "NotFoundError",
    "AgencyNotFoundError",
    "AccountNotFoundError",
    "RecordNotFoundError",
    "SettlementError",
    "IdempotencyError",
    "StorageError",
    "StorageRequestError",
    # Summaries
    "unsettled_rebate_totals",
    "pending_rebate_by_currency",
    "group_unsettled_consumptions",
    # Config
    "get_settings",
    "configure_logging",
]
