"""Configuration module for the rebate ledger."""

from rebate_ledger.config.logging import configure_logging, get_logger
from rebate_ledger.config.seed_loader import SeedData, load_seed_file
from rebate_ledger.config.settings import LedgerSettings, get_settings

__all__ = [
    "LedgerSettings",
    "SeedData",
    "configure_logging",
    "get_logger",
    "get_settings",
    "load_seed_file",
]
