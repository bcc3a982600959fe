#!/usr/bin/env python3
"""Seed the rebate ledger with agencies and ad accounts.

This script:
1. Loads agencies and accounts from a YAML seed file
2. Writes them to the back-office API (or an in-memory store with --dry-run)
3. Optionally replays a demo month of recharges, consumptions and a settlement

Usage:
    python scripts/seed_ledger.py
    python scripts/seed_ledger.py --file my_seed.yaml --dry-run --demo
"""

import argparse
import asyncio
import sys
from datetime import date
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rebate_ledger import (
    AdConsumption,
    Agency,
    HttpLedgerStore,
    InMemoryLedgerStore,
    LedgerError,
    RebateLedger,
    RebateReceivable,
    configure_logging,
    get_settings,
    group_unsettled_consumptions,
    pending_rebate_by_currency,
    unsettled_rebate_totals,
)
from rebate_ledger.config import get_logger, load_seed_file
from rebate_ledger.storage import EntityKind, LedgerStore


async def write_seed(store: LedgerStore, seed_file: Path | None) -> list[str]:
    settings = get_settings()
    seed = load_seed_file(seed_file, default_currency=settings.default_currency)
    log = get_logger("seed_ledger", seed_file=str(seed_file or "demo"))

    for agency in seed.agencies:
        await store.put(EntityKind.AGENCY, agency.to_record())
        print(f"  ✓ Agency: {agency.name} ({agency.effective_rebate_rate}%)")
    for account in seed.accounts:
        await store.put(EntityKind.AD_ACCOUNT, account.to_record())
        print(f"  ✓ Account: {account.account_name} [{account.currency}] -> {account.agency_name}")
    log.info("seed_written", agencies=len(seed.agencies), accounts=len(seed.accounts))
    return [account.id for account in seed.accounts]


async def replay_demo(ledger: RebateLedger, store: LedgerStore, account_ids: list[str]) -> None:
    """Recharge and spend on every account, then settle each unsettled month."""
    today = date.today()

    for account_id in account_ids:
        try:
            await ledger.record_recharge(account_id, "1000", on=today)
            await ledger.record_consumption(account_id, "909.09", on=today)
            await ledger.record_consumption(account_id, "120", on=today)
            print(f"  ✓ {account_id}: recharged 1000, spent 1029.09")
        except LedgerError as e:
            print(f"  ✗ {account_id}: {e} {e.details or ''}")

    consumptions = [
        AdConsumption.from_record(r) for r in await store.list(EntityKind.AD_CONSUMPTION)
    ]
    agencies = [Agency.from_record(r) for r in await store.list(EntityKind.AGENCY)]
    for currency, amount in sorted(pending_rebate_by_currency(consumptions, agencies).items()):
        print(f"  Pending rebate: {amount} {currency}")

    for (account_id, month), batch in group_unsettled_consumptions(consumptions).items():
        try:
            settled = await ledger.settle_month(account_id, month, [c.id for c in batch])
            print(f"  ✓ {account_id}: settled {settled.total_rebate} rebate for {month}")
        except LedgerError as e:
            print(f"  ✗ {account_id} {month}: {e} {e.details or ''}")

    for result in await ledger.reconcile_all():
        print(
            f"    {result.ad_account_id}: balance {result.current_balance}, "
            f"rebate receivable {result.rebate_receivable}"
        )
    receivables = [
        RebateReceivable.from_record(r) for r in await store.list(EntityKind.REBATE_RECEIVABLE)
    ]
    for currency, amount in sorted(unsettled_rebate_totals(receivables).items()):
        print(f"  Outstanding receivables: {amount} {currency}")


async def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the rebate ledger")
    parser.add_argument("--file", type=Path, default=None, help="YAML seed file")
    parser.add_argument(
        "--dry-run", action="store_true", help="Use an in-memory store instead of the API"
    )
    parser.add_argument("--demo", action="store_true", help="Replay demo ledger events")
    args = parser.parse_args()

    configure_logging(stream=sys.stderr)
    settings = get_settings()

    print("=" * 60)
    print("Rebate Ledger - Seeding")
    print("=" * 60)
    print(f"\nStore: {'in-memory' if args.dry_run else settings.api_url}")

    store: LedgerStore
    http_store: HttpLedgerStore | None = None
    if args.dry_run:
        store = InMemoryLedgerStore()
    else:
        http_store = HttpLedgerStore()
        store = http_store

    try:
        print("\n" + "-" * 60)
        print("Step 1: Agencies and Accounts")
        print("-" * 60)
        account_ids = await write_seed(store, args.file)

        if args.demo:
            print("\n" + "-" * 60)
            print("Step 2: Demo Ledger Events")
            print("-" * 60)
            await replay_demo(RebateLedger(store), store, account_ids)
    finally:
        if http_store is not None:
            await http_store.close()

    print("\n" + "=" * 60)
    print("SEEDING COMPLETE!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
