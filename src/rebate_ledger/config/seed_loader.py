"""Load agency and ad-account seed data from YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from rebate_ledger.models import AdAccount, Agency, Platform, RebateConfig, RebatePeriod

DEFAULT_SEED_FILE = Path(__file__).resolve().parent / "seeds" / "demo.yaml"


@dataclass
class SeedData:
    agencies: list[Agency] = field(default_factory=list)
    accounts: list[AdAccount] = field(default_factory=list)


def _decimal(path: Path, where: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{path.name}: {where} must be a number, got {value!r}")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{path.name}: {where} must be a number, got {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"{path.name}: {where} must be finite")
    return result


def _rate(path: Path, where: str, value: Any) -> Decimal:
    rate = _decimal(path, where, value)
    if not (0 <= rate <= 100):
        raise ValueError(f"{path.name}: {where} must be 0-100, got {rate}")
    return rate


def _parse_agency(path: Path, idx: int, item: Any) -> Agency:
    where = f"agencies[{idx}]"
    if not isinstance(item, dict):
        raise ValueError(f"{path.name}: {where} must be a mapping")
    agency_id = item.get("id")
    name = item.get("name")
    if not agency_id or not name:
        raise ValueError(f"{path.name}: {where} missing id/name")

    try:
        platform = Platform(item.get("platform", "OTHER"))
    except ValueError as exc:
        raise ValueError(
            f"{path.name}: {where} invalid platform {item.get('platform')!r}"
        ) from exc

    config = None
    raw_config = item.get("rebate_config")
    if raw_config is not None:
        if not isinstance(raw_config, dict) or "rate" not in raw_config:
            raise ValueError(f"{path.name}: {where}.rebate_config needs a rate")
        try:
            period = RebatePeriod(raw_config.get("period", "Monthly"))
        except ValueError as exc:
            raise ValueError(
                f"{path.name}: {where}.rebate_config invalid period "
                f"{raw_config.get('period')!r}"
            ) from exc
        config = RebateConfig(
            rate=_rate(path, f"{where}.rebate_config.rate", raw_config["rate"]),
            period=period,
        )

    return Agency(
        id=str(agency_id),
        name=str(name),
        platform=platform,
        rebate_rate=_rate(path, f"{where}.rebate_rate", item.get("rebate_rate", 0)),
        rebate_config=config,
        settlement_currency=item.get("settlement_currency"),
        credit_term=item.get("credit_term"),
        contact=item.get("contact"),
        phone=item.get("phone"),
        notes=item.get("notes"),
    )


def _parse_account(
    path: Path, idx: int, item: Any, agencies: dict[str, Agency], default_currency: str
) -> AdAccount:
    where = f"accounts[{idx}]"
    if not isinstance(item, dict):
        raise ValueError(f"{path.name}: {where} must be a mapping")
    account_id = item.get("id")
    agency_id = item.get("agency")
    if not account_id or not agency_id:
        raise ValueError(f"{path.name}: {where} missing id/agency")
    agency = agencies.get(str(agency_id))
    if agency is None:
        raise ValueError(f"{path.name}: {where} references unknown agency {agency_id!r}")

    return AdAccount(
        id=str(account_id),
        agency_id=agency.id,
        agency_name=agency.name,
        account_name=str(item.get("account_name") or account_id),
        currency=str(item.get("currency") or agency.settlement_currency or default_currency),
        credit_limit=_decimal(path, f"{where}.credit_limit", item.get("credit_limit", 0)),
        country=item.get("country"),
        notes=item.get("notes"),
    )


def load_seed_file(path: Path | None = None, default_currency: str = "USD") -> SeedData:
    """Parse a seed file into agencies and accounts.

    Accounts reference agencies by id and inherit the agency's display name.
    """
    path = path or DEFAULT_SEED_FILE
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path.name}: top level must be a mapping")

    raw_agencies = data.get("agencies") or []
    raw_accounts = data.get("accounts") or []
    if not isinstance(raw_agencies, list):
        raise ValueError(f"{path.name}: agencies must be a list")
    if not isinstance(raw_accounts, list):
        raise ValueError(f"{path.name}: accounts must be a list")

    seed = SeedData()
    by_id: dict[str, Agency] = {}
    for idx, item in enumerate(raw_agencies):
        agency = _parse_agency(path, idx, item)
        if agency.id in by_id:
            raise ValueError(f"{path.name}: duplicate agency id {agency.id!r}")
        by_id[agency.id] = agency
        seed.agencies.append(agency)

    seen_accounts: set[str] = set()
    for idx, item in enumerate(raw_accounts):
        account = _parse_account(path, idx, item, by_id, default_currency)
        if account.id in seen_accounts:
            raise ValueError(f"{path.name}: duplicate account id {account.id!r}")
        seen_accounts.add(account.id)
        seed.accounts.append(account)

    return seed
