"""Tests for logging helpers."""

from decimal import Decimal

from structlog.testing import capture_logs

from rebate_ledger.config.logging import get_logger, render_amounts


def test_render_amounts_stringifies_decimals():
    event = {"event": "recharge_recorded", "amount": Decimal("1E+3"), "count": 2}

    rendered = render_amounts(None, "info", event)

    assert rendered["amount"] == "1000"
    assert rendered["count"] == 2
    assert rendered["event"] == "recharge_recorded"


def test_get_logger_binds_context():
    with capture_logs() as logs:
        get_logger("rebate_ledger.test", ad_account_id="acct-1").info("probe")

    assert logs == [{"event": "probe", "log_level": "info", "ad_account_id": "acct-1"}]
