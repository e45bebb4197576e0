"""
Tests for AccountDataService: summary caching, history merge policies, sync.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from botdesk.account_data import AccountDataService, normalize_order, normalize_orders
from botdesk.account_store import get_account, load_history, replace_history
from botdesk.errors import InvalidSession, NeverConnected, TransportError
from botdesk.mtapi_client import AccountSummary, BridgeResult


def _raw(ticket, profit=10.0, **extra):
    order = {
        "ticket": ticket,
        "symbol": "EURUSD",
        "orderType": "Buy",
        "lots": 0.1,
        "openTime": "2026-02-01T10:00:00",
        "closeTime": "2026-02-01T12:00:00",
        "openPrice": 1.1,
        "closePrice": 1.2,
        "profit": profit,
    }
    order.update(extra)
    return order


def _seed(account, tickets, profit=10.0):
    replace_history(account.id, normalize_orders([_raw(t, profit) for t in tickets]))


def _stored(account):
    return {row.ticket: row for row in load_history(account.id)}


def test_windowed_fetch_appends_only_unknown_tickets(bridge, make_account):
    account = make_account()
    _seed(account, [1, 2, 3])
    bridge.get_order_history.return_value = BridgeResult.ok(
        [_raw(3, profit=999), _raw(4), _raw(5)]
    )
    service = AccountDataService(bridge)

    result = service.fetch_order_history(account, 30)

    stored = _stored(account)
    assert set(stored) == {"1", "2", "3", "4", "5"}
    assert float(stored["3"].profit) == 10.0
    assert result.mode == "append"
    assert result.stored == 2
    assert len(result.orders) == 3
    assert [row.ticket for row in load_history(account.id)] == ["1", "2", "3", "4", "5"]


def test_full_fetch_replaces_stored_history(bridge, make_account):
    account = make_account()
    _seed(account, [1, 2, 3])
    bridge.get_order_history.return_value = BridgeResult.ok([_raw(4), _raw(5)])
    service = AccountDataService(bridge)

    result = service.fetch_order_history(account, None)

    assert set(_stored(account)) == {"4", "5"}
    assert result.mode == "replace"
    assert result.stored == 2


def test_full_fetch_with_empty_result_clears_history(bridge, make_account):
    account = make_account()
    _seed(account, [1, 2])
    bridge.get_order_history.return_value = BridgeResult.ok([])
    service = AccountDataService(bridge)

    service.fetch_order_history(account, None)

    assert load_history(account.id) == []


def test_history_date_range_follows_window(bridge, make_account):
    account = make_account()
    bridge.get_order_history.return_value = BridgeResult.ok([])
    service = AccountDataService(bridge)

    everything = service.fetch_order_history(account, None)
    _, _, from_all, to_all = bridge.get_order_history.call_args.args
    windowed = service.fetch_order_history(account, 7)
    _, _, from_week, to_week = bridge.get_order_history.call_args.args

    assert everything.date_range["from"] == "1970-01-01T00:00:00"
    assert from_all == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert to_week - from_week == timedelta(days=7)
    assert windowed.date_range["to"] == to_week.strftime("%Y-%m-%dT%H:%M:%S")


def test_history_failure_propagates_and_keeps_store(bridge, make_account):
    account = make_account()
    _seed(account, [1, 2])
    bridge.get_order_history.return_value = BridgeResult.fail(InvalidSession("Invalid token"))
    service = AccountDataService(bridge)

    with pytest.raises(InvalidSession):
        service.fetch_order_history(account, None)

    assert set(_stored(account)) == {"1", "2"}


def test_history_requires_session_and_positive_window(bridge, make_account):
    service = AccountDataService(bridge)

    with pytest.raises(NeverConnected):
        service.fetch_order_history(make_account(bridge_session_id=None), None)
    with pytest.raises(ValueError):
        service.fetch_order_history(make_account(account_number="2002"), 0)
    bridge.get_order_history.assert_not_called()


def test_default_window_is_full_until_history_exists(bridge, make_account):
    account = make_account()
    service = AccountDataService(bridge, window_days=14)

    assert service.default_window(account) is None
    _seed(account, [1])
    assert service.default_window(account) == 14


def test_failed_summary_returns_cache_and_leaves_sync_time(bridge, make_account):
    account = make_account(balance=500, equity=480, currency="EUR")
    bridge.get_account_summary.return_value = BridgeResult.fail(TransportError("timed out"))
    service = AccountDataService(bridge)

    result = service.refresh_summary(account)

    assert not result.success
    assert result.from_cache
    assert result.summary["balance"] == 500.0
    assert result.summary["currency"] == "EUR"
    assert "timed out" in result.error
    assert account.last_sync_at is None
    assert get_account(account.id).last_sync_at is None


def test_successful_summary_is_stored_with_sync_time(bridge, make_account):
    account = make_account()
    bridge.get_account_summary.return_value = BridgeResult.ok(
        AccountSummary(balance=1500, equity=1490, profit=-10, currency="USD", leverage=200)
    )
    service = AccountDataService(bridge)

    result = service.refresh_summary(account)

    assert result.success
    assert not result.from_cache
    assert result.summary["balance"] == 1500.0
    stored = get_account(account.id)
    assert float(stored.balance) == 1500.0
    assert stored.leverage == 200
    assert stored.last_sync_at is not None


def test_summary_without_session_uses_cache(bridge, make_account):
    account = make_account(bridge_session_id=None, balance=42)
    service = AccountDataService(bridge)

    result = service.refresh_summary(account)

    assert result.from_cache
    assert result.summary["balance"] == 42.0
    bridge.get_account_summary.assert_not_called()


def test_sync_reports_summary_failure_alongside_history_success(bridge, make_account):
    account = make_account()
    bridge.get_account_summary.return_value = BridgeResult.fail(TransportError("timed out"))
    bridge.get_order_history.return_value = BridgeResult.ok([_raw(1), _raw(2)])
    service = AccountDataService(bridge)

    result = service.sync_all(account)

    assert not result.summary_succeeded
    assert result.history_succeeded
    assert "summary" in result.errors
    assert "history" not in result.errors
    assert set(_stored(account)) == {"1", "2"}


def test_sync_reports_history_failure_alongside_summary_success(bridge, make_account):
    account = make_account()
    bridge.get_account_summary.return_value = BridgeResult.ok(AccountSummary(balance=10))
    bridge.get_order_history.return_value = BridgeResult.fail(InvalidSession("Invalid token"))
    service = AccountDataService(bridge)

    result = service.sync_all(account)

    assert result.summary_succeeded
    assert not result.history_succeeded
    assert result.history is None
    assert result.errors == {"history": "Invalid token"}


def test_normalize_order_maps_bridge_fields():
    order = normalize_order(
        _raw(77, orderType="SellLimit", closeTime="1970-01-01T00:00:00", commission="-1.5")
    )

    assert order["ticket"] == "77"
    assert order["order_type"] == "sell"
    assert order["close_time"] is None
    assert order["open_time"] == datetime(2026, 2, 1, 10, 0, tzinfo=timezone.utc)
    assert order["lots"] == 0.1
    assert order["volume"] == 0.1
    assert order["commission"] == -1.5


def test_normalize_orders_skips_missing_and_repeated_tickets():
    orders = normalize_orders(
        [_raw(1, profit=5), {"symbol": "GBPUSD"}, _raw(1, profit=6), "junk", _raw(2)]
    )

    assert [order["ticket"] for order in orders] == ["1", "2"]
    assert orders[0]["profit"] == 5.0


def test_sync_keeps_summary_when_history_half_crashes(bridge, make_account):
    account = make_account()
    bridge.get_account_summary.return_value = BridgeResult.ok(AccountSummary(balance=5))
    service = AccountDataService(bridge)

    with patch.object(service, "fetch_order_history", side_effect=KeyError("orders")):
        result = service.sync_all(account)

    assert result.summary_succeeded
    assert not result.history_succeeded
    assert "history" in result.errors
    assert "summary" not in result.errors
    assert float(get_account(account.id).balance) == 5.0


def test_sync_accepts_millisecond_epoch_times(bridge, make_account):
    account = make_account()
    bridge.get_account_summary.return_value = BridgeResult.ok(AccountSummary(balance=5))
    bridge.get_order_history.return_value = BridgeResult.ok(
        [{"ticket": 1, "openTime": 1738404000000}]
    )
    service = AccountDataService(bridge)

    result = service.sync_all(account)

    assert result.summary_succeeded
    assert result.history_succeeded
    assert result.history.orders[0]["open_time"] == datetime(
        2025, 2, 1, 10, 0, tzinfo=timezone.utc
    )


def test_out_of_range_numeric_time_is_dropped():
    order = normalize_order({"ticket": 9, "openTime": 1e300, "closeTime": 1738404000})

    assert order["open_time"] is None
    assert order["close_time"] == datetime(2025, 2, 1, 10, 0, tzinfo=timezone.utc)
