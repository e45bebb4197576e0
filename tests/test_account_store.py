"""
Tests for the account and history stores.
"""
import json

import pytest

from botdesk.account_data import normalize_orders
from botdesk.account_store import (
    append_history,
    find_account_by_handle,
    find_accounts_by_user,
    find_or_create_history,
    history_exists,
    load_history,
    replace_history,
    save_account,
)
from botdesk.errors import PersistenceError


def test_find_account_by_handle_ignores_removed_accounts(make_account):
    account = make_account(bridge_session_id="HANDLE-1")

    assert find_account_by_handle("HANDLE-1").id == account.id
    save_account(account.id, is_active=False)
    assert find_account_by_handle("HANDLE-1") is None
    assert find_account_by_handle("missing") is None


def test_find_or_create_history_is_idempotent(make_account):
    account = make_account()

    assert not history_exists(account.id)
    first = find_or_create_history(account.id)
    second = find_or_create_history(account.id)

    assert first.id == second.id
    assert history_exists(account.id)


def test_save_account_only_touches_named_columns(make_account):
    account = make_account(balance=100, error_message="old")

    save_account(account.id, connection_status="error")

    stored = find_accounts_by_user(account.user_id)[0]
    assert stored.connection_status == "error"
    assert stored.error_message == "old"
    assert float(stored.balance) == 100.0


def test_save_account_for_missing_row_raises():
    with pytest.raises(PersistenceError):
        save_account(999999, connection_status="connected")


def test_append_history_continues_positions(make_account):
    account = make_account()
    replace_history(account.id, normalize_orders([{"ticket": 5}, {"ticket": 6}]))

    added = append_history(account.id, normalize_orders([{"ticket": 6}, {"ticket": 1}]))

    rows = load_history(account.id)
    assert added == 1
    assert [(row.ticket, row.position) for row in rows] == [("5", 0), ("6", 1), ("1", 2)]


def test_history_rows_keep_raw_payload(make_account):
    account = make_account()
    raw = {"ticket": 42, "symbol": "US30", "comment": "tp hit"}

    replace_history(account.id, normalize_orders([raw]))

    (row,) = load_history(account.id)
    assert json.loads(row.raw_json) == raw
