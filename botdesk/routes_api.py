from __future__ import annotations

from flask import Blueprint, Response, current_app, request

from .account_connection import AccountConnectionService, ConnectionResult
from .account_data import AccountDataService
from .account_store import find_accounts_by_user, find_user_account
from .errors import AccountValidationError, MtapiError, PersistenceError
from .http_utils import current_user_id, json_error, json_response
from .models import TradingAccount
from .serializers import (
    serialize_account,
    serialize_connection,
    serialize_history,
    serialize_history_order,
    serialize_sync,
)

api = Blueprint("api", __name__)


def _connections() -> AccountConnectionService:
    return current_app.extensions["botdesk"]["connections"]


def _data() -> AccountDataService:
    return current_app.extensions["botdesk"]["data"]


def _load_account(account_number: str) -> tuple[TradingAccount | None, Response | None]:
    user_id = current_user_id()
    if not user_id:
        return None, json_error("Unauthorized.", 401)
    account = find_user_account(user_id, account_number)
    if not account:
        return None, json_error("Account not found", 404)
    return account, None


def _connection_failed(account: TradingAccount, result: ConnectionResult, data=None) -> Response:
    return json_error(
        "Account connection failed",
        400,
        connectionError=result.error,
        errorCode=result.error_code,
        data=serialize_account(account) if data is None else data,
    )


def _parse_days(raw: str | None, account: TradingAccount) -> tuple[int | None, str | None]:
    if raw is None or raw == "":
        return _data().default_window(account), None
    if raw.lower() == "all":
        return None, None
    try:
        days = int(raw)
    except ValueError:
        return None, "days must be a positive integer or 'all'."
    if days <= 0:
        return None, "days must be a positive integer or 'all'."
    return days, None


@api.route("/health", methods=["GET"])
def health() -> Response:
    return json_response({"ok": True})


@api.route("/api/accounts", methods=["POST"])
def api_account_add() -> Response:
    user_id = current_user_id()
    if not user_id:
        return json_error("Unauthorized.", 401)
    data = request.get_json(silent=True) or {}
    try:
        account = _connections().register_account(user_id, data)
    except AccountValidationError as exc:
        return json_error(str(exc), 400)
    except MtapiError as exc:
        return json_error(
            "Unable to connect to the trading server", 400, error=str(exc), errorCode=exc.code
        )
    except PersistenceError as exc:
        current_app.logger.error("Saving new account failed: %s", exc)
        return json_error("Failed to add trading account", 500)
    summary = _data().refresh_summary(account)
    if not summary.success:
        current_app.logger.warning("Initial summary sync failed: %s", summary.error)
    return json_response(
        {
            "success": True,
            "message": "Trading account added successfully",
            "data": serialize_account(account),
        },
        201,
    )


@api.route("/api/accounts", methods=["GET"])
def api_accounts() -> Response:
    user_id = current_user_id()
    if not user_id:
        return json_error("Unauthorized.", 401)
    if request.args.get("live") in {"1", "true"}:
        rows = [
            {**serialize_account(account), "connection": serialize_connection(result)}
            for account, result in _connections().list_accounts_with_status(user_id)
        ]
    else:
        rows = [serialize_account(account) for account in find_accounts_by_user(user_id)]
    return json_response({"success": True, "data": rows})


@api.route("/api/accounts/<account_number>", methods=["GET"])
def api_account_detail(account_number: str) -> Response:
    account, error = _load_account(account_number)
    if error:
        return error
    result = _connections().ensure_connection(account)
    if not result.success:
        return _connection_failed(account, result)
    return json_response(
        {"success": True, "data": serialize_account(account), "connectionVerified": True}
    )


@api.route("/api/accounts/<account_number>", methods=["DELETE"])
def api_account_delete(account_number: str) -> Response:
    account, error = _load_account(account_number)
    if error:
        return error
    _connections().remove_account(account)
    return json_response({"success": True, "message": "Account deleted successfully"})


@api.route("/api/accounts/<account_number>/disconnect", methods=["POST"])
def api_account_disconnect(account_number: str) -> Response:
    account, error = _load_account(account_number)
    if error:
        return error
    _connections().disconnect_account(account)
    return json_response(
        {
            "success": True,
            "message": "Account disconnected",
            "data": serialize_account(account),
        }
    )


@api.route("/api/accounts/<account_number>/status", methods=["GET"])
def api_account_status(account_number: str) -> Response:
    account, error = _load_account(account_number)
    if error:
        return error
    result = _connections().ensure_connection(account)
    return json_response(
        {
            "success": True,
            "data": {
                "accountNumber": account.account_number,
                "connectionStatus": account.connection_status,
                **serialize_connection(result),
            },
        }
    )


@api.route("/api/accounts/<account_number>/summary", methods=["GET"])
def api_account_summary(account_number: str) -> Response:
    account, error = _load_account(account_number)
    if error:
        return error
    result = _connections().ensure_connection(account)
    if not result.success:
        return _connection_failed(account, result)
    summary = _data().refresh_summary(account)
    return json_response(
        {
            "success": True,
            "data": summary.summary,
            "fromCache": summary.from_cache,
            "error": summary.error,
        }
    )


@api.route("/api/accounts/<account_number>/positions", methods=["GET"])
def api_account_positions(account_number: str) -> Response:
    account, error = _load_account(account_number)
    if error:
        return error
    result = _connections().ensure_connection(account)
    if not result.success:
        return _connection_failed(account, result, data=[])
    positions = _data().get_open_positions(account)
    if not positions.success:
        return json_error("Failed to fetch positions", 502, error=positions.error_message)
    return json_response({"success": True, "data": positions.data, "connectionVerified": True})


@api.route("/api/accounts/<account_number>/closed-orders", methods=["GET"])
def api_account_closed_orders(account_number: str) -> Response:
    account, error = _load_account(account_number)
    if error:
        return error
    result = _connections().ensure_connection(account)
    if not result.success:
        return _connection_failed(account, result, data=[])
    orders = _data().get_closed_orders(account)
    if not orders.success:
        return json_error("Failed to fetch closed orders", 502, error=orders.error_message)
    return json_response({"success": True, "data": orders.data, "connectionVerified": True})


@api.route("/api/accounts/<account_number>/history", methods=["GET"])
def api_account_history(account_number: str) -> Response:
    account, error = _load_account(account_number)
    if error:
        return error
    days, days_error = _parse_days(request.args.get("days"), account)
    if days_error:
        return json_error(days_error, 400)
    result = _connections().ensure_connection(account)
    if not result.success:
        return _connection_failed(account, result, data=[])
    try:
        history = _data().fetch_order_history(account, days)
    except MtapiError as exc:
        return json_error("Failed to fetch order history", 502, error=str(exc))
    except PersistenceError as exc:
        current_app.logger.error("Storing order history failed: %s", exc)
        return json_error("Failed to store order history", 500)
    return json_response(
        {
            "success": True,
            "message": "Order history synced & stored successfully",
            "connectionVerified": True,
            **serialize_history(history),
        }
    )


@api.route("/api/accounts/<account_number>/history/stored", methods=["GET"])
def api_account_stored_history(account_number: str) -> Response:
    account, error = _load_account(account_number)
    if error:
        return error
    rows = _data().load_history(account)
    return json_response(
        {"success": True, "count": len(rows), "data": [serialize_history_order(row) for row in rows]}
    )


@api.route("/api/accounts/<account_number>/sync", methods=["POST"])
def api_account_sync(account_number: str) -> Response:
    account, error = _load_account(account_number)
    if error:
        return error
    result = _connections().ensure_connection(account)
    if not result.success:
        return _connection_failed(account, result)
    sync = _data().sync_all(account)
    return json_response(
        {
            "success": sync.summary_succeeded and sync.history_succeeded,
            "data": serialize_sync(sync),
            "account": serialize_account(account),
        }
    )
