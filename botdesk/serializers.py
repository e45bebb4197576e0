from __future__ import annotations

from datetime import datetime
from typing import Any

from .account_connection import ConnectionResult
from .account_data import HistoryResult, SyncResult, cached_summary
from .models import HistoryOrder, TradingAccount


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.isoformat() + "Z"
    return value.isoformat()


def _float_or_none(value: Any) -> float | None:
    return float(value) if value is not None else None


def serialize_account(account: TradingAccount) -> dict[str, Any]:
    return {
        "id": account.id,
        "accountNumber": account.account_number,
        "serverName": account.server_name,
        "platform": account.platform,
        "connectionStatus": account.connection_status,
        "accountSummary": cached_summary(account),
        "errorMessage": account.error_message,
        "lastSyncAt": _iso(account.last_sync_at),
        "createdAt": _iso(account.created_at),
        "updatedAt": _iso(account.updated_at),
    }


def serialize_order(order: dict[str, Any]) -> dict[str, Any]:
    return {
        "ticket": order["ticket"],
        "symbol": order.get("symbol"),
        "type": order.get("order_type"),
        "volume": _float_or_none(order.get("volume")),
        "lots": _float_or_none(order.get("lots")),
        "openTime": _iso(order.get("open_time")),
        "closeTime": _iso(order.get("close_time")),
        "openPrice": _float_or_none(order.get("open_price")),
        "closePrice": _float_or_none(order.get("close_price")),
        "profit": float(order.get("profit") or 0),
        "commission": float(order.get("commission") or 0),
        "swap": float(order.get("swap") or 0),
    }


def serialize_history_order(row: HistoryOrder) -> dict[str, Any]:
    return serialize_order(
        {
            "ticket": row.ticket,
            "symbol": row.symbol,
            "order_type": row.order_type,
            "volume": row.volume,
            "lots": row.lots,
            "open_time": row.open_time,
            "close_time": row.close_time,
            "open_price": row.open_price,
            "close_price": row.close_price,
            "profit": row.profit,
            "commission": row.commission,
            "swap": row.swap,
        }
    )


def serialize_history(history: HistoryResult) -> dict[str, Any]:
    return {
        "count": len(history.orders),
        "stored": history.stored,
        "mode": history.mode,
        "dateRange": history.date_range,
        "data": [serialize_order(order) for order in history.orders],
    }


def serialize_connection(result: ConnectionResult) -> dict[str, Any]:
    return {
        "success": result.success,
        "connected": result.connected,
        "sessionChanged": result.session_changed,
        "recovered": result.recovered,
        "error": result.error,
        "errorCode": result.error_code,
    }


def serialize_sync(result: SyncResult) -> dict[str, Any]:
    return {
        "summarySucceeded": result.summary_succeeded,
        "historySucceeded": result.history_succeeded,
        "accountSummary": result.summary.summary,
        "history": serialize_history(result.history) if result.history else None,
        "errors": result.errors,
    }
