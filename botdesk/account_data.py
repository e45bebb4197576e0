from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from .account_store import (
    append_history,
    history_exists,
    load_history,
    replace_history,
    save_account,
)
from .errors import BotdeskError, MtapiError, NeverConnected, PersistenceError
from .models import HistoryOrder, TradingAccount
from .mtapi_client import (
    EPOCH,
    BridgeResult,
    MtapiClient,
    extract_float,
    format_bridge_date,
)
from .settings import HISTORY_WINDOW_DAYS

logger = logging.getLogger(__name__)

MERGE_APPEND = "append"
MERGE_REPLACE = "replace"
# Numeric times above this are milliseconds since the epoch.
MILLISECOND_EPOCH_THRESHOLD = 1e11


def _parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > MILLISECOND_EPOCH_THRESHOLD else value
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    else:
        parsed = _parse_iso_datetime(str(value))
    # MT terminals report "not closed yet" as the epoch.
    if parsed is None or parsed <= EPOCH:
        return None
    return parsed


def _order_type(raw: dict[str, Any]) -> str | None:
    value = str(raw.get("orderType") or raw.get("type") or "").strip().lower()
    if not value:
        return None
    if value.startswith("buy"):
        return "buy"
    if value.startswith("sell"):
        return "sell"
    if value.startswith("balance"):
        return "balance"
    return value


def normalize_order(raw: dict[str, Any]) -> dict[str, Any] | None:
    ticket = raw.get("ticket")
    if ticket is None or ticket == "":
        ticket = raw.get("id") or raw.get("orderId")
    if ticket is None or ticket == "":
        return None
    return {
        "ticket": str(ticket),
        "symbol": raw.get("symbol") or None,
        "order_type": _order_type(raw),
        "volume": extract_float(raw, ("volume", "lots")),
        "lots": extract_float(raw, ("lots", "volume")),
        "open_time": _coerce_datetime(raw.get("openTime")),
        "close_time": _coerce_datetime(raw.get("closeTime")),
        "open_price": extract_float(raw, ("openPrice",)),
        "close_price": extract_float(raw, ("closePrice",)),
        "profit": extract_float(raw, ("profit",)) or 0.0,
        "commission": extract_float(raw, ("commission",)) or 0.0,
        "swap": extract_float(raw, ("swap",)) or 0.0,
        "raw": raw,
    }


def normalize_orders(payload: list[Any]) -> list[dict[str, Any]]:
    orders: list[dict[str, Any]] = []
    seen: set[str] = set()
    for raw in payload:
        if not isinstance(raw, dict):
            continue
        order = normalize_order(raw)
        if order is None:
            logger.debug("Skipping history entry without ticket: %s", raw)
            continue
        if order["ticket"] in seen:
            continue
        seen.add(order["ticket"])
        orders.append(order)
    return orders


def cached_summary(account: TradingAccount) -> dict[str, Any]:
    return {
        "balance": float(account.balance or 0),
        "equity": float(account.equity or 0),
        "margin": float(account.margin or 0),
        "free_margin": float(account.free_margin or 0),
        "profit": float(account.profit or 0),
        "currency": account.currency or "USD",
        "leverage": account.leverage or 100,
        "account_type": account.account_type,
        "remote_user_name": account.remote_user_name,
    }


@dataclass
class SummaryResult:
    success: bool
    summary: dict[str, Any]
    from_cache: bool = False
    error: str | None = None


@dataclass
class HistoryResult:
    orders: list[dict[str, Any]]
    date_range: dict[str, str]
    mode: str
    stored: int = 0


@dataclass
class SyncResult:
    summary: SummaryResult
    history: HistoryResult | None = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def summary_succeeded(self) -> bool:
        return self.summary.success

    @property
    def history_succeeded(self) -> bool:
        return self.history is not None


class AccountDataService:
    def __init__(self, client: MtapiClient, window_days: int = HISTORY_WINDOW_DAYS) -> None:
        self.client = client
        self.window_days = window_days

    def refresh_summary(self, account: TradingAccount) -> SummaryResult:
        """Pull a fresh summary; on any failure hand back the cached one untouched."""
        cached = cached_summary(account)
        if not account.bridge_session_id:
            return SummaryResult(
                success=False,
                summary=cached,
                from_cache=True,
                error=str(NeverConnected("Account was never connected to MTAPI")),
            )
        result = self.client.get_account_summary(account.bridge_session_id, account.platform)
        if not result.success:
            logger.warning(
                "Using cached summary for account %s: %s", account.account_number, result.error
            )
            return SummaryResult(
                success=False, summary=cached, from_cache=True, error=result.error_message
            )

        summary = result.data.to_dict()
        fields = {
            "balance": summary["balance"],
            "equity": summary["equity"],
            "margin": summary["margin"],
            "free_margin": summary["free_margin"],
            "profit": summary["profit"],
            "currency": summary["currency"],
            "leverage": summary["leverage"],
            "account_type": summary["account_type"] or account.account_type,
            "remote_user_name": summary["remote_user_name"] or account.remote_user_name,
            "last_sync_at": datetime.now(timezone.utc),
        }
        try:
            save_account(account.id, **fields)
        except PersistenceError as exc:
            logger.error(
                "Could not store summary for account %s: %s", account.account_number, exc
            )
            return SummaryResult(success=False, summary=cached, from_cache=True, error=str(exc))
        for key, value in fields.items():
            setattr(account, key, value)
        logger.info("Summary refreshed for account %s", account.account_number)
        return SummaryResult(success=True, summary=cached_summary(account))

    def default_window(self, account: TradingAccount) -> int | None:
        if not history_exists(account.id):
            return None
        return self.window_days

    def fetch_order_history(
        self, account: TradingAccount, window_days: int | None
    ) -> HistoryResult:
        """Fetch orders and merge them into the stored history.

        ``window_days=None`` fetches everything since the epoch and replaces the
        stored sequence. A bounded window only appends tickets not stored yet.
        Bridge and persistence failures propagate.
        """
        if not account.bridge_session_id:
            raise NeverConnected("Account was never connected to MTAPI")
        if window_days is not None and window_days <= 0:
            raise ValueError("window_days must be positive")

        to_date = datetime.now(timezone.utc).replace(microsecond=0)
        from_date = EPOCH if window_days is None else to_date - timedelta(days=window_days)
        result = self.client.get_order_history(
            account.bridge_session_id, account.platform, from_date, to_date
        )
        if not result.success:
            raise result.error or MtapiError("Failed to fetch order history")

        orders = normalize_orders(result.data or [])
        if window_days is None:
            stored = replace_history(account.id, orders)
            mode = MERGE_REPLACE
        else:
            stored = append_history(account.id, orders)
            mode = MERGE_APPEND
        logger.info(
            "History for account %s: %d fetched, %d stored (%s)",
            account.account_number,
            len(orders),
            stored,
            mode,
        )
        return HistoryResult(
            orders=orders,
            date_range={"from": format_bridge_date(from_date), "to": format_bridge_date(to_date)},
            mode=mode,
            stored=stored,
        )

    def sync_all(self, account: TradingAccount) -> SyncResult:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="AccountSync") as pool:
            summary_future = pool.submit(self.refresh_summary, account)
            history_future = pool.submit(self.fetch_order_history, account, None)
            errors: dict[str, str] = {}
            try:
                summary = summary_future.result()
            except Exception as exc:
                logger.exception("Summary refresh crashed for account %s", account.account_number)
                summary = SummaryResult(
                    success=False, summary=cached_summary(account), from_cache=True, error=str(exc)
                )
            if summary.error:
                errors["summary"] = summary.error
            history = None
            try:
                history = history_future.result()
            except BotdeskError as exc:
                logger.warning(
                    "History sync failed for account %s: %s", account.account_number, exc
                )
                errors["history"] = str(exc)
            except Exception as exc:
                logger.exception("History sync crashed for account %s", account.account_number)
                errors["history"] = str(exc) or exc.__class__.__name__
        return SyncResult(summary=summary, history=history, errors=errors)

    def get_open_positions(self, account: TradingAccount) -> BridgeResult:
        return self.client.get_open_positions(account.bridge_session_id, account.platform)

    def get_closed_orders(self, account: TradingAccount) -> BridgeResult:
        return self.client.get_closed_orders(account.bridge_session_id, account.platform)

    def load_history(self, account: TradingAccount) -> list[HistoryOrder]:
        return load_history(account.id)
