from __future__ import annotations

import json
import logging
import re
import secrets
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

import requests

from .errors import (
    BridgeRejected,
    InvalidCredentials,
    InvalidSession,
    MtapiError,
    TransportError,
)
from .settings import (
    MTAPI_MT4_URL,
    MTAPI_MT5_URL,
    MTAPI_TIMEOUT_SECONDS,
    MTAPI_TOKEN,
    PLATFORM_MT4,
    PLATFORM_MT5,
)

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MTAPI_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_SESSION_CODES = {"INVALID_TOKEN", "INVALID_ID", "TOKEN_NOT_FOUND"}
_NON_SESSION_CODES = {"OK", "DONE", "CONNECT_ERROR", "INVALID_ACCOUNT"}
_SESSION_PATTERN = re.compile(
    r"(invalid|unknown|expired) (token|id|session)|(token|session|client).*not found",
    re.IGNORECASE,
)
_CREDENTIALS_PATTERN = re.compile(
    r"invalid (account|credentials|login|password)", re.IGNORECASE
)
_DONE_FAILURE_PATTERN = re.compile(r"server not found|invalid|error", re.IGNORECASE)
_ALIVE_VALUES = {"ok", "connected", "true"}


def generate_64bit_id() -> int:
    return secrets.randbits(64)


def format_bridge_date(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(MTAPI_DATE_FORMAT)


def extract_float(payload: dict[str, Any], keys: tuple[str, ...]) -> float | None:
    for key in keys:
        value = payload.get(key)
        if value is None or value == "":
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


def _decode_body(response: requests.Response) -> Any:
    raw = response.text or ""
    try:
        return json.loads(raw)
    except ValueError:
        return raw.strip().strip('"')


def classify_payload(payload: Any) -> MtapiError | None:
    """Map MTAPI's in-band error sentinels to an exception, or ``None`` when clean.

    MTAPI answers many failures with HTTP 200 and a ``{"code", "message"}``
    body, so every response goes through here before anyone reads it.
    """
    if not isinstance(payload, dict):
        return None
    code = str(payload.get("code") or "").strip().upper()
    message = str(payload.get("message") or "").strip()
    if not code:
        return None
    if code in _SESSION_CODES or (
        code not in _NON_SESSION_CODES and _SESSION_PATTERN.search(message)
    ):
        return InvalidSession(message or "MTAPI session is no longer valid.")
    if code == "INVALID_ACCOUNT" or _CREDENTIALS_PATTERN.search(message):
        return InvalidCredentials(
            "Invalid account credentials. Please check your login and password."
        )
    if code == "CONNECT_ERROR":
        return BridgeRejected(message or "Connection failed")
    if code == "DONE":
        if message and _DONE_FAILURE_PATTERN.search(message):
            return BridgeRejected(f"MTAPI error: {message}")
        return None
    if code != "OK" and message:
        return BridgeRejected(f"MTAPI error: {message}")
    return None


@dataclass
class BridgeResult:
    success: bool
    data: Any = None
    error: MtapiError | None = None
    status_code: int | None = None
    text: str | None = None

    @classmethod
    def ok(cls, data: Any = None, status_code: int | None = None) -> "BridgeResult":
        return cls(success=True, data=data, status_code=status_code)

    @classmethod
    def fail(cls, error: MtapiError, status_code: int | None = None) -> "BridgeResult":
        return cls(success=False, error=error, status_code=status_code)

    @property
    def error_message(self) -> str | None:
        return str(self.error) if self.error is not None else None

    @property
    def invalid_session(self) -> bool:
        return isinstance(self.error, InvalidSession)


@dataclass
class AccountSummary:
    balance: float = 0.0
    equity: float = 0.0
    margin: float = 0.0
    free_margin: float = 0.0
    profit: float = 0.0
    currency: str = "USD"
    leverage: int = 100
    account_type: str | None = None
    remote_user_name: str | None = None

    @classmethod
    def from_payloads(
        cls, summary: dict[str, Any], account: dict[str, Any] | None = None
    ) -> "AccountSummary":
        account = account or {}
        leverage = extract_float(summary, ("leverage",))
        return cls(
            balance=extract_float(summary, ("balance",)) or 0.0,
            equity=extract_float(summary, ("equity",)) or 0.0,
            margin=extract_float(summary, ("margin",)) or 0.0,
            free_margin=extract_float(summary, ("freeMargin", "free_margin")) or 0.0,
            profit=extract_float(summary, ("profit",)) or 0.0,
            currency=str(summary.get("currency") or "USD"),
            leverage=int(leverage) if leverage else 100,
            account_type=account.get("type") or summary.get("type"),
            remote_user_name=account.get("userName") or summary.get("userName"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _session_handle(payload: Any) -> str | None:
    if isinstance(payload, dict):
        for key in ("id", "token", "sessionId"):
            value = payload.get(key)
            if value:
                return str(value)
        return None
    if payload is None or isinstance(payload, bool):
        return None
    return str(payload).strip().strip('"').strip() or None


def _is_alive(payload: Any) -> bool:
    if payload is True:
        return True
    if isinstance(payload, dict):
        return payload.get("connected") is True
    if isinstance(payload, str):
        return payload.strip().lower() in _ALIVE_VALUES
    return False


def _as_list(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        items = payload.get("orders")
        if isinstance(items, list):
            return items
        return []
    if isinstance(payload, list):
        return payload
    return []


class MtapiClient:
    """Thin wrapper over the MTAPI MT4/MT5 REST bridges.

    Never raises for bridge outcomes; every call returns a ``BridgeResult``.
    """

    def __init__(
        self,
        token: str | None = MTAPI_TOKEN,
        mt4_url: str = MTAPI_MT4_URL,
        mt5_url: str = MTAPI_MT5_URL,
        timeout: float = MTAPI_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.token = token
        self.mt4_url = mt4_url.rstrip("/")
        self.mt5_url = mt5_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def base_url(self, platform: str) -> str:
        if platform == PLATFORM_MT5:
            return self.mt5_url
        if platform == PLATFORM_MT4:
            return self.mt4_url
        raise ValueError(f"Unsupported platform: {platform!r}")

    def _get(
        self,
        platform: str,
        path: str,
        params: dict[str, Any],
        accept: str = "text/plain",
    ) -> BridgeResult:
        url = f"{self.base_url(platform)}{path}"
        headers = {"Accept": accept}
        if self.token:
            headers["ApiKey"] = self.token
        try:
            response = self._session.get(
                url, params=params, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            logger.warning("MTAPI %s %s transport error: %s", platform, path, exc)
            return BridgeResult.fail(TransportError(f"MTAPI request failed: {exc}"))

        payload = _decode_body(response)
        embedded = classify_payload(payload)
        if response.status_code >= 400:
            if embedded is None:
                message = payload.get("message") if isinstance(payload, dict) else None
                embedded = TransportError(
                    message or f"MTAPI returned HTTP {response.status_code}"
                )
            logger.warning(
                "MTAPI %s %s failed with HTTP %s: %s",
                platform,
                path,
                response.status_code,
                embedded,
            )
            return BridgeResult.fail(embedded, status_code=response.status_code)
        if embedded is not None:
            logger.info("MTAPI %s %s rejected: %s", platform, path, embedded)
            return BridgeResult.fail(embedded, status_code=response.status_code)
        result = BridgeResult.ok(payload, status_code=response.status_code)
        result.text = response.text
        return result

    def connect(
        self, account_number: str, password: str, server_name: str, platform: str
    ) -> BridgeResult:
        result = self._get(
            platform,
            "/ConnectEx",
            {
                "user": account_number,
                "password": password,
                "server": server_name,
                "id": str(generate_64bit_id()),
            },
            accept="application/json",
        )
        if not result.success:
            return result
        # A non-object body is the bare handle, used verbatim.
        raw = result.data if isinstance(result.data, dict) else result.text
        handle = _session_handle(raw)
        if not handle:
            return BridgeResult.fail(
                BridgeRejected("MTAPI did not return a session id."), result.status_code
            )
        return BridgeResult.ok(handle, result.status_code)

    def check_connection(self, session_id: str, platform: str) -> BridgeResult:
        result = self._get(platform, "/CheckConnect", {"id": session_id})
        if not result.success:
            return result
        return BridgeResult.ok(_is_alive(result.data), result.status_code)

    def get_account_summary(self, session_id: str, platform: str) -> BridgeResult:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="MtapiSummary") as pool:
            summary_future = pool.submit(
                self._get, platform, "/AccountSummary", {"id": session_id}
            )
            account_future = pool.submit(self._get, platform, "/Account", {"id": session_id})
            summary_result = summary_future.result()
            account_result = account_future.result()
        for result in (summary_result, account_result):
            if not result.success:
                return result
        summary = summary_result.data if isinstance(summary_result.data, dict) else {}
        account = account_result.data if isinstance(account_result.data, dict) else {}
        return BridgeResult.ok(
            AccountSummary.from_payloads(summary, account), summary_result.status_code
        )

    def get_open_positions(self, session_id: str, platform: str) -> BridgeResult:
        result = self._get(platform, "/OpenedOrders", {"id": session_id})
        if not result.success:
            return result
        return BridgeResult.ok(_as_list(result.data), result.status_code)

    def get_closed_orders(self, session_id: str, platform: str) -> BridgeResult:
        result = self._get(platform, "/ClosedOrders", {"id": session_id})
        if not result.success:
            return result
        return BridgeResult.ok(_as_list(result.data), result.status_code)

    def get_order_history(
        self,
        session_id: str,
        platform: str,
        from_date: datetime | None,
        to_date: datetime | None = None,
    ) -> BridgeResult:
        to_date = to_date or datetime.now(timezone.utc)
        result = self._get(
            platform,
            "/OrderHistory",
            {
                "id": session_id,
                "from": format_bridge_date(from_date or EPOCH),
                "to": format_bridge_date(to_date),
                "sort": "CloseTime",
                "ascending": "false",
            },
        )
        if not result.success:
            return result
        return BridgeResult.ok(_as_list(result.data), result.status_code)

    def disconnect(self, session_id: str, platform: str) -> BridgeResult:
        try:
            result = self._get(platform, "/Disconnect", {"id": session_id})
        except ValueError as exc:
            logger.warning("MTAPI disconnect skipped: %s", exc)
            return BridgeResult.fail(BridgeRejected(str(exc)))
        if not result.success:
            logger.warning("MTAPI disconnect failed for %s: %s", platform, result.error)
        return result
