from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from .account_store import (
    account_exists,
    create_account,
    find_accounts_by_user,
    get_account,
    save_account,
)
from .account_validation import validate_account_data
from .credentials import CredentialStore, StoredPasswordCredentials
from .errors import (
    AccountValidationError,
    CredentialError,
    MtapiError,
    NeverConnected,
    PersistenceError,
    TransportError,
)
from .models import (
    CONNECTION_CONNECTED,
    CONNECTION_DISCONNECTED,
    CONNECTION_ERROR,
    TradingAccount,
)
from .mtapi_client import BridgeResult, MtapiClient
from .settings import ACCOUNT_STATUS_WORKERS

logger = logging.getLogger(__name__)


@dataclass
class ConnectionResult:
    success: bool
    connected: bool
    session_id: str | None = None
    session_changed: bool = False
    recovered: bool = False
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def failed(cls, error: BaseException, connected: bool = False, **extra: Any) -> "ConnectionResult":
        return cls(
            success=False,
            connected=connected,
            error=str(error),
            error_code=getattr(error, "code", "error"),
            **extra,
        )


class _AccountLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def get(self, account_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock


class AccountConnectionService:
    """Keeps each account's MTAPI session usable, reconnecting when it goes stale.

    Calls for the same account are serialised inside this process. The stored
    handle is re-read once the lock is held, so a caller queued behind a
    reconnect checks the new session instead of opening a second one.
    """

    def __init__(
        self,
        client: MtapiClient,
        credentials: CredentialStore | None = None,
        max_workers: int = ACCOUNT_STATUS_WORKERS,
    ) -> None:
        self.client = client
        self.credentials = credentials or StoredPasswordCredentials()
        self.max_workers = max(1, max_workers)
        self._locks = _AccountLocks()

    def ensure_connection(self, account: TradingAccount) -> ConnectionResult:
        with self._locks.get(account.id):
            self._reload_connection_fields(account)
            handle = account.bridge_session_id
            if not handle:
                logger.info("Account %s has never been connected", account.account_number)
                return ConnectionResult.failed(
                    NeverConnected("Account was never connected to MTAPI")
                )

            check = self.client.check_connection(handle, account.platform)
            if check.success and check.data:
                self._write_status(account, CONNECTION_CONNECTED)
                return ConnectionResult(success=True, connected=True, session_id=handle)

            if check.invalid_session:
                logger.info(
                    "MTAPI session for account %s is no longer valid, reconnecting",
                    account.account_number,
                )
            elif check.success:
                logger.info(
                    "Account %s reported disconnected, reconnecting", account.account_number
                )
            else:
                logger.warning(
                    "Connection check for account %s failed (%s), reconnecting",
                    account.account_number,
                    check.error,
                )
            return self._reconnect(account, handle)

    def _reload_connection_fields(self, account: TradingAccount) -> None:
        try:
            stored = get_account(account.id)
        except SQLAlchemyError as exc:
            logger.error("Could not reload account %s: %s", account.account_number, exc)
            return
        if stored is None:
            return
        account.bridge_session_id = stored.bridge_session_id
        account.connection_status = stored.connection_status
        account.error_message = stored.error_message

    def _reconnect(self, account: TradingAccount, old_handle: str) -> ConnectionResult:
        try:
            password = self.credentials.reveal(account)
        except CredentialError as exc:
            self._write_status(account, CONNECTION_ERROR, str(exc))
            return ConnectionResult.failed(exc)

        result = self.client.connect(
            account.account_number, password, account.server_name, account.platform
        )
        if not result.success:
            error = result.error or MtapiError("Failed to reconnect account")
            status = (
                CONNECTION_ERROR if isinstance(error, TransportError) else CONNECTION_DISCONNECTED
            )
            logger.warning("Reconnect failed for account %s: %s", account.account_number, error)
            self._write_status(account, status, str(error))
            return ConnectionResult.failed(error)

        new_handle = result.data
        changed = new_handle != old_handle
        try:
            save_account(
                account.id,
                bridge_session_id=new_handle,
                connection_status=CONNECTION_CONNECTED,
                error_message=None,
            )
        except PersistenceError as exc:
            logger.error(
                "Account %s reconnected but the new session id was not saved: %s",
                account.account_number,
                exc,
            )
            return ConnectionResult.failed(
                PersistenceError("Reconnected, but the new MTAPI session id could not be saved."),
                connected=True,
                session_id=new_handle,
                session_changed=changed,
                recovered=True,
            )

        account.bridge_session_id = new_handle
        account.connection_status = CONNECTION_CONNECTED
        account.error_message = None
        logger.info(
            "Account %s reconnected (session changed: %s)", account.account_number, changed
        )
        return ConnectionResult(
            success=True,
            connected=True,
            session_id=new_handle,
            session_changed=changed,
            recovered=True,
        )

    def _write_status(
        self, account: TradingAccount, status: str, error_message: str | None = None
    ) -> None:
        if account.connection_status == status and account.error_message == error_message:
            return
        account.connection_status = status
        account.error_message = error_message
        try:
            save_account(account.id, connection_status=status, error_message=error_message)
        except PersistenceError as exc:
            logger.error(
                "Could not record status %s for account %s: %s",
                status,
                account.account_number,
                exc,
            )

    def connect_new_account(
        self, account_number: str, password: str, server_name: str, platform: str
    ) -> BridgeResult:
        return self.client.connect(account_number, password, server_name, platform)

    def register_account(self, user_id: int, data: dict[str, Any]) -> TradingAccount:
        fields = validate_account_data(data)
        if account_exists(user_id, fields["account_number"]):
            raise AccountValidationError("This trading account is already added")

        result = self.connect_new_account(
            fields["account_number"],
            fields["password"],
            fields["server_name"],
            fields["platform"],
        )
        if not result.success:
            raise result.error or MtapiError("Unable to connect to the trading server")

        try:
            return create_account(
                user_id=user_id,
                account_number=fields["account_number"],
                server_name=fields["server_name"],
                platform=fields["platform"],
                password_encrypted=self.credentials.seal(fields["password"]),
                bridge_session_id=result.data,
                connection_status=CONNECTION_CONNECTED,
            )
        except PersistenceError:
            self.client.disconnect(result.data, fields["platform"])
            raise

    def disconnect_account(self, account: TradingAccount) -> None:
        if account.bridge_session_id:
            result = self.client.disconnect(account.bridge_session_id, account.platform)
            if result.success:
                logger.info("Account %s disconnected from MTAPI", account.account_number)
        self._write_status(account, CONNECTION_DISCONNECTED)

    def remove_account(self, account: TradingAccount) -> None:
        with self._locks.get(account.id):
            if account.bridge_session_id:
                self.client.disconnect(account.bridge_session_id, account.platform)
            save_account(account.id, is_active=False, connection_status=CONNECTION_DISCONNECTED)
            account.is_active = False
            account.connection_status = CONNECTION_DISCONNECTED
        logger.info("Account %s removed", account.account_number)

    def list_accounts_with_status(
        self, user_id: int
    ) -> list[tuple[TradingAccount, ConnectionResult]]:
        accounts = find_accounts_by_user(user_id)
        if not accounts:
            return []
        results: dict[int, ConnectionResult] = {}
        workers = min(self.max_workers, len(accounts))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="AccountStatus") as pool:
            futures = {pool.submit(self.ensure_connection, account): account for account in accounts}
            for future in as_completed(futures):
                account = futures[future]
                try:
                    results[account.id] = future.result()
                except Exception as exc:
                    logger.exception(
                        "Status check crashed for account %s", account.account_number
                    )
                    results[account.id] = ConnectionResult.failed(exc)
        # ensure_connection may have stored a new handle; hand back what is persisted now.
        refreshed = {account.id: account for account in find_accounts_by_user(user_id)}
        return [(refreshed.get(account.id, account), results[account.id]) for account in accounts]
