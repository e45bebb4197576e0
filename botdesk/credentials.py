from __future__ import annotations

from .errors import CredentialError
from .models import TradingAccount


class CredentialStore:
    """Where broker passwords live between registration and silent reconnects."""

    def seal(self, password: str) -> str:
        raise NotImplementedError

    def reveal(self, account: TradingAccount) -> str:
        raise NotImplementedError


class StoredPasswordCredentials(CredentialStore):
    """Keeps the password in the account row as given and replays it on reconnect."""

    def seal(self, password: str) -> str:
        return password

    def reveal(self, account: TradingAccount) -> str:
        password = account.password_encrypted
        if not password:
            raise CredentialError(
                f"No stored password for account {account.account_number}."
            )
        return password
