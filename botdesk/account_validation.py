from __future__ import annotations

from typing import Any

from .errors import AccountValidationError
from .settings import PLATFORMS

REQUIRED_ACCOUNT_FIELDS = ("accountNumber", "serverName", "platform", "password")


def validate_account_data(data: dict[str, Any]) -> dict[str, str]:
    if any(not str(data.get(field) or "").strip() for field in REQUIRED_ACCOUNT_FIELDS):
        raise AccountValidationError(
            "All fields are required: accountNumber, serverName, platform, password"
        )
    platform = str(data["platform"]).strip().upper()
    if platform not in PLATFORMS:
        raise AccountValidationError("Platform must be MT4 or MT5")
    return {
        "account_number": str(data["accountNumber"]).strip(),
        "server_name": str(data["serverName"]).strip(),
        "platform": platform,
        "password": str(data["password"]),
    }

