from __future__ import annotations

import json
from typing import Any

from flask import Response, request

from .jwt_utils import decode_access_token
from .models import User, db_session


def json_response(payload: dict[str, Any], status_code: int = 200) -> Response:
    return Response(json.dumps(payload), status=status_code, mimetype="application/json")


def json_error(message: str, status_code: int = 400, **extra: Any) -> Response:
    payload: dict[str, Any] = {"success": False, "message": message}
    payload.update(extra)
    return json_response(payload, status_code)


def bearer_token() -> str | None:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def current_user_id() -> int | None:
    token = bearer_token()
    if not token:
        return None
    payload = decode_access_token(token)
    if not payload or not payload.get("sub"):
        return None
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        return None
    with db_session() as session:
        user = session.get(User, user_id)
        return user.id if user else None
