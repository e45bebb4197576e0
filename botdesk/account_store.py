from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from .errors import PersistenceError
from .models import HistoryOrder, OrderHistory, TradingAccount, db_session

logger = logging.getLogger(__name__)

ORDER_COLUMNS = (
    "ticket",
    "symbol",
    "order_type",
    "volume",
    "lots",
    "open_time",
    "close_time",
    "open_price",
    "close_price",
    "profit",
    "commission",
    "swap",
)


def _active_accounts(session):
    return session.query(TradingAccount).filter(TradingAccount.is_active.is_(True))


def get_account(account_id: int) -> TradingAccount | None:
    with db_session() as session:
        return session.get(TradingAccount, account_id)


def find_account_by_handle(session_id: str) -> TradingAccount | None:
    with db_session() as session:
        return _active_accounts(session).filter_by(bridge_session_id=session_id).first()


def find_user_account(user_id: int, account_number: str) -> TradingAccount | None:
    with db_session() as session:
        return (
            _active_accounts(session)
            .filter_by(user_id=user_id, account_number=str(account_number))
            .first()
        )


def find_accounts_by_user(user_id: int) -> list[TradingAccount]:
    with db_session() as session:
        return (
            _active_accounts(session)
            .filter_by(user_id=user_id)
            .order_by(TradingAccount.created_at.desc(), TradingAccount.id.desc())
            .all()
        )


def account_exists(user_id: int, account_number: str) -> bool:
    return find_user_account(user_id, account_number) is not None


def create_account(**fields: Any) -> TradingAccount:
    try:
        with db_session() as session:
            account = TradingAccount(**fields)
            session.add(account)
            session.flush()
            session.refresh(account)
            return account
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not save trading account: {exc}") from exc


def save_account(account_id: int, **fields: Any) -> None:
    """Write only the named columns of one account row."""
    if not fields:
        return
    try:
        with db_session() as session:
            updated = (
                session.query(TradingAccount)
                .filter_by(id=account_id)
                .update(fields, synchronize_session=False)
            )
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not update trading account {account_id}: {exc}") from exc
    if not updated:
        raise PersistenceError(f"Trading account {account_id} no longer exists.")


def history_exists(account_id: int) -> bool:
    with db_session() as session:
        return session.query(OrderHistory.id).filter_by(account_id=account_id).first() is not None


def _history_for(session, account_id: int) -> OrderHistory:
    history = session.query(OrderHistory).filter_by(account_id=account_id).first()
    if history is None:
        history = OrderHistory(account_id=account_id)
        session.add(history)
        session.flush()
    return history


def find_or_create_history(account_id: int) -> OrderHistory:
    try:
        with db_session() as session:
            return _history_for(session, account_id)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not load order history: {exc}") from exc


def _order_row(history_id: int, position: int, order: dict[str, Any]) -> HistoryOrder:
    values = {column: order.get(column) for column in ORDER_COLUMNS}
    raw = order.get("raw")
    return HistoryOrder(
        history_id=history_id,
        position=position,
        raw_json=json.dumps(raw, default=str) if raw is not None else None,
        **values,
    )


def replace_history(account_id: int, orders: list[dict[str, Any]]) -> int:
    """Swap the stored sequence for ``orders`` in one transaction."""
    try:
        with db_session() as session:
            history = _history_for(session, account_id)
            session.query(HistoryOrder).filter_by(history_id=history.id).delete(
                synchronize_session=False
            )
            for position, order in enumerate(orders):
                session.add(_order_row(history.id, position, order))
            history.updated_at = func.now()
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not replace order history: {exc}") from exc
    return len(orders)


def append_history(account_id: int, orders: list[dict[str, Any]]) -> int:
    """Insert orders whose ticket is not stored yet; stored tickets are left as they are."""
    try:
        with db_session() as session:
            history = _history_for(session, account_id)
            known = {
                ticket
                for (ticket,) in session.query(HistoryOrder.ticket).filter_by(
                    history_id=history.id
                )
            }
            last_position = (
                session.query(func.max(HistoryOrder.position))
                .filter_by(history_id=history.id)
                .scalar()
            )
            position = -1 if last_position is None else last_position
            added = 0
            for order in orders:
                if order["ticket"] in known:
                    continue
                position += 1
                session.add(_order_row(history.id, position, order))
                known.add(order["ticket"])
                added += 1
            if added:
                history.updated_at = func.now()
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not append order history: {exc}") from exc
    return added


def load_history(account_id: int) -> list[HistoryOrder]:
    with db_session() as session:
        history = session.query(OrderHistory).filter_by(account_id=account_id).first()
        if history is None:
            return []
        return (
            session.query(HistoryOrder)
            .filter_by(history_id=history.id)
            .order_by(HistoryOrder.position)
            .all()
        )
