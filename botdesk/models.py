from __future__ import annotations

from contextlib import contextmanager
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    text,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from .settings import AUTO_CREATE_SCHEMA, DATABASE_URL


def _normalize_database_url() -> tuple[str, dict[str, Any]]:
    url = DATABASE_URL
    if url.startswith("postgres://"):
        url = "postgresql+psycopg://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        url = "postgresql+psycopg://" + url[len("postgresql://") :]
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite:///"):
        connect_args = {"check_same_thread": False}
    return url, connect_args


_db_url, _db_connect_args = _normalize_database_url()
engine = create_engine(_db_url, connect_args=_db_connect_args, pool_pre_ping=True, future=True)
# Store helpers hand detached rows back to the services, so keep loaded state after commit.
SessionLocal = sessionmaker(
    bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True
)
Base = declarative_base()

CONNECTION_PENDING = "pending"
CONNECTION_CONNECTED = "connected"
CONNECTION_DISCONNECTED = "disconnected"
CONNECTION_ERROR = "error"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    accounts = relationship("TradingAccount", back_populates="user")


class TradingAccount(Base):
    __tablename__ = "trading_accounts"
    __table_args__ = (
        Index(
            "uq_trading_accounts_active_number",
            "user_id",
            "account_number",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    account_number = Column(String(50), nullable=False)
    server_name = Column(String(100), nullable=False)
    platform = Column(String(10), nullable=False)
    password_encrypted = Column(Text, nullable=False)
    bridge_session_id = Column(String(100), index=True)
    connection_status = Column(String(20), default=CONNECTION_PENDING, nullable=False)
    balance = Column(Numeric(15, 2), default=0)
    equity = Column(Numeric(15, 2), default=0)
    margin = Column(Numeric(15, 2), default=0)
    free_margin = Column(Numeric(15, 2), default=0)
    profit = Column(Numeric(15, 2), default=0)
    leverage = Column(Integer, default=100)
    currency = Column(String(10), default="USD")
    account_type = Column(String(20), default="Demo")
    remote_user_name = Column(String(255))
    last_sync_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    user = relationship("User", back_populates="accounts")
    history = relationship(
        "OrderHistory", cascade="all, delete-orphan", back_populates="account", uselist=False
    )


class OrderHistory(Base):
    __tablename__ = "order_histories"

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("trading_accounts.id"), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    account = relationship("TradingAccount", back_populates="history")
    orders = relationship(
        "HistoryOrder",
        cascade="all, delete-orphan",
        back_populates="history",
        order_by="HistoryOrder.position",
    )


class HistoryOrder(Base):
    __tablename__ = "history_orders"
    __table_args__ = (UniqueConstraint("history_id", "ticket", name="uq_history_orders_ticket"),)

    id = Column(Integer, primary_key=True)
    history_id = Column(Integer, ForeignKey("order_histories.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    ticket = Column(String(50), nullable=False)
    symbol = Column(String(50))
    order_type = Column(String(20))
    volume = Column(Numeric(15, 2))
    lots = Column(Numeric(15, 2))
    open_time = Column(DateTime(timezone=True))
    close_time = Column(DateTime(timezone=True))
    open_price = Column(Numeric(18, 5))
    close_price = Column(Numeric(18, 5))
    profit = Column(Numeric(15, 2), default=0)
    commission = Column(Numeric(15, 2), default=0)
    swap = Column(Numeric(15, 2), default=0)
    raw_json = Column(Text)
    history = relationship("OrderHistory", back_populates="orders")


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


if AUTO_CREATE_SCHEMA:
    init_db()


@contextmanager
def db_session():
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
