"""
db.py — Persistence Layer (SQLAlchemy)

Tables:
    - rate_card_entries: per-shop price list, read-only for this service
    - orders:            the order aggregate root
    - order_files:       immutable file manifest of an order
    - payment_intents:   one gateway intent per order
    - redeemed_grants:   capability tokens already used by the storage worker

Money is stored as NUMERIC, never FLOAT.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String,
    UniqueConstraint, create_engine, event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from . import config


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class RateCardEntry(Base):
    __tablename__ = "rate_card_entries"
    __table_args__ = (
        UniqueConstraint("shop_id", "print_type", "paper_size", name="uq_rate_card_shop_config"),
        CheckConstraint("price_per_page > 0", name="ck_rate_card_price_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shop_id: Mapped[str] = mapped_column(String(64), index=True)
    print_type: Mapped[str] = mapped_column(String(8))
    paper_size: Mapped[str] = mapped_column(String(8))
    price_per_page: Mapped[Decimal] = mapped_column(Numeric(10, 2))


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    customer_id: Mapped[str] = mapped_column(String(64), index=True)
    shop_id: Mapped[str] = mapped_column(String(64), index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    status: Mapped[str] = mapped_column(String(16), default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    files = relationship(
        "OrderFileRow", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderFileRow.position",
    )
    payment_intent = relationship("PaymentIntent", back_populates="order", uselist=False)


class OrderFileRow(Base):
    __tablename__ = "order_files"
    __table_args__ = (
        CheckConstraint("pages >= 1", name="ck_order_files_pages"),
        CheckConstraint("copies >= 1", name="ck_order_files_copies"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    position: Mapped[int] = mapped_column(Integer)
    # A stored object belongs to exactly one order
    storage_key: Mapped[str] = mapped_column(String(512), unique=True)
    file_name: Mapped[str] = mapped_column(String(255))
    pages: Mapped[int] = mapped_column(Integer)
    print_type: Mapped[str] = mapped_column(String(8))
    paper_size: Mapped[str] = mapped_column(String(8))
    copies: Mapped[int] = mapped_column(Integer)
    sides: Mapped[str] = mapped_column(String(8))
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2))

    order = relationship("Order", back_populates="files")


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), unique=True)
    gateway_intent_id: Mapped[str] = mapped_column(String(64), unique=True)
    amount_minor_units: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    order = relationship("Order", back_populates="payment_intent")


class RedeemedGrant(Base):
    __tablename__ = "redeemed_grants"

    jti: Mapped[str] = mapped_column(String(64), primary_key=True)
    operation: Mapped[str] = mapped_column(String(16))
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


def _use_immediate_transactions(engine):
    # pysqlite defers BEGIN; take the write lock up front so concurrent
    # compare-and-swap writers queue on the busy timeout instead of deadlocking.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url=None):
    url = url or config.DATABASE_URL
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        _use_immediate_transactions(engine)
        return engine
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine):
    Base.metadata.create_all(engine)
