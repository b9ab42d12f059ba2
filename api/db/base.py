from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.pool import NullPool

from config.settings import DATABASE_URL

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in local runs and tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _create_engine(url: str = DATABASE_URL):
    # aiosqlite does not benefit from pooling; each session gets its own connection
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=False,
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )

    # statement_cache_size=0 is required for pgbouncer/Supavisor compatibility
    # (they don't support prepared statements in transaction mode)
    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        connect_args={"prepared_statement_cache_size": 0, "statement_cache_size": 0},
    )


engine = _create_engine()
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(AsyncAttrs, DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)  # auth provider's user id
    email: Mapped[Optional[str]] = mapped_column(Text)
    name: Mapped[Optional[str]] = mapped_column(Text)
    image_url: Mapped[Optional[str]] = mapped_column(Text)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class PaymentTransaction(Base):
    """One row per (order_id, user_id). Status only moves forward; rows are never deleted."""
    __tablename__ = "payment_transactions"
    __table_args__ = (
        UniqueConstraint("order_id", "user_id", name="uq_payment_transactions_order_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="paypal")  # 'paypal', 'polar'
    capture_id: Mapped[Optional[str]] = mapped_column(String(255))
    amount: Mapped[str] = mapped_column(String(32), nullable=False, default="0")  # decimal as string
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    raw_payload: Mapped[Optional[dict]] = mapped_column(JsonType)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    audit_logs: Mapped[List["PaymentAuditLog"]] = relationship("PaymentAuditLog", back_populates="transaction")


class PaymentAuditLog(Base):
    """Append-only status history for payment_transactions."""
    __tablename__ = "payment_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("payment_transactions.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    previous_status: Mapped[Optional[str]] = mapped_column(String(50))
    new_status: Mapped[str] = mapped_column(String(50), nullable=False)
    changed_by: Mapped[str] = mapped_column(String(50), nullable=False)  # 'system', 'webhook', 'recovery_system'
    reason: Mapped[Optional[str]] = mapped_column(Text)
    request_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    transaction: Mapped["PaymentTransaction"] = relationship("PaymentTransaction", back_populates="audit_logs")


class StoryRecord(Base):
    __tablename__ = "story_data"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    story_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    story_subject: Mapped[str] = mapped_column(Text, nullable=False)
    story_type: Mapped[str] = mapped_column(String(100), nullable=False)
    age_group: Mapped[str] = mapped_column(String(100), nullable=False)
    image_style: Mapped[str] = mapped_column(String(100), nullable=False)
    genre: Mapped[Optional[str]] = mapped_column(String(100))
    language1: Mapped[str] = mapped_column(String(10), nullable=False)
    language2: Mapped[str] = mapped_column(String(10), nullable=False)
    output: Mapped[dict] = mapped_column(JsonType, nullable=False)
    cover_image: Mapped[Optional[str]] = mapped_column(Text)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_email: Mapped[Optional[str]] = mapped_column(Text)
    user_name: Mapped[Optional[str]] = mapped_column(Text)
    user_image: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)