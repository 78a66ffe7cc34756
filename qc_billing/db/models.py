"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Coordination invariants live here as keys and constraints so that independent
request handlers cannot double-grant:
- payment_orders.order_id is unique; status moves pending -> paid by conditional UPDATE
- used_redemption_codes.code is the primary key (one grant per code, system-wide)
- redemption_logs has unique(device_id, redeemed_month) (one grant per device per month)
- device_usage.device_id is the primary key (one signup bonus per device)
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from qc_billing.models.api import OrderStatus


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Only the fields the credit subsystem touches; login/session data is owned elsewhere.
    """

    __tablename__ = "users"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    nickname: Mapped[str] = mapped_column(String(100), nullable=False)

    # Device identity - suffix is the referral code, computed once at write time
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    device_suffix: Mapped[str | None] = mapped_column(String(16), nullable=True)

    # Balance (one credit = one AI analysis)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        Index("idx_users_device_suffix", "device_suffix"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, nickname={self.nickname}, credits={self.credits})>"


class PaymentOrder(Base):
    """
    ORM model for payment_orders table.

    Created pending by the order service; moved to paid exactly once by the
    notification handler. Never deleted.
    """

    __tablename__ = "payment_orders"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    order_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    package_id: Mapped[str] = mapped_column(String(50), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.PENDING.value
    )

    # Gateway transaction reference, set on payment
    trade_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits > 0", name="ck_payment_orders_credits_positive"),
        CheckConstraint("amount > 0", name="ck_payment_orders_amount_positive"),
        CheckConstraint("status IN ('pending', 'paid')", name="ck_payment_orders_status"),
        Index("idx_payment_orders_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentOrder(order_id={self.order_id}, user_id={self.user_id}, "
            f"status={self.status}, credits={self.credits})>"
        )


class UsedRedemptionCode(Base):
    """ORM model for used_redemption_codes table."""

    __tablename__ = "used_redemption_codes"

    code: Mapped[str] = mapped_column(String(16), primary_key=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class RedemptionLog(Base):
    """
    ORM model for redemption_logs table.

    One row per successful redemption; the unique key caps each device at one
    redemption per calendar month.
    """

    __tablename__ = "redemption_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(16), nullable=False)
    redeemed_month: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("device_id", "redeemed_month", name="uq_redemption_device_month"),
    )


class DeviceUsage(Base):
    """ORM model for device_usage table - devices that already got a signup bonus."""

    __tablename__ = "device_usage"

    device_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class PaymentConfig(Base):
    """
    ORM model for payment_config table.

    Operator-editable gateway settings (app id, keys, enabled flag).
    """

    __tablename__ = "payment_config"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging - never includes the value."""
        return f"<PaymentConfig(key={self.key}, is_enabled={self.is_enabled})>"
