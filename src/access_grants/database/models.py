"""SQLAlchemy models for grant and payment persistence."""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PaymentStatus(str, enum.Enum):
    """Payment statuses. Only pending has outgoing transitions."""
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class AlertType(str, enum.Enum):
    """Kinds of operator alerts."""
    SERVER_DOWN = "server_down"
    ACTIVATION_FAILED = "activation_failed"
    INCONSISTENCY = "inconsistency"


class Principal(Base):
    """The owner of grants and payments (an end user)."""
    __tablename__ = "principals"

    principal_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    trial_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class Payment(Base):
    """A payment intent reconciled against the gateway ledger by ``invoice_id``."""
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("principals.principal_id"), nullable=False)
    tariff_id: Mapped[str] = mapped_column(String(20), nullable=False)
    endpoint_code: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="RUB")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    invoice_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_payments_status", "status"),
        Index("ix_payments_created_at", "created_at"),
    )


class Grant(Base):
    """A provisioned access client mirrored on a remote panel."""
    __tablename__ = "grants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("principals.principal_id"), nullable=False)
    endpoint_code: Mapped[str] = mapped_column(String(32), nullable=False)
    client_uuid: Mapped[str] = mapped_column(String(36), nullable=False)
    client_email: Mapped[str] = mapped_column(String(255), nullable=False)
    tariff_id: Mapped[str] = mapped_column(String(20), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    max_devices: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    traffic_limit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)  # 0 = unlimited
    traffic_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    # At most one grant per completed payment; admin grants have none
    payment_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("payments.id"), nullable=True, unique=True)

    __table_args__ = (
        Index("ix_grants_principal_id", "principal_id"),
        Index("ix_grants_is_active", "is_active"),
        Index("ix_grants_expires_at", "expires_at"),
    )


class Alert(Base):
    """Operator-facing alert record."""
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_alerts_created_at", "created_at"),
    )
