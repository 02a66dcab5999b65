from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from core.database import Base


class PaymentMethod(str, PyEnum):
    CASH = "cash"
    QR = "qr"
    UPI = "upi"
    CREDIT_CARD = "credit_card"
    # Settled by a gateway callback rather than at the counter
    ONLINE = "online"


COUNTER_METHODS = frozenset({PaymentMethod.CASH, PaymentMethod.QR, PaymentMethod.UPI, PaymentMethod.CREDIT_CARD})


class AuditAction(str, PyEnum):
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    PAYMENT_PROCESSED = "PAYMENT_PROCESSED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_CANCELLED = "PAYMENT_CANCELLED"
    PAYMENT_VERIFIED = "PAYMENT_VERIFIED"


class AuditStatus(str, PyEnum):
    SUCCESS = "success"
    FAILED = "failed"


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_scope_created", "tenant_id", "branch_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # One payment per order; the unique index is the backstop for races
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, unique=True)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, values_callable=_values, native_enum=False), nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount_received: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    change: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    cashier_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentAudit(Base):
    __tablename__ = "payment_audits"
    __table_args__ = (
        Index("ix_audits_scope_action", "tenant_id", "branch_id", "action", "created_at"),
        Index("ix_audits_order_created", "order_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, values_callable=_values, native_enum=False), nullable=False, index=True)
    status: Mapped[AuditStatus] = mapped_column(
        Enum(AuditStatus, values_callable=_values, native_enum=False), nullable=False)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    payment_method: Mapped[Optional[str]] = mapped_column(String(20))
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128))
    performed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    performed_by_role: Mapped[Optional[str]] = mapped_column(String(20))
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(String(255))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    error_code: Mapped[Optional[str]] = mapped_column(String(40))
    extra: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditImmutableError(RuntimeError):
    pass


@event.listens_for(PaymentAudit, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise AuditImmutableError("Payment audit records are append-only")


@event.listens_for(PaymentAudit, "before_delete")
def _refuse_audit_delete(mapper, connection, target):
    raise AuditImmutableError("Payment audit records are append-only")
