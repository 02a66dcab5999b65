from datetime import datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from core.database import Base


class NotificationType(str, PyEnum):
    NEW_ORDER = "NEW_ORDER"
    ORDER_READY = "ORDER_READY"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    OFFER_ANNOUNCEMENT = "OFFER_ANNOUNCEMENT"


class RoleTarget(str, PyEnum):
    KITCHEN = "kitchen"
    ADMIN = "admin"
    WAITER = "waiter"
    CASHIER = "cashier"
    ALL = "all"


class ReferenceType(str, PyEnum):
    ORDER = "order"
    PAYMENT = "payment"
    OFFER = "offer"


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        # NULL reference ids never collide, so announcements are not deduplicated
        UniqueConstraint("tenant_id", "branch_id", "type", "reference_id", name="uq_notification_reference"),
        Index("ix_notifications_scope_role", "tenant_id", "branch_id", "role_target", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(String(500), nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, values_callable=_values, native_enum=False), nullable=False, index=True)
    role_target: Mapped[RoleTarget] = mapped_column(
        Enum(RoleTarget, values_callable=_values, native_enum=False), nullable=False)
    reference_id: Mapped[Optional[str]] = mapped_column(String(64))
    reference_type: Mapped[Optional[ReferenceType]] = mapped_column(
        Enum(ReferenceType, values_callable=_values, native_enum=False))
    created_by: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)

    read_by: Mapped[List["NotificationRead"]] = relationship(
        back_populates="notification", cascade="all, delete-orphan", lazy="selectin")

    def is_read_by(self, user_id: str) -> bool:
        return any(marker.user_id == user_id for marker in self.read_by)


class NotificationRead(Base):
    __tablename__ = "notification_reads"
    __table_args__ = (
        UniqueConstraint("notification_id", "user_id", name="uq_notification_read_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    notification_id: Mapped[int] = mapped_column(
        ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    read_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    notification: Mapped[Notification] = relationship(back_populates="read_by")
