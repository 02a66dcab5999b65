from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, Numeric, String, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from core.database import Base
from enum import Enum as PyEnum


class OrderType(str, PyEnum):
    DINE_IN = "dine-in"
    TAKEAWAY = "takeaway"


class OrderStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ItemStatus(str, PyEnum):
    PENDING = "PENDING"
    PREPARING = "PREPARING"
    READY = "READY"
    SERVED = "SERVED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"


class KotStatus(str, PyEnum):
    OPEN = "Open"
    CLOSED = "Closed"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})
ACTIVE_ORDER_STATUSES = frozenset(OrderStatus) - TERMINAL_ORDER_STATUSES

# Position in the forward flow; cancelled sits outside it
ORDER_FLOW = [OrderStatus.PENDING, OrderStatus.ACCEPTED, OrderStatus.PREPARING,
              OrderStatus.READY, OrderStatus.COMPLETED]
ITEM_FLOW = [ItemStatus.PENDING, ItemStatus.PREPARING, ItemStatus.READY, ItemStatus.SERVED]

MONEY = Numeric(12, 2)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "branch_id", "token_number", name="uq_order_token"),
        Index("ix_orders_scope_status", "tenant_id", "branch_id", "order_status"),
        Index("ix_orders_scope_created", "tenant_id", "branch_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False)
    token_number: Mapped[int] = mapped_column(Integer, nullable=False)
    order_type: Mapped[OrderType] = mapped_column(
        Enum(OrderType, values_callable=_values, native_enum=False), nullable=False)
    table_id: Mapped[Optional[int]] = mapped_column(ForeignKey("restaurant_tables.id"), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(120))
    customer_phone: Mapped[Optional[str]] = mapped_column(String(32))

    order_status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, values_callable=_values, native_enum=False),
        default=OrderStatus.PENDING, nullable=False, index=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, values_callable=_values, native_enum=False),
        default=PaymentStatus.PENDING, nullable=False)
    payment_method: Mapped[Optional[str]] = mapped_column(String(20))
    kot_status: Mapped[KotStatus] = mapped_column(
        Enum(KotStatus, values_callable=_values, native_enum=False),
        default=KotStatus.OPEN, nullable=False, index=True)

    subtotal: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    tax: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    discount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    final_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    waiter_id: Mapped[Optional[str]] = mapped_column(String(64))
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(20))
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(255))

    prep_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    ready_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    payment_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id", lazy="selectin")
    table: Mapped[Optional["RestaurantTable"]] = relationship(foreign_keys=[table_id], lazy="joined")

    __mapper_args__ = {"version_id_col": version}

    @property
    def active_items(self) -> List["OrderItem"]:
        return [item for item in self.items if item.status != ItemStatus.CANCELLED]

    @property
    def table_number(self) -> Optional[int]:
        return self.table.number if self.table is not None else None


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id: Mapped[Optional[str]] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    notes: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[ItemStatus] = mapped_column(
        Enum(ItemStatus, values_callable=_values, native_enum=False),
        default=ItemStatus.PENDING, nullable=False)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(20))
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(255))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    order: Mapped[Order] = relationship(back_populates="items")

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity
