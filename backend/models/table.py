from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import DateTime, Enum, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from core.database import Base


class TableStatus(str, PyEnum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    OCCUPIED = "occupied"
    BILLING = "billing"
    CLEANING = "cleaning"


# Transitions a caller may request directly; cascades from orders and
# payments and the admin force-reset go around this table.
VALID_TRANSITIONS = {
    TableStatus.AVAILABLE: frozenset({TableStatus.RESERVED}),
    TableStatus.RESERVED: frozenset({TableStatus.OCCUPIED, TableStatus.AVAILABLE}),
    TableStatus.OCCUPIED: frozenset({TableStatus.BILLING}),
    TableStatus.BILLING: frozenset({TableStatus.CLEANING}),
    TableStatus.CLEANING: frozenset({TableStatus.AVAILABLE}),
}


class RestaurantTable(Base):
    __tablename__ = "restaurant_tables"
    __table_args__ = (
        UniqueConstraint("tenant_id", "branch_id", "number", name="uq_table_number_per_branch"),
        Index("ix_tables_status_reserved_at", "status", "reserved_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[TableStatus] = mapped_column(
        Enum(TableStatus, values_callable=lambda e: [m.value for m in e], native_enum=False),
        default=TableStatus.AVAILABLE, nullable=False, index=True)
    current_order_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(64))
    reserved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def reset(self) -> None:
        """Back to ``available`` with every occupancy marker cleared."""
        self.status = TableStatus.AVAILABLE
        self.current_order_id = None
        self.locked_by = None
        self.reserved_at = None
