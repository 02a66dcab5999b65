from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.order import ItemStatus, KotStatus, OrderStatus, OrderType, PaymentStatus
from models.notification import NotificationType, ReferenceType, RoleTarget
from models.payment import PaymentMethod
from models.table import TableStatus


class OrderItemInput(BaseModel):
    menu_item_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=120)
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    notes: Optional[str] = Field(None, max_length=255)


class CustomerInfo(BaseModel):
    name: Optional[str] = Field(None, max_length=120)
    phone: Optional[str] = Field(None, max_length=32)


class OrderCreate(BaseModel):
    order_type: OrderType
    table_id: Optional[int] = None
    customer_info: Optional[CustomerInfo] = None
    items: List[OrderItemInput] = Field(default_factory=list)
    tax: Decimal = Field(Decimal("0"), ge=0)
    discount: Decimal = Field(Decimal("0"), ge=0)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class ItemStatusUpdate(BaseModel):
    status: ItemStatus


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    menu_item_id: Optional[str]
    name: str
    price: float
    quantity: int
    notes: Optional[str]
    status: ItemStatus
    cancelled_by: Optional[str]
    cancel_reason: Optional[str]
    cancelled_at: Optional[datetime]


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    token_number: int
    order_type: OrderType
    table_id: Optional[int]
    table_number: Optional[int]
    customer_name: Optional[str]
    customer_phone: Optional[str]
    items: List[OrderItemOut]
    order_status: OrderStatus
    payment_status: PaymentStatus
    payment_method: Optional[str]
    kot_status: KotStatus
    subtotal: float
    tax: float
    discount: float
    final_amount: float
    waiter_id: Optional[str]
    cancelled_by: Optional[str]
    cancel_reason: Optional[str]
    prep_started_at: Optional[datetime]
    ready_at: Optional[datetime]
    completed_at: Optional[datetime]
    payment_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: Optional[datetime]


class TableCreate(BaseModel):
    number: int = Field(..., ge=1)
    capacity: int = Field(..., ge=1, le=50)


class TableUpdate(BaseModel):
    status: Optional[TableStatus] = None
    capacity: Optional[int] = Field(None, ge=1, le=50)


class TableOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    number: int
    capacity: int
    status: TableStatus
    current_order_id: Optional[int]
    locked_by: Optional[str]
    reserved_at: Optional[datetime]


class PaymentProcess(BaseModel):
    payment_method: Optional[str] = None
    amount_received: Optional[Decimal] = None
    transaction_id: Optional[str] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    payment_method: PaymentMethod
    transaction_id: Optional[str]
    amount: float
    amount_received: float
    change: float
    cashier_id: Optional[str]
    created_at: Optional[datetime]


class MarkReadRequest(BaseModel):
    notification_ids: List[int] = Field(default_factory=list)


class OfferCreate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    message: Optional[str] = Field(None, max_length=500)
    role_target: Optional[str] = None


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    message: str
    type: NotificationType
    role_target: RoleTarget
    reference_id: Optional[str]
    reference_type: Optional[ReferenceType]
    created_by: Optional[str]
    created_at: Optional[datetime]
    is_read: bool = False
