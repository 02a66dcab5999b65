"""Order and KOT lifecycle.

Every operation checks the caller's role once, loads the order inside the
caller's tenant+branch, validates the transition, commits, and hands back the
post-commit effects (cache invalidation, realtime events, notifications) for
the route to run.
"""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import String, cast, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.database import commit_or_conflict, utcnow
from core.effects import Broadcast, InvalidateCache, Notify
from core.errors import DuplicateEntity, NotAuthorized, NotFound, StateConflict, ValidationFailed
from core.permissions import PRIVILEGED_ROLES, Operation, Role, require_role
from core.security import BranchScope, RequestContext
from models.notification import NotificationType, ReferenceType, RoleTarget
from models.order import (
    ACTIVE_ORDER_STATUSES,
    ITEM_FLOW,
    ORDER_FLOW,
    TERMINAL_ORDER_STATUSES,
    ItemStatus,
    KotStatus,
    Order,
    OrderItem,
    OrderStatus,
    OrderType,
    PaymentStatus,
)
from models.schemas import OrderCreate, OrderOut
from models.table import RestaurantTable
from services import tables
from services.sequence import SequenceGenerator

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
SEARCH_LIMIT = 30
MAX_PAGE_SIZE = 100

ACTIVE_ITEM_STATUSES = frozenset(ItemStatus) - {ItemStatus.CANCELLED}

# Order statuses each role may cancel from
ORDER_CANCEL_WINDOWS = {
    Role.WAITER: frozenset({OrderStatus.PENDING}),
    Role.KITCHEN: frozenset({OrderStatus.PENDING, OrderStatus.ACCEPTED, OrderStatus.PREPARING}),
    Role.CASHIER: frozenset(),
    Role.ADMIN: ACTIVE_ORDER_STATUSES,
    Role.SUPERADMIN: ACTIVE_ORDER_STATUSES,
}
ORDER_CANCEL_DENIED = {
    Role.WAITER: "Waiters can only cancel pending orders",
    Role.KITCHEN: "Kitchen can only cancel orders before they are ready",
    Role.CASHIER: "Cashiers cannot cancel orders",
}

# Item statuses each role may cancel from
ITEM_CANCEL_WINDOWS = {
    Role.WAITER: frozenset({ItemStatus.PENDING}),
    Role.KITCHEN: ACTIVE_ITEM_STATUSES,
    Role.CASHIER: frozenset(),
    Role.ADMIN: ACTIVE_ITEM_STATUSES,
    Role.SUPERADMIN: ACTIVE_ITEM_STATUSES,
}

# Targets a role may never set through the status route
STATUS_TARGET_DENIED = {
    Role.KITCHEN: frozenset({OrderStatus.COMPLETED}),
}

STATUS_TIMESTAMPS = {
    OrderStatus.PREPARING: "prep_started_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.COMPLETED: "completed_at",
}


def to_money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def serialize_order(order: Order) -> dict:
    return OrderOut.model_validate(order).model_dump(mode="json")


def order_scope(order: Order) -> BranchScope:
    return BranchScope(order.tenant_id, order.branch_id)


def get_order(db: Session, scope: BranchScope, order_id: int) -> Order:
    order = db.query(Order).filter(
        Order.id == order_id,
        Order.tenant_id == scope.tenant_id,
        Order.branch_id == scope.branch_id,
    ).first()
    if order is None:
        raise NotFound("Order not found")
    return order


def _get_item(order: Order, item_id: int) -> OrderItem:
    for item in order.items:
        if item.id == item_id:
            return item
    raise NotFound("Item not found")


def ensure_kitchen_complete(order: Order) -> None:
    """Gate shared by every payment entry point."""
    if order.order_status != OrderStatus.READY:
        raise StateConflict("Payment not allowed. Kitchen process not completed.")


def recalculate_totals(order: Order) -> None:
    """Recompute totals from the non-cancelled items.

    Tax keeps its previous proportion of the subtotal; the discount is kept
    as an absolute amount, capped at the new pre-discount total.
    """
    old_subtotal = Decimal(order.subtotal)
    new_subtotal = to_money(sum((item.line_total for item in order.active_items), ZERO))
    if old_subtotal > 0:
        order.tax = to_money(Decimal(order.tax) / old_subtotal * new_subtotal)
    order.subtotal = new_subtotal
    order.discount = min(to_money(order.discount), to_money(new_subtotal + Decimal(order.tax)))
    order.final_amount = to_money(new_subtotal + Decimal(order.tax) - order.discount)


def _stamp(order: Order, status: OrderStatus, now: datetime) -> None:
    attr = STATUS_TIMESTAMPS.get(status)
    if attr and getattr(order, attr) is None:
        setattr(order, attr, now)


def _order_updated(order: Order) -> Broadcast:
    return Broadcast(order_scope(order), "order-updated", serialize_order(order))


def create_order(db: Session, ctx: RequestContext, payload: OrderCreate, sequence: SequenceGenerator):
    require_role(ctx.role, Operation.CREATE_ORDER)
    if not payload.items:
        raise ValidationFailed("No order items")

    table: Optional[RestaurantTable] = None
    if payload.order_type == OrderType.DINE_IN:
        if payload.table_id is None:
            raise ValidationFailed("Dine-in orders require a table")
        table = tables.get_table(db, ctx.scope, payload.table_id)
        tables.ensure_bookable(table)

    subtotal = to_money(sum((item.price * item.quantity for item in payload.items), ZERO))
    tax = to_money(payload.tax)
    discount = to_money(payload.discount)
    if discount > subtotal + tax:
        raise ValidationFailed("Discount cannot exceed the order total")

    token = sequence.next_token(ctx.scope)
    customer = payload.customer_info
    order = Order(
        tenant_id=ctx.tenant_id,
        branch_id=ctx.branch_id,
        order_number=SequenceGenerator.order_number(token),
        token_number=token,
        order_type=payload.order_type,
        table_id=table.id if table is not None else None,
        customer_name=customer.name if customer else None,
        customer_phone=customer.phone if customer else None,
        order_status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        kot_status=KotStatus.OPEN,
        subtotal=subtotal,
        tax=tax,
        discount=discount,
        final_amount=to_money(subtotal + tax - discount),
        waiter_id=ctx.user_id,
        items=[
            OrderItem(
                menu_item_id=item.menu_item_id,
                name=item.name,
                price=to_money(item.price),
                quantity=item.quantity,
                notes=item.notes,
                status=ItemStatus.PENDING,
            )
            for item in payload.items
        ],
    )
    db.add(order)
    try:
        db.flush()
        if table is not None:
            # Same transaction: the table's version column decides racing bookings
            tables.occupy(table, order)
        commit_or_conflict(db, "Table" if table is not None else "Order")
    except IntegrityError:
        db.rollback()
        raise DuplicateEntity("Order token already issued, please retry")
    db.refresh(order)

    logger.info("Order %s created in %s/%s (%s, %s items)", order.order_number, ctx.tenant_id,
                ctx.branch_id, order.order_type.value, len(order.items))

    effects = [InvalidateCache()]
    if table is not None:
        effects.append(tables.table_updated(table))
    effects.append(Broadcast(ctx.scope, "new-order", serialize_order(order)))
    effects.append(Notify(
        ctx.scope,
        NotificationType.NEW_ORDER,
        title="New Order",
        message=f"New order {order.order_number}"
                + (f" for table {table.number}" if table is not None else " (takeaway)"),
        role_target=RoleTarget.KITCHEN,
        reference_id=str(order.id),
        reference_type=ReferenceType.ORDER,
        created_by=ctx.user_id,
    ))
    return order, effects


def list_orders(db: Session, ctx: RequestContext, page: int = 1, limit: int = 50,
                kot_status: Optional[str] = None, status: Optional[OrderStatus] = None):
    require_role(ctx.role, Operation.LIST_ORDERS)
    page = max(1, page)
    limit = min(MAX_PAGE_SIZE, max(1, limit))

    query = db.query(Order).filter(Order.tenant_id == ctx.tenant_id, Order.branch_id == ctx.branch_id)
    if kot_status is not None:
        try:
            query = query.filter(Order.kot_status == KotStatus(kot_status))
        except ValueError:
            raise ValidationFailed(f"Unknown KOT status '{kot_status}'")
    if status is not None:
        query = query.filter(Order.order_status == status)
    elif ctx.role == Role.KITCHEN and kot_status is None:
        query = query.filter(Order.order_status.in_(ACTIVE_ORDER_STATUSES))

    total = query.count()
    orders = (query.order_by(Order.created_at.desc(), Order.id.desc())
              .offset((page - 1) * limit).limit(limit).all())
    return orders, total


def search_orders(db: Session, ctx: RequestContext, term: Optional[str]) -> list[Order]:
    require_role(ctx.role, Operation.SEARCH_ORDERS)
    term = (term or "").strip()
    if not term:
        return []

    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    return (
        db.query(Order)
        .outerjoin(RestaurantTable, Order.table_id == RestaurantTable.id)
        .filter(
            Order.tenant_id == ctx.tenant_id,
            Order.branch_id == ctx.branch_id,
            or_(
                Order.order_number.ilike(pattern, escape="\\"),
                Order.customer_name.ilike(pattern, escape="\\"),
                cast(RestaurantTable.number, String).ilike(pattern, escape="\\"),
            ),
        )
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(SEARCH_LIMIT)
        .all()
    )


def _cancel(db: Session, ctx: RequestContext, order: Order, reason: Optional[str],
            default_reason: str = "No reason provided"):
    now = utcnow()
    order.order_status = OrderStatus.CANCELLED
    order.kot_status = KotStatus.CLOSED
    order.cancelled_by = ctx.role.value.upper()
    order.cancel_reason = (reason or "").strip() or default_reason
    order.cancelled_at = now
    table = tables.release_for_order(db, order)
    commit_or_conflict(db, "Order")
    db.refresh(order)

    logger.info("Order %s cancelled by %s (%s)", order.order_number, ctx.role.value, order.cancel_reason)

    effects = [InvalidateCache()]
    if table is not None:
        effects.append(tables.table_updated(table))
    effects.append(Broadcast(order_scope(order), "orderCancelled", {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "cancelledBy": order.cancelled_by,
        "reason": order.cancel_reason,
    }))
    effects.append(_order_updated(order))
    effects.append(Notify(
        order_scope(order),
        NotificationType.ORDER_CANCELLED,
        title="Order Cancelled",
        message=f"Order {order.order_number} was cancelled: {order.cancel_reason}",
        role_target=RoleTarget.KITCHEN,
        reference_id=str(order.id),
        reference_type=ReferenceType.ORDER,
        created_by=ctx.user_id,
    ))
    return order, effects


def _ensure_cancel_window(ctx: RequestContext, order: Order) -> None:
    if order.order_status not in ORDER_CANCEL_WINDOWS[ctx.role]:
        raise NotAuthorized(ORDER_CANCEL_DENIED.get(ctx.role, "Not allowed to cancel this order"))


def cancel_order(db: Session, ctx: RequestContext, order_id: int, reason: Optional[str] = None):
    require_role(ctx.role, Operation.CANCEL_ORDER)
    order = get_order(db, ctx.scope, order_id)
    if order.order_status in TERMINAL_ORDER_STATUSES:
        raise StateConflict(f"Cannot cancel an order that is already {order.order_status.value}")
    _ensure_cancel_window(ctx, order)
    return _cancel(db, ctx, order, reason)


def update_order_status(db: Session, ctx: RequestContext, order_id: int, target: OrderStatus):
    require_role(ctx.role, Operation.UPDATE_ORDER_STATUS)
    if target in STATUS_TARGET_DENIED.get(ctx.role, ()):
        raise NotAuthorized(f"{ctx.role.value.capitalize()} cannot mark orders as {target.value}")

    order = get_order(db, ctx.scope, order_id)
    current = order.order_status

    if target == OrderStatus.CANCELLED:
        if current in TERMINAL_ORDER_STATUSES:
            raise StateConflict(f"Cannot cancel an order that is already {current.value}")
        if current in (OrderStatus.PREPARING, OrderStatus.READY) and ctx.role not in PRIVILEGED_ROLES:
            raise NotAuthorized("Only admin can cancel after preparation starts")
        _ensure_cancel_window(ctx, order)
        return _cancel(db, ctx, order, None)

    if current in TERMINAL_ORDER_STATUSES and target != current:
        raise StateConflict(f"Order is already {current.value}")
    if ORDER_FLOW.index(target) < ORDER_FLOW.index(current):
        raise StateConflict(f"Cannot move order from {current.value} back to {target.value}")

    now = utcnow()
    table = None
    if target == OrderStatus.COMPLETED and order.payment_status == PaymentStatus.PAID:
        order.kot_status = KotStatus.CLOSED
        if order.order_type == OrderType.DINE_IN:
            table = tables.mark_cleaning_for_order(db, order)
    _stamp(order, target, now)
    order.order_status = target
    order.updated_at = now
    commit_or_conflict(db, "Order")
    db.refresh(order)

    logger.info("Order %s moved %s -> %s by %s", order.order_number, current.value, target.value, ctx.role.value)

    effects = [InvalidateCache()]
    if table is not None:
        effects.append(tables.table_updated(table))
    effects.append(_order_updated(order))
    if target == OrderStatus.READY and current != OrderStatus.READY:
        effects.append(Notify(
            ctx.scope,
            NotificationType.ORDER_READY,
            title="Order Ready",
            message=f"Order {order.order_number} is ready to serve"
                    + (f" at table {order.table_number}" if order.table_number is not None else ""),
            role_target=RoleTarget.WAITER,
            reference_id=str(order.id),
            reference_type=ReferenceType.ORDER,
            created_by=ctx.user_id,
        ))
    return order, effects


def _item_effects(order: Order, item: OrderItem) -> list:
    return [
        Broadcast(order_scope(order), "itemUpdated", {
            "orderId": order.id,
            "itemId": item.id,
            "status": item.status.value,
            "order": serialize_order(order),
        }),
        _order_updated(order),
    ]


def _cancel_item(db: Session, ctx: RequestContext, order: Order, item: OrderItem, reason: Optional[str]):
    if item.status == ItemStatus.CANCELLED:
        raise StateConflict("Item is already cancelled")
    if order.order_status in TERMINAL_ORDER_STATUSES:
        raise StateConflict(f"Cannot cancel items of an order that is already {order.order_status.value}")
    if item.status not in ITEM_CANCEL_WINDOWS[ctx.role]:
        raise NotAuthorized("Waiters can only cancel items that have not started preparing"
                            if ctx.role == Role.WAITER else "Not allowed to cancel this item")

    now = utcnow()
    item.status = ItemStatus.CANCELLED
    item.cancelled_by = ctx.role.value.upper()
    item.cancel_reason = (reason or "").strip() or "Item cancelled"
    item.cancelled_at = now
    recalculate_totals(order)

    whole_order = not order.active_items
    table = None
    if whole_order:
        order.order_status = OrderStatus.CANCELLED
        order.kot_status = KotStatus.CLOSED
        order.cancelled_by = ctx.role.value.upper()
        order.cancel_reason = "All items cancelled"
        order.cancelled_at = now
        table = tables.release_for_order(db, order)
    order.updated_at = now
    commit_or_conflict(db, "Order")
    db.refresh(order)

    logger.info("Item %s on order %s cancelled by %s", item.id, order.order_number, ctx.role.value)

    effects = [InvalidateCache()]
    if table is not None:
        effects.append(tables.table_updated(table))
    effects.extend(_item_effects(order, item))
    if whole_order:
        effects.append(Broadcast(order_scope(order), "orderCancelled", {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "cancelledBy": order.cancelled_by,
            "reason": order.cancel_reason,
        }))
    return order, effects


def cancel_item(db: Session, ctx: RequestContext, order_id: int, item_id: int, reason: Optional[str] = None):
    require_role(ctx.role, Operation.CANCEL_ITEM)
    order = get_order(db, ctx.scope, order_id)
    item = _get_item(order, item_id)
    return _cancel_item(db, ctx, order, item, reason)


def update_item_status(db: Session, ctx: RequestContext, order_id: int, item_id: int, target: ItemStatus):
    require_role(ctx.role, Operation.UPDATE_ITEM_STATUS)
    order = get_order(db, ctx.scope, order_id)
    item = _get_item(order, item_id)

    if item.status == ItemStatus.CANCELLED:
        raise StateConflict("Cannot update status of a cancelled item")
    if target == ItemStatus.CANCELLED:
        return _cancel_item(db, ctx, order, item, None)
    if order.order_status == OrderStatus.CANCELLED:
        raise StateConflict("Cannot update items of a cancelled order")
    if ITEM_FLOW.index(target) < ITEM_FLOW.index(item.status):
        raise StateConflict(f"Cannot move item from {item.status.value} back to {target.value}")

    item.status = target
    order.updated_at = utcnow()
    commit_or_conflict(db, "Order")
    db.refresh(order)

    effects = [InvalidateCache()]
    effects.extend(_item_effects(order, item))
    return order, effects
