"""Table lifecycle.

Requested transitions follow ``VALID_TRANSITIONS``. Order and payment
cascades (occupy on dine-in create, release on cancel, cleaning on payment)
and the admin force-reset write the status directly.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.database import commit_or_conflict, utcnow
from core.effects import Broadcast
from core.errors import DuplicateEntity, NotFound, StateConflict
from core.permissions import Operation, require_role
from core.security import BranchScope, RequestContext
from models.order import ACTIVE_ORDER_STATUSES, Order, OrderStatus, PaymentStatus
from models.schemas import TableCreate, TableOut, TableUpdate
from models.table import VALID_TRANSITIONS, RestaurantTable, TableStatus

logger = logging.getLogger(__name__)


def serialize_table(table: RestaurantTable) -> dict:
    return TableOut.model_validate(table).model_dump(mode="json")


def table_updated(table: RestaurantTable) -> Broadcast:
    return Broadcast(
        BranchScope(table.tenant_id, table.branch_id),
        "table-updated",
        {
            "tableId": table.id,
            "number": table.number,
            "status": table.status.value,
            "lockedBy": table.locked_by,
            "currentOrderId": table.current_order_id,
        },
    )


def get_table(db: Session, scope: BranchScope, table_id: int) -> RestaurantTable:
    table = db.query(RestaurantTable).filter(
        RestaurantTable.id == table_id,
        RestaurantTable.tenant_id == scope.tenant_id,
        RestaurantTable.branch_id == scope.branch_id,
    ).first()
    if table is None:
        raise NotFound("Table not found")
    return table


def reconcile_occupancy(db: Session, tables: list[RestaurantTable]) -> list[Broadcast]:
    """Repair occupied tables whose order has since been cancelled or paid.

    Catches cascades that were lost between the order write and the table
    write.
    """
    stale = [t for t in tables if t.status == TableStatus.OCCUPIED and t.current_order_id is not None]
    changed = []
    for table in stale:
        order = db.get(Order, table.current_order_id)
        if order is None or order.tenant_id != table.tenant_id or order.branch_id != table.branch_id:
            continue
        if order.order_status == OrderStatus.CANCELLED:
            table.reset()
        elif order.payment_status == PaymentStatus.PAID:
            table.status = TableStatus.CLEANING
            table.current_order_id = None
        else:
            continue
        changed.append(table)

    if not changed:
        return []
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        logger.info("Skipped table reconciliation, tables changed concurrently")
        return []
    for table in changed:
        logger.info("Reconciled table %s to %s", table.id, table.status.value)
    return [table_updated(table) for table in changed]


def list_tables(db: Session, ctx: RequestContext):
    require_role(ctx.role, Operation.LIST_TABLES)
    tables = db.query(RestaurantTable).filter(
        RestaurantTable.tenant_id == ctx.tenant_id,
        RestaurantTable.branch_id == ctx.branch_id,
    ).order_by(RestaurantTable.number).all()
    effects = reconcile_occupancy(db, tables)
    return tables, effects


def create_table(db: Session, ctx: RequestContext, payload: TableCreate):
    require_role(ctx.role, Operation.CREATE_TABLE)
    exists = db.query(RestaurantTable.id).filter(
        RestaurantTable.tenant_id == ctx.tenant_id,
        RestaurantTable.branch_id == ctx.branch_id,
        RestaurantTable.number == payload.number,
    ).first()
    if exists:
        raise DuplicateEntity("Table number already exists in this branch")

    table = RestaurantTable(
        tenant_id=ctx.tenant_id,
        branch_id=ctx.branch_id,
        number=payload.number,
        capacity=payload.capacity,
        status=TableStatus.AVAILABLE,
    )
    db.add(table)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateEntity("Table number already exists in this branch")
    db.refresh(table)
    logger.info("Table %s created in %s/%s", table.number, ctx.tenant_id, ctx.branch_id)
    return table, [table_updated(table)]


def _apply_requested_status(table: RestaurantTable, target: TableStatus, ctx: RequestContext) -> None:
    if target == table.status:
        return
    if target not in VALID_TRANSITIONS[table.status]:
        raise StateConflict(f'Cannot change table from "{table.status.value}" to "{target.value}"')
    if target == TableStatus.AVAILABLE:
        table.reset()
    elif target == TableStatus.RESERVED:
        table.status = target
        table.reserved_at = utcnow()
        table.locked_by = ctx.user_id
    else:
        if table.status == TableStatus.OCCUPIED:
            # The order reference only lives while occupied
            table.current_order_id = None
            table.locked_by = None
        table.status = target


def update_table(db: Session, ctx: RequestContext, table_id: int, payload: TableUpdate):
    require_role(ctx.role, Operation.UPDATE_TABLE)
    table = get_table(db, ctx.scope, table_id)
    if payload.capacity is not None:
        table.capacity = payload.capacity
    if payload.status is not None:
        _apply_requested_status(table, payload.status, ctx)
    commit_or_conflict(db, "Table")
    db.refresh(table)
    return table, [table_updated(table)]


def delete_table(db: Session, ctx: RequestContext, table_id: int) -> None:
    require_role(ctx.role, Operation.DELETE_TABLE)
    table = get_table(db, ctx.scope, table_id)
    if table.status != TableStatus.AVAILABLE or table.current_order_id is not None:
        raise StateConflict("Only available tables can be deleted")
    in_use = db.query(Order.id).filter(Order.table_id == table.id).first()
    if in_use:
        raise StateConflict("Table has order history and cannot be deleted")
    db.delete(table)
    commit_or_conflict(db, "Table")
    logger.info("Table %s deleted from %s/%s", table.number, ctx.tenant_id, ctx.branch_id)


def reserve_table(db: Session, ctx: RequestContext, table_id: int):
    require_role(ctx.role, Operation.RESERVE_TABLE)
    table = get_table(db, ctx.scope, table_id)
    if table.status != TableStatus.AVAILABLE:
        raise StateConflict(f'Table is currently "{table.status.value}" and cannot be reserved')
    table.status = TableStatus.RESERVED
    table.reserved_at = utcnow()
    table.locked_by = ctx.user_id
    commit_or_conflict(db, "Table")
    db.refresh(table)
    return table, [table_updated(table)]


def release_table(db: Session, ctx: RequestContext, table_id: int):
    require_role(ctx.role, Operation.RELEASE_TABLE)
    table = get_table(db, ctx.scope, table_id)
    if table.status != TableStatus.RESERVED:
        raise StateConflict(f'Table is "{table.status.value}", only reserved tables can be released')
    table.reset()
    commit_or_conflict(db, "Table")
    db.refresh(table)
    return table, [table_updated(table)]


def clean_table(db: Session, ctx: RequestContext, table_id: int):
    require_role(ctx.role, Operation.CLEAN_TABLE)
    table = get_table(db, ctx.scope, table_id)
    if table.status != TableStatus.CLEANING:
        raise StateConflict(f'Table is "{table.status.value}", only tables being cleaned can be marked clean')
    table.reset()
    commit_or_conflict(db, "Table")
    db.refresh(table)
    return table, [table_updated(table)]


def force_reset_table(db: Session, ctx: RequestContext, table_id: int):
    require_role(ctx.role, Operation.FORCE_RESET_TABLE)
    table = get_table(db, ctx.scope, table_id)
    previous = table.status
    table.reset()
    commit_or_conflict(db, "Table")
    db.refresh(table)
    logger.warning("Table %s force-reset from %s by %s", table.id, previous.value, ctx.user_id)
    return table, [table_updated(table)]


def ensure_bookable(table: RestaurantTable) -> None:
    if table.status not in (TableStatus.AVAILABLE, TableStatus.RESERVED):
        raise StateConflict(f'Table is currently "{table.status.value}" and cannot be booked')


def occupy(table: RestaurantTable, order: Order) -> None:
    table.status = TableStatus.OCCUPIED
    table.current_order_id = order.id
    table.reserved_at = None


def _linked_table(db: Session, order: Order) -> Optional[RestaurantTable]:
    """The order's table, only while it is still held for this order.

    Occupied tables must point at the order. A table already moved to
    ``billing`` has dropped its order reference; it counts when no other
    active order sits on it.
    """
    if order.table_id is None:
        return None
    table = db.get(RestaurantTable, order.table_id)
    if table is None:
        return None
    if table.current_order_id is not None:
        return table if table.current_order_id == order.id else None
    if table.status != TableStatus.BILLING:
        return None
    other = db.query(Order.id).filter(
        Order.table_id == table.id,
        Order.id != order.id,
        Order.order_status.in_(ACTIVE_ORDER_STATUSES),
    ).first()
    return None if other else table


def release_for_order(db: Session, order: Order) -> Optional[RestaurantTable]:
    """Free the order's table after cancellation. Caller commits."""
    table = _linked_table(db, order)
    if table is None:
        return None
    table.reset()
    return table


def mark_cleaning_for_order(db: Session, order: Order) -> Optional[RestaurantTable]:
    """Send the order's table to cleaning after payment. Caller commits."""
    table = _linked_table(db, order)
    if table is None:
        return None
    table.status = TableStatus.CLEANING
    table.current_order_id = None
    table.locked_by = None
    return table


def release_expired_reservations(db: Session, timeout_seconds: int,
                                 now: Optional[datetime] = None) -> list[RestaurantTable]:
    """Return reserved tables idle past the timeout to ``available``."""
    cutoff = (now or utcnow()) - timedelta(seconds=timeout_seconds)
    candidates = db.query(RestaurantTable).filter(
        RestaurantTable.status == TableStatus.RESERVED,
        RestaurantTable.reserved_at < cutoff,
        RestaurantTable.current_order_id.is_(None),
    ).all()

    released = []
    for table in candidates:
        # Re-check: an earlier rollback expires and reloads the row
        if table.status != TableStatus.RESERVED or table.current_order_id is not None:
            continue
        table.reset()
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            logger.info("Reservation on table %s changed during sweep, skipped", table.id)
            continue
        logger.info("Auto-released table %s in %s/%s after reservation timeout",
                    table.number, table.tenant_id, table.branch_id)
        released.append(table)
    return released
