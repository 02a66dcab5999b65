"""Roles and the per-operation role table.

Each lifecycle operation lists the roles allowed to invoke it. The check runs
once at the entry of the operation; state-dependent rules (who may cancel at
which stage) live next to the state machines in ``services``.
"""

from enum import Enum

from core.errors import NotAuthorized


class Role(str, Enum):
    WAITER = "waiter"
    KITCHEN = "kitchen"
    CASHIER = "cashier"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


PRIVILEGED_ROLES = frozenset({Role.ADMIN, Role.SUPERADMIN})
ALL_ROLES = frozenset(Role)


class Operation(str, Enum):
    CREATE_ORDER = "create orders"
    LIST_ORDERS = "list orders"
    SEARCH_ORDERS = "search orders"
    UPDATE_ORDER_STATUS = "update order status"
    CANCEL_ORDER = "cancel orders"
    UPDATE_ITEM_STATUS = "update item status"
    CANCEL_ITEM = "cancel order items"

    LIST_TABLES = "list tables"
    CREATE_TABLE = "create tables"
    UPDATE_TABLE = "update tables"
    DELETE_TABLE = "delete tables"
    RESERVE_TABLE = "reserve tables"
    RELEASE_TABLE = "release tables"
    CLEAN_TABLE = "mark tables clean"
    FORCE_RESET_TABLE = "force-reset tables"

    INITIATE_PAYMENT = "initiate payments"
    CANCEL_PAYMENT = "cancel payments"
    PROCESS_PAYMENT = "process payments"
    VIEW_PAYMENT = "view payments"

    READ_NOTIFICATIONS = "read notifications"
    CREATE_OFFER = "create offer notifications"

    VIEW_DASHBOARD = "view dashboards"
    VIEW_ANALYTICS = "view analytics"


OPERATION_ROLES: dict[Operation, frozenset[Role]] = {
    Operation.CREATE_ORDER: frozenset({Role.WAITER, Role.CASHIER, Role.ADMIN, Role.SUPERADMIN}),
    Operation.LIST_ORDERS: ALL_ROLES,
    Operation.SEARCH_ORDERS: frozenset({Role.WAITER, Role.CASHIER, Role.ADMIN, Role.SUPERADMIN}),
    Operation.UPDATE_ORDER_STATUS: frozenset({Role.KITCHEN, Role.CASHIER, Role.ADMIN, Role.SUPERADMIN}),
    Operation.CANCEL_ORDER: frozenset({Role.WAITER, Role.KITCHEN, Role.ADMIN, Role.SUPERADMIN}),
    Operation.UPDATE_ITEM_STATUS: frozenset({Role.KITCHEN, Role.ADMIN, Role.SUPERADMIN}),
    Operation.CANCEL_ITEM: frozenset({Role.WAITER, Role.KITCHEN, Role.ADMIN, Role.SUPERADMIN}),

    Operation.LIST_TABLES: ALL_ROLES,
    Operation.CREATE_TABLE: PRIVILEGED_ROLES,
    Operation.UPDATE_TABLE: frozenset({Role.WAITER, Role.CASHIER, Role.ADMIN, Role.SUPERADMIN}),
    Operation.DELETE_TABLE: PRIVILEGED_ROLES,
    Operation.RESERVE_TABLE: frozenset({Role.WAITER, Role.ADMIN, Role.SUPERADMIN}),
    Operation.RELEASE_TABLE: frozenset({Role.WAITER, Role.ADMIN, Role.SUPERADMIN}),
    Operation.CLEAN_TABLE: frozenset({Role.WAITER, Role.ADMIN, Role.SUPERADMIN}),
    Operation.FORCE_RESET_TABLE: PRIVILEGED_ROLES,

    Operation.INITIATE_PAYMENT: frozenset({Role.CASHIER, Role.ADMIN, Role.SUPERADMIN}),
    Operation.CANCEL_PAYMENT: frozenset({Role.CASHIER, Role.ADMIN, Role.SUPERADMIN}),
    Operation.PROCESS_PAYMENT: frozenset({Role.CASHIER, Role.ADMIN, Role.SUPERADMIN}),
    Operation.VIEW_PAYMENT: frozenset({Role.CASHIER, Role.ADMIN, Role.SUPERADMIN}),

    Operation.READ_NOTIFICATIONS: ALL_ROLES,
    Operation.CREATE_OFFER: PRIVILEGED_ROLES,

    Operation.VIEW_DASHBOARD: PRIVILEGED_ROLES,
    Operation.VIEW_ANALYTICS: PRIVILEGED_ROLES,
}


def require_role(role: Role, operation: Operation) -> None:
    if role not in OPERATION_ROLES[operation]:
        raise NotAuthorized(f"Role '{role.value}' is not authorized to {operation.value}")
