"""Payment protocol: initiate, cancel, process, and gateway verification.

Payment status moves ``pending -> payment_pending -> paid``. Each step is a
conditional UPDATE on the expected payment status, so concurrent cashiers and
the gateway webhook cannot both settle an order. The unique index on
``payments.order_id`` backs this up at the storage layer.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.database import utcnow
from core.effects import Broadcast, InvalidateCache, Notify, RecordAudit
from core.errors import (
    DuplicateEntity,
    LifecycleError,
    NotFound,
    StateConflict,
    ValidationFailed,
    VerificationFailed,
)
from core.permissions import Operation, require_role
from core.security import RequestContext
from models.notification import NotificationType, ReferenceType, RoleTarget
from models.order import KotStatus, Order, OrderStatus, OrderType, PaymentStatus
from models.payment import COUNTER_METHODS, AuditAction, AuditStatus, Payment, PaymentMethod
from models.schemas import PaymentOut, PaymentProcess
from services import tables
from services.audit import audit_fields, record_audit
from services.orders import ensure_kitchen_complete, get_order, order_scope, serialize_order, to_money

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PAYMENT_PENDING)
GATEWAY_CAPTURED_EVENT = "payment.captured"
GATEWAY_ACTOR = "system"


@dataclass
class PaymentOutcome:
    order: Order
    message: str
    payment: Optional[Payment] = None
    effects: list = field(default_factory=list)


def serialize_payment(payment: Optional[Payment]) -> Optional[dict]:
    if payment is None:
        return None
    return PaymentOut.model_validate(payment).model_dump(mode="json")


def _audit(ctx: RequestContext, order_id: int, action: AuditAction, status: AuditStatus, **extra) -> dict:
    return {"order_id": order_id, "action": action, "status": status, **audit_fields(ctx), **extra}


def _record_failure(db: Session, ctx: RequestContext, order_id: int, action: AuditAction,
                    exc: LifecycleError, **extra) -> None:
    db.rollback()
    record_audit(db, **_audit(ctx, order_id, action, AuditStatus.FAILED,
                              error_message=exc.message, error_code=exc.code, **extra))


def _cas_payment_status(db: Session, order: Order, expected, new: PaymentStatus, **values) -> bool:
    """Conditionally move the payment status; False when another writer got there first."""
    if isinstance(expected, PaymentStatus):
        expected = (expected,)
    stmt = (
        update(Order)
        .where(Order.id == order.id, Order.payment_status.in_(expected))
        .values(payment_status=new, version=Order.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def get_payment(db: Session, ctx: RequestContext, order_id: int) -> Payment:
    require_role(ctx.role, Operation.VIEW_PAYMENT)
    payment = db.query(Payment).filter(
        Payment.order_id == order_id,
        Payment.tenant_id == ctx.tenant_id,
        Payment.branch_id == ctx.branch_id,
    ).first()
    if payment is None:
        raise NotFound("No payment record found for this order")
    return payment


def initiate_payment(db: Session, ctx: RequestContext, order_id: int) -> PaymentOutcome:
    require_role(ctx.role, Operation.INITIATE_PAYMENT)
    try:
        order = get_order(db, ctx.scope, order_id)
        if order.payment_status == PaymentStatus.PAID:
            raise StateConflict("Order is already paid")
        ensure_kitchen_complete(order)

        moved = _cas_payment_status(db, order, PaymentStatus.PENDING, PaymentStatus.PAYMENT_PENDING)
        db.commit()
        db.refresh(order)
        if not moved:
            if order.payment_status == PaymentStatus.PAID:
                raise StateConflict("Order is already paid")
            if order.payment_status != PaymentStatus.PAYMENT_PENDING:
                raise StateConflict("Cannot initiate payment for this order")
            return PaymentOutcome(order, "Payment already initiated", effects=[
                RecordAudit(_audit(ctx, order.id, AuditAction.PAYMENT_INITIATED, AuditStatus.SUCCESS,
                                   amount=order.final_amount, metadata={"idempotent": True})),
            ])
    except LifecycleError as exc:
        _record_failure(db, ctx, order_id, AuditAction.PAYMENT_INITIATED, exc)
        raise

    logger.info("Payment initiated for order %s by %s", order.order_number, ctx.user_id)
    return PaymentOutcome(order, "Payment initiated", effects=[
        Broadcast(ctx.scope, "order-updated", serialize_order(order)),
        RecordAudit(_audit(ctx, order.id, AuditAction.PAYMENT_INITIATED, AuditStatus.SUCCESS,
                           amount=order.final_amount)),
    ])


def cancel_payment(db: Session, ctx: RequestContext, order_id: int) -> PaymentOutcome:
    require_role(ctx.role, Operation.CANCEL_PAYMENT)
    try:
        order = get_order(db, ctx.scope, order_id)
        moved = _cas_payment_status(db, order, PaymentStatus.PAYMENT_PENDING, PaymentStatus.PENDING)
        db.commit()
        db.refresh(order)
        if not moved:
            raise StateConflict("No pending payment to cancel")
    except LifecycleError as exc:
        _record_failure(db, ctx, order_id, AuditAction.PAYMENT_CANCELLED, exc)
        raise

    logger.info("Payment cancelled for order %s by %s", order.order_number, ctx.user_id)
    return PaymentOutcome(order, "Payment cancelled", effects=[
        InvalidateCache(),
        Broadcast(ctx.scope, "order-updated", serialize_order(order)),
        RecordAudit(_audit(ctx, order.id, AuditAction.PAYMENT_CANCELLED, AuditStatus.SUCCESS,
                           amount=order.final_amount)),
    ])


def _parse_method(raw: Optional[str]) -> PaymentMethod:
    try:
        method = PaymentMethod((raw or "").strip().lower())
    except ValueError:
        method = None
    if method not in COUNTER_METHODS:
        raise ValidationFailed("Invalid payment method. Use cash, qr, upi or credit_card")
    return method


def _settle(db: Session, order: Order, *, method: PaymentMethod, transaction_id: Optional[str],
            received: Decimal, change: Decimal, cashier_id: Optional[str],
            require_ready: bool) -> Optional[Payment]:
    """Insert the payment and flip the order to paid in one transaction.

    Returns None when the order was no longer payable at write time.
    """
    now = utcnow()
    payment = Payment(
        order_id=order.id,
        payment_method=method,
        transaction_id=transaction_id,
        amount=to_money(order.final_amount),
        amount_received=received,
        change=change,
        cashier_id=cashier_id,
        tenant_id=order.tenant_id,
        branch_id=order.branch_id,
    )
    db.add(payment)
    db.flush()

    stmt = (
        update(Order)
        .where(Order.id == order.id, Order.payment_status.in_(PAYABLE_STATUSES))
        .values(
            payment_status=PaymentStatus.PAID,
            payment_method=method.value,
            order_status=OrderStatus.COMPLETED,
            kot_status=KotStatus.CLOSED,
            payment_at=func.coalesce(Order.payment_at, now),
            completed_at=func.coalesce(Order.completed_at, now),
            version=Order.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if require_ready:
        stmt = stmt.where(Order.order_status == OrderStatus.READY)
    if db.execute(stmt).rowcount != 1:
        db.rollback()
        return None
    db.commit()
    db.refresh(order)
    db.refresh(payment)
    return payment


def _after_settlement(db: Session, order: Order, payment: Payment, created_by: Optional[str]) -> list:
    """Table cascade and the success fanout shared by counter and gateway payments."""
    effects = [InvalidateCache()]
    if order.order_type == OrderType.DINE_IN:
        table = tables.mark_cleaning_for_order(db, order)
        if table is not None:
            try:
                db.commit()
                effects.append(tables.table_updated(table))
            except StaleDataError:
                # The next table read re-derives cleaning from the paid order
                db.rollback()
                logger.warning("Table %s changed concurrently, left for reconciliation", order.table_id)

    scope = order_scope(order)
    order_data = serialize_order(order)
    effects.extend([
        Broadcast(scope, "order-updated", order_data),
        Broadcast(scope, "order-completed", order_data),
        Broadcast(scope, "payment-success", {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "paymentMethod": payment.payment_method.value,
            "amount": float(payment.amount),
            "change": float(payment.change),
        }),
        Notify(
            scope,
            NotificationType.PAYMENT_SUCCESS,
            title="Payment Received",
            message=f"Payment of {to_money(payment.amount)} received for order {order.order_number} "
                    f"via {payment.payment_method.value.upper()}",
            role_target=RoleTarget.ADMIN,
            reference_id=str(order.id),
            reference_type=ReferenceType.PAYMENT,
            created_by=created_by,
        ),
    ])
    return effects


def process_payment(db: Session, ctx: RequestContext, order_id: int, payload: PaymentProcess) -> PaymentOutcome:
    require_role(ctx.role, Operation.PROCESS_PAYMENT)
    method_hint = (payload.payment_method or "").strip().lower()[:20] or None
    try:
        method = _parse_method(payload.payment_method)
        transaction_id = (payload.transaction_id or "").strip() or None
        if method != PaymentMethod.CASH and not transaction_id:
            raise ValidationFailed(f"Transaction ID is required for {method.value.upper()} payments")

        order = get_order(db, ctx.scope, order_id)
        if order.payment_status == PaymentStatus.PAID:
            existing = db.query(Payment).filter(Payment.order_id == order.id).first()
            return PaymentOutcome(order, "Payment already processed", existing, effects=[
                RecordAudit(_audit(ctx, order.id, AuditAction.PAYMENT_PROCESSED, AuditStatus.SUCCESS,
                                   payment_id=existing.id if existing else None,
                                   metadata={"idempotent": True})),
            ])
        ensure_kitchen_complete(order)
        if order.payment_status not in PAYABLE_STATUSES:
            raise StateConflict("Order is not eligible for payment")

        due = to_money(order.final_amount)
        received = to_money(payload.amount_received or 0)
        if method == PaymentMethod.CASH:
            if received < due:
                raise ValidationFailed(f"Insufficient amount. Received {received}, required {due}")
            change = to_money(received - due)
        else:
            if received != due:
                raise ValidationFailed(f"Amount mismatch. Paid {received}, required {due}")
            change = to_money(0)

        if db.query(Payment.id).filter(Payment.order_id == order.id).first():
            raise DuplicateEntity("A payment record already exists for this order")

        payment = _settle(db, order, method=method, transaction_id=transaction_id, received=received,
                          change=change, cashier_id=ctx.user_id, require_ready=True)
        if payment is None:
            db.refresh(order)
            if order.payment_status == PaymentStatus.PAID:
                existing = db.query(Payment).filter(Payment.order_id == order.id).first()
                return PaymentOutcome(order, "Payment already processed", existing)
            raise StateConflict("Order is not eligible for payment")
    except IntegrityError:
        exc = DuplicateEntity("Duplicate payment detected. This order may already be paid.")
        _record_failure(db, ctx, order_id, AuditAction.PAYMENT_FAILED, exc, payment_method=method_hint)
        raise exc
    except LifecycleError as exc:
        _record_failure(db, ctx, order_id, AuditAction.PAYMENT_FAILED, exc, payment_method=method_hint,
                        amount=payload.amount_received)
        raise

    logger.info("Payment processed for order %s: %s %s (change %s)", order.order_number,
                method.value, payment.amount, payment.change)

    effects = _after_settlement(db, order, payment, ctx.user_id)
    effects.append(RecordAudit(_audit(
        ctx, order.id, AuditAction.PAYMENT_PROCESSED, AuditStatus.SUCCESS,
        payment_id=payment.id,
        amount=payment.amount,
        payment_method=method.value,
        transaction_id=transaction_id,
        metadata={"amount_received": str(received), "change": str(change)},
    )))
    return PaymentOutcome(order, "Payment processed successfully", payment, effects)


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """HMAC-SHA256 of the raw request body, hex encoded."""
    if not secret:
        raise VerificationFailed("Webhook secret is not configured")
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    if not signature or not hmac.compare_digest(expected, signature):
        raise VerificationFailed("Invalid webhook signature")


def _captured_entity(body: dict) -> tuple[int, str, Decimal]:
    try:
        entity = body["payload"]["payment"]["entity"]
        order_id = int(entity["notes"]["orderId"])
        transaction_id = str(entity["id"])
        amount = to_money(Decimal(entity["amount"]) / 100)
    except (KeyError, TypeError, ValueError, InvalidOperation):
        raise ValidationFailed("Malformed payment.captured payload")
    return order_id, transaction_id, amount


def handle_gateway_event(db: Session, raw_body: bytes, signature: Optional[str],
                         secret: Optional[str]) -> tuple[str, list]:
    """Apply a verified gateway callback; returns an outcome label and effects."""
    try:
        verify_signature(raw_body, signature, secret)
    except VerificationFailed as exc:
        logger.warning("Rejected gateway webhook: %s", exc.message)
        raise

    try:
        body = json.loads(raw_body)
    except ValueError:
        raise ValidationFailed("Malformed webhook payload")
    if not isinstance(body, dict) or body.get("event") != GATEWAY_CAPTURED_EVENT:
        return "ignored", []

    order_id, transaction_id, amount = _captured_entity(body)
    order = db.get(Order, order_id)
    if order is None:
        logger.error("Gateway payment %s references unknown order %s", transaction_id, order_id)
        return "order_not_found", []
    if order.payment_status == PaymentStatus.PAID:
        return "already_processed", []

    actor = order.waiter_id or GATEWAY_ACTOR
    audit_base = {
        "order_id": order.id,
        "performed_by": actor,
        "tenant_id": order.tenant_id,
        "branch_id": order.branch_id,
        "payment_method": PaymentMethod.ONLINE.value,
        "transaction_id": transaction_id,
        "amount": amount,
    }
    if order.order_status == OrderStatus.CANCELLED:
        logger.error("Gateway captured %s for cancelled order %s", amount, order.order_number)
        record_audit(db, action=AuditAction.PAYMENT_VERIFIED, status=AuditStatus.FAILED,
                     error_message="Payment captured for a cancelled order", error_code="order_cancelled",
                     **audit_base)
        return "order_cancelled", []
    if amount != to_money(order.final_amount):
        logger.warning("Gateway amount %s differs from order %s total %s", amount, order.order_number,
                       order.final_amount)

    try:
        payment = _settle(db, order, method=PaymentMethod.ONLINE, transaction_id=transaction_id,
                          received=amount, change=to_money(0), cashier_id=None, require_ready=False)
    except IntegrityError:
        db.rollback()
        return "already_processed", []
    if payment is None:
        return "already_processed", []

    logger.info("Gateway payment %s verified for order %s", transaction_id, order.order_number)
    effects = _after_settlement(db, order, payment, actor)
    effects.append(RecordAudit({
        **audit_base,
        "action": AuditAction.PAYMENT_VERIFIED,
        "status": AuditStatus.SUCCESS,
        "payment_id": payment.id,
        "metadata": {"gateway": "razorpay", "event": GATEWAY_CAPTURED_EVENT},
    }))
    return "ok", effects
