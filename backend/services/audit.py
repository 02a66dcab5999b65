import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.security import RequestContext
from models.payment import AuditAction, AuditStatus, PaymentAudit

logger = logging.getLogger(__name__)


def audit_fields(ctx: RequestContext) -> dict[str, Any]:
    """Actor and network context of the caller, as stored on audit rows."""
    return {
        "performed_by": ctx.user_id,
        "performed_by_role": ctx.role.value,
        "ip_address": ctx.ip_address,
        "user_agent": (ctx.user_agent or "")[:255] or None,
        "tenant_id": ctx.tenant_id,
        "branch_id": ctx.branch_id,
    }


def record_audit(
    db: Session,
    *,
    order_id: int,
    action: AuditAction,
    status: AuditStatus,
    performed_by: str,
    tenant_id: str,
    branch_id: str,
    amount: Optional[Decimal] = None,
    payment_id: Optional[int] = None,
    payment_method: Optional[str] = None,
    transaction_id: Optional[str] = None,
    performed_by_role: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    error_message: Optional[str] = None,
    error_code: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Optional[PaymentAudit]:
    """Append one audit row. Failures are logged and never raised."""
    entry = PaymentAudit(
        order_id=order_id,
        payment_id=payment_id,
        action=action,
        status=status,
        amount=amount,
        payment_method=payment_method,
        transaction_id=transaction_id,
        performed_by=performed_by,
        performed_by_role=performed_by_role,
        ip_address=ip_address,
        user_agent=user_agent,
        error_message=error_message,
        error_code=error_code,
        extra=metadata or {},
        tenant_id=tenant_id,
        branch_id=branch_id,
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Audit log failed for order %s (%s): %s", order_id, action.value, exc)
        return None
    return entry
