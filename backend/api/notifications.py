from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from api.deps import get_effects
from core.database import get_db
from core.security import RequestContext, get_context
from models.schemas import MarkReadRequest, OfferCreate
from services import notifications as notification_service
from services.effects import EffectRunner
from services.notifications import MAX_PAGE_SIZE, serialize_notification

router = APIRouter()


@router.get("/notifications")
def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    unread: bool = False,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    limit = min(limit, MAX_PAGE_SIZE)
    rows, total = notification_service.list_notifications(db, ctx, page, limit, unread)
    return {
        "success": True,
        "notifications": [serialize_notification(row, ctx.user_id) for row in rows],
        "total": total,
        "page": page,
        "limit": limit,
    }


@router.get("/notifications/unread-count")
def unread_count(ctx: RequestContext = Depends(get_context), db: Session = Depends(get_db)):
    return {"success": True, "count": notification_service.unread_count(db, ctx)}


@router.put("/notifications/read")
async def mark_read(
    payload: MarkReadRequest,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    marked, effects = await run_in_threadpool(notification_service.mark_as_read, db, ctx, payload.notification_ids)
    body = {"success": True, "marked": marked}
    await runner.run(effects)
    return body


@router.put("/notifications/read-all")
async def mark_all_read(
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    marked, effects = await run_in_threadpool(notification_service.mark_all_as_read, db, ctx)
    body = {"success": True, "marked": marked}
    await runner.run(effects)
    return body


@router.post("/notifications/offer", status_code=201)
async def create_offer(
    payload: OfferCreate,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    notification, effects = await run_in_threadpool(notification_service.create_offer, db, ctx, payload)
    body = {"success": True, "notification": serialize_notification(notification)}
    await runner.run(effects)
    return body
