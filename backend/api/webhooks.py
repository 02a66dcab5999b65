from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from api.deps import get_effects
from config import settings
from core.database import get_db
from services.effects import EffectRunner
from services.payments import handle_gateway_event

router = APIRouter()


@router.post("/webhooks/razorpay")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    """Payment gateway callback, verified against the raw body before any change"""
    raw_body = await request.body()
    status, effects = await run_in_threadpool(handle_gateway_event, db, raw_body, x_razorpay_signature,
                                              settings.razorpay_webhook_secret)
    await runner.run(effects)
    return {"status": status}
