from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from api.deps import get_effects
from core.database import get_db
from core.security import RequestContext, get_context
from models.schemas import PaymentProcess
from services import payments as payment_service
from services.effects import EffectRunner
from services.orders import serialize_order
from services.payments import PaymentOutcome, serialize_payment

router = APIRouter()


async def _respond(runner: EffectRunner, outcome: PaymentOutcome):
    body = {
        "success": True,
        "message": outcome.message,
        "order": serialize_order(outcome.order),
        "payment": serialize_payment(outcome.payment),
    }
    await runner.run(outcome.effects)
    return body


@router.post("/payments/{order_id}/initiate")
async def initiate_payment(
    order_id: int,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    outcome = await run_in_threadpool(payment_service.initiate_payment, db, ctx, order_id)
    return await _respond(runner, outcome)


@router.post("/payments/{order_id}/cancel")
async def cancel_payment(
    order_id: int,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    outcome = await run_in_threadpool(payment_service.cancel_payment, db, ctx, order_id)
    return await _respond(runner, outcome)


@router.post("/payments/{order_id}/process")
async def process_payment(
    order_id: int,
    payload: PaymentProcess,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    """Counter settlement; replays of a settled order answer with the existing payment"""
    outcome = await run_in_threadpool(payment_service.process_payment, db, ctx, order_id, payload)
    return await _respond(runner, outcome)


@router.get("/payments/{order_id}")
def get_payment(order_id: int, ctx: RequestContext = Depends(get_context), db: Session = Depends(get_db)):
    payment = payment_service.get_payment(db, ctx, order_id)
    return {"success": True, "payment": serialize_payment(payment)}
