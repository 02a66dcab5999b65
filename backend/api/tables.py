from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from api.deps import get_effects
from core.database import get_db
from core.security import RequestContext, get_context
from models.schemas import TableCreate, TableUpdate
from services import tables as table_service
from services.effects import EffectRunner
from services.tables import serialize_table

router = APIRouter()


async def _respond(runner: EffectRunner, table, effects, message: str):
    body = {"success": True, "message": message, "table": serialize_table(table)}
    await runner.run(effects)
    return body


@router.get("/tables")
async def list_tables(
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    tables, effects = await run_in_threadpool(table_service.list_tables, db, ctx)
    # Reconciliation may have committed and expired the rows
    serialized = await run_in_threadpool(lambda: [serialize_table(table) for table in tables])
    body = {"success": True, "tables": serialized}
    await runner.run(effects)
    return body


@router.post("/tables", status_code=201)
async def create_table(
    payload: TableCreate,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    table, effects = await run_in_threadpool(table_service.create_table, db, ctx, payload)
    return await _respond(runner, table, effects, "Table created")


@router.put("/tables/{table_id}")
async def update_table(
    table_id: int,
    payload: TableUpdate,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    table, effects = await run_in_threadpool(table_service.update_table, db, ctx, table_id, payload)
    return await _respond(runner, table, effects, "Table updated")


@router.delete("/tables/{table_id}")
def delete_table(table_id: int, ctx: RequestContext = Depends(get_context), db: Session = Depends(get_db)):
    table_service.delete_table(db, ctx, table_id)
    return {"success": True, "message": "Table deleted"}


@router.put("/tables/{table_id}/reserve")
async def reserve_table(
    table_id: int,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    table, effects = await run_in_threadpool(table_service.reserve_table, db, ctx, table_id)
    return await _respond(runner, table, effects, "Table reserved")


@router.put("/tables/{table_id}/release")
async def release_table(
    table_id: int,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    table, effects = await run_in_threadpool(table_service.release_table, db, ctx, table_id)
    return await _respond(runner, table, effects, "Table released")


@router.put("/tables/{table_id}/clean")
async def clean_table(
    table_id: int,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    table, effects = await run_in_threadpool(table_service.clean_table, db, ctx, table_id)
    return await _respond(runner, table, effects, "Table is available again")


@router.put("/tables/{table_id}/force-reset")
async def force_reset_table(
    table_id: int,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    runner: EffectRunner = Depends(get_effects),
):
    table, effects = await run_in_threadpool(table_service.force_reset_table, db, ctx, table_id)
    return await _respond(runner, table, effects, "Table force-reset to available")
