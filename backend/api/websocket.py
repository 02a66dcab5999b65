import logging

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from core.security import context_from_claims, decode_access_token

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def realtime(websocket: WebSocket, token: str = Query("")):
    """Branch channel: every event of the token's tenant+branch is pushed here."""
    claims = decode_access_token(token) if token else None
    if claims is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    try:
        ctx = context_from_claims(claims)
    except HTTPException as exc:
        logger.info("Realtime connection refused: %s", exc.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    bus = websocket.app.state.bus
    await websocket.accept()
    bus.subscribe(ctx.scope, websocket)
    logger.info("Realtime client %s (%s) joined %s/%s", ctx.user_id, ctx.role.value, ctx.tenant_id, ctx.branch_id)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        bus.unsubscribe(ctx.scope, websocket)
