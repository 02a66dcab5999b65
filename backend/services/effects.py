import logging
from typing import Iterable

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from core.cache import ResponseCache
from core.effects import Broadcast, InvalidateCache, Notify, RecordAudit
from services.audit import record_audit
from services.notifications import create_notification, delivery_payload
from utils.broadcast import BroadcastBus

logger = logging.getLogger(__name__)


class EffectRunner:
    """Applies post-commit effects in order, isolating each failure."""

    def __init__(self, db: Session, bus: BroadcastBus, cache: ResponseCache):
        self.db = db
        self.bus = bus
        self.cache = cache

    async def run(self, effects: Iterable) -> None:
        for effect in effects:
            try:
                await self._apply(effect)
            except Exception:
                logger.exception("Post-commit %s failed", type(effect).__name__)
                await run_in_threadpool(self.db.rollback)

    async def _apply(self, effect) -> None:
        if isinstance(effect, InvalidateCache):
            for prefix in effect.prefixes:
                self.cache.invalidate(f"{prefix}:")
        elif isinstance(effect, Broadcast):
            await self.bus.publish(effect.scope, effect.event, effect.data)
        elif isinstance(effect, Notify):
            payload = await run_in_threadpool(self._store_notification, effect)
            if payload is not None:
                await self.bus.publish(effect.scope, "new-notification", payload)
        elif isinstance(effect, RecordAudit):
            await run_in_threadpool(record_audit, self.db, **effect.fields)
        else:
            raise TypeError(f"Unknown effect {effect!r}")

    def _store_notification(self, effect: Notify):
        """Persist the notification; returns its delivery payload when newly created."""
        notification, created = create_notification(
            self.db,
            effect.scope,
            type=effect.type,
            title=effect.title,
            message=effect.message,
            role_target=effect.role_target,
            reference_id=effect.reference_id,
            reference_type=effect.reference_type,
            created_by=effect.created_by,
        )
        return delivery_payload(notification) if created else None
