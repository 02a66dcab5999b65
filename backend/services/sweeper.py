import asyncio
import logging
from typing import Callable

from sqlalchemy.orm import Session

from config import settings
from core.cache import ResponseCache
from core.effects import InvalidateCache
from services import tables
from services.effects import EffectRunner
from services.notifications import purge_expired
from utils.broadcast import BroadcastBus

logger = logging.getLogger(__name__)


def _release_expired(db: Session) -> list:
    released = tables.release_expired_reservations(db, settings.reservation_timeout_seconds)
    return [tables.table_updated(table) for table in released]


async def sweep_once(session_factory: Callable[[], Session], bus: BroadcastBus, cache: ResponseCache) -> int:
    """Release stale reservations and purge old notifications; returns tables released."""
    db = session_factory()
    try:
        effects = await asyncio.to_thread(_release_expired, db)
        released = len(effects)
        if released:
            effects.append(InvalidateCache())
        await EffectRunner(db, bus, cache).run(effects)
        await asyncio.to_thread(purge_expired, db, settings.notification_retention_days)
        return released
    finally:
        db.close()


async def run_sweeper(session_factory: Callable[[], Session], bus: BroadcastBus, cache: ResponseCache) -> None:
    interval = settings.reservation_sweep_interval_seconds
    logger.info("Reservation sweeper started (every %ss, timeout %ss)", interval,
                settings.reservation_timeout_seconds)
    while True:
        try:
            await asyncio.sleep(interval)
            released = await sweep_once(session_factory, bus, cache)
            if released:
                logger.info("Sweep released %d expired reservations", released)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning("Reservation sweep error: %s", e)
