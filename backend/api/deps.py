from fastapi import Depends, Request
from sqlalchemy.orm import Session

from core.cache import ResponseCache
from core.database import get_db
from services.effects import EffectRunner
from services.sequence import SequenceGenerator
from utils.broadcast import BroadcastBus


def get_bus(request: Request) -> BroadcastBus:
    return request.app.state.bus


def get_cache(request: Request) -> ResponseCache:
    return request.app.state.cache


def get_sequence(request: Request) -> SequenceGenerator:
    return request.app.state.sequence


def get_effects(request: Request, db: Session = Depends(get_db)) -> EffectRunner:
    return EffectRunner(db, request.app.state.bus, request.app.state.cache)
