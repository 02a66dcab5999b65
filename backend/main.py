import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.analytics import router as analytics_router
from api.notifications import router as notifications_router
from api.orders import router as orders_router
from api.payments import router as payments_router
from api.tables import router as tables_router
from api.webhooks import router as webhooks_router
from api.websocket import router as websocket_router
from config import settings
from core.cache import ResponseCache
from core.database import Base, SessionLocal, engine
from core.errors import LifecycleError, lifecycle_error_handler
from core.observability import RequestLoggingMiddleware
from core.redis_client import create_redis_client, test_connection
from models import notification, order, payment, table  # noqa: F401  (mapper registration)
from services.sequence import SequenceGenerator
from services.sweeper import run_sweeper
from utils.broadcast import BroadcastBus

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting KOT backend")
    # Create tables
    Base.metadata.create_all(bind=engine)

    sweeper_task = None
    if settings.reservation_sweep_enabled:
        sweeper_task = asyncio.create_task(run_sweeper(app.state.session_factory, app.state.bus, app.state.cache))

    yield

    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass
    logger.info("Shutting down KOT backend")


app = FastAPI(
    title="KOT Backend API",
    description="Restaurant order, table and payment lifecycle",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.cache = ResponseCache(settings.cache_max_entries, settings.cache_default_ttl_seconds)
app.state.bus = BroadcastBus()
app.state.sequence = SequenceGenerator(create_redis_client())
app.state.session_factory = SessionLocal

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
app.add_exception_handler(LifecycleError, lifecycle_error_handler)

# Include routers
app.include_router(orders_router, prefix="/api/v1", tags=["orders"])
app.include_router(tables_router, prefix="/api/v1", tags=["tables"])
app.include_router(payments_router, prefix="/api/v1", tags=["payments"])
app.include_router(notifications_router, prefix="/api/v1", tags=["notifications"])
app.include_router(webhooks_router, prefix="/api/v1", tags=["webhooks"])
app.include_router(websocket_router, prefix="/api/v1", tags=["websocket"])
app.include_router(analytics_router, prefix="/api/v1", tags=["analytics"])


@app.get("/")
async def root():
    return {"message": "KOT Backend Running"}


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": "1.0.0",
        "cache": app.state.cache.stats(),
        "redis": "connected" if test_connection(app.state.sequence.client) else "unavailable",
        "realtime_subscribers": app.state.bus.subscriber_count(),
    }
