"""
Fieldbook — FastAPI Backend
Recurring dog-field bookings: slot locks and subscription lifecycle
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from db.database import async_session, engine, init_models
from routers import slot_locks as slot_lock_routes, subscriptions, webhooks
from services import slot_locks
from services.background import PeriodicTask
from services.errors import DomainException
from services.notifications import HttpNotifier
from services.payment_gateway import StripeGateway
from services.subscriptions import SubscriptionService
from services.webhook_dedupe import close_redis

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_subscription_service() -> SubscriptionService:
    gateway = StripeGateway(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        currency=settings.currency,
        timeout=settings.gateway_timeout_seconds,
    )
    return SubscriptionService(gateway, HttpNotifier(), settings)


def build_background_tasks(service: SubscriptionService) -> list[PeriodicTask]:
    async def sweep_slot_locks():
        async with async_session() as db:
            return await slot_locks.sweep(db)

    async def retry_payments():
        async with async_session() as db:
            return await service.retry_failed_payments(db)

    async def pending_occurrences():
        async with async_session() as db:
            return await service.create_pending_occurrences(db)

    return [
        PeriodicTask("slot-lock-sweep", settings.slot_lock_sweep_interval_seconds, sweep_slot_locks),
        PeriodicTask("payment-retry", settings.payment_retry_sweep_interval_seconds, retry_payments),
        PeriodicTask("pending-occurrences", settings.payment_retry_sweep_interval_seconds, pending_occurrences),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    logger.info("Fieldbook API starting...")
    await init_models()
    if not hasattr(app.state, "subscription_service"):
        app.state.subscription_service = build_subscription_service()
    tasks = build_background_tasks(app.state.subscription_service)
    for task in tasks:
        task.start()

    yield

    # Shutdown
    for task in tasks:
        await task.stop()
    await close_redis()
    await engine.dispose()
    logger.info("Fieldbook API shut down.")


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
        return await http_exception_handler(request, exc.to_http_exception())


app = FastAPI(
    title="Fieldbook API",
    description="Recurring field bookings, slot locks and subscription lifecycle",
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS ───────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# ── Routers ────────────────────────────────────────────────
app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["Subscriptions"])
app.include_router(slot_lock_routes.router, prefix="/api/slot-locks", tags=["Slot Locks"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Gateway Webhooks"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "Fieldbook API"}
