import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core import config
from app.core.errors import BillingError, GatewayUnavailable
from app.core.logging_config import setup_logging
from app.core.plan_catalog import get_catalog
from app.core.user_locks import user_locks
from app.services.billing_webhook_service import BillingWebhookService
from app.services.plan_state_machine import PlanStateMachine
from app.services.profile_cache import ProfileCache
from app.services.quota_ledger import QuotaLedger
from app.services.subscription_gateway import SubscriptionGateway, build_stripe_client
from app.services.subscription_sync import SubscriptionSync

# ✅ Import All API Routes
from app.api.routes import billing_webhook, generation, health, plan, usage

logger = logging.getLogger(__name__)


def init_services(app: FastAPI, gateway, catalog=None) -> None:
    """Wire the billing services onto app.state."""
    if catalog is None:
        catalog = get_catalog()
    sync = SubscriptionSync(catalog, gateway, user_locks)
    cache = ProfileCache(catalog, gateway, sync)
    app.state.catalog = catalog
    app.state.gateway = gateway
    app.state.profile_cache = cache
    app.state.ledger = QuotaLedger(catalog)
    app.state.state_machine = PlanStateMachine(catalog, gateway, cache, sync, user_locks)
    app.state.webhook_service = BillingWebhookService(gateway, cache, sync)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.LOG_LEVEL)

    if config.RUN_MIGRATIONS:
        from app.db.migrate import run_migrations
        run_migrations()
    elif config.DATABASE_URL.startswith("sqlite"):
        from app.db.init_db import init_db
        init_db()

    if not getattr(app.state, "profile_cache", None):
        gateway = SubscriptionGateway(build_stripe_client(), webhook_secret=config.STRIPE_WEBHOOK_SECRET)
        init_services(app, gateway)

    app.state.profile_cache.start()
    logger.info("Assessa billing API started")
    try:
        yield
    finally:
        app.state.profile_cache.stop()
        logger.info("Assessa billing API stopped")


# ============================================
# ✅ FASTAPI APP INIT
# ============================================

app = FastAPI(title="Assessa Billing API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "Idempotency-Key"],
)


# ============================================
# ✅ ERROR HANDLERS
# ============================================

@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    headers = None
    if isinstance(exc, GatewayUnavailable):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()}, headers=headers)


# ============================================
# ✅ REGISTER ALL ROUTERS
# ============================================

app.include_router(health.router)
app.include_router(plan.router)
app.include_router(usage.router)
app.include_router(generation.router)
app.include_router(billing_webhook.router)


@app.get("/")
def root():
    return {"status": "Assessa billing API running"}
