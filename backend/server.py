from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import webhooks, billing, admin_billing

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize scheduler with MongoDB job store for persistence
# Jobs will survive server restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'pro_entitlements')

try:
    from pymongo import MongoClient
    mongo_client = MongoClient(mongo_url)
    jobstores = {
        'default': MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=mongo_client
        )
    }
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

# Import job runners from shared module (used by scheduler and admin run-now)
from job_runner import run_entitlement_reconciliation, run_stripe_event_prune


def _reconcile_interval_hours() -> int:
    try:
        return max(1, int(os.environ.get("RECONCILE_INTERVAL_HOURS", "24")))
    except ValueError:
        return 24


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting PRO Entitlement API")
    await database.connect()

    # Stripe config: log mode (test/live) from key prefix and which price IDs are in use (no secret keys)
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Webhooks answer 503 and the sweep is skipped.")
    else:
        stripe_mode = "test" if stripe_key.startswith(("sk_test_", "rk_test_")) else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", stripe_mode)
        if stripe_mode == "test" and os.environ.get("ENVIRONMENT", "").lower() == "production":
            logger.warning("STRIPE_API_KEY looks like test key but ENVIRONMENT is production. Verify key.")

    from services.plan_registry import plan_registry, PRICE_ALIAS_ENV
    aliases = plan_registry.aliases()
    for alias in PRICE_ALIAS_ENV:
        logger.info("Stripe PRO price alias=%s price_id=%s", alias, aliases.get(alias) or "(missing)")

    # Configure scheduled jobs
    # Entitlement reconciliation sweep every RECONCILE_INTERVAL_HOURS
    scheduler.add_job(
        run_entitlement_reconciliation,
        IntervalTrigger(hours=_reconcile_interval_hours()),
        id="entitlement_reconciliation",
        name="PRO Entitlement Reconciliation",
        replace_existing=True
    )

    # Ledger prune daily at 4:00 AM UTC
    scheduler.add_job(
        run_stripe_event_prune,
        CronTrigger(hour=4, minute=0),
        id="stripe_event_prune",
        name="Stripe Event Ledger Prune",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down PRO Entitlement API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="PRO Entitlement API",
    description="Stripe webhook ingestion and PRO entitlement reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router)
app.include_router(billing.router)
app.include_router(admin_billing.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Validation error handler: log request_id + errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": errors, "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
