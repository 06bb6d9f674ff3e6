from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import get_db

# ENV
from config.env import (
    ENV,
    CORS_ALLOWED_ORIGINS,
    RUN_BACKGROUND_WORKERS,
    setup_logging,
    validate_production_env,
)

# ROUTES
from routes.webhooks import router as webhook_router
from routes.seller import router as seller_router
from routes.admin import router as admin_router
from routes.returns import router as returns_router
from routes.otp import router as otp_router
from routes.cron import router as cron_router

# WORKERS
from workers.order_timeout_worker import order_timeout_worker
from workers.return_window_worker import return_window_worker
from workers.refund_retry_worker import refund_retry_worker
from workers.otp_cleanup_worker import otp_cleanup_worker
from workers.audit_cleanup_worker import audit_cleanup_worker

from utils.indexes import ensure_indexes

setup_logging()
validate_production_env()

logger = logging.getLogger(__name__)
logger.info("ENV: %s", ENV)

app = FastAPI(
    title="QuickThreads API",
    version="1.0.0",
    docs_url=None if ENV == "production" else "/docs",
    redoc_url=None if ENV == "production" else "/redoc",
    openapi_url=None if ENV == "production" else "/openapi.json",
)

# -----------------------------
# CORS
# -----------------------------

allowed_origins = [origin.strip() for origin in CORS_ALLOWED_ORIGINS if origin.strip()]
if not allowed_origins:
    allowed_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# ERRORS
# -----------------------------

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("UNHANDLED_ERROR path=%s", request.url.path)

    body = {"message": "Internal server error", "error": str(exc)}
    if ENV != "production":
        body["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)

    return JSONResponse(status_code=500, content=body)

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(webhook_router, prefix="/api")
app.include_router(seller_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(returns_router, prefix="/api")
app.include_router(otp_router, prefix="/api")
app.include_router(cron_router, prefix="/api")

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():
    return {"status": "ok"}

@app.get("/api/health/db")
async def health_db():
    db = get_db()
    await db.command("ping")
    return {"status": "mongodb connected"}

# -----------------------------
# STARTUP WORKERS (ONE PLACE ONLY)
# -----------------------------

@app.on_event("startup")
async def start_background_workers():
    # API-only processes rely on the same unique and TTL indexes
    await ensure_indexes(get_db())

    if not RUN_BACKGROUND_WORKERS:
        logger.info("Background workers disabled")
        return

    asyncio.create_task(order_timeout_worker())
    asyncio.create_task(return_window_worker())
    asyncio.create_task(refund_retry_worker())
    asyncio.create_task(otp_cleanup_worker())
    asyncio.create_task(audit_cleanup_worker())
