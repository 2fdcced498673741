# backend/main.py
"""
CRM marketing automation API: trigger intake, rule management, tracking
and unsubscribe endpoints. Scheduled dispatch runs in the Celery worker.
"""
import logging
import time
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from core.config import settings
from core.time_utils import utc_now
from database import close_async_client, ensure_indexes, get_database_info, initialize_async_client, ping_database
from routes import automation, tracking, unsubscribe

# ===== LOGGING SETUP =====
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ===== CREATE APP =====
app = FastAPI(
    debug=settings.DEBUG_MODE,
    title=settings.APP_NAME,
    description="Trigger-driven marketing automation engine",
    version=settings.APP_VERSION
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)
    process_time = time.time() - start_time

    if process_time > 2.0:
        logger.warning(f"Slow request: {request.method} {request.url.path} - {process_time:.3f}s")

    response.headers["X-Process-Time"] = str(round(process_time, 3))
    return response


# ===== STARTUP / SHUTDOWN =====
@app.on_event("startup")
async def startup_event():
    logger.info(f"🚀 Starting {settings.APP_NAME} ({settings.ENVIRONMENT})...")
    initialize_async_client()
    await ensure_indexes()
    logger.info("✅ Automation API ready!")


@app.on_event("shutdown")
async def shutdown_event():
    close_async_client()


# ===== SYSTEM ENDPOINTS =====

@app.get("/health")
async def health_check():
    """System health check"""
    database_ok = await ping_database()
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": "connected" if database_ok else "unreachable",
        "timestamp": utc_now().isoformat(),
        "version": settings.APP_VERSION,
    }


@app.get("/system/info")
async def system_info():
    return {
        "version": settings.APP_VERSION,
        "timestamp": utc_now().isoformat(),
        "config": settings.to_dict(),
        "database": await get_database_info(),
        "routes_registered": len(app.routes),
    }


@app.get("/")
async def root():
    return {
        "message": f"{settings.APP_NAME} v{settings.APP_VERSION}",
        "status": "operational",
        "health_check": "/health",
        "routes": {
            "trigger": "/api/automation/trigger",
            "rules": "/api/automation/rules",
            "tracking": "/api/email-tracking",
            "unsubscribe": "/api/unsubscribe",
        }
    }


# ===== ROUTES =====
app.include_router(automation.router, prefix="/api", tags=["automation"])
app.include_router(tracking.router, prefix="/api")
app.include_router(unsubscribe.router, prefix="/api")
