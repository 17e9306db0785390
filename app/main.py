from fastapi import FastAPI, Request
from contextlib import asynccontextmanager
import structlog
import time

from app.core.config import settings
from app.api import conversions, sync, sync_accounts
from app.middleware.rate_limit import rate_limit_middleware

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
    ]
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events"""
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        google_ads_api_version=settings.google_ads_api_version
    )
    yield
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    lifespan=lifespan
)

app.middleware("http")(rate_limit_middleware)


# Middleware for logging requests
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    duration = time.time() - start_time
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration * 1000, 2)
    )

    return response


# Include routers
app.include_router(conversions.router)
app.include_router(sync.router)
app.include_router(sync_accounts.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "app": settings.app_name}


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Conversion Sync API",
        "endpoints": {
            "health": "/health",
            "conversions": "/conversions",
            "sync": "/sync",
            "sync_accounts": "/sync-accounts",
            "docs": "/docs"
        }
    }
