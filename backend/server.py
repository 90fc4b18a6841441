from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import logging
import time
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import traceback

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from config import get_settings, get_cors_config

from logging_config import setup_logging, set_request_context, clear_request_context
from sentry_integration import init_sentry, capture_exception

from database import init_db
from reconciliation import reconciliation_router

settings = get_settings()

# Use JSON format in production, plain text in development
setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.is_production,
)
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN:
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.1 if settings.is_production else 0.0,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    logger.info("=" * 60)
    logger.info("Starting Goal Reconciliation Core API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug Mode: {settings.debug_enabled}")
    logger.info("=" * 60)

    errors = settings.validate_production_config()
    for error in errors:
        logger.error(f"Configuration Error: {error}")
    if errors and settings.is_production:
        raise RuntimeError("Cannot start in production with invalid configuration")

    try:
        await init_db(create_tables=not settings.is_production)
        logger.info("Database connection established")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    logger.info("Goal Reconciliation Core API started successfully")

    yield

    logger.info("Shutting down Goal Reconciliation Core API...")


app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Bank-to-ledger reconciliation for client investment goals.

    ## Features

    ### Matching (/api/reconciliation)
    - Per-goal matching and chunked batch re-matching
    - Variance classification, match scores and auto-approval
    - Manual matches and reversal pairs
    - Review tagging and the resolution sweep
    - Goal, instrument and status summaries
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


# ==================== HEALTH CHECK ENDPOINTS ====================

@api_router.get("/health", tags=["Health"])
async def health_check():
    """Liveness plus a database round trip."""
    from database import get_engine
    from sqlalchemy import text

    health = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.ENVIRONMENT,
        "version": settings.API_VERSION,
        "database": "connected",
    }

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        health["status"] = "degraded"
        health["database"] = "unavailable"

    return health


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(reconciliation_router)

app.include_router(api_router)

# ==================== MIDDLEWARE ====================

app.add_middleware(
    CORSMiddleware,
    **get_cors_config()
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log requests with timing information and bind the request context"""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", f"req-{int(start_time * 1000)}")
    set_request_context(request_id=request_id, actor=request.headers.get("X-User-Id"))

    try:
        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        if settings.debug_enabled or response.status_code >= 400:
            logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")

        return response
    except Exception as e:
        logger.error(f"[{request_id}] Request failed: {str(e)}")
        raise
    finally:
        clear_request_context()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}")
    capture_exception(exc, path=request.url.path)

    if settings.is_production:
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "traceback": traceback.format_exc() if settings.debug_enabled else None
        }
    )
