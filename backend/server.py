from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
import logging
import time
import traceback
import uuid
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from config import get_settings

from logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from sentry_integration import init_sentry

from database import init_db, dispose_engine
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router, reset_contact_directory

# Get settings
settings = get_settings()

# JSON lines unless explicitly disabled for local readability
setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    service_name="membership-reconciliation"
)
logger = get_logger(__name__)

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
    logger.info("Starting Membership Reconciliation API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug Mode: {settings.debug_enabled}")
    logger.info("=" * 60)

    for error in settings.validate_production_config():
        logger.warning(f"Configuration Warning: {error}")

    try:
        await init_db(create_tables=settings.DATABASE_CREATE_TABLES)
        logger.info("Database connection established")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    logger.info("Membership Reconciliation API started successfully")

    yield

    logger.info("Shutting down Membership Reconciliation API...")
    reset_contact_directory()
    await dispose_engine()


app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Reconciles membership payments from bank and card-processor exports
    against CRM contacts.

    ### Reconciliation (/api/reconciliation)
    - Upload and parse CSV exports
    - Ranked contact suggestions per payment
    - Confirm a match: record, CRM renewal update, CMS role sync
    - Contact directory cache refresh
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

api_router = APIRouter(prefix="/api")


# ==================== HEALTH CHECK ENDPOINTS ====================

@api_router.get("/", tags=["Health"])
async def root():
    """Basic health check - returns 200 if service is running"""
    return {
        "message": "Membership Reconciliation API",
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    """Liveness probe; does not check dependencies."""
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(reconciliation_router)
app.include_router(api_router)


# ==================== MIDDLEWARE ====================

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log requests with timing and bind the request id to log records"""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID") or f"req-{uuid.uuid4().hex[:12]}"
    set_request_context(request_id=request_id, operator_id=request.headers.get("X-Operator-Id"))

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
    if settings.debug_enabled:
        logger.error(traceback.format_exc())

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
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("server:app", host="0.0.0.0", port=8001, reload=settings.debug_enabled)
