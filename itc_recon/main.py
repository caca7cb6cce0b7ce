from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func, select, text

from itc_recon.config import settings
from itc_recon.api.v1.router import api_router
from itc_recon.core.exceptions import ReconciliationError
from itc_recon.database import init_db, async_session_factory
from itc_recon.models.gstr2b import Gstr2bImport, ImportStatus


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables that do not exist yet
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    yield

    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "GSTR-2B Reconciliation", "description": "GSTR-2B import, ITC reconciliation and operator actions"},
    {"name": "Health", "description": "Service health"},
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Reconciles GSTR-2B statements against vendor invoices recorded in books.",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    """Map service errors to their HTTP status with code and details."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "error_code": exc.error_code,
            "details": exc.details,
        },
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Liveness plus database probe.

    Also reports imports whose reconciliation lock is older than the
    stale-lock window; the next reconcile call takes those over.
    """
    checks = {"database": "unknown", "stale_reconciliations": None}
    healthy = True

    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
            checks["database"] = "connected"

            stale_before = datetime.now(timezone.utc) - timedelta(minutes=settings.RECONCILE_STALE_LOCK_MINUTES)
            stale = await session.execute(
                select(func.count(Gstr2bImport.id)).where(
                    Gstr2bImport.status == ImportStatus.PROCESSING.value,
                    Gstr2bImport.processing_started_at < stale_before,
                )
            )
            checks["stale_reconciliations"] = stale.scalar() or 0
    except Exception as e:
        logger.warning(f"Health check database error: {e}")
        healthy = False
        checks["database"] = f"error: {e}"

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
    if not healthy:
        return JSONResponse(status_code=503, content=body)
    return body
