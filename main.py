"""
COD Reconcile - FastAPI Backend
"""
import logging

import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from routes.api import register_routes
from app.config import settings
from app.database import Base, engine
from app.workers.scheduler import ReconciliationWorker

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="COD Reconcile API",
    description="Storefront / carrier order reconciliation",
    version="1.0.0",
    docs_url="/docs" if settings.IS_DEVELOPMENT else None,
    redoc_url="/redoc" if settings.IS_DEVELOPMENT else None,
)

logger.info("Starting COD Reconcile API")
logger.info("Environment: %s (production=%s, cloud=%s)", settings.ENV, settings.IS_PRODUCTION, settings.IS_CLOUD)
logger.info("Host: %s:%s", settings.HOST, settings.PORT)

# Startup config validation (warn only)
if settings.IS_PRODUCTION and settings.ENCRYPTION_KEY == "your-32-character-encryption-key!!":
    logger.warning("ENCRYPTION_KEY is the default value in production. Set a real key in the environment.")
if not (settings.CARRIER_EMAIL and settings.CARRIER_PASSWORD):
    logger.info("CARRIER_EMAIL/CARRIER_PASSWORD not set; only operations with their own carrier credentials will match")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Validation error: %s", exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": exc.errors(),
            "message": "Validation error: Please check your request format"
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": str(exc) if settings.IS_DEVELOPMENT else "Internal server error",
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

register_routes(app, settings)

# One worker per process; the timer and the admin endpoints share its in-flight guards
app.state.worker = ReconciliationWorker()


@app.on_event("startup")
async def start_reconciliation_worker() -> None:
    if settings.SYNC_ENABLED:
        app.state.worker.start()
    else:
        logger.info("SYNC_ENABLED=false: reconciliation timer not started (manual sync still available)")


@app.on_event("shutdown")
async def stop_reconciliation_worker() -> None:
    await app.state.worker.stop()


@app.get("/health")
async def health():
    """Health check endpoint. Includes DB connectivity check."""
    db_status = "ok"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check DB ping failed: %s", e)
        db_status = "error"
    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "service": "api",
        "db": db_status,
        "environment": settings.ENV,
        "sync": app.state.worker.get_status()["running"],
    }


@app.get("/api")
async def root():
    """API root endpoint"""
    return {
        "message": "COD Reconcile API",
        "version": "1.0.0",
        "environment": settings.ENV,
        "docs": "/docs" if settings.IS_DEVELOPMENT else "disabled in production"
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.IS_DEVELOPMENT,
        log_level=settings.LOG_LEVEL.lower()
    )
