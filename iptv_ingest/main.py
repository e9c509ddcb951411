from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from iptv_ingest.config import setup_logging
from iptv_ingest.database import close_db, init_db
from iptv_ingest.services.scheduler_service import sync_scheduler
from iptv_ingest.services.sync_service import reset_sync_engine

from iptv_ingest.routers import main_router


setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("="*60)
    logger.info("Starting IPTV Ingest...")
    logger.info("="*60)

    try:
        logger.info("Initializing database...")
        await init_db()

        logger.info("Starting scheduler...")
        sync_scheduler.start()

        logger.info("="*60)
        logger.info("IPTV Ingest started successfully")
        logger.info("="*60)
    except Exception as e:
        logger.error("="*60)
        logger.error(f"Failed to start IPTV Ingest: {e}", exc_info=True)
        logger.error("="*60)
        raise

    yield

    logger.info("="*60)
    logger.info("Shutting down IPTV Ingest...")
    logger.info("="*60)

    try:
        sync_scheduler.shutdown()
    except Exception as e:
        logger.error(f"Error during scheduler shutdown: {e}", exc_info=True)

    reset_sync_engine()
    await close_db()

    logger.info("IPTV Ingest stopped")


app = FastAPI(
    title="IPTV Ingest",
    version="0.1.0",
    lifespan=lifespan
)

app.include_router(main_router)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors without echoing request bodies, which may hold credentials"""
    logger.error(f"Validation error for {request.method} {request.url.path}")

    errors = []
    for error in exc.errors():
        errors.append({
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        })
    logger.error(f"Validation details: {errors}")

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors
        }
    )
