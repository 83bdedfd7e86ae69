"""
FastAPI application for the billing engine
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .billing_routes import router as billing_router
from .config import config
from .cron_routes import router as cron_router
from .db.engine import init_db, check_connection
from .exceptions import (
    BillingError,
    http_exception_handler,
    validation_exception_handler,
    billing_error_handler,
    general_exception_handler,
)
from .logging_config import RequestIDMiddleware, setup_logging
from .webhook_routes import router as webhook_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
    
    if config.ENABLE_SCHEDULER:
        from .services.scheduled_jobs import start_scheduler
        start_scheduler()
    
    yield
    
    if config.ENABLE_SCHEDULER:
        from .services.scheduled_jobs import stop_scheduler
        stop_scheduler()


def create_app() -> FastAPI:
    setup_logging(env=config.ENV, log_level=config.LOG_LEVEL)
    
    app = FastAPI(title="Billing Engine API", version=__version__, lifespan=lifespan)
    
    app.add_middleware(RequestIDMiddleware)
    
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    
    app.include_router(webhook_router)
    app.include_router(cron_router)
    app.include_router(billing_router)
    
    @app.get("/health")
    async def health():
        """Health check endpoint for load balancers and monitoring"""
        database_ok = check_connection()
        body = {
            "status": "healthy" if database_ok else "degraded",
            "service": "billing-engine",
            "version": config.BUILD_VERSION or __version__,
            "database": "ok" if database_ok else "unavailable",
            "timestamp": datetime.utcnow().isoformat(),
        }
        return body
    
    return app


app = create_app()
