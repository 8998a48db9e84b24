from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from payment_recovery.shared.core.config import get_settings
from payment_recovery.shared.core.logging import setup_logging
from payment_recovery.shared.core.tracing import setup_tracing
from payment_recovery.shared.core.exceptions import RecoveryException
from payment_recovery.modules.recovery.api.v1.retry_management import router as retry_management_router

# Configure logging
setup_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("app_starting", app=settings.APP_NAME, environment=settings.ENVIRONMENT)

    scheduler = None
    if not settings.TESTING:
        from payment_recovery.modules.recovery.domain.container import get_recovery_services
        from payment_recovery.modules.scheduling.domain.orchestrator import SchedulerOrchestrator

        services = get_recovery_services()
        scheduler = SchedulerOrchestrator(services, settings)
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    logger.info("app_shutting_down", app=settings.APP_NAME)
    if scheduler is not None:
        scheduler.stop()
        await scheduler.services.dispatcher.drain()


settings = get_settings()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan)

setup_tracing(app)

# Prometheus metrics at /metrics
Instrumentator().instrument(app).expose(app)


@app.exception_handler(RecoveryException)
async def recovery_exception_handler(request: Request, exc: RecoveryException):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "retryable": exc.retryable,
        },
    )


app.include_router(retry_management_router)


@app.get("/health")
async def health_check():
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "active",
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "scheduler": scheduler.get_status() if scheduler else None,
    }
