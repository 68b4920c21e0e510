import logging

import uvicorn
from fastapi import FastAPI

from campus.config import settings
from campus.database import AsyncSessionLocal, Base, engine
from campus.exception_handlers import register_exception_handlers
from campus.logging_config import StructuredLoggingMiddleware, configure_logging
from campus.routes import gateway_webhook, monitoring
from campus.scheduler import install_lifecycle_jobs, scheduler
from campus.services.deletion_queue import RedisAccountDeletionQueue
from campus.services.lifecycle_service import LifecycleConfig, MemberLifecycleService
from campus.services.notification_service import EmailDeletionNotifier
from campus.utils.metrics import set_app_info
from campus.utils.session import close_session_manager

configure_logging(settings.log_level, json_format=settings.log_json)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="School subscription billing and access-control engine",
        debug=settings.debug,
        version=settings.app_version,
    )

    app.add_middleware(StructuredLoggingMiddleware)
    register_exception_handlers(app)

    app.include_router(monitoring.router)
    app.include_router(gateway_webhook.router)

    set_app_info(version=settings.app_version, environment=settings.environment)

    if settings.debug:
        logger.info(f"Running in {settings.environment} mode")
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    return app


app = create_app()
deletion_queue = RedisAccountDeletionQueue()


@app.on_event("startup")
async def startup_event():
    """Tasks to run at application startup."""
    logger.info("Starting up the application...")
    if settings.debug:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created (if not existing).")

    if settings.lifecycle_jobs_enabled:
        lifecycle = MemberLifecycleService(
            AsyncSessionLocal,
            notifier=EmailDeletionNotifier(AsyncSessionLocal),
            deletion_queue=deletion_queue,
            config=LifecycleConfig.from_settings(),
        )
        install_lifecycle_jobs(
            scheduler,
            lifecycle,
            graduation_interval_hours=settings.graduation_job_interval_hours,
            warning_interval_hours=settings.warning_job_interval_hours,
            deletion_interval_hours=settings.deletion_job_interval_hours,
        )
    scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down the application...")
    if scheduler.running:
        scheduler.shutdown(wait=False)
    await deletion_queue.disconnect()
    await close_session_manager()
    await engine.dispose()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.debug)
