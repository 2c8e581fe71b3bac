"""Background worker entry point.

This worker:
- Verifies the database connection
- Runs the regulation monitor, document extraction and document insight
  jobs on one polling scheduler
- Serves ``/health`` and ``/health/monitor`` for the orchestrator
- Stops the scheduler on SIGINT/SIGTERM and waits for in-flight cycles
"""

import asyncio
import signal
from typing import Optional

import uvicorn
from fastapi import FastAPI

from app.core.ai_client import AIServiceClient
from app.core.config import settings
from app.core.database import close_database, db_client, engine, init_database
from app.core.single_flight import PostgresAdvisoryLock
from app.schemas.enums import MonitorRunStatus
from app.schemas.health import HealthCheckResponse, MonitorHealthResponse
from app.schemas.regulations import MonitorRunOptions
from app.services.documents.document_extraction_service import DocumentExtractionService
from app.services.documents.document_insights_service import DocumentInsightsService
from app.services.event_broadcaster import broadcaster
from app.services.notification_service import NotificationService
from app.services.regulations.regulation_monitor_service import RegulationMonitorService
from app.worker.scheduler import PollingScheduler
from app.utils.logging import get_logger

LOGGER = get_logger(__name__, level=settings.log_level)


def build_monitor_service() -> RegulationMonitorService:
    return RegulationMonitorService(
        lock=PostgresAdvisoryLock(engine),
        notification_service=NotificationService(broadcaster),
    )


def build_scheduler(
    monitor_service: RegulationMonitorService,
    ai_client: Optional[AIServiceClient] = None,
) -> PollingScheduler:
    """Register every enabled job on a new scheduler.

    All jobs share the monitor poll interval.
    """
    interval = max(1, settings.monitor.poll_seconds)
    scheduler = PollingScheduler()

    if settings.monitor.enabled:
        scheduler.add_job(
            "regulation_monitor",
            lambda: monitor_service.run_due_subscriptions(MonitorRunOptions(trigger_source="worker")),
            interval,
        )
    else:
        LOGGER.info("Regulation monitor is disabled via REG_MONITOR_ENABLED=false")

    if ai_client is None:
        LOGGER.warning("AI_SERVICE_URL not configured - document jobs are disabled")
        return scheduler

    extraction_service = DocumentExtractionService(ai_client=ai_client)
    insights_service = DocumentInsightsService(
        ai_client=ai_client, extraction_service=extraction_service
    )
    if settings.extraction.enabled:
        scheduler.add_job("document_extraction", extraction_service.run_pending_extractions, interval)
    if settings.insights.enabled:
        scheduler.add_job("document_insights", insights_service.run_pending_insights, interval)

    return scheduler


def create_health_app(
    scheduler: PollingScheduler, monitor_service: RegulationMonitorService
) -> FastAPI:
    app = FastAPI(
        title=f"{settings.app_name} Worker",
        version=settings.app_version,
        docs_url=None,
        redoc_url=None,
    )

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["Health"],
        summary="Worker health check",
        operation_id="get_worker_health_status",
    )
    async def health_check() -> HealthCheckResponse:
        db_health = await db_client.health_check()
        healthy = db_health["status"] == "healthy" and scheduler.is_running
        return HealthCheckResponse(
            status="healthy" if healthy else "degraded",
            version=settings.app_version,
            service=settings.app_name,
            scheduler_running=scheduler.is_running,
        )

    @app.get(
        "/health/monitor",
        response_model=MonitorHealthResponse,
        tags=["Health"],
        summary="Regulation monitor health",
        operation_id="get_regulation_monitor_health",
    )
    async def monitor_health() -> MonitorHealthResponse:
        summary = await monitor_service.get_health_summary()
        if not summary.has_run:
            status = "unknown"
        elif summary.last_status == MonitorRunStatus.FAILED.value:
            status = "degraded"
        else:
            status = "healthy"
        return MonitorHealthResponse(status=status, monitor=summary)

    return app


async def main() -> None:
    """Start the worker and block until a shutdown signal arrives."""
    await init_database()

    ai_client = AIServiceClient() if settings.ai_service_url else None
    monitor_service = build_monitor_service()
    scheduler = build_scheduler(monitor_service, ai_client)

    server = uvicorn.Server(
        uvicorn.Config(
            create_health_app(scheduler, monitor_service),
            host=settings.worker.health_host,
            port=settings.worker.health_port,
            log_level=settings.log_level.lower(),
        )
    )

    def shutdown() -> None:
        LOGGER.info("Shutdown signal received")
        scheduler.stop()
        server.should_exit = True

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown)

    LOGGER.info(
        "Worker started",
        extra={
            "jobs": [job.name for job in scheduler.jobs],
            "poll_seconds": settings.monitor.poll_seconds,
            "monitor_concurrency": settings.monitor.max_concurrency,
            "extraction_batch_size": settings.extraction.batch_size,
            "insights_batch_size": settings.insights.batch_size,
            "health_port": settings.worker.health_port,
        }
    )

    scheduler.start()
    try:
        await server.serve()
    finally:
        scheduler.stop()
        await scheduler.wait_closed()
        await close_database()
        LOGGER.info("Worker stopped")


def run() -> None:
    """Console entry point."""
    try:
        asyncio.run(main())
    except Exception as e:
        LOGGER.error(f"Worker failed: {e}", exc_info=True)
        raise


if __name__ == "__main__":
    run()
