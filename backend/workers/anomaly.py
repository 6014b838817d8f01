"""
Anomaly Detection Workers — 5-minute Z-score sweep over every active tenant.

Critical anomalies are handed to ``workers.notifications.send_anomaly_alert``
by id, after the tenant's anomalies are committed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from workers.celery_app import celery_app
from workers.scheduler import JobRunGuard

logger = structlog.get_logger()

JOB_TYPE = "anomaly_detection"


def enqueue_anomaly_alert(anomaly_id: str) -> None:
    from workers.notifications import send_anomaly_alert

    send_anomaly_alert.apply_async(args=[anomaly_id], queue="alerts")


async def run_detection_batch(
    session_factory: async_sessionmaker[AsyncSession],
    settings,
    enqueue_alert: Callable[[str], object] = enqueue_anomaly_alert,
) -> dict:
    """Detect anomalies for every active tenant, each in its own session."""
    from analytics.baseline import BaselineCalculator
    from analytics.batch import run_tenant_batch
    from analytics.detector import AnomalyDetector, SeverityThresholds
    from analytics.repositories import SqlAnomalyRepository, SqlMetricStore, SqlTenantDirectory
    from analytics.types import Severity

    thresholds = SeverityThresholds(
        warning=settings.anomaly_warning_threshold,
        critical=settings.anomaly_critical_threshold,
    )

    async with session_factory() as db:
        tenant_ids = await SqlTenantDirectory(db).active_tenant_ids()

    async def _detect_tenant(tenant_id: str) -> dict[str, int]:
        async with session_factory() as db:
            metric_store = SqlMetricStore(db)
            detector = AnomalyDetector(
                metric_store,
                BaselineCalculator(
                    metric_store,
                    window_size=settings.baseline_window_size,
                    min_samples=settings.baseline_min_samples,
                    lookback_days=settings.baseline_lookback_days,
                ),
                SqlAnomalyRepository(db),
                enqueue_alert=enqueue_alert,
                thresholds=thresholds,
                tracked_metrics=settings.tracked_metrics,
                lookback_days=settings.baseline_lookback_days,
                logger=logger.bind(job_type=JOB_TYPE),
            )
            anomalies = await detector.detect(tenant_id)
        return {
            "anomalies_detected": len(anomalies),
            "critical_anomalies": sum(1 for a in anomalies if a.severity == Severity.CRITICAL),
            "warning_anomalies": sum(1 for a in anomalies if a.severity == Severity.WARNING),
        }

    batch = await run_tenant_batch(JOB_TYPE, tenant_ids, _detect_tenant, log=logger)
    return batch.to_dict()


@celery_app.task(
    name="workers.anomaly.detect_anomalies",
    bind=True,
    max_retries=2,
    default_retry_delay=30,
    acks_late=True,
    soft_time_limit=get_settings().detection_job_time_limit_seconds,
    time_limit=get_settings().detection_job_time_limit_seconds + 30,
)
def detect_anomalies(self):
    """Run one detection sweep; skipped if the previous sweep is still running."""
    from db.session import worker_session

    settings = get_settings()
    run_id = self.request.id or "manual"
    logger.info("anomaly_batch.started", run_id=run_id)

    async def _run():
        async with worker_session(settings.database_url) as session_factory:
            return await run_detection_batch(session_factory, settings)

    def _execute() -> dict:
        started = datetime.now(timezone.utc)
        summary = asyncio.run(_run())
        summary["run_id"] = run_id
        summary["execution_time_seconds"] = round((datetime.now(timezone.utc) - started).total_seconds(), 2)
        return summary

    try:
        summary = JobRunGuard.for_job(JOB_TYPE, settings.detection_job_time_limit_seconds + 30).run(_execute)
    except Exception as exc:  # noqa: BLE001
        logger.error("anomaly_batch.failed", run_id=run_id, error=str(exc), exc_info=True)
        if self.request.retries >= self.max_retries:
            logger.error("anomaly_batch.retries_exhausted", run_id=run_id, error=str(exc))
        raise self.retry(exc=exc)

    logger.info("anomaly_batch.completed", **summary)
    return summary
