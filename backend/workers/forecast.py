"""
Forecast Workers — daily 30-day projections for every active tenant.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from workers.celery_app import celery_app
from workers.scheduler import JobRunGuard

logger = structlog.get_logger()

JOB_TYPE = "forecast_batch"


def local_today(timezone_name: str, now: datetime | None = None) -> date:
    """Calendar date in the analytics timezone, where the daily crontab fires."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ZoneInfo(timezone_name)).date()


async def run_forecast_batch(
    session_factory: async_sessionmaker[AsyncSession],
    settings,
    as_of_date: date,
) -> dict:
    """Forecast every active tenant, each in its own session."""
    from analytics.batch import run_tenant_batch
    from analytics.forecast import ForecastGenerator
    from analytics.repositories import SqlForecastRepository, SqlMetricStore, SqlTenantDirectory

    async with session_factory() as db:
        tenant_ids = await SqlTenantDirectory(db).active_tenant_ids()

    async def _forecast_tenant(tenant_id: str) -> dict[str, int]:
        async with session_factory() as db:
            generator = ForecastGenerator(
                SqlMetricStore(db),
                SqlForecastRepository(db),
                tracked_metrics=settings.tracked_metrics,
                horizon_days=settings.forecast_horizon_days,
                history_days=settings.forecast_history_days,
                logger=logger.bind(job_type=JOB_TYPE),
            )
            results = await generator.generate(tenant_id, as_of_date)
        return {
            "metrics_forecast": sum(1 for projections in results.values() if projections),
            "metrics_skipped": sum(1 for projections in results.values() if not projections),
            "forecasts_written": sum(len(projections) for projections in results.values()),
        }

    batch = await run_tenant_batch(JOB_TYPE, tenant_ids, _forecast_tenant, log=logger)
    return {**batch.to_dict(), "as_of_date": as_of_date.isoformat()}


@celery_app.task(
    name="workers.forecast.generate_daily_forecasts",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
    soft_time_limit=get_settings().forecast_job_time_limit_seconds,
    time_limit=get_settings().forecast_job_time_limit_seconds + 30,
)
def generate_daily_forecasts(self, as_of_date: str | None = None):
    """
    Generate forecasts for all active tenants.

    Per-tenant failures are isolated and reported in ``failed_tenant_ids``;
    only a failure of the batch itself (e.g. tenant listing) is retried.
    """
    from db.session import worker_session

    settings = get_settings()
    run_id = self.request.id or "manual"
    as_of = date.fromisoformat(as_of_date) if as_of_date else local_today(settings.analytics_timezone)
    logger.info("forecast_batch.started", run_id=run_id, as_of_date=as_of.isoformat())

    async def _run():
        async with worker_session(settings.database_url) as session_factory:
            return await run_forecast_batch(session_factory, settings, as_of)

    def _execute() -> dict:
        started = datetime.now(timezone.utc)
        summary = asyncio.run(_run())
        summary["run_id"] = run_id
        summary["execution_time_seconds"] = round((datetime.now(timezone.utc) - started).total_seconds(), 2)
        return summary

    try:
        summary = JobRunGuard.for_job(JOB_TYPE, settings.forecast_job_time_limit_seconds + 30).run(_execute)
    except Exception as exc:  # noqa: BLE001
        logger.error("forecast_batch.failed", run_id=run_id, error=str(exc), exc_info=True)
        if self.request.retries >= self.max_retries:
            logger.error("forecast_batch.retries_exhausted", run_id=run_id, error=str(exc))
        raise self.retry(exc=exc)

    logger.info("forecast_batch.completed", **summary)
    return summary
