"""
Notification Workers — deliver one anomaly alert.

Job policy: 3 attempts in total, 60 s apart, 120 s soft time limit each.
A timeout counts as a retryable failure. Only the anomaly id travels on the
queue; the dispatcher re-reads the anomaly so a delayed run sees its current
state.
"""

from __future__ import annotations

import asyncio

import structlog
from celery.exceptions import SoftTimeLimitExceeded

from analytics.errors import AlertDispatchFailed
from analytics.types import JobOutcome, JobResult
from core.config import get_settings
from workers.celery_app import celery_app

logger = structlog.get_logger()

_settings = get_settings()


def build_dispatcher(db, settings):
    from alerts.dispatcher import AlertDispatcher
    from alerts.email import SendGridMailer
    from alerts.ledger import RedisDeliveryLedger
    from alerts.preferences import PreferenceResolver
    from analytics.repositories import SqlAnomalyRepository, SqlPreferenceRepository, SqlUserDirectory

    ledger = None
    if settings.alert_delivery_ledger_enabled:
        ledger = RedisDeliveryLedger.from_url(settings.redis_url, ttl_seconds=settings.alert_delivery_ledger_ttl_seconds)

    return AlertDispatcher(
        SqlAnomalyRepository(db),
        PreferenceResolver(SqlPreferenceRepository(db), SqlUserDirectory(db)),
        SendGridMailer(api_key=settings.sendgrid_api_key, from_email=settings.alert_from_email),
        ledger=ledger,
        dashboard_url=settings.dashboard_url,
    )


async def _dispatch(anomaly_id: str) -> JobResult:
    from db.session import worker_session

    settings = get_settings()
    async with worker_session(settings.database_url) as session_factory:
        async with session_factory() as db:
            return await build_dispatcher(db, settings).dispatch(anomaly_id)


@celery_app.task(
    name="workers.notifications.send_anomaly_alert",
    bind=True,
    max_retries=_settings.alert_dispatch_max_attempts - 1,
    default_retry_delay=_settings.alert_dispatch_retry_delay_seconds,
    soft_time_limit=_settings.alert_dispatch_time_limit_seconds,
    time_limit=_settings.alert_dispatch_time_limit_seconds + 10,
    acks_late=True,
)
def send_anomaly_alert(self, anomaly_id: str):
    """Resolve recipients for one anomaly and email each of them."""
    attempt = self.request.retries + 1
    logger.info("alert_dispatch.started", anomaly_id=anomaly_id, attempt=attempt)

    try:
        result = asyncio.run(_dispatch(anomaly_id))
    except SoftTimeLimitExceeded:
        result = JobResult(JobOutcome.RETRYABLE, reason="time_limit_exceeded")
    except Exception as exc:  # noqa: BLE001
        logger.error("alert_dispatch.unexpected_error", anomaly_id=anomaly_id, error=str(exc), exc_info=True)
        result = JobResult(JobOutcome.RETRYABLE, reason="unexpected_error", error=str(exc))

    if not result.should_retry:
        summary = result.to_dict()
        logger.info("alert_dispatch.finished", attempt=attempt, **summary)
        return summary

    failure = AlertDispatchFailed(anomaly_id, result.reason, result.error)
    if self.request.retries >= self.max_retries:
        logger.error(
            "alert_dispatch.retries_exhausted",
            anomaly_id=anomaly_id,
            attempts=attempt,
            reason=result.reason,
            error=result.error,
            details=result.details,
        )
        raise failure

    logger.warning("alert_dispatch.retrying", anomaly_id=anomaly_id, attempt=attempt, reason=result.reason)
    raise self.retry(exc=failure)
