"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "salespulse",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Crontab entries are evaluated in the analytics timezone.
    timezone=settings.analytics_timezone,
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.forecast.*": {"queue": "analytics"},
        "workers.anomaly.*": {"queue": "analytics"},
        "workers.notifications.*": {"queue": "alerts"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Each batch job loops over active tenants itself and holds a per-job-type
    # lock (workers.scheduler.JobRunGuard) for the duration of the run.
    beat_schedule={
        # ── Forecasting ────────────────────────────────────────────
        "generate-forecasts-daily": {
            "task": "workers.forecast.generate_daily_forecasts",
            "schedule": crontab(hour=settings.forecast_schedule_hour, minute=settings.forecast_schedule_minute),
            "options": {"queue": "analytics"},
        },
        # ── Anomaly Detection ──────────────────────────────────────
        "detect-anomalies-5m": {
            "task": "workers.anomaly.detect_anomalies",
            "schedule": float(settings.anomaly_detection_interval_seconds),  # interval, not wall-clock
            # A tick nobody picked up before the next one is dropped, not queued.
            "options": {"queue": "analytics", "expires": settings.anomaly_detection_interval_seconds},
        },
    },
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    from core.logging import configure_logging

    configure_logging(level=settings.log_level, fmt=settings.log_format)


# Task modules loaded by the worker
celery_app.conf.imports = ("workers.forecast", "workers.anomaly", "workers.notifications")
