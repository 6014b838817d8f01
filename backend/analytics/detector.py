"""
Anomaly Detection — Z-score comparison of each tenant's latest daily metrics
against a trailing baseline.

Severity (monotonic on |z|, thresholds from settings, identical for every tenant):
  |z| <  warning              → no anomaly
  warning <= |z| < critical   → warning   (recorded only)
  |z| >= critical             → critical  (recorded + alert dispatch enqueued)
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from celery.exceptions import SoftTimeLimitExceeded

from analytics.baseline import BaselineCalculator, read_daily_series
from analytics.repositories import AnomalyRepository, MetricStore
from analytics.types import Anomaly, AnomalyType, MetricName, Severity


@dataclass(frozen=True)
class SeverityThresholds:
    warning: float = 2.0
    critical: float = 3.0

    def __post_init__(self):
        if self.warning <= 0:
            raise ValueError("warning threshold must be positive")
        if self.critical < self.warning:
            raise ValueError("critical threshold must be >= warning threshold")


def compute_z_score(observed: float, mean: float, stddev: float) -> float:
    """
    Standard score of ``observed`` against the baseline.

    A flat baseline (stddev == 0) gives 0 when the value matches it and an
    infinite score in the direction of the deviation otherwise.
    """
    if stddev == 0:
        if observed == mean:
            return 0.0
        return math.copysign(math.inf, observed - mean)
    return (observed - mean) / stddev


def classify_severity(z_score: float, thresholds: SeverityThresholds) -> Severity | None:
    z = abs(z_score)
    if z >= thresholds.critical:
        return Severity.CRITICAL
    if z >= thresholds.warning:
        return Severity.WARNING
    return None


def variance_percent(observed: float, mean: float) -> float | None:
    if mean <= 0:
        return None
    return round((observed - mean) / mean * 100, 2)


class AnomalyDetector:
    def __init__(
        self,
        metric_store: MetricStore,
        baseline_calculator: BaselineCalculator,
        anomaly_repository: AnomalyRepository,
        *,
        enqueue_alert: Callable[[str], object],
        thresholds: SeverityThresholds | None = None,
        tracked_metrics: Iterable[MetricName | str] = tuple(MetricName),
        lookback_days: int = 90,
        clock: Callable[[], datetime] = datetime.utcnow,
        logger=None,
    ):
        self.metric_store = metric_store
        self.baseline_calculator = baseline_calculator
        self.anomaly_repository = anomaly_repository
        self.enqueue_alert = enqueue_alert
        self.thresholds = thresholds or SeverityThresholds()
        self.tracked_metrics = [MetricName(m) for m in tracked_metrics]
        self.lookback_days = lookback_days
        self.clock = clock
        self.logger = logger or structlog.get_logger()

    async def _evaluate_metric(self, tenant_id: str, metric_name: MetricName, today) -> Anomaly | None:
        # Only completed days are evaluated; today's running total is partial.
        # A completed day without sales is evaluated as 0.
        history = await read_daily_series(
            self.metric_store, tenant_id, metric_name, today - timedelta(days=self.lookback_days), today
        )
        if not history:
            self.logger.debug("anomaly.no_observations", tenant_id=tenant_id, metric=metric_name.value)
            return None
        latest = history[-1]

        window = await self.baseline_calculator.baseline(tenant_id, metric_name, latest.timestamp)
        if not window.sufficient:
            self.logger.debug(
                "anomaly.baseline_insufficient_skip",
                tenant_id=tenant_id,
                metric=metric_name.value,
                sample_count=window.sample_count,
            )
            return None

        z = compute_z_score(latest.value, window.mean, window.standard_deviation)
        severity = classify_severity(z, self.thresholds)
        if severity is None:
            return None

        if await self.anomaly_repository.exists(tenant_id, metric_name, latest.timestamp):
            self.logger.debug(
                "anomaly.duplicate_skipped",
                tenant_id=tenant_id,
                metric=metric_name.value,
                observed_at=latest.timestamp.isoformat(),
            )
            return None

        return Anomaly(
            tenant_id=tenant_id,
            metric_name=metric_name,
            timestamp=latest.timestamp,
            observed_value=latest.value,
            baseline_mean=window.mean,
            baseline_stddev=window.standard_deviation,
            z_score=z,
            severity=severity,
            anomaly_type=AnomalyType.SPIKE if z > 0 else AnomalyType.DROP,
            variance_percent=variance_percent(latest.value, window.mean),
            detected_at=self.clock(),
        )

    async def detect(self, tenant_id: str) -> list[Anomaly]:
        """Evaluate every tracked metric, commit new anomalies, then enqueue critical alerts."""
        today = self.clock().date()
        created: list[Anomaly] = []
        for metric_name in self.tracked_metrics:
            anomaly = await self._evaluate_metric(tenant_id, metric_name, today)
            if anomaly is not None:
                created.append(anomaly)

        if not created:
            self.logger.info("anomaly.none_detected", tenant_id=tenant_id)
            return []

        await self.anomaly_repository.add_all(created)

        for anomaly in created:
            self.logger.info(
                "anomaly.detected",
                tenant_id=tenant_id,
                anomaly_id=anomaly.id,
                metric=anomaly.metric_name.value,
                severity=anomaly.severity.value,
                observed_value=anomaly.observed_value,
                baseline_mean=round(anomaly.baseline_mean, 2),
                z_score=anomaly.z_score if math.isinf(anomaly.z_score) else round(anomaly.z_score, 4),
            )
            if anomaly.severity != Severity.CRITICAL:
                continue
            try:
                self.enqueue_alert(anomaly.id)
            except SoftTimeLimitExceeded:
                raise
            except Exception as exc:  # noqa: BLE001
                # Row is already committed; the remaining anomalies still enqueue.
                self.logger.error(
                    "anomaly.alert_enqueue_failed",
                    tenant_id=tenant_id,
                    anomaly_id=anomaly.id,
                    error=str(exc),
                    exc_info=True,
                )

        return created
