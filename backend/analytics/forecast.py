"""
Forecast Generator — 30-day projections of each tracked daily sales metric.

Model: ordinary least-squares trend over the day index of the history window,
plus an additive day-of-week adjustment (mean residual per weekday) once the
history covers two full weeks. The 95% band is ±1.96 × residual standard
error. Deterministic for identical input; writes are upserts keyed by
(tenant, metric, target_date), so re-running the same day overwrites.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta

import numpy as np
import pandas as pd
import structlog
from celery.exceptions import SoftTimeLimitExceeded

from analytics.repositories import ForecastRepository, MetricStore
from analytics.types import Forecast, MetricName, MetricObservation

ALGORITHM = "linear_trend_dow"
Z_95 = 1.96
MIN_DAYS_FOR_WEEKDAY_ADJUSTMENT = 14


def _history_frame(history: list[MetricObservation]) -> pd.DataFrame:
    df = pd.DataFrame(
        [{"date": pd.Timestamp(obs.timestamp).normalize(), "value": float(obs.value)} for obs in history]
    )
    df = df.groupby("date", as_index=False)["value"].sum().sort_values("date").reset_index(drop=True)
    df["day_index"] = (df["date"] - df["date"].iloc[0]).dt.days.astype(float)
    df["day_of_week"] = df["date"].dt.dayofweek
    return df


def project(history: list[MetricObservation], as_of_date: date, horizon_days: int) -> dict:
    """
    Project ``history`` over ``as_of_date + 1 … as_of_date + horizon_days``.

    Returns ``{"forecasts": [...], "r_squared": float, "history_days_used": int}``
    where each forecast is ``{"target_date", "predicted_value",
    "confidence_lower", "confidence_upper"}``.
    """
    df = _history_frame(history)
    n = len(df)
    x = df["day_index"].to_numpy()
    y = df["value"].to_numpy()

    if n >= 2 and np.ptp(x) > 0:
        slope, intercept = np.polyfit(x, y, 1)
    else:
        slope, intercept = 0.0, float(y.mean())

    fitted = slope * x + intercept
    residuals = y - fitted

    weekday_adjustment: dict[int, float] = {}
    span_days = int(x[-1] - x[0]) + 1 if n else 0
    if span_days >= MIN_DAYS_FOR_WEEKDAY_ADJUSTMENT:
        weekday_adjustment = (
            pd.Series(residuals).groupby(df["day_of_week"]).mean().astype(float).to_dict()
        )
        residuals = residuals - df["day_of_week"].map(weekday_adjustment).to_numpy()

    ss_total = float(((y - y.mean()) ** 2).sum())
    ss_residual = float((residuals**2).sum())
    r_squared = 1 - ss_residual / ss_total if ss_total > 0 else 0.0
    r_squared = max(0.0, min(1.0, r_squared))
    standard_error = float(np.sqrt(ss_residual / max(1, n - 2)))
    interval = Z_95 * standard_error

    origin = df["date"].iloc[0]
    forecasts = []
    for offset in range(1, horizon_days + 1):
        target = as_of_date + timedelta(days=offset)
        day_index = float((pd.Timestamp(target) - origin).days)
        predicted = slope * day_index + intercept + weekday_adjustment.get(target.weekday(), 0.0)
        forecasts.append(
            {
                "target_date": target,
                "predicted_value": max(0.0, round(float(predicted), 2)),
                "confidence_lower": max(0.0, round(float(predicted - interval), 2)),
                "confidence_upper": max(0.0, round(float(predicted + interval), 2)),
            }
        )

    return {"forecasts": forecasts, "r_squared": round(r_squared, 4), "history_days_used": n}


class ForecastGenerator:
    def __init__(
        self,
        metric_store: MetricStore,
        forecast_repository: ForecastRepository,
        *,
        tracked_metrics: Iterable[MetricName | str] = tuple(MetricName),
        horizon_days: int = 30,
        history_days: int = 90,
        clock: Callable[[], datetime] = datetime.utcnow,
        logger=None,
    ):
        self.metric_store = metric_store
        self.forecast_repository = forecast_repository
        self.tracked_metrics = [MetricName(m) for m in tracked_metrics]
        self.horizon_days = horizon_days
        self.history_days = history_days
        self.clock = clock
        self.logger = logger or structlog.get_logger()

    async def generate_metric(self, tenant_id: str, metric_name: MetricName, as_of_date: date) -> dict[date, float]:
        history = await self.metric_store.read(
            tenant_id, metric_name, as_of_date - timedelta(days=self.history_days), as_of_date
        )
        if not history:
            self.logger.info("forecast.skipped_no_history", tenant_id=tenant_id, metric=metric_name.value)
            return {}

        result = project(history, as_of_date, self.horizon_days)
        generated_at = self.clock()
        rows = [
            Forecast(
                tenant_id=tenant_id,
                metric_name=metric_name,
                target_date=item["target_date"],
                predicted_value=item["predicted_value"],
                generated_at=generated_at,
                as_of_date=as_of_date,
                confidence_lower=item["confidence_lower"],
                confidence_upper=item["confidence_upper"],
                r_squared=result["r_squared"],
                algorithm=ALGORITHM,
            )
            for item in result["forecasts"]
        ]
        written = await self.forecast_repository.upsert_many(rows)
        self.logger.info(
            "forecast.generated",
            tenant_id=tenant_id,
            metric=metric_name.value,
            forecasts_written=written,
            r_squared=result["r_squared"],
            history_days_used=result["history_days_used"],
        )
        return {row.target_date: row.predicted_value for row in rows}

    async def generate(self, tenant_id: str, as_of_date: date | None = None) -> dict[str, dict[date, float]]:
        """
        Forecast every tracked metric for one tenant.

        A failing metric is logged and the remaining metrics still run; the
        first error is re-raised afterwards so the batch reports the tenant
        as failed.
        """
        as_of_date = as_of_date or self.clock().date()
        results: dict[str, dict[date, float]] = {}
        first_error: Exception | None = None
        for metric_name in self.tracked_metrics:
            try:
                results[metric_name.value] = await self.generate_metric(tenant_id, metric_name, as_of_date)
            except SoftTimeLimitExceeded:
                raise
            except Exception as exc:  # noqa: BLE001
                self.logger.error(
                    "forecast.metric_failed",
                    tenant_id=tenant_id,
                    metric=metric_name.value,
                    error=str(exc),
                    exc_info=True,
                )
                first_error = first_error or exc
        if first_error is not None:
            raise first_error
        return results
