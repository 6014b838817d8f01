"""
Baseline Calculator — trailing-window mean / standard deviation per tenant metric.

The window is the N most recent days strictly before ``as_of``; days without
sales since the tenant's first sale count as 0.
Fewer than ``min_samples`` observations yields an explicit insufficient
baseline; callers must skip evaluation rather than treat it as "normal".
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta

import numpy as np
import structlog

from analytics.repositories import MetricStore
from analytics.types import BaselineWindow, MetricName, MetricObservation


def fill_missing_days(
    history: list[MetricObservation],
    tenant_id: str,
    metric_name: MetricName,
    start: date,
    end: date,
) -> list[MetricObservation]:
    """Daily series over ``[start, end)``; a day without sales is a 0 observation."""
    by_day = {obs.timestamp.date(): obs for obs in history}
    filled = []
    day = start
    while day < end:
        obs = by_day.get(day)
        if obs is None:
            obs = MetricObservation(
                tenant_id=tenant_id,
                metric_name=metric_name,
                timestamp=datetime.combine(day, time.min),
                value=0.0,
            )
        filled.append(obs)
        day += timedelta(days=1)
    return filled


async def read_daily_series(
    metric_store: MetricStore,
    tenant_id: str,
    metric_name: MetricName,
    start: date,
    end: date,
) -> list[MetricObservation]:
    """
    Read ``[start, end)`` and zero-fill days without sales.

    Filling starts at the tenant's first sale (or the first observation in
    range when the store cannot tell), so a tenant that only just started
    selling does not get a run of leading zeros.
    """
    metric_name = MetricName(metric_name)
    history = await metric_store.read(tenant_id, metric_name, start, end)
    first_day = await metric_store.first_activity_date(tenant_id)
    if first_day is None:
        if not history:
            return []
        first_day = history[0].timestamp.date()
    return fill_missing_days(history, tenant_id, metric_name, max(start, first_day), end)


def window_statistics(values: list[float], min_samples: int) -> BaselineWindow:
    """Mean and population standard deviation of ``values``."""
    if len(values) < min_samples:
        return BaselineWindow.insufficient(len(values), min_samples)
    arr = np.asarray(values, dtype=float)
    return BaselineWindow(
        mean=float(arr.mean()),
        standard_deviation=float(arr.std(ddof=0)),
        sample_count=len(values),
        minimum_required=min_samples,
    )


class BaselineCalculator:
    def __init__(
        self,
        metric_store: MetricStore,
        *,
        window_size: int = 30,
        min_samples: int = 5,
        lookback_days: int = 90,
        logger=None,
    ):
        if window_size < min_samples:
            raise ValueError("window_size must be >= min_samples")
        self.metric_store = metric_store
        self.window_size = window_size
        self.min_samples = min_samples
        self.lookback_days = lookback_days
        self.logger = logger or structlog.get_logger()

    def from_history(self, history: list[MetricObservation], as_of: datetime) -> BaselineWindow:
        prior = sorted((obs for obs in history if obs.timestamp < as_of), key=lambda obs: obs.timestamp)
        window = prior[-self.window_size :]
        return window_statistics([obs.value for obs in window], self.min_samples)

    async def baseline(self, tenant_id: str, metric_name: MetricName, as_of: datetime) -> BaselineWindow:
        start = (as_of - timedelta(days=self.lookback_days)).date()
        # Day-granular read; the strict < as_of cut happens in from_history.
        history = await read_daily_series(
            self.metric_store, tenant_id, metric_name, start, as_of.date() + timedelta(days=1)
        )
        window = self.from_history(history, as_of)
        if not window.sufficient:
            self.logger.debug(
                "baseline.insufficient",
                tenant_id=tenant_id,
                metric=MetricName(metric_name).value,
                sample_count=window.sample_count,
                minimum_required=self.min_samples,
            )
        return window
