"""
Tests for the Anomaly Detector.

Covers:
  - Z-score and severity classification boundaries
  - Critical anomalies persisted and enqueued, warnings persisted only
  - Insufficient baselines skipped
  - Duplicate suppression on re-runs
  - Tenant isolation
  - Completed days without sales evaluated as 0
"""

import math
from datetime import datetime, timedelta

import pytest
from celery.exceptions import SoftTimeLimitExceeded

from analytics.baseline import BaselineCalculator
from analytics.detector import (
    AnomalyDetector,
    SeverityThresholds,
    classify_severity,
    compute_z_score,
    variance_percent,
)
from analytics.errors import UnknownMetric
from analytics.repositories import SqlAnomalyRepository, SqlMetricStore
from analytics.types import AnomalyStatus, AnomalyType, MetricName, Severity
from conftest import NOW, OTHER_TENANT_ID, TENANT_ID, TODAY, alternating_baseline


def _detector(db, enqueued, metrics=("revenue",), enqueue_alert=None):
    store = SqlMetricStore(db)
    return AnomalyDetector(
        store,
        BaselineCalculator(store, window_size=30, min_samples=5),
        SqlAnomalyRepository(db),
        enqueue_alert=enqueue_alert or enqueued.append,
        tracked_metrics=metrics,
        clock=lambda: NOW,
    )


class TestScoring:
    def test_z_score(self):
        assert compute_z_score(135.0, 100.0, 10.0) == pytest.approx(3.5)
        assert compute_z_score(75.0, 100.0, 10.0) == pytest.approx(-2.5)

    def test_flat_baseline_matching_value_is_zero(self):
        assert compute_z_score(100.0, 100.0, 0.0) == 0.0

    def test_flat_baseline_deviation_is_infinite(self):
        assert compute_z_score(101.0, 100.0, 0.0) == math.inf
        assert compute_z_score(99.0, 100.0, 0.0) == -math.inf

    @pytest.mark.parametrize(
        "z,expected",
        [
            (1.99, None),
            (2.0, Severity.WARNING),
            (-2.5, Severity.WARNING),
            (3.0, Severity.CRITICAL),
            (-3.5, Severity.CRITICAL),
            (math.inf, Severity.CRITICAL),
        ],
    )
    def test_classification_is_monotonic_on_magnitude(self, z, expected):
        assert classify_severity(z, SeverityThresholds()) == expected

    def test_thresholds_validated(self):
        with pytest.raises(ValueError):
            SeverityThresholds(warning=3.0, critical=2.0)
        with pytest.raises(ValueError):
            SeverityThresholds(warning=0.0, critical=2.0)

    def test_variance_percent(self):
        assert variance_percent(135.0, 100.0) == 35.0
        assert variance_percent(10.0, 0.0) is None


class TestDetect:
    async def test_critical_anomaly_persisted_and_enqueued(self, test_db, seed):
        await seed.daily_revenue(TENANT_ID, alternating_baseline(14) + [135.0])
        enqueued = []

        anomalies = await _detector(test_db, enqueued).detect(TENANT_ID)

        assert len(anomalies) == 1
        anomaly = anomalies[0]
        assert anomaly.severity == Severity.CRITICAL
        assert anomaly.anomaly_type == AnomalyType.SPIKE
        assert anomaly.z_score == pytest.approx(3.5)
        assert anomaly.baseline_mean == pytest.approx(100.0)
        assert anomaly.timestamp == datetime.combine(TODAY - timedelta(days=1), datetime.min.time())
        assert enqueued == [anomaly.id]

        stored = await SqlAnomalyRepository(test_db).get(anomaly.id)
        assert stored is not None
        assert stored.status == AnomalyStatus.OPEN
        assert stored.tenant_id == TENANT_ID

    async def test_warning_persisted_but_not_enqueued(self, test_db, seed):
        await seed.daily_revenue(TENANT_ID, alternating_baseline(14) + [75.0])
        enqueued = []

        anomalies = await _detector(test_db, enqueued).detect(TENANT_ID)

        assert [a.severity for a in anomalies] == [Severity.WARNING]
        assert anomalies[0].anomaly_type == AnomalyType.DROP
        assert enqueued == []
        warnings = await SqlAnomalyRepository(test_db).list_for_tenant(TENANT_ID, Severity.WARNING)
        assert len(warnings) == 1

    async def test_normal_value_records_nothing(self, test_db, seed):
        await seed.daily_revenue(TENANT_ID, alternating_baseline(14) + [105.0])
        enqueued = []

        assert await _detector(test_db, enqueued).detect(TENANT_ID) == []
        assert await SqlAnomalyRepository(test_db).list_for_tenant(TENANT_ID) == []

    async def test_insufficient_baseline_is_skipped(self, test_db, seed):
        # Three prior days against a minimum of five.
        await seed.daily_revenue(TENANT_ID, [100.0, 100.0, 100.0, 10_000.0])
        enqueued = []

        assert await _detector(test_db, enqueued).detect(TENANT_ID) == []
        assert enqueued == []

    async def test_rerun_does_not_duplicate(self, test_db, seed):
        await seed.daily_revenue(TENANT_ID, alternating_baseline(14) + [135.0])
        enqueued = []
        detector = _detector(test_db, enqueued)

        first = await detector.detect(TENANT_ID)
        second = await detector.detect(TENANT_ID)

        assert len(first) == 1
        assert second == []
        assert len(enqueued) == 1
        assert len(await SqlAnomalyRepository(test_db).list_for_tenant(TENANT_ID)) == 1

    async def test_other_tenant_data_never_read(self, test_db, seed):
        await seed.daily_revenue(TENANT_ID, alternating_baseline(14) + [100.0])
        await seed.daily_revenue(OTHER_TENANT_ID, alternating_baseline(14) + [500.0])
        enqueued = []

        assert await _detector(test_db, enqueued).detect(TENANT_ID) == []
        other = await _detector(test_db, enqueued).detect(OTHER_TENANT_ID)

        assert len(other) == 1
        assert other[0].tenant_id == OTHER_TENANT_ID
        assert await SqlAnomalyRepository(test_db).list_for_tenant(TENANT_ID) == []

    async def test_flat_baseline_deviation_is_critical(self, test_db, seed):
        await seed.daily_revenue(TENANT_ID, [100.0] * 7 + [120.0])
        enqueued = []

        anomalies = await _detector(test_db, enqueued).detect(TENANT_ID)

        assert len(anomalies) == 1
        assert anomalies[0].z_score == math.inf
        assert anomalies[0].severity == Severity.CRITICAL

    async def test_enqueue_failure_keeps_anomaly(self, test_db, seed):
        await seed.daily_revenue(TENANT_ID, alternating_baseline(14) + [135.0])

        def _broken_queue(anomaly_id):
            raise ConnectionError("broker unavailable")

        anomalies = await _detector(test_db, [], enqueue_alert=_broken_queue).detect(TENANT_ID)

        assert len(anomalies) == 1
        assert await SqlAnomalyRepository(test_db).get(anomalies[0].id) is not None

    async def test_all_tracked_metrics_evaluated(self, test_db, seed):
        # One order per day: revenue and average ticket move together,
        # transaction count stays flat at 1.
        await seed.daily_revenue(TENANT_ID, alternating_baseline(14) + [135.0])
        enqueued = []

        anomalies = await _detector(test_db, enqueued, metrics=tuple(MetricName)).detect(TENANT_ID)

        assert {a.metric_name for a in anomalies} == {MetricName.REVENUE, MetricName.AVERAGE_TICKET}
        assert len(enqueued) == 2

    async def test_day_without_sales_is_critical_drop(self, test_db, seed):
        await seed.daily_revenue(TENANT_ID, alternating_baseline(14), end=TODAY - timedelta(days=1))
        enqueued = []

        anomalies = await _detector(test_db, enqueued).detect(TENANT_ID)

        assert len(anomalies) == 1
        anomaly = anomalies[0]
        assert anomaly.observed_value == 0.0
        assert anomaly.anomaly_type == AnomalyType.DROP
        assert anomaly.severity == Severity.CRITICAL
        assert anomaly.z_score == pytest.approx(-10.0)
        assert anomaly.variance_percent == pytest.approx(-100.0)
        assert anomaly.timestamp == datetime.combine(TODAY - timedelta(days=1), datetime.min.time())
        assert enqueued == [anomaly.id]

    async def test_quiet_day_inside_baseline_counts_as_zero(self, test_db, seed):
        values = alternating_baseline(14)
        start = TODAY - timedelta(days=16)
        by_day = {start + timedelta(days=i): [v] for i, v in enumerate(values[:7])}
        by_day.update({start + timedelta(days=8 + i): [v] for i, v in enumerate(values[7:])})
        by_day[TODAY - timedelta(days=1)] = [100.0]
        await seed.daily_orders(TENANT_ID, by_day)
        store = SqlMetricStore(test_db)

        window = await BaselineCalculator(store, window_size=30, min_samples=5).baseline(
            TENANT_ID, MetricName.REVENUE, datetime.combine(TODAY - timedelta(days=1), datetime.min.time())
        )

        assert window.sample_count == 15
        assert window.mean == pytest.approx(1400.0 / 15)

    async def test_soft_time_limit_during_enqueue_propagates(self, test_db, seed):
        await seed.daily_revenue(TENANT_ID, alternating_baseline(14) + [135.0])

        def _timed_out(anomaly_id):
            raise SoftTimeLimitExceeded()

        with pytest.raises(SoftTimeLimitExceeded):
            await _detector(test_db, [], enqueue_alert=_timed_out).detect(TENANT_ID)


class TestSqlMetricStore:
    async def test_unknown_metric_rejected(self, test_db):
        with pytest.raises(UnknownMetric):
            await SqlMetricStore(test_db).read(TENANT_ID, "margin", TODAY - timedelta(days=7), TODAY)

    async def test_days_without_sales_are_not_stored_observations(self, test_db, seed):
        await seed.daily_orders(
            TENANT_ID,
            {TODAY - timedelta(days=3): [40.0, 60.0], TODAY - timedelta(days=1): [25.0]},
        )
        store = SqlMetricStore(test_db)

        revenue = await store.read(TENANT_ID, MetricName.REVENUE, TODAY - timedelta(days=7), TODAY)
        tickets = await store.read(TENANT_ID, MetricName.AVERAGE_TICKET, TODAY - timedelta(days=7), TODAY)

        assert [obs.value for obs in revenue] == [100.0, 25.0]
        assert [obs.value for obs in tickets] == [50.0, 25.0]
        assert await store.first_activity_date(TENANT_ID) == TODAY - timedelta(days=3)
        assert await store.first_activity_date(OTHER_TENANT_ID) is None
