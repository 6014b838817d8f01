"""Analytics exception hierarchy."""


class AnalyticsError(Exception):
    """Base class for analytics pipeline errors."""


class UnknownMetric(AnalyticsError):
    """A metric name outside the tracked set was requested."""


class AlertDispatchFailed(AnalyticsError):
    """A dispatch attempt ended in a retryable failure."""

    def __init__(self, anomaly_id: str, reason: str, error: str | None = None):
        super().__init__(f"alert dispatch for {anomaly_id} failed: {reason}" + (f" ({error})" if error else ""))
        self.anomaly_id = anomaly_id
        self.reason = reason
        self.error = error
