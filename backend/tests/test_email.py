"""
Tests for anomaly alert email rendering and SendGrid delivery classification.
"""

import math
from datetime import datetime
from types import SimpleNamespace

import pytest
from celery.exceptions import SoftTimeLimitExceeded

from alerts.email import SendGridMailer, build_anomaly_summary, classify_send_error
from analytics.types import Anomaly, AnomalyType, DeliveryStatus, MetricName, Severity


def _anomaly(**overrides):
    fields = dict(
        tenant_id="00000000-0000-0000-0000-000000000001",
        metric_name=MetricName.AVERAGE_TICKET,
        timestamp=datetime(2026, 2, 28),
        observed_value=12.5,
        baseline_mean=25.0,
        baseline_stddev=3.0,
        z_score=-4.1667,
        severity=Severity.CRITICAL,
        anomaly_type=AnomalyType.DROP,
        variance_percent=-50.0,
    )
    fields.update(overrides)
    return Anomaly(**fields)


class _Client:
    def __init__(self, status_code=202, error=None):
        self.status_code = status_code
        self.error = error
        self.messages = []

    def send(self, message):
        self.messages.append(message)
        if self.error:
            raise self.error
        return SimpleNamespace(status_code=self.status_code)


class _HttpError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP Error {status_code}")
        self.status_code = status_code


class TestSummary:
    def test_subject_and_body(self):
        anomaly = _anomaly()
        summary = build_anomaly_summary(anomaly, "https://app.example.com/")

        assert summary.subject == "🚨 Anomaly Alert: Average Ticket Size Drop Detected"
        assert summary.anomaly_id == anomaly.id
        assert "2026-02-28" in summary.plain_text
        assert "-50.0%" in summary.plain_text
        assert f"https://app.example.com/pos/analytics?anomaly_id={anomaly.id}" in summary.html_content

    def test_no_dashboard_link_without_url(self):
        summary = build_anomaly_summary(_anomaly(), "")
        assert "View in Dashboard" not in summary.html_content

    def test_infinite_score_rendered(self):
        summary = build_anomaly_summary(_anomaly(z_score=math.inf, anomaly_type=AnomalyType.SPIKE, variance_percent=None))
        assert "+∞" in summary.plain_text
        assert "n/a" in summary.plain_text


class TestClassification:
    def test_rate_limit_and_server_errors_are_transient(self):
        assert classify_send_error(_HttpError(429)).status == DeliveryStatus.TRANSIENT_FAILURE
        assert classify_send_error(_HttpError(502)).status == DeliveryStatus.TRANSIENT_FAILURE

    def test_client_errors_are_permanent(self):
        assert classify_send_error(_HttpError(400)).status == DeliveryStatus.PERMANENT_FAILURE
        assert classify_send_error(_HttpError(403)).status == DeliveryStatus.PERMANENT_FAILURE

    def test_network_errors_are_transient(self):
        result = classify_send_error(TimeoutError("read timed out"))
        assert result.status == DeliveryStatus.TRANSIENT_FAILURE
        assert "TimeoutError" in result.detail


class TestSendGridMailer:
    def test_accepted_send(self):
        client = _Client(status_code=202)
        mailer = SendGridMailer(api_key="test", from_email="alerts@example.com", client=client)

        result = mailer.send("owner@example.com", build_anomaly_summary(_anomaly()))

        assert result.status == DeliveryStatus.SENT
        assert len(client.messages) == 1

    def test_unexpected_status_classified(self):
        mailer = SendGridMailer(api_key="test", from_email="alerts@example.com", client=_Client(status_code=500))

        result = mailer.send("owner@example.com", build_anomaly_summary(_anomaly()))

        assert result.status == DeliveryStatus.TRANSIENT_FAILURE

    def test_client_exception_classified(self):
        mailer = SendGridMailer(
            api_key="test", from_email="alerts@example.com", client=_Client(error=_HttpError(401))
        )

        result = mailer.send("owner@example.com", build_anomaly_summary(_anomaly()))

        assert result.status == DeliveryStatus.PERMANENT_FAILURE

    def test_soft_time_limit_not_classified(self):
        mailer = SendGridMailer(
            api_key="test", from_email="alerts@example.com", client=_Client(error=SoftTimeLimitExceeded())
        )

        with pytest.raises(SoftTimeLimitExceeded):
            mailer.send("owner@example.com", build_anomaly_summary(_anomaly()))
