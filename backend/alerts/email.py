"""
Email Delivery for anomaly alerts.

``Mailer`` is the send capability handed to the dispatcher; ``SendGridMailer``
is the production transport. Failures are classified so callers can tell a
transient outage (retry later) from a bad address (will never succeed).
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from html import escape

import sendgrid
from celery.exceptions import SoftTimeLimitExceeded
from sendgrid.helpers.mail import Mail

from analytics.types import Anomaly, AnomalyType, DeliveryResult, DeliveryStatus, Severity


SEVERITY_COLORS = {
    Severity.CRITICAL: ("#fef2f2", "#dc2626"),
    Severity.WARNING: ("#fff7ed", "#f59e0b"),
}
ANOMALY_TYPE_LABELS = {
    AnomalyType.SPIKE: "Unusual Increase",
    AnomalyType.DROP: "Unusual Decrease",
}


@dataclass(frozen=True)
class AnomalySummary:
    anomaly_id: str
    subject: str
    html_content: str
    plain_text: str


def _format_z(z_score: float) -> str:
    if math.isinf(z_score):
        return "+∞" if z_score > 0 else "-∞"
    return f"{z_score:+.2f}"


def build_anomaly_summary(anomaly: Anomaly, dashboard_url: str = "") -> AnomalySummary:
    """Render the subject and body shown to recipients. No internal detail leaks here."""
    metric_label = anomaly.metric_name.label
    type_label = ANOMALY_TYPE_LABELS[anomaly.anomaly_type]
    day = anomaly.timestamp.date().isoformat()
    icon = "🚨" if anomaly.severity == Severity.CRITICAL else "⚠️"
    subject = f"{icon} Anomaly Alert: {metric_label} {anomaly.anomaly_type.value.title()} Detected"

    variance = f"{anomaly.variance_percent:+.1f}%" if anomaly.variance_percent is not None else "n/a"
    message = (
        f"{metric_label} on {day} was {anomaly.observed_value:,.2f} against an expected "
        f"{anomaly.baseline_mean:,.2f} ({variance}, z-score {_format_z(anomaly.z_score)})."
    )
    link = f"{dashboard_url.rstrip('/')}/pos/analytics?anomaly_id={anomaly.id}" if dashboard_url else ""
    background, accent = SEVERITY_COLORS[anomaly.severity]
    button_html = ""
    if link:
        button_html = (
            f'<a href="{escape(link)}" style="display: inline-block; background: #4f46e5; color: white; '
            'padding: 10px 20px; border-radius: 8px; text-decoration: none; margin-top: 16px;">'
            "View in Dashboard</a>"
        )

    html_content = f"""
    <div style="font-family: Inter, sans-serif; max-width: 600px; margin: 0 auto;">
      <div style="background: #1e1b4b; color: white; padding: 24px; border-radius: 12px 12px 0 0;">
        <h1 style="margin: 0; font-size: 20px;">SalesPulse Anomaly Alert</h1>
      </div>
      <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
        <div style="background: {background}; border-left: 4px solid {accent};
                    padding: 16px; border-radius: 0 8px 8px 0; margin-bottom: 16px;">
          <p style="margin: 0; font-weight: 600; color: #1e293b;">
            {anomaly.severity.value.upper()} - {escape(type_label)}
          </p>
        </div>
        <p style="color: #334155; line-height: 1.6;">{escape(message)}</p>
        {button_html}
      </div>
    </div>
    """
    plain_text = f"{subject}\n\n{message}\n{link}".strip()
    return AnomalySummary(anomaly_id=anomaly.id, subject=subject, html_content=html_content, plain_text=plain_text)


class Mailer(ABC):
    @abstractmethod
    def send(self, address: str, summary: AnomalySummary) -> DeliveryResult:
        ...


def classify_send_error(exc: Exception) -> DeliveryResult:
    """429 and 5xx are worth retrying; any other 4xx is a permanent rejection."""
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int) and 400 <= status_code < 500 and status_code != 429:
        return DeliveryResult(DeliveryStatus.PERMANENT_FAILURE, f"http_{status_code}")
    if isinstance(status_code, int):
        return DeliveryResult(DeliveryStatus.TRANSIENT_FAILURE, f"http_{status_code}")
    return DeliveryResult(DeliveryStatus.TRANSIENT_FAILURE, f"{type(exc).__name__}: {exc}")


class SendGridMailer(Mailer):
    def __init__(self, api_key: str, from_email: str, client=None):
        self.from_email = from_email
        self.client = client or sendgrid.SendGridAPIClient(api_key=api_key)

    def send(self, address: str, summary: AnomalySummary) -> DeliveryResult:
        email = Mail(
            from_email=self.from_email,
            to_emails=address,
            subject=summary.subject,
            html_content=summary.html_content,
            plain_text_content=summary.plain_text,
        )
        try:
            response = self.client.send(email)
        except SoftTimeLimitExceeded:
            raise
        except Exception as exc:  # noqa: BLE001
            return classify_send_error(exc)
        if response.status_code in (200, 201, 202):
            return DeliveryResult(DeliveryStatus.SENT)
        return classify_send_error(_StatusError(response.status_code))


class _StatusError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"unexpected status {status_code}")
        self.status_code = status_code
