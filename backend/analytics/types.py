"""
Analytics domain types.

Plain dataclasses and enums shared by the forecast, baseline, detection and
alerting components. Nothing here touches storage.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class MetricName(str, Enum):
    """Daily sales metrics tracked per tenant."""

    REVENUE = "revenue"
    TRANSACTIONS = "transactions"
    AVERAGE_TICKET = "average_ticket"

    @property
    def label(self) -> str:
        return {
            MetricName.REVENUE: "Revenue",
            MetricName.TRANSACTIONS: "Transaction Count",
            MetricName.AVERAGE_TICKET: "Average Ticket Size",
        }[self]


class Severity(str, Enum):
    """Ordinal anomaly classification. Only CRITICAL is alerted."""

    WARNING = "warning"
    CRITICAL = "critical"


class AnomalyStatus(str, Enum):
    OPEN = "open"
    ALERTED = "alerted"


class AnomalyType(str, Enum):
    SPIKE = "spike"
    DROP = "drop"


class JobOutcome(str, Enum):
    """How the background execution layer should treat a finished unit of work."""

    SKIP = "skipped"
    SUCCESS = "success"
    RETRYABLE = "retryable_failure"
    FATAL = "fatal_failure"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    ALREADY_DELIVERED = "already_delivered"


# ── Records ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MetricObservation:
    tenant_id: str
    metric_name: MetricName
    timestamp: datetime
    value: float


@dataclass(frozen=True)
class BaselineWindow:
    """Trailing-window statistics. ``sufficient`` is False when too few samples."""

    mean: float
    standard_deviation: float
    sample_count: int
    minimum_required: int

    @property
    def sufficient(self) -> bool:
        return self.sample_count >= self.minimum_required

    @classmethod
    def insufficient(cls, sample_count: int, minimum_required: int) -> BaselineWindow:
        return cls(
            mean=0.0,
            standard_deviation=0.0,
            sample_count=sample_count,
            minimum_required=minimum_required,
        )


@dataclass(frozen=True)
class Forecast:
    tenant_id: str
    metric_name: MetricName
    target_date: date
    predicted_value: float
    generated_at: datetime
    as_of_date: date
    confidence_lower: float | None = None
    confidence_upper: float | None = None
    r_squared: float | None = None
    algorithm: str = "linear_trend_dow"


@dataclass
class Anomaly:
    tenant_id: str
    metric_name: MetricName
    timestamp: datetime
    observed_value: float
    baseline_mean: float
    baseline_stddev: float
    z_score: float
    severity: Severity
    anomaly_type: AnomalyType
    variance_percent: float | None = None
    status: AnomalyStatus = AnomalyStatus.OPEN
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    detected_at: datetime = field(default_factory=datetime.utcnow)
    alerted_at: datetime | None = None


@dataclass(frozen=True)
class UserPreference:
    tenant_id: str
    user_id: str | None
    email_notifications_enabled: bool
    severity_filter: frozenset[Severity]
    preference_id: str | None = None

    @property
    def is_tenant_wide(self) -> bool:
        return self.user_id is None


@dataclass(frozen=True)
class UserContact:
    user_id: str
    tenant_id: str
    email: str | None
    is_active: bool = True


@dataclass(frozen=True)
class DeliveryResult:
    status: DeliveryStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (DeliveryStatus.SENT, DeliveryStatus.ALREADY_DELIVERED)


@dataclass(frozen=True)
class NotificationAttempt:
    anomaly_id: str
    recipient_address: str
    outcome: DeliveryStatus
    attempted_at: datetime
    detail: str = ""


# ── Job results ────────────────────────────────────────────────────────────


@dataclass
class JobResult:
    """Explicit outcome returned to the task layer instead of raising for control flow."""

    outcome: JobOutcome
    reason: str = ""
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def should_retry(self) -> bool:
        return self.outcome == JobOutcome.RETRYABLE

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.outcome.value, **self.details}
        if self.reason:
            payload["reason"] = self.reason
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class TenantBatchResult:
    """Summary of a multi-tenant run with per-tenant failure isolation."""

    job_type: str
    tenants_processed: int = 0
    succeeded_tenant_ids: list[str] = field(default_factory=list)
    failed_tenant_ids: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    totals: dict[str, int] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if not self.failed_tenant_ids:
            return "success"
        if self.succeeded_tenant_ids:
            return "partial"
        return "failed"

    def add_total(self, key: str, amount: int) -> None:
        self.totals[key] = self.totals.get(key, 0) + amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "job_type": self.job_type,
            "tenants_processed": self.tenants_processed,
            "tenants_failed": len(self.failed_tenant_ids),
            "failed_tenant_ids": list(self.failed_tenant_ids),
            **self.totals,
        }
