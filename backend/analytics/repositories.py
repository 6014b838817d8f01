"""
Analytics Repositories — narrow storage interfaces and their SQL implementations.

The analytics core only talks to the abstract classes below, each exposing
exactly the query shapes the pipeline needs. Every query is filtered by
tenant_id; the single exception is ``AnomalyRepository.get``, because the
dispatch task receives nothing but the anomaly id, and everything it does
afterwards is scoped by the loaded anomaly's tenant.
"""

from __future__ import annotations

import json
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from datetime import date, datetime, time
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.errors import UnknownMetric
from analytics.types import (
    Anomaly,
    AnomalyStatus,
    AnomalyType,
    Forecast,
    MetricName,
    MetricObservation,
    Severity,
    UserContact,
    UserPreference,
)
from db.models import (
    AnalyticsAnomaly,
    AnalyticsForecast,
    AnalyticsUserPreference,
    SalesOrder,
    Tenant,
    User,
    UserCapability,
)

logger = structlog.get_logger()

ADMIN_CAPABILITY = "tenant.admin"
DEFAULT_ACTIVE_STATUSES = ("active", "trial")


def _as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_severity_filter(raw: Any) -> frozenset[Severity]:
    """
    Coerce a stored severity filter into a typed set.

    Accepts a list, a JSON-encoded list, a single string, or None. Unknown
    levels are dropped with a warning; any other shape (a JSON number or
    boolean) is treated as an empty filter.
    """
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return frozenset()
        try:
            raw = json.loads(text)
        except json.JSONDecodeError:
            raw = [text]
        if isinstance(raw, str):
            raw = [raw]

    if not isinstance(raw, (list, tuple, set, frozenset)):
        logger.warning("preferences.malformed_severity_filter", value=raw)
        return frozenset()

    levels: set[Severity] = set()
    for item in raw:
        try:
            levels.add(Severity(str(item).strip().lower()))
        except ValueError:
            logger.warning("preferences.unknown_severity", value=item)
    return frozenset(levels)


# ──────────────────────────────────────────────────────────────────────────
# Interfaces
# ──────────────────────────────────────────────────────────────────────────


class MetricStore(ABC):
    """Read-only access to per-tenant daily sales metrics."""

    @abstractmethod
    async def read(
        self,
        tenant_id: str,
        metric_name: MetricName,
        start: date,
        end: date,
    ) -> list[MetricObservation]:
        """Observations with ``start <= timestamp < end``, ordered by timestamp."""

    async def first_activity_date(self, tenant_id: str) -> date | None:
        """Day of the tenant's first recorded sale, or None when unknown."""
        return None


class ForecastRepository(ABC):
    @abstractmethod
    async def upsert_many(self, forecasts: Sequence[Forecast]) -> int:
        """Insert or overwrite by (tenant_id, metric_name, target_date)."""

    @abstractmethod
    async def list_for_tenant(
        self,
        tenant_id: str,
        metric_name: MetricName | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[Forecast]:
        ...


class AnomalyRepository(ABC):
    @abstractmethod
    async def exists(self, tenant_id: str, metric_name: MetricName, timestamp: datetime) -> bool:
        ...

    @abstractmethod
    async def add_all(self, anomalies: Sequence[Anomaly]) -> None:
        """Persist new anomalies atomically."""

    @abstractmethod
    async def get(self, anomaly_id: str) -> Anomaly | None:
        ...

    @abstractmethod
    async def mark_alerted(self, tenant_id: str, anomaly_id: str, alerted_at: datetime) -> bool:
        """Move open → alerted. Returns False if already alerted or missing."""

    @abstractmethod
    async def list_for_tenant(self, tenant_id: str, severity: Severity | None = None) -> list[Anomaly]:
        ...


class PreferenceRepository(ABC):
    @abstractmethod
    async def enabled_for_tenant(self, tenant_id: str) -> list[UserPreference]:
        """Preferences with email notifications enabled, in a stable order."""


class UserDirectory(ABC):
    @abstractmethod
    async def get_user(self, tenant_id: str, user_id: str) -> UserContact | None:
        ...

    @abstractmethod
    async def has_capability(self, tenant_id: str, user_id: str, capability: str) -> bool:
        ...

    @abstractmethod
    async def users_with_capability(self, tenant_id: str, capability: str) -> list[UserContact]:
        ...


class TenantDirectory(ABC):
    @abstractmethod
    async def active_tenant_ids(self) -> list[str]:
        ...


# ──────────────────────────────────────────────────────────────────────────
# SQL implementations
# ──────────────────────────────────────────────────────────────────────────


class SqlMetricStore(MetricStore):
    """Aggregates ``sales_orders`` into one observation per calendar day."""

    def __init__(self, db: AsyncSession):
        self.db = db

    _AGGREGATES = {
        MetricName.REVENUE: lambda: func.sum(SalesOrder.total),
        MetricName.TRANSACTIONS: lambda: func.count(SalesOrder.order_id),
        MetricName.AVERAGE_TICKET: lambda: func.avg(SalesOrder.total),
    }

    async def first_activity_date(self, tenant_id: str) -> date | None:
        result = await self.db.execute(
            select(func.min(SalesOrder.created_at)).where(SalesOrder.tenant_id == _as_uuid(tenant_id))
        )
        first = result.scalar_one_or_none()
        return _as_date(first) if first is not None else None

    async def read(
        self,
        tenant_id: str,
        metric_name: MetricName,
        start: date,
        end: date,
    ) -> list[MetricObservation]:
        try:
            metric_name = MetricName(metric_name)
        except ValueError as exc:
            raise UnknownMetric(str(metric_name)) from exc
        sales_date = func.date(SalesOrder.created_at)
        result = await self.db.execute(
            select(sales_date.label("day"), self._AGGREGATES[metric_name]().label("value"))
            .where(
                SalesOrder.tenant_id == _as_uuid(tenant_id),
                SalesOrder.created_at >= datetime.combine(start, time.min),
                SalesOrder.created_at < datetime.combine(end, time.min),
            )
            .group_by(sales_date)
            .order_by(sales_date.asc())
        )
        return [
            MetricObservation(
                tenant_id=str(tenant_id),
                metric_name=metric_name,
                timestamp=datetime.combine(_as_date(row.day), time.min),
                value=float(row.value or 0.0),
            )
            for row in result.all()
        ]


class SqlForecastRepository(ForecastRepository):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert_many(self, forecasts: Sequence[Forecast]) -> int:
        if not forecasts:
            return 0

        written = 0
        # Group per (tenant, metric) so each group needs one lookup query.
        groups: dict[tuple[str, str], list[Forecast]] = {}
        for fc in forecasts:
            groups.setdefault((fc.tenant_id, MetricName(fc.metric_name).value), []).append(fc)

        for (tenant_id, metric_name), batch in groups.items():
            existing_result = await self.db.execute(
                select(AnalyticsForecast).where(
                    AnalyticsForecast.tenant_id == _as_uuid(tenant_id),
                    AnalyticsForecast.metric_name == metric_name,
                    AnalyticsForecast.target_date.in_([fc.target_date for fc in batch]),
                )
            )
            existing = {row.target_date: row for row in existing_result.scalars().all()}

            for fc in batch:
                row = existing.get(fc.target_date)
                if row is None:
                    row = AnalyticsForecast(
                        tenant_id=_as_uuid(tenant_id),
                        metric_name=metric_name,
                        target_date=fc.target_date,
                    )
                    self.db.add(row)
                    existing[fc.target_date] = row
                row.predicted_value = fc.predicted_value
                row.confidence_lower = fc.confidence_lower
                row.confidence_upper = fc.confidence_upper
                row.r_squared = fc.r_squared
                row.algorithm = fc.algorithm
                row.as_of_date = fc.as_of_date
                row.generated_at = fc.generated_at
                written += 1

        await self.db.commit()
        return written

    async def list_for_tenant(
        self,
        tenant_id: str,
        metric_name: MetricName | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[Forecast]:
        query = select(AnalyticsForecast).where(AnalyticsForecast.tenant_id == _as_uuid(tenant_id))
        if metric_name is not None:
            query = query.where(AnalyticsForecast.metric_name == MetricName(metric_name).value)
        if start is not None:
            query = query.where(AnalyticsForecast.target_date >= start)
        if end is not None:
            query = query.where(AnalyticsForecast.target_date <= end)
        result = await self.db.execute(
            query.order_by(AnalyticsForecast.metric_name.asc(), AnalyticsForecast.target_date.asc())
        )
        return [
            Forecast(
                tenant_id=str(row.tenant_id),
                metric_name=MetricName(row.metric_name),
                target_date=_as_date(row.target_date),
                predicted_value=float(row.predicted_value),
                generated_at=row.generated_at,
                as_of_date=_as_date(row.as_of_date),
                confidence_lower=row.confidence_lower,
                confidence_upper=row.confidence_upper,
                r_squared=row.r_squared,
                algorithm=row.algorithm,
            )
            for row in result.scalars().all()
        ]


def _anomaly_from_row(row: AnalyticsAnomaly) -> Anomaly:
    return Anomaly(
        id=str(row.anomaly_id),
        tenant_id=str(row.tenant_id),
        metric_name=MetricName(row.metric_name),
        timestamp=row.observed_at,
        observed_value=float(row.observed_value),
        baseline_mean=float(row.baseline_mean),
        baseline_stddev=float(row.baseline_stddev),
        z_score=float(row.z_score),
        severity=Severity(row.severity),
        anomaly_type=AnomalyType(row.anomaly_type),
        variance_percent=row.variance_percent,
        status=AnomalyStatus(row.status),
        detected_at=row.detected_at,
        alerted_at=row.alerted_at,
    )


class SqlAnomalyRepository(AnomalyRepository):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def exists(self, tenant_id: str, metric_name: MetricName, timestamp: datetime) -> bool:
        result = await self.db.execute(
            select(AnalyticsAnomaly.anomaly_id)
            .where(
                AnalyticsAnomaly.tenant_id == _as_uuid(tenant_id),
                AnalyticsAnomaly.metric_name == MetricName(metric_name).value,
                AnalyticsAnomaly.observed_at == timestamp,
            )
            .limit(1)
        )
        return result.first() is not None

    async def add_all(self, anomalies: Sequence[Anomaly]) -> None:
        if not anomalies:
            return
        for anomaly in anomalies:
            self.db.add(
                AnalyticsAnomaly(
                    anomaly_id=_as_uuid(anomaly.id),
                    tenant_id=_as_uuid(anomaly.tenant_id),
                    metric_name=anomaly.metric_name.value,
                    observed_at=anomaly.timestamp,
                    observed_value=anomaly.observed_value,
                    baseline_mean=anomaly.baseline_mean,
                    baseline_stddev=anomaly.baseline_stddev,
                    z_score=anomaly.z_score,
                    severity=anomaly.severity.value,
                    anomaly_type=anomaly.anomaly_type.value,
                    variance_percent=anomaly.variance_percent,
                    status=anomaly.status.value,
                    detected_at=anomaly.detected_at,
                )
            )
        await self.db.commit()

    async def get(self, anomaly_id: str) -> Anomaly | None:
        row = await self.db.get(AnalyticsAnomaly, _as_uuid(anomaly_id))
        return _anomaly_from_row(row) if row is not None else None

    async def mark_alerted(self, tenant_id: str, anomaly_id: str, alerted_at: datetime) -> bool:
        result = await self.db.execute(
            select(AnalyticsAnomaly).where(
                AnalyticsAnomaly.anomaly_id == _as_uuid(anomaly_id),
                AnalyticsAnomaly.tenant_id == _as_uuid(tenant_id),
            )
        )
        row = result.scalar_one_or_none()
        if row is None or row.status != AnomalyStatus.OPEN.value:
            return False
        row.status = AnomalyStatus.ALERTED.value
        row.alerted_at = alerted_at
        await self.db.commit()
        return True

    async def list_for_tenant(self, tenant_id: str, severity: Severity | None = None) -> list[Anomaly]:
        query = select(AnalyticsAnomaly).where(AnalyticsAnomaly.tenant_id == _as_uuid(tenant_id))
        if severity is not None:
            query = query.where(AnalyticsAnomaly.severity == Severity(severity).value)
        result = await self.db.execute(query.order_by(AnalyticsAnomaly.observed_at.desc()))
        return [_anomaly_from_row(row) for row in result.scalars().all()]


class SqlPreferenceRepository(PreferenceRepository):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def enabled_for_tenant(self, tenant_id: str) -> list[UserPreference]:
        result = await self.db.execute(
            select(AnalyticsUserPreference)
            .where(
                AnalyticsUserPreference.tenant_id == _as_uuid(tenant_id),
                AnalyticsUserPreference.email_notifications_enabled.is_(True),
            )
            .order_by(AnalyticsUserPreference.created_at.asc(), AnalyticsUserPreference.preference_id.asc())
        )
        return [
            UserPreference(
                preference_id=str(row.preference_id),
                tenant_id=str(row.tenant_id),
                user_id=str(row.user_id) if row.user_id is not None else None,
                email_notifications_enabled=bool(row.email_notifications_enabled),
                severity_filter=parse_severity_filter(row.notification_severity_filter),
            )
            for row in result.scalars().all()
        ]


def _contact_from_row(row: User) -> UserContact:
    return UserContact(
        user_id=str(row.user_id),
        tenant_id=str(row.tenant_id),
        email=row.email,
        is_active=bool(row.is_active),
    )


class SqlUserDirectory(UserDirectory):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, tenant_id: str, user_id: str) -> UserContact | None:
        result = await self.db.execute(
            select(User).where(User.user_id == _as_uuid(user_id), User.tenant_id == _as_uuid(tenant_id))
        )
        row = result.scalar_one_or_none()
        return _contact_from_row(row) if row is not None else None

    async def has_capability(self, tenant_id: str, user_id: str, capability: str) -> bool:
        result = await self.db.execute(
            select(UserCapability.capability_id)
            .where(
                UserCapability.tenant_id == _as_uuid(tenant_id),
                UserCapability.user_id == _as_uuid(user_id),
                UserCapability.capability == capability,
            )
            .limit(1)
        )
        return result.first() is not None

    async def users_with_capability(self, tenant_id: str, capability: str) -> list[UserContact]:
        result = await self.db.execute(
            select(User)
            .join(UserCapability, UserCapability.user_id == User.user_id)
            .where(
                User.tenant_id == _as_uuid(tenant_id),
                UserCapability.tenant_id == _as_uuid(tenant_id),
                UserCapability.capability == capability,
            )
            .order_by(User.created_at.asc(), User.user_id.asc())
        )
        return [_contact_from_row(row) for row in result.scalars().unique().all()]


class SqlTenantDirectory(TenantDirectory):
    def __init__(self, db: AsyncSession, statuses: Iterable[str] = DEFAULT_ACTIVE_STATUSES):
        self.db = db
        self.statuses = tuple(statuses)

    async def active_tenant_ids(self) -> list[str]:
        result = await self.db.execute(
            select(Tenant.tenant_id).where(Tenant.status.in_(self.statuses)).order_by(Tenant.created_at.asc())
        )
        return [str(row.tenant_id) for row in result.all()]
