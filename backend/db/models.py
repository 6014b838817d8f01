"""
SalesPulse Database Models

Multi-tenant via tenant_id on all tables.

Tables:
  Platform (read-only to analytics — owned by the CRUD layer):
  1. tenants                      - Tenant organizations
  2. users                        - Tenant users (email recipients)
  3. user_capabilities            - Capability grants (e.g. tenant.admin)
  4. sales_orders                 - POS orders, source of daily sales metrics

  Analytics (owned by the analytics pipeline):
  5. analytics_forecasts          - Daily metric projections (upserted)
  6. analytics_anomalies          - Z-score anomalies (deduplicated)
  7. analytics_user_preferences   - Notification preferences
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# ─── 1. Tenants ────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    tenant_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (CheckConstraint("status IN ('active', 'trial', 'suspended', 'inactive')", name="ck_tenant_status"),)


# ─── 2. Users ──────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    user_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_users_tenant", "tenant_id"),)


# ─── 3. User Capabilities ──────────────────────────────────────────────────


class UserCapability(Base):
    __tablename__ = "user_capabilities"

    capability_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    user_id = Column(GUID(), ForeignKey("users.user_id"), nullable=False)
    capability = Column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", "capability", name="uq_user_capability"),
        Index("ix_user_capabilities_tenant_capability", "tenant_id", "capability"),
    )


# ─── 4. Sales Orders ───────────────────────────────────────────────────────


class SalesOrder(Base):
    __tablename__ = "sales_orders"

    order_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    total = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_sales_orders_tenant_created", "tenant_id", "created_at"),)


# ─── 5. Analytics Forecasts ────────────────────────────────────────────────


class AnalyticsForecast(Base):
    __tablename__ = "analytics_forecasts"

    forecast_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    metric_name = Column(String(50), nullable=False)
    target_date = Column(Date, nullable=False)
    predicted_value = Column(Float, nullable=False)
    confidence_lower = Column(Float)
    confidence_upper = Column(Float)
    r_squared = Column(Float)
    algorithm = Column(String(50), nullable=False)
    as_of_date = Column(Date, nullable=False)
    generated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "metric_name", "target_date", name="uq_forecast_tenant_metric_target"),
        CheckConstraint("predicted_value >= 0", name="ck_forecast_value_positive"),
    )


# ─── 6. Analytics Anomalies ────────────────────────────────────────────────


class AnalyticsAnomaly(Base):
    __tablename__ = "analytics_anomalies"

    anomaly_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    metric_name = Column(String(50), nullable=False)
    observed_at = Column(DateTime, nullable=False)
    observed_value = Column(Float, nullable=False)
    baseline_mean = Column(Float, nullable=False)
    baseline_stddev = Column(Float, nullable=False)
    z_score = Column(Float, nullable=False)
    severity = Column(String(20), nullable=False)
    anomaly_type = Column(String(20), nullable=False)
    variance_percent = Column(Float)
    status = Column(String(20), nullable=False, default="open")
    detected_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    alerted_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("tenant_id", "metric_name", "observed_at", name="uq_anomaly_tenant_metric_observed"),
        Index("ix_anomalies_tenant_status", "tenant_id", "status"),
        CheckConstraint("severity IN ('warning', 'critical')", name="ck_anomaly_severity"),
        CheckConstraint("anomaly_type IN ('spike', 'drop')", name="ck_anomaly_type"),
        CheckConstraint("status IN ('open', 'alerted')", name="ck_anomaly_status"),
    )


# ─── 7. Analytics User Preferences ─────────────────────────────────────────


class AnalyticsUserPreference(Base):
    __tablename__ = "analytics_user_preferences"

    preference_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    user_id = Column(GUID(), ForeignKey("users.user_id"), nullable=True)  # NULL = tenant-wide
    email_notifications_enabled = Column(Boolean, nullable=False, default=True)
    notification_severity_filter = Column(JSON, nullable=False, default=lambda: ["critical"])
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_preferences_tenant", "tenant_id"),)
