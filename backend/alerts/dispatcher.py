"""
Alert Dispatcher — deliver one anomaly to every resolved recipient.

Unit of work for the ``workers.notifications.send_anomaly_alert`` task. The task
passes only the anomaly id; current state is always re-read here.

Outcomes:
  FATAL      id can never resolve (malformed)            → no retry
  SKIP       anomaly no longer exists                    → no retry
  RETRYABLE  load/resolution failed, or every delivery
             failed transiently                          → job-level retry
  SUCCESS    otherwise, even when some recipients failed

A soft time limit raised mid-dispatch is never absorbed as a per-recipient
failure; it propagates so the task abandons the attempt and retries it.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime

import structlog
from celery.exceptions import SoftTimeLimitExceeded

from alerts.email import Mailer, build_anomaly_summary, classify_send_error
from alerts.ledger import DeliveryLedger
from alerts.preferences import PreferenceResolver
from analytics.repositories import AnomalyRepository
from analytics.types import DeliveryResult, DeliveryStatus, JobOutcome, JobResult, NotificationAttempt


def unique_recipients(addresses: list[str]) -> list[str]:
    """Case-insensitive de-duplication, first occurrence wins."""
    seen: set[str] = set()
    ordered: list[str] = []
    for address in addresses:
        key = address.strip().lower()
        if key and key not in seen:
            seen.add(key)
            ordered.append(address.strip())
    return ordered


class AlertDispatcher:
    def __init__(
        self,
        anomaly_repository: AnomalyRepository,
        resolver: PreferenceResolver,
        mailer: Mailer,
        *,
        ledger: DeliveryLedger | None = None,
        dashboard_url: str = "",
        clock: Callable[[], datetime] = datetime.utcnow,
        logger=None,
    ):
        self.anomaly_repository = anomaly_repository
        self.resolver = resolver
        self.mailer = mailer
        self.ledger = ledger
        self.dashboard_url = dashboard_url
        self.clock = clock
        self.logger = logger or structlog.get_logger()

    def _already_delivered(self, anomaly_id: str, recipient: str) -> bool:
        if self.ledger is None:
            return False
        try:
            return self.ledger.already_delivered(anomaly_id, recipient)
        except SoftTimeLimitExceeded:
            raise
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("alert_dispatch.ledger_read_failed", anomaly_id=anomaly_id, error=str(exc))
            return False

    def _record_delivery(self, anomaly_id: str, recipient: str) -> None:
        if self.ledger is None:
            return
        try:
            self.ledger.record_delivery(anomaly_id, recipient)
        except SoftTimeLimitExceeded:
            raise
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("alert_dispatch.ledger_write_failed", anomaly_id=anomaly_id, error=str(exc))

    def _deliver(self, anomaly_id: str, recipient: str, summary) -> NotificationAttempt:
        if self._already_delivered(anomaly_id, recipient):
            result = DeliveryResult(DeliveryStatus.ALREADY_DELIVERED)
        else:
            try:
                result = self.mailer.send(recipient, summary)
            except SoftTimeLimitExceeded:
                raise
            except Exception as exc:  # noqa: BLE001
                result = classify_send_error(exc)

        attempt = NotificationAttempt(
            anomaly_id=anomaly_id,
            recipient_address=recipient,
            outcome=result.status,
            attempted_at=self.clock(),
            detail=result.detail,
        )
        if result.status == DeliveryStatus.SENT:
            self._record_delivery(anomaly_id, recipient)
            self.logger.info("alert_dispatch.sent", anomaly_id=anomaly_id, recipient=recipient)
        elif result.status == DeliveryStatus.ALREADY_DELIVERED:
            self.logger.info("alert_dispatch.already_delivered", anomaly_id=anomaly_id, recipient=recipient)
        else:
            self.logger.error(
                "alert_dispatch.recipient_failed",
                anomaly_id=anomaly_id,
                recipient=recipient,
                outcome=result.status.value,
                detail=result.detail,
            )
        return attempt

    async def dispatch(self, anomaly_id: str) -> JobResult:
        try:
            anomaly_id = str(uuid.UUID(str(anomaly_id)))
        except ValueError:
            self.logger.error("alert_dispatch.invalid_anomaly_id", anomaly_id=anomaly_id)
            return JobResult(JobOutcome.FATAL, reason="invalid_anomaly_id", details={"anomaly_id": anomaly_id})

        try:
            anomaly = await self.anomaly_repository.get(anomaly_id)
        except SoftTimeLimitExceeded:
            raise
        except Exception as exc:  # noqa: BLE001
            self.logger.error("alert_dispatch.load_failed", anomaly_id=anomaly_id, error=str(exc), exc_info=True)
            return JobResult(JobOutcome.RETRYABLE, reason="anomaly_load_failed", error=str(exc))

        if anomaly is None:
            self.logger.warning("alert_dispatch.anomaly_not_found", anomaly_id=anomaly_id)
            return JobResult(JobOutcome.SKIP, reason="anomaly_not_found", details={"anomaly_id": anomaly_id})

        try:
            recipients = unique_recipients(await self.resolver.resolve(anomaly))
        except SoftTimeLimitExceeded:
            raise
        except Exception as exc:  # noqa: BLE001
            self.logger.error(
                "alert_dispatch.resolution_failed",
                anomaly_id=anomaly_id,
                tenant_id=anomaly.tenant_id,
                error=str(exc),
                exc_info=True,
            )
            return JobResult(JobOutcome.RETRYABLE, reason="recipient_resolution_failed", error=str(exc))

        summary = build_anomaly_summary(anomaly, self.dashboard_url)
        attempts = [self._deliver(anomaly_id, recipient, summary) for recipient in recipients]

        sent = sum(1 for a in attempts if a.outcome == DeliveryStatus.SENT)
        skipped = sum(1 for a in attempts if a.outcome == DeliveryStatus.ALREADY_DELIVERED)
        transient = sum(1 for a in attempts if a.outcome == DeliveryStatus.TRANSIENT_FAILURE)
        permanent = sum(1 for a in attempts if a.outcome == DeliveryStatus.PERMANENT_FAILURE)

        if sent or skipped:
            try:
                await self.anomaly_repository.mark_alerted(anomaly.tenant_id, anomaly_id, self.clock())
            except SoftTimeLimitExceeded:
                raise
            except Exception as exc:  # noqa: BLE001
                # Deliveries already went out; a failed status update is not retried.
                self.logger.error("alert_dispatch.mark_alerted_failed", anomaly_id=anomaly_id, error=str(exc))

        details = {
            "anomaly_id": anomaly_id,
            "tenant_id": anomaly.tenant_id,
            "recipients": len(recipients),
            "sent": sent,
            "failed": transient + permanent,
            "transient_failures": transient,
            "permanent_failures": permanent,
            "skipped_already_delivered": skipped,
        }
        self.logger.info("alert_dispatch.completed", **details)

        if transient and not (sent or skipped or permanent):
            return JobResult(JobOutcome.RETRYABLE, reason="all_deliveries_failed_transiently", details=details)
        if not recipients:
            return JobResult(JobOutcome.SUCCESS, reason="no_recipients", details=details)
        return JobResult(JobOutcome.SUCCESS, details=details)
