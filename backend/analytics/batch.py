"""Multi-tenant batch runner with per-tenant failure isolation."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable

import structlog
from celery.exceptions import SoftTimeLimitExceeded

from analytics.types import TenantBatchResult

logger = structlog.get_logger()

TenantHandler = Callable[[str], Awaitable[dict[str, int]]]


async def run_tenant_batch(job_type: str, tenant_ids: Iterable[str], handler: TenantHandler, log=None) -> TenantBatchResult:
    """
    Await ``handler(tenant_id)`` for every tenant.

    The handler returns counters that are summed into the batch totals. An
    exception from one tenant is logged with its id and recorded; the loop
    moves on to the next tenant. A soft time limit ends the whole batch.
    """
    log = log or logger
    result = TenantBatchResult(job_type=job_type)
    for tenant_id in tenant_ids:
        result.tenants_processed += 1
        try:
            counts = await handler(tenant_id)
        except SoftTimeLimitExceeded:
            raise
        except Exception as exc:  # noqa: BLE001
            result.failed_tenant_ids.append(tenant_id)
            result.errors[tenant_id] = str(exc)
            log.error(f"{job_type}.tenant_failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
            continue
        result.succeeded_tenant_ids.append(tenant_id)
        for key, amount in (counts or {}).items():
            result.add_total(key, amount)
    return result
