"""
Job-run guard for scheduled batch jobs.

Each job type moves through ``idle → running → (success | failure) → idle``.
A Redis lock keyed on the job type keeps two runs of the same type from
overlapping; a run that cannot take the lock is skipped, not queued. The lock
expires after the job's hard time limit so a killed worker cannot wedge it.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import redis
import structlog
from redis.exceptions import LockError

logger = structlog.get_logger()

LOCK_KEY_PREFIX = "analytics:job-lock"
STATE_KEY_PREFIX = "analytics:job-state"


class JobRunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


ALLOWED_TRANSITIONS = {
    JobRunState.IDLE: {JobRunState.RUNNING},
    JobRunState.RUNNING: {JobRunState.SUCCESS, JobRunState.FAILURE},
    JobRunState.SUCCESS: {JobRunState.IDLE},
    JobRunState.FAILURE: {JobRunState.IDLE},
}


def get_redis_client() -> redis.Redis:
    from core.config import get_settings

    return redis.Redis.from_url(get_settings().redis_url)


class JobRunGuard:
    def __init__(self, client: redis.Redis, job_type: str, lock_timeout: int):
        self.client = client
        self.job_type = job_type
        self.lock = client.lock(f"{LOCK_KEY_PREFIX}:{job_type}", timeout=lock_timeout, blocking=False)
        self.state = JobRunState.IDLE

    @classmethod
    def for_job(cls, job_type: str, lock_timeout: int) -> JobRunGuard:
        return cls(get_redis_client(), job_type, lock_timeout)

    def _transition(self, new_state: JobRunState, **fields: Any) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid job state transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        mapping = {"state": new_state.value, "updated_at": datetime.now(timezone.utc).isoformat()}
        mapping.update({k: str(v) for k, v in fields.items()})
        try:
            self.client.hset(f"{STATE_KEY_PREFIX}:{self.job_type}", mapping=mapping)
        except redis.RedisError as exc:
            logger.warning("scheduler.state_write_failed", job_type=self.job_type, error=str(exc))

    def run(self, fn: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        """Run ``fn`` under the job-type lock, or return a skipped summary."""
        if not self.lock.acquire(blocking=False):
            logger.info("scheduler.run_skipped", job_type=self.job_type, reason="previous_run_active")
            return {"status": "skipped", "reason": "previous_run_active", "job_type": self.job_type}

        self._transition(JobRunState.RUNNING, started_at=datetime.now(timezone.utc).isoformat())
        try:
            result = fn()
        except BaseException as exc:
            self._transition(JobRunState.FAILURE, last_error=exc)
            raise
        else:
            self._transition(JobRunState.SUCCESS, last_status=result.get("status", "success"))
            return result
        finally:
            self._release()
            self._transition(JobRunState.IDLE, finished_at=datetime.now(timezone.utc).isoformat())

    def _release(self) -> None:
        try:
            self.lock.release()
        except LockError:
            logger.warning("scheduler.lock_expired_before_release", job_type=self.job_type)
