"""
Delivery ledger — per-recipient idempotency for retried alert dispatches.

A retried dispatch job re-runs every recipient. With a ledger enabled, each
confirmed send is recorded under ``sha256(anomaly_id:recipient)`` and later
attempts for the same pair are skipped. Disabled by default
(``alert_delivery_ledger_enabled``) because it changes delivery behaviour.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod

import redis


def delivery_key(anomaly_id: str, recipient: str) -> str:
    digest = hashlib.sha256(f"{anomaly_id}:{recipient.strip().lower()}".encode("utf-8")).hexdigest()
    return f"alerts:delivered:{digest}"


class DeliveryLedger(ABC):
    @abstractmethod
    def already_delivered(self, anomaly_id: str, recipient: str) -> bool:
        ...

    @abstractmethod
    def record_delivery(self, anomaly_id: str, recipient: str) -> None:
        ...


class RedisDeliveryLedger(DeliveryLedger):
    def __init__(self, client: redis.Redis, ttl_seconds: int = 86400):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 86400) -> RedisDeliveryLedger:
        return cls(redis.Redis.from_url(redis_url), ttl_seconds=ttl_seconds)

    def already_delivered(self, anomaly_id: str, recipient: str) -> bool:
        return bool(self.client.exists(delivery_key(anomaly_id, recipient)))

    def record_delivery(self, anomaly_id: str, recipient: str) -> None:
        self.client.set(delivery_key(anomaly_id, recipient), "1", ex=self.ttl_seconds)
