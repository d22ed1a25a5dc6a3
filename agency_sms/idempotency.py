"""
Atomic compare-and-insert claims.

Airtable has no unique constraints, so the engine keeps its uniqueness keys
(active conversation per phone, one automated message per trigger run, one
approval per draft) in Redis using ``SET key value NX``. An in-process store
with the same semantics backs in-memory mode.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple

import redis

from agency_sms.config import settings
from agency_sms.errors import ConfigurationError
from agency_sms.runtime import get_logger

logger = get_logger(__name__)

PENDING = "pending"


class ClaimStore:
    """Interface shared by the Redis and in-memory stores."""

    def claim(self, key: str, value: str = PENDING, ttl: Optional[int] = None) -> bool:
        """Insert ``key`` if absent. True when this caller now holds it."""
        raise NotImplementedError

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    def release(self, key: str) -> None:
        raise NotImplementedError


class RedisClaimStore(ClaimStore):
    def __init__(self, client: "redis.Redis", prefix: str = "agency_sms:") -> None:
        self.r = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, tls: bool = True) -> "RedisClaimStore":
        if tls and url.startswith("redis://"):
            url = "rediss://" + url[len("redis://"):]
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def claim(self, key: str, value: str = PENDING, ttl: Optional[int] = None) -> bool:
        return bool(self.r.set(self.prefix + key, value, nx=True, ex=ttl))

    def get(self, key: str) -> Optional[str]:
        return self.r.get(self.prefix + key)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self.r.set(self.prefix + key, value, ex=ttl)

    def release(self, key: str) -> None:
        self.r.delete(self.prefix + key)


class MemoryClaimStore(ClaimStore):
    """Process-local store; correct only while a single process owns the data."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[key]
            return None
        return value

    @staticmethod
    def _expiry(ttl: Optional[int]) -> Optional[float]:
        return time.monotonic() + ttl if ttl else None

    def claim(self, key: str, value: str = PENDING, ttl: Optional[int] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl))
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expiry(ttl))

    def release(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


def build_claim_store() -> ClaimStore:
    """
    Pick the claim store for the configured datastore.

    A persistent datastore without Redis would silently lose every uniqueness
    guarantee across processes, so that combination is refused.
    """
    s = settings()
    if s.REDIS_URL:
        logger.info("Using Redis claim store")
        return RedisClaimStore.from_url(s.REDIS_URL, tls=s.REDIS_TLS)
    if s.persistent_store:
        raise ConfigurationError("REDIS_URL is required when the Airtable datastore is configured")
    logger.info("Using in-memory claim store")
    return MemoryClaimStore()


class TriggerRunLedger:
    """Compare-and-insert ledger over (deal_id, trigger_type, period_key)."""

    # Period key for triggers that fire at most once per deal.
    ONCE = "once"

    def __init__(self, store: ClaimStore, ttl: Optional[int] = None) -> None:
        self.store = store
        self.ttl = ttl

    @staticmethod
    def key(deal_id: str, trigger_type: str, period_key: str) -> str:
        return f"trigger:{deal_id}:{trigger_type}:{period_key}"

    def _ttl(self, period_key: str) -> Optional[int]:
        return None if period_key == self.ONCE else self.ttl

    def claim(self, deal_id: str, trigger_type: str, period_key: str) -> bool:
        return self.store.claim(self.key(deal_id, trigger_type, period_key), ttl=self._ttl(period_key))

    def record(self, deal_id: str, trigger_type: str, period_key: str, message_id: str) -> None:
        self.store.set(self.key(deal_id, trigger_type, period_key), message_id, ttl=self._ttl(period_key))

    def release(self, deal_id: str, trigger_type: str, period_key: str) -> None:
        self.store.release(self.key(deal_id, trigger_type, period_key))

    def holder(self, deal_id: str, trigger_type: str, period_key: str) -> Optional[str]:
        """Message id recorded for the run, PENDING while in flight, None if unclaimed."""
        return self.store.get(self.key(deal_id, trigger_type, period_key))
