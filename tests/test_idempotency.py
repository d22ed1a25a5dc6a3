import os
import time

import pytest

from agency_sms.config import settings
from agency_sms.errors import ConfigurationError
from agency_sms.idempotency import PENDING, MemoryClaimStore, TriggerRunLedger, build_claim_store


def test_claim_is_compare_and_insert():
    store = MemoryClaimStore()
    assert store.claim("k") is True
    assert store.claim("k") is False
    assert store.get("k") == PENDING

    store.set("k", "msg_1")
    assert store.get("k") == "msg_1"

    store.release("k")
    assert store.get("k") is None
    assert store.claim("k") is True


def test_claims_expire(monkeypatch):
    store = MemoryClaimStore()
    now = time.monotonic()
    monkeypatch.setattr(time, "monotonic", lambda: now)
    assert store.claim("k", ttl=10)

    monkeypatch.setattr(time, "monotonic", lambda: now + 11)
    assert store.get("k") is None
    assert store.claim("k", ttl=10)


def test_ledger_keys_and_once_period_never_expire(monkeypatch):
    store = MemoryClaimStore()
    ledger = TriggerRunLedger(store, ttl=5)
    assert ledger.key("deal1", "birthday", "2025-06-15") == "trigger:deal1:birthday:2025-06-15"

    now = time.monotonic()
    monkeypatch.setattr(time, "monotonic", lambda: now)
    assert ledger.claim("deal1", "welcome", TriggerRunLedger.ONCE)
    assert ledger.claim("deal1", "birthday", "2025-06-15")
    ledger.record("deal1", "welcome", TriggerRunLedger.ONCE, "msg_1")

    monkeypatch.setattr(time, "monotonic", lambda: now + 3600)
    assert ledger.holder("deal1", "welcome", TriggerRunLedger.ONCE) == "msg_1"
    assert ledger.holder("deal1", "birthday", "2025-06-15") is None


def test_persistent_store_without_redis_is_refused():
    os.environ["AIRTABLE_API_KEY"] = "key"
    os.environ["AIRTABLE_BASE_ID"] = "app123"
    os.environ.pop("SMS_FORCE_IN_MEMORY", None)
    settings.cache_clear()

    with pytest.raises(ConfigurationError):
        build_claim_store()


def test_in_memory_mode_uses_memory_store():
    assert isinstance(build_claim_store(), MemoryClaimStore)
