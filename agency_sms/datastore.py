"""Schema-aware Airtable datastore with an in-memory fallback."""

from __future__ import annotations

import itertools
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from pyairtable import Api

from agency_sms.config import settings
from agency_sms.runtime import get_logger, iso_now, retry
from agency_sms.schema import (
    AGENCIES_TABLE,
    AGENTS_TABLE,
    CONVERSATIONS_TABLE,
    DEALS_TABLE,
    MESSAGES_TABLE,
)

logger = get_logger(__name__)

_CONDITION = re.compile(r"\{([^}]+)\}\s*=\s*(?:'((?:[^'\\]|\\.)*)'|(\d+))")


class InMemoryTable:
    """Minimal Airtable drop-in replacement used for local runs and tests."""

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, Dict[str, Any]] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, fields: Dict[str, Any]):
        with self._lock:
            record_id = f"rec_{self.name.lower()}_{next(self._sequence)}"
            record = {"id": record_id, "createdTime": iso_now(), "fields": dict(fields)}
            self._records[record_id] = record
            return _copy(record)

    def update(self, record_id: str, fields: Dict[str, Any]):
        with self._lock:
            if record_id not in self._records:
                raise KeyError(f"Unknown record id {record_id} in {self.name}")
            self._records[record_id]["fields"].update(fields)
            return _copy(self._records[record_id])

    def get(self, record_id: str):
        with self._lock:
            record = self._records.get(record_id)
            return _copy(record) if record else None

    def delete(self, record_id: str):
        with self._lock:
            if record_id not in self._records:
                raise KeyError(f"Unknown record id {record_id} in {self.name}")
            del self._records[record_id]
            return {"id": record_id, "deleted": True}

    def all(self, **kwargs):
        with self._lock:
            records = [_copy(rec) for rec in self._records.values()]
        formula = kwargs.get("formula")
        max_records = kwargs.get("max_records")
        if formula:
            records = [rec for rec in records if _formula_match(rec, formula)]
        if max_records is not None:
            records = records[: int(max_records)]
        return records


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(record)
    out["fields"] = dict(record.get("fields", {}))
    return out


def _formula_match(record: Dict[str, Any], formula: str) -> bool:
    """Evaluate the AND-of-equalities subset produced by ``match_formula``."""
    matches = _CONDITION.findall(formula)
    if not matches:
        return False
    fields = record.get("fields", {})
    for field_name, quoted, numeric in matches:
        value = fields.get(field_name)
        if numeric:
            if int(bool(value)) != int(numeric):
                return False
            continue
        expected = re.sub(r"\\(.)", r"\1", quoted)
        if value is None or str(value) != expected:
            return False
    return True


def _quote(value: str) -> str:
    return "'" + str(value).replace("\\", "\\\\").replace("'", "\\'") + "'"


def match_formula(conditions: Dict[str, Any]) -> str:
    """
    Build an Airtable formula requiring every field to equal its value.

    Booleans render as checkbox comparisons ({Field}=1 / {Field}=0); everything
    else is compared as a string.
    """
    parts = []
    for field_name, value in conditions.items():
        if isinstance(value, bool):
            parts.append(f"{{{field_name}}}={int(value)}")
        else:
            parts.append(f"{{{field_name}}}={_quote(value)}")
    if len(parts) == 1:
        return parts[0]
    return f"AND({','.join(parts)})"


@dataclass
class TableHandle:
    table: Any
    in_memory: bool
    base_id: Optional[str]
    table_name: str
    last_error: Optional[Dict[str, Any]] = None


# ============================================================
# CONNECTOR
# ============================================================


class DataConnector:
    """Lazy pyairtable connector with in-memory fallback."""

    def __init__(self) -> None:
        self._tables: Dict[str, TableHandle] = {}
        self._lock = threading.Lock()
        self._api: Optional[Api] = None

    def _table(self, table_name: str) -> TableHandle:
        with self._lock:
            if table_name in self._tables:
                return self._tables[table_name]

            s = settings()
            if s.persistent_store:
                if self._api is None:
                    self._api = Api(s.AIRTABLE_API_KEY)
                handle = TableHandle(self._api.table(s.AIRTABLE_BASE_ID, table_name), False, s.AIRTABLE_BASE_ID, table_name)
            else:
                handle = TableHandle(InMemoryTable(table_name), True, None, table_name)
            self._tables[table_name] = handle
            return handle

    @property
    def in_memory(self) -> bool:
        return not settings().persistent_store

    def conversations(self) -> TableHandle:
        return self._table(CONVERSATIONS_TABLE.name())

    def messages(self) -> TableHandle:
        return self._table(MESSAGES_TABLE.name())

    def deals(self) -> TableHandle:
        return self._table(DEALS_TABLE.name())

    def agents(self) -> TableHandle:
        return self._table(AGENTS_TABLE.name())

    def agencies(self) -> TableHandle:
        return self._table(AGENCIES_TABLE.name())


CONNECTOR = DataConnector()


# ============================================================
# LOW LEVEL HELPERS
# ============================================================


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in (payload or {}).items() if v not in (None, "", [], {}, ())}


def _log_airtable_exception(handle: TableHandle, exc: Exception, action: str) -> None:
    response = getattr(exc, "response", None)
    payload: Dict[str, Any] = {"action": action, "error": str(exc), "timestamp": iso_now()}
    if response is not None:
        status = getattr(response, "status_code", "unknown")
        payload.update({"status": status, "body": getattr(response, "text", "")})
        logger.error("Airtable %s failed [%s] status=%s body=%s", action, handle.table_name, status, payload["body"])
    else:
        logger.error("Airtable %s failed [%s]: %s", action, handle.table_name, exc)
    handle.last_error = payload


_RETRYABLE = (requests.exceptions.ConnectionError, requests.exceptions.Timeout, ConnectionResetError)

# Writes retry twice with 0.6s then 1.2s backoff.
WRITE_RETRIES = 2
WRITE_BASE_DELAY = 0.6
WRITE_RETRY_BUDGET_SEC = sum(WRITE_BASE_DELAY * 2**n for n in range(WRITE_RETRIES))


# ============================================================
# SAFE WRAPPERS
# ============================================================


def safe_all(handle: TableHandle, **kwargs) -> List[Dict[str, Any]]:
    try:
        return retry(lambda: list(handle.table.all(**kwargs)), retries=2, base_delay=0.5, exceptions=_RETRYABLE, logger=logger)
    except Exception as exc:
        _log_airtable_exception(handle, exc, "all")
        return []


def safe_get(handle: TableHandle, record_id: str) -> Optional[Dict[str, Any]]:
    if not record_id:
        return None
    try:
        return handle.table.get(record_id)
    except KeyError:
        return None
    except requests.exceptions.HTTPError as exc:
        if getattr(exc.response, "status_code", None) == 404:
            return None
        _log_airtable_exception(handle, exc, "get")
        return None
    except Exception as exc:
        _log_airtable_exception(handle, exc, "get")
        return None


def safe_create(handle: TableHandle, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    body = _compact(fields)
    if not body:
        return None
    try:
        return retry(lambda: handle.table.create(body), retries=WRITE_RETRIES, base_delay=WRITE_BASE_DELAY, exceptions=_RETRYABLE, logger=logger)
    except Exception as exc:
        _log_airtable_exception(handle, exc, "create")
        return None


def safe_update(handle: TableHandle, record_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not record_id or not fields:
        return None
    try:
        return retry(lambda: handle.table.update(record_id, fields), retries=WRITE_RETRIES, base_delay=WRITE_BASE_DELAY, exceptions=_RETRYABLE, logger=logger)
    except Exception as exc:
        _log_airtable_exception(handle, exc, "update")
        return None


def safe_delete(handle: TableHandle, record_id: str) -> bool:
    if not record_id:
        return False
    try:
        handle.table.delete(record_id)
        return True
    except Exception as exc:
        _log_airtable_exception(handle, exc, "delete")
        return False


# ============================================================
# PUBLIC HELPERS
# ============================================================


def reset_state():
    with CONNECTOR._lock:
        CONNECTOR._tables.clear()
        CONNECTOR._api = None
    logger.info("🧹 Datastore state and caches cleared.")
