"""Airtable-backed document store with an in-memory drop-in for local runs and tests."""

from __future__ import annotations

import asyncio
import itertools
import json
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar

import requests

from smsbridge.config import settings
from smsbridge.runtime import get_logger

from pyairtable import Api

logger = get_logger(__name__)
T = TypeVar("T")

CONSUMERS = "consumers"
ACTION_INSTANCES = "actioninstances"
DECISION_INSTANCES = "decisioninstances"
FEEDER_INSTANCES = "feederinstances"
SMS_JOBS = "smsjobs"
SMS_LOGS = "smslogs"
SMS_REPLIES = "smsreplies"
LINK_HITS = "linkhits"

COLLECTIONS = (
    CONSUMERS,
    ACTION_INSTANCES,
    DECISION_INSTANCES,
    FEEDER_INSTANCES,
    SMS_JOBS,
    SMS_LOGS,
    SMS_REPLIES,
    LINK_HITS,
)

_FORMULA_TERM = re.compile(r"\{([^}]+)\}\s*=\s*'((?:[^'\\]|\\.)*)'")


class InMemoryTable:
    """Minimal Airtable drop-in replacement used for local runs and tests."""

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, Dict[str, Any]] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, fields: Dict[str, Any]):
        with self._lock:
            record_id = f"rec_{self.name}_{next(self._sequence)}"
            record = {"id": record_id, "createdTime": time.time(), "fields": dict(fields)}
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
            self._records.pop(record_id, None)
            return {"id": record_id, "deleted": True}

    def all(self, **kwargs):
        with self._lock:
            records = [_copy(rec) for rec in self._records.values()]
        formula = kwargs.get("formula")
        if formula:
            records = [rec for rec in records if _formula_match(rec, formula)]
        for key in reversed(kwargs.get("sort") or []):
            desc = key.startswith("-")
            name = key.lstrip("-")
            records.sort(key=lambda r, n=name: _sort_key(r["fields"].get(n)), reverse=desc)
        max_records = kwargs.get("max_records")
        if max_records is not None:
            records = records[: int(max_records)]
        return records


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": record["id"], "createdTime": record.get("createdTime"), "fields": dict(record["fields"])}


def _sort_key(value: Any):
    return (value is None, "" if value is None else str(value))


def _formula_match(record: Dict[str, Any], formula: str) -> bool:
    matches = _FORMULA_TERM.findall(formula)
    if not matches:
        return False
    fields = record.get("fields", {})
    for field_name, expected in matches:
        expected = expected.replace("\\'", "'")
        value = fields.get(field_name)
        if value is None or str(value) != expected:
            return False
    return True


def _quote(value: Any) -> str:
    return "'" + str(value).replace("\\", "\\\\").replace("'", "\\'") + "'"


def match_formula(**fields: Any) -> Optional[str]:
    """Build an Airtable equality formula: ``AND({a}='x',{b}='y')``."""
    terms = [f"{{{name}}}={_quote(value)}" for name, value in fields.items() if value is not None]
    if not terms:
        return None
    if len(terms) == 1:
        return terms[0]
    return "AND(" + ",".join(terms) + ")"


@dataclass
class TableHandle:
    table: Any
    in_memory: bool
    base_id: Optional[str]
    table_name: str


# ============================================================
# CONNECTOR
# ============================================================


class DataConnector:
    """Lazy pyairtable connector with in-memory fallback."""

    def __init__(self) -> None:
        self._tables: Dict[str, TableHandle] = {}
        self._lock = threading.Lock()

    def _table(self, table_name: str) -> TableHandle:
        with self._lock:
            if table_name in self._tables:
                return self._tables[table_name]
            handle = self._open(table_name)
            self._tables[table_name] = handle
            return handle

    def _open(self, table_name: str) -> TableHandle:
        if os.getenv("SMS_FORCE_IN_MEMORY", "").lower() in {"1", "true", "yes"}:
            return TableHandle(InMemoryTable(table_name), True, None, table_name)

        cfg = settings()
        if cfg.AIRTABLE_API_KEY and cfg.AIRTABLE_BASE_ID:
            try:
                table = Api(cfg.AIRTABLE_API_KEY).table(cfg.AIRTABLE_BASE_ID, table_name)
                return TableHandle(table, False, cfg.AIRTABLE_BASE_ID, table_name)
            except Exception:
                logger.warning("Falling back to in-memory table for %s", table_name, exc_info=True)

        logger.warning("Airtable not configured; %s is held in memory", table_name)
        return TableHandle(InMemoryTable(table_name), True, None, table_name)

    def consumers(self) -> TableHandle:
        return self._table(CONSUMERS)

    def action_instances(self) -> TableHandle:
        return self._table(ACTION_INSTANCES)

    def decision_instances(self) -> TableHandle:
        return self._table(DECISION_INSTANCES)

    def feeder_instances(self) -> TableHandle:
        return self._table(FEEDER_INSTANCES)

    def sms_jobs(self) -> TableHandle:
        return self._table(SMS_JOBS)

    def sms_logs(self) -> TableHandle:
        return self._table(SMS_LOGS)

    def sms_replies(self) -> TableHandle:
        return self._table(SMS_REPLIES)

    def link_hits(self) -> TableHandle:
        return self._table(LINK_HITS)


CONNECTOR = DataConnector()


# ============================================================
# RECORD HELPERS
# ============================================================


def _with_retry(handle: TableHandle, action: str, func: Callable[[], T]) -> T:
    for attempt in range(3):
        try:
            return func()
        except (requests.exceptions.ConnectionError, ConnectionResetError) as exc:
            if attempt == 2:
                raise
            logger.warning("Airtable connection reset [%s.%s] retry %s: %s", handle.table_name, action, attempt + 1, exc)
            time.sleep((2**attempt) * 0.5)
        except Exception as exc:
            if "429" in str(exc) and attempt < 2:
                time.sleep((2**attempt) * 0.5)
                continue
            logger.error("Airtable %s failed on %s: %s", action, handle.table_name, exc)
            raise
    raise RuntimeError("unreachable")  # pragma: no cover


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None}


def list_records(handle: TableHandle, **kwargs) -> List[Dict[str, Any]]:
    kwargs = {k: v for k, v in kwargs.items() if v is not None}
    return list(_with_retry(handle, "all", lambda: handle.table.all(**kwargs)))


def first_record(handle: TableHandle, **kwargs) -> Optional[Dict[str, Any]]:
    records = list_records(handle, max_records=1, **kwargs)
    return records[0] if records else None


def get_record(handle: TableHandle, record_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not record_id:
        return None
    if handle.in_memory:
        return handle.table.get(record_id)
    try:
        return _with_retry(handle, "get", lambda: handle.table.get(record_id))
    except requests.exceptions.HTTPError as exc:
        if exc.response is not None and exc.response.status_code == 404:
            return None
        raise


def create_record(handle: TableHandle, fields: Dict[str, Any]) -> Dict[str, Any]:
    body = _compact(fields)
    return _with_retry(handle, "create", lambda: handle.table.create(body))


def update_record(handle: TableHandle, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    return _with_retry(handle, "update", lambda: handle.table.update(record_id, fields))


def delete_record(handle: TableHandle, record_id: str) -> None:
    _with_retry(handle, "delete", lambda: handle.table.delete(record_id))


def dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"), default=str)


def load_json(value: Any, default: Any = None) -> Any:
    if value in (None, ""):
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Discarding malformed JSON field: %r", value)
        return default


async def run_io(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store call off the event loop."""
    return await asyncio.to_thread(func, *args, **kwargs)


def reset_state() -> None:
    CONNECTOR._tables.clear()
    logger.debug("Datastore state and caches cleared.")

