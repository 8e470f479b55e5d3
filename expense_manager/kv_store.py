from __future__ import annotations

import json
import logging
import threading
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Protocol

from expense_manager.errors import StorageFailure
from expense_manager.store import (
    DATE_FIELDS,
    DATETIME_FIELDS,
    DECIMAL_FIELDS,
    Query,
    Record,
    apply_query,
    check_kind,
)

logger = logging.getLogger(__name__)

SEQUENCE_PREFIX = "seq:"


class KeyValueBackend(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def get_by_prefix(self, prefix: str) -> list[str]: ...


class MemoryBackend:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def get_by_prefix(self, prefix: str) -> list[str]:
        with self._lock:
            return [value for key, value in self._data.items() if key.startswith(prefix)]


class KeyValueStore:
    def __init__(self, backend: KeyValueBackend | None = None) -> None:
        self.backend = backend or MemoryBackend()
        self._sequence_lock = threading.Lock()

    def init_schema(self) -> None:
        return None

    def get(self, kind: str, record_id: int) -> Record | None:
        raw = self._call(self.backend.get, _key(kind, record_id))
        return decode_record(raw) if raw is not None else None

    def find(self, kind: str, query: Query | None = None) -> list[Record]:
        return apply_query(self._scan(kind), query or Query())

    def count(self, kind: str, query: Query | None = None) -> int:
        unpaged = query or Query()
        return len(apply_query(self._scan(kind), Query(filters=unpaged.filters, search=unpaged.search)))

    def insert(self, kind: str, values: Mapping[str, Any]) -> Record:
        record = dict(values)
        record["id"] = self._next_id(kind)
        self._call(self.backend.set, _key(kind, record["id"]), encode_record(record))
        return decode_record(encode_record(record))

    def update(self, kind: str, record_id: int, values: Mapping[str, Any]) -> Record | None:
        existing = self.get(kind, record_id)
        if existing is None:
            return None
        updated = {**existing, **values, "id": record_id}
        self._call(self.backend.set, _key(kind, record_id), encode_record(updated))
        return decode_record(encode_record(updated))

    def delete(self, kind: str, record_id: int) -> bool:
        key = _key(kind, record_id)
        if self._call(self.backend.get, key) is None:
            return False
        self._call(self.backend.delete, key)
        return True

    def detach(self, kind: str, field_name: str, value: int) -> int:
        detached = 0
        for record in self._scan(kind):
            if record.get(field_name) != value:
                continue
            record[field_name] = None
            self._call(self.backend.set, _key(kind, record["id"]), encode_record(record))
            detached += 1
        return detached

    def _scan(self, kind: str) -> list[Record]:
        prefix = f"{check_kind(kind)}:"
        return [decode_record(raw) for raw in self._call(self.backend.get_by_prefix, prefix)]

    def _next_id(self, kind: str) -> int:
        key = f"{SEQUENCE_PREFIX}{check_kind(kind)}"
        with self._sequence_lock:
            current = self._call(self.backend.get, key)
            next_id = int(current) + 1 if current is not None else 1
            self._call(self.backend.set, key, str(next_id))
        return next_id

    def _call(self, operation, *args):
        try:
            return operation(*args)
        except StorageFailure:
            raise
        except Exception as exc:
            logger.exception("Key-value backend call %s failed", getattr(operation, "__name__", operation))
            raise StorageFailure("Storage error.") from exc


def encode_record(record: Mapping[str, Any]) -> str:
    return json.dumps(record, default=_encode_value, sort_keys=True)


def decode_record(raw: str) -> Record:
    record = json.loads(raw)
    for name, value in record.items():
        if value is None:
            continue
        if name in DECIMAL_FIELDS:
            record[name] = Decimal(value)
        elif name in DATE_FIELDS:
            record[name] = date.fromisoformat(value)
        elif name in DATETIME_FIELDS:
            record[name] = datetime.fromisoformat(value)
    return record


def _encode_value(value: Any) -> str:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Cannot encode {type(value).__name__}")


def _key(kind: str, record_id: int) -> str:
    return f"{check_kind(kind)}:{record_id}"
