"""Keyed record store used by the importer.

The importer only needs put / put_many / get / get_all / get_by_index /
count over a handful of tables.  ``InMemoryStore`` keeps records as plain
dicts (so callers never share mutable state with the store) and
``JsonFileStore`` persists the same structure to one JSON file.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol, Union

import structlog

from .models import DailyMetric, SleepSession, Source, TimeSeries, WorkoutSession

logger = structlog.get_logger()

TABLES: dict[str, type] = {
    "sources": Source,
    "sleepSessions": SleepSession,
    "workoutSessions": WorkoutSession,
    "dailyMetrics": DailyMetric,
    "timeSeries": TimeSeries,
}

# table -> index name -> record attributes making up the key
INDEXES: dict[str, dict[str, tuple[str, ...]]] = {
    "sources": {"fileHash": ("file_hash",), "userId": ("user_id",)},
    "sleepSessions": {"userId": ("user_id",), "userId_date": ("user_id", "date")},
    "workoutSessions": {"userId": ("user_id",), "userId_date": ("user_id", "date")},
    "dailyMetrics": {"userId": ("user_id",), "userId_date": ("user_id", "date")},
    "timeSeries": {"userId": ("user_id",), "sessionId": ("session_id",)},
}


class StoreError(RuntimeError):
    """Raised when the store cannot read or write a record."""


@dataclass(frozen=True)
class KeyRange:
    """Inclusive range over an index key, e.g. ``KeyRange(("u1", "2024-01-01"), ("u1", "2024-01-31"))``."""

    lower: Any
    upper: Any

    def __contains__(self, key: Any) -> bool:
        return self.lower <= key <= self.upper


IndexQuery = Union[Any, KeyRange]


class RecordStore(Protocol):
    def put(self, table: str, record: Any) -> None: ...

    def put_many(self, table: str, records: Iterable[Any]) -> None: ...

    def get(self, table: str, record_id: str) -> Optional[Any]: ...

    def get_all(self, table: str) -> list: ...

    def get_by_index(self, table: str, index: str, query: IndexQuery) -> list: ...

    def count(self, table: str) -> int: ...


def _index_key(row: dict[str, Any], attrs: tuple[str, ...]) -> Any:
    if len(attrs) == 1:
        return row.get(attrs[0])
    return tuple(row.get(a) for a in attrs)


class InMemoryStore:
    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in TABLES}

    # --------------------------- Helpers ---------------------------

    def _table(self, table: str) -> dict[str, dict[str, Any]]:
        try:
            return self._tables[table]
        except KeyError:
            raise StoreError(f"Unknown table '{table}'") from None

    def _load(self, table: str, row: dict[str, Any]) -> Any:
        return TABLES[table].from_dict(row)

    def _commit(self) -> None:
        """Hook for persistent subclasses; called after every write."""

    # --------------------------- Contract ---------------------------

    def put(self, table: str, record: Any) -> None:
        self.put_many(table, [record])

    def put_many(self, table: str, records: Iterable[Any]) -> None:
        rows = self._table(table)
        try:
            for record in records:
                row = record.to_dict()
                rows[row["id"]] = row
        except (AttributeError, KeyError, TypeError) as e:
            raise StoreError(f"Cannot store record in '{table}': {e}") from e
        self._commit()

    def get(self, table: str, record_id: str) -> Optional[Any]:
        row = self._table(table).get(record_id)
        return self._load(table, row) if row is not None else None

    def get_all(self, table: str) -> list:
        return [self._load(table, row) for row in self._table(table).values()]

    def get_by_index(self, table: str, index: str, query: IndexQuery) -> list:
        rows = self._table(table)
        attrs = INDEXES.get(table, {}).get(index)
        if attrs is None:
            raise StoreError(f"Unknown index '{index}' on '{table}'")
        out = []
        for row in rows.values():
            key = _index_key(row, attrs)
            if isinstance(query, KeyRange):
                try:
                    hit = key in query
                except TypeError:
                    hit = False
            else:
                hit = key == (tuple(query) if isinstance(query, list) else query)
            if hit:
                out.append(self._load(table, row))
        return out

    def count(self, table: str) -> int:
        return len(self._table(table))


class JsonFileStore(InMemoryStore):
    """In-memory store mirrored to a JSON file after every write."""

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            try:
                with self.path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                raise StoreError(f"Cannot read store {self.path}: {e}") from e
            for name in TABLES:
                self._tables[name] = dict(data.get(name) or {})
            logger.info("store_loaded", path=str(self.path), **{k: len(v) for k, v in self._tables.items()})

    def _commit(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(self._tables, f, ensure_ascii=False, indent=2)
            tmp.replace(self.path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Cannot write store {self.path}: {e}") from e
