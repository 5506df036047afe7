"""
Storage Backend Module

Records are JSON documents kept per table and keyed by id. Two backends:
InMemoryStorage for tests and local runs, SQLiteStorage for persistence.
Money is stored as Decimal strings, timestamps as ISO 8601.

Loan claims and status changes go through compare_and_set, a conditional
update that only applies while the stored record still holds the expected
values. Usage recording goes through insert_unique, which refuses a second
record with the same id. Both are single atomic steps in each backend.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager
import json
import sqlite3
import threading


Document = Dict[str, Any]


def _to_json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass
class StorageRecord:
    """Base for persisted records: id plus creation and update timestamps"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Document:
        """Flat document of the record's fields with JSON-safe values"""
        return {f.name: _to_json_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Document) -> 'StorageRecord':
        values = dict(data)
        for key in ('created_at', 'updated_at'):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})


def matches(document: Document, conditions: Document) -> bool:
    """True when every condition key holds the given value"""
    return all(document.get(key) == value for key, value in conditions.items())


def _encode(document: Document) -> str:
    return json.dumps(document, default=str)


class StorageInterface(ABC):
    """Table/document store used by every manager"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Document) -> None:
        """Insert or replace a record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Document]:
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a record; False when there was nothing to remove"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Document) -> List[Document]:
        """Records whose fields equal every value in filters"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    @abstractmethod
    def compare_and_set(self, table: str, record_id: str, expected: Document, updates: Document) -> bool:
        """
        Write updates to a record only if it currently holds the expected values

        Args:
            table: Table name
            record_id: Record to update
            expected: Field values the stored record must hold (None matches a null field)
            updates: Field values written when the condition holds

        Returns:
            True if the record was updated, False if it is missing or no longer matches
        """

    @abstractmethod
    def insert_unique(self, table: str, record_id: str, data: Document) -> bool:
        """Insert a record unless the id is taken; True if this call inserted it"""

    @abstractmethod
    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Group writes so they apply together or not at all

        Blocks may nest; only the outermost one commits or rolls back.
        Other threads wait until the block finishes.
        """
        self.begin_transaction()
        try:
            yield
        except Exception:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """Dict-of-dicts store guarded by one re-entrant lock"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._saved_state: Optional[Dict[str, Dict[str, Document]]] = None

    @staticmethod
    def _clone(value: Any) -> Any:
        # Callers never share a dict with the store
        return json.loads(_encode(value))

    def _table(self, table: str) -> Dict[str, Document]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Document) -> None:
        with self._lock:
            self._table(table)[record_id] = self._clone(data)

    def load(self, table: str, record_id: str) -> Optional[Document]:
        with self._lock:
            document = self._table(table).get(record_id)
            return None if document is None else self._clone(document)

    def load_all(self, table: str) -> List[Document]:
        with self._lock:
            return self._clone(list(self._table(table).values()))

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Document) -> List[Document]:
        with self._lock:
            return self._clone([d for d in self._table(table).values() if matches(d, filters)])

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._tables[table] = {}

    def compare_and_set(self, table: str, record_id: str, expected: Document, updates: Document) -> bool:
        with self._lock:
            document = self._table(table).get(record_id)
            if document is None or not matches(document, expected):
                return False
            document.update(self._clone(updates))
            return True

    def insert_unique(self, table: str, record_id: str, data: Document) -> bool:
        with self._lock:
            rows = self._table(table)
            if record_id in rows:
                return False
            rows[record_id] = self._clone(data)
            return True

    # The lock is held from begin_transaction until the matching commit/rollback

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._saved_state = self._clone(self._tables)
        self._depth += 1

    def commit(self) -> None:
        self._end_transaction(restore=False)

    def rollback(self) -> None:
        self._end_transaction(restore=True)

    def _end_transaction(self, restore: bool) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                if restore and self._saved_state is not None:
                    self._tables = self._saved_state
                self._saved_state = None
        finally:
            self._lock.release()

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    One SQLite table per record table: id primary key, JSON document, timestamps.

    Conditional updates run as a single UPDATE with json_extract conditions,
    and unique inserts rely on the primary key, so both hold across
    processes sharing the database file.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._known_tables = set()
        self._depth = 0
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row

        if self.db_path != ":memory:":
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.commit()

    def _prepare(self, table: str) -> None:
        if table in self._known_tables:
            return
        self._connection.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("
            "id TEXT PRIMARY KEY, data TEXT NOT NULL, created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )
        self._connection.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)")
        self._known_tables.add(table)

    def _run(self, table: str, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute one statement against table, committing unless inside atomic()"""
        with self._lock:
            self._prepare(table)
            cursor = self._connection.execute(sql, params)
            if self._depth == 0:
                self._connection.commit()
            return cursor

    def _documents(self, table: str) -> List[Document]:
        rows = self._run(table, f"SELECT data FROM {table} ORDER BY created_at").fetchall()
        return [json.loads(row['data']) for row in rows]

    def save(self, table: str, record_id: str, data: Document) -> None:
        now = datetime.now(timezone.utc).isoformat()
        # Keep the original created_at when replacing a record
        self._run(
            table,
            f"INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
            (record_id, _encode(data), now, now)
        )

    def load(self, table: str, record_id: str) -> Optional[Document]:
        row = self._run(table, f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Document]:
        return self._documents(table)

    def delete(self, table: str, record_id: str) -> bool:
        return self._run(table, f"DELETE FROM {table} WHERE id = ?", (record_id,)).rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        return self._run(table, f"SELECT 1 FROM {table} WHERE id = ?", (record_id,)).fetchone() is not None

    def find(self, table: str, filters: Document) -> List[Document]:
        return [d for d in self._documents(table) if matches(d, filters)]

    def count(self, table: str) -> int:
        return self._run(table, f"SELECT COUNT(*) AS n FROM {table}").fetchone()['n']

    def clear_table(self, table: str) -> None:
        self._run(table, f"DELETE FROM {table}")

    def compare_and_set(self, table: str, record_id: str, expected: Document, updates: Document) -> bool:
        if not updates:
            raise ValueError("compare_and_set requires at least one update")

        assignments = ", ".join(f"'$.{key}', json(?)" for key in updates)
        conditions = "".join(f" AND json_extract(data, '$.{key}') IS ?" for key in expected)
        params = (
            *(json.dumps(value, default=str) for value in updates.values()),
            datetime.now(timezone.utc).isoformat(),
            record_id,
            *expected.values(),
        )
        cursor = self._run(
            table,
            f"UPDATE {table} SET data = json_set(data, {assignments}), updated_at = ? WHERE id = ?{conditions}",
            params
        )
        return cursor.rowcount == 1

    def insert_unique(self, table: str, record_id: str, data: Document) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        cursor = self._run(
            table,
            f"INSERT OR IGNORE INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (record_id, _encode(data), now, now)
        )
        return cursor.rowcount == 1

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        self._end_transaction(self._connection.commit)

    def rollback(self) -> None:
        self._end_transaction(self._connection.rollback)

    def _end_transaction(self, finish) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                finish()
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Supports ``memory://`` and ``sqlite:///path.db`` URLs.
    """
    if database_url in ("memory://", ":memory:"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
