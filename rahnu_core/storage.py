"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary and weight values stored as Decimal strings.

Besides plain save/load, every backend offers the atomic primitives the custody
protocol relies on: insert-if-absent, compare-and-set update and conditional
delete. Writes accept an optional WriteGate so a caller that stops waiting can
make sure the write is never applied afterwards.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


class StorageError(Exception):
    """Raised when the underlying storage cannot complete an operation"""


class WriteAbandonedError(StorageError):
    """The caller gave up before the write committed; nothing was applied"""


class WriteGate:
    """
    One-shot commit decision shared by a write and the caller waiting on it

    The backend calls enter() immediately before making a write durable; the
    caller calls abandon() when its timeout budget runs out. Whichever comes
    first wins, so a write is either applied and awaited, or never applied.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._state: Optional[str] = None

    def enter(self) -> bool:
        """True if the write may commit, False if the caller has abandoned it"""
        with self._lock:
            if self._state is None:
                self._state = "commit"
            return self._state == "commit"

    def abandon(self) -> bool:
        """True if the write will never commit, False if it already started committing"""
        with self._lock:
            if self._state is None:
                self._state = "abandon"
            return self._state == "abandon"


def _admit(gate: Optional[WriteGate]) -> None:
    if gate is not None and not gate.enter():
        raise WriteAbandonedError("Write abandoned by its caller before commit")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _matches(record: Dict[str, Any], expected: Dict[str, Any]) -> bool:
    for key, value in expected.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any],
             gate: Optional[WriteGate] = None) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               gate: Optional[WriteGate] = None) -> bool:
        """Insert a record only if no record with this id exists. Returns True if inserted."""
        pass

    @abstractmethod
    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  changes: Dict[str, Any],
                  gate: Optional[WriteGate] = None) -> Optional[Dict[str, Any]]:
        """
        Atomically apply changes when every expected field matches the stored record.
        Returns the updated record, or None if the record is missing or did not match.
        """
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str, gate: Optional[WriteGate] = None) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def delete_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  gate: Optional[WriteGate] = None) -> bool:
        """Delete a record only while every expected field matches. Returns True if deleted."""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # JSON round trip: deep copy that also normalizes Decimal/datetime to strings
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any],
             gate: Optional[WriteGate] = None) -> None:
        with self._lock:
            self._ensure_table(table)
            record = self._copy(data)
            _admit(gate)
            self._data[table][record_id] = record

    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               gate: Optional[WriteGate] = None) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                return False
            record = self._copy(data)
            _admit(gate)
            self._data[table][record_id] = record
            return True

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  changes: Dict[str, Any],
                  gate: Optional[WriteGate] = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None or not _matches(record, expected):
                return None
            updated = dict(record)
            updated.update(self._copy(changes))
            _admit(gate)
            self._data[table][record_id] = updated
            return self._copy(updated)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str, gate: Optional[WriteGate] = None) -> bool:
        return self.delete_if(table, record_id, {}, gate)

    def delete_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  gate: Optional[WriteGate] = None) -> bool:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None or not _matches(record, expected):
                return False
            _admit(gate)
            del self._data[table][record_id]
            return True

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record)
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @contextmanager
    def _operation(self, table: str):
        """Serialize access to the connection and translate driver errors"""
        with self._lock:
            if self._connection is None:
                raise StorageError("SQLite storage is closed")
            try:
                self._ensure_table(table)
                yield self._connection
            except sqlite3.Error as e:
                self._connection.rollback()
                raise StorageError(f"SQLite operation on {table} failed: {e}") from e

    @staticmethod
    def _commit(conn: sqlite3.Connection, gate: Optional[WriteGate]) -> None:
        """Commit the pending statement, or roll it back if the caller gave up"""
        if gate is not None and not gate.enter():
            conn.rollback()
            raise WriteAbandonedError("Write abandoned by its caller before commit")
        conn.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._connection.commit()
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any],
             gate: Optional[WriteGate] = None) -> None:
        with self._operation(table) as conn:
            now = datetime.now(timezone.utc).isoformat()
            conn.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), record_id, now, now))
            self._commit(conn, gate)

    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               gate: Optional[WriteGate] = None) -> bool:
        with self._operation(table) as conn:
            now = datetime.now(timezone.utc).isoformat()
            cursor = conn.execute(f"""
                INSERT OR IGNORE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))
            self._commit(conn, gate)
            return cursor.rowcount == 1

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  changes: Dict[str, Any],
                  gate: Optional[WriteGate] = None) -> Optional[Dict[str, Any]]:
        with self._operation(table) as conn:
            row = conn.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None:
                return None
            current_json = row['data']
            record = json.loads(current_json)
            if not _matches(record, expected):
                return None

            record.update(json.loads(json.dumps(changes, default=str)))
            # Guard on the exact row we read so another process cannot interleave
            cursor = conn.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ?
                WHERE id = ? AND data = ?
            """, (json.dumps(record), datetime.now(timezone.utc).isoformat(),
                  record_id, current_json))
            self._commit(conn, gate)
            if cursor.rowcount != 1:
                return None
            return record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._operation(table) as conn:
            row = conn.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._operation(table) as conn:
            cursor = conn.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str, gate: Optional[WriteGate] = None) -> bool:
        with self._operation(table) as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._commit(conn, gate)
            return cursor.rowcount > 0

    def delete_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  gate: Optional[WriteGate] = None) -> bool:
        with self._operation(table) as conn:
            row = conn.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None or not _matches(json.loads(row['data']), expected):
                return False
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE id = ? AND data = ?", (record_id, row['data'])
            )
            self._commit(conn, gate)
            return cursor.rowcount == 1

    def exists(self, table: str, record_id: str) -> bool:
        with self._operation(table) as conn:
            cursor = conn.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._operation(table) as conn:
            cursor = conn.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._operation(table) as conn:
            conn.execute(f"DELETE FROM {table}")
            conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
