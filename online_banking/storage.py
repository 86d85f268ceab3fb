"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (persistence) and PostgreSQL. Records are JSON documents keyed by id;
all monetary values are stored as Decimal strings.

Every balance-affecting flow runs inside ``storage.atomic()``. The unit is
re-entrant (nested blocks join the outermost one) and holds the storage lock
until it commits or rolls back, so two flows on one storage instance never
interleave. Records that carry a ``version`` field are written with
``compare_and_swap`` for optimistic concurrency across processes.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConcurrencyError
from .logging_config import get_logger

logger = get_logger("online_banking.storage")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in data.items() if k in known}
        # Convert ISO strings back to datetime objects
        for key, value in data.items():
            if key.endswith('_at') and isinstance(value, str):
                data[key] = datetime.fromisoformat(value)
        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    _atomic_depth = 0
    _pending_callbacks: List[Callable[[], None]] = []

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
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
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
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

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._atomic_depth > 0

    def on_commit(self, callback: Callable[[], None]) -> None:
        """
        Run ``callback`` once the current atomic unit commits.

        Outside a unit the callback runs immediately; on rollback it is dropped.
        """
        if not self.in_transaction:
            callback()
            return
        self._pending_callbacks.append(callback)

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Nested calls join the outermost unit; only the outermost block
        commits or rolls back.
        """
        callbacks: List[Callable[[], None]] = []
        with self._lock:
            outermost = self._atomic_depth == 0
            if outermost:
                self._pending_callbacks = []
                self.begin_transaction()
            self._atomic_depth += 1
            try:
                yield
            except Exception:
                self._atomic_depth -= 1
                if outermost:
                    self.rollback()
                    self._pending_callbacks = []
                raise
            else:
                self._atomic_depth -= 1
                if outermost:
                    self.commit()
                    callbacks, self._pending_callbacks = self._pending_callbacks, []
        for callback in callbacks:
            callback()

    def compare_and_swap(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: int) -> None:
        """
        Write ``data`` only if the stored record is still at ``expected_version``.

        Raises:
            ConcurrencyError: if the record is missing or its version moved
        """
        with self._lock:
            current = self.load(table, record_id)
            if current is None or int(current.get('version', 0)) != expected_version:
                logger.warning(
                    "Version check failed for %s/%s (expected %s)",
                    table, record_id, expected_version
                )
                raise ConcurrencyError(
                    f"{table} record {record_id} was modified concurrently"
                )
            self.save(table, record_id, data)


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Snapshot all tables so rollback can restore them"""
        with self._lock:
            self._snapshot = json.loads(json.dumps(self._data))

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        """Restore the snapshot taken at the start of the unit"""
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Manual transaction control: BEGIN/COMMIT are issued explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
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
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            records = (json.loads(row['data']) for row in cursor.fetchall())
            return [record for record in records if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            self._connection.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            self._connection.execute("COMMIT")

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            self._connection.execute("ROLLBACK")
            # Tables created inside the rolled-back unit are gone again
            self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _maybe_commit(self) -> None:
        if not self.in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data JSONB NOT NULL,
                        seq BIGSERIAL,
                        created_at TIMESTAMP DEFAULT NOW(),
                        updated_at TIMESTAMP DEFAULT NOW()
                    )
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_data
                    ON {table} USING gin(data)
                """)
                self._maybe_commit()
                self._tables.add(table)
            finally:
                cursor.close()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc)
            data_json = json.dumps(data, default=str)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, data_json, now, now))
                self._maybe_commit()
            finally:
                cursor.close()

    def compare_and_swap(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: int) -> None:
        """Conditional UPDATE on the stored version; zero rows means we lost the race"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    UPDATE {table}
                    SET data = %s, updated_at = %s
                    WHERE id = %s AND (data ->> 'version')::int = %s
                """, (json.dumps(data, default=str), datetime.now(timezone.utc),
                      record_id, expected_version))
                if cursor.rowcount != 1:
                    raise ConcurrencyError(
                        f"{table} record {record_id} was modified concurrently"
                    )
                self._maybe_commit()
            finally:
                cursor.close()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT data FROM {table} WHERE id = %s
                """, (record_id,))
                row = cursor.fetchone()
                if row:
                    return dict(row['data'])
                return None
            finally:
                cursor.close()

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    DELETE FROM {table} WHERE id = %s
                """, (record_id,))
                self._maybe_commit()
                return cursor.rowcount > 0
            finally:
                cursor.close()

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT 1 FROM {table} WHERE id = %s LIMIT 1
                """, (record_id,))
                return cursor.fetchone() is not None
            finally:
                cursor.close()

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                if not filters:
                    cursor.execute(f"""
                        SELECT data FROM {table} ORDER BY seq
                    """)
                else:
                    cursor.execute(f"""
                        SELECT data FROM {table}
                        WHERE data @> %s::jsonb
                        ORDER BY seq
                    """, (json.dumps(filters, default=str),))

                return [dict(row['data']) for row in cursor.fetchall()]
            finally:
                cursor.close()

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT COUNT(*) as count FROM {table}
                """)
                return cursor.fetchone()['count']
            finally:
                cursor.close()

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"DELETE FROM {table}")
                self._maybe_commit()
            finally:
                cursor.close()

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            self._connection.commit()

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            self._connection.rollback()
            self._tables.clear()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported forms: ``memory://``, ``sqlite://`` (in-memory SQLite),
    ``sqlite:///relative/or/absolute/path.db``, ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
