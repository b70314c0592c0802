"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (persistence) and PostgreSQL (row-locked production store). All monetary
values stored as Decimal strings.

A unit of work is opened with ``storage.atomic()``: every write inside it
commits together or not at all. Nested ``atomic()`` blocks join the outer one.

Each backend owns a single connection, so ``atomic()`` holds a storage-wide
lock for the whole unit of work: transactions from different threads run one
at a time in this process, even on different loans and even on PostgreSQL.
Row locks (``lock_row``) serialize writers across processes sharing one
database; parallelism across loans comes from running several processes.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Set, get_type_hints
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import sqlite3
import json
import threading
import typing
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from contextlib import contextmanager

from .errors import ConcurrencyConflict


def _unwrap_optional(annotation):
    """Return T for Optional[T], the annotation itself otherwise"""
    if typing.get_origin(annotation) is Union:
        args = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _to_storable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_storable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_storable(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {key: _to_storable(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary, restoring Decimal/date/Enum fields"""
        hints = get_type_hints(cls)
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            target = _unwrap_optional(hints.get(key))
            if value is None or target is None:
                kwargs[key] = value
            elif target is Decimal:
                kwargs[key] = Decimal(str(value))
            elif target is datetime and isinstance(value, str):
                kwargs[key] = datetime.fromisoformat(value)
            elif target is date and isinstance(value, str):
                kwargs[key] = date.fromisoformat(value)
            elif isinstance(target, type) and issubclass(target, Enum):
                kwargs[key] = target(value)
            else:
                kwargs[key] = value
        return cls(**kwargs)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        # One re-entrant lock guards data access and owns the open transaction
        self._lock = threading.RLock()
        self._transaction_depth = 0

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

    def lock_row(self, table: str, record_id: str) -> None:
        """Lock a row until the current transaction ends (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._transaction_depth > 0

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations, exclusive per storage instance"""
        with self._lock:
            if self._transaction_depth:
                # Join the enclosing unit of work
                self._transaction_depth += 1
                try:
                    yield
                finally:
                    self._transaction_depth -= 1
                return

            self.begin_transaction()
            self._transaction_depth = 1
            try:
                yield
            except BaseException:
                self._transaction_depth = 0
                self.rollback()
                raise
            self._transaction_depth = 0
            try:
                self.commit()
            except BaseException:
                self.rollback()
                raise


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
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
            results = []
            for record in self._data[table].values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(json.loads(json.dumps(record)))
            return results

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
        """Snapshot the data so rollback can restore it"""
        self._snapshot = json.loads(json.dumps(self._data))

    def commit(self) -> None:
        """Discard the rollback snapshot"""
        self._snapshot = None

    def rollback(self) -> None:
        """Restore the snapshot taken when the transaction began"""
        if self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 10.0):
        super().__init__()
        self.db_path = str(db_path)
        # isolation_level='DEFERRED' leaves transaction control to us
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False,
            isolation_level='DEFERRED', timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._tables: Set[str] = set()
        self._tables_created_in_transaction: Set[str] = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.OperationalError as e:
            raise self._translate_error(e)

    @staticmethod
    def _translate_error(error: sqlite3.OperationalError) -> Exception:
        message = str(error).lower()
        if "locked" in message or "busy" in message:
            return ConcurrencyConflict(
                "Database is locked by another writer",
                {"backend": "sqlite", "reason": str(error)}
            )
        return error

    def _autocommit(self) -> None:
        if not self.in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._autocommit()
        self._tables.add(table)
        if self.in_transaction:
            self._tables_created_in_transaction.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # INSERT OR REPLACE keeps the original created_at
            self._execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at, rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            results = []
            for record in self.load_all(table):
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(record)
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        """Start a write transaction, taking SQLite's reserved lock up front"""
        self._tables_created_in_transaction = set()
        self._execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            self._connection.commit()
        except sqlite3.OperationalError as e:
            raise self._translate_error(e)
        self._tables_created_in_transaction = set()

    def rollback(self) -> None:
        """Rollback current transaction"""
        self._connection.rollback()
        # DDL issued inside the transaction was rolled back too
        self._tables -= self._tables_created_in_transaction
        self._tables_created_in_transaction = set()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with row-level locking"""

    # SQLSTATE codes for serialization failure and deadlock
    RETRYABLE_SQLSTATES = ("40001", "40P01", "55P03")

    def __init__(self, connection_string: str, lock_timeout_seconds: float = 10.0):
        super().__init__()
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install loan-servicing[postgres]")

        self.connection_string = connection_string
        self.lock_timeout_ms = int(lock_timeout_seconds * 1000)
        self._connection = None
        self._tables: Set[str] = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        self._connection = self.psycopg2.connect(
            self.connection_string,
            cursor_factory=self.extras.RealDictCursor
        )
        self._connection.autocommit = False  # We handle transactions manually

    def _run(self, sql: str, params: Optional[tuple] = None, fetch: Optional[str] = None):
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, params)
            if fetch == "one":
                return cursor.fetchone()
            if fetch == "all":
                return cursor.fetchall()
            return cursor.rowcount
        except self.psycopg2.Error as e:
            if getattr(e, "pgcode", None) in self.RETRYABLE_SQLSTATES:
                raise ConcurrencyConflict(
                    "Transaction could not be serialized",
                    {"backend": "postgresql", "sqlstate": e.pgcode}
                )
            raise
        finally:
            cursor.close()

    def _autocommit(self) -> None:
        if not self.in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._run(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        self._run(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        self._autocommit()
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            self._run(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            row = self._run(f"SELECT data FROM {table} WHERE id = %s", (record_id,), fetch="one")
            return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            rows = self._run(f"SELECT data FROM {table} ORDER BY created_at", fetch="all")
            return [dict(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            rowcount = self._run(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            self._autocommit()
            return rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return self._run(
                f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,), fetch="one"
            ) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self.load_all(table)
            rows = self._run(f"""
                SELECT data FROM {table}
                WHERE data @> %s::jsonb
                ORDER BY created_at
            """, (json.dumps(filters, default=str),), fetch="all")
            return [dict(row['data']) for row in rows]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return self._run(f"SELECT COUNT(*) as count FROM {table}", fetch="one")['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._run(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        """PostgreSQL opens transactions implicitly; bound lock waits"""
        self._run(f"SET LOCAL lock_timeout = {self.lock_timeout_ms}")

    def lock_row(self, table: str, record_id: str) -> None:
        """Hold the row lock until commit or rollback"""
        self._ensure_table(table)
        self._run(f"SELECT id FROM {table} WHERE id = %s FOR UPDATE", (record_id,), fetch="one")

    def commit(self) -> None:
        """Commit current transaction"""
        self._connection.commit()

    def rollback(self) -> None:
        """Rollback current transaction"""
        self._connection.rollback()
        self._tables = set()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class StorageManager:
    """Typed record access on top of a storage backend"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def save_record(self, record: StorageRecord, table: str) -> None:
        """Save a StorageRecord to storage"""
        self.storage.save(table, record.id, record.to_dict())

    def load_record(self, record_type: type, table: str, record_id: str) -> Optional[StorageRecord]:
        """Load and convert to StorageRecord"""
        data = self.storage.load(table, record_id)
        if data:
            return record_type.from_dict(data)
        return None

    def load_all_records(self, record_type: type, table: str) -> List[StorageRecord]:
        """Load all records and convert to StorageRecord objects"""
        return [record_type.from_dict(data) for data in self.storage.load_all(table)]

    def find_records(self, record_type: type, table: str, filters: Dict[str, Any]) -> List[StorageRecord]:
        """Find records and convert to StorageRecord objects"""
        return [record_type.from_dict(data) for data in self.storage.find(table, filters)]

    def delete_record(self, table: str, record_id: str) -> bool:
        return self.storage.delete(table, record_id)


def create_storage(database_url: str, lock_timeout_seconds: float = 10.0) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Supported forms: ``memory://``, ``sqlite:///path/to.db``,
    ``sqlite:///:memory:``, ``postgresql://...``
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:",
                             timeout=lock_timeout_seconds)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, lock_timeout_seconds=lock_timeout_seconds)
    raise ValueError(f"Unsupported database URL: {database_url}")
