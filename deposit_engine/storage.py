"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by id and all
monetary values are stored as Decimal strings.

Beyond plain document CRUD the interface offers the primitives the engine
relies on for correctness under concurrency: insert-only writes, partial
unique constraints, atomic numeric increments, version compare-and-swap,
named sequences and a real transactional atomic() block.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Sequence
from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from enum import Enum
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


class StorageError(Exception):
    """Base class for storage backend failures"""


class UniqueConstraintViolation(StorageError):
    """A write would break a primary key or unique constraint"""

    def __init__(self, table: str, constraint: str, message: Optional[str] = None):
        super().__init__(message or f"Unique constraint {constraint} violated on {table}")
        self.table = table
        self.constraint = constraint


class IncompatibleValueError(StorageError):
    """A stored field cannot take part in a numeric increment"""

    def __init__(self, table: str, record_id: str, field: str, value: Any):
        super().__init__(
            f"Field {field} of {table}/{record_id} holds non-numeric value {value!r}"
        )
        self.table = table
        self.record_id = record_id
        self.field = field
        self.value = value


def to_jsonable(value: Any) -> Any:
    """Recursively convert Decimal, datetime and Enum values to JSON-safe forms"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return to_jsonable(asdict(self))


@dataclass
class UniqueConstraint:
    """Uniqueness over a set of fields, optionally restricted to matching records"""
    name: str
    fields: Sequence[str]
    where: Dict[str, Any]

    def applies_to(self, record: Dict[str, Any]) -> bool:
        return all(record.get(k) == v for k, v in self.where.items())

    def key(self, record: Dict[str, Any]) -> tuple:
        return tuple(record.get(f) for f in self.fields)


def _numeric_field(table: str, record_id: str, field: str, value: Any) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float) or value is None:
        raise IncompatibleValueError(table, record_id, field, value)
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        try:
            parsed = Decimal(value)
        except InvalidOperation:
            raise IncompatibleValueError(table, record_id, field, value)
        if not parsed.is_finite():
            raise IncompatibleValueError(table, record_id, field, value)
        return parsed
    raise IncompatibleValueError(table, record_id, field, value)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises UniqueConstraintViolation if the id exists"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
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
        """Find records whose fields equal every filter value, in insertion order"""
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
    def add_unique_constraint(self, table: str, name: str, fields: Sequence[str],
                              where: Optional[Dict[str, Any]] = None) -> None:
        """
        Declare a (partial) unique constraint

        Records matching every where condition must be unique over fields.
        Declaring the same constraint twice is a no-op.
        """
        pass

    @abstractmethod
    def next_sequence(self, name: str) -> int:
        """Return the next value of a named monotonic counter, starting at 1"""
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

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations

        Nested blocks join the outermost transaction; only the outermost block
        commits or rolls back.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    def increment(self, table: str, record_id: str,
                  deltas: Dict[str, Decimal]) -> Dict[str, Any]:
        """
        Atomically add deltas to numeric fields of a record

        Fields are stored as Decimal strings. Missing fields start at zero.

        Returns:
            The updated record

        Raises:
            StorageError: If the record does not exist
            IncompatibleValueError: If a stored field is not an exact number
        """
        with self.atomic():
            record = self.load(table, record_id)
            if record is None:
                raise StorageError(f"Record {table}/{record_id} not found")
            for field, delta in deltas.items():
                current = record.get(field, "0")
                updated = _numeric_field(table, record_id, field, current) + Decimal(delta)
                record[field] = str(updated)
            self.save(table, record_id, record)
            return record

    def compare_and_swap(self, table: str, record_id: str, expected_version: int,
                         data: Dict[str, Any], version_field: str = "version") -> bool:
        """
        Replace a record only if its stored version still equals expected_version

        The new document's version is set to expected_version + 1.

        Returns:
            True if the write happened, False if another writer got there first
        """
        with self.atomic():
            current = self.load(table, record_id)
            if current is None:
                raise StorageError(f"Record {table}/{record_id} not found")
            if current.get(version_field, 0) != expected_version:
                return False
            data = dict(data)
            data[version_field] = expected_version + 1
            self.save(table, record_id, data)
            return True


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._constraints: Dict[str, Dict[str, UniqueConstraint]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _check_constraints(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        for constraint in self._constraints.get(table, {}).values():
            if not constraint.applies_to(data):
                continue
            key = constraint.key(data)
            for other_id, other in self._data[table].items():
                if other_id != record_id and constraint.applies_to(other) and constraint.key(other) == key:
                    raise UniqueConstraintViolation(table, constraint.name)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            document = json.loads(json.dumps(data, default=str))
            self._check_constraints(table, record_id, document)
            self._data[table][record_id] = document

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise UniqueConstraintViolation(table, "primary_key")
            self.save(table, record_id, data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return copy.deepcopy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [copy.deepcopy(record) for record in self._data[table].values()]

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
                    results.append(copy.deepcopy(record))
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

    def add_unique_constraint(self, table: str, name: str, fields: Sequence[str],
                              where: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._ensure_table(table)
            constraint = UniqueConstraint(name, tuple(fields), dict(where or {}))
            seen = set()
            for record in self._data[table].values():
                if constraint.applies_to(record):
                    key = constraint.key(record)
                    if key in seen:
                        raise UniqueConstraintViolation(table, name)
                    seen.add(key)
            self._constraints.setdefault(table, {})[name] = constraint

    def next_sequence(self, name: str) -> int:
        # Counters never roll back, so a value is never handed out twice
        with self._lock:
            self._sequences[name] = self._sequences.get(name, 0) + 1
            return self._sequences[name]

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = copy.deepcopy(self._data)
        self._depth += 1

    def commit(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._snapshot = None
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0 and self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


def _sql_literal(value: Any) -> str:
    # Partial index predicates cannot take bound parameters
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    raise StorageError(f"Unsupported constraint condition value: {value!r}")


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly by begin_transaction
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

        self._connection.execute("""
            CREATE TABLE IF NOT EXISTS _sequences (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            )
        """)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
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

    def _execute_write(self, table: str, sql: str, params: tuple) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise UniqueConstraintViolation(table, "index", str(e)) from e

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Upsert keeps the original rowid so insertion order survives updates
            self._execute_write(table, f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._execute_write(table, f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))

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
                SELECT data FROM {table} ORDER BY rowid
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
        results = []
        for record in self.load_all(table):
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(record)
        return results

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

    def add_unique_constraint(self, table: str, name: str, fields: Sequence[str],
                              where: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._ensure_table(table)
            columns = ", ".join(f"json_extract(data, '$.{f}')" for f in fields)
            sql = f"CREATE UNIQUE INDEX IF NOT EXISTS {name} ON {table} ({columns})"
            if where:
                conditions = " AND ".join(
                    f"json_extract(data, '$.{k}') = {_sql_literal(v)}" for k, v in where.items()
                )
                sql += f" WHERE {conditions}"
            self._execute_write(table, sql, ())

    def next_sequence(self, name: str) -> int:
        with self._lock:
            self._connection.execute("""
                INSERT INTO _sequences (name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
            """, (name,))
            cursor = self._connection.execute(
                "SELECT value FROM _sequences WHERE name = ?", (name,)
            )
            return cursor.fetchone()['value']

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                # IMMEDIATE takes the write lock up front so read-modify-write is safe
                self._connection.execute("BEGIN IMMEDIATE")
            except Exception:
                self._lock.release()
                raise
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("COMMIT")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Supported forms: "memory://", "sqlite://" (in-memory SQLite) and
    "sqlite:///path/to/file.db".
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
