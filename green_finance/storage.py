"""
Persistence Gateway Module

Provides the generic collection CRUD interface used by every manager, with
implementations for in-memory (testing), SQLite (local persistence) and
Supabase (hosted). Records travel as plain dictionaries; monetary values
are stored as Decimal strings and timestamps as ISO strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, get_args, get_origin, get_type_hints
from decimal import Decimal
from datetime import datetime, date
from enum import Enum
import sqlite3
import json
import threading
import uuid
from dataclasses import dataclass, asdict, fields
from pathlib import Path

from .errors import PersistenceError
from .logging_config import get_logger
from .money import to_decimal

logger = get_logger("green_finance.storage")


def serialize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def _deserialize_value(hint: Any, value: Any) -> Any:
    if value is None:
        return None
    # Unwrap Optional[X]
    if get_origin(hint) is Union:
        args = [a for a in get_args(hint) if a is not type(None)]
        if len(args) == 1:
            hint = args[0]
    if hint is Decimal:
        return to_decimal(value)
    if hint is datetime and isinstance(value, str):
        return datetime.fromisoformat(value)
    if hint is date and isinstance(value, str):
        # Hosted stores may hand back full timestamps for date columns
        return date.fromisoformat(value[:10])
    if isinstance(hint, type) and issubclass(hint, Enum) and not isinstance(value, hint):
        return hint(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {key: serialize_value(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create instance from dictionary, ignoring unknown columns"""
        hints = get_type_hints(cls)
        kwargs = {}
        for f in fields(cls):
            if f.name in data:
                kwargs[f.name] = _deserialize_value(hints[f.name], data[f.name])
        return cls(**kwargs)


def _matches(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    for key, value in filters.items():
        if key not in record or record[key] != serialize_value(value):
            return False
    return True


def _sort_records(records: List[Dict[str, Any]], order_by: Optional[str],
                  descending: bool) -> List[Dict[str, Any]]:
    if not order_by:
        return records
    # Records missing the column sort last in either direction
    present = [r for r in records if r.get(order_by) is not None]
    missing = [r for r in records if r.get(order_by) is None]
    present.sort(key=lambda r: r[order_by], reverse=descending)
    return present + missing


class StorageInterface(ABC):
    """Abstract interface for collection storage backends"""

    @abstractmethod
    def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record, generating an id when absent; returns the stored record"""
        pass

    @abstractmethod
    def update(self, collection: str, record_id: str, patch: Dict[str, Any]) -> None:
        """Merge a patch into an existing record"""
        pass

    @abstractmethod
    def delete(self, collection: str, record_id: str) -> bool:
        """Delete a record if it exists; returns whether a record was removed"""
        pass

    @abstractmethod
    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a single record"""
        pass

    @abstractmethod
    def query(self, collection: str, filters: Optional[Dict[str, Any]] = None,
              order_by: Optional[str] = None, descending: bool = False) -> List[Dict[str, Any]]:
        """Find records matching equality filters, optionally ordered"""
        pass

    @abstractmethod
    def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records matching equality filters"""
        pass

    @abstractmethod
    def clear_collection(self, collection: str) -> None:
        """Remove every record from a collection"""
        pass

    def exists(self, collection: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.get(collection, record_id) is not None

    def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass

    @staticmethod
    def _prepare(record: Dict[str, Any]) -> Dict[str, Any]:
        data = serialize_value(dict(record))
        if not data.get('id'):
            data['id'] = str(uuid.uuid4())
        return data


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _table(self, collection: str) -> Dict[str, Dict[str, Any]]:
        if collection not in self._data:
            self._data[collection] = {}
        return self._data[collection]

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            data = self._prepare(record)
            table = self._table(collection)
            if data['id'] in table:
                raise PersistenceError(f"Duplicate id {data['id']} in {collection}")
            table[data['id']] = self._copy(data)
            return self._copy(data)

    def update(self, collection: str, record_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            table = self._table(collection)
            if record_id not in table:
                raise PersistenceError(f"No record {record_id} in {collection}")
            merged = dict(table[record_id])
            merged.update(self._copy(serialize_value(dict(patch))))
            merged['id'] = record_id
            table[record_id] = merged

    def delete(self, collection: str, record_id: str) -> bool:
        with self._lock:
            table = self._table(collection)
            if record_id in table:
                del table[record_id]
                return True
            return False

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(collection).get(record_id)
            if record:
                return self._copy(record)
            return None

    def query(self, collection: str, filters: Optional[Dict[str, Any]] = None,
              order_by: Optional[str] = None, descending: bool = False) -> List[Dict[str, Any]]:
        with self._lock:
            results = [self._copy(r) for r in self._table(collection).values() if _matches(r, filters)]
            return _sort_records(results, order_by, descending)

    def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            return sum(1 for r in self._table(collection).values() if _matches(r, filters))

    def clear_collection(self, collection: str) -> None:
        with self._lock:
            self._data[collection] = {}


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._known_tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, collection: str) -> None:
        """Ensure table exists with proper schema"""
        if collection in self._known_tables:
            return
        if not collection.isidentifier():
            raise PersistenceError(f"Invalid collection name: {collection}")
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {collection} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                inserted_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)
        self._connection.commit()
        self._known_tables.add(collection)

    def _load_rows(self, collection: str) -> List[Dict[str, Any]]:
        cursor = self._connection.execute(f"""
            SELECT data FROM {collection} ORDER BY inserted_at, rowid
        """)
        return [json.loads(row['data']) for row in cursor.fetchall()]

    def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        data = self._prepare(record)
        with self._lock:
            try:
                self._ensure_table(collection)
                self._connection.execute(f"""
                    INSERT INTO {collection} (id, data) VALUES (?, ?)
                """, (data['id'], json.dumps(data, default=str)))
                self._connection.commit()
            except sqlite3.Error as e:
                self._connection.rollback()
                raise PersistenceError(f"Insert into {collection} failed: {e}") from e
        return data

    def update(self, collection: str, record_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            try:
                self._ensure_table(collection)
                row = self._connection.execute(f"""
                    SELECT data FROM {collection} WHERE id = ?
                """, (record_id,)).fetchone()
                if row is None:
                    raise PersistenceError(f"No record {record_id} in {collection}")
                merged = json.loads(row['data'])
                merged.update(serialize_value(dict(patch)))
                merged['id'] = record_id
                self._connection.execute(f"""
                    UPDATE {collection} SET data = ? WHERE id = ?
                """, (json.dumps(merged, default=str), record_id))
                self._connection.commit()
            except sqlite3.Error as e:
                self._connection.rollback()
                raise PersistenceError(f"Update of {collection} failed: {e}") from e

    def delete(self, collection: str, record_id: str) -> bool:
        with self._lock:
            try:
                self._ensure_table(collection)
                cursor = self._connection.execute(f"""
                    DELETE FROM {collection} WHERE id = ?
                """, (record_id,))
                self._connection.commit()
                return cursor.rowcount > 0
            except sqlite3.Error as e:
                self._connection.rollback()
                raise PersistenceError(f"Delete from {collection} failed: {e}") from e

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            try:
                self._ensure_table(collection)
                row = self._connection.execute(f"""
                    SELECT data FROM {collection} WHERE id = ?
                """, (record_id,)).fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"Read from {collection} failed: {e}") from e
            if row:
                return json.loads(row['data'])
            return None

    def query(self, collection: str, filters: Optional[Dict[str, Any]] = None,
              order_by: Optional[str] = None, descending: bool = False) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            try:
                self._ensure_table(collection)
                rows = self._load_rows(collection)
            except sqlite3.Error as e:
                raise PersistenceError(f"Query on {collection} failed: {e}") from e
        results = [r for r in rows if _matches(r, filters)]
        return _sort_records(results, order_by, descending)

    def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        if filters:
            return len(self.query(collection, filters))
        with self._lock:
            try:
                self._ensure_table(collection)
                row = self._connection.execute(f"""
                    SELECT COUNT(*) as count FROM {collection}
                """).fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"Count on {collection} failed: {e}") from e
            return row['count']

    def clear_collection(self, collection: str) -> None:
        with self._lock:
            try:
                self._ensure_table(collection)
                self._connection.execute(f"DELETE FROM {collection}")
                self._connection.commit()
            except sqlite3.Error as e:
                self._connection.rollback()
                raise PersistenceError(f"Clear of {collection} failed: {e}") from e

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class SupabaseStorage(StorageInterface):
    """
    Supabase (PostgREST) storage backend.

    Each collection is a table with an ``id`` primary key. The client is
    created with ``supabase.create_client`` unless one is passed in.
    """

    def __init__(self, url: str = "", key: str = "", client=None):
        if client is None:
            from supabase import create_client
            client = create_client(url, key)
        self.client = client

    def _execute(self, builder, action: str, collection: str):
        try:
            return builder.execute()
        except Exception as e:
            logger.error(f"Supabase {action} on {collection} failed: {e}")
            raise PersistenceError(f"{action.capitalize()} on {collection} failed: {e}") from e

    def _filtered(self, builder, filters: Optional[Dict[str, Any]]):
        for key, value in (filters or {}).items():
            builder = builder.eq(key, serialize_value(value))
        return builder

    def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        data = self._prepare(record)
        response = self._execute(self.client.table(collection).insert(data), "insert", collection)
        if response.data:
            return response.data[0]
        return data

    def update(self, collection: str, record_id: str, patch: Dict[str, Any]) -> None:
        response = self._execute(
            self.client.table(collection).update(serialize_value(dict(patch))).eq('id', record_id),
            "update", collection
        )
        if not response.data:
            raise PersistenceError(f"No record {record_id} in {collection}")

    def delete(self, collection: str, record_id: str) -> bool:
        response = self._execute(
            self.client.table(collection).delete().eq('id', record_id),
            "delete", collection
        )
        return bool(response.data)

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        response = self._execute(
            self.client.table(collection).select('*').eq('id', record_id).limit(1),
            "read", collection
        )
        if response.data:
            return response.data[0]
        return None

    def query(self, collection: str, filters: Optional[Dict[str, Any]] = None,
              order_by: Optional[str] = None, descending: bool = False) -> List[Dict[str, Any]]:
        builder = self._filtered(self.client.table(collection).select('*'), filters)
        if order_by:
            builder = builder.order(order_by, desc=descending)
        response = self._execute(builder, "query", collection)
        return response.data or []

    def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        builder = self._filtered(self.client.table(collection).select('id', count='exact'), filters)
        response = self._execute(builder, "count", collection)
        return response.count or 0

    def clear_collection(self, collection: str) -> None:
        # PostgREST refuses unfiltered deletes
        self._execute(
            self.client.table(collection).delete().neq('id', ''),
            "clear", collection
        )


def create_storage(backend: str, sqlite_path: str = "green_finance.db",
                   supabase_url: str = "", supabase_key: str = "") -> StorageInterface:
    """Build a storage backend by name (memory, sqlite or supabase)"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(sqlite_path)
    if backend == "supabase":
        return SupabaseStorage(supabase_url, supabase_key)
    raise ValueError(f"Unknown storage backend: {backend}")
