"""
Tests for the persistence gateway backends
"""

import pytest
from dataclasses import dataclass
from decimal import Decimal
from datetime import datetime, timezone, date
from typing import List, Optional

from green_finance.errors import PersistenceError
from green_finance.identity import Role
from green_finance.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, SupabaseStorage, create_storage
)


@dataclass
class SampleRecord(StorageRecord):
    amount: Decimal
    created_at: datetime
    due: date
    role: Role = Role.STANDARD_USER
    note: Optional[str] = None
    tags: List[str] = None


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        store = InMemoryStorage()
    else:
        store = SQLiteStorage(tmp_path / "test.db")
    yield store
    store.close()


class TestStorageBackends:
    """Behaviour shared by the in-memory and SQLite backends"""

    def test_insert_generates_id(self, backend):
        stored = backend.insert("things", {"name": "first"})
        assert stored["id"]
        assert backend.get("things", stored["id"])["name"] == "first"

    def test_insert_keeps_given_id(self, backend):
        backend.insert("things", {"id": "abc", "name": "first"})
        assert backend.exists("things", "abc")

    def test_duplicate_id_fails(self, backend):
        backend.insert("things", {"id": "abc"})
        with pytest.raises(PersistenceError):
            backend.insert("things", {"id": "abc"})

    def test_update_merges_patch(self, backend):
        backend.insert("things", {"id": "abc", "name": "first", "size": 1})
        backend.update("things", "abc", {"size": 2})

        record = backend.get("things", "abc")
        assert record == {"id": "abc", "name": "first", "size": 2}

    def test_update_missing_record_fails(self, backend):
        with pytest.raises(PersistenceError):
            backend.update("things", "nope", {"size": 2})

    def test_delete_reports_whether_removed(self, backend):
        backend.insert("things", {"id": "abc"})
        assert backend.delete("things", "abc") is True
        assert backend.delete("things", "abc") is False
        assert backend.get("things", "abc") is None

    def test_query_filters_and_orders(self, backend):
        backend.insert("things", {"id": "a", "kind": "x", "rank": 3})
        backend.insert("things", {"id": "b", "kind": "y", "rank": 1})
        backend.insert("things", {"id": "c", "kind": "x", "rank": 2})
        backend.insert("things", {"id": "d", "kind": "x"})

        ranked = backend.query("things", {"kind": "x"}, order_by="rank")
        assert [r["id"] for r in ranked] == ["c", "a", "d"]

        descending = backend.query("things", order_by="rank", descending=True)
        assert [r["id"] for r in descending] == ["a", "c", "b", "d"]

    def test_count_and_clear(self, backend):
        backend.insert("things", {"kind": "x"})
        backend.insert("things", {"kind": "y"})
        assert backend.count("things") == 2
        assert backend.count("things", {"kind": "x"}) == 1

        backend.clear_collection("things")
        assert backend.count("things") == 0

    def test_values_are_serialized(self, backend):
        stored = backend.insert("things", {
            "amount": Decimal("1399.90"),
            "when": datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
            "role": Role.ADMIN,
        })
        record = backend.get("things", stored["id"])
        assert record["amount"] == "1399.90"
        assert record["when"] == "2024-03-01T12:00:00+00:00"
        assert record["role"] == 1

    def test_returned_records_are_copies(self, backend):
        stored = backend.insert("things", {"id": "abc", "name": "first"})
        stored["name"] = "changed"
        assert backend.get("things", "abc")["name"] == "first"


class TestStorageRecord:
    """Test typed round trips through StorageRecord"""

    def test_from_dict_restores_types(self):
        record = SampleRecord(
            id="r1",
            amount=Decimal("1000.00"),
            created_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            due=date(2024, 2, 1),
            role=Role.ADMIN,
            tags=["a", "b"]
        )
        storage = InMemoryStorage()
        storage.insert("samples", record.to_dict())

        restored = SampleRecord.from_dict(storage.get("samples", "r1"))
        assert restored == record
        assert isinstance(restored.amount, Decimal)
        assert restored.role is Role.ADMIN

    def test_from_dict_ignores_unknown_columns(self):
        data = {"id": "r1", "amount": "5", "created_at": "2024-01-01T00:00:00+00:00",
                "due": "2024-01-31T00:00:00+00:00", "extra_column": True}
        restored = SampleRecord.from_dict(data)
        assert restored.due == date(2024, 1, 31)
        assert restored.note is None


class TestCreateStorage:

    def test_memory(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_sqlite(self, tmp_path):
        store = create_storage("sqlite", sqlite_path=str(tmp_path / "gf.db"))
        assert isinstance(store, SQLiteStorage)
        store.close()

    def test_unknown(self):
        with pytest.raises(ValueError):
            create_storage("mongo")


class FakeResponse:
    def __init__(self, data=None, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    """Minimal stand-in for a PostgREST query builder"""

    def __init__(self, table, operation, payload=None):
        self.table = table
        self.operation = operation
        self.payload = payload
        self.filters = []

    def eq(self, key, value):
        self.filters.append((key, value))
        return self

    def neq(self, key, value):
        return self

    def limit(self, n):
        return self

    def order(self, column, desc=False):
        return self

    def execute(self):
        if self.table.broken:
            raise RuntimeError("PostgREST unavailable")
        rows = [r for r in self.table.rows if all(r.get(k) == v for k, v in self.filters)]
        if self.operation == "insert":
            self.table.rows.append(dict(self.payload))
            return FakeResponse([dict(self.payload)])
        if self.operation == "update":
            for row in rows:
                row.update(self.payload)
            return FakeResponse(rows)
        if self.operation == "delete":
            self.table.rows = [r for r in self.table.rows if r not in rows]
            return FakeResponse(rows)
        return FakeResponse(rows, count=len(rows))


class FakeTable:
    def __init__(self):
        self.rows = []
        self.broken = False

    def insert(self, payload):
        return FakeQuery(self, "insert", payload)

    def update(self, payload):
        return FakeQuery(self, "update", payload)

    def delete(self):
        return FakeQuery(self, "delete")

    def select(self, *columns, count=None):
        return FakeQuery(self, "select")


class FakeSupabaseClient:
    def __init__(self):
        self.tables = {}

    def table(self, name):
        return self.tables.setdefault(name, FakeTable())


class TestSupabaseStorage:
    """Test the Supabase backend against a fake client"""

    @pytest.fixture
    def client(self):
        return FakeSupabaseClient()

    @pytest.fixture
    def supabase(self, client):
        return SupabaseStorage(client=client)

    def test_crud(self, supabase):
        stored = supabase.insert("loan_applications", {"amount": Decimal("1000.00")})
        assert supabase.get("loan_applications", stored["id"])["amount"] == "1000.00"

        supabase.update("loan_applications", stored["id"], {"purpose": "stock"})
        assert supabase.query("loan_applications", {"purpose": "stock"})[0]["id"] == stored["id"]
        assert supabase.count("loan_applications") == 1

        assert supabase.delete("loan_applications", stored["id"]) is True
        assert supabase.delete("loan_applications", stored["id"]) is False

    def test_update_missing_row_fails(self, supabase):
        with pytest.raises(PersistenceError):
            supabase.update("loan_applications", "missing", {"purpose": "stock"})

    def test_client_errors_become_persistence_errors(self, supabase, client):
        client.table("approved_loans").broken = True
        with pytest.raises(PersistenceError) as exc_info:
            supabase.insert("approved_loans", {"amount": "1"})
        assert "PostgREST unavailable" in str(exc_info.value)
