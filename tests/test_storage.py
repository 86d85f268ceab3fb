"""
Tests for storage backends and atomic units
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Optional

from online_banking.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage,
)
from online_banking.exceptions import ConcurrencyError


def _record(record_id: str, **extra):
    now = datetime.now(timezone.utc).isoformat()
    data = {"id": record_id, "created_at": now, "updated_at": now}
    data.update(extra)
    return data


class TestStorageInterface:
    """Basic CRUD against both backends"""

    @pytest.fixture(params=["memory", "sqlite"])
    def storage(self, request, tmp_path):
        if request.param == "memory":
            backend = InMemoryStorage()
        else:
            backend = SQLiteStorage(tmp_path / "test.db")
        yield backend
        backend.close()

    def test_save_and_load(self, storage):
        storage.save("things", "r1", _record("r1", amount="100.50"))

        loaded = storage.load("things", "r1")
        assert loaded["amount"] == "100.50"
        assert storage.exists("things", "r1")
        assert not storage.exists("things", "missing")
        assert storage.load("things", "missing") is None

    def test_find_count_delete(self, storage):
        storage.save("things", "r1", _record("r1", owner="a", deleted_at=None))
        storage.save("things", "r2", _record("r2", owner="b", deleted_at=None))
        storage.save("things", "r3", _record("r3", owner="a", deleted_at="2024-01-01T00:00:00+00:00"))

        assert storage.count("things") == 3
        assert {r["id"] for r in storage.find("things", {"owner": "a"})} == {"r1", "r3"}
        # None matches only records whose key is present and null
        assert {r["id"] for r in storage.find("things", {"owner": "a", "deleted_at": None})} == {"r1"}

        assert storage.delete("things", "r1")
        assert not storage.delete("things", "r1")
        assert storage.count("things") == 2

    def test_saved_data_is_copied(self, storage):
        data = _record("r1", tags=["x"])
        storage.save("things", "r1", data)
        data["tags"].append("y")

        assert storage.load("things", "r1")["tags"] == ["x"]

    def test_clear_table(self, storage):
        storage.save("things", "r1", _record("r1"))
        storage.clear_table("things")
        assert storage.count("things") == 0


class TestAtomic:
    """Atomic units, rollback and after-commit callbacks"""

    def test_memory_rollback_restores_all_tables(self):
        storage = InMemoryStorage()
        storage.save("a", "1", _record("1", value=1))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("a", "1", _record("1", value=2))
                storage.save("b", "2", _record("2"))
                raise RuntimeError("boom")

        assert storage.load("a", "1")["value"] == 1
        assert storage.load("b", "2") is None

    def test_sqlite_rollback(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "atomic.db")
        storage.save("a", "1", _record("1", value=1))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("a", "1", _record("1", value=2))
                storage.save("a", "2", _record("2", value=3))
                raise RuntimeError("boom")

        assert storage.load("a", "1")["value"] == 1
        assert storage.load("a", "2") is None
        storage.close()

    def test_sqlite_rollback_of_table_created_inside_unit(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "atomic.db")

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh", "1", _record("1"))
                raise RuntimeError("boom")

        # Table is recreated on demand after the rollback dropped it
        storage.save("fresh", "2", _record("2"))
        assert storage.count("fresh") == 1
        storage.close()

    def test_nested_units_join_outermost(self):
        storage = InMemoryStorage()

        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("a", "1", _record("1"))
                with storage.atomic():
                    storage.save("a", "2", _record("2"))
                raise ValueError("outer fails after inner finished")

        assert storage.count("a") == 0

    def test_on_commit_runs_after_outermost_commit(self):
        storage = InMemoryStorage()
        calls = []

        with storage.atomic():
            with storage.atomic():
                storage.on_commit(lambda: calls.append("inner"))
            assert calls == []
            storage.on_commit(lambda: calls.append("outer"))
            assert calls == []

        assert calls == ["inner", "outer"]
        assert not storage.in_transaction

    def test_on_commit_dropped_on_rollback(self):
        storage = InMemoryStorage()
        calls = []

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.on_commit(lambda: calls.append("x"))
                raise RuntimeError("boom")

        assert calls == []
        # Callbacks queued in a later unit are unaffected
        with storage.atomic():
            storage.on_commit(lambda: calls.append("y"))
        assert calls == ["y"]

    def test_on_commit_outside_unit_runs_immediately(self):
        storage = InMemoryStorage()
        calls = []
        storage.on_commit(lambda: calls.append("now"))
        assert calls == ["now"]


class TestCompareAndSwap:

    def test_swap_succeeds_at_expected_version(self):
        storage = InMemoryStorage()
        storage.save("t", "1", _record("1", version=1, value="a"))

        storage.compare_and_swap("t", "1", _record("1", version=2, value="b"), expected_version=1)

        assert storage.load("t", "1")["value"] == "b"

    def test_stale_version_rejected(self):
        storage = InMemoryStorage()
        storage.save("t", "1", _record("1", version=3))

        with pytest.raises(ConcurrencyError):
            storage.compare_and_swap("t", "1", _record("1", version=3), expected_version=2)

    def test_missing_record_rejected(self):
        storage = InMemoryStorage()
        with pytest.raises(ConcurrencyError):
            storage.compare_and_swap("t", "nope", _record("nope", version=2), expected_version=1)


class TestStorageRecord:

    def test_round_trip_converts_types(self):
        @dataclass
        class Sample(StorageRecord):
            amount: Decimal
            reviewed_at: Optional[datetime] = None

        now = datetime.now(timezone.utc)
        sample = Sample(id="s1", created_at=now, updated_at=now,
                        amount=Decimal("12.34"), reviewed_at=now)
        data = sample.to_dict()

        assert data["amount"] == "12.34"
        assert data["created_at"] == now.isoformat()

        # Unknown keys are ignored
        data["unexpected"] = "x"
        restored = Sample.from_dict(data)
        assert restored.reviewed_at == now
        assert restored.created_at == now


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_urls(self, tmp_path):
        in_memory = create_storage("sqlite://")
        assert isinstance(in_memory, SQLiteStorage)
        assert in_memory.db_path == ":memory:"

        on_disk = create_storage(f"sqlite:///{tmp_path / 'bank.db'}")
        assert on_disk.db_path == str(tmp_path / "bank.db")
        on_disk.close()
        in_memory.close()

    def test_unknown_url(self):
        with pytest.raises(ValueError):
            create_storage("mongodb://localhost")
