"""
Tests for storage backends and transaction support
"""

import pytest
from decimal import Decimal

from deposit_engine.storage import (
    InMemoryStorage, SQLiteStorage, IncompatibleValueError, StorageError,
    UniqueConstraintViolation, create_storage
)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "test.db")
    yield backend
    backend.close()


def record(record_id, **fields):
    data = {"id": record_id, "created_at": "2024-01-01T00:00:00+00:00",
            "updated_at": "2024-01-01T00:00:00+00:00"}
    data.update(fields)
    return data


class TestBasicOperations:

    def test_save_load_find(self, storage):
        storage.save("things", "a", record("a", kind="x", amount="100.50"))
        storage.save("things", "b", record("b", kind="y"))

        assert storage.load("things", "a")["amount"] == "100.50"
        assert storage.exists("things", "b")
        assert not storage.exists("things", "zzz")
        assert [r["id"] for r in storage.find("things", {"kind": "x"})] == ["a"]
        assert storage.count("things") == 2

    def test_save_overwrites_but_keeps_order(self, storage):
        storage.save("things", "a", record("a", n=1))
        storage.save("things", "b", record("b", n=2))
        storage.save("things", "a", record("a", n=3))

        assert [r["id"] for r in storage.load_all("things")] == ["a", "b"]
        assert storage.load("things", "a")["n"] == 3

    def test_insert_rejects_existing_id(self, storage):
        storage.insert("things", "a", record("a"))
        with pytest.raises(UniqueConstraintViolation):
            storage.insert("things", "a", record("a"))

    def test_delete_and_clear(self, storage):
        storage.save("things", "a", record("a"))
        assert storage.delete("things", "a")
        assert not storage.delete("things", "a")
        storage.save("things", "b", record("b"))
        storage.clear_table("things")
        assert storage.count("things") == 0


class TestUniqueConstraints:

    def test_composite_constraint(self, storage):
        storage.add_unique_constraint("accounts", "ux_party_product", ["party_id", "product_code"])
        storage.insert("accounts", "1", record("1", party_id="M1", product_code="SAV"))
        storage.insert("accounts", "2", record("2", party_id="M1", product_code="FD"))

        with pytest.raises(UniqueConstraintViolation):
            storage.insert("accounts", "3", record("3", party_id="M1", product_code="SAV"))

    def test_partial_constraint_only_covers_matching_rows(self, storage):
        storage.add_unique_constraint(
            "batches", "ux_active", ["product_code", "quarter_key"], where={"reversed": False}
        )
        storage.insert("batches", "1", record("1", product_code="SAV", quarter_key="2024Q1", reversed=False))

        with pytest.raises(UniqueConstraintViolation):
            storage.insert("batches", "2", record("2", product_code="SAV", quarter_key="2024Q1", reversed=False))

        first = storage.load("batches", "1")
        first["reversed"] = True
        storage.save("batches", "1", first)

        storage.insert("batches", "2", record("2", product_code="SAV", quarter_key="2024Q1", reversed=False))
        assert storage.count("batches") == 2


class TestAtomicOperations:

    def test_rollback_discards_all_writes(self, storage):
        storage.save("things", "a", record("a", n=1))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("things", "a", record("a", n=2))
                storage.save("things", "b", record("b"))
                raise RuntimeError("boom")

        assert storage.load("things", "a")["n"] == 1
        assert storage.load("things", "b") is None

    def test_nested_blocks_commit_with_outer(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("things", "inner", record("inner"))
                raise RuntimeError("outer fails")

        assert storage.load("things", "inner") is None

    def test_commit_keeps_writes(self, storage):
        with storage.atomic():
            storage.save("things", "a", record("a"))
        assert storage.exists("things", "a")

    def test_sequences_increase(self, storage):
        assert storage.next_sequence("ledger") == 1
        assert storage.next_sequence("ledger") == 2
        assert storage.next_sequence("other") == 1


class TestIncrementAndCompareAndSwap:

    def test_increment_adds_decimal_strings(self, storage):
        storage.save("products", "SAV", record("SAV", total_balance="10.10"))
        updated = storage.increment("products", "SAV", {"total_balance": Decimal("0.20"),
                                                        "total_interest_paid": Decimal("1.00")})
        assert Decimal(updated["total_balance"]) == Decimal("10.30")
        assert Decimal(storage.load("products", "SAV")["total_interest_paid"]) == Decimal("1.00")

    def test_increment_rejects_non_numeric_field(self, storage):
        storage.save("products", "SAV", record("SAV", total_balance="N/A"))
        with pytest.raises(IncompatibleValueError) as exc_info:
            storage.increment("products", "SAV", {"total_balance": Decimal("1")})
        assert exc_info.value.field == "total_balance"
        assert storage.load("products", "SAV")["total_balance"] == "N/A"

    def test_increment_missing_record(self, storage):
        with pytest.raises(StorageError):
            storage.increment("products", "NOPE", {"total_balance": Decimal("1")})

    def test_compare_and_swap(self, storage):
        storage.save("accounts", "1", record("1", balance="0.00", version=0))

        assert storage.compare_and_swap("accounts", "1", 0, record("1", balance="5.00", version=0))
        assert storage.load("accounts", "1")["version"] == 1

        # A writer holding the stale version loses
        assert not storage.compare_and_swap("accounts", "1", 0, record("1", balance="9.00", version=0))
        assert storage.load("accounts", "1")["balance"] == "5.00"


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        backend = create_storage(f"sqlite:///{tmp_path / 'engine.db'}")
        assert isinstance(backend, SQLiteStorage)
        backend.close()

    def test_unknown_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/db")
