"""
Tests for storage backends, conditional updates and atomic blocks
"""

import pytest
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

from lending_core.storage import InMemoryStorage, SQLiteStorage, create_storage


test_data = {
    "id": "loan_001",
    "status": "fully_signed",
    "operation_lock": None,
    "weekly_payment": "185.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Each test runs against both backends"""
    if request.param == "memory":
        backend = InMemoryStorage()
        yield backend
        backend.close()
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            backend = SQLiteStorage(Path(temp_dir) / "test.db")
            yield backend
            backend.close()


class TestBasicOperations:
    """Test CRUD operations shared by all backends"""

    def test_save_load_find_delete(self, storage):
        """Test basic record lifecycle"""
        storage.save("loans", "loan_001", test_data)
        assert storage.load("loans", "loan_001") == test_data
        assert storage.exists("loans", "loan_001")
        assert not storage.exists("loans", "missing")
        assert storage.load("loans", "missing") is None

        storage.save("loans", "loan_002", {"id": "loan_002", "status": "draft"})
        assert storage.count("loans") == 2
        assert len(storage.load_all("loans")) == 2

        results = storage.find("loans", {"status": "draft"})
        assert [r["id"] for r in results] == ["loan_002"]

        assert storage.delete("loans", "loan_001")
        assert not storage.delete("loans", "loan_001")
        assert storage.count("loans") == 1

        storage.clear_table("loans")
        assert storage.count("loans") == 0

    def test_loaded_records_are_copies(self, storage):
        """Test that mutating a loaded record does not change storage"""
        storage.save("loans", "loan_001", test_data)
        loaded = storage.load("loans", "loan_001")
        loaded["status"] = "funded"
        assert storage.load("loans", "loan_001")["status"] == "fully_signed"


class TestCompareAndSet:
    """Test conditional updates used for claims and status transitions"""

    def test_update_when_expected_matches(self, storage):
        """Test the update applies when the stored values match"""
        storage.save("loans", "loan_001", test_data)

        applied = storage.compare_and_set(
            "loans", "loan_001",
            expected={"status": "fully_signed", "operation_lock": None},
            updates={"operation_lock": "funding:abc"}
        )

        assert applied
        record = storage.load("loans", "loan_001")
        assert record["operation_lock"] == "funding:abc"
        assert record["weekly_payment"] == "185.50"

    def test_no_update_when_expected_differs(self, storage):
        """Test the update is refused when a value changed"""
        storage.save("loans", "loan_001", test_data)

        applied = storage.compare_and_set(
            "loans", "loan_001",
            expected={"status": "funded"},
            updates={"status": "closed"}
        )

        assert not applied
        assert storage.load("loans", "loan_001")["status"] == "fully_signed"

    def test_second_claim_fails(self, storage):
        """Test that only one of two claims on the same loan succeeds"""
        storage.save("loans", "loan_001", test_data)
        expected = {"status": "fully_signed", "operation_lock": None}

        first = storage.compare_and_set("loans", "loan_001", expected, {"operation_lock": "a"})
        second = storage.compare_and_set("loans", "loan_001", expected, {"operation_lock": "b"})

        assert first and not second
        assert storage.load("loans", "loan_001")["operation_lock"] == "a"

    def test_release_to_null(self, storage):
        """Test writing None back makes the record claimable again"""
        storage.save("loans", "loan_001", dict(test_data, operation_lock="a"))

        assert storage.compare_and_set("loans", "loan_001", {"operation_lock": "a"}, {"operation_lock": None})
        assert storage.load("loans", "loan_001")["operation_lock"] is None
        assert storage.compare_and_set("loans", "loan_001", {"operation_lock": None}, {"operation_lock": "b"})

    def test_missing_record(self, storage):
        """Test a missing record is never updated"""
        assert not storage.compare_and_set("loans", "missing", {"status": "draft"}, {"status": "funded"})

    def test_bool_and_int_values_round_trip(self, storage):
        """Test non-string values written by a conditional update"""
        storage.save("loans", "loan_001", test_data)
        storage.compare_and_set("loans", "loan_001", {"status": "fully_signed"},
                                {"is_late": True, "days_overdue": 33})
        record = storage.load("loans", "loan_001")
        assert record["is_late"] is True
        assert record["days_overdue"] == 33

    def test_concurrent_claims(self, storage):
        """Test that concurrent claims produce exactly one winner"""
        storage.save("loans", "loan_001", test_data)
        results = []

        def claim(token):
            results.append(storage.compare_and_set(
                "loans", "loan_001",
                {"status": "fully_signed", "operation_lock": None},
                {"operation_lock": token}
            ))

        threads = [threading.Thread(target=claim, args=(f"t{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1


class TestInsertUnique:
    """Test the unique insert used for usage idempotency"""

    def test_first_insert_wins(self, storage):
        """Test a duplicate id is rejected and the first record kept"""
        assert storage.insert_unique("verification_usage", "ver_1", {"id": "ver_1", "quantity": 1})
        assert not storage.insert_unique("verification_usage", "ver_1", {"id": "ver_1", "quantity": 5})

        assert storage.count("verification_usage") == 1
        assert storage.load("verification_usage", "ver_1")["quantity"] == 1


class TestAtomic:
    """Test atomic blocks"""

    def test_commit(self, storage):
        """Test writes inside a successful block persist"""
        with storage.atomic():
            storage.save("payment_schedules", "s1", {"id": "s1"})
            storage.save("payment_schedules", "s2", {"id": "s2"})
        assert storage.count("payment_schedules") == 2

    def test_rollback_on_error(self, storage):
        """Test a failing block leaves no partial writes"""
        storage.save("payment_schedules", "s1", {"id": "s1", "status": "pending"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.delete("payment_schedules", "s1")
                storage.save("payment_schedules", "s2", {"id": "s2"})
                raise RuntimeError("boom")

        assert storage.load("payment_schedules", "s1") == {"id": "s1", "status": "pending"}
        assert not storage.exists("payment_schedules", "s2")

    def test_nested_blocks(self, storage):
        """Test an inner block commits with the outer one"""
        with storage.atomic():
            storage.save("payment_schedules", "s1", {"id": "s1"})
            with storage.atomic():
                storage.save("payment_schedules", "s2", {"id": "s2"})
        assert storage.count("payment_schedules") == 2


class TestCreateStorage:
    """Test building storage from a database URL"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            backend = create_storage(f"sqlite:///{temp_dir}/lending.db")
            assert isinstance(backend, SQLiteStorage)
            backend.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("postgresql://localhost/lending")
