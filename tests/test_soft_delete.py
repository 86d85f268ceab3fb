"""
Tests for the generic soft-delete layer
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import patch

from online_banking.storage import InMemoryStorage
from online_banking.audit import AuditLogger, AuditAction, EntityType
from online_banking.soft_delete import SoftDeleteManager, table_for, is_record_deleted
from online_banking.exceptions import (
    NotFoundError, InvalidStateTransitionError, ValidationError, ConcurrencyError,
    AuditWriteError,
)


def _deposit(deposit_id: str, version: int = 1):
    now = datetime.now(timezone.utc).isoformat()
    return {
        "id": deposit_id, "created_at": now, "updated_at": now,
        "user_id": "u-1", "amount": "5000.00", "status": "PENDING",
        "version": version, "deleted_at": None, "deleted_by": None,
    }


CREDENTIAL_FIELDS = ("pin_hash", "pin_salt", "aml_code", "aml_code_expires_at")


def _user(deleted: bool = False):
    now = datetime.now(timezone.utc).isoformat()
    return {
        "id": "u-1", "created_at": now, "updated_at": now, "username": "alice",
        "pin_hash": "ab12", "pin_salt": "cd34", "aml_code": "123456", "aml_code_expires_at": now,
        "deleted_at": now if deleted else None, "deleted_by": "admin-1" if deleted else None,
    }


class TestSoftDeleteManager:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditLogger(self.storage, mirror_to_log=False)
        self.manager = SoftDeleteManager(self.storage, self.audit)
        self.table = table_for(EntityType.DEPOSIT)
        self.storage.save(self.table, "dep-1", _deposit("dep-1"))

    def test_soft_delete_sets_both_fields(self):
        updated = self.manager.soft_delete(EntityType.DEPOSIT, "dep-1", "admin-1", ip_address="1.2.3.4")

        stored = self.storage.load(self.table, "dep-1")
        assert stored["deleted_by"] == "admin-1"
        assert stored["deleted_at"] is not None
        assert stored["version"] == 2
        assert updated["deleted_at"] == stored["deleted_at"]
        assert self.manager.is_deleted(EntityType.DEPOSIT, "dep-1")

        entry = self.audit.get_logs_for_entity(EntityType.DEPOSIT, "dep-1")[0]
        assert entry.action == AuditAction.SOFT_DELETE
        assert entry.details["deleted_data"]["deleted_at"] is None
        assert entry.ip_address == "1.2.3.4"

    def test_double_delete_rejected(self):
        self.manager.soft_delete(EntityType.DEPOSIT, "dep-1", "admin-1")
        with pytest.raises(InvalidStateTransitionError):
            self.manager.soft_delete(EntityType.DEPOSIT, "dep-1", "admin-1")
        assert self.audit.count() == 1

    def test_restore_clears_both_fields(self):
        self.manager.soft_delete(EntityType.DEPOSIT, "dep-1", "admin-1")
        self.manager.restore(EntityType.DEPOSIT, "dep-1", "admin-2")

        stored = self.storage.load(self.table, "dep-1")
        assert stored["deleted_at"] is None
        assert stored["deleted_by"] is None
        assert not is_record_deleted(stored)
        actions = [e.action for e in self.audit.get_logs_for_entity(EntityType.DEPOSIT, "dep-1")]
        assert actions == [AuditAction.SOFT_DELETE, AuditAction.RESTORE]

    def test_restore_of_active_record_rejected(self):
        with pytest.raises(InvalidStateTransitionError):
            self.manager.restore(EntityType.DEPOSIT, "dep-1", "admin-1")

    def test_unknown_record(self):
        with pytest.raises(NotFoundError):
            self.manager.soft_delete(EntityType.DEPOSIT, "missing", "admin-1")
        assert not self.manager.is_deleted(EntityType.DEPOSIT, "missing")

    def test_permanent_delete_requires_reason(self):
        with pytest.raises(ValidationError):
            self.manager.permanent_delete(EntityType.DEPOSIT, "dep-1", "super-1", "   ")
        assert self.storage.exists(self.table, "dep-1")

    def test_permanent_delete_writes_audit_before_removal(self):
        self.manager.permanent_delete(EntityType.DEPOSIT, "dep-1", "super-1", "Right to be forgotten")

        assert not self.storage.exists(self.table, "dep-1")
        entry = self.audit.get_logs_for_entity(EntityType.DEPOSIT, "dep-1")[0]
        assert entry.action == AuditAction.PERMANENT_DELETE
        assert entry.details["reason"] == "Right to be forgotten"
        assert entry.details["deleted_data"]["amount"] == "5000.00"

    def test_stale_version_rejected(self):
        record = self.storage.load(self.table, "dep-1")
        # Another writer bumps the version between our load and write
        self.storage.save(self.table, "dep-1", dict(record, version=5))
        with pytest.raises(ConcurrencyError):
            self.manager._write(self.table, record, dict(record, version=2))

    def test_active_and_deleted_queries(self):
        self.storage.save(self.table, "dep-2", _deposit("dep-2"))
        self.storage.save(self.table, "dep-3", _deposit("dep-3"))
        self.manager.soft_delete(EntityType.DEPOSIT, "dep-2", "admin-1")
        self.manager.soft_delete(EntityType.DEPOSIT, "dep-3", "admin-1")

        active = self.manager.get_active_records(EntityType.DEPOSIT)
        assert [r["id"] for r in active] == ["dep-1"]

        deleted = self.manager.get_deleted_records(EntityType.DEPOSIT)
        assert [r["id"] for r in deleted] == ["dep-3", "dep-2"]
        assert len(self.manager.get_deleted_records(EntityType.DEPOSIT, limit=1)) == 1

        meta = self.manager.get_deletion_metadata(EntityType.DEPOSIT, "dep-2")
        assert meta["deleted_by"] == "admin-1"
        assert isinstance(meta["deleted_at"], datetime)
        assert self.manager.get_deletion_metadata(EntityType.DEPOSIT, "dep-1") is None

    def test_bulk_delete_and_restore(self):
        self.storage.save(self.table, "dep-2", _deposit("dep-2"))
        self.manager.soft_delete(EntityType.DEPOSIT, "dep-2", "admin-1")

        count = self.manager.bulk_soft_delete(EntityType.DEPOSIT, ["dep-1", "dep-2", "missing"], "admin-1")
        assert count == 1

        bulk = self.audit.get_recent_logs(action=AuditAction.BULK_DELETE)[0]
        assert bulk.details["entity_ids"] == ["dep-1"]

        restored = self.manager.bulk_restore(EntityType.DEPOSIT, ["dep-1", "dep-2"], "admin-1")
        assert restored == 2
        assert self.manager.get_deleted_records(EntityType.DEPOSIT) == []

    def test_bulk_with_nothing_to_do_writes_no_audit(self):
        assert self.manager.bulk_restore(EntityType.DEPOSIT, ["dep-1"], "admin-1") == 0
        assert self.audit.count() == 0

    def test_users_are_not_deleted_generically(self):
        self.storage.save(table_for(EntityType.USER), "u-1", _user())

        with pytest.raises(ValidationError):
            self.manager.soft_delete(EntityType.USER, "u-1", "admin-1")
        with pytest.raises(ValidationError):
            self.manager.bulk_soft_delete(EntityType.USER, ["u-1"], "admin-1")

        assert not self.manager.is_deleted(EntityType.USER, "u-1")
        assert self.audit.count() == 0

    def test_credentials_kept_out_of_listings_and_audit(self):
        self.storage.save(table_for(EntityType.USER), "u-1", _user(deleted=True))

        row = self.manager.get_deleted_records(EntityType.USER)[0]
        assert row["username"] == "alice"
        assert not set(CREDENTIAL_FIELDS) & set(row)

        self.manager.permanent_delete(EntityType.USER, "u-1", "super-1", "Right to be forgotten")
        snapshot = self.audit.get_logs_for_entity(EntityType.USER, "u-1")[0].details["deleted_data"]
        assert snapshot["username"] == "alice"
        assert not set(CREDENTIAL_FIELDS) & set(snapshot)

    def test_failed_audit_write_keeps_record_active(self):
        save = self.storage.save

        def failing_save(table, record_id, data):
            if table == self.audit.table_name:
                raise OSError("disk full")
            save(table, record_id, data)

        with patch.object(self.storage, "save", side_effect=failing_save):
            with pytest.raises(AuditWriteError):
                self.manager.soft_delete(EntityType.DEPOSIT, "dep-1", "admin-1")

        stored = self.storage.load(self.table, "dep-1")
        assert stored["deleted_at"] is None
        assert stored["deleted_by"] is None
        assert stored["version"] == 1
        assert self.audit.count() == 0
