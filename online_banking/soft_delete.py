"""
Soft-Delete Module

Generic soft-delete, restore and permanent delete over any table whose
records carry a ``deleted_at`` / ``deleted_by`` pair. Both fields are set
together or cleared together, and every call writes its audit row in the
same atomic unit as the mutation.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Iterable

from .storage import StorageInterface
from .audit import AuditLogger, EntityType, sanitize_snapshot
from .exceptions import NotFoundError, InvalidStateTransitionError, ValidationError
from .logging_config import get_logger, log_action

logger = get_logger("online_banking.soft_delete")

# Table backing each soft-deletable entity type
ENTITY_TABLES: Dict[EntityType, str] = {
    EntityType.USER: "users",
    EntityType.ACCOUNT: "accounts",
    EntityType.TRANSACTION: "transactions",
    EntityType.LOAN: "loans",
    EntityType.LOAN_REPAYMENT: "loan_repayments",
    EntityType.DEPOSIT: "deposits",
    EntityType.TRANSFER: "transfers",
    EntityType.MESSAGE: "chat_messages",
    EntityType.AML_ALERT: "aml_alerts",
}


def table_for(entity_type: EntityType) -> str:
    return ENTITY_TABLES[entity_type]


def is_record_deleted(record: Dict[str, Any]) -> bool:
    return record.get('deleted_at') is not None


def stamp_deleted(record: Dict[str, Any], actor_id: str, when: datetime) -> Dict[str, Any]:
    """Mark a record dict deleted, bumping its version when it has one"""
    record['deleted_at'] = when.isoformat()
    record['deleted_by'] = actor_id
    record['updated_at'] = when.isoformat()
    if 'version' in record:
        record['version'] = int(record['version']) + 1
    return record


def clear_deleted(record: Dict[str, Any], when: datetime) -> Dict[str, Any]:
    record['deleted_at'] = None
    record['deleted_by'] = None
    record['updated_at'] = when.isoformat()
    if 'version' in record:
        record['version'] = int(record['version']) + 1
    return record


class SoftDeleteManager:
    """
    Soft-delete layer shared by every entity type.

    ``client`` keyword arguments (``ip_address``, ``user_agent``) are passed
    through to the audit row.
    """

    def __init__(self, storage: StorageInterface, audit: AuditLogger):
        self.storage = storage
        self.audit = audit

    def _write(self, table: str, before: Dict[str, Any], after: Dict[str, Any]) -> None:
        if 'version' in before:
            self.storage.compare_and_swap(table, after['id'], after, int(before['version']))
        else:
            self.storage.save(table, after['id'], after)

    def _check_generic(self, entity_type: EntityType) -> None:
        # users cascade over everything they own
        if entity_type == EntityType.USER:
            raise ValidationError("Users are deleted and restored through delete_user / restore_user")

    def _load(self, entity_type: EntityType, record_id: str) -> Dict[str, Any]:
        record = self.storage.load(table_for(entity_type), record_id)
        if record is None:
            raise NotFoundError(f"{entity_type.value} {record_id} not found")
        return record

    def soft_delete(self, entity_type: EntityType, record_id: str, actor_id: str,
                    **client) -> Dict[str, Any]:
        """
        Hide a record from active queries while keeping the row.

        Raises:
            NotFoundError: unknown id
            InvalidStateTransitionError: record is already deleted
        """
        self._check_generic(entity_type)
        table = table_for(entity_type)
        with self.storage.atomic():
            record = self._load(entity_type, record_id)
            if is_record_deleted(record):
                raise InvalidStateTransitionError(f"{entity_type.value} {record_id} is already deleted")

            snapshot = dict(record)
            updated = stamp_deleted(dict(record), actor_id, datetime.now(timezone.utc))
            self._write(table, record, updated)
            self.audit.log_soft_delete(actor_id, entity_type, record_id, snapshot, **client)

        log_action(logger, "info", f"Soft-deleted {entity_type.value} {record_id}",
                   user_id=actor_id, action="soft_delete", resource=f"{entity_type.value}:{record_id}")
        return updated

    def restore(self, entity_type: EntityType, record_id: str, actor_id: str,
                **client) -> Dict[str, Any]:
        """
        Bring a soft-deleted record back into active queries.

        Raises:
            NotFoundError: unknown id
            InvalidStateTransitionError: record is not deleted
        """
        self._check_generic(entity_type)
        table = table_for(entity_type)
        with self.storage.atomic():
            record = self._load(entity_type, record_id)
            if not is_record_deleted(record):
                raise InvalidStateTransitionError(f"{entity_type.value} {record_id} is not deleted")

            snapshot = dict(record)
            updated = clear_deleted(dict(record), datetime.now(timezone.utc))
            self._write(table, record, updated)
            self.audit.log_restore(actor_id, entity_type, record_id, snapshot, **client)

        log_action(logger, "info", f"Restored {entity_type.value} {record_id}",
                   user_id=actor_id, action="restore", resource=f"{entity_type.value}:{record_id}")
        return updated

    def permanent_delete(self, entity_type: EntityType, record_id: str, actor_id: str,
                         reason: str, **client) -> Dict[str, Any]:
        """
        Hard-remove a record. Compliance use only (e.g. right to be forgotten).

        The audit row, carrying the full snapshot and the reason, is written
        before the row is removed.

        Raises:
            ValidationError: no reason given
            NotFoundError: unknown id
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for permanent deletion")

        table = table_for(entity_type)
        with self.storage.atomic():
            record = self._load(entity_type, record_id)
            self.audit.log_permanent_delete(actor_id, entity_type, record_id,
                                            dict(record), reason.strip(), **client)
            self.storage.delete(table, record_id)

        log_action(logger, "warning", f"Permanently deleted {entity_type.value} {record_id}",
                   user_id=actor_id, action="permanent_delete",
                   resource=f"{entity_type.value}:{record_id}", extra={'reason': reason})
        return record

    def is_deleted(self, entity_type: EntityType, record_id: str) -> bool:
        """True when the record exists and is soft-deleted"""
        record = self.storage.load(table_for(entity_type), record_id)
        if record is None:
            return False
        return is_record_deleted(record)

    def get_deletion_metadata(self, entity_type: EntityType, record_id: str) -> Optional[Dict[str, Any]]:
        record = self.storage.load(table_for(entity_type), record_id)
        if record is None or not is_record_deleted(record):
            return None
        return {
            'deleted_at': datetime.fromisoformat(record['deleted_at']),
            'deleted_by': record['deleted_by'],
        }

    def get_active_records(self, entity_type: EntityType,
                           filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        rows = self.storage.find(table_for(entity_type), filters or {})
        return [sanitize_snapshot(row) for row in rows if not is_record_deleted(row)]

    def get_deleted_records(self, entity_type: EntityType, limit: Optional[int] = None,
                            filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Deleted rows, most recently deleted first"""
        rows = self.storage.find(table_for(entity_type), filters or {})
        deleted = [row for row in rows if is_record_deleted(row)]
        deleted.sort(key=lambda row: row['deleted_at'], reverse=True)
        if limit:
            deleted = deleted[:limit]
        return [sanitize_snapshot(row) for row in deleted]

    def bulk_soft_delete(self, entity_type: EntityType, record_ids: Iterable[str],
                         actor_id: str, **client) -> int:
        """
        Soft-delete many rows under one BULK_DELETE audit row.

        Unknown or already deleted ids are skipped. Returns the number of rows
        that were actually deleted.
        """
        self._check_generic(entity_type)
        table = table_for(entity_type)
        now = datetime.now(timezone.utc)
        affected = []
        with self.storage.atomic():
            for record_id in record_ids:
                record = self.storage.load(table, record_id)
                if record is None or is_record_deleted(record):
                    continue
                self._write(table, record, stamp_deleted(dict(record), actor_id, now))
                affected.append(record_id)
            if affected:
                self.audit.log_bulk_delete(actor_id, entity_type, affected, **client)

        logger.info("Bulk soft-deleted %d %s rows", len(affected), entity_type.value)
        return len(affected)

    def bulk_restore(self, entity_type: EntityType, record_ids: Iterable[str],
                     actor_id: str, **client) -> int:
        """Inverse of ``bulk_soft_delete``; rows that are not deleted are skipped"""
        self._check_generic(entity_type)
        table = table_for(entity_type)
        now = datetime.now(timezone.utc)
        affected = []
        with self.storage.atomic():
            for record_id in record_ids:
                record = self.storage.load(table, record_id)
                if record is None or not is_record_deleted(record):
                    continue
                self._write(table, record, clear_deleted(dict(record), now))
                affected.append(record_id)
            if affected:
                self.audit.log_bulk_restore(actor_id, entity_type, affected, **client)

        logger.info("Bulk restored %d %s rows", len(affected), entity_type.value)
        return len(affected)
