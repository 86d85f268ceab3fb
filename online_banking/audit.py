"""
Audit Log Module

Append-only, hash-chained audit log (SHA-256) for tamper detection.
Every destructive or sensitive admin action is recorded here: soft-delete,
restore, permanent delete, role changes and all balance-affecting approvals.

Rows are never updated or deleted; this module exposes no API for either.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord
from .exceptions import AuditWriteError
from .logging_config import get_logger, log_action

logger = get_logger("online_banking.audit")

SENSITIVE_KEYS = ("password", "pin_hash", "pin_salt", "token", "secret", "aml_code")
PERMANENT_DELETE_WARNING = "PERMANENT - DATA CANNOT BE RECOVERED"


class AuditAction(Enum):
    """Kinds of audited actions"""
    # Soft-delete layer
    SOFT_DELETE = "SOFT_DELETE"
    RESTORE = "RESTORE"
    PERMANENT_DELETE = "PERMANENT_DELETE"
    BULK_DELETE = "BULK_DELETE"
    BULK_RESTORE = "BULK_RESTORE"

    # User administration
    DELETE_USER = "DELETE_USER"
    RESTORE_USER = "RESTORE_USER"
    ROLE_CHANGE = "ROLE_CHANGE"
    TOGGLE_ACTIVATION = "TOGGLE_ACTIVATION"

    # Balance-affecting transitions
    DEPOSIT_APPROVED = "DEPOSIT_APPROVED"
    DEPOSIT_REJECTED = "DEPOSIT_REJECTED"
    LOAN_APPROVED = "LOAN_APPROVED"
    LOAN_REJECTED = "LOAN_REJECTED"
    REPAYMENT_APPROVED = "REPAYMENT_APPROVED"
    REPAYMENT_REJECTED = "REPAYMENT_REJECTED"
    TRANSFER_COMPLETED = "TRANSFER_COMPLETED"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    TRANSFER_CANCELLED = "TRANSFER_CANCELLED"
    BALANCE_ADJUSTED = "BALANCE_ADJUSTED"

    # Compliance
    AML_ALERT_REVIEWED = "AML_ALERT_REVIEWED"

    # Support chat
    DELETE_MESSAGE = "DELETE_MESSAGE"
    RESTORE_MESSAGE = "RESTORE_MESSAGE"


class EntityType(Enum):
    """Entity kinds that can appear in the audit log"""
    USER = "user"
    ACCOUNT = "account"
    TRANSACTION = "transaction"
    LOAN = "loan"
    LOAN_REPAYMENT = "loan_repayment"
    DEPOSIT = "deposit"
    TRANSFER = "transfer"
    MESSAGE = "message"
    AML_ALERT = "aml_alert"


def _json_safe(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def sanitize_snapshot(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop credential-like fields from a record snapshot"""
    return {
        k: v for k, v in data.items()
        if not any(marker in k.lower() for marker in SENSITIVE_KEYS)
    }


@dataclass
class AuditLogEntry(StorageRecord):
    """
    Immutable audit row with hash chaining for tamper detection
    """
    actor_id: str
    action: AuditAction
    entity_type: str
    entity_id: str
    sequence: int
    previous_hash: str
    current_hash: str
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def __post_init__(self):
        self.details = _json_safe(self.details or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'actor_id': self.actor_id,
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'details': self.details,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditLogEntry':
        data = dict(data)
        data['action'] = AuditAction(data['action'])
        return super().from_dict(data)


class AuditLogger:
    """
    Writes and reads the append-only audit log.

    Writes join the caller's ``storage.atomic()`` unit, so an audit row and
    the mutation it describes commit together.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_logs",
                 mirror_to_log: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.mirror_to_log = mirror_to_log

    def _all_entries(self) -> List[AuditLogEntry]:
        entries = [AuditLogEntry.from_dict(data) for data in self.storage.load_all(self.table_name)]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def _chain_head(self):
        entries = self.storage.load_all(self.table_name)
        if not entries:
            return 0, ""
        last = max(entries, key=lambda e: e['sequence'])
        return last['sequence'], last['current_hash']

    def log(
        self,
        actor_id: str,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: str,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> AuditLogEntry:
        """
        Append an audit row.

        Args:
            actor_id: ID of the admin or user performing the action
            action: What was done
            entity_type: Kind of entity affected
            entity_id: ID of the affected entity
            details: JSON detail blob (snapshots, reasons, amounts)
            ip_address: Client address, when known
            user_agent: Client user agent, when known

        Returns:
            The stored AuditLogEntry

        Raises:
            AuditWriteError: if the row could not be persisted
        """
        entity_value = entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)

        with self.storage.atomic():
            sequence, previous_hash = self._chain_head()
            now = datetime.now(timezone.utc)
            entry = AuditLogEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                actor_id=actor_id,
                action=action,
                entity_type=entity_value,
                entity_id=entity_id,
                sequence=sequence + 1,
                previous_hash=previous_hash,
                current_hash="",
                details=details or {},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            entry.current_hash = entry.calculate_hash()

            try:
                self.storage.save(self.table_name, entry.id, entry.to_dict())
            except Exception as e:
                logger.error("Audit write failed for %s %s/%s: %s",
                             action.value, entity_value, entity_id, e)
                raise AuditWriteError(f"Failed to write audit log: {e}") from e

        if self.mirror_to_log:
            log_action(logger, "info", f"Audit: {action.value}",
                       user_id=actor_id, action=action.value,
                       resource=f"{entity_value}:{entity_id}")
        return entry

    def log_soft_delete(self, actor_id: str, entity_type: EntityType, entity_id: str,
                        snapshot: Dict[str, Any], **client) -> AuditLogEntry:
        return self.log(actor_id, AuditAction.SOFT_DELETE, entity_type, entity_id,
                        {'deleted_data': sanitize_snapshot(snapshot)}, **client)

    def log_restore(self, actor_id: str, entity_type: EntityType, entity_id: str,
                    snapshot: Dict[str, Any], **client) -> AuditLogEntry:
        return self.log(actor_id, AuditAction.RESTORE, entity_type, entity_id,
                        {'restored_data': sanitize_snapshot(snapshot)}, **client)

    def log_permanent_delete(self, actor_id: str, entity_type: EntityType, entity_id: str,
                             snapshot: Dict[str, Any], reason: str, **client) -> AuditLogEntry:
        return self.log(actor_id, AuditAction.PERMANENT_DELETE, entity_type, entity_id, {
            'deleted_data': sanitize_snapshot(snapshot),
            'reason': reason,
            'warning': PERMANENT_DELETE_WARNING,
        }, **client)

    def log_user_deletion(self, actor_id: str, user_id: str, snapshot: Dict[str, Any],
                          cascade_counts: Optional[Dict[str, int]] = None,
                          **client) -> AuditLogEntry:
        """Audit a user deletion, without credentials in the snapshot"""
        return self.log(actor_id, AuditAction.DELETE_USER, EntityType.USER, user_id, {
            'user_data': sanitize_snapshot(snapshot),
            'cascade': cascade_counts or {},
        }, **client)

    def log_bulk_delete(self, actor_id: str, entity_type: EntityType,
                        entity_ids: List[str], **client) -> AuditLogEntry:
        return self.log(actor_id, AuditAction.BULK_DELETE, entity_type, "bulk", {
            'entity_ids': list(entity_ids),
            'count': len(entity_ids),
        }, **client)

    def log_bulk_restore(self, actor_id: str, entity_type: EntityType,
                         entity_ids: List[str], **client) -> AuditLogEntry:
        return self.log(actor_id, AuditAction.BULK_RESTORE, entity_type, "bulk", {
            'entity_ids': list(entity_ids),
            'count': len(entity_ids),
        }, **client)

    def get_logs_for_entity(self, entity_type: EntityType, entity_id: str) -> List[AuditLogEntry]:
        """Audit history of one entity, oldest first"""
        entity_value = entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)
        rows = self.storage.find(self.table_name, {
            'entity_type': entity_value,
            'entity_id': entity_id,
        })
        entries = [AuditLogEntry.from_dict(data) for data in rows]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def get_logs_by_actor(self, actor_id: str, limit: int = 100) -> List[AuditLogEntry]:
        """Most recent actions of one actor, newest first"""
        rows = self.storage.find(self.table_name, {'actor_id': actor_id})
        entries = [AuditLogEntry.from_dict(data) for data in rows]
        entries.sort(key=lambda e: e.sequence, reverse=True)
        return entries[:limit]

    def get_recent_logs(self, limit: int = 50, action: Optional[AuditAction] = None) -> List[AuditLogEntry]:
        """Most recent audit rows, newest first"""
        entries = self._all_entries()
        if action:
            entries = [e for e in entries if e.action == action]
        entries.reverse()
        return entries[:limit]

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        entries = self._all_entries()
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                })
            previous_hash = entry.current_hash

        if not result['valid']:
            logger.error("Audit chain verification failed: %d hash errors, %d chain breaks",
                         len(result['hash_errors']), len(result['chain_breaks']))
        return result
