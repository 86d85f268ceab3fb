"""
User Registry Module

The slice of user management the ledger and admin flows need: roles,
activation, transaction PINs, per-user AML codes, and cascading
soft-delete/restore of a user with everything they own. Login sessions
live outside this package.
"""

import hashlib
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Dict, List, Optional, Any, Tuple

from .storage import StorageInterface, StorageRecord
from .audit import AuditLogger, AuditAction, EntityType
from .soft_delete import table_for, stamp_deleted, clear_deleted
from .exceptions import (
    ValidationError, AuthenticationError, AuthorizationError,
    NotFoundError, InvalidStateTransitionError,
)
from .logging_config import get_logger, log_action

logger = get_logger("online_banking.users")


class UserRole(Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass
class User(StorageRecord):
    """Bank customer or back-office admin"""
    username: str
    email: str
    full_name: str
    role: UserRole = UserRole.USER
    is_super_admin: bool = False
    is_active: bool = True
    pin_hash: Optional[str] = None
    pin_salt: Optional[str] = None
    aml_code: Optional[str] = None
    aml_code_expires_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def has_transaction_pin(self) -> bool:
        return self.pin_hash is not None

    def public_dict(self) -> Dict[str, Any]:
        """Serializable view without credentials"""
        data = self.to_dict()
        for key in ('pin_hash', 'pin_salt', 'aml_code'):
            data.pop(key, None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        data = dict(data)
        data['role'] = UserRole(data['role'])
        return super().from_dict(data)


class UserManager:
    """
    User registry backed by the ``users`` table
    """

    def __init__(self, storage: StorageInterface, audit: AuditLogger,
                 pin_length: int = 4, aml_code_length: int = 6,
                 aml_code_expiry_hours: int = 24):
        self.storage = storage
        self.audit = audit
        self.pin_length = pin_length
        self.aml_code_length = aml_code_length
        self.aml_code_expiry_hours = aml_code_expiry_hours
        self.table_name = table_for(EntityType.USER)

    def create_user(self, username: str, email: str, full_name: str,
                    role: UserRole = UserRole.USER, is_super_admin: bool = False) -> User:
        """
        Register a user.

        Raises:
            ValidationError: missing fields or e-mail already registered
        """
        if not username or not email or not full_name:
            raise ValidationError("username, email and full_name are required")
        email = email.strip().lower()
        if "@" not in email:
            raise ValidationError(f"Invalid email: {email}")
        if self.storage.find(self.table_name, {'email': email}):
            raise ValidationError(f"Email {email} is already registered")

        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            username=username,
            email=email,
            full_name=full_name,
            role=role,
            is_super_admin=is_super_admin,
        )
        self.storage.save(self.table_name, user.id, user.to_dict())
        logger.info("Created %s %s", role.value, user.id)
        return user

    def get_user(self, user_id: str, include_deleted: bool = False) -> User:
        """
        Raises:
            NotFoundError: unknown id, or soft-deleted unless ``include_deleted``
        """
        data = self.storage.load(self.table_name, user_id)
        if data is None:
            raise NotFoundError(f"User {user_id} not found")
        user = User.from_dict(data)
        if user.is_deleted and not include_deleted:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        rows = self.storage.find(self.table_name, {'email': email.strip().lower(), 'deleted_at': None})
        return User.from_dict(rows[0]) if rows else None

    def list_users(self, include_deleted: bool = False, only_deleted: bool = False) -> List[User]:
        users = [User.from_dict(data) for data in self.storage.load_all(self.table_name)]
        if only_deleted:
            return [u for u in users if u.is_deleted]
        if not include_deleted:
            users = [u for u in users if not u.is_deleted]
        return users

    def _save(self, user: User) -> None:
        user.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, user.id, user.to_dict())

    def _hash_pin(self, pin: str, salt: str) -> str:
        """Hash PIN with salt using scrypt"""
        return hashlib.scrypt(pin.encode(), salt=salt.encode(), n=16384, r=8, p=1).hex()

    def set_transaction_pin(self, user_id: str, pin: str) -> None:
        if not isinstance(pin, str) or not re.fullmatch(f"[0-9]{{{self.pin_length}}}", pin):
            raise ValidationError(f"PIN must be exactly {self.pin_length} digits")
        user = self.get_user(user_id)
        user.pin_salt = secrets.token_hex(16)
        user.pin_hash = self._hash_pin(pin, user.pin_salt)
        self._save(user)

    def verify_transaction_pin(self, user_id: str, pin: Optional[str]) -> None:
        """
        Raises:
            ValidationError: PIN missing, malformed, or never set
            AuthenticationError: PIN does not match
        """
        if not isinstance(pin, str) or not re.fullmatch(f"[0-9]{{{self.pin_length}}}", pin):
            raise ValidationError(f"PIN must be exactly {self.pin_length} digits")
        user = self.get_user(user_id)
        if not user.has_transaction_pin:
            raise ValidationError("Transaction PIN has not been set")
        expected = self._hash_pin(pin, user.pin_salt)
        if not secrets.compare_digest(expected, user.pin_hash):
            log_action(logger, "warning", "Transaction PIN mismatch",
                       user_id=user_id, action="verify_pin")
            raise AuthenticationError("Invalid transaction PIN")

    def generate_aml_code(self, user_id: str, expires_in_hours: Optional[int] = None) -> Tuple[str, datetime]:
        """Issue a fresh numeric AML code, replacing any previous one"""
        user = self.get_user(user_id)
        hours = expires_in_hours if expires_in_hours is not None else self.aml_code_expiry_hours
        code = "".join(secrets.choice("0123456789") for _ in range(self.aml_code_length))
        user.aml_code = code
        user.aml_code_expires_at = datetime.now(timezone.utc) + timedelta(hours=hours)
        self._save(user)
        logger.info("Generated AML code for user %s, previous code invalidated", user_id)
        return code, user.aml_code_expires_at

    def update_role(self, actor_id: str, user_id: str, role: UserRole, **client) -> User:
        """Only a super admin may change roles"""
        actor = self.get_user(actor_id)
        if not actor.is_super_admin:
            raise AuthorizationError("Only a super admin can change roles")
        if actor_id == user_id:
            raise ValidationError("Cannot change your own role")

        with self.storage.atomic():
            user = self.get_user(user_id)
            old_role = user.role
            user.role = role
            self._save(user)
            self.audit.log(actor_id, AuditAction.ROLE_CHANGE, EntityType.USER, user_id,
                           {'old_role': old_role.value, 'new_role': role.value}, **client)
        return user

    def toggle_activation(self, actor_id: str, user_id: str, **client) -> User:
        with self.storage.atomic():
            user = self.get_user(user_id)
            user.is_active = not user.is_active
            self._save(user)
            self.audit.log(actor_id, AuditAction.TOGGLE_ACTIVATION, EntityType.USER, user_id,
                           {'is_active': user.is_active}, **client)
        return user

    def _owned_rows(self, user_id: str) -> List[Tuple[EntityType, Dict[str, Any]]]:
        """Everything a user owns, children before parents"""
        loans = self.storage.find(table_for(EntityType.LOAN), {'user_id': user_id})
        accounts = self.storage.find(table_for(EntityType.ACCOUNT), {'user_id': user_id})

        rows: List[Tuple[EntityType, Dict[str, Any]]] = []
        for loan in loans:
            for repayment in self.storage.find(table_for(EntityType.LOAN_REPAYMENT), {'loan_id': loan['id']}):
                rows.append((EntityType.LOAN_REPAYMENT, repayment))
        rows.extend((EntityType.LOAN, loan) for loan in loans)
        for entity_type in (EntityType.DEPOSIT, EntityType.TRANSFER):
            rows.extend((entity_type, row) for row in
                        self.storage.find(table_for(entity_type), {'user_id': user_id}))
        for account in accounts:
            rows.extend((EntityType.TRANSACTION, txn) for txn in
                        self.storage.find(table_for(EntityType.TRANSACTION), {'account_id': account['id']}))
        rows.extend((EntityType.ACCOUNT, account) for account in accounts)
        return rows

    def _write_row(self, entity_type: EntityType, before: Dict[str, Any], after: Dict[str, Any]) -> None:
        table = table_for(entity_type)
        if 'version' in before:
            self.storage.compare_and_swap(table, after['id'], after, int(before['version']))
        else:
            self.storage.save(table, after['id'], after)

    def delete_user(self, actor_id: str, user_id: str, **client) -> Dict[str, int]:
        """
        Soft-delete a user and everything they own with one timestamp.

        Returns:
            Count of soft-deleted rows per entity type
        """
        if actor_id == user_id:
            raise ValidationError("Cannot delete your own account")

        now = datetime.now(timezone.utc)
        counts: Dict[str, int] = {}
        with self.storage.atomic():
            data = self.storage.load(self.table_name, user_id)
            if data is None:
                raise NotFoundError(f"User {user_id} not found")
            if data.get('deleted_at'):
                raise InvalidStateTransitionError(f"User {user_id} is already deleted")

            for entity_type, row in self._owned_rows(user_id):
                if row.get('deleted_at'):
                    continue
                self._write_row(entity_type, row, stamp_deleted(dict(row), actor_id, now))
                counts[entity_type.value] = counts.get(entity_type.value, 0) + 1

            snapshot = dict(data)
            self.storage.save(self.table_name, user_id, stamp_deleted(data, actor_id, now))
            self.audit.log_user_deletion(actor_id, user_id, snapshot, counts, **client)

        log_action(logger, "info", f"Deleted user {user_id} with cascade",
                   user_id=actor_id, action="delete_user", resource=f"user:{user_id}",
                   extra=counts)
        return counts

    def restore_user(self, actor_id: str, user_id: str, **client) -> Dict[str, int]:
        """
        Undo ``delete_user``: rows stamped by that deletion are restored,
        rows that were deleted independently stay deleted.
        """
        now = datetime.now(timezone.utc)
        counts: Dict[str, int] = {}
        with self.storage.atomic():
            data = self.storage.load(self.table_name, user_id)
            if data is None:
                raise NotFoundError(f"User {user_id} not found")
            stamp = data.get('deleted_at')
            if not stamp:
                raise InvalidStateTransitionError(f"User {user_id} is not deleted")

            for entity_type, row in self._owned_rows(user_id):
                if row.get('deleted_at') != stamp:
                    continue
                self._write_row(entity_type, row, clear_deleted(dict(row), now))
                counts[entity_type.value] = counts.get(entity_type.value, 0) + 1

            self.storage.save(self.table_name, user_id, clear_deleted(data, now))
            self.audit.log(actor_id, AuditAction.RESTORE_USER, EntityType.USER, user_id,
                           {'cascade': counts}, **client)

        log_action(logger, "info", f"Restored user {user_id} with cascade",
                   user_id=actor_id, action="restore_user", resource=f"user:{user_id}",
                   extra=counts)
        return counts
