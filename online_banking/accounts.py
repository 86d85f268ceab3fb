"""
Account Management Module

Customer deposit accounts and their balances. A balance only moves through
``apply_delta``, which the general ledger calls inside an atomic unit; every
write bumps ``version`` through compare-and-swap so a concurrent writer
holding a stale copy is rejected instead of silently overwriting.
"""

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Any

from .money import Money, Currency, ZERO, quantize
from .storage import StorageInterface, StorageRecord
from .audit import EntityType
from .soft_delete import table_for
from .exceptions import (
    ValidationError, NotFoundError, InsufficientFundsError, InvalidStateTransitionError,
)
from .logging_config import get_logger

logger = get_logger("online_banking.accounts")


class AccountType(Enum):
    """Banking product types offered to customers"""
    CHECKING = "checking"
    SAVINGS = "savings"


@dataclass
class Account(StorageRecord):
    """
    Customer deposit account. Never hard-deleted outside compliance
    permanent deletion.
    """
    user_id: str
    account_number: str
    account_type: AccountType
    currency: str
    balance: Decimal = ZERO
    opening_balance: Decimal = ZERO
    is_activated: bool = False
    version: int = 1
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def balance_money(self) -> Money:
        return Money(self.balance, Currency.from_code(self.currency))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['account_type'] = AccountType(data['account_type'])
        data['balance'] = Decimal(data['balance'])
        data['opening_balance'] = Decimal(data['opening_balance'])
        return super().from_dict(data)


def generate_account_number() -> str:
    """Sort-code style number, e.g. ``42-17-88 4821907734``"""
    parts = [str(10 + secrets.randbelow(90)) for _ in range(3)]
    tail = str(1000000000 + secrets.randbelow(9000000000))
    return f"{'-'.join(parts)} {tail}"


class AccountManager:
    """
    Opens, looks up and mutates customer accounts
    """

    def __init__(self, storage: StorageInterface, default_currency: str = "USD"):
        self.storage = storage
        self.default_currency = default_currency
        self.table_name = table_for(EntityType.ACCOUNT)

    def open_account(
        self,
        user_id: str,
        account_type: AccountType = AccountType.CHECKING,
        currency: Optional[str] = None,
        opening_balance: Decimal = ZERO,
        account_number: Optional[str] = None
    ) -> Account:
        """
        Open an account for a user

        Args:
            user_id: Owner of the account
            account_type: Checking or savings
            currency: ISO code, defaults to the configured currency
            opening_balance: Balance carried in from outside the ledger
            account_number: Specific number (generated if not provided)

        Returns:
            Created Account object
        """
        currency = Currency.from_code(currency or self.default_currency).code
        if opening_balance < 0:
            raise ValidationError("Opening balance cannot be negative")

        if account_number is None:
            account_number = generate_account_number()
            while self.storage.find(self.table_name, {'account_number': account_number}):
                account_number = generate_account_number()
        elif self.storage.find(self.table_name, {'account_number': account_number}):
            raise ValidationError(f"Account number {account_number} already exists")

        now = datetime.now(timezone.utc)
        opening_balance = quantize(Decimal(opening_balance))
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_number=account_number,
            account_type=account_type,
            currency=currency,
            balance=opening_balance,
            opening_balance=opening_balance,
        )
        self.storage.save(self.table_name, account.id, account.to_dict())
        logger.info("Opened %s account %s for user %s", account_type.value, account.id, user_id)
        return account

    def get_account(self, account_id: str, include_deleted: bool = False) -> Account:
        """
        Raises:
            NotFoundError: unknown id, or soft-deleted unless ``include_deleted``
        """
        data = self.storage.load(self.table_name, account_id)
        if data is None:
            raise NotFoundError(f"Account {account_id} not found")
        account = Account.from_dict(data)
        if account.is_deleted and not include_deleted:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Active account with this number, or None"""
        rows = self.storage.find(self.table_name, {'account_number': account_number, 'deleted_at': None})
        return Account.from_dict(rows[0]) if rows else None

    def get_user_account(self, user_id: str) -> Account:
        """
        The user's primary (oldest active) account.

        Raises:
            NotFoundError: user has no active account
        """
        accounts = self.list_accounts(user_id=user_id)
        if not accounts:
            raise NotFoundError(f"No account found for user {user_id}")
        return min(accounts, key=lambda a: a.created_at)

    def list_accounts(self, user_id: Optional[str] = None, include_deleted: bool = False) -> List[Account]:
        filters = {'user_id': user_id} if user_id else {}
        accounts = [Account.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if not include_deleted:
            accounts = [a for a in accounts if not a.is_deleted]
        return accounts

    def get_balance(self, account_id: str) -> Decimal:
        return self.get_account(account_id).balance

    def _write(self, account: Account) -> Account:
        expected = account.version
        account.version = expected + 1
        account.updated_at = datetime.now(timezone.utc)
        self.storage.compare_and_swap(self.table_name, account.id, account.to_dict(), expected)
        return account

    def activate_account(self, account_id: str) -> Account:
        """Mark an account activated (first approved deposit does this)"""
        with self.storage.atomic():
            account = self.get_account(account_id)
            if account.is_activated:
                return account
            account.is_activated = True
            return self._write(account)

    def apply_delta(self, account: Account, delta: Decimal) -> Account:
        """
        Move the balance by ``delta``. Only the general ledger calls this,
        inside the atomic unit that also records the ledger row.

        ``account`` is the copy the caller read; if the stored row moved on
        since, the compare-and-swap raises ConcurrencyError.

        Raises:
            InvalidStateTransitionError: account is soft-deleted
            InsufficientFundsError: resulting balance would be negative
            ConcurrencyError: stale ``account`` copy
        """
        if account.is_deleted:
            raise InvalidStateTransitionError(f"Account {account.id} is deleted")

        new_balance = quantize(account.balance + delta)
        if new_balance < 0:
            raise InsufficientFundsError(
                f"Insufficient balance. Available: {account.balance_money.to_string()}, "
                f"Required: {Money(-delta, Currency.from_code(account.currency)).to_string()}"
            )

        account.balance = new_balance
        self._write(account)
        logger.debug("Account %s balance %s (delta %s, version %s)",
                     account.id, new_balance, delta, account.version)
        return account
