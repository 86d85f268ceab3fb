"""
Transaction Ledger Module

Immutable ledger rows, one per balance-affecting event on one account.
Only ``status`` ever changes after insert, and only PENDING -> SUCCESS/FAILED.
Amount, type and direction are never rewritten.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .money import ZERO
from .storage import StorageInterface, StorageRecord
from .audit import EntityType
from .soft_delete import table_for
from .exceptions import NotFoundError, InvalidStateTransitionError, ValidationError
from .logging_config import get_logger

logger = get_logger("online_banking.transactions")


class TransactionType(Enum):
    """Types of ledger events"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER = "TRANSFER"
    LOAN_DISBURSEMENT = "LOAN_DISBURSEMENT"
    LOAN_REPAYMENT = "LOAN_REPAYMENT"
    ADJUSTMENT = "ADJUSTMENT"


class TransactionDirection(Enum):
    """Effect of a row on its account's balance"""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    NEUTRAL = "NEUTRAL"  # documents an event that did not move this balance


class TransactionStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class Transaction(StorageRecord):
    """
    Ledger row. ``source_type``/``source_id`` point at the deposit, transfer,
    loan, repayment or adjustment that produced it.
    """
    account_id: str
    transaction_type: TransactionType
    direction: TransactionDirection
    amount: Decimal
    status: TransactionStatus
    description: str
    source_type: Optional[str] = None
    source_id: Optional[str] = None
    recipient_account_number: Optional[str] = None
    balance_after: Optional[Decimal] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        """Balance effect of this row"""
        if self.direction == TransactionDirection.CREDIT:
            return self.amount
        if self.direction == TransactionDirection.DEBIT:
            return -self.amount
        return ZERO

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['direction'] = TransactionDirection(data['direction'])
        data['status'] = TransactionStatus(data['status'])
        data['amount'] = Decimal(data['amount'])
        if data.get('balance_after') is not None:
            data['balance_after'] = Decimal(data['balance_after'])
        return super().from_dict(data)


class TransactionLedger:
    """
    Insert-only store of ledger rows
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = table_for(EntityType.TRANSACTION)

    def record(
        self,
        account_id: str,
        transaction_type: TransactionType,
        direction: TransactionDirection,
        amount: Decimal,
        description: str,
        status: TransactionStatus = TransactionStatus.SUCCESS,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        recipient_account_number: Optional[str] = None,
        balance_after: Optional[Decimal] = None
    ) -> Transaction:
        """
        Insert a ledger row

        Args:
            account_id: Account the row belongs to
            transaction_type: Kind of event
            direction: CREDIT, DEBIT or NEUTRAL
            amount: Positive amount
            description: Human-readable description
            status: Initial status
            source_type: Entity type that produced the row
            source_id: ID of that entity
            recipient_account_number: Counterparty, for transfers
            balance_after: Account balance once this row applied

        Returns:
            Created Transaction
        """
        if amount <= 0:
            raise ValidationError("Ledger amount must be positive")

        now = datetime.now(timezone.utc)
        txn = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            transaction_type=transaction_type,
            direction=direction,
            amount=amount,
            status=status,
            description=description,
            source_type=source_type,
            source_id=source_id,
            recipient_account_number=recipient_account_number,
            balance_after=balance_after,
        )
        self.storage.save(self.table_name, txn.id, txn.to_dict())
        return txn

    def update_status(self, transaction_id: str, status: TransactionStatus) -> Transaction:
        """
        Settle a PENDING row.

        Raises:
            InvalidStateTransitionError: row is not PENDING, or target is PENDING
        """
        txn = self.get(transaction_id)
        if txn.status != TransactionStatus.PENDING:
            raise InvalidStateTransitionError(
                f"Transaction {transaction_id} is already {txn.status.value}"
            )
        if status == TransactionStatus.PENDING:
            raise InvalidStateTransitionError("Cannot move a transaction back to PENDING")

        txn.status = status
        txn.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, txn.id, txn.to_dict())
        return txn

    def get(self, transaction_id: str) -> Transaction:
        data = self.storage.load(self.table_name, transaction_id)
        if data is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return Transaction.from_dict(data)

    def list_for_account(
        self,
        account_id: str,
        include_deleted: bool = False,
        only_deleted: bool = False,
        limit: Optional[int] = None
    ) -> List[Transaction]:
        """Rows of one account, newest first"""
        rows = [Transaction.from_dict(d) for d in self.storage.find(self.table_name, {'account_id': account_id})]
        if only_deleted:
            rows = [t for t in rows if t.is_deleted]
        elif not include_deleted:
            rows = [t for t in rows if not t.is_deleted]
        rows.sort(key=lambda t: t.created_at, reverse=True)
        if limit:
            rows = rows[:limit]
        return rows

    def find_by_source(self, source_type: str, source_id: str) -> List[Transaction]:
        rows = self.storage.find(self.table_name, {'source_type': source_type, 'source_id': source_id})
        return [Transaction.from_dict(d) for d in rows]

    def net_effect(self, account_id: str) -> Decimal:
        """
        Sum of credits minus debits over SUCCESS rows, soft-deleted rows
        included (soft-delete hides a row, it does not undo its effect).
        """
        total = ZERO
        for data in self.storage.find(self.table_name, {'account_id': account_id}):
            txn = Transaction.from_dict(data)
            if txn.status == TransactionStatus.SUCCESS:
                total += txn.signed_amount
        return total
