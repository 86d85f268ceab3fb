"""
Deposit Module

Customer-declared deposits of funds sent from outside the bank. A deposit
stays PENDING until an admin approves it (one credit, one DEPOSIT ledger
row) or rejects it (no balance effect). Either way the decision is final.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditLogger, AuditAction, EntityType
from .accounts import AccountManager
from .users import UserManager
from .transactions import TransactionType, TransactionDirection
from .ledger import GeneralLedger, ApprovalResult
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .soft_delete import table_for
from .money import parse_amount
from .exceptions import ValidationError, NotFoundError, AuthorizationError
from .logging_config import get_logger, log_action

logger = get_logger("online_banking.deposits")


class DepositStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass
class Deposit(StorageRecord):
    """User claim of funds sent externally, with a reference to its proof"""
    user_id: str
    account_id: str
    amount: Decimal
    payment_method: str
    payment_proof: str
    status: DepositStatus = DepositStatus.PENDING
    notes: Optional[str] = None
    version: int = 1
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Deposit':
        data = dict(data)
        data['status'] = DepositStatus(data['status'])
        data['amount'] = Decimal(data['amount'])
        return super().from_dict(data)


class DepositService(EventPublisherMixin):
    """
    Submission and admin review of deposits
    """

    def __init__(self, storage: StorageInterface, users: UserManager, accounts: AccountManager,
                 ledger: GeneralLedger, audit: AuditLogger,
                 events: Optional[EventDispatcher] = None,
                 minimum_amount: Decimal = Decimal("3000.00")):
        self.storage = storage
        self.users = users
        self.accounts = accounts
        self.ledger = ledger
        self.audit = audit
        self.events = events
        self.minimum_amount = Decimal(minimum_amount)
        self.table_name = table_for(EntityType.DEPOSIT)

    def submit_deposit(
        self,
        user_id: str,
        account_id: str,
        amount: Any,
        payment_method: str,
        payment_proof: str,
        pin: str,
        notes: Optional[str] = None
    ) -> Deposit:
        """
        Record a PENDING deposit. No balance moves until an admin approves.

        Raises:
            ValidationError: missing fields or amount below the minimum
            AuthenticationError: wrong transaction PIN
            AuthorizationError: account belongs to someone else
        """
        if not payment_method or not payment_proof:
            raise ValidationError("Payment method and proof of payment are required")
        amount = parse_amount(amount)
        if amount < self.minimum_amount:
            raise ValidationError(f"Minimum deposit amount is {self.minimum_amount:,.2f}")

        self.users.verify_transaction_pin(user_id, pin)
        account = self.accounts.get_account(account_id)
        if account.user_id != user_id:
            raise AuthorizationError("Account does not belong to this user")

        now = datetime.now(timezone.utc)
        deposit = Deposit(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_id=account_id,
            amount=amount,
            payment_method=payment_method,
            payment_proof=payment_proof,
            notes=notes,
        )
        with self.storage.atomic():
            self.storage.save(self.table_name, deposit.id, deposit.to_dict())
            self.publish_event(DomainEvent.DEPOSIT_SUBMITTED, EntityType.DEPOSIT.value, deposit.id, {
                'amount': str(amount),
                'payment_method': payment_method,
            }, user_id=user_id)

        log_action(logger, "info", f"Deposit {deposit.id} submitted for {amount}",
                   user_id=user_id, action="submit_deposit", resource=f"deposit:{deposit.id}")
        return deposit

    def approve_deposit(self, admin_id: str, deposit_id: str, **client) -> ApprovalResult:
        """
        Credit the account, activate it, mark the deposit APPROVED and write
        exactly one DEPOSIT ledger row, all in one unit.

        Raises:
            NotFoundError: unknown deposit
            InvalidStateTransitionError: deposit already approved or rejected
        """
        def credit(record: Dict[str, Any]) -> Tuple[ApprovalResult, Dict[str, Any]]:
            deposit = Deposit.from_dict(record)
            txn = self.ledger.post(
                account_id=deposit.account_id,
                direction=TransactionDirection.CREDIT,
                amount=deposit.amount,
                transaction_type=TransactionType.DEPOSIT,
                description=f"Deposit via {deposit.payment_method}",
                source_type=EntityType.DEPOSIT.value,
                source_id=deposit.id,
            )
            self.accounts.activate_account(deposit.account_id)
            result = ApprovalResult(status=DepositStatus.APPROVED.value,
                                    balance=txn.balance_after, transaction_id=txn.id)
            return result, {
                'amount': deposit.amount,
                'account_id': deposit.account_id,
                'transaction_id': txn.id,
                'new_balance': txn.balance_after,
            }

        _, result = self.ledger.transition(
            actor_id=admin_id,
            table=self.table_name,
            record_id=deposit_id,
            entity_type=EntityType.DEPOSIT,
            terminal_status=DepositStatus.APPROVED.value,
            action=AuditAction.DEPOSIT_APPROVED,
            effect=credit,
            event_type=DomainEvent.DEPOSIT_APPROVED,
            **client
        )
        return result

    def reject_deposit(self, admin_id: str, deposit_id: str, reason: Optional[str] = None,
                       **client) -> ApprovalResult:
        """Close a PENDING deposit without touching any balance"""
        notes = reason or "Rejected by admin"

        def annotate(record: Dict[str, Any]) -> Tuple[ApprovalResult, Dict[str, Any]]:
            record['notes'] = notes
            return ApprovalResult(status=DepositStatus.REJECTED.value), {
                'amount': record['amount'],
                'reason': notes,
            }

        _, result = self.ledger.transition(
            actor_id=admin_id,
            table=self.table_name,
            record_id=deposit_id,
            entity_type=EntityType.DEPOSIT,
            terminal_status=DepositStatus.REJECTED.value,
            action=AuditAction.DEPOSIT_REJECTED,
            effect=annotate,
            event_type=DomainEvent.DEPOSIT_REJECTED,
            **client
        )
        return result

    def get_deposit(self, deposit_id: str) -> Deposit:
        data = self.storage.load(self.table_name, deposit_id)
        if data is None or data.get('deleted_at'):
            raise NotFoundError(f"Deposit {deposit_id} not found")
        return Deposit.from_dict(data)

    def list_deposits(self, user_id: Optional[str] = None,
                      status: Optional[DepositStatus] = None) -> List[Deposit]:
        """Active deposits, newest first"""
        filters: Dict[str, Any] = {'deleted_at': None}
        if user_id:
            filters['user_id'] = user_id
        if status:
            filters['status'] = status.value
        deposits = [Deposit.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        deposits.sort(key=lambda d: d.created_at, reverse=True)
        return deposits
