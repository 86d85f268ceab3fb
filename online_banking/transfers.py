"""
Transfer Module

Two-phase customer transfers:

1. ``initiate_transfer`` checks the PIN and the balance and persists a
   PENDING_AML transfer; no money moves.
2. ``verify_aml`` checks the AML protection code and marks the transfer
   verified.
3. ``complete_transfer`` debits the sender (and credits the recipient for an
   internal transfer) in one atomic unit. A transfer completes at most once.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
import secrets
import uuid

from .money import Money, Currency, parse_amount
from .storage import StorageInterface, StorageRecord
from .audit import AuditLogger, AuditAction, EntityType
from .accounts import AccountManager
from .users import UserManager
from .transactions import TransactionType, TransactionDirection
from .ledger import GeneralLedger
from .aml import AMLMonitor
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .soft_delete import table_for
from .exceptions import (
    ValidationError, NotFoundError, AuthenticationError, AuthorizationError,
    InsufficientFundsError, InvalidStateTransitionError,
)
from .logging_config import get_logger, log_action

logger = get_logger("online_banking.transfers")


class TransferStatus(Enum):
    PENDING_AML = "PENDING_AML"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class Transfer(StorageRecord):
    """
    Outgoing transfer. ``recipient_account_id`` is None when the recipient
    number is not one of ours (external transfer).
    """
    user_id: str
    sender_account_id: str
    recipient_account_number: str
    amount: Decimal
    recipient_account_id: Optional[str] = None
    status: TransferStatus = TransferStatus.PENDING_AML
    aml_verified: bool = False
    failure_reason: Optional[str] = None
    transaction_id: Optional[str] = None
    version: int = 1
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def is_internal(self) -> bool:
        return self.recipient_account_id is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transfer':
        data = dict(data)
        data['status'] = TransferStatus(data['status'])
        data['amount'] = Decimal(data['amount'])
        return super().from_dict(data)


def _codes_match(given: str, expected: str) -> bool:
    return secrets.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


class TransferService(EventPublisherMixin):
    """
    Customer transfers between accounts, gated by PIN and AML code
    """

    def __init__(self, storage: StorageInterface, users: UserManager, accounts: AccountManager,
                 ledger: GeneralLedger, aml: AMLMonitor, audit: AuditLogger,
                 events: Optional[EventDispatcher] = None,
                 aml_code: str = "", aml_code_length: int = 6):
        self.storage = storage
        self.users = users
        self.accounts = accounts
        self.ledger = ledger
        self.aml = aml
        self.audit = audit
        self.events = events
        self.aml_code = aml_code
        self.aml_code_length = aml_code_length
        self.table_name = table_for(EntityType.TRANSFER)

    def initiate_transfer(self, user_id: str, recipient_account_number: str,
                          amount: Any, pin: str) -> Transfer:
        """
        Persist a PENDING_AML transfer from the user's primary account.

        Raises:
            ValidationError: bad amount, missing recipient or same account
            AuthenticationError: wrong transaction PIN
            InsufficientFundsError: balance below the amount
        """
        amount = parse_amount(amount)
        if not recipient_account_number:
            raise ValidationError("Recipient account number is required")
        self.users.verify_transaction_pin(user_id, pin)

        sender = self.accounts.get_user_account(user_id)
        if sender.balance < amount:
            currency = Currency.from_code(sender.currency)
            raise InsufficientFundsError(
                f"Insufficient balance. Available: {sender.balance_money.to_string()}, "
                f"Required: {Money(amount, currency).to_string()}"
            )

        recipient = self.accounts.get_account_by_number(recipient_account_number)
        if recipient is not None and recipient.id == sender.id:
            raise ValidationError("Cannot transfer to the same account")

        now = datetime.now(timezone.utc)
        transfer = Transfer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            sender_account_id=sender.id,
            recipient_account_number=recipient_account_number,
            recipient_account_id=recipient.id if recipient else None,
            amount=amount,
        )
        self.storage.save(self.table_name, transfer.id, transfer.to_dict())
        log_action(logger, "info", f"Transfer {transfer.id} of {amount} awaiting AML verification",
                   user_id=user_id, action="initiate_transfer", resource=f"transfer:{transfer.id}",
                   extra={'internal': transfer.is_internal})
        return transfer

    def _check_code(self, user_id: str, code: str) -> None:
        if self.aml_code and _codes_match(code, self.aml_code):
            return

        user = self.users.get_user(user_id)
        if not user.aml_code:
            raise ValidationError(
                "No AML code has been generated for your account. "
                "Please contact support to generate your AML protection code."
            )
        if user.aml_code_expires_at and datetime.now(timezone.utc) > user.aml_code_expires_at:
            raise ValidationError(
                "Your AML code has expired. Please contact support to generate a new code."
            )
        if not _codes_match(code, user.aml_code):
            log_action(logger, "warning", "AML code mismatch", user_id=user_id, action="verify_aml")
            raise AuthenticationError("Invalid AML code. Please check and try again.")

    def verify_aml(self, user_id: str, transfer_id: str, aml_code: str) -> Transfer:
        """
        Check the AML protection code for a pending transfer.

        The configured shared code is accepted as well as the user's own
        generated code while it has not expired.
        """
        code = (aml_code or "").strip()
        if len(code) != self.aml_code_length:
            raise ValidationError(f"Valid {self.aml_code_length}-digit AML code is required")

        with self.storage.atomic():
            transfer = self._owned(user_id, transfer_id)
            if transfer.status != TransferStatus.PENDING_AML:
                raise InvalidStateTransitionError(
                    f"Transfer {transfer_id} is no longer pending (status {transfer.status.value})"
                )
            self._check_code(user_id, code)
            transfer.aml_verified = True
            self._write(transfer)

        logger.info("AML code verified for transfer %s", transfer_id)
        return transfer

    def complete_transfer(self, user_id: str, transfer_id: str, **client) -> Transfer:
        """
        Move the money for a verified transfer.

        Runs the AML rules on the outgoing amount; alerts are stored but do
        not block the transfer. If the balance no longer covers the amount
        the transfer is marked FAILED and InsufficientFundsError is raised.

        Raises:
            AuthorizationError: transfer belongs to another user
            ValidationError: AML code not verified yet
            InvalidStateTransitionError: transfer already completed, failed or cancelled
        """
        transfer = self._owned(user_id, transfer_id)
        if not transfer.aml_verified:
            raise ValidationError("AML verification is required before completing the transfer")

        def move_money(record: Dict[str, Any]) -> Tuple[None, Dict[str, Any]]:
            current = Transfer.from_dict(record)
            if not current.aml_verified:
                raise ValidationError("AML verification is required before completing the transfer")

            sender = self.accounts.get_account(current.sender_account_id)
            pattern = self.aml.build_pattern(sender.id)
            debit = self.ledger.post(
                account_id=sender.id,
                direction=TransactionDirection.DEBIT,
                amount=current.amount,
                transaction_type=TransactionType.TRANSFER,
                description=f"Transfer to {current.recipient_account_number}",
                source_type=EntityType.TRANSFER.value,
                source_id=current.id,
                recipient_account_number=current.recipient_account_number,
            )
            details: Dict[str, Any] = {
                'amount': current.amount,
                'sender_account_id': sender.id,
                'recipient_account_number': current.recipient_account_number,
                'transaction_id': debit.id,
                'new_balance': debit.balance_after,
            }
            if current.is_internal:
                credit = self.ledger.post(
                    account_id=current.recipient_account_id,
                    direction=TransactionDirection.CREDIT,
                    amount=current.amount,
                    transaction_type=TransactionType.TRANSFER,
                    description=f"Transfer from {sender.account_number}",
                    source_type=EntityType.TRANSFER.value,
                    source_id=current.id,
                    recipient_account_number=sender.account_number,
                )
                recipient = self.accounts.get_account(current.recipient_account_id)
                details['recipient_user_id'] = recipient.user_id
                details['recipient_new_balance'] = credit.balance_after

            alerts = self.aml.check_transaction(current.user_id, current.amount, pattern)
            if alerts:
                self.aml.record_alerts(alerts, transaction_id=debit.id)
                details['aml_alerts'] = len(alerts)

            record['transaction_id'] = debit.id
            return None, details

        try:
            record, _ = self.ledger.transition(
                actor_id=user_id,
                table=self.table_name,
                record_id=transfer_id,
                entity_type=EntityType.TRANSFER,
                terminal_status=TransferStatus.SUCCESS.value,
                action=AuditAction.TRANSFER_COMPLETED,
                effect=move_money,
                pending_status=TransferStatus.PENDING_AML.value,
                event_type=DomainEvent.TRANSFER_COMPLETED,
                **client
            )
        except InsufficientFundsError as e:
            self._fail(user_id, transfer_id, e.message, **client)
            raise

        return Transfer.from_dict(record)

    def _fail(self, user_id: str, transfer_id: str, reason: str, **client) -> None:
        def annotate(record: Dict[str, Any]) -> Tuple[None, Dict[str, Any]]:
            record['failure_reason'] = reason
            return None, {'amount': record['amount'], 'reason': reason}

        self.ledger.transition(
            actor_id=user_id,
            table=self.table_name,
            record_id=transfer_id,
            entity_type=EntityType.TRANSFER,
            terminal_status=TransferStatus.FAILED.value,
            action=AuditAction.TRANSFER_FAILED,
            effect=annotate,
            pending_status=TransferStatus.PENDING_AML.value,
            event_type=DomainEvent.TRANSFER_FAILED,
            **client
        )

    def cancel_transfer(self, user_id: str, transfer_id: str, **client) -> Transfer:
        """Abandon a transfer that has not completed yet"""
        self._owned(user_id, transfer_id)

        def no_effect(record: Dict[str, Any]) -> Tuple[None, Dict[str, Any]]:
            return None, {'amount': record['amount']}

        record, _ = self.ledger.transition(
            actor_id=user_id,
            table=self.table_name,
            record_id=transfer_id,
            entity_type=EntityType.TRANSFER,
            terminal_status=TransferStatus.CANCELLED.value,
            action=AuditAction.TRANSFER_CANCELLED,
            effect=no_effect,
            pending_status=TransferStatus.PENDING_AML.value,
            **client
        )
        return Transfer.from_dict(record)

    def get_transfer(self, transfer_id: str) -> Transfer:
        data = self.storage.load(self.table_name, transfer_id)
        if data is None or data.get('deleted_at'):
            raise NotFoundError(f"Transfer {transfer_id} not found")
        return Transfer.from_dict(data)

    def list_transfers(self, user_id: str, status: Optional[TransferStatus] = None) -> List[Transfer]:
        """Active transfers of a user, newest first"""
        filters: Dict[str, Any] = {'user_id': user_id, 'deleted_at': None}
        if status:
            filters['status'] = status.value
        transfers = [Transfer.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        transfers.sort(key=lambda t: t.created_at, reverse=True)
        return transfers

    def _owned(self, user_id: str, transfer_id: str) -> Transfer:
        transfer = self.get_transfer(transfer_id)
        if transfer.user_id != user_id:
            raise AuthorizationError("Transfer does not belong to this user")
        return transfer

    def _write(self, transfer: Transfer) -> None:
        expected = transfer.version
        transfer.version = expected + 1
        transfer.updated_at = datetime.now(timezone.utc)
        self.storage.compare_and_swap(self.table_name, transfer.id, transfer.to_dict(), expected)
