"""
General Ledger Module

Owns the balance-mutation transition shared by deposit approval, transfer
completion and loan flows:

1. reload the triggering record and check it is still PENDING
2. apply the balance delta to the account
3. flip the triggering record to its terminal status
4. insert the ledger row

Steps 1-4 and the audit row run in one ``storage.atomic()`` unit. The domain
event is published only after that unit commits.
"""

from decimal import Decimal
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Any, Tuple
import uuid

from .storage import StorageInterface
from .audit import AuditLogger, AuditAction, EntityType
from .accounts import AccountManager
from .transactions import (
    TransactionLedger, Transaction, TransactionType, TransactionDirection,
)
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .money import parse_amount
from .exceptions import (
    NotFoundError, InvalidStateTransitionError, ValidationError,
)
from .logging_config import get_logger, log_action

logger = get_logger("online_banking.ledger")

# Callback run inside a transition: receives the loaded record dict, may
# update it in place, and returns (result, audit details)
TransitionEffect = Callable[[Dict[str, Any]], Tuple[Any, Dict[str, Any]]]


@dataclass
class ApprovalResult:
    """Outcome of an admin approval, as returned to the caller"""
    status: str
    balance: Optional[Decimal] = None
    amount_paid: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    loan_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'status': self.status}
        if self.balance is not None:
            result['balance'] = str(self.balance)
        if self.amount_paid is not None:
            result['amount_paid'] = str(self.amount_paid)
        if self.transaction_id is not None:
            result['transaction_id'] = self.transaction_id
        if self.loan_status is not None:
            result['loan_status'] = self.loan_status
        return result


class GeneralLedger(EventPublisherMixin):
    """
    Applies balance deltas and records them, at most once per source
    """

    def __init__(self, storage: StorageInterface, accounts: AccountManager,
                 transactions: TransactionLedger, audit: AuditLogger,
                 events: Optional[EventDispatcher] = None):
        self.storage = storage
        self.accounts = accounts
        self.transactions = transactions
        self.audit = audit
        self.events = events

    def post(
        self,
        account_id: str,
        direction: TransactionDirection,
        amount: Decimal,
        transaction_type: TransactionType,
        description: str,
        source_type: str,
        source_id: str,
        recipient_account_number: Optional[str] = None
    ) -> Transaction:
        """
        Apply one balance delta and insert its SUCCESS ledger row.

        Joins the caller's atomic unit. A second posting for the same
        (source_type, source_id, account_id) is refused.

        Raises:
            InvalidStateTransitionError: source already posted to this account
            InsufficientFundsError: debit would overdraw
            ConcurrencyError: account changed underneath us
        """
        with self.storage.atomic():
            for existing in self.transactions.find_by_source(source_type, source_id):
                if existing.account_id == account_id:
                    raise InvalidStateTransitionError(
                        f"{source_type} {source_id} already posted to account {account_id}"
                    )

            account = self.accounts.get_account(account_id)
            if direction == TransactionDirection.CREDIT:
                account = self.accounts.apply_delta(account, amount)
            elif direction == TransactionDirection.DEBIT:
                account = self.accounts.apply_delta(account, -amount)

            txn = self.transactions.record(
                account_id=account_id,
                transaction_type=transaction_type,
                direction=direction,
                amount=amount,
                description=description,
                source_type=source_type,
                source_id=source_id,
                recipient_account_number=recipient_account_number,
                balance_after=account.balance,
            )

        log_action(logger, "info", f"Posted {direction.value} {amount} to {account_id}",
                   action="post", resource=f"account:{account_id}",
                   extra={'type': transaction_type.value, 'source': f"{source_type}:{source_id}",
                          'balance_after': str(account.balance)})
        return txn

    def transition(
        self,
        actor_id: str,
        table: str,
        record_id: str,
        entity_type: EntityType,
        terminal_status: str,
        action: AuditAction,
        effect: TransitionEffect,
        pending_status: str = "PENDING",
        event_type: Optional[DomainEvent] = None,
        event_user_id: Optional[str] = None,
        **client
    ) -> Tuple[Dict[str, Any], Any]:
        """
        Run a PENDING -> terminal transition as one atomic unit.

        Args:
            actor_id: Admin or user driving the transition
            table: Table of the triggering record
            record_id: ID of the triggering record
            entity_type: Audit entity type of the record
            terminal_status: Status the record ends in
            action: Audit action to write
            effect: Balance effect; may update the record dict in place
            pending_status: Status the record must currently have
            event_type: Domain event to publish after commit
            event_user_id: User the event concerns (defaults to record owner)

        Returns:
            (updated record dict, value returned by ``effect``)

        Raises:
            NotFoundError: record missing or soft-deleted
            InvalidStateTransitionError: record is not in ``pending_status``
        """
        with self.storage.atomic():
            record = self.storage.load(table, record_id)
            if record is None or record.get('deleted_at'):
                raise NotFoundError(f"{entity_type.value} {record_id} not found")
            if record['status'] != pending_status:
                log_action(logger, "warning",
                           f"Rejected transition of {entity_type.value} {record_id}: status {record['status']}",
                           user_id=actor_id, action=action.value,
                           resource=f"{entity_type.value}:{record_id}")
                raise InvalidStateTransitionError(
                    f"{entity_type.value} {record_id} is no longer {pending_status.lower()} "
                    f"(status {record['status']})"
                )

            result, details = effect(record)

            record['status'] = terminal_status
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            if 'version' in record:
                expected = int(record['version'])
                record['version'] = expected + 1
                self.storage.compare_and_swap(table, record_id, record, expected)
            else:
                self.storage.save(table, record_id, record)

            details = dict(details)
            details.setdefault('status', terminal_status)
            self.audit.log(actor_id, action, entity_type, record_id, details, **client)

            if event_type is not None:
                self.publish_event(event_type, entity_type.value, record_id, details,
                                   user_id=event_user_id or record.get('user_id'))

        log_action(logger, "info", f"{entity_type.value} {record_id} -> {terminal_status}",
                   user_id=actor_id, action=action.value,
                   resource=f"{entity_type.value}:{record_id}")
        return record, result

    def adjust_balance(
        self,
        actor_id: str,
        account_id: str,
        amount: Any,
        kind: str,
        description: str,
        sender_name: Optional[str] = None,
        sender_account: Optional[str] = None,
        sender_bank: Optional[str] = None,
        **client
    ) -> Transaction:
        """
        Admin credit or debit of an account.

        Credits are presented to the customer as an incoming transfer and
        need the sender's name, account and bank. Debits may not overdraw.
        """
        amount = parse_amount(amount)
        if not description:
            raise ValidationError("Description is required")
        if kind == "credit":
            if not (sender_name and sender_account and sender_bank):
                raise ValidationError("Sender details are required for credit adjustments")
            direction = TransactionDirection.CREDIT
            txn_type = TransactionType.DEPOSIT
            text = f"Transfer from {sender_name} ({sender_bank}) - Account: {sender_account}. Ref: {description}"
        elif kind == "debit":
            direction = TransactionDirection.DEBIT
            txn_type = TransactionType.ADJUSTMENT
            text = f"Admin debit: {description}"
        else:
            raise ValidationError('Invalid adjustment type. Must be "credit" or "debit"')

        adjustment_id = str(uuid.uuid4())
        with self.storage.atomic():
            txn = self.post(account_id, direction, amount, txn_type, text,
                            source_type="adjustment", source_id=adjustment_id)
            account = self.accounts.get_account(account_id)
            details = {
                'kind': kind,
                'amount': amount,
                'description': description,
                'transaction_id': txn.id,
                'new_balance': txn.balance_after,
            }
            self.audit.log(actor_id, AuditAction.BALANCE_ADJUSTED, EntityType.ACCOUNT,
                           account_id, details, **client)
            self.publish_event(DomainEvent.BALANCE_ADJUSTED, EntityType.ACCOUNT.value,
                               account_id, {k: str(v) for k, v in details.items()},
                               user_id=account.user_id)
        return txn

    def verify_conservation(self, account_id: str) -> Dict[str, Any]:
        """
        Check balance - opening_balance == credits - debits of SUCCESS rows.
        """
        account = self.accounts.get_account(account_id, include_deleted=True)
        net = self.transactions.net_effect(account_id)
        delta = account.balance - account.opening_balance
        return {
            'account_id': account_id,
            'balance': account.balance,
            'opening_balance': account.opening_balance,
            'ledger_net': net,
            'difference': delta - net,
            'balanced': delta == net,
        }

    def reconcile(self) -> List[Dict[str, Any]]:
        """Conservation report for every account that is out of balance"""
        mismatches = []
        for account in self.accounts.list_accounts(include_deleted=True):
            report = self.verify_conservation(account.id)
            if not report['balanced']:
                logger.error("Account %s out of balance by %s", account.id, report['difference'])
                mismatches.append(report)
        return mismatches
