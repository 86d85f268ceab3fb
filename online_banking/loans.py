"""
Loan Module

Handles loan applications, admin approval with disbursement to the
borrower's account, and repayments.

A repayment paid from the account balance settles immediately. Any other
payment method creates a PENDING repayment that an admin approves or
rejects; ``amount_paid`` is incremented exactly once per approved repayment
and the loan becomes PAID once it reaches ``total_repayment``.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
import uuid

from .money import ZERO, quantize, parse_amount
from .storage import StorageInterface, StorageRecord
from .audit import AuditLogger, AuditAction, EntityType
from .accounts import AccountManager
from .users import UserManager
from .transactions import TransactionType, TransactionDirection
from .ledger import GeneralLedger, ApprovalResult
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .soft_delete import table_for
from .exceptions import ValidationError, NotFoundError, InvalidStateTransitionError
from .logging_config import get_logger, log_action

logger = get_logger("online_banking.loans")

BALANCE_PAYMENT = "BALANCE"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"      # Awaiting admin decision
    APPROVED = "APPROVED"    # Disbursed and being repaid
    REJECTED = "REJECTED"
    PAID = "PAID"            # Fully repaid


class RepaymentStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass
class Loan(StorageRecord):
    """Loan application and, once approved, its repayment progress"""
    user_id: str
    amount: Decimal
    purpose: str
    term_months: int
    interest_rate: Optional[Decimal] = None   # percent per year, set on approval
    total_repayment: Optional[Decimal] = None
    amount_paid: Decimal = ZERO
    status: LoanStatus = LoanStatus.PENDING
    approved_at: Optional[datetime] = None
    notes: Optional[str] = None
    version: int = 1
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def remaining_balance(self) -> Decimal:
        total = self.total_repayment if self.total_repayment is not None else self.amount
        return total - self.amount_paid

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['status'] = LoanStatus(data['status'])
        for key in ('amount', 'amount_paid', 'interest_rate', 'total_repayment'):
            if data.get(key) is not None:
                data[key] = Decimal(data[key])
        return super().from_dict(data)


@dataclass
class LoanRepayment(StorageRecord):
    """One repayment towards a loan"""
    loan_id: str
    user_id: str
    amount: Decimal
    payment_method: str
    payment_proof: Optional[str] = None
    status: RepaymentStatus = RepaymentStatus.PENDING
    notes: Optional[str] = None
    version: int = 1
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanRepayment':
        data = dict(data)
        data['status'] = RepaymentStatus(data['status'])
        data['amount'] = Decimal(data['amount'])
        return super().from_dict(data)


def total_with_interest(amount: Decimal, rate: Decimal, term_months: int) -> Decimal:
    """Simple interest: amount * (1 + rate/100 * term/12)"""
    interest = amount * (rate / Decimal("100")) * (Decimal(term_months) / Decimal("12"))
    return quantize(amount + interest)


class LoanService(EventPublisherMixin):
    """
    Loan applications, approval and repayment
    """

    def __init__(self, storage: StorageInterface, users: UserManager, accounts: AccountManager,
                 ledger: GeneralLedger, audit: AuditLogger,
                 events: Optional[EventDispatcher] = None):
        self.storage = storage
        self.users = users
        self.accounts = accounts
        self.ledger = ledger
        self.audit = audit
        self.events = events
        self.loans_table = table_for(EntityType.LOAN)
        self.repayments_table = table_for(EntityType.LOAN_REPAYMENT)

    def apply_for_loan(self, user_id: str, amount: Any, purpose: str,
                       term_months: int, pin: str) -> Loan:
        """
        File a PENDING loan application. Nothing is disbursed until an admin
        approves it.
        """
        amount = parse_amount(amount)
        if not purpose or not term_months:
            raise ValidationError("Missing required fields")
        if int(term_months) <= 0:
            raise ValidationError("Loan term must be a positive number of months")
        self.users.verify_transaction_pin(user_id, pin)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            amount=amount,
            purpose=purpose,
            term_months=int(term_months),
        )
        with self.storage.atomic():
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
            self.publish_event(DomainEvent.LOAN_REQUESTED, EntityType.LOAN.value, loan.id, {
                'amount': str(amount),
                'purpose': purpose,
                'term_months': loan.term_months,
            }, user_id=user_id)

        log_action(logger, "info", f"Loan {loan.id} requested for {amount}",
                   user_id=user_id, action="apply_for_loan", resource=f"loan:{loan.id}")
        return loan

    def approve_loan(self, admin_id: str, loan_id: str, interest_rate: Any, **client) -> ApprovalResult:
        """
        Fix the interest rate, disburse the principal to the borrower's
        account and mark the loan APPROVED.

        Raises:
            ValidationError: rate missing or outside 0-100
            InvalidStateTransitionError: loan already processed
        """
        try:
            rate = Decimal(str(interest_rate))
        except (InvalidOperation, ValueError):
            raise ValidationError("Invalid interest rate")
        if not rate.is_finite() or rate < 0 or rate > 100:
            raise ValidationError("Invalid interest rate")
        rate = quantize(rate)

        def disburse(record: Dict[str, Any]) -> Tuple[ApprovalResult, Dict[str, Any]]:
            loan = Loan.from_dict(record)
            account = self.accounts.get_user_account(loan.user_id)
            txn = self.ledger.post(
                account_id=account.id,
                direction=TransactionDirection.CREDIT,
                amount=loan.amount,
                transaction_type=TransactionType.LOAN_DISBURSEMENT,
                description=(f"Loan disbursement - {loan.purpose} "
                             f"({loan.term_months} months @ {rate}% interest)"),
                source_type=EntityType.LOAN.value,
                source_id=loan.id,
            )
            total = total_with_interest(loan.amount, rate, loan.term_months)
            record['interest_rate'] = str(rate)
            record['total_repayment'] = str(total)
            record['approved_at'] = datetime.now(timezone.utc).isoformat()
            result = ApprovalResult(status=LoanStatus.APPROVED.value,
                                    balance=txn.balance_after, transaction_id=txn.id)
            return result, {
                'amount': loan.amount,
                'interest_rate': rate,
                'total_repayment': total,
                'account_id': account.id,
                'transaction_id': txn.id,
                'new_balance': txn.balance_after,
            }

        _, result = self.ledger.transition(
            actor_id=admin_id,
            table=self.loans_table,
            record_id=loan_id,
            entity_type=EntityType.LOAN,
            terminal_status=LoanStatus.APPROVED.value,
            action=AuditAction.LOAN_APPROVED,
            effect=disburse,
            event_type=DomainEvent.LOAN_APPROVED,
            **client
        )
        return result

    def reject_loan(self, admin_id: str, loan_id: str, reason: Optional[str] = None,
                    **client) -> ApprovalResult:
        notes = reason or "Rejected by admin"

        def annotate(record: Dict[str, Any]) -> Tuple[ApprovalResult, Dict[str, Any]]:
            record['notes'] = notes
            return ApprovalResult(status=LoanStatus.REJECTED.value), {
                'amount': record['amount'],
                'reason': notes,
            }

        _, result = self.ledger.transition(
            actor_id=admin_id,
            table=self.loans_table,
            record_id=loan_id,
            entity_type=EntityType.LOAN,
            terminal_status=LoanStatus.REJECTED.value,
            action=AuditAction.LOAN_REJECTED,
            effect=annotate,
            event_type=DomainEvent.LOAN_REJECTED,
            **client
        )
        return result

    def _apply_to_loan(self, loan_id: str, amount: Decimal) -> Loan:
        """
        Add a repayment to ``amount_paid`` inside the caller's atomic unit,
        closing the loan once it is fully repaid.
        """
        loan = self.get_loan(loan_id)
        if loan.status != LoanStatus.APPROVED:
            raise InvalidStateTransitionError("Loan is not active")
        if amount > loan.remaining_balance:
            raise ValidationError("Amount exceeds remaining balance")

        expected = loan.version
        loan.amount_paid = quantize(loan.amount_paid + amount)
        if loan.remaining_balance <= 0:
            loan.status = LoanStatus.PAID
        loan.version = expected + 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.compare_and_swap(self.loans_table, loan.id, loan.to_dict(), expected)
        return loan

    def submit_repayment(
        self,
        user_id: str,
        loan_id: str,
        amount: Any,
        payment_method: str,
        payment_proof: Optional[str] = None,
        pin: Optional[str] = None,
        **client
    ) -> Tuple[LoanRepayment, Optional[ApprovalResult]]:
        """
        Repay part or all of an approved loan.

        With ``payment_method == "BALANCE"`` the account is debited at once
        (PIN required) and an APPROVED repayment is recorded. Other methods
        create a PENDING repayment for admin review.

        Returns:
            (repayment, ApprovalResult for balance payments else None)
        """
        amount = parse_amount(amount)
        if not payment_method:
            raise ValidationError("Valid loan ID, amount, and payment method are required")

        loan = self.get_loan(loan_id)
        if loan.user_id != user_id:
            raise NotFoundError("Loan not found")
        if loan.status != LoanStatus.APPROVED:
            raise InvalidStateTransitionError("Loan is not active")
        pending = self.list_repayments(loan_id=loan_id, status=RepaymentStatus.PENDING)
        reserved = sum((r.amount for r in pending), Decimal("0"))
        if amount > loan.remaining_balance - reserved:
            if reserved:
                raise ValidationError(
                    f"Amount exceeds remaining balance after pending repayments of {reserved}"
                )
            raise ValidationError("Amount exceeds remaining balance")

        now = datetime.now(timezone.utc)
        repayment = LoanRepayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            user_id=user_id,
            amount=amount,
            payment_method=payment_method,
            payment_proof=payment_proof,
        )

        if payment_method != BALANCE_PAYMENT:
            with self.storage.atomic():
                self.storage.save(self.repayments_table, repayment.id, repayment.to_dict())
                self.publish_event(DomainEvent.REPAYMENT_SUBMITTED, EntityType.LOAN_REPAYMENT.value,
                                   repayment.id, {'amount': str(amount), 'loan_id': loan_id,
                                                  'payment_method': payment_method},
                                   user_id=user_id)
            log_action(logger, "info", f"Repayment {repayment.id} of {amount} awaiting approval",
                       user_id=user_id, action="submit_repayment",
                       resource=f"loan_repayment:{repayment.id}")
            return repayment, None

        self.users.verify_transaction_pin(user_id, pin)
        account = self.accounts.get_user_account(user_id)
        repayment.status = RepaymentStatus.APPROVED
        with self.storage.atomic():
            txn = self.ledger.post(
                account_id=account.id,
                direction=TransactionDirection.DEBIT,
                amount=amount,
                transaction_type=TransactionType.LOAN_REPAYMENT,
                description=f"Loan repayment - {loan.purpose}",
                source_type=EntityType.LOAN_REPAYMENT.value,
                source_id=repayment.id,
            )
            loan = self._apply_to_loan(loan_id, amount)
            self.storage.save(self.repayments_table, repayment.id, repayment.to_dict())
            details = {
                'amount': amount,
                'loan_id': loan_id,
                'payment_method': payment_method,
                'transaction_id': txn.id,
                'amount_paid': loan.amount_paid,
                'loan_status': loan.status.value,
                'new_balance': txn.balance_after,
            }
            self.audit.log(user_id, AuditAction.REPAYMENT_APPROVED, EntityType.LOAN_REPAYMENT,
                           repayment.id, details, **client)
            self.publish_event(DomainEvent.REPAYMENT_APPROVED, EntityType.LOAN_REPAYMENT.value,
                               repayment.id, details, user_id=user_id)

        result = ApprovalResult(status=RepaymentStatus.APPROVED.value, balance=txn.balance_after,
                                amount_paid=loan.amount_paid, transaction_id=txn.id,
                                loan_status=loan.status.value)
        return repayment, result

    def approve_repayment(self, admin_id: str, repayment_id: str, **client) -> ApprovalResult:
        """
        Count a PENDING repayment towards its loan.

        The money was paid outside the bank, so the borrower's balance does
        not move; a NEUTRAL LOAN_REPAYMENT row documents the event.

        Raises:
            InvalidStateTransitionError: repayment already processed, or loan not active
            ValidationError: amount exceeds what is still owed
        """
        def settle(record: Dict[str, Any]) -> Tuple[ApprovalResult, Dict[str, Any]]:
            repayment = LoanRepayment.from_dict(record)
            loan = self._apply_to_loan(repayment.loan_id, repayment.amount)
            account = self.accounts.get_user_account(loan.user_id)
            txn = self.ledger.post(
                account_id=account.id,
                direction=TransactionDirection.NEUTRAL,
                amount=repayment.amount,
                transaction_type=TransactionType.LOAN_REPAYMENT,
                description=f"Loan repayment approved - {loan.purpose}",
                source_type=EntityType.LOAN_REPAYMENT.value,
                source_id=repayment.id,
            )
            result = ApprovalResult(status=RepaymentStatus.APPROVED.value, balance=account.balance,
                                    amount_paid=loan.amount_paid, transaction_id=txn.id,
                                    loan_status=loan.status.value)
            return result, {
                'amount': repayment.amount,
                'loan_id': loan.id,
                'amount_paid': loan.amount_paid,
                'loan_status': loan.status.value,
                'transaction_id': txn.id,
            }

        _, result = self.ledger.transition(
            actor_id=admin_id,
            table=self.repayments_table,
            record_id=repayment_id,
            entity_type=EntityType.LOAN_REPAYMENT,
            terminal_status=RepaymentStatus.APPROVED.value,
            action=AuditAction.REPAYMENT_APPROVED,
            effect=settle,
            event_type=DomainEvent.REPAYMENT_APPROVED,
            **client
        )
        return result

    def reject_repayment(self, admin_id: str, repayment_id: str, reason: Optional[str] = None,
                         **client) -> ApprovalResult:
        notes = reason or "Rejected by admin"

        def annotate(record: Dict[str, Any]) -> Tuple[ApprovalResult, Dict[str, Any]]:
            record['notes'] = notes
            return ApprovalResult(status=RepaymentStatus.REJECTED.value), {
                'amount': record['amount'],
                'loan_id': record['loan_id'],
                'reason': notes,
            }

        _, result = self.ledger.transition(
            actor_id=admin_id,
            table=self.repayments_table,
            record_id=repayment_id,
            entity_type=EntityType.LOAN_REPAYMENT,
            terminal_status=RepaymentStatus.REJECTED.value,
            action=AuditAction.REPAYMENT_REJECTED,
            effect=annotate,
            event_type=DomainEvent.REPAYMENT_REJECTED,
            **client
        )
        return result

    def get_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if data is None or data.get('deleted_at'):
            raise NotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def get_repayment(self, repayment_id: str) -> LoanRepayment:
        data = self.storage.load(self.repayments_table, repayment_id)
        if data is None or data.get('deleted_at'):
            raise NotFoundError(f"Loan repayment {repayment_id} not found")
        return LoanRepayment.from_dict(data)

    def get_current_loan(self, user_id: str) -> Optional[Loan]:
        """The user's most recent loan, or None"""
        loans = self.list_loans(user_id=user_id)
        return loans[0] if loans else None

    def list_loans(self, user_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        """Active loans, newest first"""
        filters: Dict[str, Any] = {'deleted_at': None}
        if user_id:
            filters['user_id'] = user_id
        if status:
            filters['status'] = status.value
        loans = [Loan.from_dict(d) for d in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda l: l.created_at, reverse=True)
        return loans

    def list_repayments(self, loan_id: Optional[str] = None, user_id: Optional[str] = None,
                        status: Optional[RepaymentStatus] = None) -> List[LoanRepayment]:
        """Active repayments, newest first"""
        filters: Dict[str, Any] = {'deleted_at': None}
        if loan_id:
            filters['loan_id'] = loan_id
        if user_id:
            filters['user_id'] = user_id
        if status:
            filters['status'] = status.value
        repayments = [LoanRepayment.from_dict(d) for d in self.storage.find(self.repayments_table, filters)]
        repayments.sort(key=lambda r: r.created_at, reverse=True)
        return repayments
