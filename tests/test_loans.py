"""
Test suite for loans module

Tests applications, approval with disbursement, repayment from balance and
admin-reviewed repayments. Interest math must be exact.
"""

import pytest
from decimal import Decimal

from online_banking.audit import AuditAction, EntityType
from online_banking.loans import (
    LoanStatus, RepaymentStatus, BALANCE_PAYMENT, total_with_interest,
)
from online_banking.transactions import TransactionType, TransactionDirection
from online_banking.exceptions import (
    ValidationError, AuthenticationError, InvalidStateTransitionError, NotFoundError,
)

from conftest import PIN, balance_of


class TestInterest:

    def test_simple_interest(self):
        assert total_with_interest(Decimal("1000.00"), Decimal("10"), 12) == Decimal("1100.00")
        assert total_with_interest(Decimal("1000.00"), Decimal("12"), 6) == Decimal("1060.00")
        assert total_with_interest(Decimal("1000.00"), Decimal("0"), 24) == Decimal("1000.00")

    def test_rounds_to_cents(self):
        assert total_with_interest(Decimal("333.33"), Decimal("7.5"), 5) == Decimal("343.75")


class TestLoanApplication:

    def test_apply_creates_pending_loan(self, system, customer):
        loan = system.loans.apply_for_loan(customer.id, "5000.00", "Car", 12, PIN)

        assert loan.status == LoanStatus.PENDING
        assert loan.amount == Decimal("5000.00")
        assert loan.interest_rate is None
        assert balance_of(system, customer.id) == Decimal("0.00")
        assert system.loans.get_current_loan(customer.id).id == loan.id

    def test_apply_validations(self, system, customer):
        with pytest.raises(ValidationError):
            system.loans.apply_for_loan(customer.id, "0", "Car", 12, PIN)
        with pytest.raises(ValidationError):
            system.loans.apply_for_loan(customer.id, "100", "", 12, PIN)
        with pytest.raises(ValidationError):
            system.loans.apply_for_loan(customer.id, "100", "Car", -3, PIN)
        with pytest.raises(AuthenticationError):
            system.loans.apply_for_loan(customer.id, "100", "Car", 12, "0000")
        assert system.loans.list_loans(user_id=customer.id) == []


class TestLoanApproval:

    def test_approve_disburses_principal(self, system, admin, customer):
        loan = system.loans.apply_for_loan(customer.id, "5000.00", "Car", 12, PIN)
        result = system.loans.approve_loan(admin.id, loan.id, "10")

        assert result.status == "APPROVED"
        assert result.balance == Decimal("5000.00")

        approved = system.loans.get_loan(loan.id)
        assert approved.status == LoanStatus.APPROVED
        assert approved.interest_rate == Decimal("10.00")
        assert approved.total_repayment == Decimal("5500.00")
        assert approved.approved_at is not None

        account = system.accounts.get_user_account(customer.id)
        txn = system.transactions.list_for_account(account.id)[0]
        assert txn.transaction_type == TransactionType.LOAN_DISBURSEMENT
        assert txn.direction == TransactionDirection.CREDIT
        assert "Car" in txn.description

    def test_invalid_rate_rejected(self, system, admin, customer):
        loan = system.loans.apply_for_loan(customer.id, "5000.00", "Car", 12, PIN)
        for rate in ("abc", "-1", "101", None):
            with pytest.raises(ValidationError):
                system.loans.approve_loan(admin.id, loan.id, rate)
        assert system.loans.get_loan(loan.id).status == LoanStatus.PENDING

    def test_double_approval_disburses_once(self, system, admin, customer):
        loan = system.loans.apply_for_loan(customer.id, "5000.00", "Car", 12, PIN)
        system.loans.approve_loan(admin.id, loan.id, "10")

        with pytest.raises(InvalidStateTransitionError):
            system.loans.approve_loan(admin.id, loan.id, "10")
        with pytest.raises(InvalidStateTransitionError):
            system.loans.reject_loan(admin.id, loan.id)

        assert balance_of(system, customer.id) == Decimal("5000.00")

    def test_reject(self, system, admin, customer):
        loan = system.loans.apply_for_loan(customer.id, "5000.00", "Car", 12, PIN)
        result = system.loans.reject_loan(admin.id, loan.id, "Insufficient income")

        assert result.status == "REJECTED"
        rejected = system.loans.get_loan(loan.id)
        assert rejected.status == LoanStatus.REJECTED
        assert rejected.notes == "Insufficient income"
        assert balance_of(system, customer.id) == Decimal("0.00")

        entry = system.audit.get_logs_for_entity(EntityType.LOAN, loan.id)[-1]
        assert entry.action == AuditAction.LOAN_REJECTED


class TestRepayments:

    @pytest.fixture
    def loan(self, system, admin, customer):
        loan = system.loans.apply_for_loan(customer.id, "1000.00", "Tuition", 12, PIN)
        system.loans.approve_loan(admin.id, loan.id, "10")
        return system.loans.get_loan(loan.id)

    def test_balance_repayment_debits_account(self, system, customer, loan):
        repayment, result = system.loans.submit_repayment(
            customer.id, loan.id, "400.00", BALANCE_PAYMENT, pin=PIN)

        assert repayment.status == RepaymentStatus.APPROVED
        assert result.balance == Decimal("600.00")
        assert result.amount_paid == Decimal("400.00")
        assert result.loan_status == "APPROVED"
        assert balance_of(system, customer.id) == Decimal("600.00")
        assert system.loans.get_loan(loan.id).remaining_balance == Decimal("700.00")

    def test_balance_repayment_needs_pin(self, system, customer, loan):
        with pytest.raises(AuthenticationError):
            system.loans.submit_repayment(customer.id, loan.id, "100.00", BALANCE_PAYMENT, pin="0000")
        assert system.loans.get_loan(loan.id).amount_paid == Decimal("0.00")

    def test_pending_repayment_approved_once(self, system, admin, customer, loan):
        repayment, result = system.loans.submit_repayment(
            customer.id, loan.id, "300.00", "bank_transfer", payment_proof="receipt.pdf")
        assert result is None
        assert repayment.status == RepaymentStatus.PENDING
        assert system.loans.get_loan(loan.id).amount_paid == Decimal("0.00")

        approved = system.loans.approve_repayment(admin.id, repayment.id)
        assert approved.amount_paid == Decimal("300.00")
        # Paid outside the bank, so the balance stays at the disbursed amount
        assert balance_of(system, customer.id) == Decimal("1000.00")

        account = system.accounts.get_user_account(customer.id)
        neutral = system.transactions.find_by_source("loan_repayment", repayment.id)[0]
        assert neutral.direction == TransactionDirection.NEUTRAL
        assert neutral.account_id == account.id

        with pytest.raises(InvalidStateTransitionError):
            system.loans.approve_repayment(admin.id, repayment.id)
        assert system.loans.get_loan(loan.id).amount_paid == Decimal("300.00")

    def test_reject_repayment(self, system, admin, customer, loan):
        repayment, _ = system.loans.submit_repayment(customer.id, loan.id, "300.00", "cash")
        result = system.loans.reject_repayment(admin.id, repayment.id, "Proof unreadable")

        assert result.status == "REJECTED"
        assert system.loans.get_repayment(repayment.id).notes == "Proof unreadable"
        assert system.loans.get_loan(loan.id).amount_paid == Decimal("0.00")

    def test_full_repayment_marks_paid(self, system, admin, customer, loan):
        repayment, _ = system.loans.submit_repayment(customer.id, loan.id, "1100.00", "cash")
        result = system.loans.approve_repayment(admin.id, repayment.id)

        assert result.loan_status == "PAID"
        paid = system.loans.get_loan(loan.id)
        assert paid.status == LoanStatus.PAID
        assert paid.remaining_balance == Decimal("0.00")

        with pytest.raises(InvalidStateTransitionError):
            system.loans.submit_repayment(customer.id, loan.id, "1.00", "cash")

    def test_over_repayment_rejected(self, system, customer, loan):
        with pytest.raises(ValidationError):
            system.loans.submit_repayment(customer.id, loan.id, "1100.01", "cash")

    def test_pending_repayments_are_reserved(self, system, admin, customer, loan):
        first, _ = system.loans.submit_repayment(customer.id, loan.id, "800.00", "cash")
        with pytest.raises(ValidationError) as exc:
            system.loans.submit_repayment(customer.id, loan.id, "800.00", "cash")
        assert "pending repayments" in exc.value.message
        assert len(system.loans.list_repayments(loan_id=loan.id)) == 1

        second, _ = system.loans.submit_repayment(customer.id, loan.id, "300.00", "cash")
        system.loans.reject_repayment(admin.id, first.id)
        third, _ = system.loans.submit_repayment(customer.id, loan.id, "800.00", "cash")

        system.loans.approve_repayment(admin.id, second.id)
        system.loans.approve_repayment(admin.id, third.id)
        assert system.loans.get_loan(loan.id).status == LoanStatus.PAID

    def test_other_users_loan_hidden(self, system, customer, second_customer, loan):
        with pytest.raises(NotFoundError):
            system.loans.submit_repayment(second_customer.id, loan.id, "10.00", "cash")

    def test_pending_loan_cannot_be_repaid(self, system, customer):
        loan = system.loans.apply_for_loan(customer.id, "500.00", "Rent", 6, PIN)
        with pytest.raises(InvalidStateTransitionError):
            system.loans.submit_repayment(customer.id, loan.id, "10.00", "cash")

    def test_conservation_holds(self, system, admin, customer, loan):
        system.loans.submit_repayment(customer.id, loan.id, "250.00", BALANCE_PAYMENT, pin=PIN)
        repayment, _ = system.loans.submit_repayment(customer.id, loan.id, "100.00", "cash")
        system.loans.approve_repayment(admin.id, repayment.id)

        assert system.ledger.reconcile() == []
