"""
Tests for deposit submission and admin review
"""

import pytest
from decimal import Decimal
from unittest.mock import patch

from online_banking.audit import AuditAction, EntityType
from online_banking.deposits import DepositStatus
from online_banking.transactions import TransactionType
from online_banking.exceptions import (
    ValidationError, AuthenticationError, AuthorizationError,
    InvalidStateTransitionError, NotFoundError, AuditWriteError,
)

from conftest import PIN, balance_of


class TestSubmitDeposit:

    def _submit(self, system, user, amount="3000.00", **overrides):
        account = system.accounts.get_user_account(user.id)
        params = dict(account_id=account.id, amount=amount, payment_method="bank_transfer",
                      payment_proof="proof.png", pin=PIN)
        params.update(overrides)
        return system.deposits.submit_deposit(user.id, **params)

    def test_submit_creates_pending_deposit(self, system, customer):
        deposit = self._submit(system, customer, notes="Salary")

        assert deposit.status == DepositStatus.PENDING
        assert deposit.amount == Decimal("3000.00")
        assert system.deposits.get_deposit(deposit.id).notes == "Salary"
        assert balance_of(system, customer.id) == Decimal("0.00")

    def test_minimum_amount(self, system, customer):
        with pytest.raises(ValidationError) as exc:
            self._submit(system, customer, amount="2999.99")
        assert "3,000.00" in exc.value.message

    def test_proof_and_method_required(self, system, customer):
        with pytest.raises(ValidationError):
            self._submit(system, customer, payment_proof="")
        with pytest.raises(ValidationError):
            self._submit(system, customer, payment_method="")

    def test_wrong_pin(self, system, customer):
        with pytest.raises(AuthenticationError):
            self._submit(system, customer, pin="4321")
        assert system.deposits.list_deposits(user_id=customer.id) == []

    def test_someone_elses_account(self, system, customer, second_customer):
        other = system.accounts.get_user_account(second_customer.id)
        with pytest.raises(AuthorizationError):
            self._submit(system, customer, account_id=other.id)


class TestReviewDeposit:

    @pytest.fixture
    def deposit(self, system, customer):
        account = system.accounts.get_user_account(customer.id)
        return system.deposits.submit_deposit(customer.id, account.id, "5000.00",
                                              "bank_transfer", "proof.png", PIN)

    def test_approve_credits_and_activates(self, system, admin, customer, deposit):
        result = system.deposits.approve_deposit(admin.id, deposit.id, ip_address="10.1.1.1")

        assert result.status == "APPROVED"
        assert result.balance == Decimal("5000.00")
        assert result.to_dict()["balance"] == "5000.00"

        account = system.accounts.get_user_account(customer.id)
        assert account.balance == Decimal("5000.00")
        assert account.is_activated

        rows = system.transactions.find_by_source("deposit", deposit.id)
        assert len(rows) == 1
        assert rows[0].transaction_type == TransactionType.DEPOSIT
        assert rows[0].id == result.transaction_id

        entry = system.audit.get_logs_for_entity(EntityType.DEPOSIT, deposit.id)[0]
        assert entry.action == AuditAction.DEPOSIT_APPROVED
        assert entry.ip_address == "10.1.1.1"

    def test_approve_twice_credits_once(self, system, admin, customer, deposit):
        system.deposits.approve_deposit(admin.id, deposit.id)
        with pytest.raises(InvalidStateTransitionError):
            system.deposits.approve_deposit(admin.id, deposit.id)

        assert balance_of(system, customer.id) == Decimal("5000.00")
        assert len(system.transactions.find_by_source("deposit", deposit.id)) == 1

    def test_failed_audit_write_undoes_approval(self, system, admin, customer, deposit):
        save = system.storage.save

        def failing_save(table, record_id, data):
            if table == system.audit.table_name:
                raise OSError("disk full")
            save(table, record_id, data)

        with patch.object(system.storage, "save", side_effect=failing_save):
            with pytest.raises(AuditWriteError):
                system.deposits.approve_deposit(admin.id, deposit.id)

        assert system.deposits.get_deposit(deposit.id).status == DepositStatus.PENDING
        account = system.accounts.get_user_account(customer.id)
        assert account.balance == Decimal("0.00")
        assert not account.is_activated
        assert system.transactions.find_by_source("deposit", deposit.id) == []
        assert system.audit.get_logs_for_entity(EntityType.DEPOSIT, deposit.id) == []
        assert "Deposit Approved" not in [n.title for n in system.inbox.list_for_user(customer.id)]

        system.deposits.approve_deposit(admin.id, deposit.id)
        assert balance_of(system, customer.id) == Decimal("5000.00")

    def test_reject(self, system, admin, customer, deposit):
        result = system.deposits.reject_deposit(admin.id, deposit.id, "Proof is blurry")

        assert result.status == "REJECTED"
        rejected = system.deposits.get_deposit(deposit.id)
        assert rejected.status == DepositStatus.REJECTED
        assert rejected.notes == "Proof is blurry"
        assert balance_of(system, customer.id) == Decimal("0.00")

        with pytest.raises(InvalidStateTransitionError):
            system.deposits.approve_deposit(admin.id, deposit.id)

    def test_reject_default_reason(self, system, admin, deposit):
        system.deposits.reject_deposit(admin.id, deposit.id)
        assert system.deposits.get_deposit(deposit.id).notes == "Rejected by admin"

    def test_unknown_or_deleted_deposit(self, system, admin, deposit):
        with pytest.raises(NotFoundError):
            system.deposits.approve_deposit(admin.id, "missing")

        system.soft_delete.soft_delete(EntityType.DEPOSIT, deposit.id, admin.id)
        with pytest.raises(NotFoundError):
            system.deposits.approve_deposit(admin.id, deposit.id)

    def test_list_by_status(self, system, admin, customer, deposit):
        assert [d.id for d in system.deposits.list_deposits(status=DepositStatus.PENDING)] == [deposit.id]
        system.deposits.approve_deposit(admin.id, deposit.id)
        assert system.deposits.list_deposits(status=DepositStatus.PENDING) == []
        assert len(system.deposits.list_deposits(user_id=customer.id)) == 1
