"""
Tests for the user registry: PINs, AML codes, roles and cascading delete
"""

import pytest
from datetime import datetime, timezone, timedelta

from online_banking.audit import AuditAction, EntityType
from online_banking.soft_delete import table_for
from online_banking.users import UserRole
from online_banking.exceptions import (
    ValidationError, AuthenticationError, AuthorizationError,
    NotFoundError, InvalidStateTransitionError,
)

from conftest import PIN


class TestUserRegistry:

    def test_create_user_normalizes_email(self, system):
        user = system.users.create_user("carol", " Carol@Example.COM ", "Carol")
        assert user.email == "carol@example.com"
        assert user.role == UserRole.USER
        assert system.users.get_user_by_email("CAROL@example.com").id == user.id

    def test_duplicate_email_rejected(self, system, customer):
        with pytest.raises(ValidationError):
            system.users.create_user("alice2", "alice@example.com", "Alice Again")

    def test_invalid_email_rejected(self, system):
        with pytest.raises(ValidationError):
            system.users.create_user("x", "not-an-email", "X")

    def test_public_dict_hides_credentials(self, system, customer):
        system.users.generate_aml_code(customer.id)
        data = system.users.get_user(customer.id).public_dict()
        assert "pin_hash" not in data
        assert "pin_salt" not in data
        assert "aml_code" not in data
        assert data["email"] == "alice@example.com"


class TestTransactionPin:

    def test_correct_pin_passes(self, system, customer):
        system.users.verify_transaction_pin(customer.id, PIN)

    def test_wrong_pin(self, system, customer):
        with pytest.raises(AuthenticationError):
            system.users.verify_transaction_pin(customer.id, "9999")

    def test_malformed_pin(self, system, customer):
        for pin in (None, "", "12", "abcd", "12345"):
            with pytest.raises(ValidationError):
                system.users.verify_transaction_pin(customer.id, pin)

    def test_non_ascii_digits_rejected(self, system, customer):
        for pin in ("١٢٣٤", "²³⁴⁵", "１２３４", "1234\n"):
            with pytest.raises(ValidationError):
                system.users.set_transaction_pin(customer.id, pin)
            with pytest.raises(ValidationError):
                system.users.verify_transaction_pin(customer.id, pin)
        system.users.verify_transaction_pin(customer.id, PIN)

    def test_pin_not_set(self, system):
        user = system.users.create_user("nopin", "nopin@example.com", "No Pin")
        with pytest.raises(ValidationError):
            system.users.verify_transaction_pin(user.id, PIN)

    def test_pin_stored_hashed(self, system, customer):
        stored = system.users.get_user(customer.id)
        assert stored.pin_hash and stored.pin_hash != PIN
        assert stored.pin_salt


class TestAmlCode:

    def test_generate_replaces_previous(self, system, customer):
        first, _ = system.users.generate_aml_code(customer.id)
        second, expires_at = system.users.generate_aml_code(customer.id)

        stored = system.users.get_user(customer.id)
        assert stored.aml_code == second
        assert len(second) == system.config.aml_code_length
        assert second.isdigit()
        assert expires_at > datetime.now(timezone.utc) + timedelta(hours=23)


class TestRoles:

    def test_super_admin_changes_role(self, system, admin, customer):
        updated = system.users.update_role(admin.id, customer.id, UserRole.ADMIN, ip_address="10.0.0.9")
        assert updated.is_admin

        entry = system.audit.get_logs_for_entity(EntityType.USER, customer.id)[-1]
        assert entry.action == AuditAction.ROLE_CHANGE
        assert entry.details == {"old_role": "user", "new_role": "admin"}

    def test_plain_admin_cannot_change_roles(self, system, admin, customer, second_customer):
        system.users.update_role(admin.id, customer.id, UserRole.ADMIN)
        with pytest.raises(AuthorizationError):
            system.users.update_role(customer.id, second_customer.id, UserRole.ADMIN)

    def test_cannot_change_own_role(self, system, admin):
        with pytest.raises(ValidationError):
            system.users.update_role(admin.id, admin.id, UserRole.USER)

    def test_toggle_activation(self, system, admin, customer):
        assert system.users.toggle_activation(admin.id, customer.id).is_active is False
        assert system.users.toggle_activation(admin.id, customer.id).is_active is True
        actions = [e.action for e in system.audit.get_logs_by_actor(admin.id)]
        assert actions.count(AuditAction.TOGGLE_ACTIVATION) == 2


class TestCascadingDelete:

    def test_delete_user_cascades_with_one_timestamp(self, system, admin, funded_customer):
        user_id = funded_customer.id
        system.loans.apply_for_loan(user_id, "1000.00", "Car", 12, PIN)

        counts = system.users.delete_user(admin.id, user_id)

        assert counts["account"] == 1
        assert counts["deposit"] == 1
        assert counts["transaction"] == 1
        assert counts["loan"] == 1

        user_row = system.storage.load(table_for(EntityType.USER), user_id)
        stamp = user_row["deleted_at"]
        assert stamp is not None
        for entity_type in (EntityType.ACCOUNT, EntityType.DEPOSIT, EntityType.LOAN):
            for row in system.storage.find(table_for(entity_type), {"user_id": user_id}):
                assert row["deleted_at"] == stamp
                assert row["deleted_by"] == admin.id

        with pytest.raises(NotFoundError):
            system.users.get_user(user_id)
        assert system.users.get_user(user_id, include_deleted=True).is_deleted

    def test_delete_user_audit_has_no_credentials(self, system, admin, customer):
        system.users.delete_user(admin.id, customer.id)
        entry = system.audit.get_recent_logs(action=AuditAction.DELETE_USER)[0]
        assert "pin_hash" not in entry.details["user_data"]
        assert entry.details["cascade"]["account"] == 1

    def test_cannot_delete_self_or_twice(self, system, admin, customer):
        with pytest.raises(ValidationError):
            system.users.delete_user(admin.id, admin.id)
        system.users.delete_user(admin.id, customer.id)
        with pytest.raises(InvalidStateTransitionError):
            system.users.delete_user(admin.id, customer.id)

    def test_restore_only_rows_of_that_deletion(self, system, admin, funded_customer):
        user_id = funded_customer.id
        deposit = system.deposits.list_deposits(user_id=user_id)[0]
        # Deleted on its own before the user deletion
        system.soft_delete.soft_delete(EntityType.DEPOSIT, deposit.id, admin.id)

        system.users.delete_user(admin.id, user_id)
        counts = system.users.restore_user(admin.id, user_id)

        assert counts["account"] == 1
        assert "deposit" not in counts
        assert system.soft_delete.is_deleted(EntityType.DEPOSIT, deposit.id)
        assert not system.users.get_user(user_id).is_deleted
        assert system.accounts.get_user_account(user_id).balance > 0

    def test_restore_active_user_rejected(self, system, admin, customer):
        with pytest.raises(InvalidStateTransitionError):
            system.users.restore_user(admin.id, customer.id)

    def test_balance_unchanged_by_delete_and_restore(self, system, admin, funded_customer):
        before = system.accounts.get_user_account(funded_customer.id).balance
        system.users.delete_user(admin.id, funded_customer.id)
        system.users.restore_user(admin.id, funded_customer.id)
        assert system.accounts.get_user_account(funded_customer.id).balance == before
