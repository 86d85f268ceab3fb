"""
Shared fixtures: an in-memory banking system with one admin and one
customer holding a funded account
"""

import pytest
from decimal import Decimal

from online_banking.config import BankingConfig
from online_banking.storage import InMemoryStorage
from online_banking.system import BankingSystem
from online_banking.users import UserRole

PIN = "1234"
STATIC_AML_CODE = "654321"


def make_system(**overrides) -> BankingSystem:
    settings = {
        "database_url": "memory://",
        "aml_code": STATIC_AML_CODE,
        "enable_audit_logging": False,
        "auth_enabled": False,
        "jwt_secret": "test-secret",
    }
    settings.update(overrides)
    return BankingSystem(BankingConfig(**settings), storage=InMemoryStorage())


def fund(system: BankingSystem, admin_id: str, user_id: str, amount: str) -> None:
    """Credit a customer through the normal deposit approval flow"""
    account = system.accounts.get_user_account(user_id)
    deposit = system.deposits.submit_deposit(user_id, account.id, amount, "bank_transfer",
                                             "proof.png", PIN)
    system.deposits.approve_deposit(admin_id, deposit.id)


@pytest.fixture
def system():
    banking = make_system()
    yield banking
    banking.close()


@pytest.fixture
def admin(system):
    return system.users.create_user("admin", "admin@bank.test", "Bank Admin",
                                    role=UserRole.ADMIN, is_super_admin=True)


@pytest.fixture
def customer(system):
    user, _ = system.register_customer("alice", "alice@example.com", "Alice Smith", pin=PIN)
    return user


@pytest.fixture
def funded_customer(system, admin, customer):
    fund(system, admin.id, customer.id, "20000.00")
    return customer


@pytest.fixture
def second_customer(system):
    user, _ = system.register_customer("bob", "bob@example.com", "Bob Jones", pin=PIN)
    return user


def balance_of(system: BankingSystem, user_id: str) -> Decimal:
    return system.accounts.get_user_account(user_id).balance
