"""
Account endpoints for the logged-in customer
"""

from fastapi import APIRouter, Depends

from .auth import get_current_user, get_system
from .schemas import SetPinRequest
from ..system import BankingSystem
from ..users import User


router = APIRouter()


@router.get("/me")
async def get_my_account(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    """Primary account and balance of the caller"""
    account = system.accounts.get_user_account(user.id)
    return {
        "account": account.to_dict(),
        "balance": account.balance_money.to_string(),
    }


@router.get("/me/transactions")
async def get_my_transactions(
    limit: int = 50,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    """Ledger rows of the caller's primary account, newest first"""
    account = system.accounts.get_user_account(user.id)
    rows = system.transactions.list_for_account(account.id, limit=limit)
    return {
        "account_id": account.id,
        "transactions": [txn.to_dict() for txn in rows],
    }


@router.post("/me/pin")
async def set_transaction_pin(
    request: SetPinRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    """Set or replace the caller's transaction PIN"""
    system.users.set_transaction_pin(user.id, request.pin)
    return {"message": "Transaction PIN set successfully"}
