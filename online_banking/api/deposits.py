"""
Deposit endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import get_current_user, get_system
from .schemas import DepositRequest
from ..system import BankingSystem
from ..users import User


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_deposit(
    request: DepositRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    """Declare funds sent from outside the bank; an admin approves them later"""
    account_id = request.account_id or system.accounts.get_user_account(user.id).id
    deposit = system.deposits.submit_deposit(
        user_id=user.id,
        account_id=account_id,
        amount=request.amount,
        payment_method=request.payment_method,
        payment_proof=request.payment_proof,
        pin=request.pin,
        notes=request.notes,
    )
    return {
        "deposit": deposit.to_dict(),
        "message": "Deposit submitted. Awaiting admin approval.",
    }


@router.get("")
async def list_my_deposits(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    return {"deposits": [d.to_dict() for d in system.deposits.list_deposits(user_id=user.id)]}
