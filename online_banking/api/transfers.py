"""
Transfer endpoints: initiate, AML verification, completion
"""

from typing import Dict

from fastapi import APIRouter, Depends, status

from .auth import get_current_user, get_system, client_info
from .schemas import TransferRequest, AMLCodeRequest
from ..system import BankingSystem
from ..users import User
from ..exceptions import AuthorizationError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def initiate_transfer(
    request: TransferRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    """Create a transfer awaiting AML verification; no money moves yet"""
    transfer = system.transfers.initiate_transfer(
        user_id=user.id,
        recipient_account_number=request.recipient_account_number,
        amount=request.amount,
        pin=request.pin,
    )
    return {"transfer": transfer.to_dict(), "status": transfer.status.value}


@router.get("")
async def list_my_transfers(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    return {"transfers": [t.to_dict() for t in system.transfers.list_transfers(user.id)]}


@router.get("/{transfer_id}")
async def get_transfer(
    transfer_id: str,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    transfer = system.transfers.get_transfer(transfer_id)
    if transfer.user_id != user.id:
        raise AuthorizationError("Transfer does not belong to this user")
    return {"transfer": transfer.to_dict()}


@router.post("/{transfer_id}/verify-aml")
async def verify_aml(
    transfer_id: str,
    request: AMLCodeRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    system.transfers.verify_aml(user.id, transfer_id, request.aml_code)
    return {"success": True, "message": "AML code verified successfully"}


@router.post("/{transfer_id}/complete")
async def complete_transfer(
    transfer_id: str,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    transfer = system.transfers.complete_transfer(user.id, transfer_id, **client)
    balance = system.accounts.get_balance(transfer.sender_account_id)
    return {
        "status": transfer.status.value,
        "balance": str(balance),
        "transaction_id": transfer.transaction_id,
        "message": "Transfer completed successfully",
    }


@router.post("/{transfer_id}/cancel")
async def cancel_transfer(
    transfer_id: str,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    transfer = system.transfers.cancel_transfer(user.id, transfer_id, **client)
    return {"status": transfer.status.value}
