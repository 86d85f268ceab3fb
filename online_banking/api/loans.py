"""
Loan endpoints for customers
"""

from typing import Dict

from fastapi import APIRouter, Depends, status

from .auth import get_current_user, get_system, client_info
from .schemas import LoanApplicationRequest, RepaymentRequest
from ..system import BankingSystem
from ..users import User
from ..exceptions import NotFoundError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def apply_for_loan(
    request: LoanApplicationRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    loan = system.loans.apply_for_loan(
        user_id=user.id,
        amount=request.amount,
        purpose=request.purpose,
        term_months=request.term_months,
        pin=request.pin,
    )
    return {"loan": loan.to_dict(), "message": "Loan application submitted"}


@router.get("/current")
async def get_current_loan(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    """The caller's most recent loan, or null"""
    loan = system.loans.get_current_loan(user.id)
    if loan is None:
        return {"loan": None}
    data = loan.to_dict()
    data['remaining_balance'] = str(loan.remaining_balance)
    return {"loan": data}


@router.post("/{loan_id}/repay")
async def repay_loan(
    loan_id: str,
    request: RepaymentRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    """Pay from the account balance (immediate) or declare an external payment"""
    repayment, result = system.loans.submit_repayment(
        user_id=user.id,
        loan_id=loan_id,
        amount=request.amount,
        payment_method=request.payment_method,
        payment_proof=request.payment_proof,
        pin=request.pin,
        **client
    )
    if result is None:
        return {
            "repayment": repayment.to_dict(),
            "message": "Repayment request submitted successfully. Awaiting admin approval.",
        }
    loan = system.loans.get_loan(loan_id)
    response = result.to_dict()
    response.update({
        "repayment": repayment.to_dict(),
        "remaining_balance": str(loan.remaining_balance),
        "message": "Repayment successful",
    })
    return response


@router.get("/{loan_id}/repayments")
async def list_loan_repayments(
    loan_id: str,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    loan = system.loans.get_loan(loan_id)
    if loan.user_id != user.id:
        raise NotFoundError("Loan not found")
    return {"repayments": [r.to_dict() for r in system.loans.list_repayments(loan_id=loan_id)]}
