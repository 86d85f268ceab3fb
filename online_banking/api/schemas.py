"""
Pydantic schemas for API requests
"""

from typing import Optional, Union
from pydantic import BaseModel, Field

# Amounts arrive as strings ("5,000.00") or JSON numbers; the services parse them
Amount = Union[str, int, float]


# Account schemas
class SetPinRequest(BaseModel):
    pin: str = Field(..., description="Transaction PIN digits")


# Deposit schemas
class DepositRequest(BaseModel):
    amount: Amount
    payment_method: str
    payment_proof: str = Field(..., description="Reference to the externally stored proof of payment")
    pin: str
    account_id: Optional[str] = None  # defaults to the caller's primary account
    notes: Optional[str] = None


# Transfer schemas
class TransferRequest(BaseModel):
    recipient_account_number: str
    amount: Amount
    pin: str


class AMLCodeRequest(BaseModel):
    aml_code: str


# Loan schemas
class LoanApplicationRequest(BaseModel):
    amount: Amount
    purpose: str
    term_months: int = Field(..., gt=0)
    pin: str


class RepaymentRequest(BaseModel):
    amount: Amount
    payment_method: str
    payment_proof: Optional[str] = None
    pin: Optional[str] = None


# Admin schemas
class ReviewRequest(BaseModel):
    reason: Optional[str] = None


class LoanApprovalRequest(BaseModel):
    interest_rate: Amount


class AdjustBalanceRequest(BaseModel):
    amount: Amount
    kind: str = Field(..., description='"credit" or "debit"')
    description: str
    sender_name: Optional[str] = None
    sender_account: Optional[str] = None
    sender_bank: Optional[str] = None


class RoleRequest(BaseModel):
    role: str


class AMLReviewRequest(BaseModel):
    status: str
    notes: Optional[str] = None

# Chat schemas
class ChatMessageRequest(BaseModel):
    message: str
    attachment: Optional[str] = None

class GuestMessageRequest(BaseModel):
    guest_name: str
    message: str
    guest_id: Optional[str] = None
    attachment: Optional[str] = None

class AdminChatRequest(BaseModel):
    conversation_id: str
    message: str
    attachment: Optional[str] = None
