"""
Admin endpoints: approvals, balance adjustments, user administration,
soft-delete management, audit and compliance views
"""

from typing import Dict, Optional

from fastapi import APIRouter, Depends

from .auth import require_admin, require_super_admin, get_system, client_info
from .schemas import (
    ReviewRequest, LoanApprovalRequest, AdjustBalanceRequest, RoleRequest, AMLReviewRequest,
)
from ..system import BankingSystem
from ..users import User, UserRole
from ..audit import AuditAction, EntityType, PERMANENT_DELETE_WARNING
from ..deposits import DepositStatus
from ..loans import LoanStatus, RepaymentStatus
from ..aml import AlertStatus
from ..exceptions import ValidationError


router = APIRouter()


def _enum(enum_cls, value: Optional[str], label: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {label}: {value}")


# Deposits

@router.get("/deposits")
async def list_deposits(
    status: Optional[str] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    deposits = system.deposits.list_deposits(status=_enum(DepositStatus, status, "status"))
    return {"deposits": [d.to_dict() for d in deposits]}


@router.post("/deposits/{deposit_id}/approve")
async def approve_deposit(
    deposit_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    result = system.deposits.approve_deposit(admin.id, deposit_id, **client)
    return result.to_dict()


@router.post("/deposits/{deposit_id}/reject")
async def reject_deposit(
    deposit_id: str,
    request: Optional[ReviewRequest] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    reason = request.reason if request else None
    return system.deposits.reject_deposit(admin.id, deposit_id, reason, **client).to_dict()


# Loans

@router.get("/loans")
async def list_loans(
    status: Optional[str] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    loans = system.loans.list_loans(status=_enum(LoanStatus, status, "status"))
    return {"loans": [loan.to_dict() for loan in loans]}


@router.post("/loans/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: LoanApprovalRequest,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    result = system.loans.approve_loan(admin.id, loan_id, request.interest_rate, **client)
    return result.to_dict()


@router.post("/loans/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: Optional[ReviewRequest] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    reason = request.reason if request else None
    return system.loans.reject_loan(admin.id, loan_id, reason, **client).to_dict()


@router.get("/loan-repayments")
async def list_repayments(
    status: Optional[str] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    repayments = system.loans.list_repayments(status=_enum(RepaymentStatus, status, "status"))
    return {"repayments": [r.to_dict() for r in repayments]}


@router.post("/loan-repayments/{repayment_id}/approve")
async def approve_repayment(
    repayment_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    return system.loans.approve_repayment(admin.id, repayment_id, **client).to_dict()


@router.post("/loan-repayments/{repayment_id}/reject")
async def reject_repayment(
    repayment_id: str,
    request: Optional[ReviewRequest] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    reason = request.reason if request else None
    return system.loans.reject_repayment(admin.id, repayment_id, reason, **client).to_dict()


# Balances

@router.post("/accounts/{account_id}/adjust")
async def adjust_balance(
    account_id: str,
    request: AdjustBalanceRequest,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    """Credit or debit an account outside the customer flows"""
    txn = system.ledger.adjust_balance(
        actor_id=admin.id,
        account_id=account_id,
        amount=request.amount,
        kind=request.kind,
        description=request.description,
        sender_name=request.sender_name,
        sender_account=request.sender_account,
        sender_bank=request.sender_bank,
        **client
    )
    return {
        "transaction_id": txn.id,
        "balance": str(txn.balance_after),
        "message": "Balance adjusted successfully",
    }


@router.get("/reconcile")
async def reconcile(
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    """Accounts whose balance disagrees with their ledger rows"""
    mismatches = system.ledger.reconcile()
    return {
        "balanced": not mismatches,
        "mismatches": [{k: str(v) if k != 'balanced' else v for k, v in m.items()}
                       for m in mismatches],
    }


# Users

@router.get("/users")
async def list_users(
    include_deleted: bool = False,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    users = system.users.list_users(include_deleted=include_deleted)
    return {"users": [u.public_dict() for u in users]}


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    """Soft-delete a user and everything they own"""
    counts = system.users.delete_user(admin.id, user_id, **client)
    return {"success": True, "deleted": counts}


@router.post("/users/{user_id}/restore")
async def restore_user(
    user_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    counts = system.users.restore_user(admin.id, user_id, **client)
    return {"success": True, "restored": counts}


@router.post("/users/{user_id}/role")
async def update_role(
    user_id: str,
    request: RoleRequest,
    admin: User = Depends(require_super_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    role = _enum(UserRole, request.role, "role")
    user = system.users.update_role(admin.id, user_id, role, **client)
    return {"user": user.public_dict()}


@router.post("/users/{user_id}/toggle-activation")
async def toggle_activation(
    user_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    user = system.users.toggle_activation(admin.id, user_id, **client)
    return {"user_id": user.id, "is_active": user.is_active}


@router.post("/users/{user_id}/aml-code")
async def generate_aml_code(
    user_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    """Issue a fresh AML protection code for a customer"""
    code, expires_at = system.users.generate_aml_code(user_id)
    return {"user_id": user_id, "aml_code": code, "expires_at": expires_at.isoformat()}


@router.get("/users/{user_id}/risk")
async def get_risk_profile(
    user_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    account = system.accounts.get_user_account(user_id)
    return system.aml.risk_profile(user_id, account.id, account.created_at)


# Soft-delete management

@router.get("/deleted-records")
async def list_deleted_records(
    entity: Optional[str] = None,
    limit: int = 100,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    """Soft-deleted rows per entity type, most recently deleted first"""
    entity_types = [_enum(EntityType, entity, "entity")] if entity else list(EntityType)
    return {
        entity_type.value: system.soft_delete.get_deleted_records(entity_type, limit=limit)
        for entity_type in entity_types
    }


@router.delete("/records/{entity}/{record_id}")
async def soft_delete_record(
    entity: str,
    record_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    entity_type = _enum(EntityType, entity, "entity")
    if entity_type == EntityType.USER:
        counts = system.users.delete_user(admin.id, record_id, **client)
        return {"success": True, "deleted": counts}
    system.soft_delete.soft_delete(entity_type, record_id, admin.id, **client)
    return {"success": True}


@router.post("/records/{entity}/{record_id}/restore")
async def restore_record(
    entity: str,
    record_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    entity_type = _enum(EntityType, entity, "entity")
    if entity_type == EntityType.USER:
        counts = system.users.restore_user(admin.id, record_id, **client)
        return {"success": True, "restored": counts}
    system.soft_delete.restore(entity_type, record_id, admin.id, **client)
    return {"success": True}


@router.delete("/records/{entity}/{record_id}/permanent")
async def permanent_delete_record(
    entity: str,
    record_id: str,
    reason: str,
    admin: User = Depends(require_super_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    """Compliance-only hard delete. The data cannot be recovered."""
    entity_type = _enum(EntityType, entity, "entity")
    system.soft_delete.permanent_delete(entity_type, record_id, admin.id, reason, **client)
    return {"success": True, "warning": PERMANENT_DELETE_WARNING}


# Audit and compliance

@router.get("/audit-logs")
async def get_audit_logs(
    limit: int = 50,
    action: Optional[str] = None,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    if entity and entity_id:
        entries = system.audit.get_logs_for_entity(_enum(EntityType, entity, "entity"), entity_id)
    elif actor_id:
        entries = system.audit.get_logs_by_actor(actor_id, limit=limit)
    else:
        entries = system.audit.get_recent_logs(limit=limit, action=_enum(AuditAction, action, "action"))
    return {"logs": [e.to_dict() for e in entries]}


@router.get("/audit-logs/verify")
async def verify_audit_logs(
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    return system.audit.verify_integrity()


@router.get("/aml-alerts")
async def list_aml_alerts(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    alerts = system.aml.list_alerts(user_id=user_id, status=_enum(AlertStatus, status, "status"))
    return {"alerts": [a.to_dict() for a in alerts]}


@router.post("/aml-alerts/{alert_id}/review")
async def review_aml_alert(
    alert_id: str,
    request: AMLReviewRequest,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    status = _enum(AlertStatus, request.status, "status")
    alert = system.aml.review_alert(admin.id, alert_id, status, request.notes, **client)
    return {"alert": alert.to_dict()}
