"""
In-app notification inbox
"""

from fastapi import APIRouter, Depends

from .auth import get_current_user, get_system
from ..system import BankingSystem
from ..users import User
from ..exceptions import NotFoundError


router = APIRouter()


@router.get("")
async def list_notifications(
    limit: int = 50,
    unread_only: bool = False,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    notifications = system.inbox.list_for_user(user.id, limit=limit, unread_only=unread_only)
    return {"notifications": [n.to_dict() for n in notifications]}


@router.get("/unread-count")
async def get_unread_count(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    return {"count": system.inbox.unread_count(user.id)}


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    if not system.inbox.mark_read(user.id, notification_id):
        raise NotFoundError("Notification not found")
    return {"success": True}


@router.post("/mark-all-read")
async def mark_all_read(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    return {"marked_read": system.inbox.mark_all_read(user.id)}
