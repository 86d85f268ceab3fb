"""
Support chat endpoints for customers, guests and admins
"""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, status

from .auth import get_current_user, require_admin, get_system, client_info
from .schemas import ChatMessageRequest, GuestMessageRequest, AdminChatRequest
from ..system import BankingSystem
from ..users import User
from ..chat import ChatMessage, SenderType, GUEST_PREFIX
from ..exceptions import ValidationError


router = APIRouter()

MAX_POLL_SECONDS = 30.0


def _poll(system: BankingSystem, conversation_id: Optional[str], cursor: int,
          timeout: float) -> Dict:
    subscription = system.chat_stream.subscribe(conversation_id, since=cursor)
    try:
        messages: List[ChatMessage] = subscription.fetch(timeout=min(max(timeout, 0.0), MAX_POLL_SECONDS))
    finally:
        subscription.close()
    return {
        "messages": [m.to_dict() for m in messages],
        "cursor": subscription.cursor,
    }


# Customer

@router.post("/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    request: ChatMessageRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    message = system.chat.send_user_message(user.id, request.message, request.attachment)
    return {"message": message.to_dict()}


@router.get("/messages")
async def get_messages(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    messages = system.chat.get_conversation(user.id, reader=SenderType.USER)
    cursor = messages[-1].sequence if messages else system.chat_stream.head()
    return {"messages": [m.to_dict() for m in messages], "cursor": cursor}


# Sync handlers run in the threadpool, so waiting here does not block the loop
@router.get("/poll")
def poll_messages(
    cursor: int = 0,
    timeout: float = 0,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_system)
):
    """New messages in the caller's conversation after ``cursor``"""
    return _poll(system, user.id, cursor, timeout)


# Guests

@router.post("/guest", status_code=status.HTTP_201_CREATED)
async def send_guest_message(
    request: GuestMessageRequest,
    system: BankingSystem = Depends(get_system)
):
    """Message from a visitor without an account; keep the returned guest_id"""
    message = system.chat.send_guest_message(
        guest_name=request.guest_name,
        message=request.message,
        guest_id=request.guest_id,
        attachment=request.attachment,
    )
    return {"guest_id": message.conversation_id, "message": message.to_dict()}


@router.get("/guest/{guest_id}/poll")
def poll_guest_messages(
    guest_id: str,
    cursor: int = 0,
    timeout: float = 0,
    system: BankingSystem = Depends(get_system)
):
    if not guest_id.startswith(GUEST_PREFIX):
        raise ValidationError("Invalid guest id")
    return _poll(system, guest_id, cursor, timeout)


# Admin

@router.get("/admin/conversations")
async def list_conversations(
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    conversations = []
    for entry in system.chat.list_conversations():
        entry = dict(entry)
        entry['last_message'] = entry['last_message'].to_dict()
        conversations.append(entry)
    return {"conversations": conversations}


@router.get("/admin/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    messages = system.chat.get_conversation(conversation_id, reader=SenderType.ADMIN)
    return {"messages": [m.to_dict() for m in messages]}


@router.post("/admin/messages", status_code=status.HTTP_201_CREATED)
async def send_admin_message(
    request: AdminChatRequest,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    message = system.chat.send_admin_message(admin.id, request.conversation_id,
                                             request.message, request.attachment)
    return {"message": message.to_dict()}


@router.post("/admin/conversations/{conversation_id}/mark-read")
async def mark_conversation_read(
    conversation_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    count = system.chat.mark_read(conversation_id, sender_type=SenderType.USER)
    return {"marked_read": count}


@router.get("/admin/poll")
def poll_all_messages(
    cursor: int = 0,
    timeout: float = 0,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system)
):
    """New messages across every conversation"""
    return _poll(system, None, cursor, timeout)


@router.delete("/admin/messages/{message_id}")
async def delete_message(
    message_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    system.chat.delete_message(admin.id, message_id, **client)
    return {"success": True}


@router.post("/admin/messages/{message_id}/restore")
async def restore_message(
    message_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    system.chat.restore_message(admin.id, message_id, **client)
    return {"success": True}


@router.delete("/admin/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_system),
    client: Dict = Depends(client_info)
):
    count = system.chat.delete_conversation(admin.id, conversation_id, **client)
    return {"success": True, "deleted": count}
