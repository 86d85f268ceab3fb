"""
Support Chat Module

Conversations between customers (or anonymous guests) and support admins.
A conversation is keyed by the customer's user id, or by a ``guest-...`` id
for visitors who are not logged in.

Every message gets a storage-wide, strictly increasing ``sequence``.
``ChatEventStream`` hands out subscriptions that read forward from a cursor
over that sequence, so each subscriber sees each new message exactly once.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from threading import Condition
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditLogger, AuditAction, EntityType
from .events import EventDispatcher, EventPublisherMixin, EventPayload, DomainEvent
from .soft_delete import SoftDeleteManager, table_for, stamp_deleted, clear_deleted, is_record_deleted
from .exceptions import ValidationError, NotFoundError, InvalidStateTransitionError
from .logging_config import get_logger, log_action

logger = get_logger("online_banking.chat")

GUEST_PREFIX = "guest-"


class SenderType(Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass
class ChatMessage(StorageRecord):
    """One chat message. ``sent_by`` is the admin id or the guest's name."""
    conversation_id: str
    message: str
    sender_type: SenderType
    sequence: int
    sent_by: Optional[str] = None
    attachment: Optional[str] = None
    is_read: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.conversation_id.startswith(GUEST_PREFIX)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChatMessage':
        data = dict(data)
        data['sender_type'] = SenderType(data['sender_type'])
        return super().from_dict(data)


class ChatService(EventPublisherMixin):
    """
    Sending, reading and moderating support chat messages
    """

    def __init__(self, storage: StorageInterface, soft_delete: SoftDeleteManager,
                 audit: AuditLogger, events: Optional[EventDispatcher] = None,
                 max_attachment_bytes: int = 10 * 1024 * 1024, history_limit: int = 100):
        self.storage = storage
        self.soft_delete = soft_delete
        self.audit = audit
        self.events = events
        self.max_attachment_bytes = max_attachment_bytes
        self.history_limit = history_limit
        self.table_name = table_for(EntityType.MESSAGE)

    def _check(self, message: str, attachment: Optional[str]) -> None:
        if not message or not message.strip():
            raise ValidationError("Message is required")
        if attachment and len(attachment) > self.max_attachment_bytes:
            raise ValidationError("Attachment is too large. Please use a smaller image.")

    def _next_sequence(self) -> int:
        rows = self.storage.load_all(self.table_name)
        return max((row['sequence'] for row in rows), default=0) + 1

    def _append(self, conversation_id: str, message: str, sender_type: SenderType,
                sent_by: Optional[str], attachment: Optional[str]) -> ChatMessage:
        self._check(message, attachment)
        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            chat = ChatMessage(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                conversation_id=conversation_id,
                message=message,
                sender_type=sender_type,
                sequence=self._next_sequence(),
                sent_by=sent_by,
                attachment=attachment,
            )
            self.storage.save(self.table_name, chat.id, chat.to_dict())
            self.publish_event(DomainEvent.CHAT_MESSAGE, EntityType.MESSAGE.value, chat.id, {
                'conversation_id': conversation_id,
                'sender_type': sender_type.value,
                'message': message,
                'sequence': chat.sequence,
            }, user_id=None if chat.is_guest else conversation_id)

        logger.debug("Chat message %s (seq %d) in %s from %s",
                     chat.id, chat.sequence, conversation_id, sender_type.value)
        return chat

    def send_user_message(self, user_id: str, message: str,
                          attachment: Optional[str] = None) -> ChatMessage:
        return self._append(user_id, message, SenderType.USER, None, attachment)

    def send_guest_message(self, guest_name: str, message: str, guest_id: Optional[str] = None,
                           attachment: Optional[str] = None) -> ChatMessage:
        """
        Message from a visitor who is not logged in. A new guest id is
        issued when none is given; reuse it to continue the conversation.
        """
        if not guest_name or not guest_name.strip():
            raise ValidationError("Guest name is required")
        if guest_id is None:
            guest_id = f"{GUEST_PREFIX}{uuid.uuid4().hex}"
        elif not guest_id.startswith(GUEST_PREFIX):
            raise ValidationError("Invalid guest id")
        return self._append(guest_id, message, SenderType.USER, guest_name.strip(), attachment)

    def send_admin_message(self, admin_id: str, conversation_id: str, message: str,
                           attachment: Optional[str] = None) -> ChatMessage:
        if not conversation_id:
            raise ValidationError("User ID and message are required")
        return self._append(conversation_id, message, SenderType.ADMIN, admin_id, attachment)

    def _messages(self, conversation_id: str) -> List[ChatMessage]:
        rows = self.storage.find(self.table_name, {'conversation_id': conversation_id, 'deleted_at': None})
        messages = [ChatMessage.from_dict(row) for row in rows]
        messages.sort(key=lambda m: m.sequence)
        return messages

    def get_conversation(self, conversation_id: str, reader: SenderType = SenderType.USER,
                         limit: Optional[int] = None) -> List[ChatMessage]:
        """
        Active messages of a conversation, oldest first, capped to the most
        recent ``limit`` (default: history limit).

        When the customer reads, admin-authored messages are marked read.
        """
        messages = self._messages(conversation_id)[-(limit or self.history_limit):]
        if reader == SenderType.USER:
            self.mark_read(conversation_id, sender_type=SenderType.ADMIN)
            for message in messages:
                if message.sender_type == SenderType.ADMIN:
                    message.is_read = True
        return messages

    def list_conversations(self) -> List[Dict[str, Any]]:
        """
        Admin inbox: one entry per conversation with its last message and
        the number of unread customer messages, most recent first.
        """
        conversations: Dict[str, Dict[str, Any]] = {}
        rows = self.storage.find(self.table_name, {'deleted_at': None})
        for message in sorted((ChatMessage.from_dict(r) for r in rows), key=lambda m: m.sequence):
            entry = conversations.setdefault(message.conversation_id, {
                'conversation_id': message.conversation_id,
                'is_guest': message.is_guest,
                'guest_name': None,
                'unread_count': 0,
            })
            entry['last_message'] = message
            if message.sender_type == SenderType.USER:
                if message.is_guest and message.sent_by:
                    entry['guest_name'] = message.sent_by
                if not message.is_read:
                    entry['unread_count'] += 1

        return sorted(conversations.values(), key=lambda c: c['last_message'].sequence, reverse=True)

    def mark_read(self, conversation_id: str, sender_type: SenderType = SenderType.USER) -> int:
        """Mark one side's unread messages read; returns how many changed"""
        now = datetime.now(timezone.utc).isoformat()
        with self.storage.atomic():
            unread = self.storage.find(self.table_name, {
                'conversation_id': conversation_id,
                'sender_type': sender_type.value,
                'is_read': False,
            })
            for row in unread:
                row['is_read'] = True
                row['updated_at'] = now
                self.storage.save(self.table_name, row['id'], row)
        return len(unread)

    def _load(self, message_id: str) -> Dict[str, Any]:
        row = self.storage.load(self.table_name, message_id)
        if row is None:
            raise NotFoundError(f"Message {message_id} not found")
        return row

    def delete_message(self, admin_id: str, message_id: str, **client) -> Dict[str, Any]:
        """Soft-delete one message (audited as DELETE_MESSAGE)"""
        with self.storage.atomic():
            row = self._load(message_id)
            if is_record_deleted(row):
                raise InvalidStateTransitionError(f"Message {message_id} is already deleted")
            snapshot = dict(row)
            row = stamp_deleted(row, admin_id, datetime.now(timezone.utc))
            self.storage.save(self.table_name, message_id, row)
            self.audit.log(admin_id, AuditAction.DELETE_MESSAGE, EntityType.MESSAGE, message_id,
                           {'deleted_data': snapshot}, **client)

        log_action(logger, "info", f"Deleted message {message_id}", user_id=admin_id,
                   action="delete_message", resource=f"message:{message_id}")
        return row

    def restore_message(self, admin_id: str, message_id: str, **client) -> Dict[str, Any]:
        with self.storage.atomic():
            row = self._load(message_id)
            if not is_record_deleted(row):
                raise InvalidStateTransitionError(f"Message {message_id} is not deleted")
            snapshot = dict(row)
            row = clear_deleted(row, datetime.now(timezone.utc))
            self.storage.save(self.table_name, message_id, row)
            self.audit.log(admin_id, AuditAction.RESTORE_MESSAGE, EntityType.MESSAGE, message_id,
                           {'restored_data': snapshot}, **client)

        log_action(logger, "info", f"Restored message {message_id}", user_id=admin_id,
                   action="restore_message", resource=f"message:{message_id}")
        return row

    def delete_conversation(self, admin_id: str, conversation_id: str, **client) -> int:
        """Soft-delete every active message of a conversation under one bulk audit row"""
        ids = [m.id for m in self._messages(conversation_id)]
        return self.soft_delete.bulk_soft_delete(EntityType.MESSAGE, ids, admin_id, **client)


class Subscription:
    """
    Read cursor over one conversation (or all of them when
    ``conversation_id`` is None).
    """

    def __init__(self, stream: 'ChatEventStream', conversation_id: Optional[str], cursor: int):
        self.stream = stream
        self.conversation_id = conversation_id
        self.cursor = cursor
        self.closed = False

    def fetch(self, timeout: float = 0) -> List[ChatMessage]:
        """
        Messages committed since the last fetch, oldest first. With a
        ``timeout`` the call waits up to that many seconds for a message
        when none is ready.
        """
        if self.closed:
            return []
        if timeout > 0:
            messages = self.stream.wait_for_messages(self.conversation_id, self.cursor, timeout)
        else:
            messages = self.stream.read_after(self.conversation_id, self.cursor)
        if messages:
            self.cursor = messages[-1].sequence
        return messages

    def close(self) -> None:
        self.closed = True
        self.stream.release(self)


class ChatEventStream:
    """
    Delivers new chat messages to subscribers.

    Listens for ``chat.message`` events to wake waiting subscribers; the
    messages themselves are always read back from storage.
    """

    def __init__(self, storage: StorageInterface, events: Optional[EventDispatcher] = None):
        self.storage = storage
        self.table_name = table_for(EntityType.MESSAGE)
        self._condition = Condition()
        self._subscriptions: List[Subscription] = []
        if events is not None:
            events.subscribe(DomainEvent.CHAT_MESSAGE, self._on_message)

    def _on_message(self, event: EventPayload) -> None:
        with self._condition:
            self._condition.notify_all()

    def head(self) -> int:
        """Sequence of the newest message"""
        rows = self.storage.load_all(self.table_name)
        return max((row['sequence'] for row in rows), default=0)

    def subscribe(self, conversation_id: Optional[str] = None,
                  since: Optional[int] = None) -> Subscription:
        """
        Open a subscription. Without ``since`` only messages sent after this
        call are delivered.
        """
        cursor = self.head() if since is None else since
        subscription = Subscription(self, conversation_id, cursor)
        with self._condition:
            self._subscriptions.append(subscription)
        return subscription

    def release(self, subscription: Subscription) -> None:
        with self._condition:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._condition:
            return len(self._subscriptions)

    def read_after(self, conversation_id: Optional[str], cursor: int) -> List[ChatMessage]:
        filters: Dict[str, Any] = {'deleted_at': None}
        if conversation_id is not None:
            filters['conversation_id'] = conversation_id
        messages = [ChatMessage.from_dict(row) for row in self.storage.find(self.table_name, filters)
                    if row['sequence'] > cursor]
        messages.sort(key=lambda m: m.sequence)
        return messages

    def wait_for_messages(self, conversation_id: Optional[str], cursor: int,
                          timeout: float) -> List[ChatMessage]:
        """
        ``read_after``, blocking up to ``timeout`` seconds while nothing is
        ready. The check runs under the condition, so a message committed
        between the check and the wait still wakes the caller.
        """
        found: List[ChatMessage] = []

        def ready() -> bool:
            found[:] = self.read_after(conversation_id, cursor)
            return bool(found)

        with self._condition:
            self._condition.wait_for(ready, timeout)
        return found
