"""
Notification Module

Turns committed ledger events into user and admin notifications and hands
them to pluggable notifiers (in-app inbox, webhook). Delivery is best
effort: a notifier failure is logged and never reaches the operation that
published the event.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any
from enum import Enum
import uuid
import json
import requests
from abc import ABC, abstractmethod

from .storage import StorageInterface, StorageRecord
from .events import EventDispatcher, EventPayload, DomainEvent
from .logging_config import get_logger, log_action

logger = get_logger("online_banking.notifications")


class NotificationType(Enum):
    CHAT_MESSAGE = "chat_message"
    ACCOUNT_ACTIVITY = "account_activity"
    SYSTEM_ALERT = "system_alert"


@dataclass
class Notification(StorageRecord):
    """Message addressed to one user"""
    user_id: str
    notification_type: NotificationType
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    read_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        data = dict(data)
        data['notification_type'] = NotificationType(data['notification_type'])
        return super().from_dict(data)


class Notifier(ABC):
    """Delivery channel for notifications"""

    @abstractmethod
    def notify(self, notification: Notification) -> bool:
        """Deliver one notification. Returns True if it was accepted."""
        pass


class InAppNotifier(Notifier):
    """Stores notifications for the in-app inbox"""

    def __init__(self, storage: StorageInterface, table_name: str = "notifications"):
        self.storage = storage
        self.table_name = table_name

    def notify(self, notification: Notification) -> bool:
        self.storage.save(self.table_name, notification.id, notification.to_dict())
        return True

    def list_for_user(self, user_id: str, limit: int = 50, unread_only: bool = False) -> List[Notification]:
        """Newest first"""
        filters: Dict[str, Any] = {'user_id': user_id}
        if unread_only:
            filters['is_read'] = False
        notifications = [Notification.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    def unread_count(self, user_id: str) -> int:
        return len(self.storage.find(self.table_name, {'user_id': user_id, 'is_read': False}))

    def mark_read(self, user_id: str, notification_id: str) -> bool:
        data = self.storage.load(self.table_name, notification_id)
        if data is None or data['user_id'] != user_id:
            return False
        if not data['is_read']:
            self._mark(data, datetime.now(timezone.utc))
        return True

    def mark_all_read(self, user_id: str) -> int:
        """Returns the number of notifications that were unread"""
        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            unread = self.storage.find(self.table_name, {'user_id': user_id, 'is_read': False})
            for data in unread:
                self._mark(data, now)
        return len(unread)

    def _mark(self, data: Dict[str, Any], when: datetime) -> None:
        data['is_read'] = True
        data['read_at'] = when.isoformat()
        data['updated_at'] = when.isoformat()
        self.storage.save(self.table_name, data['id'], data)


class WebhookNotifier(Notifier):
    """POSTs each notification as JSON to an external endpoint"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def notify(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "user_id": notification.user_id,
            "title": notification.title,
            "message": notification.message,
            "timestamp": notification.created_at.isoformat(),
            "data": notification.data,
        }
        try:
            response = requests.post(
                self.url,
                data=json.dumps(payload, default=str),
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            logger.warning("Webhook delivery to %s failed: %s", self.url, e)
            return False
        if not response.ok:
            logger.warning("Webhook %s answered %s", self.url, response.status_code)
        return response.ok


_MONEY_KEYS = {'amount', 'new_balance', 'total_repayment', 'amount_paid', 'recipient_new_balance'}


def _fmt(value: Any) -> str:
    if isinstance(value, Decimal):
        return f"${value:,.2f}"
    if isinstance(value, str):
        try:
            return f"${Decimal(value):,.2f}"
        except ArithmeticError:
            return value
    return str(value)


class _Fields(dict):
    """format_map source that leaves missing keys blank"""

    def __missing__(self, key):
        return ""


# event -> (audience, type, title, message template)
TEMPLATES = {
    DomainEvent.DEPOSIT_SUBMITTED: ("admins", NotificationType.SYSTEM_ALERT,
                                    "New Deposit Request",
                                    "A deposit of {amount} via {payment_method} is awaiting approval"),
    DomainEvent.DEPOSIT_APPROVED: ("user", NotificationType.ACCOUNT_ACTIVITY,
                                   "Deposit Approved",
                                   "Your deposit of {amount} has been approved. New balance: {new_balance}"),
    DomainEvent.DEPOSIT_REJECTED: ("user", NotificationType.ACCOUNT_ACTIVITY,
                                   "Deposit Rejected",
                                   "Your deposit of {amount} was rejected. Reason: {reason}"),
    DomainEvent.TRANSFER_COMPLETED: ("user", NotificationType.ACCOUNT_ACTIVITY,
                                     "Transfer Sent",
                                     "You sent {amount} to {recipient_account_number}. New balance: {new_balance}"),
    DomainEvent.TRANSFER_FAILED: ("user", NotificationType.ACCOUNT_ACTIVITY,
                                  "Transfer Failed",
                                  "Your transfer of {amount} could not be completed. {reason}"),
    DomainEvent.LOAN_REQUESTED: ("admins", NotificationType.SYSTEM_ALERT,
                                 "New Loan Application",
                                 "A loan of {amount} for {purpose} is awaiting review"),
    DomainEvent.LOAN_APPROVED: ("user", NotificationType.ACCOUNT_ACTIVITY,
                                "Loan Approved",
                                "Your loan of {amount} has been approved. Total repayment: {total_repayment}"),
    DomainEvent.LOAN_REJECTED: ("user", NotificationType.ACCOUNT_ACTIVITY,
                                "Loan Rejected",
                                "Your loan application of {amount} was rejected. Reason: {reason}"),
    DomainEvent.REPAYMENT_SUBMITTED: ("admins", NotificationType.SYSTEM_ALERT,
                                      "New Loan Repayment",
                                      "A loan repayment of {amount} via {payment_method} is awaiting approval"),
    DomainEvent.REPAYMENT_APPROVED: ("user", NotificationType.ACCOUNT_ACTIVITY,
                                     "Repayment Approved",
                                     "Your repayment of {amount} has been approved. Total paid: {amount_paid}"),
    DomainEvent.REPAYMENT_REJECTED: ("user", NotificationType.ACCOUNT_ACTIVITY,
                                     "Repayment Rejected",
                                     "Your repayment of {amount} was rejected. Reason: {reason}"),
    DomainEvent.BALANCE_ADJUSTED: ("user", NotificationType.ACCOUNT_ACTIVITY,
                                   "Account Balance Updated",
                                   "Your account was adjusted ({kind}) by {amount}. New balance: {new_balance}"),
    DomainEvent.AML_ALERT: ("admins", NotificationType.SYSTEM_ALERT,
                            "AML Alert",
                            "{severity}: {description}"),
}


class NotificationDispatcher:
    """
    Subscribes to ledger events and fans notifications out to notifiers.

    ``admin_ids`` returns the users that receive admin notifications
    (new submissions, AML alerts, customer chat messages).
    """

    def __init__(self, events: EventDispatcher, notifiers: List[Notifier],
                 admin_ids: Callable[[], List[str]]):
        self.events = events
        self.notifiers = list(notifiers)
        self.admin_ids = admin_ids
        self.events.subscribe_all(self.handle)

    def add_notifier(self, notifier: Notifier) -> None:
        self.notifiers.append(notifier)

    def build(self, event: EventPayload) -> List[Notification]:
        """Notifications an event produces; empty for events nobody hears about"""
        if event.event_type == DomainEvent.CHAT_MESSAGE:
            return self._chat(event)
        template = TEMPLATES.get(event.event_type)
        if template is None:
            return []

        audience, notification_type, title, text = template
        fields = _Fields({k: _fmt(v) if k in _MONEY_KEYS else v for k, v in event.data.items()})
        message = text.format_map(fields)
        recipients = self.admin_ids() if audience == "admins" else [event.user_id]
        notifications = [self._make(uid, notification_type, title, message, event)
                         for uid in recipients if uid]

        # The receiving side of an internal transfer
        recipient_id = event.data.get('recipient_user_id')
        if event.event_type == DomainEvent.TRANSFER_COMPLETED and recipient_id:
            notifications.append(self._make(
                recipient_id, NotificationType.ACCOUNT_ACTIVITY, "Transfer Received",
                f"You received {fields['amount']}. New balance: {_fmt(event.data.get('recipient_new_balance'))}",
                event))
        return notifications

    def _chat(self, event: EventPayload) -> List[Notification]:
        preview = str(event.data.get('message', ''))[:100]
        if event.data.get('sender_type') == "admin":
            # Guests have no inbox
            if not event.user_id:
                return []
            return [self._make(event.user_id, NotificationType.CHAT_MESSAGE,
                               "New Message from Support", preview, event)]
        return [self._make(uid, NotificationType.CHAT_MESSAGE, "New Support Message", preview, event)
                for uid in self.admin_ids()]

    def _make(self, user_id: str, notification_type: NotificationType, title: str,
              message: str, event: EventPayload) -> Notification:
        now = datetime.now(timezone.utc)
        return Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            message=message,
            data={'event_id': event.event_id, 'event_type': event.event_type.value,
                  'entity_type': event.entity_type, 'entity_id': event.entity_id},
        )

    def handle(self, event: EventPayload) -> None:
        """Deliver every notification an event produces to every notifier"""
        for notification in self.build(event):
            for notifier in self.notifiers:
                try:
                    delivered = notifier.notify(notification)
                except Exception as e:
                    log_action(logger, "error", f"Notifier {type(notifier).__name__} failed: {e}",
                               user_id=notification.user_id, action="notify",
                               resource=f"{event.entity_type}:{event.entity_id}")
                    continue
                if not delivered:
                    log_action(logger, "warning", f"Notifier {type(notifier).__name__} did not deliver",
                               user_id=notification.user_id, action="notify",
                               resource=f"{event.entity_type}:{event.entity_id}")
