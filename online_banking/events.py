"""
Event System Module

Publish/subscribe dispatcher for ledger domain events. Flows publish through
``storage.on_commit`` so subscribers only ever see committed state; a failing
handler is logged and never breaks the operation that published the event.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
from threading import RLock

from .logging_config import get_logger


class DomainEvent(Enum):
    """Domain events that can occur in the ledger"""

    # Deposit events
    DEPOSIT_SUBMITTED = "deposit.submitted"
    DEPOSIT_APPROVED = "deposit.approved"
    DEPOSIT_REJECTED = "deposit.rejected"

    # Transfer events
    TRANSFER_COMPLETED = "transfer.completed"
    TRANSFER_FAILED = "transfer.failed"

    # Loan events
    LOAN_REQUESTED = "loan.requested"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    REPAYMENT_SUBMITTED = "repayment.submitted"
    REPAYMENT_APPROVED = "repayment.approved"
    REPAYMENT_REJECTED = "repayment.rejected"

    # Admin adjustments
    BALANCE_ADJUSTED = "balance.adjusted"

    # Compliance
    AML_ALERT = "aml.alert"

    # Support chat
    CHAT_MESSAGE = "chat.message"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    user_id: Optional[str] = None  # user the event concerns, for notifications
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'user_id': self.user_id,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()
        self.logger = get_logger("online_banking.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug("Subscribed handler %s to %s", _handler_name(handler), event_type.value)

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning("Handler %s was not subscribed to %s",
                                    _handler_name(handler), event_type.value)

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug("Publishing event %s for %s:%s",
                          event.event_type.value, event.entity_type, event.entity_id)
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error("Error in event handler %s for %s: %s",
                                  _handler_name(handler), event.event_type.value, e)

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventPublisherMixin:
    """Mixin for services that publish events once their atomic unit commits"""

    storage = None
    events: Optional[EventDispatcher] = None

    def publish_event(self, event_type: DomainEvent, entity_type: str, entity_id: str,
                      data: Dict[str, Any], user_id: Optional[str] = None) -> None:
        """Queue a domain event for delivery after the current unit commits"""
        if self.events is None:
            return
        event = EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data,
            user_id=user_id,
        )
        self.storage.on_commit(lambda: self.events.publish(event))
