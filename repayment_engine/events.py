"""
Event System Module

Publish/subscribe dispatcher for ledger observability events. Services emit
events such as "payment.applied" or "payment.blocked" through an injected
dispatcher instead of writing to a particular log sink.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Events emitted by the repayment engine"""

    # Schedule events
    SCHEDULE_GENERATED = "schedule.generated"
    SCHEDULE_RECALCULATED = "schedule.recalculated"

    # Payment events
    PAYMENT_APPLIED = "payment.applied"
    PAYMENT_BLOCKED = "payment.blocked"
    INSTALLMENT_PAID = "installment.paid"
    INSTALLMENT_WRITTEN_OFF = "installment.written_off"

    # Delinquency events
    INSTALLMENT_OVERDUE = "installment.overdue"
    ARREARS_SWEEP_COMPLETED = "arrears.sweep_completed"
    INTEREST_ACCRUED = "interest.accrued"

    # Classification events
    LOAN_CLASSIFIED = "loan.classified"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        timestamp = data['timestamp']
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=timestamp,
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()
        self.logger = logging.getLogger("repayment_engine.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
                self.logger.debug(f"Unsubscribed handler {_handler_name(handler)} from {event_type.value}")
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # A failing subscriber must not break the ledger operation
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}"
                )

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


class NullDispatcher(EventDispatcher):
    """Dispatcher that drops every event (enable_events=False)"""

    def publish(self, event: EventPayload) -> None:
        pass


# Global event dispatcher instance (singleton pattern)
_global_dispatcher: Optional[EventDispatcher] = None


def get_global_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher instance"""
    global _global_dispatcher
    if _global_dispatcher is None:
        _global_dispatcher = EventDispatcher()
    return _global_dispatcher


def set_global_dispatcher(dispatcher: Optional[EventDispatcher]) -> None:
    """Set a custom global event dispatcher"""
    global _global_dispatcher
    _global_dispatcher = dispatcher


class EventPublisherMixin:
    """Mixin to add event publishing capabilities to engine services"""

    _event_dispatcher: Optional[EventDispatcher] = None

    def set_event_dispatcher(self, event_dispatcher: EventDispatcher) -> None:
        """Set the event dispatcher for this instance"""
        self._event_dispatcher = event_dispatcher

    def publish_event(self, event_type: DomainEvent, entity_type: str, entity_id: str,
                      data: Dict[str, Any]) -> None:
        """Publish a domain event"""
        dispatcher = self._event_dispatcher or get_global_dispatcher()
        dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data
        ))
