"""
Tests for the Event System

Tests the dispatcher itself; service-level events are covered next to
each service's tests.
"""

import pytest
from datetime import datetime
from unittest.mock import Mock

from repayment_engine.events import (
    DomainEvent, EventPayload, EventDispatcher, NullDispatcher, EventPublisherMixin,
    get_global_dispatcher, set_global_dispatcher
)


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        """Payloads get a timestamp and an id"""
        event = EventPayload(
            event_type=DomainEvent.PAYMENT_APPLIED,
            entity_type="loan",
            entity_id="L1",
            data={"principal_paid": "100.00"}
        )
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        """to_dict / from_dict round trip"""
        original = EventPayload(
            event_type=DomainEvent.PAYMENT_BLOCKED,
            entity_type="installment",
            entity_id="L1:1",
            data={"reason": "Installment already paid"}
        )
        data = original.to_dict()
        assert data['event_type'] == "payment.blocked"
        restored = EventPayload.from_dict(data)
        assert restored.event_type == original.event_type
        assert restored.event_id == original.event_id
        assert restored.timestamp == original.timestamp


class TestEventDispatcher:
    """Test publish/subscribe"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()

    def _event(self, event_type=DomainEvent.PAYMENT_APPLIED):
        return EventPayload(event_type=event_type, entity_type="loan", entity_id="L1", data={})

    def test_subscribe_and_publish(self):
        """Handlers receive only their event type"""
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, handler)

        self.dispatcher.publish(self._event())
        self.dispatcher.publish(self._event(DomainEvent.LOAN_CLASSIFIED))

        assert handler.call_count == 1

    def test_subscribe_all(self):
        """Global handlers see everything"""
        handler = Mock()
        self.dispatcher.subscribe_all(handler)
        self.dispatcher.publish(self._event())
        self.dispatcher.publish(self._event(DomainEvent.INSTALLMENT_OVERDUE))
        assert handler.call_count == 2

    def test_failing_handler_does_not_stop_others(self):
        """A raising subscriber is logged and skipped"""
        failing = Mock(side_effect=RuntimeError("subscriber down"))
        working = Mock()
        self.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, failing)
        self.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, working)

        self.dispatcher.publish(self._event())
        working.assert_called_once()

    def test_unsubscribe_and_counts(self):
        """Handler counts follow subscribe/unsubscribe/clear"""
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, handler)
        self.dispatcher.subscribe_all(Mock())
        assert self.dispatcher.get_handler_count(DomainEvent.PAYMENT_APPLIED) == 1
        assert self.dispatcher.get_handler_count() == 2

        self.dispatcher.unsubscribe(DomainEvent.PAYMENT_APPLIED, handler)
        assert self.dispatcher.get_handler_count(DomainEvent.PAYMENT_APPLIED) == 0
        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0

    def test_null_dispatcher_drops_events(self):
        """NullDispatcher never calls handlers"""
        dispatcher = NullDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)
        dispatcher.publish(self._event())
        handler.assert_not_called()


class TestEventPublisherMixin:
    """Test the service-side publishing helper"""

    def teardown_method(self):
        set_global_dispatcher(None)

    def test_uses_injected_dispatcher(self):
        """An injected dispatcher wins over the global one"""
        publisher = EventPublisherMixin()
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.SCHEDULE_GENERATED, handler)
        publisher.set_event_dispatcher(dispatcher)

        publisher.publish_event(DomainEvent.SCHEDULE_GENERATED, "loan", "L1", {"installments": 12})

        event = handler.call_args[0][0]
        assert event.entity_id == "L1"
        assert event.data == {"installments": 12}

    def test_falls_back_to_global_dispatcher(self):
        """Without injection the global dispatcher is used"""
        dispatcher = EventDispatcher()
        set_global_dispatcher(dispatcher)
        handler = Mock()
        dispatcher.subscribe_all(handler)

        EventPublisherMixin().publish_event(DomainEvent.INTEREST_ACCRUED, "loan", "L1", {})

        assert get_global_dispatcher() is dispatcher
        handler.assert_called_once()
