"""
Event System Module

Publish/subscribe dispatcher the ledger uses to announce committed changes.
Events are published only after a commit succeeds; a failing handler is
logged and never propagates back into the mutation that triggered it.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in the ledger"""

    # Account events
    ACCOUNT_CREATED = "account.created"
    ACCOUNT_UPDATED = "account.updated"

    # Transaction events
    TRANSACTION_POSTED = "transaction.posted"
    TRANSFER_COMPLETED = "transfer.completed"

    # Loan events
    LOAN_DISBURSED = "loan.disbursed"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    account_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'account_id': self.account_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


Handler = Callable[[EventPayload], Any]


class Subscription:
    """Handle returned by ``EventDispatcher.subscribe``; call ``cancel`` to stop delivery"""

    def __init__(self, dispatcher: 'EventDispatcher', event_type: Optional[DomainEvent], handler: Handler):
        self._dispatcher = dispatcher
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self.event_type is None:
            self._dispatcher.unsubscribe_all(self.handler)
        else:
            self._dispatcher.unsubscribe(self.event_type, self.handler)


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Handler]] = {}
        self._global_handlers: List[Handler] = []  # catch-all handlers
        self._lock = RLock()
        self.logger = logging.getLogger("fastpay.events")

    @staticmethod
    def _name(handler: Handler) -> str:
        return getattr(handler, "__name__", repr(handler))

    def subscribe(self, event_type: DomainEvent, handler: Handler) -> Subscription:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {self._name(handler)} to {event_type.value}")
        return Subscription(self, event_type, handler)

    def subscribe_all(self, handler: Handler) -> Subscription:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {self._name(handler)}")
        return Subscription(self, None, handler)

    def subscribe_account(self, account_id: str, handler: Handler) -> Subscription:
        """Subscribe to every event concerning one account"""
        def account_handler(event: EventPayload) -> None:
            if event.account_id == account_id:
                handler(event)

        account_handler.__name__ = f"{self._name(handler)}[{account_id}]"
        return self.subscribe_all(account_handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Handler) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
                self.logger.debug(f"Unsubscribed handler {self._name(handler)} from {event_type.value}")
            except ValueError:
                self.logger.warning(f"Handler {self._name(handler)} was not subscribed to {event_type.value}")

    def unsubscribe_all(self, handler: Handler) -> None:
        """Remove a catch-all handler"""
        with self._lock:
            try:
                self._global_handlers.remove(handler)
                self.logger.debug(f"Unsubscribed global handler {self._name(handler)}")
            except ValueError:
                self.logger.warning(f"Global handler {self._name(handler)} was not subscribed")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error(f"Error in event handler {self._name(handler)} for {event.event_type.value}: {e}")

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


def create_account_event(event_type: DomainEvent, account, **extra) -> EventPayload:
    """Event describing an account after a commit"""
    data = {
        'account_number': account.account_number,
        'balance': str(account.balance),
        'currency': account.currency.code,
        'version': account.version,
    }
    data.update(extra)
    return EventPayload(
        event_type=event_type,
        entity_type='account',
        entity_id=account.id,
        account_id=account.id,
        data=data
    )


def create_transaction_event(account, transaction, event_type: DomainEvent = DomainEvent.TRANSACTION_POSTED) -> EventPayload:
    """Event describing a transaction that was committed to an account"""
    return EventPayload(
        event_type=event_type,
        entity_type='transaction',
        entity_id=transaction.id,
        account_id=account.id,
        data={
            'type': transaction.type.value,
            'category': transaction.category.value,
            'amount': str(transaction.amount),
            'description': transaction.description,
            'balance': str(account.balance),
        }
    )


def create_loan_event(account, loan) -> EventPayload:
    return EventPayload(
        event_type=DomainEvent.LOAN_DISBURSED,
        entity_type='loan',
        entity_id=loan.id,
        account_id=account.id,
        data={
            'amount': str(loan.amount),
            'term_months': loan.term_months,
            'monthly_payment': str(loan.monthly_payment),
        }
    )
