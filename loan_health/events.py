"""
Event System Module

Outbound domain events for the notification and credit-tier collaborators.
A publish/subscribe dispatcher delivers events to handlers; the outbox stores
events inside the same atomic commit as the loan mutation that caused them and
dispatches them only after that commit, so delivery is at-least-once and never
announces a change that was rolled back.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock

from .storage import StorageInterface


class DomainEvent(Enum):
    """Events announced to collaborators after commit"""
    HEALTH_CHANGED = "loan.health_changed"
    REFINANCE_COMPLETED = "loan.refinance_completed"
    RECOVERY_STARTED = "loan.recovery_started"
    RECOVERY_COMPLETED = "loan.recovery_completed"
    REPAYMENT_APPLIED = "loan.repayment_applied"
    LOAN_PAID_OFF = "loan.paid_off"


@dataclass
class EventPayload:
    """A domain event as published and as stored in the outbox"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['event_type'] = self.event_type.value
        data['timestamp'] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
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


Handler = Callable[[EventPayload], Any]


def _handler_name(handler: Handler) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """
    In-process publish/subscribe hub

    Handlers subscribe to one event type or, through ``subscribe_all``, to
    every event. A handler that raises is logged and does not stop delivery to
    the others.
    """

    def __init__(self):
        self._by_type: Dict[DomainEvent, List[Handler]] = {}
        self._catch_all: List[Handler] = []
        self._lock = RLock()
        self.logger = logging.getLogger("loan_health.events")

    def subscribe(self, event_type: DomainEvent, handler: Handler) -> None:
        with self._lock:
            self._by_type.setdefault(event_type, []).append(handler)
        self.logger.debug(f"{_handler_name(handler)} subscribed to {event_type.value}")

    def subscribe_all(self, handler: Handler) -> None:
        with self._lock:
            self._catch_all.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Handler) -> None:
        with self._lock:
            handlers = self._by_type.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
                return
        self.logger.warning(f"{_handler_name(handler)} is not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> bool:
        """Deliver ``event``; True only if no handler raised"""
        with self._lock:
            targets = self._by_type.get(event.event_type, []) + self._catch_all

        ok = True
        for handler in targets:
            try:
                handler(event)
            except Exception as e:
                ok = False
                self.logger.error(
                    f"{_handler_name(handler)} failed on {event.event_type.value} "
                    f"for {event.entity_type}:{event.entity_id}: {e}"
                )
        return ok

    def clear(self) -> None:
        with self._lock:
            self._by_type.clear()
            self._catch_all.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        with self._lock:
            if event_type is not None:
                return len(self._by_type.get(event_type, []))
            return len(self._catch_all) + sum(map(len, self._by_type.values()))


_global_dispatcher: Optional[EventDispatcher] = None


def get_global_dispatcher() -> EventDispatcher:
    """Process-wide dispatcher, created on first use"""
    global _global_dispatcher
    if _global_dispatcher is None:
        _global_dispatcher = EventDispatcher()
    return _global_dispatcher


def set_global_dispatcher(dispatcher: EventDispatcher) -> None:
    global _global_dispatcher
    _global_dispatcher = dispatcher


class EventOutbox:
    """
    Transactional outbox for domain events

    ``enqueue`` is called inside the loan's atomic block; ``flush`` runs after
    commit. An event is removed from the outbox once every handler accepted
    it, so the table only ever holds events still to be delivered; the rest
    are retried on the next flush.
    """

    def __init__(self, storage: StorageInterface, dispatcher: Optional[EventDispatcher] = None,
                 table_name: str = "event_outbox"):
        self.storage = storage
        self.dispatcher = dispatcher or get_global_dispatcher()
        self.table_name = table_name
        self._flush_lock = RLock()
        self.logger = logging.getLogger("loan_health.events.outbox")

    def enqueue(self, event_type: DomainEvent, entity_type: str, entity_id: str,
                data: Dict[str, Any]) -> EventPayload:
        event = EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data
        )
        record = event.to_dict()
        record['attempts'] = 0
        self.storage.save(self.table_name, event.event_id, record)
        return event

    def pending(self) -> List[EventPayload]:
        """Undelivered events, oldest first"""
        records = sorted(self.storage.load_all(self.table_name), key=lambda r: r['timestamp'])
        return [EventPayload.from_dict(r) for r in records]

    def flush(self) -> int:
        """Dispatch pending events; returns the number delivered"""
        delivered_count = 0
        with self._flush_lock:
            for event in self.pending():
                record = self.storage.load(self.table_name, event.event_id)
                if record is None:
                    continue
                if self.dispatcher.publish(event):
                    self.storage.delete(self.table_name, event.event_id)
                    delivered_count += 1
                    continue
                record['attempts'] += 1
                self.storage.save(self.table_name, event.event_id, record)
                self.logger.warning(
                    f"Event {event.event_type.value} for {event.entity_id} not fully delivered "
                    f"after {record['attempts']} attempt(s); will retry"
                )
        return delivered_count
