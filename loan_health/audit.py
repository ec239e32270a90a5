"""
Audit Trail Module

Append-only log of every loan mutation. Each entry carries the SHA-256 hash of
its predecessor, so editing or removing a stored entry breaks the chain.
Entries are written through the same storage as the mutation they describe and
commit or roll back with it.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Audited actions"""
    # Loan lifecycle
    LOAN_REGISTERED = "loan_registered"
    LOAN_PAID_OFF = "loan_paid_off"

    # Repayments
    REPAYMENT_APPLIED = "repayment_applied"
    REPAYMENT_DUPLICATE_IGNORED = "repayment_duplicate_ignored"

    # Health and recovery
    HEALTH_CHANGED = "health_changed"
    RECOVERY_STARTED = "recovery_started"
    RECOVERY_PROGRESS = "recovery_progress"
    RECOVERY_RESET = "recovery_reset"
    RECOVERY_COMPLETED = "recovery_completed"

    # Schedules and refinance
    SCHEDULE_CREATED = "schedule_created"
    SCHEDULE_CLOSED = "schedule_closed"
    REFINANCE_EXECUTED = "refinance_executed"

    # Borrower wallet
    WALLET_DEBITED = "wallet_debited"
    WALLET_CREDITED = "wallet_credited"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    sequence: int                # 1-based position in the chain
    event_type: AuditEventType
    entity_type: str             # loan, schedule, wallet
    entity_id: str
    previous_hash: str           # "" for the first entry
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except ``current_hash`` and ``updated_at``"""
        canonical = json.dumps({
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata,
        }, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['event_type'] = self.event_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        fields = dict(data)
        fields['created_at'] = datetime.fromisoformat(fields['created_at'])
        fields['updated_at'] = datetime.fromisoformat(fields['updated_at'])
        fields['event_type'] = AuditEventType(fields['event_type'])
        return cls(**fields)


class AuditTrail:
    """
    Writer and reader of the hash chain

    The chain head is re-read from storage on every write: entries logged in
    a transaction that later rolled back must not be linked to.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _load_chain(self, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        records = self.storage.find(self.table_name, filters) if filters else self.storage.load_all(self.table_name)
        return sorted((AuditEvent.from_dict(r) for r in records), key=lambda e: e.sequence)

    def _head(self):
        records = self.storage.load_all(self.table_name)
        if not records:
            return 0, ""
        last = max(records, key=lambda r: r['sequence'])
        return last['sequence'], last['current_hash']

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an entry linked to the current chain head

        Args:
            event_type: What happened
            entity_type: Kind of entity affected (loan, schedule, wallet)
            entity_id: Its identifier
            metadata: Details of the change; converted to JSON-safe values
            user_id: Initiating user, when there is one

        Returns:
            The stored AuditEvent
        """
        with self.storage.atomic(), self._lock:
            sequence, previous_hash = self._head()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=sequence + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=previous_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """History of one entity, oldest first; ``limit`` keeps the most recent entries"""
        events = self._load_chain({'entity_type': entity_type, 'entity_id': entity_id})
        return events[-limit:] if limit else events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return self._load_chain({'event_type': event_type.value})

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the whole chain checking every hash and every link

        Returns:
            ``valid``, ``total_events``, and the lists ``hash_errors`` (entries
            whose content no longer matches their hash) and ``chain_breaks``
            (entries not linked to their predecessor)
        """
        events = self._load_chain()
        hash_errors = []
        chain_breaks = []

        expected_previous = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
