"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every ledger mutation (schedule generation, payment, sweep, recalculation,
classification, write-off) is logged here. Events are written inside the
caller's storage transaction, so a rolled-back mutation leaves no audit entry.
"""

import hashlib
import json
import threading
import uuid
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Schedule events
    SCHEDULE_GENERATED = "schedule_generated"
    SCHEDULE_RECALCULATED = "schedule_recalculated"

    # Payment events
    PAYMENT_APPLIED = "payment_applied"
    PAYMENT_BLOCKED = "payment_blocked"
    INSTALLMENTS_WRITTEN_OFF = "installments_written_off"

    # Batch events
    ARREARS_SWEEP = "arrears_sweep"
    INTEREST_ACCRUED = "interest_accrued"
    BATCH_FAILURE = "batch_failure"

    # Classification events
    LOAN_CLASSIFIED = "loan_classified"

    # System events
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


def _convert_value(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_convert_value(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int       # Position in the chain, 1-based
    event_type: AuditEventType
    entity_type: str    # loan, installment, batch
    entity_id: str
    previous_hash: str  # Hash of previous audit event for chaining
    current_hash: str   # SHA-256 hash of this event
    metadata: Dict[str, Any]
    actor: Optional[str] = None  # Job or caller that initiated the action

    def __post_init__(self):
        if self.metadata:
            self.metadata = {k: _convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event.
        Hash covers all fields except current_hash.
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'actor': self.actor,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _chain_head(self) -> Optional[Dict[str, Any]]:
        """Latest stored event; re-read every time so rollbacks are respected"""
        events = self.storage.load_all(self.table_name)
        if not events:
            return None
        return max(events, key=lambda e: e.get('sequence', 0))

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            actor: Job or caller that initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            head = self._chain_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=(head['sequence'] + 1) if head else 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['current_hash'] if head else "",
                current_hash="",
                metadata=metadata or {},
                actor=actor
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def _load_sorted(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events for an entity in chain order (most recent `limit` if given)"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(d) for d in events_data), key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType,
                           limit: Optional[int] = None) -> List[AuditEvent]:
        """Get audit events of one type in chain order"""
        events = [e for e in self._load_sorted() if e.event_type == event_type]
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        events = self._load_sorted()
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent audit event"""
        head = self._chain_head()
        return head['current_hash'] if head else None


class NullAuditTrail(AuditTrail):
    """Audit trail that records nothing (enable_audit_logging=False)"""

    def __init__(self):
        super().__init__(storage=None)

    def log_event(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                  metadata: Optional[Dict[str, Any]] = None, actor: Optional[str] = None) -> Optional[AuditEvent]:
        return None

    def count_events(self) -> int:
        return 0

    def get_latest_hash(self) -> Optional[str]:
        return None
