"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every state change made by the repayment engine is logged here, inside the
same unit of work as the change itself, so a rolled-back operation leaves no
audit entry behind.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any
from enum import Enum

from .storage import StorageInterface, StorageRecord, _to_storable


class AuditEventType(Enum):
    """Types of audit events"""
    # Repayment events
    PAYMENT_ALLOCATED = "payment_allocated"
    PAYMENT_REVERSED = "payment_reversed"

    # Loan lifecycle events
    LOAN_DISBURSED = "loan_disbursed"
    SCHEDULE_REGENERATED = "schedule_regenerated"
    BALANCES_RECONCILED = "balances_reconciled"
    LOAN_CLASSIFIED = "loan_classified"

    # Batch events
    OVERDUE_SWEEP_COMPLETED = "overdue_sweep_completed"

    # System events
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # loan, repayment, portfolio
    entity_id: str
    sequence: int  # Position in the chain, starting at 1
    previous_hash: str
    current_hash: str
    description: str = ""
    actor: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Decimals, dates and enums become JSON-safe before hashing
        self.metadata = _to_storable(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'description': self.description,
            'actor': self.actor,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    The chain head (last sequence and hash) is kept in its own row so that
    it moves in the same transaction as the event that advanced it.
    """

    HEAD_TABLE = "audit_chain"
    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.table_name = table_name
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _load_head(self) -> Dict[str, Any]:
        head = self.storage.load(self.HEAD_TABLE, self.HEAD_ID)
        if head:
            return head

        # No head row yet: derive it from whatever events exist
        events = self.storage.load_all(self.table_name)
        if not events:
            return {'sequence': 0, 'hash': ""}
        last = max(events, key=lambda e: e.get('sequence', 0))
        return {'sequence': last.get('sequence', 0), 'hash': last.get('current_hash', "")}

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            description: Human readable summary
            metadata: Additional event-specific data
            actor: Who initiated the action

        Returns:
            Created AuditEvent
        """
        with self.storage.atomic():
            head = self._load_head()
            now = self.clock()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=head['sequence'] + 1,
                previous_hash=head['hash'],
                current_hash="",
                description=description,
                actor=actor,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.HEAD_TABLE, self.HEAD_ID, {
                'id': self.HEAD_ID,
                'sequence': event.sequence,
                'hash': event.current_hash
            })
            return event

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity

        Returns:
            List of AuditEvent objects in chain order
        """
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(data) for data in events_data),
                        key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType,
                           limit: Optional[int] = None) -> List[AuditEvent]:
        events = [e for e in self.get_all_events() if e.event_type == event_type]
        if limit:
            events = events[-limit:]
        return events

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        events = sorted((AuditEvent.from_dict(data)
                         for data in self.storage.load_all(self.table_name)),
                        key=lambda e: e.sequence)
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
            'chain_breaks': []
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash or event.sequence != position + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
