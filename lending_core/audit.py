"""
Audit Trail Module

Every status change, funding attempt, termination and usage report is
appended to a SHA-256 hash chain so later edits to stored events show up
in verify_integrity().
"""

import hashlib
import json
import threading
import uuid
from datetime import date, datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    # Parties
    BORROWER_CREATED = "borrower_created"
    ORGANIZATION_CREATED = "organization_created"
    PAYER_IDENTITY_CREATED = "payer_identity_created"

    # Loans
    LOAN_CREATED = "loan_created"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    LOAN_FUNDED = "loan_funded"
    LOAN_FUNDING_FAILED = "loan_funding_failed"
    LOAN_CLOSED = "loan_closed"
    LOAN_MARKED_DEROGATORY = "loan_marked_derogatory"
    LOAN_SETTLED = "loan_settled"
    LOAN_LATE_STATUS_CHANGED = "loan_late_status_changed"
    LATE_FEE_APPLIED = "late_fee_applied"
    SCHEDULE_GENERATED = "schedule_generated"

    # Verification billing
    USAGE_RECORDED = "usage_recorded"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


def _plain(value: Any) -> Any:
    """Metadata value reduced to JSON types; money and dates become strings"""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    One link in the audit chain

    current_hash covers every field except itself, including previous_hash,
    so editing or removing a stored event breaks verification from that
    point on.
    """
    event_type: AuditEventType
    entity_type: str  # loan, borrower, organization, verification
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    sequence: int = 0
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _plain(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over the canonical JSON form of the event"""
        canonical = json.dumps(
            {
                'id': self.id,
                'created_at': self.created_at.isoformat(),
                'event_type': self.event_type.value,
                'entity_type': self.entity_type,
                'entity_id': self.entity_id,
                'previous_hash': self.previous_hash,
                'sequence': self.sequence,
                'user_id': self.user_id,
                'metadata': self.metadata,
            },
            sort_keys=True,
            separators=(',', ':')
        )
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.calculate_hash() == self.current_hash

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        values = dict(data)
        values['event_type'] = AuditEventType(values['event_type'])
        return super().from_dict(values)


class AuditTrail:
    """
    Append-only event log stored in one table

    The trail remembers the head of the chain (last hash and sequence) and
    picks it up from storage on startup, so separate instances over the same
    storage extend a single chain.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._head_hash = ""
        self._head_sequence = 0

        stored = self.storage.load_all(self.table_name)
        if stored:
            head = max(stored, key=lambda record: record.get('sequence', 0))
            self._head_hash = head.get('current_hash') or ""
            self._head_sequence = head.get('sequence', 0)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: What happened
            entity_type: Kind of entity it happened to
            entity_id: Entity id
            metadata: Event details; Decimal, date and Enum values are stored as strings
            user_id: Actor, when the action came from a user

        Returns:
            The stored event with its hash and sequence filled in
        """
        with self._lock:
            timestamp = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=timestamp,
                updated_at=timestamp,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._head_hash,
                current_hash="",
                metadata=metadata or {},
                sequence=self._head_sequence + 1,
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())

            self._head_hash = event.current_hash
            self._head_sequence = event.sequence
            return event

    def _events(self, **filters) -> List[AuditEvent]:
        records = self.storage.find(self.table_name, filters)
        return sorted((AuditEvent.from_dict(r) for r in records), key=lambda e: e.sequence)

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Events for one entity in chain order; limit keeps the most recent"""
        events = self._events(entity_type=entity_type, entity_id=entity_id)
        return events[-limit:] if limit else events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return self._events(event_type=event_type.value)

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the whole chain and report broken links

        Returns:
            Dict with valid, total_events, hash_errors (events whose content no
            longer matches their hash) and chain_breaks (events whose
            previous_hash does not match the event before them)
        """
        events = self._events()
        hash_errors = []
        chain_breaks = []

        expected_previous = ""
        for position, event in enumerate(events):
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': recomputed,
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
