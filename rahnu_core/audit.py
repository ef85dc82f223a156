"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every state change in the custody, loan and pricing modules is logged here.
Writes are retried; a write that still fails is raised, never dropped.
"""

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .async_storage import AsyncStorageInterface, bounded_call, bounded_write
from .exceptions import AuditWriteError, StorageUnavailableError
from .storage import StorageRecord


logger = logging.getLogger("rahnu.audit")


class AuditModule(Enum):
    """Business module an event belongs to"""
    RAHNU = "rahnu"   # Pawn broking
    BSE = "bse"       # Gold savings
    ADMIN = "admin"


class AuditEventType(Enum):
    """Types of audit events"""
    # Vault custody events
    VAULT_IN = "vault_in"
    VAULT_OUT = "vault_out"

    # Loan events
    LOAN_CREATED = "loan_created"

    # Gold price events
    GOLD_PRICE_SET = "gold_price_set"
    GOLD_PRICE_DEACTIVATED = "gold_price_deactivated"

    # Gold savings events
    BSE_ACCOUNT_OPENED = "bse_account_opened"
    BUY_GOLD = "buy_gold"
    SELL_GOLD = "sell_gold"


def _serialize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    module: AuditModule
    entity_type: str        # vault_item, loan, gold_price
    entity_id: str
    sequence: int           # Position in the chain, starting at 1
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)  # The change set
    user_id: Optional[str] = None
    branch_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = {k: _serialize_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'module': self.module.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'branch_id': self.branch_id,
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
        result['module'] = self.module.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        data['module'] = AuditModule(data['module'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    Appends are serialized by an asyncio lock so the chain stays linear
    within a process.
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        table_name: str = "audit_events",
        retry_attempts: int = 3,
        retry_delay_seconds: float = 0.05,
        timeout_seconds: Optional[float] = None
    ):
        self.storage = storage
        self.table_name = table_name
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self.timeout_seconds = timeout_seconds
        self._lock = asyncio.Lock()
        self._last_hash: Optional[str] = None
        self._sequence: Optional[int] = None

    async def _call(self, coro):
        return await bounded_call(coro, self.timeout_seconds)

    async def _load_chain_head(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = await self._call(self.storage.load_all(self.table_name))
        if events:
            latest = max(events, key=lambda e: e.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._sequence = latest.get('sequence', 0)
        else:
            self._last_hash = ""
            self._sequence = 0

    async def _stored_event(self, event_id: str) -> Optional[AuditEvent]:
        """The event if an earlier attempt already stored it; advances the chain head"""
        data = await self._call(self.storage.load(self.table_name, event_id))
        if not data:
            return None
        event = AuditEvent.from_dict(data)
        self._last_hash = event.current_hash
        self._sequence = event.sequence
        return event

    async def record(
        self,
        event_type: AuditEventType,
        module: AuditModule,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an audit event to the chain

        Every attempt writes under the same event id, so an attempt that landed
        before reporting a failure is found and kept rather than written twice.

        Args:
            event_type: Type of audit event
            module: Business module (rahnu, bse, admin)
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: The change set recorded for compliance
            user_id: ID of user who initiated the action
            branch_id: Branch the action happened in

        Returns:
            Created AuditEvent

        Raises:
            AuditWriteError: If the event could not be stored after all retries
        """
        async with self._lock:
            last_error: Optional[Exception] = None
            event_id = str(uuid.uuid4())
            now = datetime.now(timezone.utc)

            for attempt in range(1, self.retry_attempts + 1):
                try:
                    if attempt > 1:
                        stored = await self._stored_event(event_id)
                        if stored is not None:
                            return stored

                    if self._sequence is None:
                        await self._load_chain_head()

                    event = AuditEvent(
                        id=event_id,
                        created_at=now,
                        updated_at=now,
                        event_type=event_type,
                        module=module,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        sequence=self._sequence + 1,
                        previous_hash=self._last_hash or "",
                        current_hash="",
                        metadata=metadata or {},
                        user_id=user_id,
                        branch_id=branch_id
                    )
                    event.current_hash = event.calculate_hash()

                    inserted = await bounded_write(
                        self.storage.insert, self.table_name, event.id, event.to_dict(),
                        timeout_seconds=self.timeout_seconds
                    )
                    if not inserted:
                        stored = await self._stored_event(event_id)
                        if stored is not None:
                            return stored
                        raise StorageUnavailableError(f"Audit event {event_id} was not stored")

                    self._last_hash = event.current_hash
                    self._sequence = event.sequence
                    return event

                except StorageUnavailableError as e:
                    last_error = e
                    # Chain head may be stale after a failure; reload on next attempt
                    self._sequence = None
                    logger.warning(
                        f"Audit write attempt {attempt}/{self.retry_attempts} failed "
                        f"for {event_type.value} on {entity_type}:{entity_id}: "
                        f"{e.__cause__ or e!r}"
                    )
                    if attempt < self.retry_attempts:
                        await asyncio.sleep(self.retry_delay_seconds)

            raise AuditWriteError(
                f"Audit log could not be written for {event_type.value} "
                f"on {entity_type}:{entity_id}"
            ) from last_error

    async def _all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in await self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    async def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events for a specific entity, oldest first"""
        events_data = await self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(data) for data in events_data),
                        key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    async def get_all_events(
        self,
        module: Optional[AuditModule] = None,
        event_type: Optional[AuditEventType] = None,
        branch_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events, optionally filtered, oldest first"""
        events = await self._all_events()
        if module:
            events = [e for e in events if e.module == module]
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if branch_id:
            events = [e for e in events if e.branch_id == branch_id]
        if limit:
            events = events[-limit:]
        return events

    async def verify_integrity(self) -> Dict[str, Any]:
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

        events = await self._all_events()
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
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    async def count_events(self) -> int:
        """Get total number of audit events"""
        return await self.storage.count(self.table_name)
