"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection, integrity verification,
and the retrying writer. Critical for custody compliance.
"""

import asyncio
import logging

import pytest
import pytest_asyncio
from datetime import datetime, timezone
from decimal import Decimal

from rahnu_core.async_storage import AsyncInMemoryStorage
from rahnu_core.audit import AuditEvent, AuditEventType, AuditModule, AuditTrail
from rahnu_core.exceptions import AuditWriteError


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def _event(self, **overrides):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        fields = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.VAULT_IN,
            module=AuditModule.RAHNU,
            entity_type="vault_item",
            entity_id="ITEM001",
            sequence=1,
            previous_hash="",
            current_hash="",
            metadata={"loan_id": "L1", "weight_grams": Decimal("25.500")},
            user_id="U1",
            branch_id="B1",
        )
        fields.update(overrides)
        return AuditEvent(**fields)

    def test_metadata_serialized(self):
        """Decimal metadata is stored as a string"""
        event = self._event()
        assert event.metadata["weight_grams"] == "25.500"

    def test_hash_is_deterministic(self):
        first = self._event()
        second = self._event()
        assert first.calculate_hash() == second.calculate_hash()
        assert len(first.calculate_hash()) == 64

    def test_hash_covers_metadata_and_chain(self):
        base = self._event().calculate_hash()
        assert self._event(metadata={"loan_id": "L2"}).calculate_hash() != base
        assert self._event(previous_hash="abc").calculate_hash() != base
        assert self._event(sequence=2).calculate_hash() != base

    def test_verify_hash(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["loan_id"] = "TAMPERED"
        assert not event.verify_hash()

    def test_dict_round_trip(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        restored = AuditEvent.from_dict(event.to_dict())
        assert restored == event
        assert restored.verify_hash()


class TestAuditTrail:
    """Test AuditTrail functionality"""

    @pytest_asyncio.fixture
    async def storage(self):
        return AsyncInMemoryStorage()

    @pytest_asyncio.fixture
    async def audit_trail(self, storage):
        return AuditTrail(storage, retry_delay_seconds=0)

    async def _record(self, audit_trail, entity_id="ITEM001", event_type=AuditEventType.VAULT_IN,
                      module=AuditModule.RAHNU, branch_id="B1"):
        return await audit_trail.record(
            event_type=event_type,
            module=module,
            entity_type="vault_item",
            entity_id=entity_id,
            metadata={"loan_id": "L1"},
            user_id="U1",
            branch_id=branch_id,
        )

    @pytest.mark.asyncio
    async def test_chain_links(self, audit_trail):
        first = await self._record(audit_trail)
        second = await self._record(audit_trail, event_type=AuditEventType.VAULT_OUT)

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert first.verify_hash() and second.verify_hash()

    @pytest.mark.asyncio
    async def test_chain_resumes_from_storage(self, storage, audit_trail):
        first = await self._record(audit_trail)

        fresh_trail = AuditTrail(storage)
        second = await self._record(fresh_trail)
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash

    @pytest.mark.asyncio
    async def test_verify_integrity_valid(self, audit_trail):
        for i in range(5):
            await self._record(audit_trail, entity_id=f"ITEM{i}")

        result = await audit_trail.verify_integrity()
        assert result["valid"] is True
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    @pytest.mark.asyncio
    async def test_verify_integrity_detects_tampering(self, storage, audit_trail):
        await self._record(audit_trail)
        target = await self._record(audit_trail, entity_id="ITEM002")
        await self._record(audit_trail, entity_id="ITEM003")

        stored = await storage.load("audit_events", target.id)
        stored["metadata"]["loan_id"] = "L999"
        await storage.save("audit_events", target.id, stored)

        result = await audit_trail.verify_integrity()
        assert result["valid"] is False
        assert [e["event_id"] for e in result["hash_errors"]] == [target.id]

    @pytest.mark.asyncio
    async def test_verify_integrity_detects_deletion(self, storage, audit_trail):
        await self._record(audit_trail)
        middle = await self._record(audit_trail, entity_id="ITEM002")
        await self._record(audit_trail, entity_id="ITEM003")

        await storage.delete("audit_events", middle.id)

        result = await audit_trail.verify_integrity()
        assert result["valid"] is False
        assert len(result["chain_breaks"]) == 1

    @pytest.mark.asyncio
    async def test_filters(self, audit_trail):
        await self._record(audit_trail, entity_id="A", branch_id="B1")
        await self._record(audit_trail, entity_id="B", branch_id="B2",
                           event_type=AuditEventType.VAULT_OUT)
        await self._record(audit_trail, entity_id="C", branch_id="B1",
                           event_type=AuditEventType.GOLD_PRICE_SET, module=AuditModule.BSE)

        assert len(await audit_trail.get_all_events()) == 3
        assert len(await audit_trail.get_all_events(module=AuditModule.BSE)) == 1
        assert len(await audit_trail.get_all_events(event_type=AuditEventType.VAULT_OUT)) == 1
        assert len(await audit_trail.get_all_events(branch_id="B1")) == 2
        latest = await audit_trail.get_all_events(limit=1)
        assert [e.entity_id for e in latest] == ["C"]
        assert await audit_trail.count_events() == 3

    @pytest.mark.asyncio
    async def test_events_for_entity(self, audit_trail):
        await self._record(audit_trail, entity_id="A")
        await self._record(audit_trail, entity_id="B")
        await self._record(audit_trail, entity_id="A", event_type=AuditEventType.VAULT_OUT)

        events = await audit_trail.get_events_for_entity("vault_item", "A")
        assert [e.event_type for e in events] == [AuditEventType.VAULT_IN, AuditEventType.VAULT_OUT]


class TestAuditRetries:
    """The writer retries and never drops an event silently"""

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self, storage, caplog):
        storage.failing_tables.add("audit_events")
        audit_trail = AuditTrail(storage, retry_attempts=3, retry_delay_seconds=0)

        with caplog.at_level(logging.WARNING, logger="rahnu.audit"):
            with pytest.raises(AuditWriteError) as exc:
                await audit_trail.record(
                    AuditEventType.VAULT_IN, AuditModule.RAHNU, "vault_item", "ITEM001"
                )

        assert exc.value.status_code == 503
        assert storage.insert_attempts["audit_events"] == 3
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 3
        assert "1/3" in warnings[0].getMessage()

    @pytest.mark.asyncio
    async def test_recovers_and_keeps_chain(self, storage):
        audit_trail = AuditTrail(storage, retry_attempts=3, retry_delay_seconds=0)
        first = await audit_trail.record(
            AuditEventType.VAULT_IN, AuditModule.RAHNU, "vault_item", "ITEM001"
        )

        storage.failing_tables.add("audit_events")
        storage.fail_count = 2
        second = await audit_trail.record(
            AuditEventType.VAULT_OUT, AuditModule.RAHNU, "vault_item", "ITEM001"
        )

        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        result = await audit_trail.verify_integrity()
        assert result["valid"] is True

    @pytest.mark.asyncio
    async def test_lost_acknowledgement_not_written_twice(self, storage):
        """An attempt that committed but reported failure is found on retry"""
        audit_trail = AuditTrail(storage, retry_attempts=3, retry_delay_seconds=0)
        first = await audit_trail.record(
            AuditEventType.VAULT_IN, AuditModule.RAHNU, "vault_item", "ITEM001"
        )

        storage.lost_ack_tables.add("audit_events")
        second = await audit_trail.record(
            AuditEventType.VAULT_OUT, AuditModule.RAHNU, "vault_item", "ITEM001"
        )
        third = await audit_trail.record(
            AuditEventType.VAULT_IN, AuditModule.RAHNU, "vault_item", "ITEM002"
        )

        events = await audit_trail.get_all_events()
        assert len(events) == 3
        assert storage.insert_attempts["audit_events"] == 3
        assert second.previous_hash == first.current_hash
        assert third.sequence == 3
        assert third.previous_hash == second.current_hash
        result = await audit_trail.verify_integrity()
        assert result["valid"] is True

    @pytest.mark.asyncio
    async def test_timed_out_attempt_is_not_applied(self, slow_backend):
        """A stalled attempt abandoned in its worker thread leaves no event behind"""
        audit_trail = AuditTrail(
            AsyncInMemoryStorage(slow_backend),
            retry_attempts=2, retry_delay_seconds=0, timeout_seconds=0.05
        )
        slow_backend.stalls[("insert", "audit_events")] = 0.2

        with pytest.raises(AuditWriteError):
            await audit_trail.record(
                AuditEventType.VAULT_IN, AuditModule.RAHNU, "vault_item", "ITEM001"
            )

        await asyncio.sleep(0.4)
        assert slow_backend.count("audit_events") == 0
