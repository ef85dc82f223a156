"""
Shared fixtures: an in-memory Ar-Rahnu system with a 999 gold quote, and
storage doubles that fail or stall on demand.
"""

import asyncio
import time
from typing import Any, Dict, Optional, Set, Tuple

import pytest
import pytest_asyncio

from rahnu_core.api.auth import RahnuSystem
from rahnu_core.async_storage import AsyncInMemoryStorage
from rahnu_core.config import RahnuConfig
from rahnu_core.storage import InMemoryStorage, StorageError, WriteGate


class FlakyStorage(AsyncInMemoryStorage):
    """In-memory storage whose writes to chosen tables can be made to fail or stall"""

    def __init__(self, sync_storage: Optional[InMemoryStorage] = None):
        super().__init__(sync_storage)
        self.failing_tables: Set[str] = set()
        self.failing_deletes = False
        self.fail_count: Optional[int] = None   # None fails forever
        self.insert_attempts: Dict[str, int] = {}
        self.stall_seconds = 0.0
        self.stalled_methods: Set[str] = set()
        self.lost_ack_tables: Set[str] = set()  # insert commits, then reports failure once

    async def _maybe_fail(self, table: str) -> None:
        if table not in self.failing_tables:
            return
        if self.fail_count is None:
            raise StorageError(f"{table} unavailable")
        if self.fail_count > 0:
            self.fail_count -= 1
            raise StorageError(f"{table} unavailable")

    async def _maybe_stall(self, method: str) -> None:
        if method in self.stalled_methods:
            await asyncio.sleep(self.stall_seconds)

    async def insert(self, table: str, record_id: str, data: Dict[str, Any],
                     gate: Optional[WriteGate] = None) -> bool:
        self.insert_attempts[table] = self.insert_attempts.get(table, 0) + 1
        await self._maybe_stall("insert")
        await self._maybe_fail(table)
        inserted = await super().insert(table, record_id, data, gate=gate)
        if table in self.lost_ack_tables:
            self.lost_ack_tables.discard(table)
            raise StorageError(f"{table} connection lost after commit")
        return inserted

    async def load(self, table: str, record_id: str):
        await self._maybe_stall("load")
        return await super().load(table, record_id)

    async def update_if(self, table, record_id, expected, changes, gate=None):
        await self._maybe_stall("update_if")
        return await super().update_if(table, record_id, expected, changes, gate=gate)

    async def delete(self, table: str, record_id: str,
                     gate: Optional[WriteGate] = None) -> bool:
        if self.failing_deletes:
            raise StorageError(f"{table} unavailable")
        return await super().delete(table, record_id, gate=gate)

    async def delete_if(self, table: str, record_id: str, expected: Dict[str, Any],
                        gate: Optional[WriteGate] = None) -> bool:
        if self.failing_deletes:
            raise StorageError(f"{table} unavailable")
        return await super().delete_if(table, record_id, expected, gate=gate)


class SlowInMemoryStorage(InMemoryStorage):
    """
    Sync backend that blocks inside the worker thread

    stalls maps (method, table) to seconds slept before the write reaches the
    store; slow_acks does the same after the write has been applied.
    """

    def __init__(self):
        super().__init__()
        self.stalls: Dict[Tuple[str, str], float] = {}
        self.slow_acks: Dict[Tuple[str, str], float] = {}

    def _sleep(self, delays, method: str, table: str) -> None:
        seconds = delays.get((method, table))
        if seconds:
            time.sleep(seconds)

    def insert(self, table, record_id, data, gate=None):
        self._sleep(self.stalls, "insert", table)
        result = super().insert(table, record_id, data, gate=gate)
        self._sleep(self.slow_acks, "insert", table)
        return result

    def update_if(self, table, record_id, expected, changes, gate=None):
        self._sleep(self.stalls, "update_if", table)
        result = super().update_if(table, record_id, expected, changes, gate=gate)
        self._sleep(self.slow_acks, "update_if", table)
        return result


@pytest.fixture
def config():
    """Test configuration: auth off, no audit retry delay"""
    return RahnuConfig(
        auth_enabled=False,
        storage_timeout_seconds=1.0,
        audit_retry_attempts=3,
        audit_retry_delay_seconds=0,
        jwt_secret="test-secret",
    )


@pytest.fixture
def storage():
    return FlakyStorage()


@pytest.fixture
def system(config, storage):
    return RahnuSystem(config=config, storage=storage)


@pytest_asyncio.fixture
async def priced_system(system):
    """System with an active 999 quote at 340.00 per gram"""
    await system.price_book.set_quote(
        karat="999",
        buy_price_per_gram="340.00",
        sell_price_per_gram="355.00",
        source="test",
        created_by="MGR1",
    )
    return system


@pytest_asyncio.fixture
async def loan(priced_system):
    """Active loan on 25.500g of 999 gold at branch B1"""
    return await priced_system.loan_manager.originate_loan(
        customer_id="CUST1",
        branch_id="B1",
        item_description="Gold bangle",
        item_type="jewelry",
        karat="999",
        weight_grams="25.500",
        margin_percent="75",
        processed_by="U1",
    )


@pytest.fixture
def slow_backend():
    return SlowInMemoryStorage()


@pytest_asyncio.fixture
async def slow_system(slow_backend):
    """Priced system over a backend that can block in worker threads, 50ms storage budget"""
    config = RahnuConfig(
        auth_enabled=False,
        storage_timeout_seconds=0.05,
        audit_retry_attempts=3,
        audit_retry_delay_seconds=0,
        jwt_secret="test-secret",
    )
    system = RahnuSystem(config=config, storage=FlakyStorage(slow_backend))
    await system.price_book.set_quote(
        karat="999", buy_price_per_gram="340.00", sell_price_per_gram="355.00",
        created_by="MGR1",
    )
    return system


@pytest_asyncio.fixture
async def slow_loan(slow_system):
    return await slow_system.loan_manager.originate_loan(
        customer_id="CUST1",
        branch_id="B1",
        item_description="Gold chain",
        item_type="jewelry",
        karat="999",
        weight_grams="10.000",
        margin_percent="70",
        processed_by="U1",
    )
