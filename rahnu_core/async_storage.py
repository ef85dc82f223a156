"""
Async Storage Backend Module

Provides the async storage interface used by the request-path services. Sync
backends run in worker threads; production PostgreSQL uses asyncpg directly.
All monetary and weight values stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
import asyncio
import json

from .exceptions import StorageTimeoutError, StorageUnavailableError
from .storage import (
    StorageInterface, InMemoryStorage, SQLiteStorage, StorageError, WriteAbandonedError, WriteGate
)


async def bounded_call(coro, timeout_seconds: Optional[float], gate: Optional[WriteGate] = None):
    """
    Await a storage coroutine within the caller's timeout budget.

    Timeouts and StorageError surface as StorageUnavailableError; anything else
    is an unexpected fault and propagates unchanged. A worker thread cannot be
    interrupted, so for writes the gate settles a timeout: either the write is
    abandoned and never applied, or it had already started committing and its
    real outcome is awaited and returned.
    """
    task = asyncio.ensure_future(coro)
    try:
        if timeout_seconds is not None:
            done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
            if not done and (gate is None or gate.abandon()):
                task.cancel()
                raise StorageTimeoutError() from asyncio.TimeoutError()
        return await task
    except StorageError as e:
        raise StorageUnavailableError() from e
    except asyncio.CancelledError:
        if gate is None or gate.abandon():
            task.cancel()
        raise


async def bounded_write(write, *args, timeout_seconds: Optional[float] = None):
    """Run a storage write under a fresh WriteGate within the timeout budget"""
    gate = WriteGate()
    return await bounded_call(write(*args, gate=gate), timeout_seconds, gate)


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any],
                   gate: Optional[WriteGate] = None) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    async def insert(self, table: str, record_id: str, data: Dict[str, Any],
                     gate: Optional[WriteGate] = None) -> bool:
        """Insert only if absent. Returns True if inserted."""
        pass

    @abstractmethod
    async def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                        changes: Dict[str, Any],
                        gate: Optional[WriteGate] = None) -> Optional[Dict[str, Any]]:
        """Compare-and-set update. Returns the updated record or None."""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str,
                     gate: Optional[WriteGate] = None) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    async def delete_if(self, table: str, record_id: str, expected: Dict[str, Any],
                        gate: Optional[WriteGate] = None) -> bool:
        """Delete only while the expected fields match. Returns True if deleted."""
        pass

    @abstractmethod
    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    async def initialize(self) -> None:
        """Prepare connections (default no-op)"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


class ThreadedAsyncStorage(AsyncStorageInterface):
    """Async wrapper that runs a sync backend in worker threads"""

    def __init__(self, sync_storage: StorageInterface):
        self._sync_storage = sync_storage

    async def _run(self, func, *args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    async def save(self, table: str, record_id: str, data: Dict[str, Any],
                   gate: Optional[WriteGate] = None) -> None:
        await self._run(self._sync_storage.save, table, record_id, data, gate=gate)

    async def insert(self, table: str, record_id: str, data: Dict[str, Any],
                     gate: Optional[WriteGate] = None) -> bool:
        return await self._run(self._sync_storage.insert, table, record_id, data, gate=gate)

    async def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                        changes: Dict[str, Any],
                        gate: Optional[WriteGate] = None) -> Optional[Dict[str, Any]]:
        return await self._run(
            self._sync_storage.update_if, table, record_id, expected, changes, gate=gate
        )

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._sync_storage.load, table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return await self._run(self._sync_storage.load_all, table)

    async def delete(self, table: str, record_id: str,
                     gate: Optional[WriteGate] = None) -> bool:
        return await self._run(self._sync_storage.delete, table, record_id, gate=gate)

    async def delete_if(self, table: str, record_id: str, expected: Dict[str, Any],
                        gate: Optional[WriteGate] = None) -> bool:
        return await self._run(
            self._sync_storage.delete_if, table, record_id, expected, gate=gate
        )

    async def exists(self, table: str, record_id: str) -> bool:
        return await self._run(self._sync_storage.exists, table, record_id)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self._run(self._sync_storage.find, table, filters)

    async def count(self, table: str) -> int:
        return await self._run(self._sync_storage.count, table)

    async def clear_table(self, table: str) -> None:
        await self._run(self._sync_storage.clear_table, table)

    async def close(self) -> None:
        await self._run(self._sync_storage.close)


class AsyncInMemoryStorage(ThreadedAsyncStorage):
    """Async in-memory storage for tests and local development"""

    def __init__(self, sync_storage: Optional[InMemoryStorage] = None):
        super().__init__(sync_storage or InMemoryStorage())


class AsyncSQLiteStorage(ThreadedAsyncStorage):
    """Async SQLite storage for single-node deployments"""

    def __init__(self, db_path: str = ":memory:"):
        super().__init__(SQLiteStorage(db_path))


class AsyncPostgreSQLStorage(AsyncStorageInterface):
    """True async PostgreSQL using asyncpg, one JSONB document per row"""

    def __init__(self, connection_string: str, pool_size: int = 10):
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.pool = None
        self._tables = set()

    async def initialize(self):
        """Create connection pool - call on app startup"""
        import asyncpg

        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=2,
                max_size=self.pool_size,
                command_timeout=60
            )
        except (OSError, asyncpg.PostgresError) as e:
            raise StorageError(f"Cannot connect to PostgreSQL: {e}") from e

    async def close(self):
        """Close pool - call on app shutdown"""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def _fetch(self, table: str, method: str, query: str, *args,
                     gate: Optional[WriteGate] = None):
        """
        Run one statement on a pooled connection, translating driver errors

        Writes run inside a transaction that only commits if the gate admits it.
        """
        import asyncpg

        if not self.pool:
            raise StorageError("Pool not initialized. Call initialize() first.")
        try:
            async with self.pool.acquire() as conn:
                if table not in self._tables:
                    await conn.execute(f'''
                        CREATE TABLE IF NOT EXISTS "{table}" (
                            id TEXT PRIMARY KEY,
                            data JSONB NOT NULL,
                            created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                            updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
                        )
                    ''')
                    self._tables.add(table)
                if gate is None:
                    return await getattr(conn, method)(query, *args)
                async with conn.transaction():
                    result = await getattr(conn, method)(query, *args)
                    if not gate.enter():
                        raise WriteAbandonedError("Write abandoned by its caller before commit")
                return result
        except (OSError, asyncpg.InterfaceError, asyncpg.PostgresError) as e:
            raise StorageError(f"PostgreSQL operation on {table} failed: {e}") from e

    @staticmethod
    def _decode(row) -> Dict[str, Any]:
        data = row['data']
        if isinstance(data, str):
            data = json.loads(data)
        return dict(data)

    async def save(self, table: str, record_id: str, data: Dict[str, Any],
                   gate: Optional[WriteGate] = None) -> None:
        await self._fetch(table, 'execute', f'''
            INSERT INTO "{table}" (id, data, updated_at)
            VALUES ($1, $2::jsonb, NOW())
            ON CONFLICT (id)
            DO UPDATE SET data = $2::jsonb, updated_at = NOW()
        ''', record_id, json.dumps(data, default=str), gate=gate)

    async def insert(self, table: str, record_id: str, data: Dict[str, Any],
                     gate: Optional[WriteGate] = None) -> bool:
        row = await self._fetch(table, 'fetchrow', f'''
            INSERT INTO "{table}" (id, data)
            VALUES ($1, $2::jsonb)
            ON CONFLICT (id) DO NOTHING
            RETURNING id
        ''', record_id, json.dumps(data, default=str), gate=gate)
        return row is not None

    async def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                        changes: Dict[str, Any],
                        gate: Optional[WriteGate] = None) -> Optional[Dict[str, Any]]:
        row = await self._fetch(table, 'fetchrow', f'''
            UPDATE "{table}" SET data = data || $2::jsonb, updated_at = NOW()
            WHERE id = $1 AND data @> $3::jsonb
            RETURNING data
        ''', record_id, json.dumps(changes, default=str), json.dumps(expected, default=str),
            gate=gate)
        if row is None:
            return None
        return self._decode(row)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetch(table, 'fetchrow',
                                f'SELECT data FROM "{table}" WHERE id = $1', record_id)
        if row:
            return self._decode(row)
        return None

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        rows = await self._fetch(table, 'fetch',
                                 f'SELECT data FROM "{table}" ORDER BY created_at')
        return [self._decode(row) for row in rows]

    async def delete(self, table: str, record_id: str,
                     gate: Optional[WriteGate] = None) -> bool:
        return await self.delete_if(table, record_id, {}, gate)

    async def delete_if(self, table: str, record_id: str, expected: Dict[str, Any],
                        gate: Optional[WriteGate] = None) -> bool:
        result = await self._fetch(table, 'execute', f'''
            DELETE FROM "{table}" WHERE id = $1 AND data @> $2::jsonb
        ''', record_id, json.dumps(expected, default=str), gate=gate)
        return result != 'DELETE 0'

    async def exists(self, table: str, record_id: str) -> bool:
        row = await self._fetch(table, 'fetchrow',
                                f'SELECT 1 FROM "{table}" WHERE id = $1', record_id)
        return row is not None

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not filters:
            return await self.load_all(table)
        rows = await self._fetch(table, 'fetch', f'''
            SELECT data FROM "{table}" WHERE data @> $1::jsonb ORDER BY created_at
        ''', json.dumps(filters, default=str))
        return [self._decode(row) for row in rows]

    async def count(self, table: str) -> int:
        row = await self._fetch(table, 'fetchrow', f'SELECT COUNT(*) FROM "{table}"')
        return row[0]

    async def clear_table(self, table: str) -> None:
        await self._fetch(table, 'execute', f'DELETE FROM "{table}"')


def create_async_storage(database_url: str, pool_size: int = 10) -> AsyncStorageInterface:
    """
    Factory function to create async storage from a database URL

    memory://                  -> AsyncInMemoryStorage
    sqlite:///path/to/file.db  -> AsyncSQLiteStorage
    postgresql://...           -> AsyncPostgreSQLStorage (call initialize() on startup)
    """
    if not database_url or database_url.startswith("memory"):
        return AsyncInMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return AsyncSQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return AsyncPostgreSQLStorage(database_url, pool_size)
    raise ValueError(f"Unsupported database URL: {database_url}")
