"""
Shared fixtures: an in-memory transport with canned results and a
factory for databases whose pools never run background housekeeping.
"""

from typing import Optional

import pytest
import pytest_asyncio

from sessionmesh.client.database import Database
from sessionmesh.core.config import (
    PoolConfig,
    SessionMeshConfig,
    StreamConfig,
    TransactionConfig,
)
from sessionmesh.core.errors import SessionLeakError
from sessionmesh.transport.memory import (
    InMemoryTransport,
    StatementResult,
    create_simple_result_set,
)
from sessionmesh.tests.support import (
    DATABASE,
    FAST_TRANSACTIONS,
    SELECT_SQL,
    UPDATE_ROW_COUNT,
    UPDATE_SQL,
    pool_config,
)


@pytest.fixture
def transport() -> InMemoryTransport:
    transport = InMemoryTransport()
    transport.put_statement_result(SELECT_SQL, create_simple_result_set())
    transport.put_statement_result(UPDATE_SQL, StatementResult.update_count(UPDATE_ROW_COUNT))
    return transport


@pytest_asyncio.fixture
async def make_database(transport):
    """Factory for opened databases; every database is closed on teardown."""
    created: list[Database] = []

    async def factory(
        pool: Optional[PoolConfig] = None,
        stream: Optional[StreamConfig] = None,
        transaction: Optional[TransactionConfig] = None,
    ) -> Database:
        config = SessionMeshConfig(
            pool=pool or pool_config(),
            stream=stream or StreamConfig(),
            transaction=transaction or FAST_TRANSACTIONS,
        )
        database = Database(transport, DATABASE, config)
        await database.open()
        created.append(database)
        return database

    yield factory

    for database in created:
        try:
            await database.close()
        except SessionLeakError as e:
            pytest.fail(f"Test leaked sessions: {e.messages}")


@pytest_asyncio.fixture
async def database(make_database) -> Database:
    return await make_database()
