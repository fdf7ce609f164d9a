import uuid

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from utxo_indexer.core.blockchain import LedgerService
from utxo_indexer.core.ledger_store import LedgerStore


@pytest.fixture
def db():
    """Fresh in-process MongoDB database per test"""
    return AsyncMongoMockClient()[f"utxo_indexer_{uuid.uuid4().hex[:8]}"]


@pytest_asyncio.fixture
async def store(db):
    ledger_store = LedgerStore(db)
    await ledger_store.ensure_indexes()
    return ledger_store


@pytest_asyncio.fixture
async def ledger(store):
    service = LedgerService(store)
    await service.initialize()
    return service
