"""
E2E test fixtures for FeedMux.

These tests require a MongoDB replica set (a single node is enough):

    docker run -d -p 27017:27017 mongo:7 --replSet rs0
    FEEDMUX_E2E_TESTS=1 MONGO_INIT_REPLICA_SET=true pytest tests/e2e
"""

import os
import uuid

import pytest
from pymongo import AsyncMongoClient

from realtime.feedmux_server.config import MongoConfig
from realtime.feedmux_server.store.mongo import MongoDocumentStore

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("FEEDMUX_E2E_TESTS", "0") == "1"


def pytest_collection_modifyitems(config, items):
    if E2E_ENABLED:
        return
    skip = pytest.mark.skip(reason="E2E tests disabled. Set FEEDMUX_E2E_TESTS=1 to enable.")
    e2e_dir = os.path.dirname(__file__)
    for item in items:
        if str(item.path).startswith(e2e_dir):
            item.add_marker(skip)


@pytest.fixture
def mongo_config() -> MongoConfig:
    """MongoDB settings from the environment, on a throwaway database."""
    return MongoConfig(
        uri=os.environ.get("MONGO_URI", "mongodb://localhost:27017"),
        database=f"feedmux_e2e_{uuid.uuid4().hex[:8]}",
        init_replica_set=os.environ.get("MONGO_INIT_REPLICA_SET", "false").lower() == "true",
    )


@pytest.fixture
async def mongo_store(mongo_config):
    """Connected MongoDocumentStore; the database is dropped afterwards."""
    store = MongoDocumentStore(mongo_config)
    await store.connect()
    yield store
    await store.close()

    client = AsyncMongoClient(mongo_config.uri, directConnection=mongo_config.direct_connection)
    try:
        await client.drop_database(mongo_config.database)
    finally:
        await client.close()
