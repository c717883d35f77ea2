import pytest

from fakes import (
    CHAIN_ID, NFT_ID, POOL_ADDRESS, OWNER,
    FakeAprService, FakeChain, FakeIndexer, make_pool
)
from position_database import PositionDatabase


@pytest.fixture
def pool():
    return make_pool()


@pytest.fixture
def database(tmp_path):
    db = PositionDatabase(str(tmp_path / "ledger.db"))
    yield db
    db.close()


@pytest.fixture
def position_id(database, pool):
    """A tracked position created long enough ago to be cacheable"""
    database.upsert_pool(pool)
    return database.create_position(CHAIN_ID, NFT_ID, POOL_ADDRESS, -600, 600, False,
                                    owner=OWNER, now=1_000.0)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def indexer():
    return FakeIndexer()


@pytest.fixture
def apr_service():
    return FakeAprService()
