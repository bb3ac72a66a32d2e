import os

# Settings are read at import time
os.environ.setdefault("ENCRYPTION_KEY", "unit-tests-key-9f3Kq2Lm8Vx4Rt7Wz1Bn5Hc")
os.environ["SYNC_API_URL"] = ""

import pytest

from quotebroker.database.postgres_db import close_db, init_db
from quotebroker.database.token_store import EncryptedTokenStore
from quotebroker.services.memory_cache import PermanentCache
from quotebroker.services.symbol_resolver import SymbolResolver
from quotebroker.services.token_manager import TokenManager

from fakes import API_SERVER, SEED_REFRESH_TOKEN, FakeQuestradeClient, FakeRegistry


@pytest.fixture
def database(tmp_path):
    init_db(f"sqlite:///{tmp_path / 'quotebroker.db'}")
    yield
    close_db()


@pytest.fixture
def fake_client():
    return FakeQuestradeClient()


@pytest.fixture
def token_store(database):
    return EncryptedTokenStore()


@pytest.fixture
def token_manager(token_store, fake_client):
    return TokenManager(token_store, fake_client)


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def resolver(token_manager, fake_client, registry):
    return SymbolResolver(token_manager, fake_client, registry=registry, id_cache=PermanentCache())


@pytest.fixture
def seeded_person(token_store):
    """An identity with a stored refresh token and an already expired access token."""
    token_store.replace_tokens("alice", "stale-access", SEED_REFRESH_TOKEN, API_SERVER, expires_in=0,
                               reactivate=True)
    return "alice"
