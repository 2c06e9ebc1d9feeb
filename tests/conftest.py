from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from fakes import FakeEmbeddingClient, InMemoryStore
from ledgermatch.main import create_app
from ledgermatch.services.container import MatchingComponents


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def components(store: InMemoryStore) -> MatchingComponents:
    return MatchingComponents.build(store, FakeEmbeddingClient())


@pytest.fixture()
def client(components: MatchingComponents) -> TestClient:
    app = create_app(components)
    with TestClient(app) as c:
        yield c
