from __future__ import annotations

import json

import httpx
import pytest

from ledgermatch.config import Settings, settings
from ledgermatch.services.embeddings import (
    DisabledEmbeddingClient,
    GeminiEmbeddingClient,
    MockEmbeddingClient,
    build_embedding_client,
    prepare_inbox_text,
    prepare_transaction_text,
)
from ledgermatch.services.errors import EmbeddingError
from ledgermatch.utils.scoring import cosine_similarity


@pytest.fixture
def gemini_settings(monkeypatch):
    monkeypatch.setattr(settings, "gemini_api_key", "test-key")
    monkeypatch.setattr(settings, "embedding_dimensions", 3)
    monkeypatch.setattr(settings, "embedding_model", "text-embedding-004")


def test_prepare_inbox_text():
    assert prepare_inbox_text(display_name="Acme", website="https://www.acme.io/billing") == "Acme acme.io"
    assert prepare_inbox_text(display_name=None, website="acme.io") == "acme.io"
    assert prepare_inbox_text(display_name="Acme", website=None, description="March hosting") == "Acme March hosting"
    assert prepare_inbox_text(display_name=None, website=None) == "unknown"


def test_prepare_transaction_text():
    assert prepare_transaction_text(name="CARD 1234 ACME", description=None, merchant_name="Acme") == "Acme CARD 1234 ACME"
    assert prepare_transaction_text(name=None, description=None) == "unknown"


async def test_mock_client_is_deterministic():
    client = MockEmbeddingClient(dimensions=256)

    a = (await client.generate_embedding("acme hosting")).vector
    b = (await client.generate_embedding("acme hosting")).vector
    batch = await client.generate_embeddings(["acme hosting", "acme cloud", "grocery store"])

    assert a == b == batch.vectors[0]
    assert len(a) == 256
    assert sum(v * v for v in a) == pytest.approx(1.0)
    assert cosine_similarity(a, batch.vectors[1]) > cosine_similarity(a, batch.vectors[2])


async def test_disabled_client_raises():
    client = DisabledEmbeddingClient()
    with pytest.raises(EmbeddingError):
        await client.generate_embedding("x")
    with pytest.raises(EmbeddingError):
        await client.generate_embeddings(["x"])


async def test_gemini_single_embedding(gemini_settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"embedding": {"values": [0.1, 0.2, 0.3]}})

    client = GeminiEmbeddingClient(transport=httpx.MockTransport(handler))
    result = await client.generate_embedding("Acme acme.io")

    assert result.vector == [0.1, 0.2, 0.3]
    assert result.model == "text-embedding-004"
    assert ":embedContent" in seen["url"]
    assert "key=test-key" in seen["url"]
    assert seen["body"]["taskType"] == "SEMANTIC_SIMILARITY"
    assert seen["body"]["content"]["parts"][0]["text"] == "Acme acme.io"


async def test_gemini_batch_embeddings(gemini_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path.endswith(":batchEmbedContents")
        return httpx.Response(200, json={"embeddings": [{"values": [1.0, 0.0, 0.0]} for _ in body["requests"]]})

    client = GeminiEmbeddingClient(transport=httpx.MockTransport(handler))

    batch = await client.generate_embeddings(["a", "b"])
    assert batch.vectors == [[1.0, 0.0, 0.0], [1.0, 0.0, 0.0]]
    assert (await client.generate_embeddings([])).vectors == []


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "internal"}),
        httpx.Response(200, json={"embedding": {"values": [0.1, 0.2]}}),
        httpx.Response(200, json={}),
    ],
)
async def test_gemini_errors_become_embedding_errors(gemini_settings, response):
    client = GeminiEmbeddingClient(transport=httpx.MockTransport(lambda request: response))
    with pytest.raises(EmbeddingError):
        await client.generate_embedding("x")


def test_gemini_requires_key(monkeypatch):
    monkeypatch.setattr(settings, "gemini_api_key", None)
    with pytest.raises(RuntimeError):
        GeminiEmbeddingClient()


def test_build_embedding_client(monkeypatch):
    monkeypatch.setattr(settings, "embedding_provider", "mock")
    assert isinstance(build_embedding_client(), MockEmbeddingClient)
    monkeypatch.setattr(settings, "embedding_provider", "disabled")
    assert isinstance(build_embedding_client(), DisabledEmbeddingClient)


def test_embeddings_are_disabled_unless_configured(monkeypatch):
    monkeypatch.delenv("LEDGERMATCH_EMBEDDING_PROVIDER", raising=False)
    assert Settings(_env_file=None).embedding_provider == "disabled"

    monkeypatch.setattr(settings, "embedding_provider", Settings(_env_file=None).embedding_provider)
    assert isinstance(build_embedding_client(), DisabledEmbeddingClient)
