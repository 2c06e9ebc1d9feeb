from __future__ import annotations

import hashlib
import logging
import math
import random
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from ledgermatch.config import settings
from ledgermatch.services.errors import EmbeddingError

logger = logging.getLogger(__name__)

TASK_TYPE = "SEMANTIC_SIMILARITY"


@dataclass(frozen=True)
class EmbeddingResult:
    vector: list[float]
    model: str


@dataclass(frozen=True)
class BatchEmbeddingResult:
    vectors: list[list[float]]
    model: str


class EmbeddingClient:
    async def generate_embedding(self, text: str) -> EmbeddingResult:
        raise NotImplementedError

    async def generate_embeddings(self, texts: list[str]) -> BatchEmbeddingResult:
        raise NotImplementedError


class DisabledEmbeddingClient(EmbeddingClient):
    async def generate_embedding(self, text: str) -> EmbeddingResult:
        raise EmbeddingError("Embeddings disabled")

    async def generate_embeddings(self, texts: list[str]) -> BatchEmbeddingResult:
        raise EmbeddingError("Embeddings disabled")


class MockEmbeddingClient(EmbeddingClient):
    """Hashed bag-of-words vectors: identical text gives identical vectors and shared words
    pull vectors together, which is enough for local runs."""

    def __init__(self, dimensions: int | None = None) -> None:
        self._dimensions = dimensions or settings.embedding_dimensions

    def _token_vector(self, token: str) -> list[float]:
        seed = int.from_bytes(hashlib.sha256(token.encode("utf-8")).digest()[:8], "big")
        rng = random.Random(seed)
        return [rng.uniform(-1.0, 1.0) for _ in range(self._dimensions)]

    def embed(self, text: str) -> list[float]:
        tokens = text.lower().split() or ["unknown"]
        acc = [0.0] * self._dimensions
        for tok in tokens:
            for i, v in enumerate(self._token_vector(tok)):
                acc[i] += v
        norm = math.sqrt(sum(v * v for v in acc)) or 1.0
        return [v / norm for v in acc]

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(vector=self.embed(text), model="mock")

    async def generate_embeddings(self, texts: list[str]) -> BatchEmbeddingResult:
        return BatchEmbeddingResult(vectors=[self.embed(t) for t in texts], model="mock")


class GeminiEmbeddingClient(EmbeddingClient):
    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        if not settings.gemini_api_key:
            raise RuntimeError("Missing LEDGERMATCH_GEMINI_API_KEY")
        self._key = settings.gemini_api_key
        self._base_url = settings.gemini_base_url.rstrip("/")
        self._model = settings.embedding_model
        self._dimensions = settings.embedding_dimensions
        self._timeout = settings.embedding_timeout_seconds
        self._transport = transport

    def _request(self, text: str) -> dict:
        return {
            "model": f"models/{self._model}",
            "content": {"parts": [{"text": text}]},
            "taskType": TASK_TYPE,
            "outputDimensionality": self._dimensions,
        }

    async def _post(self, action: str, payload: dict) -> dict:
        url = f"{self._base_url}/models/{self._model}:{action}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                r = await client.post(url, params={"key": self._key}, json=payload)
                r.raise_for_status()
                return r.json()
        except httpx.HTTPError as e:
            logger.error("Embedding request failed: %s", e)
            raise EmbeddingError(f"Embedding API error: {e}") from e

    def _check(self, vector: object) -> list[float]:
        if not isinstance(vector, list) or not vector:
            raise EmbeddingError("Invalid embedding response")
        if len(vector) != self._dimensions:
            raise EmbeddingError(f"Embedding has {len(vector)} dimensions, expected {self._dimensions}")
        return [float(v) for v in vector]

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        data = await self._post("embedContent", self._request(text))
        values = (data.get("embedding") or {}).get("values")
        return EmbeddingResult(vector=self._check(values), model=self._model)

    async def generate_embeddings(self, texts: list[str]) -> BatchEmbeddingResult:
        if not texts:
            return BatchEmbeddingResult(vectors=[], model=self._model)
        data = await self._post("batchEmbedContents", {"requests": [self._request(t) for t in texts]})
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise EmbeddingError("Invalid batch embedding response")
        vectors = [self._check((e or {}).get("values")) for e in embeddings]
        return BatchEmbeddingResult(vectors=vectors, model=self._model)


def build_embedding_client() -> EmbeddingClient:
    provider = (settings.embedding_provider or "disabled").lower()
    if provider == "gemini":
        return GeminiEmbeddingClient()
    if provider == "mock":
        return MockEmbeddingClient()
    return DisabledEmbeddingClient()


def _website_host(website: str) -> str:
    host = urlparse(website).hostname
    if not host:
        return website
    return host.replace("www.", "", 1)


def prepare_inbox_text(*, display_name: str | None, website: str | None, description: str | None = None) -> str:
    parts: list[str] = []
    if display_name:
        parts.append(display_name)
    if website:
        parts.append(_website_host(website))
    if description:
        parts.append(description)
    return " ".join(parts).strip() or "unknown"


def prepare_transaction_text(*, name: str | None, description: str | None, merchant_name: str | None = None) -> str:
    parts = [p for p in (merchant_name, name, description) if p]
    return " ".join(parts).strip() or "unknown"
