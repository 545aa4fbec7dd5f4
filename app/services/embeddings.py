"""OpenAI embedding helpers."""

from __future__ import annotations

from typing import List, Protocol, Sequence

from openai import OpenAI

from app.config.logger import app_logger
from app.config.settings import settings

_openai_client: OpenAI | None = None


class EmbeddingError(RuntimeError):
    """Raised when the provider fails or returns a malformed batch."""


class Embedder(Protocol):
    def embed(self, texts: Sequence[str]) -> List[List[float]]: ...


def get_openai_client() -> OpenAI:
    """Return a singleton OpenAI client."""
    global _openai_client
    if _openai_client is None:
        if not settings.OPENAI_API_KEY:
            raise ValueError("OPENAI_API_KEY must be configured")
        _openai_client = OpenAI(api_key=settings.OPENAI_API_KEY)
        app_logger.info("OpenAI client initialized")
    return _openai_client


def embed_texts(
    texts: Sequence[str],
    batch_size: int | None = None,
    client: OpenAI | None = None,
) -> List[List[float]]:
    """Create embeddings for a list of texts, preserving order.

    Requests are split into batches of batch_size inputs. Any failing batch
    aborts the whole call; partial results are never returned.
    """
    if not texts:
        return []
    batch_size = batch_size or settings.OPENAI_EMBEDDING_BATCH_SIZE
    client = client or get_openai_client()

    embeddings: List[List[float]] = []
    for start in range(0, len(texts), batch_size):
        batch = list(texts[start : start + batch_size])
        try:
            response = client.embeddings.create(
                model=settings.OPENAI_EMBEDDING_MODEL,
                input=batch,
            )
        except Exception as exc:
            raise EmbeddingError(
                f"Embedding batch {start // batch_size} failed: {exc}"
            ) from exc

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(batch):
            raise EmbeddingError(
                f"Embedding batch {start // batch_size} returned {len(data)} vectors for {len(batch)} inputs"
            )
        embeddings.extend(item.embedding for item in data)

    return embeddings


def embed_query(text: str) -> List[float]:
    """Embed a single search query."""
    return embed_texts([text])[0]


class OpenAIEmbedder:
    """Embedder backed by the OpenAI embeddings endpoint."""

    def __init__(self, client: OpenAI | None = None, batch_size: int | None = None):
        self._client = client
        self._batch_size = batch_size

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return embed_texts(texts, batch_size=self._batch_size, client=self._client)
