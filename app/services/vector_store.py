"""Pinecone-backed nearest-neighbour index for chunk embeddings."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Protocol, Sequence

from pinecone import Pinecone, ServerlessSpec

from app.config.logger import app_logger
from app.config.settings import settings

_pinecone_client: Pinecone | None = None
_pinecone_index = None


@dataclass
class VectorItem:
    id: str
    values: List[float]
    metadata: dict = field(default_factory=dict)


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: dict = field(default_factory=dict)

    @property
    def distance(self) -> float:
        # Cosine similarity -> cosine distance
        return 1.0 - self.score


class VectorIndex(Protocol):
    def upsert(self, user_id: str, items: Sequence[VectorItem]) -> None: ...

    def delete(self, user_id: str, ids: Sequence[str]) -> None: ...

    def query(self, user_id: str, vector: Sequence[float], limit: int) -> List[VectorMatch]: ...


def get_pinecone_client() -> Pinecone:
    """Return a singleton Pinecone client."""
    global _pinecone_client
    if _pinecone_client is None:
        if not settings.PINECONE_API_KEY:
            raise ValueError("PINECONE_API_KEY must be configured")
        _pinecone_client = Pinecone(api_key=settings.PINECONE_API_KEY)
        app_logger.info("Pinecone client initialized")
    return _pinecone_client


def get_pinecone_index():
    """Return the chunk index, creating it if necessary."""
    global _pinecone_index
    if _pinecone_index is not None:
        return _pinecone_index

    pc = get_pinecone_client()
    index_name = settings.PINECONE_INDEX_NAME

    existing = [idx["name"] for idx in pc.list_indexes()]
    if index_name not in existing:
        app_logger.info(f"Creating Pinecone index '{index_name}' ({settings.PINECONE_DIMENSION} dims)")
        pc.create_index(
            name=index_name,
            dimension=settings.PINECONE_DIMENSION,
            metric="cosine",
            spec=ServerlessSpec(
                cloud="aws",
                region=settings.PINECONE_REGION or "us-east-1",
            ),
        )

    _pinecone_index = pc.Index(index_name)
    app_logger.info(f"Using Pinecone index '{index_name}'")
    return _pinecone_index


class PineconeVectorIndex:
    """VectorIndex with one Pinecone namespace per user."""

    def __init__(self, index=None, batch_size: int = 100):
        self._index = index
        self._batch_size = batch_size

    @property
    def index(self):
        if self._index is None:
            self._index = get_pinecone_index()
        return self._index

    @staticmethod
    def namespace(user_id: str) -> str:
        return f"user-{user_id}"

    def upsert(self, user_id: str, items: Sequence[VectorItem]) -> None:
        if not items:
            return
        vectors = [
            {"id": item.id, "values": list(item.values), "metadata": item.metadata}
            for item in items
        ]
        for i in range(0, len(vectors), self._batch_size):
            self.index.upsert(
                vectors=vectors[i : i + self._batch_size],
                namespace=self.namespace(user_id),
            )

    def delete(self, user_id: str, ids: Sequence[str]) -> None:
        if not ids:
            return
        ids = list(ids)
        for i in range(0, len(ids), self._batch_size):
            self.index.delete(ids=ids[i : i + self._batch_size], namespace=self.namespace(user_id))

    def query(self, user_id: str, vector: Sequence[float], limit: int) -> List[VectorMatch]:
        response = self.index.query(
            vector=list(vector),
            top_k=limit,
            namespace=self.namespace(user_id),
            include_metadata=True,
        )
        return [
            VectorMatch(id=match.get("id"), score=float(match.get("score", 0.0)), metadata=dict(match.get("metadata") or {}))
            for match in response.get("matches", [])
        ]
