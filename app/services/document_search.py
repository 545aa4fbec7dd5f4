"""Semantic search over a user's indexed chunks."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.config.logger import app_logger
from app.models.chunk import Chunk
from app.models.document import Document
from app.services.embeddings import Embedder
from app.services.sync_state_store import as_uuid
from app.services.vector_store import VectorIndex


@dataclass
class SearchHit:
    document_id: str
    document_title: str
    chunk_index: int
    text: str
    distance: float


async def search_documents(
    session: AsyncSession,
    user_id: UUID | str,
    query: str,
    limit: int,
    embedder: Embedder,
    vector_index: VectorIndex,
) -> List[SearchHit]:
    """Embed the query, look up the user's nearest chunks, and attach titles.

    Matches whose chunk row is gone (deleted since the index was written) are
    dropped; the SQL tables are the source of truth.
    """
    user_id = as_uuid(user_id)
    query = query.strip()
    if not query:
        return []

    vectors = await asyncio.to_thread(embedder.embed, [query])
    matches = await asyncio.to_thread(vector_index.query, str(user_id), vectors[0], limit)
    if not matches:
        return []

    keyed = []
    for match in matches:
        try:
            keyed.append((UUID(match.id), match))
        except (TypeError, ValueError):
            app_logger.warning(f"Ignoring vector match with non-chunk id {match.id!r}")

    result = await session.execute(
        select(Chunk, Document.title)
        .join(Document, Document.id == Chunk.document_id)
        .where(Chunk.id.in_([chunk_id for chunk_id, _ in keyed]), Chunk.user_id == user_id)
    )
    rows = {chunk.id: (chunk, title) for chunk, title in result.all()}

    hits: List[SearchHit] = []
    for chunk_id, match in keyed:
        row = rows.get(chunk_id)
        if row is None:
            continue
        chunk, title = row
        hits.append(
            SearchHit(
                document_id=str(chunk.document_id),
                document_title=title,
                chunk_index=chunk.chunk_index,
                text=chunk.text,
                distance=match.distance,
            )
        )
    return hits
