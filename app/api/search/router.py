"""Semantic search over the signed-in user's indexed Drive documents."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.search.schemas import SearchRequest, SearchResponse, SearchResultItem
from app.config.logger import app_logger
from app.db.db import get_session
from app.services.document_search import search_documents
from app.services.embeddings import Embedder, OpenAIEmbedder
from app.services.vector_store import PineconeVectorIndex, VectorIndex
from app.utils.auth import require_auth
from app.utils.responses import SuccessResponse, success_response

router = APIRouter(prefix="/v1", tags=["search"])


def get_embedder() -> Embedder:
    return OpenAIEmbedder()


def get_vector_index() -> VectorIndex:
    return PineconeVectorIndex()


@router.post("/search", response_model=SuccessResponse[SearchResponse])
async def search(
    request: SearchRequest,
    user_id: str = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    embedder: Embedder = Depends(get_embedder),
    vector_index: VectorIndex = Depends(get_vector_index),
):
    """Return the user's chunks closest to the query."""
    start_time = datetime.now(timezone.utc)
    app_logger.info(f"Search request: {request.query[:100]} (limit={request.limit})")

    try:
        hits = await search_documents(
            session,
            user_id,
            request.query,
            request.limit,
            embedder=embedder,
            vector_index=vector_index,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except Exception as exc:
        app_logger.error(f"Search failed: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Search failed: {str(exc)}",
        )

    processing_time_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
    results = [
        SearchResultItem(
            document_id=hit.document_id,
            document_title=hit.document_title,
            chunk_index=hit.chunk_index,
            text=hit.text,
            distance=hit.distance,
        )
        for hit in hits
    ]
    return success_response(
        data=SearchResponse(
            query=request.query,
            results=results,
            total_results=len(results),
            processing_time_ms=processing_time_ms,
        ),
        message="Search completed successfully",
    )
