"""Request and response schemas for semantic search."""

from typing import List

from pydantic import BaseModel, Field


class SearchRequest(BaseModel):
    """Request schema for POST /v1/search."""

    query: str = Field(..., min_length=1, description="Search query text")
    limit: int = Field(default=5, ge=1, le=50, description="Number of chunks to return")

    model_config = {"json_schema_extra": {"example": {
        "query": "quarterly planning notes",
        "limit": 5,
    }}}


class SearchResultItem(BaseModel):
    document_id: str
    document_title: str
    chunk_index: int
    text: str
    distance: float = Field(description="Cosine distance; lower is closer")


class SearchResponse(BaseModel):
    query: str
    results: List[SearchResultItem] = Field(default_factory=list)
    total_results: int = 0
    processing_time_ms: float
