"""Response schemas for the indexed-document endpoints."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class DocumentItem(BaseModel):
    id: str
    file_id: str = Field(description="Google Drive file id")
    title: str
    mime_type: Optional[str] = None
    source_modified_time: str = Field(description="Drive modifiedTime of the indexed content")
    indexed: bool = Field(description="False while the document is being (re)indexed")
    chunk_count: int = 0
    created_at: datetime
    updated_at: datetime


class DocumentDetail(DocumentItem):
    full_text: str

    model_config = {"json_schema_extra": {"example": {
        "id": "5f0c6a9e-6c1b-4c4e-9d7e-0a1f5b7f2c11",
        "file_id": "1AbCdEfGhIjKlMnOp",
        "title": "Quarterly planning notes",
        "mime_type": "application/vnd.google-apps.document",
        "source_modified_time": "2024-02-01T09:30:00.000Z",
        "indexed": True,
        "chunk_count": 2,
        "created_at": "2024-01-01T10:00:00Z",
        "updated_at": "2024-02-01T09:31:12Z",
        "full_text": "Revenue targets for Q1...",
    }}}


class DocumentListResponse(BaseModel):
    documents: List[DocumentItem] = Field(default_factory=list)
    total: int = 0
