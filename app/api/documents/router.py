"""Read access to the signed-in user's indexed Drive documents."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.api.documents.schemas import DocumentDetail, DocumentItem, DocumentListResponse
from app.config.logger import app_logger
from app.db.db import get_session
from app.models.document import Document
from app.services.sync_engine import PLACEHOLDER_MODIFIED_TIME
from app.utils.auth import require_auth
from app.utils.responses import SuccessResponse, success_response

router = APIRouter(prefix="/v1", tags=["documents"])


def _item_fields(document: Document) -> dict:
    return {
        "id": str(document.id),
        "file_id": document.external_file_id,
        "title": document.title,
        "mime_type": document.mime_type,
        "source_modified_time": document.source_modified_time,
        "indexed": document.source_modified_time != PLACEHOLDER_MODIFIED_TIME,
        "chunk_count": document.chunk_count,
        "created_at": document.created_at,
        "updated_at": document.updated_at,
    }


def _user_uuid(user_id: str) -> UUID:
    try:
        return UUID(user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown user")


@router.get("/documents", response_model=SuccessResponse[DocumentListResponse])
async def list_documents(
    user_id: str = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
) -> SuccessResponse[DocumentListResponse]:
    """The user's documents, most recently updated first."""
    uid = _user_uuid(user_id)
    try:
        result = await session.execute(
            select(Document).where(Document.user_id == uid).order_by(Document.updated_at.desc())
        )
        documents = result.scalars().all()
    except Exception as exc:
        app_logger.error(f"Listing documents failed for user {user_id}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Listing documents failed: {str(exc)}",
        )

    items = [DocumentItem(**_item_fields(document)) for document in documents]
    return success_response(
        data=DocumentListResponse(documents=items, total=len(items)),
        message=f"Retrieved {len(items)} documents",
    )


@router.get("/documents/{document_id}", response_model=SuccessResponse[DocumentDetail])
async def get_document(
    document_id: str,
    user_id: str = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
) -> SuccessResponse[DocumentDetail]:
    uid = _user_uuid(user_id)
    try:
        doc_uuid = UUID(document_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")

    result = await session.execute(
        select(Document).where(Document.id == doc_uuid, Document.user_id == uid)
    )
    document = result.scalar_one_or_none()
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")

    return success_response(
        data=DocumentDetail(**_item_fields(document), full_text=document.full_text),
        message="Document retrieved",
    )
