"""Indexed document model."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Document(SQLModel, table=True):
    """Local index entry for one Drive file of one user.

    source_modified_time holds the Drive modifiedTime of the content whose
    chunks are fully written. While chunks are being (re)written it holds the
    placeholder timestamp instead, so an interrupted index is picked up again
    by the next sync.
    """

    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("user_id", "external_file_id", name="uq_documents_user_file"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    external_file_id: str = Field(max_length=255, index=True)
    title: str = Field(max_length=1024)
    mime_type: str | None = Field(default=None, max_length=255)
    full_text: str = Field(default="", sa_column=Column(Text, nullable=False))
    source_modified_time: str = Field(max_length=64)
    chunk_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )
