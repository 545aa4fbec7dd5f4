"""Document chunk model."""

from typing import List
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Chunk(SQLModel, table=True):
    """One embedded slice of a document's text."""

    __tablename__ = "chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunks_document_index"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    document_id: UUID = Field(foreign_key="documents.id", ondelete="CASCADE", index=True)
    # Denormalised from documents for user-scoped search
    user_id: UUID = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    chunk_index: int = Field(ge=0)
    text: str = Field(sa_column=Column(Text, nullable=False))
    # Generic JSON so the model works on both Postgres and SQLite
    embedding: List[float] = Field(default_factory=list, sa_column=Column(JSON))
