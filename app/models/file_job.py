"""Per-file sync job model."""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class FileJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class FileJobAction(str, Enum):
    ADD = "add"
    UPDATE = "update"


class FileJob(SQLModel, table=True):
    """Unit of work for indexing one Drive file within a user's sync."""

    __tablename__ = "file_jobs"
    __table_args__ = (
        UniqueConstraint("user_id", "external_file_id", name="uq_file_jobs_user_file"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    external_file_id: str = Field(max_length=255)
    file_name: str = Field(max_length=1024)
    mime_type: str = Field(max_length=255)
    modified_time: str = Field(max_length=64)
    action: str = Field(default=FileJobAction.ADD.value, max_length=16)
    document_id: UUID | None = None
    status: str = Field(default=FileJobStatus.PENDING.value, max_length=16, index=True)
    claimed_by: str | None = Field(default=None, max_length=64)
    claimed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    retry_count: int = Field(default=0, ge=0)
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )
