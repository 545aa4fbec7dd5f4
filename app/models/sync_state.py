"""Per-user sync state model."""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Column, DateTime, Text
from sqlmodel import Field, SQLModel


class SyncStatus(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_SYNC_STATUSES = (SyncStatus.DISCOVERING.value, SyncStatus.PROCESSING.value)
RESTARTABLE_SYNC_STATUSES = (
    SyncStatus.IDLE.value,
    SyncStatus.COMPLETED.value,
    SyncStatus.FAILED.value,
)


class SyncState(SQLModel, table=True):
    """Authoritative record of whether (and by whom) a user's sync is running."""

    __tablename__ = "sync_states"

    user_id: UUID = Field(foreign_key="users.id", ondelete="CASCADE", primary_key=True)
    status: str = Field(default=SyncStatus.IDLE.value, max_length=32, index=True)
    worker_id: str | None = Field(default=None, max_length=64)
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    total_discovered: int = Field(default=0, ge=0)
    processed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    last_result: dict | None = Field(default=None, sa_column=Column(JSON))
    error: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )
