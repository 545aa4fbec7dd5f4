"""Request and response schemas for Drive sync endpoints."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class SyncResultResponse(BaseModel):
    """Outcome of one user's sync attempt."""

    added: int = Field(default=0, description="Files indexed for the first time")
    updated: int = Field(default=0, description="Files re-indexed because Drive had newer content")
    deleted: int = Field(default=0, description="Documents removed (gone from Drive or emptied)")
    failed: int = Field(default=0, description="File jobs that failed in this sync")
    auth_failed: bool = Field(default=False, description="Drive needs to be reconnected")
    cancelled: bool = Field(default=False, description="Sync stopped early by cancel or takeover")
    error: Optional[str] = None
    duration_seconds: float = Field(default=0.0)

    model_config = {"json_schema_extra": {"example": {
        "added": 3,
        "updated": 1,
        "deleted": 0,
        "failed": 0,
        "auth_failed": False,
        "cancelled": False,
        "error": None,
        "duration_seconds": 12.4,
    }}}


class SyncStatusResponse(BaseModel):
    """Live sync state for GET /v1/me/sync/status."""

    status: str = Field(description="idle, discovering, processing, completed or failed")
    in_progress: bool
    worker_alive: bool = Field(description="Whether the owning worker's heartbeat is fresh")
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    total_discovered: int = 0
    processed: int = 0
    failed: int = 0
    last_result: Optional[Dict[str, int]] = None
    error: Optional[str] = None


class CancelSyncResponse(BaseModel):
    cancelled: bool
    status: str


class FileJobItem(BaseModel):
    file_id: str
    file_name: str
    mime_type: str
    action: str
    status: str
    retry_count: int = 0
    error: Optional[str] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class FileJobSummary(BaseModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class FileJobListResponse(BaseModel):
    """File jobs of the current (or last) sync, most urgent first."""

    files: List[FileJobItem] = Field(default_factory=list)
    summary: FileJobSummary


class AccountStatusResponse(BaseModel):
    """Response schema for GET /v1/me/status."""

    drive_connected: bool
    needs_reconnect: bool
    google_email: Optional[str] = None
    document_count: int = 0
    chunk_count: int = 0


class CoordinatorRunResponse(BaseModel):
    """Aggregate outcome of a scheduled all-users sync."""

    total_added: int = 0
    total_updated: int = 0
    total_deleted: int = 0
    users_processed: int = 0
    auth_failures: int = 0
    already_syncing: int = 0
    errors: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
