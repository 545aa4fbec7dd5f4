"""Models module - imports all models for SQLModel registration."""

# Import all models so SQLModel can register them
from app.models.user import User
from app.models.drive_credential import DriveCredential
from app.models.document import Document
from app.models.chunk import Chunk
from app.models.sync_state import SyncState, SyncStatus
from app.models.file_job import FileJob, FileJobAction, FileJobStatus

__all__ = [
    "User",
    "DriveCredential",
    "Document",
    "Chunk",
    "SyncState",
    "SyncStatus",
    "FileJob",
    "FileJobAction",
    "FileJobStatus",
]
