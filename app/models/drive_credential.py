"""Google Drive OAuth credential model."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel


class DriveCredential(SQLModel, table=True):
    """OAuth token pair for a user's Drive connection.

    A NULL access_token means the connection needs to be re-authorised; the
    row itself is kept so the refresh token survives transient failures.
    """

    __tablename__ = "drive_credentials"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", ondelete="CASCADE", unique=True, index=True)
    provider: str = Field(default="google", max_length=50)
    google_email: str | None = Field(default=None, max_length=255)
    access_token: str | None = None
    refresh_token: str | None = None
    access_token_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    scopes: str | None = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )

    @property
    def needs_reconnect(self) -> bool:
        return not self.access_token
