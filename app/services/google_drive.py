"""Google Drive client: token refresh, file listing, and content export."""

from __future__ import annotations

import io
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload

from app.config.logger import app_logger
from app.config.settings import settings
from app.utils.timeutils import as_utc

GOOGLE_DOC_MIME = "application/vnd.google-apps.document"
PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
DOC_MIME = "application/msword"

SUPPORTED_MIME_TYPES = (
    GOOGLE_DOC_MIME,
    PDF_MIME,
    DOCX_MIME,
    DOC_MIME,
)

LIST_PAGE_SIZE = 100
AUTH_ERROR_MARKERS = ("invalid credentials", "unauthorized", "invalid_grant")


class DriveAuthError(RuntimeError):
    """Drive rejected the user's credentials; the connection needs re-authorisation."""


@dataclass
class DriveTokens:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class RefreshedTokens(DriveTokens):
    was_refreshed: bool = False


@dataclass
class RemoteFile:
    id: str
    name: str
    mime_type: str
    modified_time: str
    size: Optional[int] = None


def is_auth_error(exc: Exception) -> bool:
    """Whether an exception from the Drive API means the grant is unusable."""
    if isinstance(exc, (DriveAuthError, RefreshError)):
        return True
    if isinstance(exc, HttpError) and getattr(exc, "status_code", None) == 401:
        return True
    if isinstance(exc, HttpError) and getattr(exc.resp, "status", None) == 401:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in AUTH_ERROR_MARKERS)


class GoogleDriveClient:
    """Thin wrapper over the Drive v3 API for one user's token pair."""

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        token_uri: str | None = None,
    ):
        self.client_id = client_id or settings.GOOGLE_CLIENT_ID
        self.client_secret = client_secret or settings.GOOGLE_CLIENT_SECRET
        self.token_uri = token_uri or settings.GOOGLE_TOKEN_URI

    def _credentials(self, tokens: DriveTokens) -> Credentials:
        expiry = as_utc(tokens.expires_at)
        return Credentials(
            token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
            # google-auth compares expiry against naive UTC
            expiry=expiry.replace(tzinfo=None) if expiry else None,
        )

    def _service(self, tokens: DriveTokens):
        return build("drive", "v3", credentials=self._credentials(tokens), cache_discovery=False)

    def refresh_if_needed(self, tokens: DriveTokens) -> Optional[RefreshedTokens]:
        """Refresh the access token when it expires within the refresh margin.

        Returns None when the token cannot be refreshed (no refresh token,
        revoked or invalid grant); the caller must treat that as "needs
        reconnect" and must not touch the user's indexed data.
        """
        now = datetime.now(timezone.utc)
        expires_at = as_utc(tokens.expires_at)
        margin = timedelta(seconds=settings.GOOGLE_TOKEN_REFRESH_MARGIN_SECONDS)

        if expires_at is not None and expires_at > now + margin:
            return RefreshedTokens(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=expires_at,
                was_refreshed=False,
            )

        if not tokens.refresh_token:
            app_logger.error("Drive token expired and no refresh token available")
            return None

        credentials = self._credentials(tokens)
        try:
            app_logger.info("Drive access token expired, refreshing")
            credentials.refresh(Request())
        except RefreshError as exc:
            if "invalid_grant" in str(exc):
                app_logger.error("Drive refresh token is invalid or revoked - user needs to re-authenticate")
            else:
                app_logger.error(f"Failed to refresh Drive token: {exc}")
            return None

        if not credentials.token:
            app_logger.error("Drive token refresh returned no access token")
            return None

        return RefreshedTokens(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token or tokens.refresh_token,
            expires_at=as_utc(credentials.expiry),
            was_refreshed=True,
        )

    def list_files(self, tokens: DriveTokens) -> List[RemoteFile]:
        """List every supported, non-trashed file visible to the user."""
        service = self._service(tokens)
        mime_query = " or ".join(f"mimeType='{mime}'" for mime in SUPPORTED_MIME_TYPES)

        files: List[RemoteFile] = []
        page_token: Optional[str] = None
        try:
            while True:
                response = service.files().list(
                    q=f"({mime_query}) and trashed=false",
                    fields="nextPageToken, files(id, name, modifiedTime, mimeType, size)",
                    pageSize=LIST_PAGE_SIZE,
                    pageToken=page_token,
                ).execute()

                for item in response.get("files", []):
                    if not (item.get("id") and item.get("name") and item.get("modifiedTime") and item.get("mimeType")):
                        continue
                    files.append(
                        RemoteFile(
                            id=item["id"],
                            name=item["name"],
                            mime_type=item["mimeType"],
                            modified_time=item["modifiedTime"],
                            size=int(item["size"]) if item.get("size") else None,
                        )
                    )

                page_token = response.get("nextPageToken")
                if not page_token:
                    break
        except HttpError as exc:
            if is_auth_error(exc):
                raise DriveAuthError(f"Drive rejected credentials: {exc}") from exc
            raise

        return files

    def export_or_download(self, tokens: DriveTokens, file_id: str, mime_type: str) -> bytes | str:
        """Export a Google Doc as plain text, or download an uploaded file's bytes."""
        service = self._service(tokens)
        try:
            if mime_type == GOOGLE_DOC_MIME:
                data = service.files().export(fileId=file_id, mimeType="text/plain").execute()
                if isinstance(data, bytes):
                    return data.decode("utf-8", errors="replace")
                return data

            buffer = io.BytesIO()
            request = service.files().get_media(fileId=file_id)
            downloader = MediaIoBaseDownload(buffer, request)
            done = False
            while not done:
                _, done = downloader.next_chunk()
            return buffer.getvalue()
        except HttpError as exc:
            if is_auth_error(exc):
                raise DriveAuthError(f"Drive rejected credentials: {exc}") from exc
            raise
