"""Shared fixtures: an in-memory database and fake Drive, embedding and vector collaborators."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import uuid4

import pytest
import pytest_asyncio

from app.db.db import close_db, configure_engine
from app.models.drive_credential import DriveCredential
from app.models.user import User
from app.services.embeddings import EmbeddingError
from app.services.google_drive import GOOGLE_DOC_MIME, RefreshedTokens, RemoteFile
from app.services.sync_engine import DriveSyncEngine
from app.services.sync_state_store import SyncStateStore
from app.services.vector_store import VectorItem, VectorMatch


class FakeDriveClient:
    """In-memory stand-in for GoogleDriveClient."""

    def __init__(self):
        self.files: List[RemoteFile] = []
        self.contents: Dict[str, object] = {}
        self.refresh_result: Optional[RefreshedTokens] = None
        self.refresh_fails = False
        self.list_error: Optional[Exception] = None
        self.exported: List[str] = []

    def add_file(self, file_id: str, name: str, modified_time: str, content, mime_type: str = GOOGLE_DOC_MIME):
        self.files = [f for f in self.files if f.id != file_id]
        self.files.append(RemoteFile(id=file_id, name=name, mime_type=mime_type, modified_time=modified_time))
        self.contents[file_id] = content

    def remove_file(self, file_id: str):
        self.files = [f for f in self.files if f.id != file_id]
        self.contents.pop(file_id, None)

    def refresh_if_needed(self, tokens):
        if self.refresh_fails:
            return None
        if self.refresh_result is not None:
            return self.refresh_result
        return RefreshedTokens(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            was_refreshed=False,
        )

    def list_files(self, tokens):
        if self.list_error is not None:
            raise self.list_error
        return list(self.files)

    def export_or_download(self, tokens, file_id, mime_type):
        self.exported.append(file_id)
        content = self.contents[file_id]
        if isinstance(content, Exception):
            raise content
        return content


class FakeEmbedder:
    """Deterministic 3-dimensional embeddings; can be told to fail."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.fail_on_call: Optional[int] = None

    def embed(self, texts):
        self.calls.append(list(texts))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise EmbeddingError("embedding provider unavailable")
        return [[float(len(text)), 1.0, 0.0] for text in texts]


class FakeVectorIndex:
    def __init__(self):
        self.items: Dict[str, Dict[str, VectorItem]] = {}

    def upsert(self, user_id, items):
        namespace = self.items.setdefault(user_id, {})
        for item in items:
            namespace[item.id] = item

    def delete(self, user_id, ids):
        namespace = self.items.get(user_id, {})
        for item_id in ids:
            namespace.pop(item_id, None)

    def query(self, user_id, vector, limit):
        namespace = self.items.get(user_id, {})
        matches = [
            VectorMatch(id=item.id, score=1.0 / (1.0 + abs(item.values[0] - vector[0])), metadata=item.metadata)
            for item in namespace.values()
        ]
        matches.sort(key=lambda match: match.score, reverse=True)
        return matches[:limit]

    def count(self, user_id) -> int:
        return len(self.items.get(str(user_id), {}))


def paragraph(sentences: int) -> str:
    return ("The quick brown fox jumps over the lazy dog. " * sentences).strip()


@pytest.fixture
def five_thousand_char_text() -> str:
    """About 5000 characters in three paragraphs (two paragraph breaks)."""
    return "\n\n".join([paragraph(44), paragraph(18), paragraph(49)])


@pytest_asyncio.fixture
async def session_factory():
    maker = await configure_engine("sqlite+aiosqlite:///:memory:")
    yield maker
    await close_db()


@pytest_asyncio.fixture
async def create_user(session_factory):
    """Factory creating a user, optionally with a Drive credential."""

    async def _create(connected: bool = True, access_token: Optional[str] = "access-token", is_active: bool = True):
        user = User(email=f"{uuid4().hex[:8]}@example.com", full_name="Test User", is_active=is_active)
        async with session_factory() as session:
            session.add(user)
            if connected:
                session.add(
                    DriveCredential(
                        user_id=user.id,
                        google_email=user.email,
                        access_token=access_token,
                        refresh_token="refresh-token",
                        access_token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
                    )
                )
            await session.commit()
        return user

    return _create


@pytest.fixture
def drive():
    return FakeDriveClient()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vector_index():
    return FakeVectorIndex()


@pytest.fixture
def state_store(session_factory):
    return SyncStateStore(session_factory)


@pytest.fixture
def engine(session_factory, drive, embedder, vector_index, state_store):
    return DriveSyncEngine(
        session_factory=session_factory,
        drive_client=drive,
        embedder=embedder,
        vector_index=vector_index,
        state_store=state_store,
    )
