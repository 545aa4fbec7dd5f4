"""Runs the sync engine across every user with a Drive connection."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import List
from uuid import UUID

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from app.config.logger import app_logger, log_performance
from app.models.drive_credential import DriveCredential
from app.models.user import User
from app.services.embeddings import OpenAIEmbedder
from app.services.google_drive import GoogleDriveClient
from app.services.sync_engine import DriveSyncEngine, SyncResult
from app.services.sync_state_store import SyncStateStore, as_uuid
from app.services.vector_store import PineconeVectorIndex


class UserNotConnectedError(LookupError):
    """The user does not exist or has no usable Drive connection."""


@dataclass
class CoordinatorSummary:
    total_added: int = 0
    total_updated: int = 0
    total_deleted: int = 0
    users_processed: int = 0
    auth_failures: int = 0
    already_syncing: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class SyncCoordinator:
    def __init__(self, session_factory: async_sessionmaker, engine: DriveSyncEngine):
        self._session_factory = session_factory
        self.engine = engine

    async def connected_user_ids(self) -> List[UUID]:
        """Active users whose Drive credential still holds an access token."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(User.id)
                .join(DriveCredential, DriveCredential.user_id == User.id)
                .where(User.is_active.is_(True), DriveCredential.access_token.is_not(None))
                .order_by(User.created_at)
            )
            return list(result.scalars().all())

    async def sync_all(self) -> CoordinatorSummary:
        """Sync every connected user in turn; one user's failure never stops the run."""
        start_time = time.time()
        summary = CoordinatorSummary()
        user_ids = await self.connected_user_ids()
        app_logger.info(f"Starting Drive sync for {len(user_ids)} connected users")

        for user_id in user_ids:
            try:
                result = await self.engine.sync_user(user_id)
            except Exception as exc:
                app_logger.error(f"Drive sync failed for user {user_id}: {exc}")
                summary.errors.append(f"{user_id}: {exc}")
                continue

            if result.already_syncing:
                summary.already_syncing += 1
                continue

            summary.users_processed += 1
            summary.total_added += result.added
            summary.total_updated += result.updated
            summary.total_deleted += result.deleted
            if result.auth_failed:
                summary.auth_failures += 1

        elapsed = time.time() - start_time
        app_logger.info(
            f"Drive sync run complete - users={summary.users_processed} added={summary.total_added} "
            f"updated={summary.total_updated} deleted={summary.total_deleted} "
            f"auth_failures={summary.auth_failures} already_syncing={summary.already_syncing} "
            f"errors={len(summary.errors)}"
        )
        log_performance("drive_sync_all", elapsed, users=len(user_ids))
        return summary

    async def sync_user_by_id(self, user_id: UUID | str) -> SyncResult:
        user_id = as_uuid(user_id)
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            result = await session.execute(
                select(DriveCredential).where(DriveCredential.user_id == user_id)
            )
            credential = result.scalar_one_or_none()

        if user is None:
            raise UserNotConnectedError(f"User {user_id} not found")
        if credential is None or credential.needs_reconnect:
            raise UserNotConnectedError(f"User {user_id} has no active Google Drive connection")
        return await self.engine.sync_user(user_id)


def build_default_coordinator(session_factory: async_sessionmaker) -> SyncCoordinator:
    """Coordinator wired to Google Drive, OpenAI and Pinecone."""
    engine = DriveSyncEngine(
        session_factory=session_factory,
        drive_client=GoogleDriveClient(),
        embedder=OpenAIEmbedder(),
        vector_index=PineconeVectorIndex(),
        state_store=SyncStateStore(session_factory),
    )
    return SyncCoordinator(session_factory, engine)
