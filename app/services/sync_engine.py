"""Per-user Drive reconciliation: discover, diff, delete, then index file jobs.

Crash safety rests on one ordering rule: a document's source_modified_time is
set to the real Drive value only after every chunk of its current content has
been written. Until then it carries PLACEHOLDER_MODIFIED_TIME, which always
compares older than any remote file and so is re-indexed by the next sync.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from app.config.logger import app_logger, log_performance
from app.config.settings import settings
from app.models.chunk import Chunk
from app.models.document import Document
from app.models.drive_credential import DriveCredential
from app.models.file_job import FileJob, FileJobAction
from app.services.chunker import chunk_text
from app.services.embeddings import Embedder
from app.services.extractors import extract_text
from app.services.google_drive import (
    DriveAuthError,
    DriveTokens,
    GoogleDriveClient,
    RefreshedTokens,
    RemoteFile,
    is_auth_error,
)
from app.services.sync_state_store import PlannedJob, SyncStateStore, as_uuid
from app.services.vector_store import VectorIndex, VectorItem
from app.utils.timeutils import modified_after, utcnow

PLACEHOLDER_MODIFIED_TIME = "1970-01-01T00:00:00.000Z"

RECONNECT_MESSAGE = "Google Drive authorization expired. Please reconnect your Google Drive account."
NOT_CONNECTED_MESSAGE = "Google Drive is not connected"
EMPTY_CONTENT_REASON = "No extractable text"
EMPTIED_DOCUMENT_REASON = "File has no extractable text anymore; document removed"


class SyncInvariantError(RuntimeError):
    """A file job points at state that should exist but does not."""


@dataclass
class SyncResult:
    added: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    auth_failed: bool = False
    already_syncing: bool = False
    cancelled: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SyncPlan:
    to_add: List[RemoteFile] = field(default_factory=list)
    to_update: List[Tuple[RemoteFile, Document]] = field(default_factory=list)
    to_delete: List[Document] = field(default_factory=list)

    def planned_jobs(self) -> List[PlannedJob]:
        jobs = [
            PlannedJob(
                external_file_id=remote.id,
                file_name=remote.name,
                mime_type=remote.mime_type,
                modified_time=remote.modified_time,
                action=FileJobAction.ADD.value,
            )
            for remote in self.to_add
        ]
        jobs.extend(
            PlannedJob(
                external_file_id=remote.id,
                file_name=remote.name,
                mime_type=remote.mime_type,
                modified_time=remote.modified_time,
                action=FileJobAction.UPDATE.value,
                document_id=document.id,
            )
            for remote, document in self.to_update
        )
        return jobs


def plan_sync(stored: Sequence[Document], remote: Sequence[RemoteFile]) -> SyncPlan:
    """Diff the user's stored documents against the remote listing.

    A stored document needs an update when the remote file is strictly newer
    or the document still carries the placeholder time of an unfinished index.
    """
    stored_by_file = {doc.external_file_id: doc for doc in stored}
    remote_ids = set()
    plan = SyncPlan()

    for remote_file in remote:
        remote_ids.add(remote_file.id)
        document = stored_by_file.get(remote_file.id)
        if document is None:
            plan.to_add.append(remote_file)
        elif document.source_modified_time == PLACEHOLDER_MODIFIED_TIME or modified_after(
            remote_file.modified_time, document.source_modified_time
        ):
            plan.to_update.append((remote_file, document))

    plan.to_delete = [doc for doc in stored if doc.external_file_id not in remote_ids]
    return plan


def apply_deletion_guard(
    to_delete: Sequence[Document],
    stored_count: int,
    remote_count: int,
    threshold: int | None = None,
    max_ratio: float | None = None,
) -> Tuple[List[Document], Optional[str]]:
    """Drop the whole deletion batch when it looks like a listing glitch.

    Returns the deletions to execute and, when the guard tripped, why.
    """
    threshold = settings.SYNC_DELETION_SAFETY_THRESHOLD if threshold is None else threshold
    max_ratio = settings.SYNC_DELETION_MAX_RATIO if max_ratio is None else max_ratio

    if not to_delete:
        return [], None
    if stored_count >= threshold and remote_count == 0:
        return [], (
            f"remote listing returned 0 files but {stored_count} documents are stored"
        )
    if len(to_delete) > threshold and len(to_delete) > stored_count * max_ratio:
        return [], (
            f"{len(to_delete)} of {stored_count} documents would be deleted "
            f"(more than {max_ratio:.0%})"
        )
    return list(to_delete), None


async def delete_document(session: AsyncSession, document: Document, vector_index: VectorIndex) -> None:
    """Remove a document, its chunk rows and their index vectors. Caller commits."""
    result = await session.execute(select(Chunk.id).where(Chunk.document_id == document.id))
    chunk_ids = [str(chunk_id) for chunk_id in result.scalars().all()]
    await session.execute(delete(Chunk).where(Chunk.document_id == document.id))
    if chunk_ids:
        await asyncio.to_thread(vector_index.delete, str(document.user_id), chunk_ids)
    await session.delete(document)


class DriveSyncEngine:
    """Reconciles one user's Drive files with their indexed documents."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        drive_client: GoogleDriveClient,
        embedder: Embedder,
        vector_index: VectorIndex,
        state_store: SyncStateStore | None = None,
        embed_sub_batch_size: int | None = None,
    ):
        self._session_factory = session_factory
        self.drive_client = drive_client
        self.embedder = embedder
        self.vector_index = vector_index
        self.state_store = state_store or SyncStateStore(session_factory)
        self.embed_sub_batch_size = embed_sub_batch_size or settings.SYNC_EMBED_SUB_BATCH_SIZE

    async def sync_user(self, user_id: UUID | str) -> SyncResult:
        """Run one sync attempt for a user.

        Returns already_syncing when a live worker owns the user's sync.
        Unexpected errors mark the sync failed and propagate.
        """
        user_id = as_uuid(user_id)
        claim = await self.state_store.claim_sync(user_id)
        if not claim.claimed:
            return SyncResult(already_syncing=True, error=claim.reason)

        start_time = time.time()
        worker_id = claim.worker_id
        try:
            result = await self._run(user_id, worker_id, reclaimed=claim.reclaimed)
        except Exception as exc:
            app_logger.error(f"Sync failed for user {user_id}: {exc}")
            await self.state_store.mark_failed(user_id, str(exc) or type(exc).__name__, worker_id=worker_id)
            raise

        log_performance(
            "drive_sync_user",
            time.time() - start_time,
            user_id=str(user_id),
            added=result.added,
            updated=result.updated,
            deleted=result.deleted,
            failed=result.failed,
        )
        return result

    async def _run(self, user_id: UUID, worker_id: str, reclaimed: bool) -> SyncResult:
        tokens = await self._load_tokens(user_id)
        if tokens is None:
            await self.state_store.mark_failed(user_id, NOT_CONNECTED_MESSAGE, worker_id=worker_id)
            return SyncResult(auth_failed=True, error=NOT_CONNECTED_MESSAGE)

        tokens = await self._refresh_tokens(user_id, tokens)
        if tokens is None:
            return await self._fail_auth(user_id, worker_id)

        try:
            remote_files = await asyncio.to_thread(self.drive_client.list_files, tokens)
        except Exception as exc:
            if is_auth_error(exc):
                app_logger.error(f"Drive rejected credentials for user {user_id} while listing: {exc}")
                return await self._fail_auth(user_id, worker_id)
            raise

        await self.state_store.heartbeat(user_id, worker_id)

        async with self._session_factory() as session:
            result = await session.execute(select(Document).where(Document.user_id == user_id))
            stored = list(result.scalars().all())

        plan = plan_sync(stored, remote_files)
        to_delete, guard_reason = apply_deletion_guard(plan.to_delete, len(stored), len(remote_files))
        if guard_reason:
            app_logger.warning(
                f"Deletion guard tripped for user {user_id}: {guard_reason}; "
                f"skipping {len(plan.to_delete)} deletions"
            )

        app_logger.info(
            f"Sync plan for user {user_id}: +{len(plan.to_add)} ~{len(plan.to_update)} "
            f"-{len(to_delete)} ({len(remote_files)} remote, {len(stored)} stored)"
        )

        entered = await self.state_store.populate_jobs(
            user_id, worker_id, plan.planned_jobs(), reset=not reclaimed
        )
        if not entered or not await self.state_store.is_active_worker(user_id, worker_id):
            app_logger.info(f"Sync for user {user_id} stopped during discovery: cancelled or taken over")
            return SyncResult(cancelled=True)

        deleted = 0
        for document in to_delete:
            async with self._session_factory() as session:
                current = await session.get(Document, document.id)
                if current is None:
                    continue
                await delete_document(session, current, self.vector_index)
                await session.commit()
            deleted += 1
            app_logger.info(f"Deleted document '{document.title}' ({document.external_file_id}) for user {user_id}")

        auth_failed = await self._process_jobs(user_id, worker_id, _TokenHolder(tokens))

        stats = await self.state_store.job_stats(user_id)
        result = SyncResult(
            added=stats.by_action.get(f"{FileJobAction.ADD.value}:completed", 0),
            updated=stats.by_action.get(f"{FileJobAction.UPDATE.value}:completed", 0),
            deleted=deleted + stats.by_action.get(f"{FileJobAction.UPDATE.value}:skipped", 0),
            failed=stats.failed,
        )

        if auth_failed:
            failure = await self._fail_auth(user_id, worker_id)
            result.auth_failed = True
            result.error = failure.error
            return result

        if not await self.state_store.is_active_worker(user_id, worker_id):
            app_logger.info(f"Sync for user {user_id} stopped early: cancelled or taken over by another worker")
            result.cancelled = True
            return result

        open_jobs = await self.state_store.open_job_count(user_id)
        if open_jobs:
            message = f"{open_jobs} file jobs were left unfinished"
            app_logger.error(f"Sync for user {user_id} cannot complete: {message}")
            await self.state_store.mark_failed(user_id, message, worker_id=worker_id)
            result.error = message
            return result

        last_result = {"added": result.added, "updated": result.updated, "deleted": result.deleted}
        if not await self.state_store.mark_completed(user_id, worker_id, last_result):
            result.cancelled = True
            return result

        app_logger.info(
            f"Sync complete for user {user_id} - added={result.added} updated={result.updated} "
            f"deleted={result.deleted} failed={result.failed}"
        )
        return result

    async def _load_tokens(self, user_id: UUID) -> Optional[DriveTokens]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DriveCredential).where(DriveCredential.user_id == user_id)
            )
            credential = result.scalar_one_or_none()
        if credential is None or not credential.access_token:
            return None
        return DriveTokens(
            access_token=credential.access_token,
            refresh_token=credential.refresh_token,
            expires_at=credential.access_token_expires_at,
        )

    async def _refresh_tokens(self, user_id: UUID, tokens: DriveTokens) -> Optional[DriveTokens]:
        refreshed = await asyncio.to_thread(self.drive_client.refresh_if_needed, tokens)
        if refreshed is None:
            return None
        if refreshed.was_refreshed:
            await self._save_tokens(user_id, refreshed)
        return refreshed

    async def _save_tokens(self, user_id: UUID, tokens: RefreshedTokens) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(DriveCredential)
                .where(DriveCredential.user_id == user_id)
                .values(
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    access_token_expires_at=tokens.expires_at,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        app_logger.info(f"Persisted refreshed Drive token for user {user_id}")

    async def _fail_auth(self, user_id: UUID, worker_id: str) -> SyncResult:
        """Flag the connection for re-authorisation. Indexed documents are left alone."""
        async with self._session_factory() as session:
            await session.execute(
                update(DriveCredential)
                .where(DriveCredential.user_id == user_id)
                .values(access_token=None, access_token_expires_at=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        app_logger.warning(f"Drive connection for user {user_id} needs to be reconnected")
        await self.state_store.mark_failed(user_id, RECONNECT_MESSAGE, worker_id=worker_id)
        return SyncResult(auth_failed=True, error=RECONNECT_MESSAGE)

    async def _process_jobs(self, user_id: UUID, worker_id: str, holder: "_TokenHolder") -> bool:
        """Claim and index jobs one at a time until none are left or the sync is lost.

        Returns True when Drive rejected the user's grant; the job in hand is
        put back to pending and no further job is claimed.
        """
        while True:
            if not await self.state_store.is_active_worker(user_id, worker_id):
                return False
            job = await self.state_store.claim_next_job(user_id, worker_id)
            if job is None:
                return False

            try:
                tokens = await holder.fresh(self, user_id)
                outcome = await self._process_job(user_id, worker_id, job, tokens)
            except Exception as exc:
                if is_auth_error(exc):
                    app_logger.error(
                        f"Drive rejected credentials for user {user_id} while indexing "
                        f"'{job.file_name}' ({job.external_file_id}): {exc}"
                    )
                    await self.state_store.release_job(job.id, worker_id)
                    return True
                app_logger.error(f"Failed to index '{job.file_name}' ({job.external_file_id}) for user {user_id}: {exc}")
                await self.state_store.fail_job(job.id, worker_id, str(exc) or type(exc).__name__)
                still_owner = await self.state_store.update_progress(
                    user_id, worker_id, processed_delta=1, failed_delta=1
                )
            else:
                app_logger.debug(f"{outcome} '{job.file_name}' ({job.external_file_id})")
                still_owner = await self.state_store.update_progress(user_id, worker_id, processed_delta=1)

            if not still_owner:
                return False

    async def _process_job(self, user_id: UUID, worker_id: str, job: FileJob, tokens: DriveTokens) -> str:
        document = None
        if job.action == FileJobAction.UPDATE.value:
            if job.document_id is None:
                raise SyncInvariantError(f"Update job for {job.external_file_id} has no document id")
            document = await self._clear_document(job.document_id)
            if document is None:
                raise SyncInvariantError(
                    f"Document {job.document_id} for {job.external_file_id} no longer exists"
                )

        content = await asyncio.to_thread(
            self.drive_client.export_or_download, tokens, job.external_file_id, job.mime_type
        )
        text = await asyncio.to_thread(extract_text, content, job.mime_type)
        chunks = chunk_text(text)

        if not chunks:
            if document is not None:
                async with self._session_factory() as session:
                    current = await session.get(Document, document.id)
                    if current is not None:
                        await delete_document(session, current, self.vector_index)
                        await session.commit()
                await self.state_store.skip_job(job.id, worker_id, EMPTIED_DOCUMENT_REASON)
                return "Removed emptied"
            await self.state_store.skip_job(job.id, worker_id, EMPTY_CONTENT_REASON)
            return "Skipped empty"

        if document is None:
            document = await self._placeholder_document(user_id, job)

        for start in range(0, len(chunks), self.embed_sub_batch_size):
            batch = chunks[start : start + self.embed_sub_batch_size]
            embeddings = await asyncio.to_thread(self.embedder.embed, [chunk.text for chunk in batch])
            if len(embeddings) != len(batch):
                raise SyncInvariantError(
                    f"Embedder returned {len(embeddings)} vectors for {len(batch)} chunks"
                )

            rows = [
                Chunk(
                    document_id=document.id,
                    user_id=user_id,
                    chunk_index=chunk.index,
                    text=chunk.text,
                    embedding=list(vector),
                )
                for chunk, vector in zip(batch, embeddings)
            ]
            async with self._session_factory() as session:
                session.add_all(rows)
                await session.commit()

            await asyncio.to_thread(
                self.vector_index.upsert,
                str(user_id),
                [
                    VectorItem(
                        id=str(row.id),
                        values=row.embedding,
                        metadata={
                            "document_id": str(document.id),
                            "chunk_index": row.chunk_index,
                            "title": job.file_name,
                            "text": row.text,
                        },
                    )
                    for row in rows
                ],
            )
            await self.state_store.heartbeat(user_id, worker_id)

        # Commit point: the real modified time marks the index as complete
        async with self._session_factory() as session:
            await session.execute(
                update(Document)
                .where(Document.id == document.id)
                .values(
                    source_modified_time=job.modified_time,
                    chunk_count=len(chunks),
                    full_text=text,
                    title=job.file_name,
                    mime_type=job.mime_type,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        await self.state_store.complete_job(job.id, worker_id)
        return "Updated" if job.action == FileJobAction.UPDATE.value else "Added"

    async def _clear_document(self, document_id: UUID) -> Optional[Document]:
        """Drop a document's chunks and flag it incomplete before re-indexing."""
        async with self._session_factory() as session:
            document = await session.get(Document, document_id)
            if document is None:
                return None
            result = await session.execute(select(Chunk.id).where(Chunk.document_id == document_id))
            chunk_ids = [str(chunk_id) for chunk_id in result.scalars().all()]
            await session.execute(delete(Chunk).where(Chunk.document_id == document_id))
            document.source_modified_time = PLACEHOLDER_MODIFIED_TIME
            document.chunk_count = 0
            document.updated_at = utcnow()
            session.add(document)
            await session.commit()

        if chunk_ids:
            await asyncio.to_thread(self.vector_index.delete, str(document.user_id), chunk_ids)
        return document

    async def _placeholder_document(self, user_id: UUID, job: FileJob) -> Document:
        """Create the document row for an add, or reuse one a crashed attempt left behind."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Document).where(
                    Document.user_id == user_id,
                    Document.external_file_id == job.external_file_id,
                )
            )
            document = result.scalar_one_or_none()

        if document is not None:
            return await self._clear_document(document.id)

        document = Document(
            user_id=user_id,
            external_file_id=job.external_file_id,
            title=job.file_name,
            mime_type=job.mime_type,
            source_modified_time=PLACEHOLDER_MODIFIED_TIME,
        )
        async with self._session_factory() as session:
            session.add(document)
            await session.commit()
        return document


class _TokenHolder:
    """Token pair for one sync, refreshed before each job."""

    def __init__(self, tokens: DriveTokens):
        self.tokens = tokens

    async def fresh(self, engine: DriveSyncEngine, user_id: UUID) -> DriveTokens:
        refreshed = await engine._refresh_tokens(user_id, self.tokens)
        if refreshed is None:
            raise DriveAuthError(RECONNECT_MESSAGE)
        self.tokens = refreshed
        return refreshed
