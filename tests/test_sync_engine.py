"""End-to-end tests for per-user Drive reconciliation against fake collaborators."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update
from sqlmodel import select

from app.models.chunk import Chunk
from app.models.document import Document
from app.models.drive_credential import DriveCredential
from app.models.file_job import FileJob, FileJobStatus
from app.models.sync_state import SyncState, SyncStatus
from app.services.google_drive import DriveAuthError, RefreshedTokens, RemoteFile
from app.services.sync_engine import (
    PLACEHOLDER_MODIFIED_TIME,
    RECONNECT_MESSAGE,
    DriveSyncEngine,
    apply_deletion_guard,
    plan_sync,
)
from app.services.sync_state_store import CANCELLED_BY_USER, SyncStateStore
from app.utils.timeutils import utcnow


async def _documents(session_factory, user_id):
    async with session_factory() as session:
        result = await session.execute(select(Document).where(Document.user_id == user_id))
        return {doc.external_file_id: doc for doc in result.scalars().all()}


async def _chunks(session_factory, document_id):
    async with session_factory() as session:
        result = await session.execute(
            select(Chunk).where(Chunk.document_id == document_id).order_by(Chunk.chunk_index)
        )
        return list(result.scalars().all())


async def _jobs(session_factory, user_id):
    async with session_factory() as session:
        result = await session.execute(select(FileJob).where(FileJob.user_id == user_id))
        return {job.external_file_id: job for job in result.scalars().all()}


async def _seed_documents(engine, drive, user_id, count, modified_time="2024-01-01T00:00:00Z"):
    """Index `count` small files through a real sync so stored and remote agree."""
    for i in range(count):
        drive.add_file(f"f{i}", f"Doc {i}", modified_time, f"Content of document {i}.")
    result = await engine.sync_user(user_id)
    assert result.added == count


class TestPlanning:
    def _doc(self, file_id, modified):
        return Document(user_id=None, external_file_id=file_id, title=file_id, source_modified_time=modified)

    def _remote(self, file_id, modified):
        return RemoteFile(id=file_id, name=file_id, mime_type="application/pdf", modified_time=modified)

    def test_plan_splits_add_update_delete(self):
        stored = [
            self._doc("same", "2024-01-01T00:00:00.000Z"),
            self._doc("newer", "2024-01-01T00:00:00Z"),
            self._doc("unfinished", PLACEHOLDER_MODIFIED_TIME),
            self._doc("gone", "2024-01-01T00:00:00Z"),
        ]
        remote = [
            self._remote("same", "2024-01-01T00:00:00Z"),
            self._remote("newer", "2024-02-01T00:00:00Z"),
            self._remote("unfinished", "2023-06-01T00:00:00Z"),
            self._remote("new", "2024-03-01T00:00:00Z"),
        ]

        plan = plan_sync(stored, remote)

        assert [f.id for f in plan.to_add] == ["new"]
        assert sorted(f.id for f, _ in plan.to_update) == ["newer", "unfinished"]
        assert [d.external_file_id for d in plan.to_delete] == ["gone"]

    def test_equal_modified_time_is_not_an_update(self):
        plan = plan_sync(
            [self._doc("a", "2024-05-05T10:00:00.000Z")],
            [self._remote("a", "2024-05-05T10:00:00Z")],
        )

        assert plan.to_update == []

    def test_guard_allows_small_deletions(self):
        to_delete = [object(), object()]

        kept, reason = apply_deletion_guard(to_delete, stored_count=10, remote_count=8)

        assert kept == to_delete and reason is None

    def test_guard_blocks_empty_listing(self):
        kept, reason = apply_deletion_guard([object()] * 10, stored_count=10, remote_count=0)

        assert kept == [] and "0 files" in reason

    def test_guard_blocks_mass_deletion(self):
        kept, reason = apply_deletion_guard([object()] * 9, stored_count=10, remote_count=1)

        assert kept == [] and "9 of 10" in reason

    def test_guard_allows_deleting_everything_from_a_small_library(self):
        kept, _ = apply_deletion_guard([object()] * 4, stored_count=4, remote_count=0)

        assert len(kept) == 4


class TestAddAndUpdate:
    @pytest.mark.asyncio
    async def test_new_google_doc_is_indexed(
        self, create_user, engine, drive, embedder, vector_index, session_factory, five_thousand_char_text
    ):
        user = await create_user()
        drive.add_file("f1", "Notes", "2024-01-01T00:00:00Z", five_thousand_char_text)

        result = await engine.sync_user(user.id)

        assert (result.added, result.updated, result.deleted, result.failed) == (1, 0, 0, 0)
        docs = await _documents(session_factory, user.id)
        doc = docs["f1"]
        assert doc.title == "Notes"
        assert doc.source_modified_time == "2024-01-01T00:00:00Z"
        assert doc.chunk_count == 2
        chunks = await _chunks(session_factory, doc.id)
        assert [c.chunk_index for c in chunks] == [0, 1]
        assert all(c.embedding for c in chunks)
        assert vector_index.count(user.id) == 2
        state = await engine.state_store.get_state(user.id)
        assert state.status == SyncStatus.COMPLETED.value
        assert state.last_result == {"added": 1, "updated": 0, "deleted": 0}
        assert state.worker_id is None
        assert (state.total_discovered, state.processed, state.failed) == (1, 1, 0)

    @pytest.mark.asyncio
    async def test_unchanged_files_are_not_reexported(self, create_user, engine, drive):
        user = await create_user()
        drive.add_file("f1", "Notes", "2024-01-01T00:00:00Z", "Short note.")
        await engine.sync_user(user.id)
        drive.exported.clear()

        result = await engine.sync_user(user.id)

        assert (result.added, result.updated, result.deleted) == (0, 0, 0)
        assert drive.exported == []

    @pytest.mark.asyncio
    async def test_newer_remote_file_replaces_chunks(
        self, create_user, engine, drive, vector_index, session_factory, five_thousand_char_text
    ):
        user = await create_user()
        drive.add_file("f1", "Notes", "2024-01-01T00:00:00Z", five_thousand_char_text)
        await engine.sync_user(user.id)
        doc_id = (await _documents(session_factory, user.id))["f1"].id
        old_chunk_ids = {c.id for c in await _chunks(session_factory, doc_id)}

        drive.add_file("f1", "Notes v2", "2024-02-01T00:00:00Z", "Rewritten from scratch.")
        result = await engine.sync_user(user.id)

        assert (result.added, result.updated) == (0, 1)
        doc = (await _documents(session_factory, user.id))["f1"]
        assert doc.id == doc_id
        assert doc.source_modified_time == "2024-02-01T00:00:00Z"
        assert doc.title == "Notes v2"
        chunks = await _chunks(session_factory, doc_id)
        assert [c.text for c in chunks] == ["Rewritten from scratch."]
        assert old_chunk_ids.isdisjoint({c.id for c in chunks})
        assert set(vector_index.items[str(user.id)]) == {str(c.id) for c in chunks}

    @pytest.mark.asyncio
    async def test_crash_before_commit_point_is_reindexed_next_sync(
        self, create_user, session_factory, drive, embedder, vector_index, state_store, five_thousand_char_text
    ):
        user = await create_user()
        engine = DriveSyncEngine(
            session_factory, drive, embedder, vector_index, state_store=state_store, embed_sub_batch_size=1
        )
        drive.add_file("f1", "Notes", "2024-01-01T00:00:00Z", five_thousand_char_text)
        embedder.fail_on_call = 2  # first chunk written, second chunk's embedding fails

        first = await engine.sync_user(user.id)

        assert first.failed == 1
        doc = (await _documents(session_factory, user.id))["f1"]
        assert doc.source_modified_time == PLACEHOLDER_MODIFIED_TIME
        assert len(await _chunks(session_factory, doc.id)) == 1

        embedder.fail_on_call = None
        second = await engine.sync_user(user.id)

        assert second.updated == 1
        doc = (await _documents(session_factory, user.id))["f1"]
        assert doc.source_modified_time == "2024-01-01T00:00:00Z"
        assert [c.chunk_index for c in await _chunks(session_factory, doc.id)] == [0, 1]

    @pytest.mark.asyncio
    async def test_empty_new_file_is_skipped(self, create_user, engine, drive, session_factory):
        user = await create_user()
        drive.add_file("blank", "Blank", "2024-01-01T00:00:00Z", "   \n\n  ")

        result = await engine.sync_user(user.id)

        assert result.added == 0
        assert await _documents(session_factory, user.id) == {}
        jobs = await _jobs(session_factory, user.id)
        assert jobs["blank"].status == FileJobStatus.SKIPPED.value

    @pytest.mark.asyncio
    async def test_file_that_became_empty_removes_its_document(
        self, create_user, engine, drive, vector_index, session_factory
    ):
        user = await create_user()
        drive.add_file("f1", "Notes", "2024-01-01T00:00:00Z", "Some text.")
        await engine.sync_user(user.id)

        drive.add_file("f1", "Notes", "2024-02-01T00:00:00Z", "")
        result = await engine.sync_user(user.id)

        assert (result.updated, result.deleted) == (0, 1)
        assert await _documents(session_factory, user.id) == {}
        assert vector_index.count(user.id) == 0

class TestDeletionGuard:
    @pytest.mark.asyncio
    async def test_empty_listing_deletes_nothing(self, create_user, engine, drive, session_factory):
        user = await create_user()
        await _seed_documents(engine, drive, user.id, 10)
        drive.files = []

        result = await engine.sync_user(user.id)

        assert result.deleted == 0
        assert len(await _documents(session_factory, user.id)) == 10

    @pytest.mark.asyncio
    async def test_listing_with_one_file_deletes_nothing(self, create_user, engine, drive, session_factory):
        user = await create_user()
        await _seed_documents(engine, drive, user.id, 10)
        for i in range(1, 10):
            drive.remove_file(f"f{i}")

        result = await engine.sync_user(user.id)

        assert result.deleted == 0
        assert len(await _documents(session_factory, user.id)) == 10

    @pytest.mark.asyncio
    async def test_small_removal_is_applied(self, create_user, engine, drive, vector_index, session_factory):
        user = await create_user()
        await _seed_documents(engine, drive, user.id, 10)
        drive.remove_file("f3")
        drive.remove_file("f7")

        result = await engine.sync_user(user.id)

        assert result.deleted == 2
        docs = await _documents(session_factory, user.id)
        assert set(docs) == {f"f{i}" for i in range(10)} - {"f3", "f7"}
        assert vector_index.count(user.id) == 8


class TestFailures:
    @pytest.mark.asyncio
    async def test_revoked_refresh_token_marks_reconnect_and_keeps_documents(
        self, create_user, engine, drive, session_factory
    ):
        user = await create_user()
        await _seed_documents(engine, drive, user.id, 3)
        drive.refresh_fails = True

        result = await engine.sync_user(user.id)

        assert result.auth_failed
        assert len(await _documents(session_factory, user.id)) == 3
        async with session_factory() as session:
            credential = (
                await session.execute(select(DriveCredential).where(DriveCredential.user_id == user.id))
            ).scalar_one()
        assert credential.access_token is None
        assert credential.refresh_token == "refresh-token"
        state = await engine.state_store.get_state(user.id)
        assert state.status == SyncStatus.FAILED.value
        assert state.error == RECONNECT_MESSAGE

    @pytest.mark.asyncio
    async def test_unauthorized_listing_is_an_auth_failure(self, create_user, engine, drive, session_factory):
        user = await create_user()
        drive.list_error = DriveAuthError("401 Invalid Credentials")

        result = await engine.sync_user(user.id)

        assert result.auth_failed

    @pytest.mark.asyncio
    async def test_listing_failure_fails_sync_and_preserves_data(self, create_user, engine, drive, session_factory):
        user = await create_user()
        await _seed_documents(engine, drive, user.id, 2)
        drive.list_error = RuntimeError("Drive backend error")

        with pytest.raises(RuntimeError, match="Drive backend error"):
            await engine.sync_user(user.id)

        assert len(await _documents(session_factory, user.id)) == 2
        state = await engine.state_store.get_state(user.id)
        assert state.status == SyncStatus.FAILED.value
        assert state.error == "Drive backend error"

    @pytest.mark.asyncio
    async def test_one_bad_file_does_not_stop_the_others(self, create_user, engine, drive, session_factory):
        user = await create_user()
        drive.add_file("good", "Good", "2024-01-01T00:00:00Z", "Readable text.")
        drive.add_file("bad", "Bad", "2024-01-01T00:00:00Z", IOError("download interrupted"))

        result = await engine.sync_user(user.id)

        assert (result.added, result.failed) == (1, 1)
        jobs = await _jobs(session_factory, user.id)
        assert jobs["bad"].status == FileJobStatus.FAILED.value
        assert "download interrupted" in jobs["bad"].error
        state = await engine.state_store.get_state(user.id)
        assert state.status == SyncStatus.COMPLETED.value
        assert (state.processed, state.failed) == (2, 1)

    @pytest.mark.asyncio
    async def test_missing_document_fails_only_that_job(
        self, create_user, session_factory, drive, embedder, vector_index
    ):
        class DroppingStore(SyncStateStore):
            async def populate_jobs(self, user_id, worker_id, planned, reset=True):
                count = await super().populate_jobs(user_id, worker_id, planned, reset)
                async with session_factory() as session:
                    doc = (
                        await session.execute(select(Document).where(Document.external_file_id == "f0"))
                    ).scalar_one()
                    await session.delete(doc)
                    await session.commit()
                return count

        user = await create_user()
        plain = DriveSyncEngine(session_factory, drive, embedder, vector_index)
        await _seed_documents(plain, drive, user.id, 2)
        drive.add_file("f0", "Doc 0", "2024-05-01T00:00:00Z", "New body.")
        drive.add_file("f1", "Doc 1", "2024-05-01T00:00:00Z", "Other new body.")
        engine = DriveSyncEngine(session_factory, drive, embedder, vector_index, state_store=DroppingStore(session_factory))

        result = await engine.sync_user(user.id)

        assert (result.updated, result.failed) == (1, 1)
        jobs = await _jobs(session_factory, user.id)
        assert "no longer exists" in jobs["f0"].error

    @pytest.mark.asyncio
    async def test_refreshed_token_is_persisted(self, create_user, engine, drive, session_factory):
        user = await create_user()
        expires = datetime.now(timezone.utc) + timedelta(hours=1)
        drive.refresh_result = RefreshedTokens(
            access_token="new-access", refresh_token="refresh-token", expires_at=expires, was_refreshed=True
        )

        await engine.sync_user(user.id)

        async with session_factory() as session:
            credential = (
                await session.execute(select(DriveCredential).where(DriveCredential.user_id == user.id))
            ).scalar_one()
        assert credential.access_token == "new-access"


class TestConcurrencyControl:
    @pytest.mark.asyncio
    async def test_live_sync_is_not_duplicated(self, create_user, engine, drive, state_store):
        user = await create_user()
        drive.add_file("f1", "Notes", "2024-01-01T00:00:00Z", "Text.")
        await state_store.claim_sync(user.id)

        result = await engine.sync_user(user.id)

        assert result.already_syncing
        assert drive.exported == []

    @pytest.mark.asyncio
    async def test_dead_workers_sync_is_resumed(self, create_user, engine, drive, state_store, session_factory):
        user = await create_user()
        drive.add_file("f1", "One", "2024-01-01T00:00:00Z", "First.")
        drive.add_file("f2", "Two", "2024-01-01T00:00:00Z", "Second.")
        dead = await state_store.claim_sync(user.id)
        await state_store.populate_jobs(user.id, dead.worker_id, plan_sync([], drive.files).planned_jobs())
        await state_store.claim_next_job(user.id, dead.worker_id)
        async with session_factory() as session:
            await session.execute(
                update(SyncState)
                .where(SyncState.user_id == user.id)
                .values(heartbeat_at=utcnow() - timedelta(minutes=5))
            )
            await session.commit()

        result = await engine.sync_user(user.id)

        assert result.added == 2
        jobs = await _jobs(session_factory, user.id)
        assert {job.status for job in jobs.values()} == {FileJobStatus.COMPLETED.value}
        assert max(job.retry_count for job in jobs.values()) == 1

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_job(self, create_user, session_factory, drive, embedder, vector_index):
        class CancellingStore(SyncStateStore):
            async def complete_job(self, job_id, worker_id):
                done = await super().complete_job(job_id, worker_id)
                await self.cancel(user.id)
                return done

        user = await create_user()
        engine = DriveSyncEngine(
            session_factory, drive, embedder, vector_index, state_store=CancellingStore(session_factory)
        )
        for i in range(3):
            drive.add_file(f"f{i}", f"Doc {i}", "2024-01-01T00:00:00Z", f"Body {i}.")

        result = await engine.sync_user(user.id)

        assert result.cancelled
        assert len(drive.exported) == 1
        state = await engine.state_store.get_state(user.id)
        assert state.status == SyncStatus.FAILED.value
        assert state.error == CANCELLED_BY_USER

    @pytest.mark.asyncio
    async def test_cancel_during_discovery_stops_before_any_work(
        self, create_user, engine, session_factory, drive, embedder, vector_index
    ):
        class CancelAfterListingStore(SyncStateStore):
            cancelled = False

            async def heartbeat(self, user_id, worker_id):
                alive = await super().heartbeat(user_id, worker_id)
                if not self.cancelled:
                    self.cancelled = True
                    await self.cancel(user_id)
                return alive

        user = await create_user()
        await _seed_documents(engine, drive, user.id, 3)
        drive.remove_file("f2")
        drive.add_file("new", "New", "2024-03-01T00:00:00Z", "Fresh body.")
        exported_before = list(drive.exported)
        cancelling = DriveSyncEngine(
            session_factory, drive, embedder, vector_index, state_store=CancelAfterListingStore(session_factory)
        )

        result = await cancelling.sync_user(user.id)

        assert result.cancelled
        assert drive.exported == exported_before
        assert set(await _documents(session_factory, user.id)) == {"f0", "f1", "f2"}
        state = await cancelling.state_store.get_state(user.id)
        assert state.status == SyncStatus.FAILED.value
        assert state.error == CANCELLED_BY_USER

    @pytest.mark.asyncio
    async def test_every_file_is_exported_exactly_once(self, create_user, engine, drive):
        user = await create_user()
        for i in range(6):
            drive.add_file(f"f{i}", f"Doc {i}", "2024-01-01T00:00:00Z", f"Body of file {i}.")
        drive.add_file("f3", "Doc 3", "2024-01-01T00:00:00Z", IOError("download interrupted"))

        result = await engine.sync_user(user.id)

        assert (result.added, result.failed) == (5, 1)
        assert sorted(drive.exported) == [f"f{i}" for i in range(6)]

    @pytest.mark.asyncio
    async def test_sync_with_unclaimed_jobs_is_not_completed(
        self, create_user, session_factory, drive, embedder, vector_index
    ):
        class NeverClaimingStore(SyncStateStore):
            async def claim_next_job(self, user_id, worker_id):
                return None

        user = await create_user()
        drive.add_file("f1", "One", "2024-01-01T00:00:00Z", "First.")
        drive.add_file("f2", "Two", "2024-01-01T00:00:00Z", "Second.")
        engine = DriveSyncEngine(
            session_factory, drive, embedder, vector_index, state_store=NeverClaimingStore(session_factory)
        )

        result = await engine.sync_user(user.id)

        assert result.error == "2 file jobs were left unfinished"
        state = await engine.state_store.get_state(user.id)
        assert state.status == SyncStatus.FAILED.value
        assert state.last_result is None


class TestAuthFailureDuringProcessing:
    async def _credential(self, session_factory, user_id):
        async with session_factory() as session:
            result = await session.execute(select(DriveCredential).where(DriveCredential.user_id == user_id))
            return result.scalar_one()

    @pytest.mark.asyncio
    async def test_grant_revoked_after_listing_flags_reconnect(self, create_user, engine, drive, session_factory):
        user = await create_user()
        for i in range(3):
            drive.add_file(f"f{i}", f"Doc {i}", "2024-01-01T00:00:00Z", f"Body {i}.")
        refreshes = []
        original_refresh = drive.refresh_if_needed

        def refresh_once(tokens):
            refreshes.append(tokens)
            return original_refresh(tokens) if len(refreshes) == 1 else None

        drive.refresh_if_needed = refresh_once

        result = await engine.sync_user(user.id)

        assert result.auth_failed
        assert (result.added, result.failed) == (0, 0)
        assert drive.exported == []
        credential = await self._credential(session_factory, user.id)
        assert credential.access_token is None
        assert credential.refresh_token == "refresh-token"
        state = await engine.state_store.get_state(user.id)
        assert state.status == SyncStatus.FAILED.value
        assert state.error == RECONNECT_MESSAGE
        jobs = await _jobs(session_factory, user.id)
        assert {job.status for job in jobs.values()} == {FileJobStatus.PENDING.value}

    @pytest.mark.asyncio
    async def test_unauthorized_export_stops_the_sync(self, create_user, engine, drive, session_factory):
        user = await create_user()
        drive.add_file("f0", "Doc 0", "2024-01-01T00:00:00Z", DriveAuthError("401 Invalid Credentials"))
        drive.add_file("f1", "Doc 1", "2024-01-01T00:00:00Z", DriveAuthError("401 Invalid Credentials"))

        result = await engine.sync_user(user.id)

        assert result.auth_failed
        assert result.failed == 0
        assert len(drive.exported) == 1
        assert (await self._credential(session_factory, user.id)).access_token is None
        assert (await engine.state_store.get_state(user.id)).error == RECONNECT_MESSAGE
