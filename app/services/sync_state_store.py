"""Persisted sync state and file-job bookkeeping.

Every coordination decision (who owns a user's sync, who owns a file job) is
a conditional UPDATE whose rowcount tells the caller whether it won. Nothing
here holds an in-process lock, so workers may live in separate processes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from app.config.logger import app_logger
from app.config.settings import settings
from app.models.file_job import FileJob, FileJobAction, FileJobStatus
from app.models.sync_state import (
    ACTIVE_SYNC_STATUSES,
    RESTARTABLE_SYNC_STATUSES,
    SyncState,
    SyncStatus,
)
from app.utils.timeutils import as_utc, modified_after, utcnow

CANCELLED_BY_USER = "Cancelled by user"
MAX_RETRIES_EXCEEDED = "Exceeded maximum retries after worker failure"
CLAIM_ATTEMPTS = 5

JOB_STATUS_ORDER = {
    FileJobStatus.PROCESSING.value: 1,
    FileJobStatus.PENDING.value: 2,
    FileJobStatus.FAILED.value: 3,
    FileJobStatus.COMPLETED.value: 4,
    FileJobStatus.SKIPPED.value: 5,
}


def as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


@dataclass
class ClaimResult:
    worker_id: Optional[str]
    reclaimed: bool = False
    reason: Optional[str] = None

    @property
    def claimed(self) -> bool:
        return self.worker_id is not None


@dataclass
class PlannedJob:
    """A file the discovery phase decided to (re)index."""

    external_file_id: str
    file_name: str
    mime_type: str
    modified_time: str
    action: str = FileJobAction.ADD.value
    document_id: Optional[UUID] = None


@dataclass
class SyncStatusSnapshot:
    user_id: str
    status: str
    worker_alive: bool
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    total_discovered: int = 0
    processed: int = 0
    failed: int = 0
    last_result: Optional[dict] = None
    error: Optional[str] = None

    @property
    def in_progress(self) -> bool:
        return self.status in ACTIVE_SYNC_STATUSES


@dataclass
class JobStats:
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    by_action: Dict[str, int] = field(default_factory=dict)


class SyncStateStore:
    """Read/modify the sync_states and file_jobs tables for the sync engine."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        heartbeat_timeout_seconds: int | None = None,
        start_timeout_seconds: int | None = None,
        max_retries: int | None = None,
    ):
        self._session_factory = session_factory
        self.heartbeat_timeout = timedelta(
            seconds=heartbeat_timeout_seconds or settings.SYNC_HEARTBEAT_TIMEOUT_SECONDS
        )
        self.start_timeout = timedelta(
            seconds=start_timeout_seconds or settings.SYNC_START_TIMEOUT_SECONDS
        )
        self.max_retries = settings.SYNC_MAX_JOB_RETRIES if max_retries is None else max_retries

    async def get_state(self, user_id: UUID | str) -> Optional[SyncState]:
        async with self._session_factory() as session:
            return await session.get(SyncState, as_uuid(user_id))

    async def ensure_state(self, user_id: UUID | str) -> SyncState:
        """Return the user's state row, creating an idle one if missing."""
        user_id = as_uuid(user_id)
        async with self._session_factory() as session:
            state = await session.get(SyncState, user_id)
            if state is not None:
                return state
            state = SyncState(user_id=user_id, status=SyncStatus.IDLE.value)
            session.add(state)
            try:
                await session.commit()
            except IntegrityError:
                # Another worker inserted it first
                await session.rollback()
                state = await session.get(SyncState, user_id, populate_existing=True)
            return state

    def is_worker_stale(self, state: SyncState, now: Optional[datetime] = None) -> bool:
        """Whether the worker owning an active sync should be presumed dead.

        Uses the heartbeat when one was written, otherwise falls back to the
        coarser started_at window.
        """
        now = now or utcnow()
        heartbeat_at = as_utc(state.heartbeat_at)
        if heartbeat_at is not None:
            return now - heartbeat_at >= self.heartbeat_timeout
        started_at = as_utc(state.started_at)
        if started_at is not None:
            return now - started_at >= self.start_timeout
        return True

    async def claim_sync(self, user_id: UUID | str) -> ClaimResult:
        """Take ownership of a user's sync, or refuse if a live worker owns it.

        Idle/completed/failed states are claimed with a fresh worker id and
        zeroed counters. Active states with a stale heartbeat are taken over
        and their orphaned jobs reclaimed before the caller proceeds.
        """
        user_id = as_uuid(user_id)
        await self.ensure_state(user_id)
        now = utcnow()
        worker_id = uuid4().hex

        async with self._session_factory() as session:
            state = await session.get(SyncState, user_id, populate_existing=True)
            observed_status = state.status
            observed_worker = state.worker_id

            if observed_status in RESTARTABLE_SYNC_STATUSES:
                result = await session.execute(
                    update(SyncState)
                    .where(SyncState.user_id == user_id, SyncState.status == observed_status)
                    .values(
                        status=SyncStatus.DISCOVERING.value,
                        worker_id=worker_id,
                        heartbeat_at=now,
                        started_at=now,
                        completed_at=None,
                        total_discovered=0,
                        processed=0,
                        failed=0,
                        error=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if result.rowcount != 1:
                    app_logger.info(f"Sync claim for user {user_id} lost a race to another worker")
                    return ClaimResult(worker_id=None, reason="Sync already in progress")
                app_logger.info(f"Claimed sync for user {user_id} (worker {worker_id})")
                return ClaimResult(worker_id=worker_id)

            if not self.is_worker_stale(state, now):
                app_logger.info(
                    f"Sync already in progress for user {user_id} "
                    f"(worker {observed_worker}, heartbeat {state.heartbeat_at})"
                )
                return ClaimResult(worker_id=None, reason="Sync already in progress")

            worker_condition = (
                SyncState.worker_id == observed_worker
                if observed_worker is not None
                else SyncState.worker_id.is_(None)
            )
            result = await session.execute(
                update(SyncState)
                .where(
                    SyncState.user_id == user_id,
                    SyncState.status == observed_status,
                    worker_condition,
                )
                .values(
                    status=SyncStatus.DISCOVERING.value,
                    worker_id=worker_id,
                    heartbeat_at=now,
                    error=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                return ClaimResult(worker_id=None, reason="Sync already in progress")

        app_logger.warning(
            f"Recovered stale sync for user {user_id} "
            f"(dead worker {observed_worker}, last heartbeat {state.heartbeat_at})"
        )
        await self.reclaim_stale_jobs(user_id, exclude_worker=worker_id)
        return ClaimResult(worker_id=worker_id, reclaimed=True)

    async def heartbeat(self, user_id: UUID | str, worker_id: str) -> bool:
        """Refresh the heartbeat; False means this worker no longer owns the sync."""
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncState)
                .where(
                    SyncState.user_id == as_uuid(user_id),
                    SyncState.worker_id == worker_id,
                    SyncState.status.in_(ACTIVE_SYNC_STATUSES),
                )
                .values(heartbeat_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def is_active_worker(self, user_id: UUID | str, worker_id: str) -> bool:
        """Cooperative cancellation check made before claiming each job."""
        async with self._session_factory() as session:
            state = await session.get(SyncState, as_uuid(user_id), populate_existing=True)
            return (
                state is not None
                and state.worker_id == worker_id
                and state.status in ACTIVE_SYNC_STATUSES
            )

    async def update_progress(
        self,
        user_id: UUID | str,
        worker_id: str,
        processed_delta: int = 0,
        failed_delta: int = 0,
    ) -> bool:
        """Bump progress counters and heartbeat in one conditional write."""
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncState)
                .where(
                    SyncState.user_id == as_uuid(user_id),
                    SyncState.worker_id == worker_id,
                    SyncState.status.in_(ACTIVE_SYNC_STATUSES),
                )
                .values(
                    processed=SyncState.processed + processed_delta,
                    failed=SyncState.failed + failed_delta,
                    heartbeat_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_completed(self, user_id: UUID | str, worker_id: str, result: dict) -> bool:
        now = utcnow()
        async with self._session_factory() as session:
            outcome = await session.execute(
                update(SyncState)
                .where(
                    SyncState.user_id == as_uuid(user_id),
                    SyncState.worker_id == worker_id,
                    SyncState.status.in_(ACTIVE_SYNC_STATUSES),
                )
                .values(
                    status=SyncStatus.COMPLETED.value,
                    completed_at=now,
                    last_result=result,
                    worker_id=None,
                    error=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return outcome.rowcount == 1

    async def mark_failed(
        self,
        user_id: UUID | str,
        error: str,
        worker_id: Optional[str] = None,
    ) -> bool:
        """Mark the sync failed; when worker_id is given only its active owner may do so."""
        now = utcnow()
        conditions = [SyncState.user_id == as_uuid(user_id)]
        if worker_id is not None:
            # A cancelled sync keeps its "Cancelled by user" reason
            conditions.append(SyncState.worker_id == worker_id)
            conditions.append(SyncState.status.in_(ACTIVE_SYNC_STATUSES))
        async with self._session_factory() as session:
            outcome = await session.execute(
                update(SyncState)
                .where(*conditions)
                .values(
                    status=SyncStatus.FAILED.value,
                    completed_at=now,
                    error=error,
                    worker_id=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return outcome.rowcount == 1

    async def cancel(self, user_id: UUID | str) -> bool:
        """Externally stop an in-flight sync; the worker notices before its next job."""
        now = utcnow()
        async with self._session_factory() as session:
            outcome = await session.execute(
                update(SyncState)
                .where(
                    SyncState.user_id == as_uuid(user_id),
                    SyncState.status.in_(ACTIVE_SYNC_STATUSES),
                )
                .values(
                    status=SyncStatus.FAILED.value,
                    completed_at=now,
                    error=CANCELLED_BY_USER,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if outcome.rowcount:
            app_logger.info(f"Sync cancelled by user {user_id}")
        return outcome.rowcount == 1

    async def status_snapshot(self, user_id: UUID | str) -> SyncStatusSnapshot:
        state = await self.get_state(user_id)
        if state is None:
            return SyncStatusSnapshot(user_id=str(user_id), status=SyncStatus.IDLE.value, worker_alive=False)

        active = state.status in ACTIVE_SYNC_STATUSES
        return SyncStatusSnapshot(
            user_id=str(state.user_id),
            status=state.status,
            worker_alive=active and not self.is_worker_stale(state),
            started_at=as_utc(state.started_at),
            completed_at=as_utc(state.completed_at),
            heartbeat_at=as_utc(state.heartbeat_at),
            total_discovered=state.total_discovered,
            processed=state.processed,
            failed=state.failed,
            last_result=state.last_result,
            error=state.error,
        )

    async def reset(self, user_id: UUID | str) -> None:
        """Force a user's sync back to idle and requeue its in-flight jobs."""
        user_id = as_uuid(user_id)
        now = utcnow()
        async with self._session_factory() as session:
            await session.execute(
                update(SyncState)
                .where(SyncState.user_id == user_id)
                .values(status=SyncStatus.IDLE.value, worker_id=None, error=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                update(FileJob)
                .where(FileJob.user_id == user_id, FileJob.status == FileJobStatus.PROCESSING.value)
                .values(status=FileJobStatus.PENDING.value, claimed_by=None, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def reset_all(self) -> List[UUID]:
        """Reset every state left in an active status; returns the affected users."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncState.user_id).where(SyncState.status.in_(ACTIVE_SYNC_STATUSES))
            )
            user_ids = list(result.scalars().all())
        for user_id in user_ids:
            await self.reset(user_id)
        return user_ids

    async def reclaim_stale_jobs(self, user_id: UUID | str, exclude_worker: Optional[str] = None) -> int:
        """Requeue jobs left in processing by a dead worker.

        Jobs below the retry limit go back to pending with retry_count + 1;
        jobs that already hit the limit are failed permanently.
        """
        user_id = as_uuid(user_id)
        now = utcnow()
        orphaned = [
            FileJob.user_id == user_id,
            FileJob.status == FileJobStatus.PROCESSING.value,
        ]
        if exclude_worker is not None:
            orphaned.append(
                (FileJob.claimed_by != exclude_worker) | FileJob.claimed_by.is_(None)
            )

        async with self._session_factory() as session:
            requeued = await session.execute(
                update(FileJob)
                .where(*orphaned, FileJob.retry_count < self.max_retries)
                .values(
                    status=FileJobStatus.PENDING.value,
                    claimed_by=None,
                    claimed_at=None,
                    retry_count=FileJob.retry_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            exhausted = await session.execute(
                update(FileJob)
                .where(*orphaned, FileJob.retry_count >= self.max_retries)
                .values(
                    status=FileJobStatus.FAILED.value,
                    completed_at=now,
                    error=MAX_RETRIES_EXCEEDED,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if requeued.rowcount or exhausted.rowcount:
            app_logger.info(
                f"Reclaimed orphaned jobs for user {user_id}: "
                f"{requeued.rowcount} requeued, {exhausted.rowcount} failed permanently"
            )
        return requeued.rowcount

    async def populate_jobs(
        self,
        user_id: UUID | str,
        worker_id: str,
        planned: Iterable[PlannedJob],
        reset: bool = True,
    ) -> bool:
        """Upsert one pending job per planned file and enter the processing phase.

        With reset (a fresh sync) jobs outside the plan are dropped and retry
        counts start over. Without it (recovering a dead worker's sync) the
        earlier attempt's finished and failed jobs are kept as they are.

        Returns False, leaving the jobs untouched, when the worker no longer
        owns an active sync (cancelled or taken over during discovery).
        """
        user_id = as_uuid(user_id)
        planned = list(planned)
        planned_ids = {job.external_file_id for job in planned}

        async with self._session_factory() as session:
            result = await session.execute(select(FileJob).where(FileJob.user_id == user_id))
            existing = {job.external_file_id: job for job in result.scalars().all()}

            if reset:
                stale_ids = [fid for fid in existing if fid not in planned_ids]
                if stale_ids:
                    await session.execute(
                        delete(FileJob)
                        .where(FileJob.user_id == user_id, FileJob.external_file_id.in_(stale_ids))
                        .execution_options(synchronize_session=False)
                    )
                    for fid in stale_ids:
                        existing.pop(fid)

            for plan in planned:
                job = existing.get(plan.external_file_id)
                if job is None:
                    session.add(
                        FileJob(
                            user_id=user_id,
                            external_file_id=plan.external_file_id,
                            file_name=plan.file_name,
                            mime_type=plan.mime_type,
                            modified_time=plan.modified_time,
                            action=plan.action,
                            document_id=plan.document_id,
                            status=FileJobStatus.PENDING.value,
                        )
                    )
                    continue

                requeue = reset or job.status == FileJobStatus.PENDING.value or (
                    job.status in (FileJobStatus.COMPLETED.value, FileJobStatus.SKIPPED.value)
                    and modified_after(plan.modified_time, job.modified_time)
                )
                job.file_name = plan.file_name
                job.mime_type = plan.mime_type
                job.modified_time = plan.modified_time
                job.action = plan.action
                job.document_id = plan.document_id
                if requeue:
                    job.status = FileJobStatus.PENDING.value
                    job.claimed_by = None
                    job.claimed_at = None
                    job.completed_at = None
                    job.error = None
                    if reset:
                        job.retry_count = 0
                session.add(job)

            await session.flush()
            total = await session.execute(
                select(func.count()).select_from(FileJob).where(FileJob.user_id == user_id)
            )
            total_discovered = total.scalar_one()

            entered = await session.execute(
                update(SyncState)
                .where(
                    SyncState.user_id == user_id,
                    SyncState.worker_id == worker_id,
                    SyncState.status.in_(ACTIVE_SYNC_STATUSES),
                )
                .values(
                    status=SyncStatus.PROCESSING.value,
                    total_discovered=total_discovered,
                    heartbeat_at=utcnow(),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if entered.rowcount != 1:
                await session.rollback()
                app_logger.info(f"Worker {worker_id} lost the sync for user {user_id} before processing")
                return False
            await session.commit()

        return True

    async def claim_next_job(self, user_id: UUID | str, worker_id: str) -> Optional[FileJob]:
        """Atomically move the oldest pending job to processing for this worker."""
        user_id = as_uuid(user_id)
        for _ in range(CLAIM_ATTEMPTS):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(FileJob.id)
                    .where(FileJob.user_id == user_id, FileJob.status == FileJobStatus.PENDING.value)
                    .order_by(FileJob.created_at, FileJob.file_name)
                    .limit(1)
                )
                job_id = result.scalar_one_or_none()
                if job_id is None:
                    return None

                claimed = await session.execute(
                    update(FileJob)
                    .where(FileJob.id == job_id, FileJob.status == FileJobStatus.PENDING.value)
                    .values(
                        status=FileJobStatus.PROCESSING.value,
                        claimed_by=worker_id,
                        claimed_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if claimed.rowcount == 1:
                    return await session.get(FileJob, job_id, populate_existing=True)
            # Another worker took it between select and update; try the next one
        return None

    async def _finish_job(self, job_id: UUID, worker_id: str, status: str, error: Optional[str]) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(FileJob)
                .where(
                    FileJob.id == job_id,
                    FileJob.claimed_by == worker_id,
                    FileJob.status == FileJobStatus.PROCESSING.value,
                )
                .values(status=status, completed_at=utcnow(), error=error)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def release_job(self, job_id: UUID, worker_id: str) -> bool:
        """Hand a claimed job back to pending without spending a retry."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(FileJob)
                .where(
                    FileJob.id == job_id,
                    FileJob.claimed_by == worker_id,
                    FileJob.status == FileJobStatus.PROCESSING.value,
                )
                .values(status=FileJobStatus.PENDING.value, claimed_by=None, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def complete_job(self, job_id: UUID, worker_id: str) -> bool:
        return await self._finish_job(job_id, worker_id, FileJobStatus.COMPLETED.value, None)

    async def fail_job(self, job_id: UUID, worker_id: str, error: str) -> bool:
        return await self._finish_job(job_id, worker_id, FileJobStatus.FAILED.value, error[:2000])

    async def skip_job(self, job_id: UUID, worker_id: str, reason: str) -> bool:
        return await self._finish_job(job_id, worker_id, FileJobStatus.SKIPPED.value, reason)

    async def open_job_count(self, user_id: UUID | str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(FileJob)
                .where(
                    FileJob.user_id == as_uuid(user_id),
                    FileJob.status.in_((FileJobStatus.PENDING.value, FileJobStatus.PROCESSING.value)),
                )
            )
            return result.scalar_one()

    async def job_stats(self, user_id: UUID | str) -> JobStats:
        async with self._session_factory() as session:
            result = await session.execute(
                select(FileJob.status, FileJob.action, func.count())
                .where(FileJob.user_id == as_uuid(user_id))
                .group_by(FileJob.status, FileJob.action)
            )
            rows = result.all()

        stats = JobStats()
        for status, action, count in rows:
            stats.total += count
            setattr(stats, status, getattr(stats, status, 0) + count)
            key = f"{action}:{status}"
            stats.by_action[key] = stats.by_action.get(key, 0) + count
        return stats

    async def list_jobs(self, user_id: UUID | str) -> List[FileJob]:
        """Jobs ordered processing, pending, failed, completed, skipped; newest first within a status."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(FileJob)
                .where(FileJob.user_id == as_uuid(user_id))
                .order_by(FileJob.created_at.desc())
            )
            jobs = list(result.scalars().all())
        return sorted(jobs, key=lambda job: JOB_STATUS_ORDER.get(job.status, 99))
