"""Drive sync endpoints: on-demand user sync, status, cancel, and scheduled runs."""

import time
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.api.sync.schemas import (
    AccountStatusResponse,
    CancelSyncResponse,
    CoordinatorRunResponse,
    FileJobItem,
    FileJobListResponse,
    FileJobSummary,
    SyncResultResponse,
    SyncStatusResponse,
)
from app.config.logger import app_logger
from app.db.db import get_session, get_session_maker
from app.models.chunk import Chunk
from app.models.document import Document
from app.models.drive_credential import DriveCredential
from app.services.sync_coordinator import (
    SyncCoordinator,
    UserNotConnectedError,
    build_default_coordinator,
)
from app.services.sync_engine import SyncResult
from app.services.sync_state_store import SyncStateStore
from app.utils.auth import require_auth, require_cron_secret
from app.utils.responses import SuccessResponse, success_response

router = APIRouter(prefix="/v1", tags=["sync"])


def _session_maker_or_503():
    try:
        return get_session_maker()
    except RuntimeError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable. The server is running in limited mode.",
        ) from exc


def get_sync_coordinator() -> SyncCoordinator:
    return build_default_coordinator(_session_maker_or_503())


def get_state_store() -> SyncStateStore:
    return SyncStateStore(_session_maker_or_503())


def _result_response(result: SyncResult, started: float) -> SyncResultResponse:
    return SyncResultResponse(
        added=result.added,
        updated=result.updated,
        deleted=result.deleted,
        failed=result.failed,
        auth_failed=result.auth_failed,
        cancelled=result.cancelled,
        error=result.error,
        duration_seconds=round(time.time() - started, 2),
    )


async def _run_user_sync(coordinator: SyncCoordinator, user_id: str) -> SyncResultResponse:
    try:
        uid = UUID(user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown user {user_id}")

    started = time.time()
    try:
        result = await coordinator.sync_user_by_id(uid)
    except UserNotConnectedError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except Exception as exc:
        app_logger.error(f"Sync failed for user {user_id}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Sync failed: {str(exc)}",
        )

    if result.already_syncing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Sync already in progress")
    return _result_response(result, started)


@router.post(
    "/me/sync",
    response_model=SuccessResponse[SyncResultResponse],
    summary="Sync the signed-in user's Google Drive",
)
async def sync_my_drive(
    user_id: str = Depends(require_auth),
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
) -> SuccessResponse[SyncResultResponse]:
    app_logger.info(f"Manual sync triggered for user {user_id}")
    data = await _run_user_sync(coordinator, user_id)
    message = "Google Drive needs to be reconnected" if data.auth_failed else "Sync completed"
    return success_response(data=data, message=message)


@router.get("/me/sync/status", response_model=SuccessResponse[SyncStatusResponse])
async def my_sync_status(
    user_id: str = Depends(require_auth),
    store: SyncStateStore = Depends(get_state_store),
) -> SuccessResponse[SyncStatusResponse]:
    snapshot = await store.status_snapshot(user_id)
    data = SyncStatusResponse(
        status=snapshot.status,
        in_progress=snapshot.in_progress,
        worker_alive=snapshot.worker_alive,
        started_at=snapshot.started_at,
        completed_at=snapshot.completed_at,
        heartbeat_at=snapshot.heartbeat_at,
        total_discovered=snapshot.total_discovered,
        processed=snapshot.processed,
        failed=snapshot.failed,
        last_result=snapshot.last_result,
        error=snapshot.error,
    )
    return success_response(data=data, message="Sync status retrieved")


@router.post("/me/sync/cancel", response_model=SuccessResponse[CancelSyncResponse])
async def cancel_my_sync(
    user_id: str = Depends(require_auth),
    store: SyncStateStore = Depends(get_state_store),
) -> SuccessResponse[CancelSyncResponse]:
    """Stop an in-flight sync. The worker finishes its current file, then stops."""
    cancelled = await store.cancel(user_id)
    snapshot = await store.status_snapshot(user_id)
    message = "Sync cancelled" if cancelled else "No sync in progress"
    return success_response(
        data=CancelSyncResponse(cancelled=cancelled, status=snapshot.status),
        message=message,
    )


@router.get("/me/sync/files", response_model=SuccessResponse[FileJobListResponse])
async def my_sync_files(
    user_id: str = Depends(require_auth),
    store: SyncStateStore = Depends(get_state_store),
) -> SuccessResponse[FileJobListResponse]:
    jobs = await store.list_jobs(user_id)
    stats = await store.job_stats(user_id)
    files = [
        FileJobItem(
            file_id=job.external_file_id,
            file_name=job.file_name,
            mime_type=job.mime_type,
            action=job.action,
            status=job.status,
            retry_count=job.retry_count,
            error=job.error,
            claimed_at=job.claimed_at,
            completed_at=job.completed_at,
        )
        for job in jobs
    ]
    summary = FileJobSummary(
        total=stats.total,
        pending=stats.pending,
        processing=stats.processing,
        completed=stats.completed,
        failed=stats.failed,
        skipped=stats.skipped,
    )
    return success_response(
        data=FileJobListResponse(files=files, summary=summary),
        message=f"Retrieved {len(files)} file jobs",
    )


@router.get("/me/status", response_model=SuccessResponse[AccountStatusResponse])
async def my_account_status(
    user_id: str = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
) -> SuccessResponse[AccountStatusResponse]:
    """Drive connection flag plus how much of the user's Drive is indexed."""
    try:
        uid = UUID(user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown user")

    result = await session.execute(select(DriveCredential).where(DriveCredential.user_id == uid))
    credential = result.scalar_one_or_none()
    document_count = (
        await session.execute(select(func.count()).select_from(Document).where(Document.user_id == uid))
    ).scalar_one()
    chunk_count = (
        await session.execute(select(func.count()).select_from(Chunk).where(Chunk.user_id == uid))
    ).scalar_one()

    data = AccountStatusResponse(
        drive_connected=credential is not None and not credential.needs_reconnect,
        needs_reconnect=credential is not None and credential.needs_reconnect,
        google_email=credential.google_email if credential else None,
        document_count=document_count,
        chunk_count=chunk_count,
    )
    return success_response(data=data, message="Account status retrieved")


@router.post(
    "/sync",
    response_model=SuccessResponse[CoordinatorRunResponse],
    summary="Sync every connected user (scheduler)",
    dependencies=[Depends(require_cron_secret)],
)
async def sync_all_users(
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
) -> SuccessResponse[CoordinatorRunResponse]:
    started = time.time()
    try:
        summary = await coordinator.sync_all()
    except Exception as exc:
        app_logger.error(f"Scheduled sync run failed: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Sync run failed: {str(exc)}",
        )

    data = CoordinatorRunResponse(
        **summary.to_dict(),
        duration_seconds=round(time.time() - started, 2),
    )
    return success_response(data=data, message="Sync run completed")


@router.post(
    "/sync/{user_id}",
    response_model=SuccessResponse[SyncResultResponse],
    summary="Sync one user's Drive (scheduler)",
    dependencies=[Depends(require_cron_secret)],
)
async def sync_one_user(
    user_id: str,
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
) -> SuccessResponse[SyncResultResponse]:
    data = await _run_user_sync(coordinator, user_id)
    return success_response(data=data, message="Sync completed")
