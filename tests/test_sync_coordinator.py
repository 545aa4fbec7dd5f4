"""Tests for the all-users sync run."""

import pytest

from app.services.sync_coordinator import SyncCoordinator, UserNotConnectedError
from app.services.sync_engine import SyncResult


class ScriptedEngine:
    """Returns (or raises) a preset outcome per user id."""

    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    async def sync_user(self, user_id):
        self.calls.append(user_id)
        outcome = self.outcomes[user_id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestSyncAll:
    @pytest.mark.asyncio
    async def test_aggregates_and_isolates_failures(self, create_user, session_factory):
        ok = await create_user()
        busy = await create_user()
        broken = await create_user()
        reauth = await create_user()
        engine = ScriptedEngine({
            ok.id: SyncResult(added=2, updated=1, deleted=1),
            busy.id: SyncResult(already_syncing=True),
            broken.id: RuntimeError("listing exploded"),
            reauth.id: SyncResult(auth_failed=True),
        })

        summary = await SyncCoordinator(session_factory, engine).sync_all()

        assert (summary.total_added, summary.total_updated, summary.total_deleted) == (2, 1, 1)
        assert summary.users_processed == 2
        assert summary.already_syncing == 1
        assert summary.auth_failures == 1
        assert len(summary.errors) == 1 and "listing exploded" in summary.errors[0]
        assert set(engine.calls) == {ok.id, busy.id, broken.id, reauth.id}

    @pytest.mark.asyncio
    async def test_only_connected_active_users_are_synced(self, create_user, session_factory):
        connected = await create_user()
        await create_user(access_token=None)
        await create_user(connected=False)
        await create_user(is_active=False)
        engine = ScriptedEngine({connected.id: SyncResult()})

        summary = await SyncCoordinator(session_factory, engine).sync_all()

        assert engine.calls == [connected.id]
        assert summary.users_processed == 1


class TestSyncUserById:
    @pytest.mark.asyncio
    async def test_connected_user_is_synced(self, create_user, session_factory):
        user = await create_user()
        engine = ScriptedEngine({user.id: SyncResult(added=1)})

        result = await SyncCoordinator(session_factory, engine).sync_user_by_id(str(user.id))

        assert result.added == 1

    @pytest.mark.asyncio
    async def test_reconnect_needed_is_not_connected(self, create_user, session_factory):
        user = await create_user(access_token=None)
        coordinator = SyncCoordinator(session_factory, ScriptedEngine({}))

        with pytest.raises(UserNotConnectedError):
            await coordinator.sync_user_by_id(user.id)

    @pytest.mark.asyncio
    async def test_unknown_user(self, session_factory):
        from uuid import uuid4

        coordinator = SyncCoordinator(session_factory, ScriptedEngine({}))

        with pytest.raises(UserNotConnectedError, match="not found"):
            await coordinator.sync_user_by_id(uuid4())
