"""Script to reset sync states left stuck in discovering/processing.

Usage:
    python scripts/reset_sync_status.py            # every stuck user
    python scripts/reset_sync_status.py <user_id>  # one user, whatever its status
"""

import asyncio
import sys
from pathlib import Path

# Add the parent directory to the path so we can import from app
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.db.db import close_db, get_session_maker, init_db
from app.services.sync_state_store import SyncStateStore


async def reset_sync_status(user_id: str | None = None) -> list:
    """Force stuck syncs back to idle and requeue their in-flight file jobs."""
    await init_db()
    try:
        store = SyncStateStore(get_session_maker())

        if user_id:
            state = await store.get_state(user_id)
            if state is None:
                print(f"No sync state for user {user_id}")
                return []
            print(f"User {user_id}: status={state.status} worker={state.worker_id} heartbeat={state.heartbeat_at}")
            await store.reset(user_id)
            return [user_id]

        reset_ids = await store.reset_all()
        for reset_id in reset_ids:
            print(f"Reset user {reset_id}")
        return reset_ids
    finally:
        await close_db()


async def main():
    """Main entry point."""
    user_id = sys.argv[1] if len(sys.argv) > 1 else None
    print("Resetting sync status...")
    reset_ids = await reset_sync_status(user_id)
    print(f"Done! {len(reset_ids)} sync state(s) reset to idle.")


if __name__ == "__main__":
    asyncio.run(main())
