"""Script to force a full re-index on the next sync.

Stamps documents with the placeholder modified time, which every remote file
compares newer than, so the next sync re-exports and re-embeds them.

Usage:
    python scripts/force_reindex.py [user_id] [--yes]
"""

import asyncio
import sys
from pathlib import Path

# Add the parent directory to the path so we can import from app
sys.path.insert(0, str(Path(__file__).parent.parent))

from uuid import UUID

from sqlalchemy import func, update
from sqlmodel import select

from app.db.db import close_db, db_session, init_db
from app.models.chunk import Chunk
from app.models.document import Document
from app.services.sync_engine import PLACEHOLDER_MODIFIED_TIME


async def force_reindex(user_id: str | None = None, confirm: bool = True) -> int:
    """Reset source_modified_time for one user's documents, or everyone's."""
    await init_db()
    try:
        async with db_session() as session:
            doc_query = select(func.count()).select_from(Document)
            chunk_query = select(func.count()).select_from(Chunk)
            stamp = update(Document).values(source_modified_time=PLACEHOLDER_MODIFIED_TIME)
            if user_id:
                uid = UUID(user_id)
                doc_query = doc_query.where(Document.user_id == uid)
                chunk_query = chunk_query.where(Chunk.user_id == uid)
                stamp = stamp.where(Document.user_id == uid)

            doc_count = (await session.execute(doc_query)).scalar_one()
            chunk_count = (await session.execute(chunk_query)).scalar_one()
            print("Current state:")
            print(f"  {doc_count} documents")
            print(f"  {chunk_count} chunks")

            if confirm:
                answer = input("Reset timestamps so the next sync re-indexes everything? (yes/no): ")
                if answer.strip().lower() != "yes":
                    print("Aborted.")
                    return 0

            try:
                result = await session.execute(stamp.execution_options(synchronize_session=False))
                await session.commit()
            except Exception as e:
                await session.rollback()
                print(f"Error resetting timestamps: {e}")
                raise

            print(f"Reset {result.rowcount} documents to {PLACEHOLDER_MODIFIED_TIME}")
            return result.rowcount
    finally:
        await close_db()


async def main():
    """Main entry point."""
    args = [arg for arg in sys.argv[1:] if arg != "--yes"]
    confirm = "--yes" not in sys.argv[1:]
    await force_reindex(args[0] if args else None, confirm=confirm)
    print("Done! Trigger a sync to re-index.")


if __name__ == "__main__":
    asyncio.run(main())
