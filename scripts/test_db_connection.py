"""
Check the PostgreSQL result store end to end.

Usage: DATABASE_URL=... python scripts/test_db_connection.py [--reset]
"""

import asyncio
import sys

from medevidence.db.models import Base
from medevidence.db.postgres import check_database_health, close_db, get_database_url, get_engine
from medevidence.db.store import SqlResultStore
from medevidence.models import TaskStatus


async def main(reset: bool) -> int:
    print(f"Testing connection on: {get_database_url()}")
    health = await check_database_health()
    print(f"Health: {health}")
    if health["status"] != "healthy":
        return 1

    try:
        async with get_engine().begin() as conn:
            if reset:
                print("Dropping tables...")
                await conn.run_sync(Base.metadata.drop_all)
            print("Creating tables...")
            await conn.run_sync(Base.metadata.create_all)

        store = SqlResultStore()
        await store.create_result_placeholder("connection-check", "connection check")
        record = await store.update_result("connection-check", status=TaskStatus.FAILED, error="connection check")
        print(f"Round trip OK: {record.task_id} -> {record.status.value}")
        return 0
    except Exception as e:
        print(f"Store check failed: {e}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        await close_db()


if __name__ == "__main__":
    sys.exit(asyncio.run(main("--reset" in sys.argv)))
