"""
Result Stores for MedEvidence

The pipeline persists through four operations only:
- create_result_placeholder(task_id, query, ...)
- update_result(task_id, **fields)
- get_result(task_id)
- find_recent_completed(since, limit, user_id)

plus create_result() for the failure-path fallback. Implemented in memory
(development, tests) and on PostgreSQL via SQLAlchemy.
"""

import logging
import os
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medevidence.db.models import SearchResult
from medevidence.db.postgres import get_async_session_maker, get_db_session
from medevidence.models import SynthesizedAnswer, TaskStatus

logger = logging.getLogger(__name__)

RESULT_STORE_BACKEND = os.environ.get("RESULT_STORE_BACKEND", "memory")

UPDATABLE_FIELDS = {"status", "answer", "error", "query"}


class ResultNotFoundError(Exception):
    """No stored result exists for the task identifier."""


@dataclass
class StoredResult:
    """Engine-independent view of a persisted task result."""

    task_id: str
    query: str
    status: TaskStatus = TaskStatus.RUNNING
    answer: SynthesizedAnswer | None = None
    error: str | None = None
    previous_query_id: str | None = None
    user_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ResultStore(Protocol):
    async def create_result_placeholder(
        self,
        task_id: str,
        query: str,
        previous_query_id: str | None = None,
        user_id: str | None = None,
    ) -> StoredResult: ...

    async def update_result(self, task_id: str, **fields: Any) -> StoredResult: ...

    async def create_result(self, record: StoredResult) -> StoredResult: ...

    async def get_result(self, task_id: str) -> StoredResult | None: ...

    async def find_recent_completed(
        self, since: datetime, limit: int = 1, user_id: str | None = None
    ) -> list[StoredResult]: ...


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update fields: {sorted(unknown)}")


# ============================================
# In-memory store
# ============================================


class InMemoryResultStore:
    """Process-local store. Records are copied in and out."""

    def __init__(self) -> None:
        self._records: dict[str, StoredResult] = {}
        self._lock = threading.Lock()

    async def create_result_placeholder(
        self,
        task_id: str,
        query: str,
        previous_query_id: str | None = None,
        user_id: str | None = None,
    ) -> StoredResult:
        record = StoredResult(
            task_id=task_id,
            query=query,
            previous_query_id=previous_query_id,
            user_id=user_id,
        )
        with self._lock:
            self._records[task_id] = record
        return replace(record)

    async def update_result(self, task_id: str, **fields: Any) -> StoredResult:
        _check_fields(fields)
        with self._lock:
            record = self._records.get(task_id)
            if record is None:
                raise ResultNotFoundError(task_id)
            updated = replace(record, **fields, updated_at=datetime.now(timezone.utc))
            self._records[task_id] = updated
        return replace(updated)

    async def create_result(self, record: StoredResult) -> StoredResult:
        with self._lock:
            self._records[record.task_id] = replace(record)
        return replace(record)

    async def get_result(self, task_id: str) -> StoredResult | None:
        with self._lock:
            record = self._records.get(task_id)
        return replace(record) if record else None

    async def find_recent_completed(
        self, since: datetime, limit: int = 1, user_id: str | None = None
    ) -> list[StoredResult]:
        with self._lock:
            matches = [
                r
                for r in self._records.values()
                if r.status is TaskStatus.COMPLETED
                and r.updated_at >= since
                and (user_id is None or r.user_id == user_id)
            ]
        matches.sort(key=lambda r: r.updated_at, reverse=True)
        return [replace(r) for r in matches[:limit]]

    def __len__(self) -> int:
        return len(self._records)


# ============================================
# SQL store
# ============================================


def _to_stored(row: SearchResult) -> StoredResult:
    return StoredResult(
        task_id=row.id,
        query=row.query,
        status=TaskStatus(row.status),
        answer=SynthesizedAnswer.from_dict(row.answer) if row.answer else None,
        error=row.error,
        previous_query_id=row.previous_query_id,
        user_id=row.user_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _apply(row: SearchResult, fields: dict[str, Any]) -> None:
    for name, value in fields.items():
        if name == "status":
            row.status = TaskStatus(value).value
        elif name == "answer":
            row.answer = value.to_dict() if value is not None else None
        else:
            setattr(row, name, value)


class SqlResultStore:
    """PostgreSQL-backed store over the search_results table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_maker = session_maker

    def _session(self):
        return get_db_session(self._session_maker or get_async_session_maker())

    async def create_result_placeholder(
        self,
        task_id: str,
        query: str,
        previous_query_id: str | None = None,
        user_id: str | None = None,
    ) -> StoredResult:
        async with self._session() as session:
            row = SearchResult(
                id=task_id,
                query=query,
                status=TaskStatus.RUNNING.value,
                previous_query_id=previous_query_id,
                user_id=user_id,
            )
            session.add(row)
            await session.flush()
            return _to_stored(row)

    async def update_result(self, task_id: str, **fields: Any) -> StoredResult:
        _check_fields(fields)
        async with self._session() as session:
            row = await session.get(SearchResult, task_id)
            if row is None:
                raise ResultNotFoundError(task_id)
            _apply(row, fields)
            await session.flush()
            await session.refresh(row)
            return _to_stored(row)

    async def create_result(self, record: StoredResult) -> StoredResult:
        async with self._session() as session:
            row = SearchResult(
                id=record.task_id,
                query=record.query,
                previous_query_id=record.previous_query_id,
                user_id=record.user_id,
            )
            _apply(row, {"status": record.status, "answer": record.answer, "error": record.error})
            row = await session.merge(row)
            await session.flush()
            return _to_stored(row)

    async def get_result(self, task_id: str) -> StoredResult | None:
        async with self._session() as session:
            row = await session.get(SearchResult, task_id)
            return _to_stored(row) if row else None

    async def find_recent_completed(
        self, since: datetime, limit: int = 1, user_id: str | None = None
    ) -> list[StoredResult]:
        """Most recent completed results, optionally only those owned by ``user_id``."""
        query = (
            select(SearchResult)
            .where(SearchResult.status == TaskStatus.COMPLETED.value)
            .where(SearchResult.updated_at >= since)
        )
        if user_id is not None:
            query = query.where(SearchResult.user_id == user_id)
        async with self._session() as session:
            result = await session.execute(
                query.order_by(SearchResult.updated_at.desc()).limit(limit)
            )
            return [_to_stored(row) for row in result.scalars().all()]


def create_result_store(backend: str = RESULT_STORE_BACKEND) -> InMemoryResultStore | SqlResultStore:
    """Build the configured result store."""
    if backend == "postgres":
        logger.info("Using PostgreSQL result store")
        return SqlResultStore()
    logger.info("Using in-memory result store")
    return InMemoryResultStore()
