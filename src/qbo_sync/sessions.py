"""
Resumable sync sessions.

A session is the persisted bookkeeping for one paginated pull or push of
one entity for one tenant. Workers read `current_offset` on start and
advance it after every page, so a run cut short by a deadline or a crash
continues where it stopped instead of starting over.

At most one session per (tenant, entity, direction) is `in_progress`;
`resume_or_create` is the only way workers open one.
"""

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field

from qbo_sync.entities import EntityKind
from qbo_sync.errors import SessionConflictError
from qbo_sync.store import SyncStore

logger = structlog.get_logger(__name__)

SESSIONS_TABLE = "sync_sessions"

Direction = Literal["pull", "push"]
SessionStatus = Literal["in_progress", "completed", "failed"]
SyncMode = Literal["full", "delta", "historical"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncSession(BaseModel):
    """One resumable run of one (tenant, entity, direction) triple."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    entity: EntityKind
    direction: Direction
    status: SessionStatus = "in_progress"
    total_expected: int | None = None
    total_processed: int = 0
    current_offset: int = 0
    batch_size: int = 100
    sync_mode: SyncMode = "full"
    # Lower bound on QBO LastUpdatedTime for delta runs, fixed for the life of the session
    since: datetime | None = None
    # Row ids a push session works through, fixed when the session opens
    planned_ids: list[str] | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    last_chunk_at: datetime | None = None
    error_message: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "in_progress"

    @property
    def progress_percent(self) -> float | None:
        if not self.total_expected:
            return None
        return round(min(self.total_processed / self.total_expected, 1.0) * 100, 1)

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="python")


class SessionManager:
    """
    Create, advance and close sync sessions stored in `sync_sessions`.

    Example:
        sessions = SessionManager(store)
        session, resumed = await sessions.resume_or_create(
            tenant_id, EntityKind.CUSTOMER, "pull", batch_size=100
        )
        session = await sessions.advance(session.id, processed=100, next_offset=100)
        await sessions.complete(session.id, success=True)
    """

    def __init__(self, store: SyncStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock
        self._open_lock = asyncio.Lock()

    async def create(
        self,
        tenant_id: str,
        entity: EntityKind,
        direction: Direction,
        *,
        batch_size: int = 100,
        sync_mode: SyncMode = "full",
        since: datetime | None = None,
        total_expected: int | None = None,
        offset: int = 0,
    ) -> SyncSession:
        """Start a new session. Prefer `resume_or_create` from workers."""
        session = SyncSession(
            tenant_id=tenant_id,
            entity=entity,
            direction=direction,
            batch_size=batch_size,
            sync_mode=sync_mode,
            since=since,
            total_expected=total_expected,
            current_offset=offset,
            started_at=self._clock(),
        )
        await self.store.insert(SESSIONS_TABLE, session.to_row())
        logger.info(
            "Created sync session",
            session_id=session.id,
            tenant_id=tenant_id,
            entity=entity.value,
            direction=direction,
            sync_mode=sync_mode,
        )
        return session

    async def get(self, session_id: str) -> SyncSession | None:
        row = await self.store.get(SESSIONS_TABLE, session_id)
        return SyncSession.model_validate(row) if row else None

    async def find_active(
        self,
        tenant_id: str,
        entity: EntityKind,
        direction: Direction,
    ) -> SyncSession | None:
        """The in-progress session for this triple, if any (newest first)."""
        rows = await self.store.select(
            SESSIONS_TABLE,
            {
                "tenant_id": tenant_id,
                "entity": entity,
                "direction": direction,
                "status": "in_progress",
            },
            order_by=("started_at",),
            descending=True,
            limit=1,
        )
        return SyncSession.model_validate(rows[0]) if rows else None

    async def resume_or_create(
        self,
        tenant_id: str,
        entity: EntityKind,
        direction: Direction,
        *,
        batch_size: int = 100,
        sync_mode: SyncMode = "full",
        since: datetime | None = None,
        offset: int = 0,
    ) -> tuple[SyncSession, bool]:
        """
        Return the active session for the triple, or a new one.

        Returns (session, resumed). A resumed session keeps its own offset
        and batch size; `offset` only seeds a brand-new session.
        """
        async with self._open_lock:
            active = await self.find_active(tenant_id, entity, direction)
            if active is not None:
                logger.info(
                    "Resuming sync session",
                    session_id=active.id,
                    entity=entity.value,
                    direction=direction,
                    current_offset=active.current_offset,
                    total_processed=active.total_processed,
                )
                return active, True

            session = await self.create(
                tenant_id,
                entity,
                direction,
                batch_size=batch_size,
                sync_mode=sync_mode,
                since=since,
                offset=offset,
            )
            return session, False

    async def update(self, session_id: str, **changes: Any) -> SyncSession:
        """
        Apply a partial update.

        Raises:
            SessionConflictError: if the session is missing or the update
                would move `current_offset` or `total_processed` backwards
        """
        current = await self.get(session_id)
        if current is None:
            raise SessionConflictError(f"Unknown session {session_id}")

        for field_name in ("current_offset", "total_processed"):
            if field_name in changes and changes[field_name] < getattr(current, field_name):
                raise SessionConflictError(
                    f"{field_name} cannot decrease "
                    f"({getattr(current, field_name)} -> {changes[field_name]})"
                )

        row = await self.store.update_where(
            SESSIONS_TABLE,
            session_id,
            {
                "current_offset": current.current_offset,
                "total_processed": current.total_processed,
            },
            changes,
        )
        if row is None:
            raise SessionConflictError(f"Session {session_id} changed concurrently")
        return SyncSession.model_validate(row)

    async def plan(self, session_id: str, row_ids: list[str]) -> SyncSession:
        """
        Fix the rows a push session works through.

        Only the first plan sticks; a later caller gets the session with the
        plan already recorded.
        """
        row = await self.store.update_where(
            SESSIONS_TABLE,
            session_id,
            {"planned_ids": None, "status": "in_progress"},
            {"planned_ids": list(row_ids), "total_expected": len(row_ids)},
        )
        if row is None:
            current = await self.get(session_id)
            if current is None or current.planned_ids is None:
                raise SessionConflictError(f"Session {session_id} cannot be planned")
            return current
        return SyncSession.model_validate(row)

    async def advance(
        self,
        session_id: str,
        processed: int,
        next_offset: int,
        expected_offset: int | None = None,
    ) -> SyncSession:
        """
        Record one processed page.

        `expected_offset` is the offset the page was fetched at. The update
        is a compare-and-set on it, so when two invocations process the same
        page only the first one is counted.

        Raises:
            SessionConflictError: if the session is unknown or closed, or
                another invocation already recorded this page
        """
        current = await self.get(session_id)
        if current is None:
            raise SessionConflictError(f"Unknown session {session_id}")
        if expected_offset is None:
            expected_offset = current.current_offset
        if current.current_offset != expected_offset:
            raise SessionConflictError(
                f"Session {session_id} is at offset {current.current_offset}, "
                f"page was fetched at {expected_offset}"
            )
        if next_offset < expected_offset:
            raise SessionConflictError(
                f"current_offset cannot decrease ({expected_offset} -> {next_offset})"
            )

        row = await self.store.update_where(
            SESSIONS_TABLE,
            session_id,
            {"current_offset": expected_offset, "status": "in_progress"},
            {
                "current_offset": next_offset,
                "total_processed": current.total_processed + processed,
                "last_chunk_at": self._clock(),
            },
        )
        if row is None:
            raise SessionConflictError(f"Session {session_id} changed concurrently")

        session = SyncSession.model_validate(row)
        logger.debug(
            "Advanced sync session",
            session_id=session_id,
            current_offset=session.current_offset,
            total_processed=session.total_processed,
            progress=session.progress_percent,
        )
        return session

    async def complete(
        self,
        session_id: str,
        success: bool,
        error_message: str | None = None,
    ) -> SyncSession:
        """Close a session as `completed` or `failed`. Sessions are never deleted."""
        row = await self.store.update(
            SESSIONS_TABLE,
            session_id,
            {
                "status": "completed" if success else "failed",
                "completed_at": self._clock(),
                "error_message": error_message,
            },
        )
        if row is None:
            raise SessionConflictError(f"Unknown session {session_id}")

        session = SyncSession.model_validate(row)
        log = logger.info if success else logger.warning
        log(
            "Closed sync session",
            session_id=session_id,
            status=session.status,
            total_processed=session.total_processed,
            error=error_message,
        )
        return session

    async def find_stale(self, older_than: timedelta) -> list[SyncSession]:
        """In-progress sessions with no page recorded within `older_than`."""
        cutoff = self._clock() - older_than

        def is_stale(row: dict[str, Any]) -> bool:
            last = row.get("last_chunk_at") or row.get("started_at")
            return last is not None and last < cutoff

        rows = await self.store.select(
            SESSIONS_TABLE,
            {"status": "in_progress"},
            predicate=is_stale,
            order_by=("started_at",),
        )
        return [SyncSession.model_validate(row) for row in rows]

    async def list_for_tenant(self, tenant_id: str, limit: int = 20) -> list[SyncSession]:
        """Most recent sessions for a tenant, newest first."""
        rows = await self.store.select(
            SESSIONS_TABLE,
            {"tenant_id": tenant_id},
            order_by=("started_at",),
            descending=True,
            limit=limit,
        )
        return [SyncSession.model_validate(row) for row in rows]
