"""
Sync orchestrator.

Runs a requested set of entities for one tenant in dependency order:

    1. Items, customers     (no dependencies, run concurrently)
    2. Invoices             (customers + items)
    3. Payments             (invoices + customers)

Each entity is wrapped in its own retry loop with `2 ** attempt` second
backoff, layered above the per-request retries of the API client. When
every entity of a group fails, later groups are withheld. Every run writes
one `sync_history` row.
"""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

import structlog
from pydantic import BaseModel, Field, field_validator

from qbo_sync.client import QBOClient
from qbo_sync.conflicts import ConflictStrategy
from qbo_sync.credentials import CONNECTIONS_TABLE
from qbo_sync.entities import EntityKind, parse_entities, priority_groups
from qbo_sync.errors import (
    ConfigurationError,
    MissingCredentialError,
    QBOAPIError,
)
from qbo_sync.retry import is_retryable_error
from qbo_sync.sessions import Direction, SessionManager, SyncMode, utcnow
from qbo_sync.store import SyncStore
from qbo_sync.workers import Deadline, WorkerResult, create_worker

if TYPE_CHECKING:
    from qbo_sync.sync_queue import SyncQueue

logger = structlog.get_logger(__name__)

HISTORY_TABLE = "sync_history"

RunDirection = Literal["pull", "push", "both"]
EntityStatus = Literal["success", "partial", "failed"]
RunStatus = Literal["in_progress", "completed", "partial_success", "failed"]


class SyncRequest(BaseModel):
    """Orchestrator invocation."""

    tenant_id: str
    direction: RunDirection = "both"
    entities: list[str] | None = None
    conflict_resolution: ConflictStrategy = ConflictStrategy.NEWEST_WINS
    retry_attempts: int = Field(3, ge=1, le=10)
    sync_mode: SyncMode = "full"
    # Pull just these QBO ids (webhook jobs); requires a single entity
    external_ids: list[str] | None = None

    @field_validator("tenant_id")
    @classmethod
    def require_tenant(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("tenant_id is required")
        return v


class SyncRunResult(BaseModel):
    """Per-entity outcome of one orchestrated run."""

    entity: EntityKind
    direction: RunDirection
    pulled: int = 0
    pushed: int = 0
    conflicts: int = 0
    errors: list[str] = Field(default_factory=list)
    duration: float = 0.0
    status: EntityStatus = "success"
    attempts: int = 0
    is_complete: bool = True
    session_ids: list[str] = Field(default_factory=list)


class OrchestrationResult(BaseModel):
    success: bool
    status: RunStatus
    total_pulled: int
    total_pushed: int
    results: list[SyncRunResult]
    duration: float
    run_id: str


class SyncHistory(BaseModel):
    """Persisted summary of one orchestrated run."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    sync_type: str = "orchestrated"
    direction: RunDirection
    entity_types: list[str]
    status: RunStatus = "in_progress"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    entity_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    error_count: int = 0
    error_summary: list[dict[str, Any]] | None = None


def run_status(results: list[SyncRunResult]) -> RunStatus:
    if not results or all(r.status == "failed" for r in results):
        return "failed"
    if any(r.errors for r in results):
        return "partial_success"
    return "completed"


def should_retry_entity(error: BaseException) -> bool:
    """Entity-level retry skips errors another attempt cannot fix."""
    if isinstance(error, (ConfigurationError, MissingCredentialError)):
        return False
    if isinstance(error, QBOAPIError):
        return is_retryable_error(error)
    return True


class SyncOrchestrator:
    """
    Coordinates entity workers for orchestrated runs and single-worker calls.

    Example:
        orchestrator = SyncOrchestrator(store, client, sessions, queue=queue)
        result = await orchestrator.run(SyncRequest(tenant_id="t1", direction="pull"))
    """

    def __init__(
        self,
        store: SyncStore,
        client: QBOClient,
        sessions: SessionManager,
        *,
        queue: "SyncQueue | None" = None,
        batch_size: int = 100,
        execution_time_limit: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            queue: SyncQueue receiving continuation jobs for runs that hit
                the deadline (None disables continuations)
            batch_size: Page size for new sessions
            execution_time_limit: Soft deadline per run in seconds
            sleep: Coroutine used for entity-level backoff
        """
        self.store = store
        self.client = client
        self.sessions = sessions
        self.queue = queue
        self.batch_size = batch_size
        self.execution_time_limit = execution_time_limit
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic

    # -------------------------------------------------------------------------
    # Orchestrated runs
    # -------------------------------------------------------------------------

    async def run(self, request: SyncRequest) -> OrchestrationResult:
        """
        Run a full orchestration.

        Raises:
            ConfigurationError: invalid entity names, a dependency cycle, or
                external_ids with more than one entity (before any work)
            MissingCredentialError: tenant has no usable connection
        """
        kinds = parse_entities(request.entities)
        groups = priority_groups(kinds)
        if request.external_ids and len(kinds) != 1:
            raise ConfigurationError("external_ids requires exactly one entity")

        await self.client.credentials.get_credential(request.tenant_id)

        log = logger.bind(tenant_id=request.tenant_id, direction=request.direction)
        started = self._monotonic()
        history = SyncHistory(
            tenant_id=request.tenant_id,
            direction=request.direction,
            entity_types=[k.value for k in kinds],
            started_at=self._clock(),
        )
        await self.store.insert(HISTORY_TABLE, history.model_dump())

        log.info(
            "Starting sync orchestration",
            run_id=history.id,
            order=" -> ".join(" | ".join(k.value for k in g) for g in groups),
        )

        since = None
        if request.sync_mode == "delta":
            since = await self.last_successful_sync(request.tenant_id)

        deadline = Deadline(self.execution_time_limit, clock=self._monotonic)
        results: list[SyncRunResult] = []

        for index, group in enumerate(groups):
            log.info("Syncing priority group", priority=index + 1, entities=[k.value for k in group])
            group_results = await asyncio.gather(*(
                self._sync_entity_with_retry(request, kind, deadline, since) for kind in group
            ))
            results.extend(group_results)

            if all(r.status == "failed" for r in group_results) and index < len(groups) - 1:
                withheld = [kind for later in groups[index + 1:] for kind in later]
                log.warning(
                    "All entities in group failed, stopping orchestration",
                    priority=index + 1,
                    withheld=[k.value for k in withheld],
                )
                results.extend(
                    SyncRunResult(
                        entity=kind,
                        direction=request.direction,
                        status="failed",
                        errors=["Not attempted: all entities in an earlier priority group failed"],
                    )
                    for kind in withheld
                )
                break

        duration = round(self._monotonic() - started, 3)
        status = run_status(results)
        total_pulled = sum(r.pulled for r in results)
        total_pushed = sum(r.pushed for r in results)

        await self._finish_history(history, results, status, total_pulled + total_pushed)
        await self._touch_connection(request.tenant_id)

        log.info(
            "Sync orchestration complete",
            run_id=history.id,
            status=status,
            total_pulled=total_pulled,
            total_pushed=total_pushed,
            duration_seconds=duration,
        )

        return OrchestrationResult(
            success=status != "failed",
            status=status,
            total_pulled=total_pulled,
            total_pushed=total_pushed,
            results=results,
            duration=duration,
            run_id=history.id,
        )

    async def _sync_entity_with_retry(
        self,
        request: SyncRequest,
        kind: EntityKind,
        deadline: Deadline,
        since: datetime | None,
    ) -> SyncRunResult:
        """Run one entity, retrying the whole invocation. Never raises."""
        log = logger.bind(tenant_id=request.tenant_id, entity=kind.value)
        started = self._monotonic()
        last_error: BaseException | None = None
        attempt = 0

        while attempt < request.retry_attempts:
            attempt += 1
            log.info("Syncing entity", attempt=attempt, max_attempts=request.retry_attempts)
            try:
                result = await self._sync_entity(request, kind, deadline, since)
            except Exception as e:
                last_error = e
                log.error("Entity sync attempt failed", attempt=attempt, error=str(e))
                if not should_retry_entity(e):
                    break
                if attempt < request.retry_attempts:
                    backoff = 2 ** attempt
                    log.info("Retrying entity", delay_seconds=backoff)
                    await self._sleep(backoff)
                continue

            result.attempts = attempt
            result.duration = round(self._monotonic() - started, 3)
            return result

        return SyncRunResult(
            entity=kind,
            direction=request.direction,
            status="failed",
            attempts=attempt,
            errors=[str(last_error) if last_error else "Unknown error"],
            duration=round(self._monotonic() - started, 3),
        )

    async def _sync_entity(
        self,
        request: SyncRequest,
        kind: EntityKind,
        deadline: Deadline,
        since: datetime | None,
    ) -> SyncRunResult:
        directions: list[Direction] = (
            ["pull", "push"] if request.direction == "both" else [request.direction]
        )
        run = SyncRunResult(entity=kind, direction=request.direction)

        for direction in directions:
            worker = create_worker(
                kind,
                request.tenant_id,
                store=self.store,
                client=self.client,
                sessions=self.sessions,
                batch_size=self.batch_size,
                deadline=deadline,
                conflict_strategy=request.conflict_resolution,
                clock=self._clock,
            )
            if direction == "pull":
                outcome = await worker.pull(
                    sync_mode=request.sync_mode,
                    since=since,
                    external_ids=request.external_ids,
                )
            else:
                outcome = await worker.push()

            run.pulled += outcome.pulled
            run.pushed += outcome.pushed
            run.conflicts += outcome.conflicts
            run.errors.extend(outcome.errors)
            if outcome.session_id:
                run.session_ids.append(outcome.session_id)
            if not outcome.is_complete:
                run.is_complete = False
                await self._enqueue_continuation(request.tenant_id, outcome)

        run.status = "partial" if run.errors else "success"
        return run

    # -------------------------------------------------------------------------
    # Single worker invocation
    # -------------------------------------------------------------------------

    async def run_worker(
        self,
        tenant_id: str,
        entity: EntityKind | str,
        direction: Direction,
        *,
        session_id: str | None = None,
        offset: int | None = None,
        batch_size: int | None = None,
        sync_mode: SyncMode = "full",
        conflict_resolution: ConflictStrategy = ConflictStrategy.NEWEST_WINS,
    ) -> WorkerResult:
        """
        Invoke one entity worker directly, honouring the deadline.

        Raises:
            ConfigurationError: unknown entity or session
        """
        (kind,) = parse_entities([entity])
        worker = create_worker(
            kind,
            tenant_id,
            store=self.store,
            client=self.client,
            sessions=self.sessions,
            batch_size=batch_size or self.batch_size,
            deadline=Deadline(self.execution_time_limit, clock=self._monotonic),
            conflict_strategy=conflict_resolution,
            clock=self._clock,
        )

        if direction == "pull":
            since = None
            if sync_mode == "delta":
                since = await self.last_successful_sync(tenant_id)
            result = await worker.pull(
                session_id=session_id, offset=offset, sync_mode=sync_mode, since=since
            )
        else:
            result = await worker.push(session_id=session_id)

        if not result.is_complete:
            await self._enqueue_continuation(tenant_id, result)
        return result

    async def _enqueue_continuation(self, tenant_id: str, result: WorkerResult) -> None:
        if self.queue is None or result.session_id is None:
            return
        job, _ = await self.queue.enqueue(
            tenant_id,
            result.entity,
            direction=result.direction,
            priority="normal",
            session_id=result.session_id,
            source="continuation",
        )
        logger.info(
            "Queued continuation",
            tenant_id=tenant_id,
            entity=result.entity.value,
            session_id=result.session_id,
            job_id=job.id,
        )

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    async def _finish_history(
        self,
        history: SyncHistory,
        results: list[SyncRunResult],
        status: RunStatus,
        entity_count: int,
    ) -> None:
        error_summary = [
            {"entity": r.entity.value, "errors": r.errors} for r in results if r.errors
        ]
        await self.store.update(
            HISTORY_TABLE,
            history.id,
            {
                "status": status,
                "completed_at": self._clock(),
                "entity_count": entity_count,
                "success_count": sum(1 for r in results if r.status == "success"),
                "failure_count": sum(1 for r in results if r.status == "failed"),
                "error_count": sum(len(r.errors) for r in results),
                "error_summary": error_summary or None,
            },
        )

    async def _touch_connection(self, tenant_id: str) -> None:
        rows = await self.store.select(CONNECTIONS_TABLE, {"tenant_id": tenant_id, "is_active": True})
        for row in rows:
            await self.store.update(CONNECTIONS_TABLE, row["id"], {"last_sync_at": self._clock()})

    async def history(self, tenant_id: str, limit: int = 10) -> list[SyncHistory]:
        """Most recent runs for a tenant, newest first."""
        rows = await self.store.select(
            HISTORY_TABLE,
            {"tenant_id": tenant_id},
            order_by=("started_at",),
            descending=True,
            limit=limit,
        )
        return [SyncHistory.model_validate(row) for row in rows]

    async def last_successful_sync(self, tenant_id: str) -> datetime | None:
        """Start time of the newest run that completed without errors."""
        rows = await self.store.select(
            HISTORY_TABLE,
            {"tenant_id": tenant_id, "status": "completed"},
            order_by=("started_at",),
            descending=True,
            limit=1,
        )
        return rows[0]["started_at"] if rows else None
