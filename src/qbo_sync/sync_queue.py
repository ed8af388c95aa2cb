"""
Durable sync job queue and its processor.

Jobs are rows in `sync_queue`. A job is claimed by flipping its status from
`pending` to `processing` with a compare-and-set, so each job runs once
even with several processors. Failed jobs are retried with exponential
backoff (2, 4, 8 minutes) and left `failed` once retries run out.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field

from qbo_sync.entities import EntityKind
from qbo_sync.orchestrator import SyncOrchestrator, SyncRequest
from qbo_sync.sessions import SessionManager, SyncMode, utcnow
from qbo_sync.store import SyncStore

logger = structlog.get_logger(__name__)

QUEUE_TABLE = "sync_queue"

Priority = Literal["urgent", "high", "normal", "low"]
JobStatus = Literal["pending", "processing", "completed", "failed"]
JobDirection = Literal["pull", "push", "both"]

PRIORITY_RANK: dict[str, int] = {"urgent": 0, "high": 1, "normal": 2, "low": 3}


class SyncQueueJob(BaseModel):
    """A unit of deferred sync work."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    entity: EntityKind
    direction: JobDirection = "pull"
    priority: Priority = "normal"
    status: JobStatus = "pending"
    source: str = "manual"
    sync_mode: SyncMode = "full"
    # None means the whole entity; a list limits the pull to those QBO ids
    external_ids: list[str] | None = None
    # Set on continuation jobs that resume a specific session
    session_id: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = Field(default_factory=utcnow)
    scheduled_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    result: dict[str, Any] | None = None


class SyncQueue:
    """
    Enqueue, claim and settle jobs.

    Example:
        queue = SyncQueue(store)
        job, created = await queue.enqueue("t1", EntityKind.INVOICE, priority="high",
                                           external_ids=["130"], source="webhook")
        job = await queue.claim_next()
    """

    def __init__(
        self,
        store: SyncStore,
        max_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.max_retries = max_retries
        self._clock = clock
        self._enqueue_lock = asyncio.Lock()

    async def enqueue(
        self,
        tenant_id: str,
        entity: EntityKind,
        direction: JobDirection = "pull",
        priority: Priority = "normal",
        *,
        external_ids: list[str] | None = None,
        session_id: str | None = None,
        sync_mode: SyncMode = "full",
        source: str = "manual",
    ) -> tuple[SyncQueueJob, bool]:
        """
        Add a job, or fold it into an equivalent pending one.

        A pending job for the same tenant, entity, direction and session
        absorbs the new request: id lists are merged, a whole-entity request
        widens a targeted job, and the higher priority is kept.

        Returns (job, created).
        """
        async with self._enqueue_lock:
            rows = await self.store.select(
                QUEUE_TABLE,
                {
                    "tenant_id": tenant_id,
                    "entity": entity,
                    "direction": direction,
                    "session_id": session_id,
                    "sync_mode": sync_mode,
                    "status": "pending",
                },
                order_by=("created_at",),
                limit=1,
            )
            if rows:
                return await self._coalesce(rows[0], priority, external_ids), False

            job = SyncQueueJob(
                tenant_id=tenant_id,
                entity=entity,
                direction=direction,
                priority=priority,
                source=source,
                sync_mode=sync_mode,
                external_ids=list(dict.fromkeys(external_ids)) if external_ids else None,
                session_id=session_id,
                max_retries=self.max_retries,
                created_at=self._clock(),
                scheduled_at=self._clock(),
            )
            await self.store.insert(QUEUE_TABLE, job.model_dump())

        logger.info(
            "Enqueued sync job",
            job_id=job.id,
            tenant_id=tenant_id,
            entity=entity.value,
            direction=direction,
            priority=priority,
            source=source,
        )
        return job, True

    async def _coalesce(
        self,
        row: dict[str, Any],
        priority: Priority,
        external_ids: list[str] | None,
    ) -> SyncQueueJob:
        existing = SyncQueueJob.model_validate(row)
        changes: dict[str, Any] = {}

        if PRIORITY_RANK[priority] < PRIORITY_RANK[existing.priority]:
            changes["priority"] = priority

        if existing.external_ids is not None:
            if external_ids is None:
                changes["external_ids"] = None
            else:
                merged = list(dict.fromkeys([*existing.external_ids, *external_ids]))
                if merged != existing.external_ids:
                    changes["external_ids"] = merged

        if changes:
            row = await self.store.update(QUEUE_TABLE, existing.id, changes)
            existing = SyncQueueJob.model_validate(row)

        logger.debug("Coalesced sync job", job_id=existing.id, changes=list(changes))
        return existing

    async def claim_next(self) -> SyncQueueJob | None:
        """
        Claim the most urgent due job (priority, then age).

        Returns None when nothing is due.
        """
        now = self._clock()
        candidates = await self.store.select(
            QUEUE_TABLE,
            {"status": "pending"},
            predicate=lambda row: row["scheduled_at"] <= now,
        )
        candidates.sort(key=lambda row: (PRIORITY_RANK[row["priority"]], row["created_at"]))

        for row in candidates:
            claimed = await self.store.update_where(
                QUEUE_TABLE,
                row["id"],
                {"status": "pending"},
                {"status": "processing", "started_at": now},
            )
            if claimed is not None:
                return SyncQueueJob.model_validate(claimed)
        return None

    async def complete(self, job_id: str, result: dict[str, Any] | None = None) -> SyncQueueJob:
        row = await self.store.update(
            QUEUE_TABLE,
            job_id,
            {
                "status": "completed",
                "completed_at": self._clock(),
                "error_message": None,
                "result": result,
            },
        )
        return SyncQueueJob.model_validate(row)

    async def fail(self, job_id: str, error: str) -> SyncQueueJob:
        """Requeue with backoff, or mark failed once retries are used up."""
        job = await self.get(job_id)
        if job is None:
            raise KeyError(job_id)

        now = self._clock()
        if job.retry_count < job.max_retries:
            delay = timedelta(minutes=2 ** (job.retry_count + 1))
            changes = {
                "status": "pending",
                "retry_count": job.retry_count + 1,
                "scheduled_at": now + delay,
                "started_at": None,
                "error_message": error,
            }
            logger.warning(
                "Sync job failed, will retry",
                job_id=job_id,
                retry_count=job.retry_count + 1,
                retry_in_seconds=delay.total_seconds(),
                error=error,
            )
        else:
            changes = {"status": "failed", "completed_at": now, "error_message": error}
            logger.error(
                "Sync job failed permanently",
                job_id=job_id,
                retry_count=job.retry_count,
                error=error,
            )

        row = await self.store.update(QUEUE_TABLE, job_id, changes)
        return SyncQueueJob.model_validate(row)

    async def get(self, job_id: str) -> SyncQueueJob | None:
        row = await self.store.get(QUEUE_TABLE, job_id)
        return SyncQueueJob.model_validate(row) if row else None

    async def list_jobs(
        self,
        tenant_id: str | None = None,
        status: JobStatus | None = None,
    ) -> list[SyncQueueJob]:
        where: dict[str, Any] = {}
        if tenant_id is not None:
            where["tenant_id"] = tenant_id
        if status is not None:
            where["status"] = status
        rows = await self.store.select(QUEUE_TABLE, where, order_by=("created_at",))
        return [SyncQueueJob.model_validate(row) for row in rows]

    async def get_stats(self) -> dict[str, int]:
        """Job counts by status."""
        rows = await self.store.select(QUEUE_TABLE)
        stats = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        for row in rows:
            stats[row["status"]] = stats.get(row["status"], 0) + 1
        return stats


class QueueProcessor:
    """
    Drains the queue through the orchestrator.

    Example:
        processor = QueueProcessor(queue, orchestrator, sessions)
        summary = await processor.drain(max_jobs=20, max_concurrent=5)
    """

    def __init__(
        self,
        queue: SyncQueue,
        orchestrator: SyncOrchestrator,
        sessions: SessionManager,
        *,
        max_jobs: int = 20,
        max_concurrent: int = 5,
        stale_after: timedelta = timedelta(seconds=120),
        poll_interval: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self.sessions = sessions
        self.max_jobs = max_jobs
        self.max_concurrent = max_concurrent
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._sleep = sleep

    async def drain(
        self,
        max_jobs: int | None = None,
        max_concurrent: int | None = None,
    ) -> dict[str, int]:
        """
        Process due jobs until the queue is empty or `max_jobs` were claimed.

        Up to `max_concurrent` jobs run at once.
        """
        max_jobs = self.max_jobs if max_jobs is None else max_jobs
        max_concurrent = self.max_concurrent if max_concurrent is None else max_concurrent
        summary = {"processed": 0, "succeeded": 0, "failed": 0}
        reserved = 0

        async def worker_loop() -> None:
            nonlocal reserved
            while reserved < max_jobs:
                # Reserve the slot before awaiting so concurrent loops cannot overshoot
                reserved += 1
                job = await self.queue.claim_next()
                if job is None:
                    reserved -= 1
                    return
                summary["processed"] += 1
                if await self.process_job(job):
                    summary["succeeded"] += 1
                else:
                    summary["failed"] += 1

        await asyncio.gather(*(worker_loop() for _ in range(max(1, max_concurrent))))

        if summary["processed"]:
            logger.info("Drained sync queue", **summary)
        return summary

    async def process_job(self, job: SyncQueueJob) -> bool:
        """Run one claimed job and settle it. Returns True on success."""
        log = logger.bind(job_id=job.id, tenant_id=job.tenant_id, entity=job.entity.value)
        log.info("Processing sync job", direction=job.direction, source=job.source)

        try:
            if job.session_id is not None:
                result = await self.orchestrator.run_worker(
                    job.tenant_id,
                    job.entity,
                    job.direction,
                    session_id=job.session_id,
                    sync_mode=job.sync_mode,
                )
                success = result.success
                summary = result.model_dump(mode="json")
            else:
                outcome = await self.orchestrator.run(SyncRequest(
                    tenant_id=job.tenant_id,
                    direction=job.direction,
                    entities=[job.entity.value],
                    sync_mode=job.sync_mode,
                    external_ids=job.external_ids,
                ))
                success = outcome.success
                summary = outcome.model_dump(mode="json")
        except Exception as e:
            log.error("Sync job raised", error=str(e))
            await self.queue.fail(job.id, str(e))
            return False

        if success:
            await self.queue.complete(job.id, summary)
            return True

        errors = [err for r in summary.get("results", []) for err in r.get("errors", [])]
        await self.queue.fail(job.id, "; ".join(errors[:5]) or "Sync reported failure")
        return False

    async def resume_stale_sessions(self) -> int:
        """
        Queue continuations for in-progress sessions nobody is advancing.

        Covers runs whose process died before it could enqueue its own
        continuation.
        """
        stale = await self.sessions.find_stale(self.stale_after)
        queued = 0
        for session in stale:
            _, created = await self.queue.enqueue(
                session.tenant_id,
                session.entity,
                direction=session.direction,
                priority="normal",
                session_id=session.id,
                sync_mode=session.sync_mode,
                source="continuation",
            )
            queued += int(created)

        if stale:
            logger.info("Checked stale sessions", stale=len(stale), queued=queued)
        return queued

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Poll until `stop` is set."""
        stop = stop or asyncio.Event()
        logger.info(
            "Queue processor started",
            max_jobs=self.max_jobs,
            max_concurrent=self.max_concurrent,
            poll_interval=self.poll_interval,
        )
        while not stop.is_set():
            await self.resume_stale_sessions()
            summary = await self.drain()
            if not summary["processed"]:
                await self._sleep(self.poll_interval)
        logger.info("Queue processor stopped")
