"""
Entity sync workers.

One worker per entity kind, all sharing the same pull and push loops:

Pull, per page:
    fetch page at offset (rate-limited, retried)
    → parse records → resolve foreign keys from per-run lookup tables
    → map to internal rows → batch upsert → advance session

Push, per batch:
    select rows lacking a QBO id or flagged pending
    → build payload (skip rows with an unpushed reference)
    → create or update with the current SyncToken → stamp id/token/synced

A record that cannot be parsed or mapped is skipped and reported; it never
aborts the page. A soft deadline is checked between pages, and when it
passes the worker checkpoints its session and returns `is_complete=False`.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

import structlog
from pydantic import BaseModel, Field, ValidationError

from qbo_sync.client import QBOClient, ids_filter
from qbo_sync.coercion import format_qbo_timestamp, parse_timestamp
from qbo_sync.conflicts import ConflictStrategy, is_conflicting, resolve_conflict
from qbo_sync.entities import INVOICE_LINE_TABLE, EntityKind
from qbo_sync.errors import (
    ConfigurationError,
    QBOAPIError,
    QBOAuthError,
    SessionConflictError,
    SyncError,
    UnresolvedReferenceError,
)
from qbo_sync.lookup import LookupTable
from qbo_sync.mapping import (
    customer_to_payload,
    customer_to_row,
    invoice_line_to_row,
    invoice_to_payload,
    invoice_to_row,
    item_to_payload,
    item_to_row,
    line_key,
    payment_to_payload,
    payment_to_row,
    sync_token_of,
)
from qbo_sync.models import QBCustomer, QBEntity, QBInvoice, QBItem, QBPayment
from qbo_sync.retry import is_retryable_error
from qbo_sync.sessions import Direction, SessionManager, SyncMode, SyncSession, utcnow
from qbo_sync.store import Row, SyncStore

logger = structlog.get_logger(__name__)

NATURAL_KEY = ("tenant_id", "qbo_id")
LINE_KEY = ("invoice_id", "qbo_line_id")


class Deadline:
    """
    Soft wall-clock limit polled between pages.

    `Deadline(None)` never expires.
    """

    def __init__(self, seconds: float | None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.expires_at = None if seconds is None else clock() + seconds

    def expired(self) -> bool:
        return self.expires_at is not None and self._clock() >= self.expires_at

    @property
    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())


class WorkerResult(BaseModel):
    """Outcome of one worker invocation."""

    entity: EntityKind
    direction: Direction
    success: bool = True
    session_id: str | None = None
    processed: int = 0
    current_offset: int = 0
    is_complete: bool = True
    next_offset: int | None = None
    pulled: int = 0
    pushed: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: list[str] = Field(default_factory=list)


@dataclass
class Mapped:
    """An internal row plus child line rows and per-line problems."""
    record: QBEntity
    row: Row
    lines: list[Row] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class EntitySyncWorker(ABC):
    """
    Pull and push loops shared by every entity kind.

    Subclasses declare `kind` and `model` and implement the mapping hooks.

    Example:
        worker = CustomerSyncWorker(tenant_id, store, client, sessions, batch_size=100)
        result = await worker.pull()
        if not result.is_complete:
            result = await worker.pull(session_id=result.session_id)
    """

    kind: ClassVar[EntityKind]
    model: ClassVar[type[QBEntity]]

    def __init__(
        self,
        tenant_id: str,
        store: SyncStore,
        client: QBOClient,
        sessions: SessionManager,
        *,
        batch_size: int = 100,
        deadline: Deadline | None = None,
        conflict_strategy: ConflictStrategy = ConflictStrategy.NEWEST_WINS,
        clock: Callable[[], datetime] = utcnow,
    ):
        if batch_size <= 0:
            raise ConfigurationError("batch_size must be positive")

        self.tenant_id = tenant_id
        self.store = store
        self.client = client
        self.sessions = sessions
        self.batch_size = batch_size
        self.deadline = deadline or Deadline(None)
        self.conflict_strategy = ConflictStrategy(conflict_strategy)
        self._clock = clock

        self.lookups: dict[EntityKind, LookupTable] = {}
        self._log = logger.bind(tenant_id=tenant_id, entity=self.kind.value)

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def map_record(self, record: Any) -> Mapped:
        """
        QBO model → internal row.

        Raises:
            UnresolvedReferenceError: if a required foreign key is unknown
        """

    @abstractmethod
    def build_payload(self, row: Row, context: dict[str, Any]) -> dict[str, Any]:
        """
        Internal row → QBO payload.

        Raises:
            UnresolvedReferenceError: if a referenced record has no QBO id
        """

    async def load_push_context(self, rows: list[Row]) -> dict[str, Any]:
        """Extra data a batch of pushes needs, loaded in one query."""
        return {}

    async def after_upsert(self, stored: list[tuple[Mapped, Row]]) -> None:
        """Write child rows once parent ids are known."""

    def needs_push(self, row: Row) -> bool:
        if not row.get("qbo_id"):
            return row.get("is_active", True) is not False
        return row.get("sync_status") == "pending"

    @classmethod
    def deletion_changes(cls, operation: str) -> dict[str, Any]:
        """Local changes applied when QBO reports a Delete or Void."""
        return {"is_active": False}

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def load_lookups(self, reverse: bool = False) -> None:
        """Load one id map per dependency, once per run."""
        self.lookups = {}
        for dep in sorted(self.kind.dependencies, key=lambda k: k.value):
            self.lookups[dep] = await LookupTable.load(
                self.store, self.tenant_id, dep, reverse=reverse
            )

    def resolve(self, kind: EntityKind, key: str | None, field_name: str) -> str:
        value = self.lookups[kind].get(key)
        if value is None:
            raise UnresolvedReferenceError(field_name, key)
        return value

    # -------------------------------------------------------------------------
    # Pull
    # -------------------------------------------------------------------------

    async def pull(
        self,
        session_id: str | None = None,
        offset: int | None = None,
        sync_mode: SyncMode = "full",
        since: datetime | None = None,
        external_ids: list[str] | None = None,
    ) -> WorkerResult:
        """
        Import records from QBO, resuming the active session if there is one.

        Args:
            session_id: Continue this session instead of looking one up
            offset: Starting offset for a brand-new session
            sync_mode: "delta" only fetches records changed after `since`
            since: Lower bound for delta pulls
            external_ids: Fetch just these records, without a session
        """
        await self.load_lookups()

        if external_ids:
            return await self._pull_targeted(external_ids)

        session = await self._open_pull_session(session_id, offset, sync_mode, since)
        result = WorkerResult(
            entity=self.kind,
            direction="pull",
            session_id=session.id,
            current_offset=session.current_offset,
        )
        if not session.is_active:
            return result

        where = self._delta_filter(session)
        try:
            if session.total_expected is None:
                total = await self.client.count(self.tenant_id, self.kind.qbo_name, where)
                session = await self.sessions.update(session.id, total_expected=total)
                self._log.info("Counted records", total=total, sync_mode=session.sync_mode)

            while True:
                if self.deadline.expired():
                    return self._yield(result, session)

                offset = session.current_offset
                records = await self.client.query(
                    self.tenant_id,
                    self.kind.qbo_name,
                    start_position=offset + 1,
                    max_results=session.batch_size,
                    where=where,
                )
                await self._store_page(records, result)

                try:
                    session = await self.sessions.advance(
                        session.id,
                        processed=len(records),
                        next_offset=offset + len(records),
                        expected_offset=offset,
                    )
                except SessionConflictError as e:
                    return self._superseded(result, session, e)
                result.processed += len(records)
                result.current_offset = session.current_offset

                self._log.info(
                    "Processed page",
                    offset=offset,
                    count=len(records),
                    total_processed=session.total_processed,
                    total_expected=session.total_expected,
                    progress=session.progress_percent,
                )

                if len(records) < session.batch_size or (
                    session.total_expected is not None
                    and session.total_processed >= session.total_expected
                ):
                    break

            await self.sessions.complete(session.id, success=True)
        except SyncError as e:
            await self._fail(session, e)
            raise

        self._log.info(
            "Pull complete",
            pulled=result.pulled,
            skipped=result.skipped,
            conflicts=result.conflicts,
            errors=len(result.errors),
        )
        return result

    async def _open_pull_session(
        self,
        session_id: str | None,
        offset: int | None,
        sync_mode: SyncMode,
        since: datetime | None,
    ) -> SyncSession:
        if session_id is None:
            session, _ = await self.sessions.resume_or_create(
                self.tenant_id,
                self.kind,
                "pull",
                batch_size=self.batch_size,
                sync_mode=sync_mode,
                since=since if sync_mode == "delta" else None,
                offset=offset or 0,
            )
            return session

        session = await self.sessions.get(session_id)
        if (
            session is None
            or session.tenant_id != self.tenant_id
            or session.entity != self.kind
            or session.direction != "pull"
        ):
            raise ConfigurationError(f"No {self.kind.value} pull session {session_id}")
        return session

    @staticmethod
    def _delta_filter(session: SyncSession) -> str | None:
        if session.sync_mode != "delta" or session.since is None:
            return None
        return f"MetaData.LastUpdatedTime > '{format_qbo_timestamp(session.since)}'"

    async def _pull_targeted(self, external_ids: list[str]) -> WorkerResult:
        """Fetch specific records by id (webhook-triggered work)."""
        result = WorkerResult(entity=self.kind, direction="pull")
        ids = list(dict.fromkeys(str(i) for i in external_ids))
        for start in range(0, len(ids), self.batch_size):
            chunk = ids[start:start + self.batch_size]
            records = await self.client.query(
                self.tenant_id,
                self.kind.qbo_name,
                max_results=len(chunk),
                where=ids_filter(chunk),
            )
            await self._store_page(records, result)
            result.processed += len(records)

        self._log.info("Targeted pull complete", requested=len(ids), pulled=result.pulled)
        return result

    async def _store_page(self, records: list[dict[str, Any]], result: WorkerResult) -> None:
        parsed: list[QBEntity] = []
        for raw in records:
            try:
                parsed.append(self.model.model_validate(raw))
            except ValidationError as e:
                self._record_error(result, raw.get("Id"), f"invalid record ({e.error_count()} errors)")

        existing = await self._existing_rows([r.id for r in parsed])
        now = self._clock()

        mapped: list[Mapped] = []
        for record in parsed:
            try:
                item = self.map_record(record)
            except UnresolvedReferenceError as e:
                self._record_error(result, record.id, str(e))
                continue

            current = existing.get(record.id)
            if current is not None and await self._keep_local(current, record, result):
                continue

            for warning in item.warnings:
                self._record_error(result, record.id, warning)
            item.row.update(
                tenant_id=self.tenant_id,
                sync_status="synced",
                sync_error=None,
                last_synced_at=now,
                updated_at=now,
            )
            mapped.append(item)

        if not mapped:
            return

        stored = await self.store.upsert(self.kind.table, [m.row for m in mapped], on=NATURAL_KEY)
        await self.after_upsert(list(zip(mapped, stored)))
        result.pulled += len(stored)

    async def _existing_rows(self, qbo_ids: list[str]) -> dict[str, Row]:
        if not qbo_ids:
            return {}
        rows = await self.store.select(
            self.kind.table, {"tenant_id": self.tenant_id}, where_in={"qbo_id": set(qbo_ids)}
        )
        return {row["qbo_id"]: row for row in rows}

    async def _keep_local(self, current: Row, record: QBEntity, result: WorkerResult) -> bool:
        """
        Decide whether a local edit survives this pull.

        A local change made after the row was last synced is kept when QBO
        has not changed since; when both changed, the conflict strategy
        decides. A kept row is flagged pending, with the SyncToken just
        seen, so the next push sends it.
        """
        last_synced = current.get("last_synced_at")
        local_updated = current.get("updated_at")
        external_updated = record.last_updated

        if last_synced is None or local_updated is None or not local_updated > last_synced:
            return False

        if is_conflicting(local_updated, external_updated, last_synced):
            result.conflicts += 1
            winner = resolve_conflict(
                "internal",
                "external",
                self.conflict_strategy,
                local_updated_at=local_updated,
                external_updated_at=external_updated,
            )
            self._log.info(
                "Conflict detected",
                qbo_id=record.id,
                local_updated_at=local_updated,
                external_updated_at=external_updated,
                strategy=self.conflict_strategy.value,
                winner=winner,
            )
            if winner == "external":
                return False

        await self.store.update(
            self.kind.table,
            current["id"],
            {"sync_status": "pending", "qbo_sync_token": record.sync_token},
        )
        result.skipped += 1
        return True

    # -------------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------------

    async def push(self, session_id: str | None = None) -> WorkerResult:
        """
        Export new and pending rows to QBO.

        The rows to export are fixed when the session opens, and resuming
        continues through that list at `current_offset`. Rows that fail or
        are skipped are left unsynced and picked up by the next session.
        """
        await self.load_lookups(reverse=True)

        if session_id is not None:
            session = await self.sessions.get(session_id)
            if session is None or session.direction != "push" or session.entity != self.kind:
                raise ConfigurationError(f"No {self.kind.value} push session {session_id}")
        else:
            session, _ = await self.sessions.resume_or_create(
                self.tenant_id, self.kind, "push", batch_size=self.batch_size
            )

        result = WorkerResult(
            entity=self.kind,
            direction="push",
            session_id=session.id,
            current_offset=session.current_offset,
        )
        if not session.is_active:
            return result

        try:
            if session.planned_ids is None:
                rows = await self.store.select(
                    self.kind.table,
                    {"tenant_id": self.tenant_id},
                    predicate=self.needs_push,
                    order_by=("created_at", "id"),
                )
                session = await self.sessions.plan(session.id, [row["id"] for row in rows])

            planned = session.planned_ids
            while session.current_offset < len(planned):
                if self.deadline.expired():
                    return self._yield(result, session)

                offset = session.current_offset
                batch_ids = planned[offset:offset + session.batch_size]
                batch = await self._rows_to_push(batch_ids)
                context = await self.load_push_context(batch)
                for row in batch:
                    await self._push_one(row, context, result)

                try:
                    session = await self.sessions.advance(
                        session.id,
                        processed=len(batch_ids),
                        next_offset=offset + len(batch_ids),
                        expected_offset=offset,
                    )
                except SessionConflictError as e:
                    return self._superseded(result, session, e)
                result.processed += len(batch_ids)
                result.current_offset = session.current_offset

            await self.sessions.complete(session.id, success=True)
        except SyncError as e:
            await self._fail(session, e)
            raise

        self._log.info(
            "Push complete",
            pushed=result.pushed,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result

    async def _rows_to_push(self, row_ids: list[str]) -> list[Row]:
        """Planned rows in plan order, minus any that no longer need a push."""
        rows = await self.store.select(
            self.kind.table, {"tenant_id": self.tenant_id}, where_in={"id": set(row_ids)}
        )
        by_id = {row["id"]: row for row in rows}
        return [
            by_id[row_id]
            for row_id in row_ids
            if row_id in by_id and self.needs_push(by_id[row_id])
        ]

    async def _push_one(self, row: Row, context: dict[str, Any], result: WorkerResult) -> None:
        try:
            if row.get("qbo_id") and not row.get("qbo_sync_token"):
                current = await self.client.get(self.tenant_id, self.kind.qbo_name, row["qbo_id"])
                row = {**row, "qbo_sync_token": sync_token_of(current) or "0"}
                self._log.warning(
                    "Updating without a stored SyncToken, concurrent QBO edits may be overwritten",
                    row_id=row["id"],
                    qbo_id=row["qbo_id"],
                    fetched_sync_token=row["qbo_sync_token"],
                )

            payload = self.build_payload(row, context)
            saved = await self.client.save(self.tenant_id, self.kind.qbo_name, payload)
        except UnresolvedReferenceError as e:
            self._log.warning("Skipping push", row_id=row["id"], reason=str(e))
            self._record_error(result, row["id"], str(e))
            return
        except QBOAuthError:
            raise
        except QBOAPIError as e:
            self._record_error(result, row["id"], str(e))
            await self.store.update(
                self.kind.table, row["id"], {"sync_status": "error", "sync_error": str(e)}
            )
            return

        now = self._clock()
        await self.store.update(
            self.kind.table,
            row["id"],
            {
                "qbo_id": str(saved["Id"]),
                "qbo_sync_token": sync_token_of(saved),
                "qbo_updated_at": parse_timestamp(
                    (saved.get("MetaData") or {}).get("LastUpdatedTime")
                ),
                "sync_status": "synced",
                "sync_error": None,
                "last_synced_at": now,
                "updated_at": now,
            },
        )
        result.pushed += 1
        self._log.debug(
            "Pushed record",
            row_id=row["id"],
            qbo_id=saved["Id"],
            created=not row.get("qbo_id"),
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _record_error(self, result: WorkerResult, record_id: Any, message: str) -> None:
        result.skipped += 1
        result.errors.append(f"{self.kind.qbo_name} {record_id}: {message}")
        self._log.warning("Record skipped", record_id=record_id, reason=message)

    def _yield(self, result: WorkerResult, session: SyncSession) -> WorkerResult:
        result.is_complete = False
        result.next_offset = session.current_offset
        result.current_offset = session.current_offset
        self._log.info(
            "Deadline reached, yielding",
            session_id=session.id,
            next_offset=session.current_offset,
            total_processed=session.total_processed,
        )
        return result

    def _superseded(
        self,
        result: WorkerResult,
        session: SyncSession,
        error: SessionConflictError,
    ) -> WorkerResult:
        """
        Stop after losing a page to another invocation of the same session.

        The session is left to the invocation that recorded the page.
        """
        result.is_complete = False
        result.next_offset = None
        self._log.warning(
            "Session advanced by another invocation, stopping",
            session_id=session.id,
            offset=session.current_offset,
            error=str(error),
        )
        return result

    async def _fail(self, session: SyncSession, error: SyncError) -> None:
        """
        Close the session on fatal errors; transient failures leave it
        in progress so the next attempt resumes from the checkpoint.
        """
        if is_retryable_error(error):
            self._log.warning(
                "Run interrupted, session left resumable",
                session_id=session.id,
                error=str(error),
            )
            return
        await self.sessions.complete(session.id, success=False, error_message=str(error))


# =============================================================================
# Entity workers
# =============================================================================

class CustomerSyncWorker(EntitySyncWorker):
    kind = EntityKind.CUSTOMER
    model = QBCustomer

    def map_record(self, record: QBCustomer) -> Mapped:
        return Mapped(record, customer_to_row(record))

    def build_payload(self, row: Row, context: dict[str, Any]) -> dict[str, Any]:
        return customer_to_payload(row)


class ItemSyncWorker(EntitySyncWorker):
    kind = EntityKind.ITEM
    model = QBItem

    def map_record(self, record: QBItem) -> Mapped:
        return Mapped(record, item_to_row(record))

    def build_payload(self, row: Row, context: dict[str, Any]) -> dict[str, Any]:
        return item_to_payload(row)


class InvoiceSyncWorker(EntitySyncWorker):
    """
    Invoices need a known customer; each item line needs a known item.

    An unknown customer skips the whole invoice. An unknown item skips only
    that line, which is reported while the header and other lines are kept.
    """

    kind = EntityKind.INVOICE
    model = QBInvoice

    def map_record(self, record: QBInvoice) -> Mapped:
        customer_ref = record.customer_ref.value if record.customer_ref else None
        customer_id = self.resolve(EntityKind.CUSTOMER, customer_ref, "customer")
        mapped = Mapped(record, invoice_to_row(record, customer_id))

        items = self.lookups[EntityKind.ITEM]
        for position, line in enumerate(record.lines):
            if line.is_item_line:
                detail = line.sales_item_line_detail
                item_ref = detail.item_ref.value if detail and detail.item_ref else None
                item_id = items.get(item_ref)
                if item_id is None:
                    mapped.warnings.append(
                        f"line {line_key(line, position)} skipped: "
                        f"{UnresolvedReferenceError('item', item_ref)}"
                    )
                    continue
                mapped.lines.append(invoice_line_to_row(line, position, item_id))
            elif line.detail_type == "DescriptionOnly":
                mapped.lines.append(invoice_line_to_row(line, position, None))
        return mapped

    async def after_upsert(self, stored: list[tuple[Mapped, Row]]) -> None:
        lines = []
        for mapped, row in stored:
            for line in mapped.lines:
                lines.append({**line, "tenant_id": self.tenant_id, "invoice_id": row["id"]})
        if lines:
            await self.store.upsert(INVOICE_LINE_TABLE, lines, on=LINE_KEY)

    def needs_push(self, row: Row) -> bool:
        if row.get("is_voided") or row.get("status") in ("draft", "cancelled"):
            return False
        return super().needs_push(row)

    async def load_push_context(self, rows: list[Row]) -> dict[str, Any]:
        lines = await self.store.select(
            INVOICE_LINE_TABLE,
            where_in={"invoice_id": {row["id"] for row in rows}},
            order_by=("line_number",),
        )
        by_invoice: dict[str, list[Row]] = {}
        for line in lines:
            by_invoice.setdefault(line["invoice_id"], []).append(line)
        return {"lines": by_invoice}

    def build_payload(self, row: Row, context: dict[str, Any]) -> dict[str, Any]:
        customers = self.lookups[EntityKind.CUSTOMER]
        items = self.lookups[EntityKind.ITEM]
        return invoice_to_payload(
            row,
            context["lines"].get(row["id"], []),
            customers.get(row.get("customer_id")),
            {line_item: items.get(line_item) for line_item in self._item_ids(row, context)},
        )

    @staticmethod
    def _item_ids(row: Row, context: dict[str, Any]) -> set[str]:
        return {
            line["item_id"] for line in context["lines"].get(row["id"], []) if line.get("item_id")
        }

    @classmethod
    def deletion_changes(cls, operation: str) -> dict[str, Any]:
        return {"is_voided": True, "status": "void" if operation.lower() == "void" else "deleted"}


class PaymentSyncWorker(EntitySyncWorker):
    """
    Payments need a known customer. A linked invoice that is not known
    locally leaves the payment unapplied rather than skipping it.
    """

    kind = EntityKind.PAYMENT
    model = QBPayment

    def map_record(self, record: QBPayment) -> Mapped:
        customer_ref = record.customer_ref.value if record.customer_ref else None
        customer_id = self.resolve(EntityKind.CUSTOMER, customer_ref, "customer")

        invoices = self.lookups[EntityKind.INVOICE]
        invoice_id = None
        for qbo_invoice_id in record.linked_invoice_ids:
            invoice_id = invoices.get(qbo_invoice_id)
            if invoice_id is not None:
                break
        return Mapped(record, payment_to_row(record, customer_id, invoice_id))

    def needs_push(self, row: Row) -> bool:
        if row.get("payment_status") in ("voided", "deleted"):
            return False
        return super().needs_push(row)

    def build_payload(self, row: Row, context: dict[str, Any]) -> dict[str, Any]:
        customers = self.lookups[EntityKind.CUSTOMER]
        invoices = self.lookups[EntityKind.INVOICE]
        invoice_id = row.get("invoice_id")
        return payment_to_payload(
            row,
            customers.get(row.get("customer_id")),
            invoices.get(invoice_id) if invoice_id else None,
        )

    @classmethod
    def deletion_changes(cls, operation: str) -> dict[str, Any]:
        return {"payment_status": "voided" if operation.lower() == "void" else "deleted"}


WORKERS: dict[EntityKind, type[EntitySyncWorker]] = {
    EntityKind.CUSTOMER: CustomerSyncWorker,
    EntityKind.ITEM: ItemSyncWorker,
    EntityKind.INVOICE: InvoiceSyncWorker,
    EntityKind.PAYMENT: PaymentSyncWorker,
}

_missing = set(EntityKind) - set(WORKERS)
if _missing:
    raise RuntimeError(f"No sync worker for: {', '.join(sorted(k.value for k in _missing))}")


def create_worker(kind: EntityKind, tenant_id: str, **kwargs: Any) -> EntitySyncWorker:
    """Instantiate the worker for `kind`."""
    return WORKERS[EntityKind(kind)](tenant_id, **kwargs)


async def apply_deletion(
    store: SyncStore,
    tenant_id: str,
    kind: EntityKind,
    qbo_id: str,
    operation: str,
    now: datetime | None = None,
) -> int:
    """Apply a QBO Delete or Void to the local row. Returns rows changed."""
    rows = await store.select(kind.table, {"tenant_id": tenant_id, "qbo_id": str(qbo_id)})
    changes = {**WORKERS[kind].deletion_changes(operation), "updated_at": now or utcnow()}
    for row in rows:
        await store.update(kind.table, row["id"], changes)

    logger.info(
        "Applied deletion",
        tenant_id=tenant_id,
        entity=kind.value,
        qbo_id=qbo_id,
        operation=operation,
        rows=len(rows),
    )
    return len(rows)
