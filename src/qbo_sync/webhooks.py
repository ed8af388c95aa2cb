"""
QuickBooks webhook ingestion.

QBO POSTs change notifications signed with HMAC-SHA256 of the raw body
under the app's verifier token. Each entity change is recorded once in
`webhook_events` (keyed by realm, entity, id and lastUpdated) and then:

    Delete / Void            applied directly to the local row
    Create / Update / Merge  queued as a high priority targeted pull

QBO retries anything that is not a 2xx, so processing problems are
reported in the response body instead of the status code. Only a bad
signature is rejected.
"""

import base64
import hashlib
import hmac
import json
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError

from qbo_sync.credentials import find_tenant_by_realm
from qbo_sync.entities import EntityKind
from qbo_sync.errors import InvalidSignatureError
from qbo_sync.models import EntityChange, WebhookPayload
from qbo_sync.sessions import utcnow
from qbo_sync.store import SyncStore
from qbo_sync.sync_queue import SyncQueue
from qbo_sync.workers import apply_deletion

logger = structlog.get_logger(__name__)

EVENTS_TABLE = "webhook_events"

PULL_OPERATIONS = frozenset({"create", "update", "merge"})
DELETE_OPERATIONS = frozenset({"delete", "void"})

EventStatus = Literal["pending", "processed", "failed", "ignored"]


def sign(raw_body: bytes, verifier_token: str) -> str:
    """Base64 HMAC-SHA256 of the body, as sent in `intuit-signature`."""
    digest = hmac.new(verifier_token.encode(), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_signature(raw_body: bytes, signature: str | None, verifier_token: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign(raw_body, verifier_token), signature.strip())


def idempotency_key(realm_id: str, entity: str, external_id: str, last_updated: str) -> str:
    return f"{realm_id}:{entity.lower()}:{external_id}:{last_updated}"


class WebhookEvent(BaseModel):
    """One recorded entity change."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    idempotency_key: str
    tenant_id: str
    realm_id: str
    entity: EntityKind
    external_id: str
    operation: str
    last_updated: str = ""
    status: EventStatus = "pending"
    job_id: str | None = None
    error_message: str | None = None
    received_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None


class WebhookIngestor:
    """
    Validates, records and dispatches webhook notifications.

    Example:
        ingestor = WebhookIngestor(store, queue, verifier_token=settings.webhook_verifier_token)
        summary = await ingestor.ingest(raw_body, request.headers.get("intuit-signature"))
    """

    def __init__(
        self,
        store: SyncStore,
        queue: SyncQueue,
        verifier_token: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.verifier_token = verifier_token
        self._clock = clock

    async def ingest(self, raw_body: bytes, signature: str | None) -> dict[str, Any]:
        """
        Process one webhook delivery.

        Returns:
            {"success": bool, "processed": int, "errors": [...]} ("errors"
            only present when non-empty)

        Raises:
            InvalidSignatureError: a verifier token is configured and the
                signature is missing or wrong
        """
        if self.verifier_token and not verify_signature(raw_body, signature, self.verifier_token):
            logger.warning("Rejected webhook with invalid signature", has_signature=bool(signature))
            raise InvalidSignatureError("Invalid intuit-signature")

        try:
            payload = WebhookPayload.model_validate(json.loads(raw_body or b"{}"))
        except (ValueError, ValidationError) as e:
            logger.error("Malformed webhook payload", error=str(e))
            return {"success": False, "processed": 0, "errors": [f"Malformed payload: {e}"]}

        processed = 0
        errors: list[str] = []

        for notification in payload.event_notifications:
            tenant_id = await find_tenant_by_realm(self.store, notification.realm_id)
            if tenant_id is None:
                logger.warning("No active connection for realm", realm_id=notification.realm_id)
                errors.append(f"Unknown realmId: {notification.realm_id}")
                continue

            for change in notification.data_change_event.entities:
                event = await self._record(tenant_id, notification.realm_id, change)
                if event is None:
                    continue
                error = await self._dispatch(event)
                if error:
                    errors.append(f"{change.name}:{change.id} - {error}")
                else:
                    processed += 1

        logger.info(
            "Processed webhook",
            notifications=len(payload.event_notifications),
            processed=processed,
            errors=len(errors),
        )
        result: dict[str, Any] = {"success": True, "processed": processed}
        if errors:
            result["errors"] = errors
        return result

    async def _record(
        self,
        tenant_id: str,
        realm_id: str,
        change: EntityChange,
    ) -> WebhookEvent | None:
        """Persist a change. None for unsupported entities and duplicates."""
        kind = EntityKind.from_qbo_name(change.name)
        if kind is None:
            logger.debug("Ignoring unsupported webhook entity", entity=change.name, id=change.id)
            return None

        event = WebhookEvent(
            idempotency_key=idempotency_key(realm_id, change.name, change.id, change.last_updated),
            tenant_id=tenant_id,
            realm_id=realm_id,
            entity=kind,
            external_id=change.id,
            operation=change.operation.lower(),
            last_updated=change.last_updated,
            received_at=self._clock(),
        )
        _, created = await self.store.insert_if_absent(
            EVENTS_TABLE, event.model_dump(), key=("idempotency_key",)
        )
        if not created:
            logger.info(
                "Skipping duplicate webhook event",
                entity=kind.value,
                id=change.id,
                operation=event.operation,
            )
            return None
        return event

    async def _dispatch(self, event: WebhookEvent) -> str | None:
        """Apply or enqueue one recorded event. Returns an error message on failure."""
        log = logger.bind(
            tenant_id=event.tenant_id,
            entity=event.entity.value,
            id=event.external_id,
            operation=event.operation,
        )
        changes: dict[str, Any] = {"processed_at": self._clock()}

        try:
            if event.operation in DELETE_OPERATIONS:
                await apply_deletion(
                    self.store,
                    event.tenant_id,
                    event.entity,
                    event.external_id,
                    event.operation,
                    now=self._clock(),
                )
                changes["status"] = "processed"
            elif event.operation in PULL_OPERATIONS:
                job, created = await self.queue.enqueue(
                    event.tenant_id,
                    event.entity,
                    direction="pull",
                    priority="high",
                    external_ids=[event.external_id],
                    source="webhook",
                )
                changes.update(status="processed", job_id=job.id)
                log.info("Queued webhook pull", job_id=job.id, coalesced=not created)
            else:
                changes["status"] = "ignored"
                log.info("Ignoring webhook operation")
        except Exception as e:
            log.error("Failed to apply webhook event", error=str(e))
            changes.update(status="failed", error_message=str(e))
            await self.store.update(EVENTS_TABLE, event.id, changes)
            return str(e)

        await self.store.update(EVENTS_TABLE, event.id, changes)
        return None

    async def replay_pending(self) -> int:
        """
        Dispatch events still `pending`, e.g. after a crash between
        recording and enqueueing. Returns how many were dispatched cleanly.
        """
        rows = await self.store.select(EVENTS_TABLE, {"status": "pending"}, order_by=("received_at",))
        replayed = 0
        for row in rows:
            if await self._dispatch(WebhookEvent.model_validate(row)) is None:
                replayed += 1

        if rows:
            logger.info("Replayed pending webhook events", pending=len(rows), replayed=replayed)
        return replayed
