"""
Tests for webhook signature checks, recording and dispatch.
"""

import json

import pytest

from fakes import REALM, TENANT
from qbo_sync.entities import EntityKind
from qbo_sync.errors import InvalidSignatureError
from qbo_sync.sync_queue import SyncQueue
from qbo_sync.webhooks import (
    EVENTS_TABLE,
    WebhookEvent,
    WebhookIngestor,
    idempotency_key,
    sign,
    verify_signature,
)

TOKEN = "verifier-token"


def body(*changes, realm: str = REALM) -> bytes:
    entities = [
        {"name": name, "id": id_, "operation": op, "lastUpdated": f"2024-01-16T14:20:0{n}.000Z"}
        for n, (name, id_, op) in enumerate(changes)
    ]
    return json.dumps({
        "eventNotifications": [{"realmId": realm, "dataChangeEvent": {"entities": entities}}]
    }).encode()


@pytest.fixture
def queue(store):
    return SyncQueue(store)


@pytest.fixture
def ingestor(store, queue):
    return WebhookIngestor(store, queue, verifier_token=TOKEN)


async def deliver(ingestor, raw: bytes):
    return await ingestor.ingest(raw, sign(raw, TOKEN))


class TestSignature:

    def test_sign_and_verify(self):
        raw = b'{"eventNotifications": []}'
        signature = sign(raw, TOKEN)

        assert verify_signature(raw, signature, TOKEN)
        assert not verify_signature(raw + b" ", signature, TOKEN)
        assert not verify_signature(raw, signature, "other-token")
        assert not verify_signature(raw, None, TOKEN)

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, ingestor, queue):
        with pytest.raises(InvalidSignatureError):
            await ingestor.ingest(body(("Customer", "58", "Update")), "bm90LXJpZ2h0")
        assert await queue.list_jobs() == []

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, ingestor):
        with pytest.raises(InvalidSignatureError):
            await ingestor.ingest(body(("Customer", "58", "Update")), None)

    @pytest.mark.asyncio
    async def test_no_token_configured_skips_check(self, store, queue):
        ingestor = WebhookIngestor(store, queue)

        result = await ingestor.ingest(body(("Customer", "58", "Update")), None)

        assert result == {"success": True, "processed": 1}


class TestIngest:

    @pytest.mark.asyncio
    async def test_update_queues_high_priority_targeted_pull(self, ingestor, queue, store):
        result = await deliver(ingestor, body(("Invoice", "130", "Update")))

        assert result == {"success": True, "processed": 1}
        (job,) = await queue.list_jobs(TENANT)
        assert job.entity == EntityKind.INVOICE
        assert job.priority == "high"
        assert job.external_ids == ["130"]
        assert job.source == "webhook"

        (event,) = await store.select(EVENTS_TABLE)
        assert event["status"] == "processed"
        assert event["job_id"] == job.id
        assert event["processed_at"] is not None

    @pytest.mark.asyncio
    async def test_duplicate_delivery_recorded_once(self, ingestor, queue, store):
        raw = body(("Customer", "58", "Update"))

        first = await deliver(ingestor, raw)
        second = await deliver(ingestor, raw)

        assert first["processed"] == 1
        assert second == {"success": True, "processed": 0}
        assert len(await store.select(EVENTS_TABLE)) == 1
        assert len(await queue.list_jobs()) == 1

    @pytest.mark.asyncio
    async def test_changes_to_same_entity_coalesce(self, ingestor, queue):
        await deliver(ingestor, body(
            ("Customer", "58", "Create"),
            ("Customer", "59", "Update"),
            ("Customer", "58", "Update"),
        ))

        (job,) = await queue.list_jobs()
        assert job.external_ids == ["58", "59"]

    @pytest.mark.asyncio
    async def test_void_invoice_applied_directly(self, ingestor, queue, store):
        row = await store.insert("invoice_record", {"tenant_id": TENANT, "qbo_id": "130"})

        result = await deliver(ingestor, body(("Invoice", "130", "Void")))

        assert result["processed"] == 1
        invoice = await store.get("invoice_record", row["id"])
        assert invoice["is_voided"] is True
        assert invoice["status"] == "void"
        assert await queue.list_jobs() == []

    @pytest.mark.asyncio
    async def test_delete_payment_applied_directly(self, ingestor, store):
        row = await store.insert("invoice_payment", {"tenant_id": TENANT, "qbo_id": "301"})

        await deliver(ingestor, body(("Payment", "301", "Delete")))

        assert (await store.get("invoice_payment", row["id"]))["payment_status"] == "deleted"

    @pytest.mark.asyncio
    async def test_unsupported_entity_ignored(self, ingestor, queue, store):
        result = await deliver(ingestor, body(("Vendor", "12", "Update"), ("Item", "7", "Update")))

        assert result == {"success": True, "processed": 1}
        assert [e["entity"] for e in await store.select(EVENTS_TABLE)] == [EntityKind.ITEM]

    @pytest.mark.asyncio
    async def test_unknown_operation_is_ignored(self, ingestor, queue, store):
        result = await deliver(ingestor, body(("Customer", "58", "Emailed")))

        assert result["processed"] == 1
        assert (await store.select(EVENTS_TABLE))[0]["status"] == "ignored"
        assert await queue.list_jobs() == []

    @pytest.mark.asyncio
    async def test_unknown_realm_reported(self, ingestor, queue):
        result = await deliver(ingestor, body(("Customer", "58", "Update"), realm="404"))

        assert result == {"success": True, "processed": 0, "errors": ["Unknown realmId: 404"]}
        assert await queue.list_jobs() == []

    @pytest.mark.asyncio
    async def test_inactive_connection_is_unknown_realm(self, ingestor, store):
        await store.update("connections", "conn-1", {"is_active": False})

        result = await deliver(ingestor, body(("Customer", "58", "Update")))

        assert result["errors"] == [f"Unknown realmId: {REALM}"]

    @pytest.mark.asyncio
    async def test_malformed_body(self, ingestor):
        result = await deliver(ingestor, b"{not json")

        assert result["success"] is False
        assert result["processed"] == 0
        assert result["errors"][0].startswith("Malformed payload")

    @pytest.mark.asyncio
    async def test_empty_body(self, ingestor):
        assert await deliver(ingestor, b"") == {"success": True, "processed": 0}


class TestReplay:

    @pytest.mark.asyncio
    async def test_replays_pending_events(self, ingestor, queue, store):
        event = WebhookEvent(
            idempotency_key=idempotency_key(REALM, "Item", "7", "2024-01-16T14:20:00.000Z"),
            tenant_id=TENANT,
            realm_id=REALM,
            entity=EntityKind.ITEM,
            external_id="7",
            operation="update",
        )
        await store.insert(EVENTS_TABLE, event.model_dump())

        assert await ingestor.replay_pending() == 1
        assert await ingestor.replay_pending() == 0

        (job,) = await queue.list_jobs()
        assert job.external_ids == ["7"]
        assert (await store.get(EVENTS_TABLE, event.id))["status"] == "processed"


def test_idempotency_key():
    assert idempotency_key("123", "Invoice", "130", "2024-01-16") == "123:invoice:130:2024-01-16"
