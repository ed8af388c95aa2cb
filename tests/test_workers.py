"""
Tests for entity sync workers against an in-process QuickBooks fake.
"""

import asyncio
import re
from datetime import datetime, timezone

import httpx
import pytest
from structlog.testing import capture_logs

from fakes import TENANT, TickingClock, make_customer, make_invoice, make_item, make_payment, meta
from qbo_sync.client import QBOClient
from qbo_sync.credentials import StoreCredentialProvider
from qbo_sync.entities import INVOICE_LINE_TABLE, EntityKind
from qbo_sync.errors import ConfigurationError, QBOAuthError, QBOServerError
from qbo_sync.workers import Deadline, WorkerResult, apply_deletion, create_worker

FEB1 = datetime(2024, 2, 1, tzinfo=timezone.utc)
FEB5 = datetime(2024, 2, 5, tzinfo=timezone.utc)
FEB15 = datetime(2024, 2, 15, tzinfo=timezone.utc)


def start_positions(fake_qbo) -> list[int]:
    return [
        int(re.search(r"STARTPOSITION (\d+)", q)[1])
        for q in fake_qbo.queries
        if "COUNT" not in q
    ]


def count_queries(fake_qbo) -> int:
    return sum("COUNT(*)" in q for q in fake_qbo.queries)


@pytest.fixture
def make(store, client, sessions):
    """Build a worker for TENANT wired to the shared fixtures."""
    def factory(kind: EntityKind, **kwargs):
        return create_worker(kind, TENANT, store=store, client=client, sessions=sessions, **kwargs)
    return factory


async def pull_all(make, *kinds):
    for kind in kinds:
        await make(kind).pull()


class TestPull:
    """Tests for paginated pulls."""

    @pytest.mark.asyncio
    async def test_paginates_until_short_page(self, make, fake_qbo, store, sessions):
        fake_qbo.add("Customer", *(make_customer(i) for i in range(1, 238)))

        result = await make(EntityKind.CUSTOMER, batch_size=50).pull()

        assert result.is_complete
        assert result.pulled == 237
        assert result.processed == 237
        assert start_positions(fake_qbo) == [1, 51, 101, 151, 201]
        assert len(await store.select("customer_profile")) == 237

        session = await sessions.get(result.session_id)
        assert session.status == "completed"
        assert session.total_expected == 237
        assert session.total_processed == 237

    @pytest.mark.asyncio
    async def test_rows_are_tenant_scoped_and_synced(self, make, fake_qbo, store):
        fake_qbo.add("Customer", make_customer(1))

        await make(EntityKind.CUSTOMER).pull()

        row = (await store.select("customer_profile"))[0]
        assert row["tenant_id"] == TENANT
        assert row["qbo_id"] == "1"
        assert row["sync_status"] == "synced"
        assert row["last_synced_at"] is not None

    @pytest.mark.asyncio
    async def test_repeat_pull_updates_in_place(self, make, fake_qbo, store):
        fake_qbo.add("Customer", make_customer(1))
        await make(EntityKind.CUSTOMER).pull()

        fake_qbo.find("Customer", "1")["DisplayName"] = "Renamed"
        await make(EntityKind.CUSTOMER).pull()

        rows = await store.select("customer_profile")
        assert len(rows) == 1
        assert rows[0]["display_name"] == "Renamed"

    @pytest.mark.asyncio
    async def test_empty_company(self, make, fake_qbo):
        result = await make(EntityKind.ITEM).pull()

        assert result.is_complete
        assert result.pulled == 0
        assert start_positions(fake_qbo) == [1]

    @pytest.mark.asyncio
    async def test_invalid_record_is_skipped(self, make, fake_qbo, store):
        fake_qbo.add("Item", make_item(1), {"Id": "2", "SyncToken": "0"}, make_item(3))

        result = await make(EntityKind.ITEM).pull()

        assert result.pulled == 2
        assert result.skipped == 1
        assert result.errors[0].startswith("Item 2: invalid record")

    def test_batch_size_must_be_positive(self, make):
        with pytest.raises(ConfigurationError):
            make(EntityKind.ITEM, batch_size=0)


class TestDeadline:
    """Tests for yielding on the soft deadline and resuming."""

    @pytest.mark.asyncio
    async def test_yield_then_resume(self, make, fake_qbo, store, sessions):
        fake_qbo.add("Customer", *(make_customer(i) for i in range(1, 238)))

        first = await make(
            EntityKind.CUSTOMER, batch_size=50, deadline=Deadline(2.5, TickingClock())
        ).pull()

        assert not first.is_complete
        assert first.next_offset == 100
        assert first.processed == 100
        session = await sessions.get(first.session_id)
        assert session.status == "in_progress"
        assert session.current_offset == 100

        second = await make(EntityKind.CUSTOMER, batch_size=500).pull()

        assert second.is_complete
        assert second.session_id == first.session_id
        assert start_positions(fake_qbo) == [1, 51, 101, 151, 201]
        assert count_queries(fake_qbo) == 1
        assert len(await store.select("customer_profile")) == 237
        assert (await sessions.get(first.session_id)).total_processed == 237

    @pytest.mark.asyncio
    async def test_resume_by_session_id(self, make, fake_qbo):
        fake_qbo.add("Item", *(make_item(i) for i in range(1, 121)))
        first = await make(
            EntityKind.ITEM, batch_size=50, deadline=Deadline(1.5, TickingClock())
        ).pull()
        assert first.next_offset == 50

        second = await make(EntityKind.ITEM).pull(session_id=first.session_id)

        assert second.is_complete
        assert second.pulled == 70

    @pytest.mark.asyncio
    async def test_unknown_session_id(self, make):
        with pytest.raises(ConfigurationError):
            await make(EntityKind.ITEM).pull(session_id="missing")

    def test_deadline_none_never_expires(self):
        deadline = Deadline(None)
        assert not deadline.expired()
        assert deadline.remaining is None


class TestFailures:
    """Tests for session state after API failures."""

    @pytest.mark.asyncio
    async def test_auth_error_fails_session(self, make, fake_qbo, sessions):
        fake_qbo.add("Customer", make_customer(1))
        fake_qbo.fail("Customer", 401)

        with pytest.raises(QBOAuthError):
            await make(EntityKind.CUSTOMER).pull()

        session = await sessions.find_active(TENANT, EntityKind.CUSTOMER, "pull")
        assert session is None
        failed = (await sessions.list_for_tenant(TENANT))[0]
        assert failed.status == "failed"
        assert "Authentication failed" in failed.error_message

    @pytest.mark.asyncio
    async def test_transient_exhaustion_leaves_session_resumable(
        self, make, fake_qbo, sessions, store, sleeps
    ):
        fake_qbo.add("Customer", *(make_customer(i) for i in range(1, 121)))
        first = await make(
            EntityKind.CUSTOMER, batch_size=50, deadline=Deadline(1.5, TickingClock())
        ).pull()
        fake_qbo.fail("Customer", 503, 503, 503, 503)

        with pytest.raises(QBOServerError):
            await make(EntityKind.CUSTOMER).pull()

        session = await sessions.get(first.session_id)
        assert session.status == "in_progress"
        assert session.current_offset == 50
        assert sleeps.delays == [1.0, 2.0, 4.0]

        final = await make(EntityKind.CUSTOMER).pull()
        assert final.is_complete
        assert final.session_id == first.session_id
        assert len(await store.select("customer_profile")) == 120


class TestReferences:
    """Tests for foreign key resolution on pull."""

    @pytest.mark.asyncio
    async def test_invoice_references(self, make, fake_qbo, store):
        fake_qbo.add("Customer", make_customer(58))
        fake_qbo.add("Item", make_item(7))
        fake_qbo.add(
            "Invoice",
            make_invoice(130, "58", ["7", "99"]),
            make_invoice(131, "77", ["7"]),
        )
        await pull_all(make, EntityKind.CUSTOMER, EntityKind.ITEM)

        result = await make(EntityKind.INVOICE).pull()

        assert result.pulled == 1
        assert result.skipped == 2
        assert any("Invoice 131: Unresolved customer reference: 77" == e for e in result.errors)
        assert any("line 2 skipped" in e for e in result.errors)

        invoice = (await store.select("invoice_record"))[0]
        customer = (await store.select("customer_profile"))[0]
        assert invoice["qbo_id"] == "130"
        assert invoice["customer_id"] == customer["id"]

        lines = await store.select(INVOICE_LINE_TABLE)
        assert len(lines) == 1
        assert lines[0]["invoice_id"] == invoice["id"]

    @pytest.mark.asyncio
    async def test_invoice_lines_not_duplicated_on_repull(self, make, fake_qbo, store):
        fake_qbo.add("Customer", make_customer(58))
        fake_qbo.add("Item", make_item(7), make_item(8))
        fake_qbo.add("Invoice", make_invoice(130, "58", ["7", "8"]))
        await pull_all(make, EntityKind.CUSTOMER, EntityKind.ITEM)

        await make(EntityKind.INVOICE).pull()
        await make(EntityKind.INVOICE).pull()

        assert len(await store.select(INVOICE_LINE_TABLE)) == 2

    @pytest.mark.asyncio
    async def test_payment_with_unknown_invoice_is_unapplied(self, make, fake_qbo, store):
        fake_qbo.add("Customer", make_customer(58))
        fake_qbo.add("Payment", make_payment(301, "58", "999"))
        await pull_all(make, EntityKind.CUSTOMER, EntityKind.INVOICE)

        result = await make(EntityKind.PAYMENT).pull()

        assert result.pulled == 1
        payment = (await store.select("invoice_payment"))[0]
        assert payment["unapplied"] is True
        assert payment["invoice_id"] is None

    @pytest.mark.asyncio
    async def test_payment_applied_to_known_invoice(self, make, fake_qbo, store):
        fake_qbo.add("Customer", make_customer(58))
        fake_qbo.add("Item", make_item(7))
        fake_qbo.add("Invoice", make_invoice(130, "58", ["7"]))
        fake_qbo.add("Payment", make_payment(301, "58", "130"))
        await pull_all(make, EntityKind.CUSTOMER, EntityKind.ITEM, EntityKind.INVOICE)

        await make(EntityKind.PAYMENT).pull()

        payment = (await store.select("invoice_payment"))[0]
        invoice = (await store.select("invoice_record"))[0]
        assert payment["invoice_id"] == invoice["id"]
        assert payment["unapplied"] is False


class TestConflicts:
    """Tests for local edits meeting QBO edits."""

    async def _edited_on_both_sides(self, make, fake_qbo, store):
        fake_qbo.add("Customer", make_customer(58))
        await make(EntityKind.CUSTOMER, clock=lambda: FEB1).pull()

        row = (await store.select("customer_profile"))[0]
        await store.update(
            "customer_profile", row["id"], {"display_name": "Local Name", "updated_at": FEB5}
        )
        fake_qbo.find("Customer", "58").update(
            DisplayName="QBO Name", SyncToken="1", MetaData=meta("2024-02-10T00:00:00Z")
        )
        return row["id"]

    @pytest.mark.asyncio
    async def test_newest_wins_takes_newer_qbo_record(self, make, fake_qbo, store):
        row_id = await self._edited_on_both_sides(make, fake_qbo, store)

        result = await make(
            EntityKind.CUSTOMER, clock=lambda: FEB15, conflict_strategy="newest_wins"
        ).pull()

        assert result.conflicts == 1
        row = await store.get("customer_profile", row_id)
        assert row["display_name"] == "QBO Name"
        assert row["qbo_sync_token"] == "1"
        assert row["sync_status"] == "synced"

    @pytest.mark.asyncio
    async def test_internal_wins_keeps_local_and_pushes_with_current_token(
        self, make, fake_qbo, store
    ):
        row_id = await self._edited_on_both_sides(make, fake_qbo, store)

        result = await make(
            EntityKind.CUSTOMER, clock=lambda: FEB15, conflict_strategy="internal_wins"
        ).pull()

        assert result.conflicts == 1
        row = await store.get("customer_profile", row_id)
        assert row["display_name"] == "Local Name"
        assert row["sync_status"] == "pending"
        assert row["qbo_sync_token"] == "1"

        pushed = await make(EntityKind.CUSTOMER).push()

        assert pushed.pushed == 1
        entity, body = fake_qbo.saved[-1]
        assert body["SyncToken"] == "1"
        assert body["DisplayName"] == "Local Name"
        assert fake_qbo.find("Customer", "58")["DisplayName"] == "Local Name"
        assert (await store.get("customer_profile", row_id))["qbo_sync_token"] == "2"

    @pytest.mark.asyncio
    async def test_local_edit_kept_when_qbo_unchanged(self, make, fake_qbo, store):
        fake_qbo.add("Customer", make_customer(58))
        await make(EntityKind.CUSTOMER, clock=lambda: FEB1).pull()
        row = (await store.select("customer_profile"))[0]
        await store.update(
            "customer_profile", row["id"], {"display_name": "Local Name", "updated_at": FEB5}
        )

        result = await make(EntityKind.CUSTOMER, clock=lambda: FEB15).pull()

        assert result.conflicts == 0
        assert result.skipped == 1
        kept = await store.get("customer_profile", row["id"])
        assert kept["display_name"] == "Local Name"
        assert kept["sync_status"] == "pending"


class TestPush:
    """Tests for exporting rows to QBO."""

    @pytest.mark.asyncio
    async def test_creates_new_record(self, make, fake_qbo, store):
        row = await store.insert("customer_profile", {
            "tenant_id": TENANT,
            "display_name": "New Co",
            "email": "hello@newco.example",
        })

        result = await make(EntityKind.CUSTOMER).push()

        assert result.pushed == 1
        assert result.is_complete
        saved = await store.get("customer_profile", row["id"])
        assert saved["qbo_id"] == "5001"
        assert saved["qbo_sync_token"] == "0"
        assert saved["sync_status"] == "synced"
        assert fake_qbo.find("Customer", "5001")["DisplayName"] == "New Co"

        again = await make(EntityKind.CUSTOMER).push()
        assert again.pushed == 0

    @pytest.mark.asyncio
    async def test_other_tenants_rows_are_not_pushed(self, make, fake_qbo, store):
        await store.insert("customer_profile", {"tenant_id": "someone-else", "display_name": "X"})

        result = await make(EntityKind.CUSTOMER).push()

        assert result.pushed == 0
        assert fake_qbo.saved == []

    @pytest.mark.asyncio
    async def test_invoice_waits_for_customer_push(self, make, fake_qbo, store):
        customer = await store.insert("customer_profile", {"tenant_id": TENANT, "display_name": "C"})
        invoice = await store.insert("invoice_record", {
            "tenant_id": TENANT,
            "customer_id": customer["id"],
            "status": "sent",
        })
        await store.insert(INVOICE_LINE_TABLE, {
            "tenant_id": TENANT, "invoice_id": invoice["id"], "line_number": 1, "total": 5,
        })

        result = await make(EntityKind.INVOICE).push()

        assert result.pushed == 0
        assert result.skipped == 1
        assert "Unresolved customer reference" in result.errors[0]
        assert fake_qbo.saved == []
        assert (await store.get("invoice_record", invoice["id"])).get("qbo_id") is None

    @pytest.mark.asyncio
    async def test_invoice_push_with_resolved_references(self, make, fake_qbo, store):
        customer = await store.insert("customer_profile", {
            "tenant_id": TENANT, "qbo_id": "58", "qbo_sync_token": "0", "sync_status": "synced",
        })
        item = await store.insert("item_record", {
            "tenant_id": TENANT, "qbo_id": "7", "qbo_sync_token": "0", "sync_status": "synced",
        })
        invoice = await store.insert("invoice_record", {
            "tenant_id": TENANT,
            "customer_id": customer["id"],
            "invoice_number": "ERP-1",
            "status": "sent",
        })
        await store.insert(INVOICE_LINE_TABLE, {
            "tenant_id": TENANT,
            "invoice_id": invoice["id"],
            "item_id": item["id"],
            "line_number": 1,
            "quantity": 2,
            "unit_price": 10,
            "total": 20,
        })

        result = await make(EntityKind.INVOICE).push()

        assert result.pushed == 1
        entity, body = fake_qbo.saved[0]
        assert entity == "Invoice"
        assert body["CustomerRef"] == {"value": "58"}
        assert body["Line"][0]["SalesItemLineDetail"]["ItemRef"] == {"value": "7"}
        assert (await store.get("invoice_record", invoice["id"]))["qbo_id"] == "5001"

    @pytest.mark.asyncio
    async def test_voided_invoice_is_not_pushed(self, make, fake_qbo, store):
        await store.insert("invoice_record", {"tenant_id": TENANT, "is_voided": True})

        result = await make(EntityKind.INVOICE).push()

        assert result.pushed == 0
        assert result.skipped == 0

    @pytest.mark.asyncio
    async def test_stale_sync_token_marks_row_error(self, make, fake_qbo, store):
        fake_qbo.add("Customer", make_customer(58, SyncToken="3"))
        row = await store.insert("customer_profile", {
            "tenant_id": TENANT,
            "qbo_id": "58",
            "qbo_sync_token": "0",
            "display_name": "Edited",
            "sync_status": "pending",
        })

        result = await make(EntityKind.CUSTOMER).push()

        assert result.pushed == 0
        assert "Stale Object Error" in result.errors[0]
        failed = await store.get("customer_profile", row["id"])
        assert failed["sync_status"] == "error"
        assert "Stale Object Error" in failed["sync_error"]
        assert fake_qbo.find("Customer", "58")["DisplayName"] == "Customer 58"

    @pytest.mark.asyncio
    async def test_missing_token_is_fetched_before_update(self, make, fake_qbo, store):
        fake_qbo.add("Customer", make_customer(58, SyncToken="4"))
        await store.insert("customer_profile", {
            "tenant_id": TENANT, "qbo_id": "58", "display_name": "Edited", "sync_status": "pending",
        })

        with capture_logs() as logs:
            result = await make(EntityKind.CUSTOMER).push()

        assert result.pushed == 1
        assert fake_qbo.saved[0][1]["SyncToken"] == "4"
        (warning,) = [e for e in logs if "without a stored SyncToken" in e["event"]]
        assert warning["log_level"] == "warning"
        assert warning["qbo_id"] == "58"
        assert warning["fetched_sync_token"] == "4"

    @pytest.mark.asyncio
    async def test_resumed_push_continues_past_skipped_rows(self, make, fake_qbo, store, sessions):
        customer = await store.insert("customer_profile", {"tenant_id": TENANT, "display_name": "C"})
        for n in range(4):
            invoice = await store.insert("invoice_record", {
                "tenant_id": TENANT,
                "customer_id": customer["id"],
                "invoice_number": f"ERP-{n}",
                "status": "sent",
            })
            await store.insert(INVOICE_LINE_TABLE, {
                "tenant_id": TENANT, "invoice_id": invoice["id"], "line_number": 1, "total": 5,
            })

        first = await make(
            EntityKind.INVOICE, batch_size=2, deadline=Deadline(1.5, TickingClock())
        ).push()

        assert not first.is_complete
        assert first.processed == 2
        assert first.skipped == 2

        second = await make(
            EntityKind.INVOICE, batch_size=2, deadline=Deadline(1.5, TickingClock())
        ).push(session_id=first.session_id)

        assert second.is_complete
        assert second.processed == 2
        assert second.skipped == 2
        session = await sessions.get(first.session_id)
        assert session.status == "completed"
        assert session.total_expected == 4
        assert session.total_processed == 4
        assert session.current_offset == 4
        assert fake_qbo.saved == []

    @pytest.mark.asyncio
    async def test_push_plan_is_fixed_when_session_opens(self, make, fake_qbo, store, sessions):
        await store.insert("customer_profile", {"tenant_id": TENANT, "display_name": "A"})
        await store.insert("customer_profile", {"tenant_id": TENANT, "display_name": "B"})

        first = await make(
            EntityKind.CUSTOMER, batch_size=1, deadline=Deadline(1.5, TickingClock())
        ).push()
        assert first.pushed == 1
        pushed = [r for r in await store.select("customer_profile") if r.get("qbo_id")]
        assert [r["qbo_id"] for r in pushed] == ["5001"]

        # Rows added after the session opened wait for the next session
        await store.insert("customer_profile", {"tenant_id": TENANT, "display_name": "C"})
        second = await make(EntityKind.CUSTOMER, batch_size=1).push()

        assert second.session_id == first.session_id
        assert second.is_complete
        assert second.pushed == 1
        assert (await sessions.get(first.session_id)).total_processed == 2

        third = await make(EntityKind.CUSTOMER).push()
        assert third.session_id != first.session_id
        assert third.pushed == 1

    @pytest.mark.asyncio
    async def test_auth_error_fails_push_session(self, make, fake_qbo, store, sessions):
        await store.insert("customer_profile", {"tenant_id": TENANT, "display_name": "New"})
        fake_qbo.fail("Customer", 401)

        with pytest.raises(QBOAuthError):
            await make(EntityKind.CUSTOMER).push()

        assert await sessions.find_active(TENANT, EntityKind.CUSTOMER, "push") is None


class TestTargetedPull:

    @pytest.mark.asyncio
    async def test_fetches_only_requested_ids(self, make, fake_qbo, store, sessions):
        fake_qbo.add("Customer", *(make_customer(i) for i in range(1, 6)))

        result = await make(EntityKind.CUSTOMER).pull(external_ids=["2", "3", "2"])

        assert result.pulled == 2
        assert result.session_id is None
        assert sorted(r["qbo_id"] for r in await store.select("customer_profile")) == ["2", "3"]
        assert "Id IN ('2', '3')" in fake_qbo.queries[0]
        assert await sessions.list_for_tenant(TENANT) == []


class TestDeletion:

    @pytest.mark.asyncio
    async def test_void_invoice(self, store):
        row = await store.insert("invoice_record", {"tenant_id": TENANT, "qbo_id": "130"})

        changed = await apply_deletion(store, TENANT, EntityKind.INVOICE, "130", "Void")

        assert changed == 1
        voided = await store.get("invoice_record", row["id"])
        assert voided["is_voided"] is True
        assert voided["status"] == "void"

    @pytest.mark.asyncio
    async def test_delete_payment(self, store):
        row = await store.insert("invoice_payment", {"tenant_id": TENANT, "qbo_id": "301"})

        await apply_deletion(store, TENANT, EntityKind.PAYMENT, "301", "delete")

        assert (await store.get("invoice_payment", row["id"]))["payment_status"] == "deleted"

    @pytest.mark.asyncio
    async def test_delete_customer_deactivates(self, store):
        row = await store.insert("customer_profile", {"tenant_id": TENANT, "qbo_id": "58"})

        await apply_deletion(store, TENANT, EntityKind.CUSTOMER, "58", "Delete")

        assert (await store.get("customer_profile", row["id"]))["is_active"] is False

    @pytest.mark.asyncio
    async def test_unknown_record(self, store):
        assert await apply_deletion(store, TENANT, EntityKind.ITEM, "404", "Delete") == 0


def test_worker_result_defaults():
    result = WorkerResult(entity=EntityKind.ITEM, direction="pull")
    assert result.success and result.is_complete
    assert result.errors == []


class TestConcurrentInvocations:
    """Tests for two invocations resuming the same session."""

    @pytest.mark.asyncio
    async def test_each_page_counted_once(self, store, fake_qbo, sessions, sleeps):
        fake_qbo.add("Customer", *(make_customer(i) for i in range(1, 238)))

        async def yielding_handler(request):
            await asyncio.sleep(0)
            return fake_qbo.handler(request)

        client = QBOClient(
            StoreCredentialProvider(store),
            transport=httpx.MockTransport(yielding_handler),
            sleep=sleeps,
        )
        session = await sessions.create(TENANT, EntityKind.CUSTOMER, "pull", batch_size=50)

        def worker():
            return create_worker(
                EntityKind.CUSTOMER, TENANT, store=store, client=client, sessions=sessions
            )

        results = await asyncio.gather(
            worker().pull(session_id=session.id),
            worker().pull(session_id=session.id),
        )

        assert sorted(r.is_complete for r in results) == [False, True]
        assert sum(r.processed for r in results) == 237

        final = await sessions.get(session.id)
        assert final.status == "completed"
        assert final.current_offset == 237
        assert final.total_processed == 237
        assert final.total_expected == 237
        assert len(await store.select("customer_profile")) == 237

