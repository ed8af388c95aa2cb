"""
Pytest configuration and fixtures for sync engine tests.
"""

import httpx
import pytest

from fakes import (
    REALM,
    FakeQBO,
    SleepRecorder,
    connection_row,
    make_customer,
    make_invoice,
    make_item,
    make_payment,
)
from qbo_sync.client import QBOClient
from qbo_sync.credentials import CONNECTIONS_TABLE, StoreCredentialProvider
from qbo_sync.retry import RetryConfig
from qbo_sync.sessions import SessionManager
from qbo_sync.store import InMemorySyncStore


@pytest.fixture
def store():
    """Store with one active QuickBooks connection for TENANT."""
    return InMemorySyncStore({CONNECTIONS_TABLE: {"conn-1": connection_row()}})


@pytest.fixture
def fake_qbo():
    return FakeQBO()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def client(store, fake_qbo, sleeps):
    """QBO client talking to FakeQBO, with deterministic backoff."""
    return QBOClient(
        StoreCredentialProvider(store),
        retry_config=RetryConfig(jitter=False),
        transport=httpx.MockTransport(fake_qbo.handler),
        sleep=sleeps,
    )


@pytest.fixture
def sessions(store):
    return SessionManager(store)


@pytest.fixture
def sample_customer_data():
    """Sample customer from the QBO API."""
    return make_customer(
        58,
        DisplayName="Acme Corporation",
        CompanyName="Acme Corporation",
        PrimaryPhone={"FreeFormNumber": "(555) 123-4567"},
        BillAddr={
            "Line1": "123 Main Street",
            "City": "Springfield",
            "CountrySubDivisionCode": "IL",
            "PostalCode": "62701",
        },
        Balance="1250.50",
    )


@pytest.fixture
def sample_item_data():
    """Sample catalog item from the QBO API."""
    return make_item(7, Name="Pressure Washer", Type="NonInventory")


@pytest.fixture
def sample_invoice_data():
    """Sample invoice with two item lines, a discount and tax."""
    invoice = make_invoice(130, "58", ["7", "8"])
    invoice["Line"].append({
        "Amount": 4.0,
        "DetailType": "DiscountLineDetail",
        "DiscountLineDetail": {"PercentBased": True, "DiscountPercent": 10},
    })
    invoice.update({
        "TxnTaxDetail": {"TotalTax": 3.24},
        "TotalAmt": 39.24,
        "Balance": 19.24,
        "CustomerMemo": {"value": "Thank you for your business"},
        "CustomField": [{"DefinitionId": "1", "Name": "PO Number", "StringValue": "PO-881"}],
    })
    return invoice


@pytest.fixture
def sample_payment_data():
    """Sample payment applied to invoice 130."""
    return make_payment(301, "58", "130", PaymentMethodRef={"value": "3", "name": "Visa Credit Card"})


@pytest.fixture
def sample_webhook_payload():
    """Sample webhook notification body."""
    return {
        "eventNotifications": [
            {
                "realmId": REALM,
                "dataChangeEvent": {
                    "entities": [
                        {
                            "name": "Customer",
                            "id": "58",
                            "operation": "Update",
                            "lastUpdated": "2024-01-16T14:20:00.000Z",
                        }
                    ]
                },
            }
        ]
    }
