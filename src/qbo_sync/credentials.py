"""
QuickBooks credentials per tenant.

Token acquisition and refresh happen elsewhere; the engine only asks for a
usable credential before each API call and fails fast when there is none.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Literal

import structlog
from pydantic import BaseModel

from qbo_sync.errors import MissingCredentialError
from qbo_sync.store import SyncStore

logger = structlog.get_logger(__name__)

CONNECTIONS_TABLE = "connections"

Environment = Literal["sandbox", "production"]


class Credential(BaseModel):
    access_token: str
    realm_id: str
    environment: Environment = "production"


class CredentialProvider(ABC):
    """Source of a valid access token for a tenant."""

    @abstractmethod
    async def get_credential(self, tenant_id: str) -> Credential:
        """
        Raises:
            MissingCredentialError: if the tenant cannot call QuickBooks
        """


class StoreCredentialProvider(CredentialProvider):
    """
    Reads the tenant's row in the `connections` table.

    A connection row looks like:
        {"tenant_id": "t1", "realm_id": "9130...", "access_token": "...",
         "token_expires_at": datetime, "is_active": True,
         "environment": "sandbox", "last_sync_at": datetime | None}
    """

    def __init__(
        self,
        store: SyncStore,
        default_environment: Environment = "production",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.default_environment = default_environment
        self._clock = clock

    async def get_credential(self, tenant_id: str) -> Credential:
        rows = await self.store.select(
            CONNECTIONS_TABLE, {"tenant_id": tenant_id, "is_active": True}, limit=1
        )
        if not rows:
            raise MissingCredentialError(f"No active QuickBooks connection for tenant {tenant_id}")

        connection = rows[0]
        if not connection.get("access_token"):
            raise MissingCredentialError(f"QuickBooks connection for tenant {tenant_id} has no token")

        expires_at = connection.get("token_expires_at")
        if expires_at is not None and expires_at <= self._clock():
            logger.warning("QuickBooks token expired", tenant_id=tenant_id, expired_at=expires_at)
            raise MissingCredentialError(f"QuickBooks token expired for tenant {tenant_id}")

        return Credential(
            access_token=connection["access_token"],
            realm_id=str(connection["realm_id"]),
            environment=connection.get("environment") or self.default_environment,
        )


async def find_tenant_by_realm(store: SyncStore, realm_id: str) -> str | None:
    """Tenant owning the active connection for a QuickBooks realm."""
    rows = await store.select(
        CONNECTIONS_TABLE, {"realm_id": str(realm_id), "is_active": True}, limit=1
    )
    return rows[0]["tenant_id"] if rows else None
