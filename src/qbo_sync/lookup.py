"""
Per-run id lookup tables.

Foreign keys are resolved from in-memory maps loaded once at the start of a
worker run, never with one query per record.
"""

from collections.abc import Mapping
from typing import Any

import structlog

from qbo_sync.entities import EntityKind
from qbo_sync.store import SyncStore

logger = structlog.get_logger(__name__)


class LookupTable:
    """
    Read-only id map with hit/miss statistics.

    Example:
        customers = await LookupTable.load(store, tenant_id, EntityKind.CUSTOMER)
        customer_id = customers.get(invoice.customer_ref.value)  # None if unsynced
    """

    def __init__(self, name: str, entries: Mapping[str, str]):
        self.name = name
        self._entries = dict(entries)
        self._hits = 0
        self._misses = 0

    @classmethod
    async def load(
        cls,
        store: SyncStore,
        tenant_id: str,
        kind: EntityKind,
        *,
        reverse: bool = False,
    ) -> "LookupTable":
        """
        Build a map from one query over the entity's table.

        Forward maps QBO id → internal id (pull); `reverse` maps internal
        id → QBO id (push). Rows without a QBO id are left out.
        """
        rows = await store.select(kind.table, {"tenant_id": tenant_id})
        if reverse:
            entries = {row["id"]: row["qbo_id"] for row in rows if row.get("qbo_id")}
        else:
            entries = {row["qbo_id"]: row["id"] for row in rows if row.get("qbo_id")}

        name = f"{kind.value}{'_by_internal_id' if reverse else ''}"
        logger.debug("Loaded lookup table", name=name, tenant_id=tenant_id, size=len(entries))
        return cls(name, entries)

    def get(self, key: str | None) -> str | None:
        if key is None:
            self._misses += 1
            return None
        value = self._entries.get(str(key))
        if value is None:
            self._misses += 1
        else:
            self._hits += 1
        return value

    def add(self, key: str, value: str) -> None:
        """Record a mapping created during the run."""
        self._entries[str(key)] = value

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        """Get lookup statistics for monitoring."""
        total = self._hits + self._misses
        return {
            "name": self.name,
            "size": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
        }
