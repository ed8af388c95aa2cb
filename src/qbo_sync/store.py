"""
Relational store capability used by the sync engine.

The engine never talks to a database directly. It needs a handful of
primitives (insert, conditional update, select, natural-key upsert and
unique insert) and every table row is a plain dict with a string `id`.

`InMemorySyncStore` is the reference implementation used by tests, the CLI
and the API server; `qbo_sync.state.JsonFileSyncStore` adds persistence.
"""

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Collection, Mapping, Sequence
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

Row = dict[str, Any]
Predicate = Callable[[Row], bool]


class SyncStore(ABC):
    """Async table store keyed by row id."""

    @abstractmethod
    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        """Insert a row, assigning an `id` when absent. Returns the stored row."""

    @abstractmethod
    async def get(self, table: str, row_id: str) -> Row | None:
        """Fetch a row by id."""

    @abstractmethod
    async def update(self, table: str, row_id: str, changes: Mapping[str, Any]) -> Row | None:
        """Apply `changes` to a row. Returns the new row, or None if missing."""

    @abstractmethod
    async def update_where(
        self,
        table: str,
        row_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Row | None:
        """
        Compare-and-set: apply `changes` only if every `expected` field matches.

        Returns the new row, or None when the row is missing or a field differs.
        """

    @abstractmethod
    async def select(
        self,
        table: str,
        where: Mapping[str, Any] | None = None,
        *,
        where_in: Mapping[str, Collection[Any]] | None = None,
        predicate: Predicate | None = None,
        order_by: Sequence[str] = (),
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        """Rows matching every equality in `where`, membership in `where_in`
        and `predicate`, sorted by `order_by` fields."""

    @abstractmethod
    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on: Sequence[str],
    ) -> list[Row]:
        """
        Insert or update rows by natural key.

        A row whose `on` fields match an existing row is merged into it;
        otherwise it is inserted. Returns stored rows in input order.
        """

    @abstractmethod
    async def insert_if_absent(
        self,
        table: str,
        row: Mapping[str, Any],
        key: Sequence[str],
    ) -> tuple[Row, bool]:
        """
        Insert unless a row with the same `key` fields exists.

        Returns (row, created). When not created, the existing row is returned.
        """


def _sort_key(fields: Sequence[str]) -> Callable[[Row], tuple]:
    # None sorts first and never compares against a real value
    def key(row: Row) -> tuple:
        return tuple((row.get(f) is not None, row.get(f)) for f in fields)

    return key


class InMemorySyncStore(SyncStore):
    """
    Dict-backed store guarded by a single asyncio lock.

    Rows are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self, tables: Mapping[str, Mapping[str, Row]] | None = None):
        self._tables: dict[str, dict[str, Row]] = {
            name: {row_id: dict(row) for row_id, row in rows.items()}
            for name, rows in (tables or {}).items()
        }
        self._lock = asyncio.Lock()

    def _table(self, name: str) -> dict[str, Row]:
        return self._tables.setdefault(name, {})

    async def _commit(self) -> None:
        """Hook run after every mutation while the lock is held."""

    def snapshot(self) -> dict[str, dict[str, Row]]:
        """Deep copy of every table."""
        return copy.deepcopy(self._tables)

    def _insert_locked(self, table: str, row: Mapping[str, Any]) -> Row:
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))
        self._table(table)[stored["id"]] = stored
        return stored

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        async with self._lock:
            stored = self._insert_locked(table, row)
            await self._commit()
            return dict(stored)

    async def get(self, table: str, row_id: str) -> Row | None:
        row = self._table(table).get(row_id)
        return dict(row) if row is not None else None

    async def update(self, table: str, row_id: str, changes: Mapping[str, Any]) -> Row | None:
        async with self._lock:
            row = self._table(table).get(row_id)
            if row is None:
                return None
            row.update(changes)
            await self._commit()
            return dict(row)

    async def update_where(
        self,
        table: str,
        row_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Row | None:
        async with self._lock:
            row = self._table(table).get(row_id)
            if row is None:
                return None
            if any(row.get(k) != v for k, v in expected.items()):
                return None
            row.update(changes)
            await self._commit()
            return dict(row)

    async def select(
        self,
        table: str,
        where: Mapping[str, Any] | None = None,
        *,
        where_in: Mapping[str, Collection[Any]] | None = None,
        predicate: Predicate | None = None,
        order_by: Sequence[str] = (),
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        where = where or {}
        where_in = where_in or {}
        rows = [
            row
            for row in self._table(table).values()
            if all(row.get(k) == v for k, v in where.items())
            and all(row.get(k) in values for k, values in where_in.items())
            and (predicate is None or predicate(row))
        ]
        if order_by:
            rows.sort(key=_sort_key(order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [dict(row) for row in rows]

    def _find_locked(self, table: str, row: Mapping[str, Any], key: Sequence[str]) -> Row | None:
        for existing in self._table(table).values():
            if all(existing.get(k) == row.get(k) for k in key):
                return existing
        return None

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on: Sequence[str],
    ) -> list[Row]:
        if not rows:
            return []
        async with self._lock:
            stored: list[Row] = []
            for row in rows:
                existing = self._find_locked(table, row, on)
                if existing is None:
                    stored.append(dict(self._insert_locked(table, row)))
                else:
                    changes = {k: v for k, v in row.items() if k != "id"}
                    existing.update(changes)
                    stored.append(dict(existing))
            await self._commit()
            return stored

    async def insert_if_absent(
        self,
        table: str,
        row: Mapping[str, Any],
        key: Sequence[str],
    ) -> tuple[Row, bool]:
        async with self._lock:
            existing = self._find_locked(table, row, key)
            if existing is not None:
                return dict(existing), False
            stored = self._insert_locked(table, row)
            await self._commit()
            return dict(stored), True
