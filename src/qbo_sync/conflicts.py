"""
Conflict detection and resolution between local and QuickBooks records.

A record conflicts when both sides changed since it was last synced.
Resolution is a pure choice of which side's data is written.
"""

from datetime import datetime
from enum import Enum
from typing import TypeVar

from qbo_sync.coercion import ensure_utc

T = TypeVar("T")


class ConflictStrategy(str, Enum):
    EXTERNAL_WINS = "external_wins"
    INTERNAL_WINS = "internal_wins"
    NEWEST_WINS = "newest_wins"


def is_conflicting(
    local_updated_at: datetime | None,
    external_updated_at: datetime | None,
    last_synced_at: datetime | None,
) -> bool:
    """True when both sides were modified after `last_synced_at`."""
    if local_updated_at is None or external_updated_at is None or last_synced_at is None:
        return False
    last = ensure_utc(last_synced_at)
    return ensure_utc(local_updated_at) > last and ensure_utc(external_updated_at) > last


def resolve_conflict(
    local: T,
    external: T,
    strategy: ConflictStrategy,
    *,
    local_updated_at: datetime | None = None,
    external_updated_at: datetime | None = None,
) -> T:
    """
    Pick the winning record.

    `newest_wins` compares the two timestamps and keeps the local record
    on a tie or when either timestamp is unknown.
    """
    strategy = ConflictStrategy(strategy)
    if strategy is ConflictStrategy.EXTERNAL_WINS:
        return external
    if strategy is ConflictStrategy.INTERNAL_WINS:
        return local

    if local_updated_at is None or external_updated_at is None:
        return local
    if ensure_utc(external_updated_at) > ensure_utc(local_updated_at):
        return external
    return local
