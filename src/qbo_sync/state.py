"""
State Persistence for Checkpoint/Resume

Enables crash recovery by persisting every store table to disk.
Sync sessions, queue jobs and webhook events survive a restart, so a run
interrupted mid-way resumes from its last checkpointed offset.
"""

import json
from datetime import date, datetime
from pathlib import Path
from typing import Any

import structlog

from qbo_sync.store import InMemorySyncStore, Row

logger = structlog.get_logger(__name__)


def _encode(value: Any) -> Any:
    """json.dump `default` hook for values JSON cannot express."""
    if isinstance(value, datetime):
        return {"__dt__": value.isoformat()}
    if isinstance(value, date):
        return {"__date__": value.isoformat()}
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode(obj: dict[str, Any]) -> Any:
    """json.load `object_hook` reversing `_encode`."""
    if len(obj) == 1:
        if "__dt__" in obj:
            return datetime.fromisoformat(obj["__dt__"])
        if "__date__" in obj:
            return date.fromisoformat(obj["__date__"])
    return obj


class JsonFileSyncStore(InMemorySyncStore):
    """
    In-memory store snapshotted to a JSON file after every mutation.

    Uses atomic write (write to temp, then rename) to prevent corruption.

    Usage:
        store = JsonFileSyncStore("/path/to/state.json")
        sessions = SessionManager(store)
    """

    def __init__(self, state_file: str | Path | None = None):
        """
        Initialize the store, loading any existing snapshot.

        Args:
            state_file: Path to state file. If None, uses default location.
        """
        if state_file is None:
            # Default: ~/.qbo-sync/state.json
            state_dir = Path.home() / ".qbo-sync"
            state_dir.mkdir(exist_ok=True)
            state_file = state_dir / "state.json"

        self.state_file = Path(state_file)
        self._log = logger.bind(state_file=str(self.state_file))
        super().__init__(self._load())

    def _load(self) -> dict[str, dict[str, Row]]:
        """Read the snapshot, or start empty if none exists."""
        if not self.state_file.exists():
            self._log.info("No existing state file, starting fresh")
            return {}

        try:
            with open(self.state_file, "r") as f:
                tables = json.load(f, object_hook=_decode)
        except (OSError, ValueError) as e:
            self._log.warning("Failed to load state, starting fresh", error=str(e))
            return {}

        self._log.info(
            "Loaded existing state",
            tables={name: len(rows) for name, rows in tables.items()},
        )
        return tables

    async def _commit(self) -> None:
        self.save()

    def save(self) -> None:
        """Write all tables to disk."""
        try:
            temp_file = self.state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(self._tables, f, indent=2, default=_encode)

            # Atomic rename
            temp_file.replace(self.state_file)
            self._log.debug("Saved state")
        except OSError as e:
            self._log.error("Failed to save state", error=str(e))
            raise

    def clear(self) -> None:
        """Delete state file and all in-memory rows (for testing or reset)."""
        self._tables.clear()
        if self.state_file.exists():
            self.state_file.unlink()
            self._log.info("Cleared state file")
