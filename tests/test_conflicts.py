"""
Tests for conflict detection and resolution.
"""

from datetime import datetime, timedelta, timezone

import pytest

from qbo_sync.conflicts import ConflictStrategy, is_conflicting, resolve_conflict

SYNCED = datetime(2024, 2, 1, tzinfo=timezone.utc)
EARLY = SYNCED + timedelta(days=4)
LATE = SYNCED + timedelta(days=9)


class TestIsConflicting:

    def test_both_sides_changed(self):
        assert is_conflicting(EARLY, LATE, SYNCED)

    def test_only_external_changed(self):
        assert not is_conflicting(SYNCED - timedelta(days=1), LATE, SYNCED)

    def test_never_synced(self):
        assert not is_conflicting(EARLY, LATE, None)

    def test_naive_timestamps_are_utc(self):
        assert is_conflicting(EARLY.replace(tzinfo=None), LATE, SYNCED)


class TestResolveConflict:

    @pytest.mark.parametrize("strategy, expected", [
        (ConflictStrategy.EXTERNAL_WINS, "external"),
        (ConflictStrategy.INTERNAL_WINS, "local"),
        ("external_wins", "external"),
    ])
    def test_fixed_strategies(self, strategy, expected):
        winner = resolve_conflict(
            "local", "external", strategy,
            local_updated_at=LATE, external_updated_at=EARLY,
        )
        assert winner == expected

    def test_newest_wins_external_newer(self):
        winner = resolve_conflict(
            "local", "external", ConflictStrategy.NEWEST_WINS,
            local_updated_at=EARLY, external_updated_at=LATE,
        )
        assert winner == "external"

    def test_newest_wins_local_newer(self):
        winner = resolve_conflict(
            "local", "external", ConflictStrategy.NEWEST_WINS,
            local_updated_at=LATE, external_updated_at=EARLY,
        )
        assert winner == "local"

    def test_newest_wins_tie_keeps_local(self):
        winner = resolve_conflict(
            "local", "external", ConflictStrategy.NEWEST_WINS,
            local_updated_at=LATE, external_updated_at=LATE,
        )
        assert winner == "local"

    def test_newest_wins_missing_timestamp_keeps_local(self):
        winner = resolve_conflict(
            "local", "external", ConflictStrategy.NEWEST_WINS,
            external_updated_at=LATE,
        )
        assert winner == "local"

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            resolve_conflict("local", "external", "coin_flip")
