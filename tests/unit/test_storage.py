"""Tests for comfyrelay.core.storage — the flat JSON usage store.

Tests cover:
- Timestamp formatting and parsing helpers.
- Forgiving JSON reads (missing and corrupt files).
- User registration, credit mutation and blocking.
- Generation and event recording, including peer directory merging.
- Site statistics and retention cleanup.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from comfyrelay.core.storage import (
    EVENTS_FILE,
    GENERATIONS_FILE,
    USERS_FILE,
    UsageStore,
    isoformat,
    load_json,
    parse_timestamp,
)


def _write(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


class TestTimestamps:
    def test_isoformat_uses_z_suffix_and_milliseconds(self):
        moment = datetime(2025, 3, 1, 12, 30, 0, 123456, tzinfo=timezone.utc)
        assert isoformat(moment) == "2025-03-01T12:30:00.123Z"

    def test_parse_round_trips_isoformat(self):
        moment = datetime(2025, 3, 1, 12, 30, tzinfo=timezone.utc)
        assert parse_timestamp(isoformat(moment)) == moment

    def test_parse_rejects_garbage(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(12345) is None

    def test_parse_assumes_utc_for_naive_values(self):
        parsed = parse_timestamp("2025-03-01T12:30:00")
        assert parsed.tzinfo is not None


class TestLoadJson:
    def test_missing_file_returns_default(self, temp_dir: Path):
        assert load_json(temp_dir / "nope.json", []) == []

    def test_corrupt_file_returns_default(self, temp_dir: Path):
        path = temp_dir / "broken.json"
        path.write_text("{not json")
        assert load_json(path, {"fallback": True}) == {"fallback": True}


class TestDataDirectory:
    def test_uses_local_dir_without_shared_dir(self, temp_dir: Path):
        store = UsageStore(temp_dir / "local")
        assert store.resolve_data_dir() == temp_dir / "local"
        assert (temp_dir / "local").is_dir()

    def test_prefers_existing_shared_dir(self, temp_dir: Path):
        shared = temp_dir / "shared"
        shared.mkdir()
        store = UsageStore(temp_dir / "local", shared_data_dir=shared)
        store.register_visit("u1", "d1", "deeplab")
        assert (shared / USERS_FILE).exists()
        assert not (temp_dir / "local" / USERS_FILE).exists()

    def test_falls_back_when_shared_dir_missing(self, temp_dir: Path):
        store = UsageStore(temp_dir / "local", shared_data_dir=temp_dir / "missing")
        assert store.resolve_data_dir() == temp_dir / "local"


class TestUsers:
    def test_register_visit_creates_user_with_initial_credits(self, temp_dir: Path):
        store = UsageStore(temp_dir, initial_credits=3)
        user = store.register_visit("u1", "d1", "deeplab", "10.0.0.1")

        assert user["credits"] == 3
        assert user["sitesUsed"] == ["deeplab"]
        assert user["isBlocked"] is False
        assert user["totalGenerations"] == 0
        assert user["ipAddress"] == "10.0.0.1"
        assert store.get_user("u1") == user

    def test_users_file_has_envelope(self, temp_dir: Path):
        store = UsageStore(temp_dir)
        store.register_visit("u1", "d1", "deeplab")

        raw = json.loads((temp_dir / USERS_FILE).read_text())
        assert raw["version"] == "1.0.0"
        assert "lastUpdated" in raw
        assert "u1" in raw["users"]

    def test_bare_mapping_accepted_on_read(self, temp_dir: Path):
        _write(temp_dir / USERS_FILE, {"u1": {"userId": "u1", "credits": 5}})
        store = UsageStore(temp_dir)
        assert store.get_user("u1")["credits"] == 5

    def test_returning_visit_adds_site_once(self, temp_dir: Path):
        store = UsageStore(temp_dir)
        store.register_visit("u1", "d1", "deeplab")
        store.register_visit("u1", "d1", "nudeet")
        user = store.register_visit("u1", "d1", "nudeet")
        assert user["sitesUsed"] == ["deeplab", "nudeet"]

    def test_returning_visit_repairs_null_sites_used(self, temp_dir: Path):
        _write(temp_dir / USERS_FILE, {"u1": {"userId": "u1", "credits": 2, "sitesUsed": None}})
        store = UsageStore(temp_dir)

        user = store.register_visit("u1", "d1", "deeplab")

        assert user["sitesUsed"] == ["deeplab"]
        assert store.get_user("u1")["sitesUsed"] == ["deeplab"]

    def test_returning_visit_keeps_credits(self, temp_dir: Path):
        store = UsageStore(temp_dir, initial_credits=1)
        store.register_visit("u1", "d1", "deeplab")
        store.update_user_credits("u1", 7)
        assert store.register_visit("u1", "d1", "deeplab")["credits"] == 7

    def test_update_credits(self, temp_dir: Path):
        store = UsageStore(temp_dir)
        store.register_visit("u1", "d1", "deeplab")
        assert store.update_user_credits("u1", 12) is True
        assert store.get_user("u1")["credits"] == 12

    def test_add_credits(self, temp_dir: Path):
        store = UsageStore(temp_dir, initial_credits=2)
        store.register_visit("u1", "d1", "deeplab")
        assert store.add_user_credits("u1", 5) is True
        assert store.get_user("u1")["credits"] == 7

    def test_block_and_unblock(self, temp_dir: Path):
        store = UsageStore(temp_dir)
        store.register_visit("u1", "d1", "deeplab")
        assert store.block_user("u1", True) is True
        assert store.get_user("u1")["isBlocked"] is True
        store.block_user("u1", False)
        assert store.get_user("u1")["isBlocked"] is False

    def test_mutations_on_unknown_user_return_false(self, temp_dir: Path):
        store = UsageStore(temp_dir)
        assert store.update_user_credits("ghost", 1) is False
        assert store.add_user_credits("ghost", 1) is False
        assert store.block_user("ghost", True) is False
        assert not (temp_dir / USERS_FILE).exists()


class TestGenerationsAndEvents:
    def test_record_generation_lifts_error_and_ip(self, temp_dir: Path):
        store = UsageStore(temp_dir)
        record = store.record_generation(
            "u1", "d1", "deeplab", False, {"error": "boom", "ipAddress": "1.2.3.4", "style": "suit"}
        )
        assert record["error"] == "boom"
        assert record["ipAddress"] == "1.2.3.4"
        assert record["metadata"]["style"] == "suit"
        assert store.get_generations() == [record]

    def test_success_increments_total_generations(self, temp_dir: Path):
        store = UsageStore(temp_dir)
        store.register_visit("u1", "d1", "deeplab")
        store.record_generation("u1", "d1", "deeplab", True)
        store.record_generation("u1", "d1", "deeplab", False)
        assert store.get_user("u1")["totalGenerations"] == 1

    def test_success_for_unknown_user_only_appends(self, temp_dir: Path):
        store = UsageStore(temp_dir)
        store.record_generation("anon", "d1", "nudeet", True)
        assert store.get_user("anon") is None
        assert len(store.get_generations()) == 1

    def test_log_user_event(self, temp_dir: Path):
        store = UsageStore(temp_dir)
        event = store.log_user_event("u1", "d1", "page_view", "deeplab", {"ipAddress": "9.9.9.9"})
        assert event["action"] == "page_view"
        assert event["ipAddress"] == "9.9.9.9"
        assert store.get_user_events()[0]["id"] == event["id"]

    def test_listings_merge_peer_dirs_newest_first(self, temp_dir: Path):
        peer = temp_dir / "peer"
        _write(
            peer / GENERATIONS_FILE,
            [{"id": "old", "site": "nudeet", "timestamp": "2020-01-01T00:00:00.000Z"}],
        )
        _write(
            peer / EVENTS_FILE,
            [{"id": "peer-event", "site": "nudeet", "timestamp": "2020-01-01T00:00:00.000Z"}],
        )
        store = UsageStore(temp_dir / "local", peer_data_dirs=[peer])
        fresh = store.record_generation("u1", "d1", "deeplab", True)
        store.log_user_event("u1", "d1", "visit", "deeplab")

        assert [g["id"] for g in store.get_generations()] == [fresh["id"], "old"]
        assert store.get_user_events()[-1]["id"] == "peer-event"


class TestStatsAndCleanup:
    def test_site_stats(self, temp_dir: Path):
        store = UsageStore(temp_dir, initial_credits=5)
        store.register_visit("u1", "d1", "deeplab")
        store.register_visit("u2", "d2", "nudeet")
        store.record_generation("u1", "d1", "deeplab", True)
        store.record_generation("u1", "d1", "deeplab", False)
        store.record_generation("u2", "d2", "nudeet", True)

        stats = store.get_site_stats("deeplab")
        assert stats["totalUsers"] == 1
        assert stats["totalGenerations"] == 2
        assert stats["totalSuccessfulGenerations"] == 1
        assert stats["totalFailedGenerations"] == 1
        assert stats["totalCreditsUsed"] == 1
        assert "lastUpdated" in stats

    def test_site_stats_tolerates_malformed_sites_used(self, temp_dir: Path):
        _write(
            temp_dir / USERS_FILE,
            {
                "u1": {"userId": "u1", "sitesUsed": None},
                "u2": {"userId": "u2", "sitesUsed": "deeplab", "totalGenerations": 2},
            },
        )
        stats = UsageStore(temp_dir).get_site_stats("deeplab")
        assert stats["totalUsers"] == 1
        assert stats["totalCreditsUsed"] == 2

    def test_clean_old_data_removes_expired_and_unparseable(self, temp_dir: Path):
        now = datetime(2025, 6, 1, tzinfo=timezone.utc)
        recent = isoformat(now - timedelta(days=2))
        expired = isoformat(now - timedelta(days=45))
        _write(
            temp_dir / GENERATIONS_FILE,
            [
                {"id": "keep", "timestamp": recent},
                {"id": "drop", "timestamp": expired},
                {"id": "bad", "timestamp": "not a date"},
            ],
        )
        _write(temp_dir / EVENTS_FILE, [{"id": "gone", "timestamp": expired}])

        store = UsageStore(temp_dir, retention_days=30)
        result = store.clean_old_data(now=now)

        assert result == {"generationsRemoved": 2, "eventsRemoved": 1}
        assert [g["id"] for g in store.get_generations()] == ["keep"]
        assert store.get_user_events() == []

    def test_clean_old_data_leaves_peers_untouched(self, temp_dir: Path):
        peer = temp_dir / "peer"
        old = [{"id": "peer-old", "timestamp": "2000-01-01T00:00:00.000Z"}]
        _write(peer / GENERATIONS_FILE, old)

        store = UsageStore(temp_dir / "local", peer_data_dirs=[peer])
        store.clean_old_data()

        assert json.loads((peer / GENERATIONS_FILE).read_text()) == old
