# tests/test_x402_activity.py
"""
Unit tests for the activity log.
"""
import json
import pytest
from unittest.mock import patch

from app.x402.activity import (
    ActivityType,
    create_activity_event,
    get_activity_log_path,
    get_activity_stats,
    log_activity,
    read_activity_log,
)


@pytest.fixture
def log_path(tmp_path):
    path = tmp_path / "nested" / "activity.jsonl"
    with patch("app.x402.activity.settings") as mock_settings:
        mock_settings.ACTIVITY_LOG_PATH = str(path)
        yield path


class TestActivityType:
    def test_wire_values(self):
        assert ActivityType.PAYMENT_REQUIRED.value == "402"
        assert ActivityType.PAYMENT.value == "payment"
        assert ActivityType.REPLAY_BLOCKED.value == "replay_blocked"
        assert ActivityType.REGISTER.value == "register"


class TestCreateActivityEvent:
    def test_fields(self):
        event = create_activity_event(ActivityType.PAYMENT, "Weather API - 0.02 USDC", 0.02, "0xabc")
        assert event["type"] == "payment"
        assert event["detail"] == "Weather API - 0.02 USDC"
        assert event["amount"] == 0.02
        assert event["tx_hash"] == "0xabc"
        assert "timestamp" in event

    def test_tx_hash_omitted_when_absent(self):
        event = create_activity_event(ActivityType.PAYMENT_REQUIRED, "Weather API - payment requested")
        assert "tx_hash" not in event
        assert event["amount"] == 0


class TestLogActivity:
    def test_creates_directory_and_appends(self, log_path):
        log_activity(ActivityType.PAYMENT_REQUIRED, "first")
        log_activity(ActivityType.PAYMENT, "second", amount=1, tx_hash="0x1")

        assert get_activity_log_path() == log_path
        lines = log_path.read_text().strip().split("\n")
        assert len(lines) == 2
        assert json.loads(lines[1])["tx_hash"] == "0x1"

    def test_write_failure_is_swallowed(self, tmp_path):
        """A directory in place of the log file cannot be opened; no exception escapes."""
        blocker = tmp_path / "activity.jsonl"
        blocker.mkdir()
        with patch("app.x402.activity.settings") as mock_settings:
            mock_settings.ACTIVITY_LOG_PATH = str(blocker)
            assert log_activity(ActivityType.PAYMENT, "lost") is None


class TestReadActivityLog:
    def test_missing_file(self, log_path):
        assert read_activity_log() == []

    def test_most_recent_first_and_limit(self, log_path):
        for i in range(5):
            log_activity(ActivityType.PAYMENT_REQUIRED, f"event {i}")

        events = read_activity_log(max_entries=2)

        assert [e["detail"] for e in events] == ["event 4", "event 3"]

    def test_filter_by_type(self, log_path):
        log_activity(ActivityType.PAYMENT_REQUIRED, "challenge")
        log_activity(ActivityType.REPLAY_BLOCKED, "replay", tx_hash="0x1")

        events = read_activity_log(event_type=ActivityType.REPLAY_BLOCKED)

        assert len(events) == 1
        assert events[0]["detail"] == "replay"

    def test_skips_corrupt_lines(self, log_path):
        log_activity(ActivityType.PAYMENT, "good", amount=1)
        with open(log_path, "a") as f:
            f.write("{not json\n\n")

        assert len(read_activity_log()) == 1


class TestActivityStats:
    def test_no_log(self, log_path):
        stats = get_activity_stats()
        assert stats["total_events"] == 0
        assert stats["log_exists"] is False

    def test_counts_and_paid_total(self, log_path):
        log_activity(ActivityType.PAYMENT_REQUIRED, "a")
        log_activity(ActivityType.PAYMENT, "b", amount=0.02, tx_hash="0x1")
        log_activity(ActivityType.PAYMENT, "c", amount=1, tx_hash="0x2")

        stats = get_activity_stats()

        assert stats["total_events"] == 3
        assert stats["events_by_type"] == {"402": 1, "payment": 2}
        assert stats["total_paid_usdc"] == pytest.approx(1.02)
