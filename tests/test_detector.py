"""Tests for backend.core.detector end-of-war detection."""

import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conftest import DETECTION_TIME, add_kingdom, add_snapshots
from backend.core.database import KingdomDatabase
from backend.core.detector import (
    DEFAULT_REASON,
    DetectorConfig,
    WarEowcfDetector,
    classify_war_end,
    eowcf_window,
)
from backend.core.notifier import NotifyResult, NullNotifier

WINDOW_START = datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)
WINDOW_END = datetime(2025, 1, 5, 0, 0, tzinfo=timezone.utc)


def _window_set(records):
    return {(r.loc, r.eowcf_start, r.eowcf_end) for r in records}


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    def send(self, message):
        self.calls += 1
        raise RuntimeError("webhook exploded")


class RejectingNotifier:
    def __init__(self):
        self.calls = 0

    def send(self, message):
        self.calls += 1
        return NotifyResult(ok=False, error="HTTP 500")


# --- Pure helpers ---


class TestClassifyWarEnd:
    def test_kingdom_wins(self):
        assert classify_war_end(0.05, -0.05, 0.03) == "kingdom"

    def test_opponent_wins(self):
        assert classify_war_end(-0.05, 0.05, 0.03) == "opponent"

    def test_threshold_is_inclusive(self):
        assert classify_war_end(0.03, -0.03, 0.03) == "kingdom"

    def test_below_threshold(self):
        assert classify_war_end(0.0299, -0.05, 0.03) is None
        assert classify_war_end(0.05, -0.0299, 0.03) is None

    def test_both_gain(self):
        assert classify_war_end(0.05, 0.05, 0.03) is None


def test_eowcf_window_floors_to_hour():
    start, end = eowcf_window(DETECTION_TIME, timedelta(hours=96))
    assert start == WINDOW_START
    assert end == WINDOW_END


# --- Detection pass ---


def test_end_to_end_scenario(war_pair, notifier):
    detector = WarEowcfDetector(war_pair, notifier=notifier)

    records = detector.run("2025-01-01T00:15:00Z")

    assert len(records) == 2
    assert [r.loc for r in records] == ["6:9", "8:2"]
    for r in records:
        assert r.eowcf_start == WINDOW_START
        assert r.eowcf_end == WINDOW_END
        assert r.detected_at == DETECTION_TIME
        assert r.reason == DEFAULT_REASON

    assert len(notifier.messages) == 1
    message = notifier.messages[0]
    assert "Winner: Strawberry Fields (6:9)" in message
    assert "loser: Blueberry Hill (8:2)" in message
    assert "2025-01-01 00:00 UTC" in message
    assert "2025-01-05 00:00 UTC" in message
    assert "96 ticks" in message


def test_records_are_persisted(war_pair, detector):
    detector.run(DETECTION_TIME)
    stored = war_pair.get_eowcf_records()
    assert _window_set(stored) == {
        ("6:9", WINDOW_START, WINDOW_END),
        ("8:2", WINDOW_START, WINDOW_END),
    }


def test_opponent_can_be_winner(db, detector, notifier):
    add_kingdom(db, "1:1", name="Loser", stance="war 2:2")
    add_kingdom(db, "2:2", name="Winner", stance="Normal")
    add_snapshots(db, "1:1", [1000, 900])
    add_snapshots(db, "2:2", [1000, 1100])

    records = detector.run(DETECTION_TIME)

    assert [r.loc for r in records] == ["2:2", "1:1"]
    assert "Winner: Winner (2:2)" in notifier.messages[0]


def test_second_run_is_idempotent(war_pair, detector, notifier):
    first = detector.run(DETECTION_TIME)
    second = detector.run(DETECTION_TIME)

    assert len(first) == 2
    assert second == []
    assert len(war_pair.get_eowcf_records()) == 2
    assert len(notifier.messages) == 1


def test_later_run_inside_window_is_skipped(war_pair, detector, notifier):
    detector.run(DETECTION_TIME)
    assert detector.run(DETECTION_TIME + timedelta(hours=50)) == []
    assert len(notifier.messages) == 1


def test_run_after_window_closes_detects_again(war_pair, detector, notifier):
    detector.run(DETECTION_TIME)
    again = detector.run(DETECTION_TIME + timedelta(hours=97))
    assert len(again) == 2
    assert len(notifier.messages) == 2


def test_outcome_is_order_independent(tmp_path):
    results = []
    for order in (("6:9", "8:2"), ("8:2", "6:9")):
        db = KingdomDatabase(db_path=tmp_path / f"order-{'-'.join(order)}.db".replace(":", "_"))
        add_kingdom(db, "6:9", stance="war 8:2")
        add_kingdom(db, "8:2", stance="war 6:9")
        add_snapshots(db, "6:9", [1000, 1050])
        add_snapshots(db, "8:2", [1200, 1140])
        notifier = NullNotifier()
        detector = WarEowcfDetector(db, notifier=notifier)

        kingdoms = [db.get_kingdom_by_loc(loc) for loc in order]
        records = detector.run(DETECTION_TIME, kingdoms=kingdoms)

        results.append((_window_set(records), len(notifier.messages)))
        db.close()

    assert results[0] == results[1]
    assert results[0][1] == 1


def test_exact_threshold_triggers(db, detector):
    add_kingdom(db, "1:1", stance="war 2:2")
    add_kingdom(db, "2:2", stance="war 1:1")
    add_snapshots(db, "1:1", [1000, 1030])
    add_snapshots(db, "2:2", [1000, 970])

    assert len(detector.run(DETECTION_TIME)) == 2


def test_just_below_threshold_does_not_trigger(db, detector, notifier):
    add_kingdom(db, "1:1", stance="war 2:2")
    add_kingdom(db, "2:2", stance="war 1:1")
    add_snapshots(db, "1:1", [10000, 10299])
    add_snapshots(db, "2:2", [10000, 9700])

    assert detector.run(DETECTION_TIME) == []
    assert list(notifier.messages) == []


def test_honor_does_not_gate_detection(db, detector):
    # Winner loses honor, loser gains it: still detected on land alone.
    add_kingdom(db, "1:1", stance="war 2:2")
    add_kingdom(db, "2:2", stance="war 1:1")
    add_snapshots(db, "1:1", [1000, 1100], [500, 100])
    add_snapshots(db, "2:2", [1000, 900], [100, 500])

    assessment = detector.assess(db.get_kingdom_by_loc("1:1"), db.get_kingdom_by_loc("2:2"))
    assert assessment.honor_change == pytest.approx(-0.8)
    assert assessment.opp_honor_change == pytest.approx(4.0)
    assert assessment.detected

    assert len(detector.run(DETECTION_TIME)) == 2


def test_insufficient_snapshots_never_detect(db, detector, notifier):
    add_kingdom(db, "1:1", stance="war 2:2")
    add_kingdom(db, "2:2", stance="war 1:1")
    add_snapshots(db, "1:1", [1000, 2000])
    add_snapshots(db, "2:2", [1000])

    assert detector.run(DETECTION_TIME) == []
    assert detector.check_kingdom("1:1", DETECTION_TIME) == []
    assert list(notifier.messages) == []


def test_only_two_newest_snapshots_are_compared(db, detector):
    # Big swing between the older snapshots, nothing between the newest two.
    add_kingdom(db, "1:1", stance="war 2:2")
    add_kingdom(db, "2:2", stance="war 1:1")
    add_snapshots(db, "1:1", [500, 1000, 1000])
    add_snapshots(db, "2:2", [2000, 1000, 1000])

    assert detector.run(DETECTION_TIME) == []


@pytest.mark.parametrize("stance", ["Normal", "at war with everyone", "war", "war 9:9", ""])
def test_stances_without_resolvable_opponent_never_detect(db, detector, stance):
    add_kingdom(db, "1:1", stance=stance)
    add_kingdom(db, "2:2", stance="Normal")
    add_snapshots(db, "1:1", [1000, 2000])
    add_snapshots(db, "2:2", [1000, 500])

    assert detector.run(DETECTION_TIME) == []
    assert detector.check_kingdom("1:1", DETECTION_TIME) == []


def test_existing_open_window_for_either_party_blocks_detection(war_pair, detector, notifier):
    loser = war_pair.get_kingdom_by_loc("8:2")
    earlier = datetime(2024, 12, 30, tzinfo=timezone.utc)
    war_pair.create_eowcf_record(
        kingdom=loser,
        eowcf_start=earlier,
        eowcf_end=earlier + timedelta(hours=96),
        detected_at=earlier,
        reason="previous war with 3:3",
    )

    assert detector.run(DETECTION_TIME) == []
    assert list(notifier.messages) == []


def test_notifier_exception_does_not_roll_back(war_pair):
    notifier = FailingNotifier()
    detector = WarEowcfDetector(war_pair, notifier=notifier)

    records = detector.run(DETECTION_TIME)

    assert len(records) == 2
    assert notifier.calls == 1
    assert len(war_pair.get_eowcf_records()) == 2


def test_notifier_failure_result_is_logged(war_pair, caplog):
    notifier = RejectingNotifier()
    detector = WarEowcfDetector(war_pair, notifier=notifier)

    with caplog.at_level("ERROR", logger="backend.core.detector"):
        records = detector.run(DETECTION_TIME)

    assert len(records) == 2
    assert "Failed to send Discord notification: HTTP 500" in caplog.text


def test_one_bad_kingdom_does_not_abort_pass(war_pair, detector, caplog):
    add_kingdom(war_pair, "1:1", stance="war 2:2")
    add_kingdom(war_pair, "2:2", stance="war 1:1")
    original = war_pair.get_recent_snapshots

    def flaky(loc, *, limit=2):
        if loc == "1:1":
            raise RuntimeError("disk on fire")
        return original(loc, limit=limit)

    with patch.object(war_pair, "get_recent_snapshots", side_effect=flaky):
        with caplog.at_level("ERROR", logger="backend.core.detector"):
            records = detector.run(DETECTION_TIME)

    assert {r.loc for r in records} == {"6:9", "8:2"}
    assert "Error checking kingdom '1:1'" in caplog.text


def test_run_logs_summary_even_with_no_events(db, detector, caplog):
    with caplog.at_level("INFO", logger="backend.core.detector"):
        assert detector.run(DETECTION_TIME) == []
    assert "created 0 new EoWCF records" in caplog.text


def test_run_logs_skipped_peaceful_kingdoms_at_info(db, detector, caplog):
    add_kingdom(db, "1:1", name="Quiet Meadow", stance="Normal")

    with caplog.at_level("INFO", logger="backend.core.detector"):
        detector.run(DETECTION_TIME)

    skips = [r for r in caplog.records if "not at war" in r.getMessage()]
    assert [r.levelname for r in skips] == ["INFO"]
    assert "Quiet Meadow (1:1)" in skips[0].getMessage()


def test_config_thresholds_and_duration_are_tunable(war_pair, notifier):
    strict = WarEowcfDetector(war_pair, notifier=notifier, config=DetectorConfig(land_change_threshold=0.10))
    assert strict.run(DETECTION_TIME) == []

    short = WarEowcfDetector(
        war_pair,
        notifier=notifier,
        config=DetectorConfig(eowcf_duration=timedelta(hours=24), reason="manual test"),
    )
    records = short.run(DETECTION_TIME)
    assert len(records) == 2
    assert records[0].eowcf_end == WINDOW_START + timedelta(hours=24)
    assert records[0].reason == "manual test"
    assert "24 ticks" in notifier.messages[0]


# --- Single kingdom ---


def test_check_kingdom_matches_full_pass(war_pair, detector, notifier):
    records = detector.check_kingdom("8:2", DETECTION_TIME)

    assert _window_set(records) == {
        ("6:9", WINDOW_START, WINDOW_END),
        ("8:2", WINDOW_START, WINDOW_END),
    }
    assert [r.loc for r in records] == ["6:9", "8:2"]
    assert len(notifier.messages) == 1

    # Already detected: neither a second check nor a full pass adds records.
    assert detector.check_kingdom("6:9", DETECTION_TIME) == []
    assert detector.run(DETECTION_TIME) == []


def test_check_kingdom_unknown_loc(detector):
    assert detector.check_kingdom("9:9", DETECTION_TIME) == []


def test_check_kingdom_missing_opponent(db, detector):
    add_kingdom(db, "1:1", stance="war 4:4")
    add_snapshots(db, "1:1", [1000, 2000])
    assert detector.check_kingdom("1:1", DETECTION_TIME) == []


def test_check_kingdom_error_is_contained(war_pair, detector):
    with patch.object(war_pair, "has_overlapping_eowcf", side_effect=RuntimeError("boom")):
        assert detector.check_kingdom("6:9", DETECTION_TIME) == []
    assert war_pair.get_eowcf_records() == []


def test_failed_second_insert_leaves_pair_detectable(war_pair, detector, notifier):
    real_create = war_pair.create_eowcf_record
    calls = []

    def create_then_fail(**kwargs):
        calls.append(kwargs["kingdom"].loc)
        if len(calls) == 2:
            raise RuntimeError("database is locked")
        return real_create(**kwargs)

    with patch.object(war_pair, "create_eowcf_record", side_effect=create_then_fail):
        assert detector.check_kingdom("6:9", DETECTION_TIME) == []
    assert war_pair.get_eowcf_records() == []
    assert list(notifier.messages) == []

    records = detector.run(DETECTION_TIME)

    assert [r.loc for r in records] == ["6:9", "8:2"]
    assert len(notifier.messages) == 1


def test_concurrent_passes_record_the_war_once(war_pair, notifier):
    real_overlap = war_pair.has_overlapping_eowcf

    def slow_overlap(*args, **kwargs):
        found = real_overlap(*args, **kwargs)
        time.sleep(0.05)
        return found

    detectors = [WarEowcfDetector(war_pair, notifier=notifier) for _ in range(2)]
    results = []

    with patch.object(war_pair, "has_overlapping_eowcf", side_effect=slow_overlap):
        threads = [
            threading.Thread(target=lambda d=d: results.append(d.check_kingdom("6:9", DETECTION_TIME)))
            for d in detectors
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

    assert sorted(len(r) for r in results) == [0, 2]
    assert len(war_pair.get_eowcf_records()) == 2
    assert len(notifier.messages) == 1
