"""Pytest configuration and shared fixtures for Strawberry tests."""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.core.database import KingdomDatabase
from backend.core.detector import WarEowcfDetector
from backend.core.notifier import NullNotifier

PREV_TIME = datetime(2024, 12, 31, 23, 0, tzinfo=timezone.utc)
CURR_TIME = datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)
DETECTION_TIME = datetime(2025, 1, 1, 0, 15, tzinfo=timezone.utc)


def add_kingdom(db, loc, *, name=None, stance="Normal", provinces=None):
    db.replace_kingdoms(
        [
            {
                "loc": loc,
                "name": name or f"Kingdom {loc}",
                "stance": stance,
                "honor": None,
                "nw": None,
                "provinces": provinces or [],
            }
        ]
    )
    return db.get_kingdom_by_loc(loc)


def add_snapshots(db, loc, lands, honors=None, *, start=PREV_TIME, step=timedelta(hours=1)):
    """Append one snapshot per land value, oldest first."""
    kingdom = db.get_kingdom_by_loc(loc)
    honors = honors or [0] * len(lands)
    for i, (land, honor) in enumerate(zip(lands, honors)):
        db.insert_snapshot(
            kingdom_id=kingdom.id,
            loc=loc,
            snapshot_time=start + step * i,
            total_land=land,
            total_honor=honor,
        )


@pytest.fixture
def db(tmp_path):
    database = KingdomDatabase(db_path=tmp_path / "strawberry.db")
    yield database
    database.close()


@pytest.fixture
def notifier():
    return NullNotifier()


@pytest.fixture
def detector(db, notifier):
    return WarEowcfDetector(db, notifier=notifier)


@pytest.fixture
def war_pair(db):
    """6:9 gains 5% land from 8:2, which loses 5%."""
    add_kingdom(db, "6:9", name="Strawberry Fields", stance="war 8:2")
    add_kingdom(db, "8:2", name="Blueberry Hill", stance="war 6:9")
    add_snapshots(db, "6:9", [1000, 1050], [200, 150])
    add_snapshots(db, "8:2", [1200, 1140], [300, 300])
    return db
