"""
History helpers: kingdom sync and snapshot recording.

sync_kingdoms() overwrites the latest kingdom/province state from a dump;
save_snapshots() then appends one metric snapshot per kingdom.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any

from backend.core.database import KingdomDatabase
from backend.core.errors import DuplicateLocError
from backend.core.utils import safe_int, to_utc

logger = logging.getLogger(__name__)


def find_duplicate_locs(kingdoms: list[dict[str, Any]]) -> list[str]:
    counts = Counter(k.get("loc") for k in kingdoms)
    return sorted(str(loc) for loc, n in counts.items() if loc and n > 1)


def sync_kingdoms(db: KingdomDatabase, kingdoms: list[dict[str, Any]]) -> int:
    """Write the dump's kingdoms and provinces to the DB.

    Raises:
        DuplicateLocError: If a loc appears more than once (nothing is written).
    """
    duplicates = find_duplicate_locs(kingdoms)
    if duplicates:
        raise DuplicateLocError(duplicates)
    count = db.replace_kingdoms(kingdoms)
    logger.info(f"Synced {count} kingdoms")
    return count


def build_snapshot_totals(provinces: list[dict[str, Any]]) -> tuple[int, int]:
    total_land = sum(safe_int(p.get("land")) or 0 for p in provinces)
    total_honor = sum(safe_int(p.get("honor")) or 0 for p in provinces)
    return total_land, total_honor


def save_snapshots(db: KingdomDatabase, snapshot_time: datetime | str | None = None) -> int:
    """Append a snapshot for every kingdom from its current provinces.

    Returns:
        Number of snapshots written.
    """
    t = to_utc(snapshot_time)
    saved = 0
    for kingdom in db.iter_kingdoms():
        if not kingdom.loc:
            continue
        provinces = db.get_provinces(kingdom.id)
        total_land, total_honor = build_snapshot_totals(provinces)
        db.insert_snapshot(
            kingdom_id=kingdom.id,
            loc=kingdom.loc,
            snapshot_time=t,
            total_land=total_land,
            total_honor=total_honor,
            provinces=provinces,
        )
        saved += 1
    logger.info(f"Saved {saved} kingdom snapshots at {t.isoformat()}")
    return saved
