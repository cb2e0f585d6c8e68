"""
Row types for the tracker's SQLite tables.

Rows come back from sqlite3 as mappings; these frozen dataclasses give the
detector and API typed, immutable views of them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from backend.core.utils import format_timestamp, hours_between, parse_timestamp, safe_int, utc_now


@dataclass(frozen=True)
class Kingdom:
    id: int
    loc: str
    name: str | None = None
    stance: str | None = None
    honor: int | None = None
    nw: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Kingdom":
        return cls(
            id=int(row["id"]),
            loc=str(row["loc"] or ""),
            name=row["name"],
            stance=row["stance"],
            honor=safe_int(row["honor"]),
            nw=safe_int(row["nw"]),
        )

    @property
    def label(self) -> str:
        return f"{self.name or 'Unknown'} ({self.loc})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "loc": self.loc,
            "name": self.name,
            "stance": self.stance,
            "honor": self.honor,
            "nw": self.nw,
        }


@dataclass(frozen=True)
class KingdomSnapshot:
    id: int
    kingdom_id: int
    loc: str
    snapshot_time: datetime
    total_land: int
    total_honor: int
    provinces: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "KingdomSnapshot":
        provinces: Any = []
        raw = row["provinces_json"]
        if raw:
            try:
                provinces = json.loads(raw)
            except ValueError:
                provinces = []
        return cls(
            id=int(row["id"]),
            kingdom_id=int(row["kingdom_id"]),
            loc=str(row["loc"]),
            snapshot_time=parse_timestamp(row["snapshot_time"]) or utc_now(),
            total_land=safe_int(row["total_land"]) or 0,
            total_honor=safe_int(row["total_honor"]) or 0,
            provinces=provinces if isinstance(provinces, list) else [],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "loc": self.loc,
            "snapshot_time": format_timestamp(self.snapshot_time),
            "total_land": self.total_land,
            "total_honor": self.total_honor,
            "province_count": len(self.provinces),
        }


@dataclass(frozen=True)
class EowcfRecord:
    """One side of a detected end-of-war cease-fire window."""

    id: int
    kingdom_id: int
    loc: str
    eowcf_start: datetime
    eowcf_end: datetime
    detected_at: datetime
    reason: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EowcfRecord":
        start = parse_timestamp(row["eowcf_start"])
        end = parse_timestamp(row["eowcf_end"])
        if start is None or end is None:
            raise ValueError(f"EoWCF record {row['id']} is missing its window")
        return cls(
            id=int(row["id"]),
            kingdom_id=int(row["kingdom_id"]),
            loc=str(row["loc"]),
            eowcf_start=start,
            eowcf_end=end,
            detected_at=parse_timestamp(row["detected_at"]) or start,
            reason=row["reason"],
        )

    def ticks_remaining(self, reference_time: datetime | None = None) -> int:
        # Ticks are game hours; negative once the window has closed.
        return hours_between(reference_time or utc_now(), self.eowcf_end)

    def to_dict(self, reference_time: datetime | None = None) -> dict[str, Any]:
        return {
            "id": self.id,
            "kingdom_id": self.kingdom_id,
            "loc": self.loc,
            "eowcf_start": format_timestamp(self.eowcf_start),
            "eowcf_end": format_timestamp(self.eowcf_end),
            "detected_at": format_timestamp(self.detected_at),
            "reason": self.reason,
            "ticks_remaining": self.ticks_remaining(reference_time),
        }
