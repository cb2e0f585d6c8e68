"""
End-of-war detection.

Compares each warring kingdom's two newest snapshots with its opponent's.
When one side gains land and the other loses it past the threshold, the war
is considered over: both kingdoms get an EoWCF (end-of-war cease-fire) record
for the same window and a notification is sent once.

The pass is safe to repeat: a pair is skipped while either kingdom still has
an open EoWCF window, which also makes the result independent of the order
kingdoms are visited in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from backend.core.database import KingdomDatabase
from backend.core.models import EowcfRecord, Kingdom
from backend.core.notifier import Notifier, NotifyResult, NullNotifier
from backend.core.stance import is_at_war, parse_opponent_loc
from backend.core.utils import floor_to_hour, relative_change, to_utc

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Detected via land/honor reallocation (automatic)"


@dataclass(frozen=True)
class DetectorConfig:
    """Detection tunables.

    honor_change_threshold is carried for reporting only; honor never gates a
    detection.
    """

    land_change_threshold: float = 0.03
    honor_change_threshold: float = 0.03
    eowcf_duration: timedelta = timedelta(hours=96)
    reason: str = DEFAULT_REASON


@dataclass(frozen=True)
class WarEndAssessment:
    kingdom: Kingdom
    opponent: Kingdom
    land_change: float
    opp_land_change: float
    honor_change: float
    opp_honor_change: float
    winner: Kingdom | None = None
    loser: Kingdom | None = None

    @property
    def detected(self) -> bool:
        return self.winner is not None and self.loser is not None


def classify_war_end(change: float, opp_change: float, threshold: float) -> str | None:
    """Return "kingdom" or "opponent" for the side that won land, else None.

    Both comparisons are inclusive.
    """
    if change >= threshold and opp_change <= -threshold:
        return "kingdom"
    if opp_change >= threshold and change <= -threshold:
        return "opponent"
    return None


def eowcf_window(detection_time: datetime, duration: timedelta) -> tuple[datetime, datetime]:
    """EoWCF starts at the top of the detection hour (UTC)."""
    start = floor_to_hour(to_utc(detection_time))
    return start, start + duration


def format_war_end_message(
    *,
    winner: Kingdom,
    loser: Kingdom,
    eowcf_start: datetime,
    eowcf_end: datetime,
) -> str:
    ticks = int((eowcf_end - eowcf_start) // timedelta(hours=1))
    return (
        f"🍓 Strawberry: Detected end of active war between {winner.label} and {loser.label}. "
        f"Winner: {winner.label}, loser: {loser.label}. "
        f"EoWCF started at {eowcf_start:%Y-%m-%d %H:%M} UTC and ends at "
        f"{eowcf_end:%Y-%m-%d %H:%M} UTC ({ticks} ticks)."
    )


class WarEowcfDetector:
    """Runs end-of-war detection over the kingdoms in a KingdomDatabase."""

    def __init__(
        self,
        db: KingdomDatabase,
        notifier: Notifier | None = None,
        config: DetectorConfig | None = None,
    ):
        self.db = db
        self.notifier = notifier if notifier is not None else NullNotifier()
        self.config = config or DetectorConfig()

    def run(
        self,
        detection_time: datetime | str | None = None,
        *,
        kingdoms: Iterable[Kingdom] | None = None,
    ) -> list[EowcfRecord]:
        """Run one detection pass and return the EoWCF records it created.

        Args:
            detection_time: Used verbatim for the EoWCF window (default: now).
            kingdoms: Visit only these kingdoms, in this order (default: all).
        """
        t = to_utc(detection_time)
        created: list[EowcfRecord] = []
        visit = list(kingdoms) if kingdoms is not None else self.db.iter_kingdoms()

        for kingdom in visit:
            try:
                opponent = self._resolve_opponent(kingdom)
                if opponent is None:
                    continue
                created.extend(self._detect_pair(kingdom, opponent, t))
            except Exception:
                logger.exception(f"[WarEowcfDetector] Error checking kingdom {kingdom.loc!r}")

        logger.info(
            f"[WarEowcfDetector] Detection run at {t.isoformat()}, "
            f"created {len(created)} new EoWCF records."
        )
        return created

    def check_kingdom(self, loc: str, detection_time: datetime | str | None = None) -> list[EowcfRecord]:
        """Run detection for a single kingdom (by loc) against its war opponent."""
        t = to_utc(detection_time)
        created: list[EowcfRecord] = []

        kingdom = self.db.get_kingdom_by_loc(loc)
        if kingdom is None:
            logger.info(f"[WarEowcfDetector] No kingdom found at loc {loc}")
            return created

        try:
            opponent = self._resolve_opponent(kingdom)
            if opponent is not None:
                created = self._detect_pair(kingdom, opponent, t)
        except Exception:
            logger.exception(f"[WarEowcfDetector] Error checking kingdom {loc!r}")
            return []

        logger.info(f"[WarEowcfDetector] check_kingdom({loc}) created {len(created)} EoWCF records.")
        return created

    def _resolve_opponent(self, kingdom: Kingdom) -> Kingdom | None:
        if not kingdom.loc:
            logger.info(f"[WarEowcfDetector] Kingdom #{kingdom.id} has no loc, skipping.")
            return None

        if not is_at_war(kingdom.stance):
            logger.info(f"[WarEowcfDetector] Kingdom {kingdom.label} not at war, skipping.")
            return None

        opponent_loc = parse_opponent_loc(kingdom.stance)
        if not opponent_loc:
            logger.info(
                f"[WarEowcfDetector] Kingdom {kingdom.label} stance {kingdom.stance!r} "
                "does not include opponent loc, skipping."
            )
            return None

        opponent = self.db.get_kingdom_by_loc(opponent_loc)
        if opponent is None:
            logger.info(f"[WarEowcfDetector] Opponent kingdom not found at loc {opponent_loc}, skipping.")
            return None
        return opponent

    def assess(self, kingdom: Kingdom, opponent: Kingdom) -> WarEndAssessment | None:
        """Compare the two newest snapshots of both kingdoms.

        Returns None when either side has fewer than two snapshots.
        """
        snaps = self.db.get_recent_snapshots(kingdom.loc, limit=2)
        opp_snaps = self.db.get_recent_snapshots(opponent.loc, limit=2)
        if len(snaps) < 2 or len(opp_snaps) < 2:
            logger.info(
                f"[WarEowcfDetector] Not enough snapshots to compare for {kingdom.loc} "
                f"or {opponent.loc}, skipping."
            )
            return None

        current_snap, prev_snap = snaps[0], snaps[1]
        current_snap_op, prev_snap_op = opp_snaps[0], opp_snaps[1]

        change = relative_change(prev_snap.total_land, current_snap.total_land)
        opp_change = relative_change(prev_snap_op.total_land, current_snap_op.total_land)
        honor_change = relative_change(prev_snap.total_honor, current_snap.total_honor)
        opp_honor_change = relative_change(prev_snap_op.total_honor, current_snap_op.total_honor)

        logger.debug(
            f"[WarEowcfDetector] {kingdom.label} land {change:+.4f} honor {honor_change:+.4f}; "
            f"{opponent.label} land {opp_change:+.4f} honor {opp_honor_change:+.4f}"
        )

        side = classify_war_end(change, opp_change, self.config.land_change_threshold)
        winner, loser = None, None
        if side == "kingdom":
            winner, loser = kingdom, opponent
        elif side == "opponent":
            winner, loser = opponent, kingdom

        return WarEndAssessment(
            kingdom=kingdom,
            opponent=opponent,
            land_change=change,
            opp_land_change=opp_change,
            honor_change=honor_change,
            opp_honor_change=opp_honor_change,
            winner=winner,
            loser=loser,
        )

    def _detect_pair(self, kingdom: Kingdom, opponent: Kingdom, t: datetime) -> list[EowcfRecord]:
        assessment = self.assess(kingdom, opponent)
        if assessment is None or not assessment.detected:
            return []
        winner, loser = assessment.winner, assessment.loser

        eowcf_start, eowcf_end = eowcf_window(t, self.config.eowcf_duration)

        # Either side still inside any open window means this event was already recorded.
        created = self.db.create_eowcf_pair_if_absent(
            winner=winner,
            loser=loser,
            eowcf_start=eowcf_start,
            eowcf_end=eowcf_end,
            detected_at=t,
            reason=self.config.reason,
        )
        if not created:
            logger.info(
                f"[WarEowcfDetector] EoWCF already open for {winner.label} or {loser.label}, skipping."
            )
            return []

        if winner is kingdom:
            winner_change, loser_change = assessment.land_change, assessment.opp_land_change
        else:
            winner_change, loser_change = assessment.opp_land_change, assessment.land_change
        logger.info(
            f"[WarEowcfDetector] End of war detected: {winner.label} beat {loser.label} "
            f"(land {winner_change:+.2%} / {loser_change:+.2%}), "
            f"EoWCF {eowcf_start.isoformat()} -> {eowcf_end.isoformat()}"
        )

        result = self._notify(
            format_war_end_message(
                winner=winner,
                loser=loser,
                eowcf_start=eowcf_start,
                eowcf_end=eowcf_end,
            )
        )
        if not result.ok:
            logger.error(f"[WarEowcfDetector] Failed to send Discord notification: {result.error}")
        return created

    def _notify(self, message: str) -> NotifyResult:
        # Records are already committed; a notifier failure must not undo them.
        try:
            return self.notifier.send(message)
        except Exception as e:
            return NotifyResult(ok=False, error=str(e))
