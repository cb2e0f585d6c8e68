"""
SQLite storage for the Utopia tracker.

Tables: kingdoms (latest state, unique loc), provinces (latest state per
kingdom), kingdom_snapshots (append-only metric history) and eowcf_records
(detected end-of-war cease-fire windows).
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from backend.core.models import EowcfRecord, Kingdom, KingdomSnapshot
from backend.core.utils import format_timestamp, safe_int


DEFAULT_DB_FILENAME = "strawberry.db"
ENV_DB_PATH = "STRAWBERRY_DB_PATH"


def resolve_db_path(db_path: str | Path | None = None) -> Path:
    """Resolve the DB path from explicit arg or environment default."""
    if db_path is None:
        env = os.environ.get(ENV_DB_PATH)
        if env:
            return Path(env).expanduser()
        return Path(DEFAULT_DB_FILENAME)
    return Path(db_path).expanduser()


class KingdomDatabase:
    """SQLite wrapper for kingdoms, snapshots and EoWCF records."""

    def __init__(self, db_path: str | Path | None = None):
        self.path = resolve_db_path(db_path)
        if self.path != Path(":memory:"):
            self.path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            str(self.path),
            check_same_thread=False,
            isolation_level=None,  # autocommit; we manage explicit transactions
        )
        self._conn.row_factory = sqlite3.Row
        self._configure_connection()
        self.init_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _configure_connection(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA foreign_keys = ON;")
            self._conn.execute("PRAGMA journal_mode = WAL;")
            self._conn.execute("PRAGMA synchronous = NORMAL;")
            self._conn.execute("PRAGMA busy_timeout = 5000;")

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, tuple(params))

    def get_schema_version(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
            return int(row["version"]) if row else 0

    def _set_schema_version(self, version: int) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM schema_version;")
            self._conn.execute(
                "INSERT INTO schema_version (version, updated_at) VALUES (?, strftime('%s','now'));",
                (int(version),),
            )
            self._conn.execute(f"PRAGMA user_version = {int(version)};")

    def init_schema(self) -> None:
        """Create schema and apply migrations (idempotent)."""
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                );
                """
            )
            row = self._conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version, updated_at) VALUES (0, strftime('%s','now'));"
                )
                self._conn.execute("PRAGMA user_version = 0;")

        self.apply_migrations()

    def apply_migrations(self) -> None:
        migrations: dict[int, list[str]] = {
            1: [
                """
                CREATE TABLE IF NOT EXISTS kingdoms (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    loc TEXT NOT NULL,
                    name TEXT,
                    stance TEXT,
                    honor INTEGER,
                    nw INTEGER,
                    created_at INTEGER NOT NULL DEFAULT (strftime('%s','now')),
                    updated_at INTEGER NOT NULL DEFAULT (strftime('%s','now'))
                );
                """,
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_kingdoms_loc ON kingdoms(loc);",
                """
                CREATE TABLE IF NOT EXISTS provinces (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kingdom_id INTEGER NOT NULL,
                    loc TEXT,
                    name TEXT,
                    land INTEGER,
                    race TEXT,
                    honor INTEGER,
                    nw INTEGER,
                    protected INTEGER,

                    FOREIGN KEY (kingdom_id) REFERENCES kingdoms(id) ON DELETE CASCADE
                );
                """,
                "CREATE INDEX IF NOT EXISTS idx_provinces_kingdom ON provinces(kingdom_id);",
                # One row per kingdom per sync. Looked up by loc, newest first.
                """
                CREATE TABLE IF NOT EXISTS kingdom_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kingdom_id INTEGER NOT NULL,
                    loc TEXT NOT NULL,
                    snapshot_time TEXT NOT NULL,
                    total_land INTEGER NOT NULL DEFAULT 0,
                    total_honor INTEGER NOT NULL DEFAULT 0,
                    provinces_json TEXT,

                    FOREIGN KEY (kingdom_id) REFERENCES kingdoms(id) ON DELETE CASCADE
                );
                """,
                "CREATE INDEX IF NOT EXISTS idx_snapshots_loc_time ON kingdom_snapshots(loc, snapshot_time);",
                """
                CREATE TABLE IF NOT EXISTS eowcf_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kingdom_id INTEGER NOT NULL,
                    loc TEXT,
                    eowcf_start TEXT NOT NULL,
                    eowcf_end TEXT NOT NULL,
                    detected_at TEXT,
                    reason TEXT,
                    created_at INTEGER NOT NULL DEFAULT (strftime('%s','now')),

                    FOREIGN KEY (kingdom_id) REFERENCES kingdoms(id) ON DELETE CASCADE
                );
                """,
                "CREATE INDEX IF NOT EXISTS idx_eowcf_kingdom_end ON eowcf_records(kingdom_id, eowcf_end);",
            ],
        }

        current = self.get_schema_version()
        target = max(migrations.keys(), default=0)
        if current >= target:
            return

        for next_version in range(current + 1, target + 1):
            statements = migrations.get(next_version)
            if not statements:
                continue
            with self._lock:
                self._conn.execute("BEGIN;")
                try:
                    for stmt in statements:
                        self._conn.execute(stmt)
                    self._set_schema_version(next_version)
                    self._conn.execute("COMMIT;")
                except Exception:
                    self._conn.execute("ROLLBACK;")
                    raise

    # --- Kingdoms + provinces (latest state, overwritten each sync) ---

    def replace_kingdoms(self, kingdoms: list[dict[str, Any]]) -> int:
        """Upsert kingdoms by loc and replace each one's provinces, in one transaction.

        Kingdoms absent from the list are left untouched.
        """
        with self._lock:
            self._conn.execute("BEGIN;")
            try:
                for k in kingdoms:
                    self._conn.execute(
                        """
                        INSERT INTO kingdoms (loc, name, stance, honor, nw)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(loc) DO UPDATE SET
                            name = excluded.name,
                            stance = excluded.stance,
                            honor = excluded.honor,
                            nw = excluded.nw,
                            updated_at = strftime('%s','now');
                        """,
                        (k["loc"], k.get("name"), k.get("stance"), k.get("honor"), k.get("nw")),
                    )
                    row = self._conn.execute(
                        "SELECT id FROM kingdoms WHERE loc = ?;", (k["loc"],)
                    ).fetchone()
                    kingdom_id = int(row["id"])
                    self._conn.execute("DELETE FROM provinces WHERE kingdom_id = ?;", (kingdom_id,))
                    self._conn.executemany(
                        """
                        INSERT INTO provinces (kingdom_id, loc, name, land, race, honor, nw, protected)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                        """,
                        [
                            (
                                kingdom_id,
                                p.get("loc"),
                                p.get("name"),
                                p.get("land"),
                                p.get("race"),
                                p.get("honor"),
                                p.get("nw"),
                                None if p.get("protected") is None else int(bool(p.get("protected"))),
                            )
                            for p in k.get("provinces") or []
                        ],
                    )
                self._conn.execute("COMMIT;")
            except Exception:
                self._conn.execute("ROLLBACK;")
                raise
        return len(kingdoms)

    def get_kingdom_by_loc(self, loc: str) -> Kingdom | None:
        if not loc:
            return None
        with self._lock:
            row = self._conn.execute(
                """
                SELECT id, loc, name, stance, honor, nw
                FROM kingdoms
                WHERE loc = ?
                LIMIT 1;
                """,
                (str(loc),),
            ).fetchone()
            return Kingdom.from_row(row) if row else None

    def iter_kingdoms(self) -> list[Kingdom]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, loc, name, stance, honor, nw FROM kingdoms ORDER BY id ASC;"
            ).fetchall()
            return [Kingdom.from_row(r) for r in rows]

    def get_provinces(self, kingdom_id: int) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT loc, name, land, honor, nw, protected, race
                FROM provinces
                WHERE kingdom_id = ?
                ORDER BY id ASC;
                """,
                (int(kingdom_id),),
            ).fetchall()
        provinces = []
        for r in rows:
            p = dict(r)
            p["protected"] = None if p["protected"] is None else bool(p["protected"])
            provinces.append(p)
        return provinces

    # --- Snapshots (append-only) ---

    def insert_snapshot(
        self,
        *,
        kingdom_id: int,
        loc: str,
        snapshot_time: datetime,
        total_land: int,
        total_honor: int,
        provinces: list[dict[str, Any]] | None = None,
    ) -> int:
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO kingdom_snapshots (
                    kingdom_id, loc, snapshot_time, total_land, total_honor, provinces_json
                )
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (
                    int(kingdom_id),
                    str(loc),
                    format_timestamp(snapshot_time),
                    int(total_land),
                    int(total_honor),
                    json.dumps(provinces or [], ensure_ascii=False, separators=(",", ":")),
                ),
            )
            return int(cur.lastrowid)

    def get_recent_snapshots(self, loc: str, *, limit: int = 2) -> list[KingdomSnapshot]:
        """Return the newest snapshots for a loc, newest first."""
        lim = max(1, min(int(limit), 500))
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, kingdom_id, loc, snapshot_time, total_land, total_honor, provinces_json
                FROM kingdom_snapshots
                WHERE loc = ?
                ORDER BY snapshot_time DESC, id DESC
                LIMIT ?;
                """,
                (str(loc), lim),
            ).fetchall()
            return [KingdomSnapshot.from_row(r) for r in rows]

    def get_snapshot_count(self, loc: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM kingdom_snapshots WHERE loc = ?;", (str(loc),)
            ).fetchone()
            return int(row["n"]) if row else 0

    # --- EoWCF records ---

    def create_eowcf_record(
        self,
        *,
        kingdom: Kingdom,
        eowcf_start: datetime,
        eowcf_end: datetime,
        detected_at: datetime,
        reason: str | None,
    ) -> EowcfRecord:
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO eowcf_records (kingdom_id, loc, eowcf_start, eowcf_end, detected_at, reason)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (
                    kingdom.id,
                    kingdom.loc,
                    format_timestamp(eowcf_start),
                    format_timestamp(eowcf_end),
                    format_timestamp(detected_at),
                    reason,
                ),
            )
            row = self._conn.execute(
                """
                SELECT id, kingdom_id, loc, eowcf_start, eowcf_end, detected_at, reason
                FROM eowcf_records
                WHERE id = ?;
                """,
                (int(cur.lastrowid),),
            ).fetchone()
            return EowcfRecord.from_row(row)

    def create_eowcf_pair_if_absent(
        self,
        *,
        winner: Kingdom,
        loser: Kingdom,
        eowcf_start: datetime,
        eowcf_end: datetime,
        detected_at: datetime,
        reason: str | None,
    ) -> list[EowcfRecord]:
        """Record the EoWCF window for both sides of a war, or neither.

        The overlap check and both inserts run in one transaction under the
        lock. Returns [] without writing when either kingdom already has a
        record ending after eowcf_start; otherwise [winner_record, loser_record].
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE;")
            try:
                if self.has_overlapping_eowcf([winner.id, loser.id], after=eowcf_start):
                    self._conn.execute("ROLLBACK;")
                    return []
                created = [
                    self.create_eowcf_record(
                        kingdom=k,
                        eowcf_start=eowcf_start,
                        eowcf_end=eowcf_end,
                        detected_at=detected_at,
                        reason=reason,
                    )
                    for k in (winner, loser)
                ]
                self._conn.execute("COMMIT;")
            except Exception:
                self._conn.execute("ROLLBACK;")
                raise
        return created

    def has_overlapping_eowcf(self, kingdom_ids: Iterable[int], *, after: datetime) -> bool:
        """True if any of the kingdoms has a record ending after `after`."""
        ids = sorted({int(i) for i in kingdom_ids})
        if not ids:
            return False
        placeholders = ",".join(["?"] * len(ids))
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT 1
                FROM eowcf_records
                WHERE kingdom_id IN ({placeholders})
                  AND eowcf_end > ?
                LIMIT 1;
                """,
                (*ids, format_timestamp(after)),
            ).fetchone()
            return row is not None

    def get_eowcf_records(
        self,
        *,
        loc: str | None = None,
        ending_after: datetime | None = None,
        limit: int = 100,
    ) -> list[EowcfRecord]:
        lim = max(1, min(int(limit), 1000))
        clauses: list[str] = []
        params: list[Any] = []
        if loc is not None:
            clauses.append("loc = ?")
            params.append(str(loc))
        if ending_after is not None:
            clauses.append("eowcf_end > ?")
            params.append(format_timestamp(ending_after))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT id, kingdom_id, loc, eowcf_start, eowcf_end, detected_at, reason
                FROM eowcf_records
                {where}
                ORDER BY eowcf_start DESC, id DESC
                LIMIT ?;
                """,
                (*params, lim),
            ).fetchall()
            return [EowcfRecord.from_row(r) for r in rows]

    # --- Maintenance / status ---

    def maybe_checkpoint_wal(self, *, threshold_bytes: int = 64 * 1024 * 1024) -> bool:
        """Checkpoint+truncate WAL when it grows too large (best-effort)."""
        if self.path == Path(":memory:"):
            return False
        try:
            wal_path = Path(str(self.path) + "-wal")
            if not wal_path.exists():
                return False
            if wal_path.stat().st_size < int(threshold_bytes):
                return False
        except OSError:
            return False

        try:
            with self._lock:
                self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
            return True
        except sqlite3.Error:
            return False

    def get_db_stats(self) -> dict[str, Any]:
        """Return small DB stats for status reporting."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM kingdoms) AS kingdom_count,
                    (SELECT COUNT(*) FROM kingdom_snapshots) AS snapshot_count,
                    (SELECT COUNT(*) FROM eowcf_records) AS eowcf_count,
                    (SELECT MAX(snapshot_time) FROM kingdom_snapshots) AS last_snapshot_time;
                """
            ).fetchone()
        stats: dict[str, Any] = {
            "path": str(self.path),
            "kingdom_count": safe_int(row["kingdom_count"]) or 0,
            "snapshot_count": safe_int(row["snapshot_count"]) or 0,
            "eowcf_count": safe_int(row["eowcf_count"]) or 0,
            "last_snapshot_time": row["last_snapshot_time"],
        }
        if self.path == Path(":memory:"):
            stats["bytes"] = 0
            return stats
        total = 0
        for suffix in ("", "-wal", "-shm"):
            try:
                total += int(os.stat(Path(str(self.path) + suffix)).st_size)
            except FileNotFoundError:
                continue
        stats["bytes"] = total
        return stats


_default_db: KingdomDatabase | None = None


def get_default_db(db_path: str | Path | None = None) -> KingdomDatabase:
    """Get (and initialize) the singleton DB instance.

    If db_path is provided, a separate instance is returned (not cached).
    """
    global _default_db
    if db_path is not None:
        return KingdomDatabase(db_path=db_path)

    if _default_db is None:
        _default_db = KingdomDatabase()
    return _default_db
