from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal

from backend.core.database import KingdomDatabase
from backend.core.detector import WarEowcfDetector
from backend.core.fetcher import UtopiaFetcher
from backend.core.history import save_snapshots, sync_kingdoms
from backend.core.models import EowcfRecord
from backend.core.utils import utc_now

logger = logging.getLogger(__name__)

SyncStage = Literal[
    "idle",
    "fetching",
    "syncing",
    "snapshotting",
    "detecting",
    "ready",
    "error",
]

DEFAULT_SYNC_INTERVAL_SECONDS = 3600.0
ENV_SYNC_INTERVAL = "STRAWBERRY_SYNC_INTERVAL"


@dataclass
class SyncResult:
    timestamp: datetime
    kingdoms_synced: int
    snapshots_saved: int
    records: list[EowcfRecord] = field(default_factory=list)


def run_sync_job(
    *,
    db: KingdomDatabase,
    fetcher: UtopiaFetcher,
    detector: WarEowcfDetector,
    on_stage: Callable[[SyncStage], None] | None = None,
) -> SyncResult:
    """Fetch the dump, sync kingdoms, snapshot them and run detection.

    Snapshots and detection share one timestamp: the dump's own, or now.
    Any failure is logged and re-raised for the caller (scheduler) to handle.
    """

    def stage(name: SyncStage) -> None:
        if on_stage is not None:
            on_stage(name)

    try:
        stage("fetching")
        dump = fetcher.fetch()
        timestamp = dump.timestamp or utc_now()

        stage("syncing")
        synced = sync_kingdoms(db, dump.kingdoms)

        stage("snapshotting")
        saved = save_snapshots(db, timestamp)

        stage("detecting")
        records = detector.run(timestamp)
    except Exception as e:
        logger.exception(f"[SyncJob] Error during sync/detect: {e.__class__.__name__} {e}")
        raise

    try:
        db.maybe_checkpoint_wal()
    except Exception as e:
        logger.warning(f"[SyncJob] WAL checkpoint failed: {e}")

    logger.info(
        f"[SyncJob] Successfully synced & ran detection at {timestamp.isoformat()} "
        f"({synced} kingdoms, {saved} snapshots, {len(records)} new EoWCF records)"
    )
    return SyncResult(timestamp=timestamp, kingdoms_synced=synced, snapshots_saved=saved, records=records)


@dataclass
class SyncStatus:
    stage: SyncStage = "idle"
    updated_at: float = field(default_factory=time.time)
    run_count: int = 0
    error_count: int = 0
    last_started_at: float | None = None
    last_success_at: float | None = None
    last_duration_ms: float | None = None
    last_timestamp: str | None = None
    last_records_created: int | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncScheduler:
    """Runs the sync job on a background thread at a fixed interval.

    The first run happens as soon as the thread starts. A failed run is logged
    and recorded in the status; the loop waits for the next interval (no retry).
    """

    def __init__(
        self,
        job: Callable[..., SyncResult],
        *,
        interval_seconds: float = DEFAULT_SYNC_INTERVAL_SECONDS,
    ) -> None:
        self._job = job
        self._interval_seconds = max(5.0, float(interval_seconds))

        self._lock = threading.RLock()
        self._wakeup = threading.Event()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True, name="sync-scheduler")
        self._started = False

        self._status = SyncStatus()

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    @property
    def is_running(self) -> bool:
        return self._started and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
            self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self._wakeup.set()
        if self._started:
            self._thread.join(timeout=timeout)

    def trigger(self) -> bool:
        """Run the job now instead of waiting for the interval.

        Returns False when the scheduler thread is not running.
        """
        if not self.is_running:
            return False
        self._wakeup.set()
        return True

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            payload = self._status.to_dict()
        payload["interval_seconds"] = self._interval_seconds
        payload["running"] = self.is_running
        return payload

    def run_once(self) -> SyncResult | None:
        """Run the job in the calling thread, recording status. Returns None on failure."""
        started = time.time()
        with self._lock:
            self._status.last_started_at = started
            self._set_stage_locked("fetching")

        try:
            result = self._job(on_stage=self._on_stage)
        except Exception as e:
            logger.warning(f"[SyncScheduler] Sync run failed; next run in {self._interval_seconds:.0f}s")
            with self._lock:
                self._status.run_count += 1
                self._status.error_count += 1
                self._status.last_error = f"{e.__class__.__name__}: {e}"
                self._status.last_duration_ms = (time.time() - started) * 1000.0
                self._set_stage_locked("error")
            return None

        with self._lock:
            self._status.run_count += 1
            self._status.last_success_at = time.time()
            self._status.last_duration_ms = (self._status.last_success_at - started) * 1000.0
            self._status.last_timestamp = result.timestamp.isoformat()
            self._status.last_records_created = len(result.records)
            self._status.last_error = None
            self._set_stage_locked("ready")
        return result

    # --- internals ---

    def _on_stage(self, stage: SyncStage) -> None:
        with self._lock:
            self._set_stage_locked(stage)

    def _set_stage_locked(self, stage: SyncStage) -> None:
        self._status.stage = stage
        self._status.updated_at = time.time()

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._wakeup.wait(timeout=self._interval_seconds)
            self._wakeup.clear()
