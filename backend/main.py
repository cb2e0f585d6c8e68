#!/usr/bin/env python3
"""
Strawberry - Entry Point
========================

Starts the sync scheduler (fetch dump, sync kingdoms, snapshot, detect) and
the status API.

Usage:
    python backend/main.py
    python backend/main.py --port 8743 --host 127.0.0.1
    python backend/main.py --once
    python backend/main.py --check 6:9

Environment Variables:
    STRAWBERRY_API_TOKEN: Bearer token for API authentication (required for the API)
    DISCORD_WEBHOOK_URL: Discord webhook for notifications (optional)
    STRAWBERRY_DB_PATH: Path to SQLite DB (optional)
    STRAWBERRY_SYNC_INTERVAL: Seconds between syncs (optional, default 3600)
    UTOPIA_DUMP_URL: Override the kingdoms dump URL (optional)
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from functools import partial
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Add project root to path for imports when running as a script.
# When invoked as a module (`python -m backend.main`), this is unnecessary.
PROJECT_ROOT = Path(__file__).parent.parent
if __package__ is None and str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv

load_dotenv(PROJECT_ROOT / ".env")


def configure_logging() -> None:
    """Configure console + rotating file logging (when STRAWBERRY_LOG_DIR is set)."""
    level_name = os.environ.get("STRAWBERRY_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    log_dir_raw = os.environ.get("STRAWBERRY_LOG_DIR")
    if log_dir_raw:
        log_dir = Path(log_dir_raw)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_dir / "strawberry.log",
                maxBytes=5_000_000,
                backupCount=3,
                encoding="utf-8",
            )
        )

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


logger = logging.getLogger(__name__)


def get_sync_interval() -> float:
    """Get the sync interval from environment (seconds)."""
    from backend.core.ingestion import DEFAULT_SYNC_INTERVAL_SECONDS, ENV_SYNC_INTERVAL

    raw = os.environ.get(ENV_SYNC_INTERVAL)
    if raw:
        try:
            return float(raw)
        except ValueError:
            logger.warning(f"Invalid {ENV_SYNC_INTERVAL}: {raw}")
    return DEFAULT_SYNC_INTERVAL_SECONDS


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Strawberry - Utopia war tracker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  STRAWBERRY_API_TOKEN      Bearer token for API authentication
  DISCORD_WEBHOOK_URL       Discord webhook for notifications (optional)
  STRAWBERRY_DB_PATH        Path to SQLite DB (optional)
  STRAWBERRY_SYNC_INTERVAL  Seconds between syncs (default 3600)

Examples:
  python backend/main.py
  python backend/main.py --once
  python backend/main.py --check 6:9
""",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8743,
        help="Port to bind to (default: 8743)",
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Serve the API without running scheduled syncs",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one sync + detection pass and exit",
    )
    parser.add_argument(
        "--check",
        metavar="LOC",
        default=None,
        help="Run detection for a single kingdom (e.g. 6:9) and exit",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    configure_logging()
    args = parse_args(argv)

    from backend.core.database import get_default_db
    from backend.core.detector import WarEowcfDetector
    from backend.core.fetcher import UtopiaFetcher
    from backend.core.ingestion import SyncScheduler, run_sync_job
    from backend.core.notifier import get_default_notifier

    try:
        db = get_default_db()
        logger.info(f"DB ready: {db.path}")
    except Exception as e:
        logger.error(f"Failed to initialize DB: {e}")
        return 1

    detector = WarEowcfDetector(db, notifier=get_default_notifier())

    if args.check:
        records = detector.check_kingdom(args.check)
        for r in records:
            logger.info(f"Created EoWCF for {r.loc}: {r.eowcf_start.isoformat()} -> {r.eowcf_end.isoformat()}")
        return 0

    job = partial(run_sync_job, db=db, fetcher=UtopiaFetcher(), detector=detector)

    if args.once:
        try:
            job()
        except Exception:
            return 1
        return 0

    scheduler = SyncScheduler(job, interval_seconds=get_sync_interval())
    if not args.no_scheduler:
        logger.info(f"Starting sync scheduler (every {scheduler.interval_seconds:.0f}s)")
        scheduler.start()

    from backend.api.server import ENV_API_TOKEN, create_app

    if not os.environ.get(ENV_API_TOKEN):
        logger.warning(f"{ENV_API_TOKEN} not set - API requests will be rejected")

    app = create_app()
    app.state.db = db
    app.state.detector = detector
    app.state.scheduler = None if args.no_scheduler else scheduler

    import uvicorn

    logger.info(f"Starting server on {args.host}:{args.port}")
    try:
        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            log_level="info",
        )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        scheduler.stop()
        logger.info("Server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
