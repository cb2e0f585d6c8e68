"""
Strawberry Core
===============

Core functionality: kingdom storage, snapshots and end-of-war detection.
"""

# Lazy imports to avoid requiring all dependencies at import time
__all__ = ["KingdomDatabase", "WarEowcfDetector", "SyncScheduler"]


def __getattr__(name):
    """Lazy import to avoid dependency issues at module load time."""
    if name == "KingdomDatabase":
        from .database import KingdomDatabase

        return KingdomDatabase
    elif name == "WarEowcfDetector":
        from .detector import WarEowcfDetector

        return WarEowcfDetector
    elif name == "SyncScheduler":
        from .ingestion import SyncScheduler

        return SyncScheduler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
