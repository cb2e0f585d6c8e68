"""
FastAPI server for Strawberry.

Read-only status endpoints plus manual detection triggers. All endpoints
require Bearer token authentication.
"""

from __future__ import annotations

import os
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from backend.core.utils import to_utc, utc_now

# Auth configuration
ENV_API_TOKEN = "STRAWBERRY_API_TOKEN"
security = HTTPBearer(auto_error=False)


class DetectRequest(BaseModel):
    """Request body for /api/detect endpoint."""

    detection_time: str | None = None


class CheckKingdomRequest(BaseModel):
    """Request body for /api/check-kingdom endpoint."""

    loc: str
    detection_time: str | None = None


def get_auth_token() -> str | None:
    """Get the expected auth token from environment."""
    return os.environ.get(ENV_API_TOKEN)


async def verify_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """Dependency that verifies the Bearer token on every request.

    Raises:
        HTTPException: 401 if token is missing or invalid.
    """
    expected_token = get_auth_token()

    if not expected_token:
        # No token configured - reject all requests
        raise HTTPException(
            status_code=401,
            detail={"error": "Server not configured with auth token"},
        )

    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=401,
            detail={"error": "Invalid or missing authorization token"},
        )

    if credentials.credentials != expected_token:
        raise HTTPException(
            status_code=401,
            detail={"error": "Invalid or missing authorization token"},
        )

    return credentials.credentials


def _require(request: Request, name: str, label: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=503,
            detail={"error": f"{label} not initialized"},
        )
    return value


def _parse_detection_time(value: str | None):
    if value is None:
        return utc_now()
    try:
        return to_utc(value)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"error": f"Invalid detection_time: {value!r}"},
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    KingdomDatabase, WarEowcfDetector and SyncScheduler instances should be
    set on app.state after creation.

    Example:
        app = create_app()
        app.state.db = KingdomDatabase()
        app.state.detector = WarEowcfDetector(app.state.db)
    """
    app = FastAPI(
        title="Strawberry API",
        description="Status and manual triggers for the Utopia war tracker",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
    )

    @app.get("/api/health", dependencies=[Depends(verify_token)])
    async def health_check(request: Request) -> dict[str, Any]:
        """Health check endpoint with DB and scheduler status."""
        db = getattr(request.app.state, "db", None)
        scheduler = getattr(request.app.state, "scheduler", None)
        return {
            "status": "ok",
            "db": db.get_db_stats() if db is not None else None,
            "scheduler": scheduler.get_status() if scheduler is not None else None,
        }

    @app.get("/api/kingdoms/{loc}", dependencies=[Depends(verify_token)])
    def get_kingdom(request: Request, loc: str) -> dict[str, Any]:
        """Latest kingdom state with its two newest snapshots."""
        db = _require(request, "db", "Database")
        kingdom = db.get_kingdom_by_loc(loc)
        if kingdom is None:
            raise HTTPException(
                status_code=404,
                detail={"error": "Kingdom not found"},
            )
        snapshots = db.get_recent_snapshots(kingdom.loc, limit=2)
        return {
            "kingdom": kingdom.to_dict(),
            "snapshots": [s.to_dict() for s in snapshots],
        }

    @app.get("/api/eowcf", dependencies=[Depends(verify_token)])
    def get_open_eowcf(request: Request, limit: int = 100) -> dict[str, Any]:
        """EoWCF records whose window is still open."""
        db = _require(request, "db", "Database")
        now = utc_now()
        records = db.get_eowcf_records(ending_after=now, limit=limit)
        return {"records": [r.to_dict(now) for r in records]}

    @app.post("/api/detect", dependencies=[Depends(verify_token)])
    def detect(request: Request, body: DetectRequest) -> dict[str, Any]:
        """Run a full detection pass now."""
        detector = _require(request, "detector", "Detector")
        t = _parse_detection_time(body.detection_time)
        records = detector.run(t)
        return {"created": [r.to_dict(t) for r in records]}

    @app.post("/api/check-kingdom", dependencies=[Depends(verify_token)])
    def check_kingdom(request: Request, body: CheckKingdomRequest) -> dict[str, Any]:
        """Run detection for one kingdom against its war opponent."""
        detector = _require(request, "detector", "Detector")
        t = _parse_detection_time(body.detection_time)
        records = detector.check_kingdom(body.loc, t)
        return {"created": [r.to_dict(t) for r in records]}

    @app.post("/api/sync", dependencies=[Depends(verify_token)])
    async def trigger_sync(request: Request) -> dict[str, Any]:
        """Ask the scheduler to run the sync job now."""
        scheduler = _require(request, "scheduler", "Scheduler")
        if not scheduler.trigger():
            raise HTTPException(
                status_code=503,
                detail={"error": "Scheduler not running"},
            )
        return {"status": "triggered"}

    return app
