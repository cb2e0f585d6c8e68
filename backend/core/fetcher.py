"""
Fetcher for the Utopia kingdoms dump.

The dump is JSON. Two shapes are accepted:

    {"timestamp": "...", "kingdoms": [{...}, ...]}
    [{...}, ...]

Each kingdom carries loc, name, stance, honor, nw and a provinces list
(loc, name, land, race, honor, nw, protected).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import requests

from backend.core.errors import FetchError
from backend.core.utils import parse_timestamp, safe_int

logger = logging.getLogger(__name__)

DUMP_URL = "https://utopia-game.com/wol/game/kingdoms_dump/"
ENV_DUMP_URL = "UTOPIA_DUMP_URL"


@dataclass
class ParsedDump:
    timestamp: datetime | None
    kingdoms: list[dict[str, Any]] = field(default_factory=list)


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y"}
    return bool(value)


def _normalize_province(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "loc": _clean_str(raw.get("loc")),
        "name": _clean_str(raw.get("name")),
        "land": safe_int(raw.get("land")),
        "race": _clean_str(raw.get("race")),
        "honor": safe_int(raw.get("honor")),
        "nw": safe_int(raw.get("nw")),
        "protected": _parse_bool(raw.get("protected")),
    }


def _normalize_kingdom(raw: dict[str, Any]) -> dict[str, Any] | None:
    loc = _clean_str(raw.get("loc"))
    if not loc:
        return None
    provinces_raw = raw.get("provinces")
    provinces = [
        _normalize_province(p) for p in provinces_raw if isinstance(p, dict)
    ] if isinstance(provinces_raw, list) else []
    return {
        "loc": loc,
        "name": _clean_str(raw.get("name")),
        "stance": _clean_str(raw.get("stance")),
        "honor": safe_int(raw.get("honor")),
        "nw": safe_int(raw.get("nw")),
        "provinces": provinces,
    }


def parse_dump(payload: Any) -> ParsedDump:
    """Normalize a decoded dump into kingdom dicts.

    Raises:
        FetchError: If the payload is neither a dict with "kingdoms" nor a list.
    """
    timestamp: datetime | None = None
    if isinstance(payload, dict):
        raw_kingdoms = payload.get("kingdoms")
        ts = payload.get("timestamp")
        timestamp = parse_timestamp(ts) if isinstance(ts, str) else None
    elif isinstance(payload, list):
        raw_kingdoms = payload
    else:
        raise FetchError(f"Unexpected dump payload type: {type(payload).__name__}")

    if not isinstance(raw_kingdoms, list):
        raise FetchError("Dump payload has no kingdoms list")

    kingdoms: list[dict[str, Any]] = []
    dropped = 0
    for raw in raw_kingdoms:
        k = _normalize_kingdom(raw) if isinstance(raw, dict) else None
        if k is None:
            dropped += 1
            continue
        kingdoms.append(k)
    if dropped:
        logger.warning(f"[UtopiaFetcher] Dropped {dropped} kingdom entries without a loc")

    return ParsedDump(timestamp=timestamp, kingdoms=kingdoms)


class UtopiaFetcher:
    """Grabs the latest dump from Utopia."""

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        self.url = url or os.environ.get(ENV_DUMP_URL) or DUMP_URL
        self.timeout = float(timeout)
        self._session = session or requests.Session()

    def fetch(self) -> ParsedDump:
        """Fetch and parse the dump.

        Raises:
            FetchError: On network failure, non-200 status or invalid JSON.
        """
        try:
            resp = self._session.get(self.url, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(f"Failed to fetch dump: {e}") from e

        if resp.status_code != 200:
            raise FetchError(f"Failed to fetch dump: {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise FetchError(f"Dump is not valid JSON: {e}") from e

        parsed = parse_dump(payload)
        logger.info(f"[UtopiaFetcher] Fetched {len(parsed.kingdoms)} kingdoms from {self.url}")
        return parsed
