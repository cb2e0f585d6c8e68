"""
Stance parsing for Utopia kingdoms.

A kingdom's stance is free text from the dump: "Normal", "Fortified",
"war 6:9", "war 6:9 something", ...
"""

from __future__ import annotations


def parse_opponent_loc(stance: str | None) -> str | None:
    """Return the opponent loc from a "war <loc> ..." stance, else None.

    The second token is returned verbatim; it is not validated as a loc.
    """
    if stance is None:
        return None
    tokens = str(stance).split()
    if len(tokens) < 2:
        return None
    if tokens[0].lower() != "war":
        return None
    return tokens[1]


def is_at_war(stance: str | None) -> bool:
    """True if the stance mentions "war" anywhere (case-insensitive).

    Looser than parse_opponent_loc(): "at war with everyone" counts as at war
    but yields no opponent, so detection skips it.
    """
    if not stance:
        return False
    return "war" in str(stance).lower()
