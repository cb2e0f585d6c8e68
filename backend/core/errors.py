from __future__ import annotations


class StrawberryError(Exception):
    """Base class for errors raised by the tracker."""


class FetchError(StrawberryError):
    """Raised when the kingdoms dump cannot be fetched or decoded."""


class DuplicateLocError(StrawberryError):
    """Raised when a dump lists the same kingdom loc more than once."""

    def __init__(self, locs: list[str]):
        self.locs = locs
        super().__init__(f"Duplicate kingdom loc(s) in dump: {', '.join(locs)}")
