"""Exceptions raised by the enrichment pipeline.

Only ``SubjectRejectedError`` and ``GovernorBusyError`` are expected to reach
callers during normal operation; everything else degrades into fallback data.
"""
from __future__ import annotations


class EnrichmentError(Exception):
    """Base class for enrichment pipeline errors."""


class SubjectRejectedError(EnrichmentError):
    """Phase0 decided the input is not a tango song."""

    def __init__(self, title: str, reason: str = "Not a known tango song"):
        self.title = title
        self.reason = reason
        super().__init__(f"NOT_A_TANGO_SONG: '{title}' ({reason})")


class GovernorBusyError(EnrichmentError):
    """Admission denied because the concurrency cap is reached."""

    def __init__(self, active: int, limit: int):
        self.active = active
        self.limit = limit
        super().__init__(
            f"Enrichment already in progress ({active}/{limit} active). Try again shortly."
        )


class RunCancelledError(EnrichmentError):
    pass


class RunTimeoutError(EnrichmentError):
    pass


class DialogueError(EnrichmentError):
    """A model turn failed after retries."""


class SubjectStoreError(EnrichmentError):
    pass


class SubjectNotFoundError(SubjectStoreError):
    def __init__(self, subject_id: str):
        self.subject_id = subject_id
        super().__init__(f"Subject not found: {subject_id}")
