"""Exception hierarchy for the aggregation service."""

from __future__ import annotations

from typing import Optional


class AggregatorError(Exception):
    """Base class for all service errors."""


class UpstreamError(AggregatorError):
    """An upstream call failed after exhausting its retries."""

    def __init__(self, source: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"[{source}] {message}")
        self.source = source
        self.status_code = status_code


class PayloadError(AggregatorError):
    """A single upstream record did not have the expected shape."""

    def __init__(self, source: str, message: str):
        super().__init__(f"[{source}] {message}")
        self.source = source


class InitializationError(AggregatorError):
    """The first refresh failed, so there is no data to serve."""
