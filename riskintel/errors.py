"""
Exceptions raised by the scan pipeline.
"""

from __future__ import annotations


class RiskIntelError(Exception):
    """Base exception for scan pipeline failures."""


class PolicyError(RiskIntelError):
    """Raised when a caller demands a crawl policy for an unauthorized domain."""


class FetchError(RiskIntelError):
    """Raised when a single HTTP or browser fetch fails."""


class TaskError(RiskIntelError):
    """Raised when one extraction task fails."""


class TaskTimeoutError(TaskError):
    """Raised when a deadline-bounded task does not finish in time."""


class OrchestrationError(RiskIntelError):
    """Raised when the scan sequencing itself fails."""


class InvalidTransitionError(OrchestrationError):
    """Raised when a scan status change would skip or reverse a state."""


class ScanNotFoundError(RiskIntelError):
    """Raised when a scan or domain id does not match any row."""


class ScanInProgressError(OrchestrationError):
    """Raised when a single task is re-run on a scan that has not finished."""
