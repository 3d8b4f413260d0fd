"""Error taxonomy shared by the scanning pipeline."""

from __future__ import annotations

__all__ = [
    "CapabilityMissingError",
    "ConfigurationError",
    "EvaluationError",
    "NotFoundError",
    "ScanCancelledError",
    "ScanError",
    "SourceError",
    "TransportError",
]


class ScanError(RuntimeError):
    """Base error for scan pipeline failures."""


class ConfigurationError(ScanError):
    """Raised for unmapped resource kinds, bad queries, or unusable credentials."""


class NotFoundError(ScanError):
    """Raised when a named resource does not exist."""


class SourceError(ScanError):
    """Raised when a policy source cannot be read or parsed."""


class TransportError(ScanError):
    """Raised when the cluster API call fails."""


class EvaluationError(ScanError):
    """Raised when a single rule cannot be evaluated against a resource."""


class CapabilityMissingError(ScanError):
    """Raised when the target cluster lacks a required API capability."""

    def __init__(self, message: str, *, guidance: str = "") -> None:
        super().__init__(message)
        self.guidance = guidance


class ScanCancelledError(ScanError):
    """Raised when a scan is cancelled before it completes."""

    def __init__(self, message: str, *, reason: str = "cancelled") -> None:
        super().__init__(message)
        self.reason = reason
