from __future__ import annotations


class RegionctlError(Exception):
    """Base error for regionctl."""


class ConfigError(RegionctlError):
    """Missing or invalid controller configuration."""


class InvalidInputError(RegionctlError):
    """Wiring error or malformed value, e.g. a sample for the wrong region or weights not summing to 100."""


class ApplyFailureError(RegionctlError):
    """Routing backend rejected or could not complete a decision."""

    def __init__(self, message: str, *, backend: str | None = None) -> None:
        super().__init__(message)
        self.backend = backend


class AuditWriteError(RegionctlError):
    """Audit entry could not be persisted."""
