from __future__ import annotations

from typing import Any


class UpgradeGuardError(Exception):
    """Base error for upgradeguard."""

    code = "UPGRADEGUARD_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(UpgradeGuardError):
    """Malformed, cyclic or governance-rejected configuration input."""

    code = "VALIDATION_ERROR"


class NotFoundError(UpgradeGuardError):
    """Requested entity does not exist within the tenant scope."""

    code = "NOT_FOUND"


class ConflictError(UpgradeGuardError):
    """Write against a stale version or a duplicate immutable write."""

    code = "CONFLICT"

    def __init__(
        self,
        message: str,
        *,
        current_version: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if current_version is not None:
            merged["current_version"] = current_version
        super().__init__(message, details=merged)
        self.current_version = current_version


class StateError(UpgradeGuardError):
    """Illegal lifecycle transition; blockers lists the records in the way."""

    code = "INVALID_STATE"

    def __init__(
        self,
        message: str,
        *,
        blockers: list[dict[str, Any]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if blockers is not None:
            merged["blockers"] = blockers
        super().__init__(message, details=merged)
        self.blockers = blockers or []


class IntegrityViolationError(UpgradeGuardError):
    """Stored customization base checksum matches no known platform snapshot."""

    code = "INTEGRITY_ERROR"


class DatabaseError(UpgradeGuardError):
    """Database layer failure."""

    code = "DATABASE_ERROR"
