from __future__ import annotations

import logging
from typing import Any, Protocol

from upgradeguard.core.config import get_settings
from upgradeguard.core.errors import ValidationError
from upgradeguard.domain.models import PlatformConfigSnapshot
from upgradeguard.merge.canonical import canonical_json, canonicalize, json_type


logger = logging.getLogger(__name__)


class GovernanceService(Protocol):
    # Collaborator deciding what tenants may customize and what bodies are acceptable.
    def is_extensible(self, *, config_type: str, resource_key: str, snapshot: PlatformConfigSnapshot | None) -> bool:
        ...

    def validate_body(
        self,
        *,
        config_type: str,
        resource_key: str,
        body: Any,
        platform_body: Any = None,
    ) -> Any:
        ...


class DefaultGovernanceService:
    """Snapshot-driven extensibility plus JSON shape, type and size checks."""

    def __init__(self, *, max_body_bytes: int | None = None) -> None:
        self._max_body_bytes = max_body_bytes

    def is_extensible(self, *, config_type: str, resource_key: str, snapshot: PlatformConfigSnapshot | None) -> bool:
        if snapshot is None:
            return False
        return bool(snapshot.is_extensible)

    def validate_body(
        self,
        *,
        config_type: str,
        resource_key: str,
        body: Any,
        platform_body: Any = None,
    ) -> Any:
        if body is None:
            raise ValidationError(
                "Configuration body is required",
                details={"config_type": config_type, "resource_key": resource_key},
            )
        normalized = canonicalize(body)
        # A tenant body must keep the platform body's top-level shape.
        if platform_body is not None and json_type(platform_body) != json_type(normalized):
            raise ValidationError(
                "Configuration body type does not match the platform definition",
                details={
                    "config_type": config_type,
                    "resource_key": resource_key,
                    "expected_type": json_type(platform_body),
                    "actual_type": json_type(normalized),
                },
            )
        limit = self._max_body_bytes if self._max_body_bytes is not None else get_settings().max_config_body_bytes
        size = len(canonical_json(normalized).encode("utf-8"))
        if limit > 0 and size > limit:
            logger.warning(
                "governance_body_too_large config_type=%s resource_key=%s size=%s limit=%s",
                config_type,
                resource_key,
                size,
                limit,
            )
            raise ValidationError(
                "Configuration body exceeds the allowed size",
                details={"size_bytes": size, "limit_bytes": limit},
            )
        return normalized


_governance: GovernanceService | None = None


def get_governance() -> GovernanceService:
    global _governance
    if _governance is None:
        _governance = DefaultGovernanceService()
    return _governance


def set_governance(service: GovernanceService | None) -> None:
    # Swap the collaborator (tests, embedding hosts); None restores the default.
    global _governance
    _governance = service
