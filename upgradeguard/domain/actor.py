from __future__ import annotations

from dataclasses import dataclass


CHANGE_SOURCE_API = "api"
CHANGE_SOURCE_UPGRADE = "upgrade"
CHANGE_SOURCE_ROLLBACK = "rollback"
CHANGE_SOURCE_SYSTEM = "system"


@dataclass(frozen=True)
class ActorContext:
    # Identity stamped onto customization rows and history entries.
    tenant_id: str
    actor_id: str | None
    actor_role: str | None = None
    source: str = CHANGE_SOURCE_API
    request_id: str | None = None

    def with_source(self, source: str) -> "ActorContext":
        return ActorContext(
            tenant_id=self.tenant_id,
            actor_id=self.actor_id,
            actor_role=self.actor_role,
            source=source,
            request_id=self.request_id,
        )


def system_actor(tenant_id: str, actor_id: str = "system") -> ActorContext:
    return ActorContext(
        tenant_id=tenant_id,
        actor_id=actor_id,
        actor_role="admin",
        source=CHANGE_SOURCE_SYSTEM,
    )
