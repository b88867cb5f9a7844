"""
DocForge Engine Context — Explicit handles threaded into every component.

There are no module-level database or permission singletons in the engine
components: the hosting application builds one ``EngineContext`` at boot
and passes it to the registry, gate and services. Cache invalidation is an
explicit call on the context.

Usage:
    from docforge.engine.context import EngineContext, CallerContext

    ctx = EngineContext(database=db, permissions=lookup)
    gate = UploadGate(ctx)
    gate.can_upload_now(CallerContext(user_id=7), "daily-sales")
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Optional,
    Protocol,
    Set,
    runtime_checkable,
)

from docforge.engine.config import DocForgeConfig, get_config

if TYPE_CHECKING:
    from docforge.db.session import Database


# ---------------------------------------------------------------------------
# Permission lookup: interface to the external role store
# ---------------------------------------------------------------------------

@runtime_checkable
class PermissionLookup(Protocol):
    """
    The role/permission store owned by the hosting application.

    DocForge only asks two questions of it: which roles a user holds, and
    whether the user holds a global capability (e.g. ``manage_users``).
    """

    def role_ids(self, user_id: int) -> Set[int]:
        ...

    def has_capability(self, user_id: int, capability: str) -> bool:
        ...


class StaticPermissionLookup:
    """In-memory PermissionLookup for embedding, scripts and tests."""

    def __init__(
        self,
        roles: Optional[Dict[int, Iterable[int]]] = None,
        capabilities: Optional[Dict[int, Iterable[str]]] = None,
    ):
        self._roles: Dict[int, Set[int]] = {
            uid: set(rids) for uid, rids in (roles or {}).items()
        }
        self._capabilities: Dict[int, Set[str]] = {
            uid: set(caps) for uid, caps in (capabilities or {}).items()
        }

    def assign_role(self, user_id: int, role_id: int) -> None:
        self._roles.setdefault(user_id, set()).add(role_id)

    def grant_capability(self, user_id: int, capability: str) -> None:
        self._capabilities.setdefault(user_id, set()).add(capability)

    def role_ids(self, user_id: int) -> Set[int]:
        return set(self._roles.get(user_id, set()))

    def has_capability(self, user_id: int, capability: str) -> bool:
        return capability in self._capabilities.get(user_id, set())


# ---------------------------------------------------------------------------
# Caller & engine contexts
# ---------------------------------------------------------------------------

@dataclass
class CallerContext:
    """
    Verified caller identity supplied by the authentication layer.

    ``role_ids`` may be pre-populated by the host (e.g. from the session);
    when left as None the roles are fetched from the PermissionLookup.
    """

    user_id: int
    username: str = ""
    role_ids: Optional[FrozenSet[int]] = None
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging."""
        return {
            "user_id": self.user_id,
            "username": self.username,
            "role_ids": sorted(self.role_ids) if self.role_ids is not None else None,
            "request_id": self.request_id,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineContext:
    """Database handle + permission lookup + clock + config."""

    database: "Database"
    permissions: PermissionLookup
    config: DocForgeConfig = field(default_factory=get_config)
    clock: Callable[[], datetime] = _utc_now

    def now(self) -> datetime:
        """Current instant as an aware datetime."""
        current = self.clock()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current

    def roles_for(self, caller: CallerContext) -> Set[int]:
        if caller.role_ids is not None:
            return set(caller.role_ids)
        return set(self.permissions.role_ids(caller.user_id))

    def is_admin(self, caller: CallerContext) -> bool:
        return self.permissions.has_capability(
            caller.user_id, self.config.uploads.admin_capability
        )

    def invalidate_permissions(self, user_id: Optional[int] = None) -> None:
        """Drop cached role/capability answers, for one user or everyone."""
        invalidate = getattr(self.permissions, "invalidate", None)
        if invalidate is not None:
            invalidate(user_id)
