"""Post-commit effects.

Services commit their state change and return a list of effects; the route
runs them after the response body has been built. An effect that fails is
logged and skipped, never turned into an error for the caller.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from core.security import BranchScope
from models.notification import NotificationType, ReferenceType, RoleTarget

AGGREGATE_CACHE_PREFIXES = ("dashboard", "analytics")


@dataclass(frozen=True)
class InvalidateCache:
    prefixes: tuple[str, ...] = AGGREGATE_CACHE_PREFIXES


@dataclass(frozen=True)
class Broadcast:
    scope: BranchScope
    event: str
    data: dict[str, Any]


@dataclass(frozen=True)
class Notify:
    scope: BranchScope
    type: NotificationType
    title: str
    message: str
    role_target: RoleTarget
    reference_id: Optional[str] = None
    reference_type: Optional[ReferenceType] = None
    created_by: Optional[str] = None


@dataclass(frozen=True)
class RecordAudit:
    fields: dict[str, Any] = field(default_factory=dict)
