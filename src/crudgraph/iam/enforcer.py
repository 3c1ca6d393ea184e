"""
Access control enforcement.

Turns ACL rule answers into one of three decisions and applies them:

    ALLOW   -> no extra constraint
    DENY    -> raise (top-level paths) or drop (relation paths)
    FILTER  -> row filter merged into the where-clause

The system principal bypasses every rule. ACL answers are computed per
call and never cached: they depend on the user.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..core.errors import IAMError
from ..runtime.context import is_system
from .acl import AclRegistry
from .guard import clean_filter, merge_guard

logger = logging.getLogger(__name__)


class Access(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    FILTER = "filter"


@dataclass(frozen=True)
class AccessDecision:
    """Normalized answer of an ACL filter method."""
    access: Access
    filter: dict[str, Any] = field(default_factory=dict)

    @property
    def denied(self) -> bool:
        return self.access is Access.DENY

    @classmethod
    def from_rule(cls, value: Any) -> "AccessDecision":
        # None (rule silent) is treated like True
        if value is False:
            return cls(Access.DENY)
        if isinstance(value, dict):
            cleaned = clean_filter(value)
            if isinstance(cleaned, dict) and cleaned:
                return cls(Access.FILTER, cleaned)
        return cls(Access.ALLOW)


ALLOW = AccessDecision(Access.ALLOW)


class AccessEnforcer:
    """
    Computes row filters, omissions and create permission per entity + user.

    Usage:
        enforcer = AccessEnforcer(AclRegistry({"Post": PostRule()}))
        where = enforcer.read_where("Post", user, {"published": True})
    """

    def __init__(self, acl: Optional[AclRegistry] = None):
        self.acl = acl or AclRegistry()

    def _ask(self, entity: str, method: str, user: Any, *args: Any) -> Any:
        rule = self.acl.get(entity)
        fn = getattr(rule, method, None) if rule is not None else None
        if fn is None:
            return None
        return fn(user, *args)

    # =========================================================================
    # Decisions
    # =========================================================================

    def decide(self, entity: str, user: Any, action: str = "read") -> AccessDecision:
        """
        Decision for action ("read", "update" or "delete") on entity.
        """
        if is_system(user):
            return ALLOW
        method = {
            "read": "get_access_filter",
            "update": "get_update_filter",
            "delete": "get_delete_filter",
        }[action]
        return AccessDecision.from_rule(self._ask(entity, method, user))

    # =========================================================================
    # Raising variants (top-level operations)
    # =========================================================================

    def access_filter(self, entity: str, user: Any) -> dict[str, Any]:
        """Row filter for reads. Raises IAMError when access is denied."""
        decision = self.decide(entity, user, "read")
        if decision.denied:
            raise IAMError("no_permission", {"entity": entity})
        return dict(decision.filter)

    def relation_access(self, entity: str, user: Any) -> AccessDecision:
        """Non-raising read decision, used on include and mutation paths."""
        return self.decide(entity, user, "read")

    def read_where(
        self,
        entity: str,
        user: Any,
        where: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Caller filter AND access filter."""
        return merge_guard(where, self.access_filter(entity, user))

    read_filter = read_where

    def update_filter(self, entity: str, user: Any) -> dict[str, Any]:
        decision = self.decide(entity, user, "update")
        if decision.denied:
            raise IAMError("no_permission_to_update", {"entity": entity})
        return dict(decision.filter)

    def delete_filter(self, entity: str, user: Any) -> dict[str, Any]:
        decision = self.decide(entity, user, "delete")
        if decision.denied:
            raise IAMError("no_permission_to_delete", {"entity": entity})
        return dict(decision.filter)

    # =========================================================================
    # Create permission
    # =========================================================================

    def can_create(self, entity: str, user: Any, data: Optional[dict[str, Any]] = None) -> bool:
        if is_system(user):
            return True
        rule = self.acl.get(entity)
        fn = getattr(rule, "can_create", None) if rule is not None else None
        if fn is None:
            return True
        return bool(fn(user, data))

    def ensure_can_create(self, entity: str, user: Any, data: Optional[dict[str, Any]] = None) -> None:
        if not self.can_create(entity, user, data):
            logger.debug(f"Create denied on {entity} for {user!r}")
            raise IAMError("no_permission_to_create", {"entity": entity})

    # =========================================================================
    # Field omission
    # =========================================================================

    def omit_fields(self, entity: str, user: Any) -> list[str]:
        if is_system(user):
            return []
        fields = self._ask(entity, "get_omit_fields", user)
        return list(fields) if isinstance(fields, (list, tuple, set)) else []

    def omit(self, entity: str, user: Any) -> dict[str, bool]:
        return {name: True for name in self.omit_fields(entity, user)}
