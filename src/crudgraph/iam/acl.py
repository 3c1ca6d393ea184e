"""
ACL rules - per-entity access policy.

A rule answers five questions for a user:

    can_create(user, data)     -> bool
    get_access_filter(user)    -> dict | True | False | None
    get_update_filter(user)    -> dict | True | False | None
    get_delete_filter(user)    -> dict | True | False | None
    get_omit_fields(user)      -> list[str]

True means unrestricted, False means fully denied and a dict is a row
filter ANDed with the caller's own filter. Methods a rule does not define
behave as unrestricted.

Usage:
    class PostRule(AccessRule):
        def get_access_filter(self, user):
            if user.has_role("ADMIN"):
                return True
            return {"ownerId": user.id}

    acl = AclRegistry({"Post": PostRule()})
"""

from __future__ import annotations

import inspect
from typing import Any, Callable, Optional, Protocol, Union, runtime_checkable

FilterResult = Union[dict, bool, None]


@runtime_checkable
class AccessRuleProtocol(Protocol):
    """Structural contract for ACL rules."""

    def can_create(self, user: Any, data: Optional[dict] = None) -> bool: ...

    def get_access_filter(self, user: Any) -> FilterResult: ...

    def get_update_filter(self, user: Any) -> FilterResult: ...

    def get_delete_filter(self, user: Any) -> FilterResult: ...

    def get_omit_fields(self, user: Any) -> list[str]: ...


class AccessRule:
    """Unrestricted rule. Subclass and override what needs restricting."""

    def can_create(self, user: Any, data: Optional[dict] = None) -> bool:
        return True

    def get_access_filter(self, user: Any) -> FilterResult:
        return True

    def get_update_filter(self, user: Any) -> FilterResult:
        return True

    def get_delete_filter(self, user: Any) -> FilterResult:
        return True

    def get_omit_fields(self, user: Any) -> list[str]:
        return []


class FunctionRule(AccessRule):
    """
    Rule assembled from plain callables.

    Example:
        FunctionRule(
            get_access_filter=lambda user: {"userId": user.id},
            get_omit_fields=lambda user: ["password"],
        )
    """

    def __init__(
        self,
        can_create: Optional[Callable[..., bool]] = None,
        get_access_filter: Optional[Callable[[Any], FilterResult]] = None,
        get_update_filter: Optional[Callable[[Any], FilterResult]] = None,
        get_delete_filter: Optional[Callable[[Any], FilterResult]] = None,
        get_omit_fields: Optional[Callable[[Any], list[str]]] = None,
    ):
        self._can_create = can_create
        # single-argument callables ignore the payload
        self._create_takes_data = (
            can_create is not None and len(inspect.signature(can_create).parameters) > 1
        )
        self._access = get_access_filter
        self._update = get_update_filter
        self._delete = get_delete_filter
        self._omit = get_omit_fields

    def can_create(self, user: Any, data: Optional[dict] = None) -> bool:
        if self._can_create is None:
            return True
        if self._create_takes_data:
            return bool(self._can_create(user, data))
        return bool(self._can_create(user))

    def get_access_filter(self, user: Any) -> FilterResult:
        return self._access(user) if self._access else True

    def get_update_filter(self, user: Any) -> FilterResult:
        return self._update(user) if self._update else True

    def get_delete_filter(self, user: Any) -> FilterResult:
        return self._delete(user) if self._delete else True

    def get_omit_fields(self, user: Any) -> list[str]:
        return list(self._omit(user) or []) if self._omit else []


class AclRegistry:
    """
    Maps entity names to ACL rules.

    Entities without a rule are unrestricted.
    """

    def __init__(self, rules: Optional[dict[str, Any]] = None):
        self._rules: dict[str, Any] = dict(rules or {})

    def register(self, entity: str, rule: Any) -> None:
        self._rules[entity] = rule

    def get(self, entity: str) -> Optional[Any]:
        return self._rules.get(entity)

    def __contains__(self, entity: str) -> bool:
        return entity in self._rules
