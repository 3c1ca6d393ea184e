"""
Principals - who is making the request.

ACL rules only ever see a Principal. The system principal is a separate
type: no role string can turn a user principal into it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union


@dataclass
class Principal:
    """
    Represents the authenticated user making the request.

    Used by ACL rules for access control decisions.
    """
    id: int | str | None = None
    role: Optional[str] = None
    roles: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def has_role(self, role: str) -> bool:
        return role == self.role or role in self.roles

    def __getattr__(self, name: str) -> Any:
        # ACL rules may read arbitrary claims (user.company_id, ...)
        extra = self.__dict__.get("extra")
        if extra is not None and name in extra:
            return extra[name]
        raise AttributeError(name)


class SystemPrincipal:
    """Privileged in-process caller. Bypasses every ACL rule."""

    _instance: Optional["SystemPrincipal"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    id = "system"

    def __repr__(self) -> str:
        return "SystemPrincipal()"


SYSTEM = SystemPrincipal()

User = Union[Principal, SystemPrincipal]


def is_system(user: Any) -> bool:
    return isinstance(user, SystemPrincipal)
