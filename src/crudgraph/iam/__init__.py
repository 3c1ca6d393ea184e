"""
IAM (Identity and Access Management) module.
"""

from __future__ import annotations

from .acl import AccessRule, AccessRuleProtocol, AclRegistry, FunctionRule
from .enforcer import Access, AccessDecision, AccessEnforcer
from .guard import clean_filter, merge_guard, simplify_nested_filter

__all__ = [
    "AccessRule",
    "AccessRuleProtocol",
    "FunctionRule",
    "AclRegistry",
    "Access",
    "AccessDecision",
    "AccessEnforcer",
    "clean_filter",
    "merge_guard",
    "simplify_nested_filter",
]
