"""Tests for ACL rules, guard merging and the access enforcer."""

import pytest

from crudgraph.core.errors import IAMError
from crudgraph.iam.acl import AccessRule, AclRegistry, FunctionRule
from crudgraph.iam.enforcer import Access, AccessDecision, AccessEnforcer
from crudgraph.iam.guard import clean_filter, merge_guard, simplify_nested_filter
from crudgraph.runtime.context import SYSTEM, Principal, is_system


# =============================================================================
# Guard helpers
# =============================================================================


class TestCleanFilter:
    def test_drops_empty_logical_lists(self):
        assert clean_filter({"AND": [], "published": True}) == {"published": True}

    def test_unwraps_single_condition(self):
        assert clean_filter({"OR": [{"published": True}]}) == {"published": True}

    def test_drops_none_list_items(self):
        assert clean_filter({"OR": [None, {"a": 1}, {"b": 2}]}) == {"OR": [{"a": 1}, {"b": 2}]}

    def test_keeps_explicit_null_comparison(self):
        assert clean_filter({"deletedAt": None}) == {"deletedAt": None}

    def test_empty_becomes_none(self):
        assert clean_filter({"AND": [None]}) is None


class TestSimplifyNestedFilter:
    def test_drops_parent_conditions(self):
        value = {"Post": {"authorId": 1}, "approved": True}
        assert simplify_nested_filter(value, "Post") == {"approved": True}

    def test_recurses_into_logical_keys(self):
        value = {"AND": [{"Post": {"id": 1}, "approved": True}]}
        assert simplify_nested_filter(value, "Post") == {"approved": True}


class TestMergeGuard:
    def test_flat_merge(self):
        assert merge_guard({"price": {"gt": 50}}, {"ownerId": 42}) == {
            "price": {"gt": 50},
            "ownerId": 42,
        }

    def test_conflict_keeps_both_under_and(self):
        assert merge_guard({"ownerId": 1}, {"ownerId": 42}) == {
            "ownerId": 1,
            "AND": [{"ownerId": 42}],
        }

    def test_existing_and_is_extended(self):
        where = {"ownerId": 1, "AND": [{"price": {"gt": 1}}]}
        assert merge_guard(where, {"ownerId": 42})["AND"] == [{"price": {"gt": 1}}, {"ownerId": 42}]

    def test_no_guard(self):
        assert merge_guard({"a": 1}, None) == {"a": 1}
        assert merge_guard(None, {}) == {}

    def test_does_not_mutate_input(self):
        where = {"a": 1}
        merge_guard(where, {"b": 2})
        assert where == {"a": 1}


# =============================================================================
# Rules
# =============================================================================


class TestFunctionRule:
    def test_defaults_are_unrestricted(self):
        rule = FunctionRule()
        user = Principal(id=1)
        assert rule.can_create(user) is True
        assert rule.get_access_filter(user) is True
        assert rule.get_omit_fields(user) == []

    def test_single_argument_can_create(self):
        rule = FunctionRule(can_create=lambda user: user.id == 1)
        assert rule.can_create(Principal(id=1), {"title": "x"}) is True
        assert rule.can_create(Principal(id=2), {"title": "x"}) is False

    def test_can_create_with_payload(self):
        rule = FunctionRule(can_create=lambda user, data: data.get("ownerId") == user.id)
        assert rule.can_create(Principal(id=3), {"ownerId": 3}) is True
        assert rule.can_create(Principal(id=3), {"ownerId": 4}) is False


class TestAclRegistry:
    def test_register_and_get(self):
        registry = AclRegistry()
        rule = AccessRule()
        registry.register("Post", rule)
        assert registry.get("Post") is rule
        assert "Post" in registry
        assert registry.get("User") is None


# =============================================================================
# Decisions
# =============================================================================


class TestAccessDecision:
    def test_false_is_deny(self):
        assert AccessDecision.from_rule(False).access is Access.DENY

    def test_true_and_none_are_allow(self):
        assert AccessDecision.from_rule(True).access is Access.ALLOW
        assert AccessDecision.from_rule(None).access is Access.ALLOW

    def test_dict_is_filter(self):
        decision = AccessDecision.from_rule({"published": True})
        assert decision.access is Access.FILTER
        assert decision.filter == {"published": True}

    def test_empty_dict_is_allow(self):
        assert AccessDecision.from_rule({"AND": []}).access is Access.ALLOW


class TestAccessEnforcer:
    def test_read_where_merges_access_filter(self, enforcer, reader):
        assert enforcer.read_where("Post", reader, {"price": {"gt": 50}}) == {
            "price": {"gt": 50},
            "published": True,
        }

    def test_admin_is_unfiltered(self, enforcer, admin):
        assert enforcer.read_where("Post", admin, {"id": 1}) == {"id": 1}

    def test_denied_read_raises(self, enforcer, guest):
        with pytest.raises(IAMError) as exc:
            enforcer.access_filter("Category", guest)
        assert exc.value.code == "no_permission"
        assert exc.value.status_code == 403

    def test_relation_access_does_not_raise(self, enforcer, guest):
        assert enforcer.relation_access("Category", guest).denied

    def test_update_filter(self, enforcer, author, reader):
        assert enforcer.update_filter("Post", author) == {"authorId": 42}
        with pytest.raises(IAMError) as exc:
            enforcer.update_filter("Post", reader)
        assert exc.value.code == "no_permission_to_update"

    def test_delete_filter(self, enforcer, admin, author):
        assert enforcer.delete_filter("Post", admin) == {}
        with pytest.raises(IAMError) as exc:
            enforcer.delete_filter("Post", author)
        assert exc.value.code == "no_permission_to_delete"

    def test_can_create(self, enforcer, author, reader):
        assert enforcer.can_create("Post", author, {"title": "x"}) is True
        assert enforcer.can_create("Post", reader, {"title": "x"}) is False
        with pytest.raises(IAMError) as exc:
            enforcer.ensure_can_create("Post", reader, {})
        assert exc.value.code == "no_permission_to_create"

    def test_entity_without_rule_is_unrestricted(self, enforcer, guest):
        assert enforcer.read_where("Tag", guest) == {}
        assert enforcer.can_create("Tag", guest) is True
        assert enforcer.omit_fields("Tag", guest) == []

    def test_omit(self, enforcer, reader):
        assert enforcer.omit_fields("User", reader) == ["password"]
        assert enforcer.omit("User", reader) == {"password": True}

    def test_system_principal_bypasses_rules(self, enforcer):
        assert is_system(SYSTEM)
        assert enforcer.read_where("Category", SYSTEM) == {}
        assert enforcer.omit_fields("User", SYSTEM) == []
        assert enforcer.can_create("Post", SYSTEM) is True

    def test_role_string_cannot_become_system(self, enforcer):
        impostor = Principal(id="system", role="system")
        assert not is_system(impostor)
        assert enforcer.omit_fields("User", impostor) == ["password"]

    def test_principal_extra_claims(self):
        user = Principal(id=1, extra={"company_id": 9})
        assert user.company_id == 9
        with pytest.raises(AttributeError):
            user.tenant_id
