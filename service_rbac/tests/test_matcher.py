"""
Unit tests for permission matching and condition evaluation.
"""

import pytest
from datetime import datetime, timezone

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import ValidationError
from service_rbac.app.rbac import matcher
from service_rbac.app.rbac.matcher import MISSING
from service_rbac.app.rbac.models import (
    AuthorizationContext, Condition, ConditionOperator, ContextRef, LiteralValue,
    Permission, PermissionEffect, PolicyStatement, TimeCondition,
)


@pytest.fixture
def context():
    """Authorization context with nested attributes."""
    return AuthorizationContext(
        user_id="user-1",
        tenant_id="tenant-1",
        resource="documents",
        action="read",
        resource_id="doc-42",
        resource_attributes={"owner": "user-1", "size": 120, "tags": ["finance", "q3"]},
        user_attributes={
            "department": "finance",
            "level": 3,
            "email": "alice@example.com",
            "profile": {"settings": {"theme": "dark"}},
        },
    )


def condition(field, operator, value=None, is_variable=False):
    return Condition(field=field, operator=operator, value=value, is_variable=is_variable)


class TestResourceAndActionMatching:
    """Test cases for resource and action patterns."""

    def test_exact_resource(self):
        assert matcher.matches_resource("documents", "documents")
        assert not matcher.matches_resource("documents", "projects")

    def test_wildcard_resource(self):
        assert matcher.matches_resource("*", "anything:at:all")

    def test_prefix_pattern(self):
        assert matcher.matches_resource("documents:*", "documents:123")
        assert not matcher.matches_resource("documents:*", "projects:123")

    def test_inner_wildcard(self):
        assert matcher.matches_resource("projects:*:tasks", "projects:123:tasks")
        assert not matcher.matches_resource("projects:*:tasks", "projects:123:notes")

    def test_pattern_is_anchored(self):
        assert not matcher.matches_resource("documents:*", "x-documents:1")
        assert not matcher.matches_resource("doc", "documents")

    def test_regex_metacharacters_are_literal(self):
        assert matcher.matches_resource("a.b:*", "a.b:1")
        assert not matcher.matches_resource("a.b:*", "axb:1")

    def test_action_matching(self):
        assert matcher.matches_action(["read", "write"], "read")
        assert not matcher.matches_action(["read"], "delete")
        assert matcher.matches_action(["*"], "delete")

    def test_action_matching_is_verbatim(self):
        assert not matcher.matches_action(["read:*"], "read:all")

    def test_matches_context_tenant(self, context):
        permission = Permission(id="p1", name="Read", resource="documents", actions=["read"],
                                tenant_id="tenant-2")
        assert not matcher.matches_context(permission, context)

        permission.tenant_id = None
        assert matcher.matches_context(permission, context)

        permission.tenant_id = "tenant-1"
        assert matcher.matches_context(permission, context)


class TestFieldResolution:
    """Test cases for the context path walker."""

    def test_nested_path(self, context):
        assert matcher.resolve_field("userAttributes.profile.settings.theme", context) == "dark"
        assert matcher.resolve_field("user_attributes.profile.settings.theme", context) == "dark"

    def test_top_level_fields(self, context):
        assert matcher.resolve_field("userId", context) == "user-1"
        assert matcher.resolve_field("resource_id", context) == "doc-42"

    def test_missing_paths(self, context):
        assert matcher.resolve_field("userAttributes.profile.missing.theme", context) is MISSING
        assert matcher.resolve_field("userAttributes.level.deeper", context) is MISSING
        assert matcher.resolve_field("nonsense.path", context) is MISSING
        assert matcher.resolve_field("", context) is MISSING


class TestConditionEvaluation:
    """Test cases for condition operators."""

    def test_empty_conditions_hold(self, context):
        assert matcher.evaluate_conditions([], context)

    def test_conditions_are_anded(self, context):
        conditions = [
            condition("userAttributes.department", "equals", "finance"),
            condition("userAttributes.level", "greaterThan", 5),
        ]
        assert not matcher.evaluate_conditions(conditions, context)

    @pytest.mark.parametrize("field,operator,value,expected", [
        ("userAttributes.department", "equals", "finance", True),
        ("userAttributes.department", "equals", "sales", False),
        ("userAttributes.department", "notEquals", "sales", True),
        ("userAttributes.level", "equals", True, False),
        ("userAttributes.email", "contains", "@example", True),
        ("resourceAttributes.tags", "contains", "q3", True),
        ("resourceAttributes.tags", "notContains", "q4", True),
        ("userAttributes.level", "contains", 3, False),
        ("userAttributes.level", "notContains", 3, True),
        ("userAttributes.email", "startsWith", "alice", True),
        ("userAttributes.email", "endsWith", ".org", False),
        ("userAttributes.email", "regex", r"^[a-z]+@example\.com$", True),
        ("userAttributes.level", "regex", "3", False),
        ("userAttributes.level", "greaterThan", 2, True),
        ("userAttributes.level", "greaterThanOrEqual", 3, True),
        ("userAttributes.level", "lessThan", 3, False),
        ("userAttributes.level", "lessThanOrEqual", 3, True),
        ("userAttributes.department", "greaterThan", "education", True),
        ("userAttributes.level", "between", [1, 3], True),
        ("userAttributes.level", "between", [4, 9], False),
        ("userAttributes.level", "between", [1, 2, 3], False),
        ("userAttributes.level", "between", 3, False),
        ("userAttributes.department", "in", ["finance", "legal"], True),
        ("userAttributes.department", "in", "finance", False),
        ("userAttributes.department", "notIn", ["legal"], True),
        ("userAttributes.department", "notIn", "finance", True),
        ("userAttributes.department", "exists", None, True),
        ("userAttributes.manager", "exists", None, False),
        ("userAttributes.manager", "notExists", None, True),
    ])
    def test_operators(self, context, field, operator, value, expected):
        assert matcher.evaluate_condition(condition(field, operator, value), context) is expected

    def test_missing_field_degrades_gracefully(self, context):
        assert not matcher.evaluate_condition(condition("userAttributes.nope", "equals", None), context)
        assert matcher.evaluate_condition(condition("userAttributes.nope", "notEquals", "x"), context)
        assert not matcher.evaluate_condition(condition("userAttributes.nope", "greaterThan", 1), context)
        assert not matcher.evaluate_condition(condition("userAttributes.nope", "in", ["a"]), context)

    def test_invalid_regex_is_non_match(self, context):
        assert not matcher.evaluate_condition(condition("userAttributes.email", "regex", "(unclosed"), context)

    def test_unknown_operator_is_false(self, context):
        assert not matcher.evaluate_condition(condition("userAttributes.department", "sortOf", "x"), context)

    def test_variable_reference(self, context):
        owner_check = condition("resourceAttributes.owner", "equals", "${userId}", is_variable=True)
        assert isinstance(owner_check.operand, ContextRef)
        assert matcher.evaluate_condition(owner_check, context)

    def test_variable_flag_without_pattern_is_literal(self, context):
        literal = condition("userAttributes.department", "equals", "finance", is_variable=True)
        assert isinstance(literal.operand, LiteralValue)
        assert matcher.evaluate_condition(literal, context)

    def test_unflagged_reference_is_literal(self, context):
        unflagged = condition("resourceAttributes.owner", "equals", "${userId}")
        assert not matcher.evaluate_condition(unflagged, context)

    def test_operator_string_is_coerced(self):
        assert condition("a", "greaterThan", 1).operator is ConditionOperator.GREATER_THAN


class TestTimeConditions:
    """Test cases for time windows."""

    # Wednesday
    NOW = datetime(2024, 5, 15, 14, 30, tzinfo=timezone.utc)

    def test_empty_condition_holds(self):
        assert matcher.evaluate_time_condition(TimeCondition(), self.NOW)

    def test_days_of_week_sunday_is_zero(self):
        assert matcher.evaluate_time_condition(TimeCondition(days_of_week=[3]), self.NOW)
        assert not matcher.evaluate_time_condition(TimeCondition(days_of_week=[0, 6]), self.NOW)

    def test_hours_of_day(self):
        assert matcher.evaluate_time_condition(TimeCondition(hours_of_day=[14]), self.NOW)
        assert not matcher.evaluate_time_condition(TimeCondition(hours_of_day=[9, 10]), self.NOW)

    def test_timezone_shift(self):
        # 14:30 UTC is 10:30 in New York during daylight saving time
        condition = TimeCondition(hours_of_day=[10], timezone="America/New_York")
        assert matcher.evaluate_time_condition(condition, self.NOW)

    def test_unknown_timezone_falls_back_to_utc(self):
        condition = TimeCondition(hours_of_day=[14], timezone="Mars/Olympus_Mons")
        assert matcher.evaluate_time_condition(condition, self.NOW)

    def test_start_and_end(self):
        assert matcher.evaluate_time_condition(
            TimeCondition(start_time="2024-05-01T00:00:00Z", end_time="2024-06-01T00:00:00Z"), self.NOW
        )
        assert not matcher.evaluate_time_condition(
            TimeCondition(start_time="2024-06-01T00:00:00+00:00"), self.NOW
        )
        assert not matcher.evaluate_time_condition(
            TimeCondition(end_time="2024-05-15T14:00:00Z"), self.NOW
        )

    def test_unparseable_window_fails_closed(self):
        assert not matcher.evaluate_time_condition(TimeCondition(start_time="yesterday"), self.NOW)

    def test_permission_time_window(self):
        ctx = AuthorizationContext(user_id="u", tenant_id="t", resource="documents", action="read")
        permission = Permission(id="p", name="Office hours", resource="documents", actions=["read"],
                                time_conditions=TimeCondition(hours_of_day=[9]))
        assert not matcher.matches_permission(permission, ctx, now=self.NOW)


class TestStatementMatching:
    """Test cases for policy statements."""

    def test_resources_and_actions(self, context):
        statement = PolicyStatement(effect=PermissionEffect.DENY, actions=["*"], resources=["secrets"])
        assert not matcher.matches_statement(statement, context, ["user-1"])

        statement.resources = ["documents"]
        assert matcher.matches_statement(statement, context, ["user-1"])

    def test_resource_id_pattern(self, context):
        statement = PolicyStatement(effect=PermissionEffect.ALLOW, actions=["read"],
                                    resources=["documents:doc-*"])
        assert matcher.matches_statement(statement, context, ["user-1"])

    def test_principals(self, context):
        statement = PolicyStatement(effect=PermissionEffect.ALLOW, actions=["read"],
                                    resources=["documents"], principals=["auditor"])
        assert not matcher.matches_statement(statement, context, ["user-1", "reader"])
        assert matcher.matches_statement(statement, context, ["user-1", "auditor"])

    def test_not_principals_and_not_actions(self, context):
        statement = PolicyStatement(effect=PermissionEffect.DENY, actions=["*"], resources=["*"],
                                    not_principals=["user-1"])
        assert not matcher.matches_statement(statement, context, ["user-1"])

        statement = PolicyStatement(effect=PermissionEffect.DENY, actions=["*"], resources=["*"],
                                    not_actions=["read"])
        assert not matcher.matches_statement(statement, context, ["user-1"])

    def test_statement_conditions(self, context):
        statement = PolicyStatement(
            effect=PermissionEffect.ALLOW, actions=["read"], resources=["documents"],
            conditions=[condition("userAttributes.department", "equals", "legal")]
        )
        assert not matcher.matches_statement(statement, context, ["user-1"])


class TestValidation:
    """Test cases for structural validation."""

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            matcher.validate_conditions([condition("a", "sortOf", 1)])

    def test_blank_field_rejected(self):
        with pytest.raises(ValidationError):
            matcher.validate_conditions([condition(" ", "equals", 1)])

    def test_time_condition_ranges(self):
        with pytest.raises(ValidationError):
            matcher.validate_time_condition(TimeCondition(days_of_week=[7]))
        with pytest.raises(ValidationError):
            matcher.validate_time_condition(TimeCondition(hours_of_day=[24]))
        with pytest.raises(ValidationError):
            matcher.validate_time_condition(TimeCondition(start_time="not a time"))

    def test_non_empty(self):
        with pytest.raises(ValidationError):
            matcher.validate_non_empty([], "empty")
        with pytest.raises(ValidationError):
            matcher.validate_non_empty(["  "], "blank")
        matcher.validate_non_empty(["read"], "ok")
