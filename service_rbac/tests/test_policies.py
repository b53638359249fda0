"""
Unit tests for the policy store.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import ConflictError, ValidationError
from service_rbac.app.rbac.models import (
    PermissionEffect, PolicyCreateRequest, PolicyUpdateRequest, PolicyStatementSpec,
)
from service_rbac.app.rbac.policies import PolicyStore


def deny_secrets(**kwargs):
    return PolicyCreateRequest(
        name="Protect secrets",
        statements=[PolicyStatementSpec(sid="deny-secrets", effect="deny", actions=["*"],
                                        resources=["secrets"])],
        **kwargs
    )


class TestPolicyStore:
    """Test cases for PolicyStore."""

    @pytest.fixture
    def store(self):
        """Create PolicyStore instance."""
        return PolicyStore()

    def test_create_policy_defaults(self, store):
        policy = store.create_policy(deny_secrets(tenant_id="tenant-1"))

        assert policy.id.startswith("policy_")
        assert policy.version == "1.0"
        assert policy.is_active
        assert policy.priority == 0
        assert policy.statements[0].effect == PermissionEffect.DENY

    def test_empty_statements_rejected(self, store):
        with pytest.raises(ValidationError):
            store.create_policy(PolicyCreateRequest(name="Empty", statements=[]))

    @pytest.mark.parametrize("statement", [
        {"effect": "maybe", "actions": ["*"], "resources": ["*"]},
        {"effect": "allow", "actions": [], "resources": ["*"]},
        {"effect": "allow", "actions": ["read"], "resources": []},
        {"effect": "allow", "actions": ["read"], "resources": ["*"],
         "conditions": [{"field": "userId", "operator": "sortOf", "value": 1}]},
    ])
    def test_invalid_statement_rejected(self, store, statement):
        with pytest.raises(ValidationError):
            store.create_policy(PolicyCreateRequest(name="Bad", statements=[statement]))
        assert store.get_policies() == []

    def test_duplicate_id(self, store):
        store.create_policy(deny_secrets(id="p1", tenant_id="tenant-1"))
        with pytest.raises(ConflictError):
            store.create_policy(deny_secrets(id="p1", tenant_id="tenant-1"))

    def test_applicable_policies(self, store):
        store.create_policy(deny_secrets(id="low", tenant_id="tenant-1", priority=1))
        store.create_policy(deny_secrets(id="global", priority=5))
        store.create_policy(deny_secrets(id="high", tenant_id="tenant-1", priority=10))
        store.create_policy(deny_secrets(id="other", tenant_id="tenant-2", priority=100))
        store.create_policy(deny_secrets(id="inactive", tenant_id="tenant-1", priority=50,
                                         is_active=False))

        assert [p.id for p in store.get_applicable_policies("tenant-1")] == ["high", "global", "low"]
        assert [p.id for p in store.get_policies("tenant-1")] == ["low", "high", "inactive"]

    def test_update_policy(self, store):
        store.create_policy(deny_secrets(id="p1", tenant_id="tenant-1"))
        updated = store.update_policy("p1", PolicyUpdateRequest(
            priority=7,
            statements=[PolicyStatementSpec(effect="allow", actions=["read"], resources=["reports"])],
        ), "tenant-1")

        assert updated.priority == 7
        assert updated.statements[0].resources == ["reports"]
        assert updated.name == "Protect secrets"

    def test_update_rejects_empty_statements(self, store):
        original = store.create_policy(deny_secrets(id="p1"))
        with pytest.raises(ValidationError):
            store.update_policy("p1", PolicyUpdateRequest(statements=[]))
        assert store.get_policy("p1") is original

    def test_update_and_delete_unknown(self, store):
        assert store.update_policy("ghost", PolicyUpdateRequest(priority=1)) is None
        assert not store.delete_policy("ghost")

    def test_delete_policy(self, store):
        store.create_policy(deny_secrets(id="p1", tenant_id="tenant-1"))
        assert store.delete_policy("p1", "tenant-1")
        assert store.get_policy("p1", "tenant-1") is None
