"""
Unit tests for the authorization service.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import RbacConfig
from shared.errors import ConflictError
from shared.logging import set_user_context, user_id_var, tenant_id_var
from service_rbac.app.cache.memory_cache import InMemoryCache
from service_rbac.app.rbac.models import (
    AuditEventType, AuthorizationContext, BatchAuthorizationRequest, BatchCheck,
    ConditionSpec, PermissionCreateRequest, PermissionUpdateRequest,
    Role, RoleCreateRequest, RoleUpdateRequest, AssignRoleRequest,
    PolicyCreateRequest, PolicyUpdateRequest, PolicyStatementSpec,
)
from service_rbac.app.rbac.service import AuthorizationService

TENANT = "tenant-1"


def make_service(**config_overrides):
    return AuthorizationService(RbacConfig(**config_overrides))


async def grant(service, user_id, role_id, *permissions, **role_kwargs):
    """Create permissions, a role holding them, and assign it."""
    ids = []
    for index, spec in enumerate(permissions):
        permission = await service.create_permission(PermissionCreateRequest(
            id=spec.pop("id", f"{role_id}-{index}"), name=f"{role_id} {index}", tenant_id=TENANT, **spec
        ))
        ids.append(permission.id)
    await service.create_role(RoleCreateRequest(id=role_id, name=role_id, permissions=ids,
                                                tenant_id=TENANT, **role_kwargs))
    await service.assign_role(AssignRoleRequest(user_id=user_id, role_id=role_id, tenant_id=TENANT))


class TestAuthorizationDecisions:
    """Decision scenarios."""

    @pytest.fixture
    def service(self):
        return make_service()

    @pytest.mark.asyncio
    async def test_reader_scenario(self, service):
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})

        assert await service.can("user-1", TENANT, "documents", "read") is True
        assert await service.can("user-1", TENANT, "documents", "write") is False

    @pytest.mark.asyncio
    async def test_deny_overrides_allow(self, service):
        await grant(
            service, "user-1", "mixed",
            {"id": "b-deny", "resource": "documents", "actions": ["delete"], "effect": "deny"},
            {"id": "a-allow", "resource": "*", "actions": ["*"], "effect": "allow"},
        )

        assert await service.can("user-1", TENANT, "documents", "read") is True
        result = await service.authorize(AuthorizationContext(
            user_id="user-1", tenant_id=TENANT, resource="documents", action="delete"
        ))
        assert result.allowed is False
        assert result.decided_by == "b-deny"
        assert result.denied_by == ["b-deny"]
        assert result.matching_rules == ["a-allow"]

    @pytest.mark.asyncio
    async def test_default_deny(self, service):
        result = await service.authorize(AuthorizationContext(
            user_id="nobody", tenant_id=TENANT, resource="documents", action="read"
        ))
        assert result.allowed is False
        assert result.decided_by is None
        assert result.evaluation_time_ms >= 0

    @pytest.mark.asyncio
    async def test_policy_deny_over_role_allow(self, service):
        await grant(service, "user-1", "everything", {"resource": "*", "actions": ["*"]})
        await service.create_policy(PolicyCreateRequest(
            id="protect-secrets", name="Protect secrets", priority=10, tenant_id=TENANT,
            statements=[PolicyStatementSpec(sid="deny-all", effect="deny", actions=["*"],
                                            resources=["secrets"])],
        ))

        assert await service.can("user-1", TENANT, "documents", "read") is True
        result = await service.authorize(AuthorizationContext(
            user_id="user-1", tenant_id=TENANT, resource="secrets", action="read"
        ))
        assert result.allowed is False
        assert result.decided_by == "protect-secrets:deny-all"

    @pytest.mark.asyncio
    async def test_policy_allow_without_roles(self, service):
        await service.create_policy(PolicyCreateRequest(
            name="Public reports",
            statements=[PolicyStatementSpec(effect="allow", actions=["read"], resources=["reports"])],
        ))
        assert await service.can("anyone", TENANT, "reports", "read") is True

    @pytest.mark.asyncio
    async def test_inactive_and_foreign_policies_ignored(self, service):
        await grant(service, "user-1", "everything", {"resource": "*", "actions": ["*"]})
        deny = [PolicyStatementSpec(effect="deny", actions=["*"], resources=["*"])]
        await service.create_policy(PolicyCreateRequest(name="Off", statements=deny, is_active=False,
                                                        tenant_id=TENANT))
        await service.create_policy(PolicyCreateRequest(name="Other tenant", statements=deny,
                                                        tenant_id="tenant-2"))

        assert await service.can("user-1", TENANT, "documents", "read") is True

    @pytest.mark.asyncio
    async def test_policy_principal_by_role(self, service):
        await grant(service, "user-1", "contractor", {"resource": "documents", "actions": ["read"]})
        await grant(service, "user-2", "employee", {"resource": "documents", "actions": ["read"]})
        await service.create_policy(PolicyCreateRequest(
            name="Contractors cannot read", tenant_id=TENANT,
            statements=[PolicyStatementSpec(effect="deny", actions=["read"], resources=["documents"],
                                            principals=["contractor"])],
        ))

        assert await service.can("user-1", TENANT, "documents", "read") is False
        assert await service.can("user-2", TENANT, "documents", "read") is True

    @pytest.mark.asyncio
    async def test_log_context_restored_after_decision(self, service):
        set_user_context("admin-7", "tenant-9")

        await service.can("user-1", TENANT, "documents", "read")
        await service.authorize_batch(BatchAuthorizationRequest(
            user_id="user-1", tenant_id=TENANT, checks=[BatchCheck(resource="documents", action="read")]
        ))

        assert user_id_var.get() == "admin-7"
        assert tenant_id_var.get() == "tenant-9"

    @pytest.mark.asyncio
    async def test_policy_principal_by_permission(self, service):
        await grant(service, "user-1", "auditor", {"id": "audit-read", "resource": "logs", "actions": ["read"]})
        await grant(service, "user-2", "reader", {"resource": "documents", "actions": ["read"]})
        await service.create_policy(PolicyCreateRequest(
            name="Auditors read reports", tenant_id=TENANT,
            statements=[PolicyStatementSpec(effect="allow", actions=["read"], resources=["reports"],
                                            principals=["audit-read"])],
        ))

        assert await service.can("user-1", TENANT, "reports", "read") is True
        assert await service.can("user-2", TENANT, "reports", "read") is False

    @pytest.mark.asyncio
    async def test_conditions_with_variables(self, service):
        await grant(service, "user-1", "owner", {
            "resource": "documents", "actions": ["update"],
            "conditions": [ConditionSpec(field="resourceAttributes.owner", operator="equals",
                                         value="${userId}", is_variable=True)],
        })

        own = AuthorizationContext(user_id="user-1", tenant_id=TENANT, resource="documents",
                                   action="update", resource_attributes={"owner": "user-1"})
        other = AuthorizationContext(user_id="user-1", tenant_id=TENANT, resource="documents",
                                     action="update", resource_attributes={"owner": "user-2"})
        assert (await service.authorize(own)).allowed is True
        assert (await service.authorize(other)).allowed is False

    @pytest.mark.asyncio
    async def test_super_admin_wildcard(self, service):
        await service.initialize_system_roles(TENANT)
        await service.assign_role(AssignRoleRequest(user_id="root", role_id="super_admin", tenant_id=TENANT))

        assert await service.can("root", TENANT, "anything", "destroy") is True

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, service):
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})
        assert await service.can("user-1", "tenant-2", "documents", "read") is False

    @pytest.mark.asyncio
    async def test_tenant_agnostic_permission_record(self, service):
        await service.create_permission(PermissionCreateRequest(
            id="read-any", name="Read anything", resource="*", actions=["read"]
        ))
        await service.create_role(RoleCreateRequest(id="reader", name="Reader", permissions=["read-any"],
                                                    tenant_id=TENANT))
        await service.assign_role(AssignRoleRequest(user_id="user-1", role_id="reader", tenant_id=TENANT))

        assert await service.can("user-1", TENANT, "documents", "read") is True

    @pytest.mark.asyncio
    async def test_depth_error_becomes_denial(self):
        service = make_service(max_inheritance_depth=1)
        service.role_manager.import_roles([
            Role(id="r0", name="r0", tenant_id=TENANT),
            Role(id="r1", name="r1", parent_roles=["r0"], tenant_id=TENANT),
            Role(id="r2", name="r2", parent_roles=["r1"], tenant_id=TENANT),
        ])
        await service.assign_role(AssignRoleRequest(user_id="user-1", role_id="r2", tenant_id=TENANT))

        result = await service.authorize(AuthorizationContext(
            user_id="user-1", tenant_id=TENANT, resource="documents", action="read"
        ))
        assert result.allowed is False
        assert "depth" in result.reason


class TestCustomEvaluator:
    """Custom evaluator hook."""

    @pytest.mark.asyncio
    async def test_evaluator_is_authoritative(self):
        evaluator = MagicMock(side_effect=lambda context, permission: context.action == "approve")
        service = AuthorizationService(RbacConfig(), custom_evaluator=evaluator)
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})

        assert await service.can("user-1", TENANT, "invoices", "approve") is True
        assert await service.can("user-1", TENANT, "documents", "read") is False
        assert evaluator.call_count == 2

    @pytest.mark.asyncio
    async def test_async_evaluator(self):
        evaluator = AsyncMock(return_value=True)
        service = AuthorizationService(RbacConfig(), custom_evaluator=evaluator)
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})

        assert await service.can("user-1", TENANT, "reports", "export") is True
        evaluator.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_evaluator_denies(self):
        service = AuthorizationService(RbacConfig(), custom_evaluator=MagicMock(side_effect=RuntimeError("boom")))
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})

        result = await service.authorize(AuthorizationContext(
            user_id="user-1", tenant_id=TENANT, resource="documents", action="read"
        ))
        assert result.allowed is False
        assert "boom" in result.reason


class TestBatchAuthorization:
    """Batch decisions."""

    @pytest.mark.asyncio
    async def test_batch(self):
        service = make_service()
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})
        service.role_manager.get_user_effective_permissions = MagicMock(
            wraps=service.role_manager.get_user_effective_permissions
        )

        result = await service.authorize_batch(BatchAuthorizationRequest(
            user_id="user-1",
            tenant_id=TENANT,
            checks=[
                BatchCheck(resource="documents", action="read"),
                BatchCheck(resource="documents", action="write"),
                BatchCheck(resource="reports", action="read"),
            ],
        ))

        assert [r.allowed for r in result.results] == [True, False, False]
        assert result.total_evaluation_time_ms >= 0
        service.role_manager.get_user_effective_permissions.assert_called_once_with("user-1", TENANT)

    @pytest.mark.asyncio
    async def test_batch_emits_event_per_check(self):
        service = make_service()
        events = []
        service.on_event(events.append)

        await service.authorize_batch(BatchAuthorizationRequest(
            user_id="user-1", tenant_id=TENANT,
            checks=[BatchCheck(resource="a", action="read"), BatchCheck(resource="b", action="read")],
        ))

        assert [e.type for e in events] == [AuditEventType.AUTHORIZATION_DENIED] * 2


class TestAuditEvents:
    """Audit event emission."""

    @pytest.mark.asyncio
    async def test_mutation_events(self):
        service = make_service()
        events = []
        service.on_event(events.append)

        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})
        await service.update_permission("reader-0", PermissionUpdateRequest(actions=["read", "list"]), TENANT)
        await service.update_role("reader", RoleUpdateRequest(description="Reads"), TENANT)
        await service.unassign_role("user-1", "reader", TENANT)
        await service.delete_role("reader", TENANT)
        await service.delete_permission("reader-0", TENANT)
        policy = await service.create_policy(PolicyCreateRequest(
            name="p", statements=[PolicyStatementSpec(effect="allow", actions=["read"], resources=["x"])]
        ))
        await service.update_policy(policy.id, PolicyUpdateRequest(priority=3))
        await service.delete_policy(policy.id)

        assert [e.type.value for e in events] == [
            "permission_created", "role_created", "role_assigned",
            "permission_updated", "role_updated", "role_unassigned", "role_deleted",
            "permission_deleted", "policy_created", "policy_updated", "policy_deleted",
        ]
        assigned = events[2]
        assert assigned.tenant_id == TENANT
        assert assigned.metadata["user_id"] == "user-1"
        assert assigned.to_dict()["type"] == "role_assigned"

    @pytest.mark.asyncio
    async def test_authorization_events(self):
        service = make_service()
        await grant(service, "user-1", "reader", {"id": "read-docs", "resource": "documents", "actions": ["read"]})
        events = []
        service.on_event(events.append)

        await service.can("user-1", TENANT, "documents", "read")
        await service.can("user-1", TENANT, "documents", "write")

        assert [e.type for e in events] == [AuditEventType.AUTHORIZATION_ALLOWED,
                                            AuditEventType.AUTHORIZATION_DENIED]
        assert events[0].metadata["decided_by"] == "read-docs"
        assert events[0].actor_id == "user-1"

    @pytest.mark.asyncio
    async def test_failing_handlers_are_isolated(self):
        service = make_service()
        failing_sync = MagicMock(side_effect=RuntimeError("sync failure"))
        failing_async = AsyncMock(side_effect=RuntimeError("async failure"))
        received = []
        service.on_event(failing_sync)
        service.on_event(failing_async)
        service.on_event(received.append)

        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})

        assert await service.can("user-1", TENANT, "documents", "read") is True
        assert len(received) == 4
        failing_async.assert_awaited()

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        service = make_service()
        events = []
        unsubscribe = service.on_event(events.append)

        await service.can("user-1", TENANT, "documents", "read")
        unsubscribe()
        await service.can("user-1", TENANT, "documents", "read")

        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_audit_disabled(self):
        service = make_service(enable_audit_log=False)
        handler = MagicMock()
        service.on_event(handler)

        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})
        await service.can("user-1", TENANT, "documents", "read")

        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_system_role_seeding_events(self):
        service = make_service()
        events = []
        service.on_event(events.append)

        first = await service.initialize_system_roles(TENANT)
        second = await service.initialize_system_roles(TENANT)

        assert [r.id for r in first] == [r.id for r in second]
        assert len(events) == 4
        assert len(await service.get_roles(TENANT)) == 4

    @pytest.mark.asyncio
    async def test_failed_mutation_emits_nothing(self):
        service = make_service()
        events = []
        await service.create_role(RoleCreateRequest(id="limited", name="Limited", max_assignments=2,
                                                    tenant_id=TENANT))
        for user_id in ("user-1", "user-2"):
            await service.assign_role(AssignRoleRequest(user_id=user_id, role_id="limited", tenant_id=TENANT))
        service.on_event(events.append)

        with pytest.raises(ConflictError):
            await service.assign_role(AssignRoleRequest(user_id="user-3", role_id="limited", tenant_id=TENANT))

        assert events == []
        assert await service.get_user_roles("user-3", TENANT) == []
        assert len(await service.get_users_with_role("limited", TENANT)) == 2


class TestCaching:
    """Effective-permission caching."""

    @pytest.fixture
    def cache(self):
        return InMemoryCache()

    @pytest.fixture
    def service(self, cache):
        return AuthorizationService(RbacConfig(enable_caching=True, cache_ttl_ms=60_000), cache=cache)

    @pytest.mark.asyncio
    async def test_cache_populated_on_miss(self, service, cache):
        await grant(service, "user-1", "reader", {"id": "read-docs", "resource": "documents", "actions": ["read"]})

        assert await cache.get("user:tenant-1:user-1:permissions") is None
        await service.can("user-1", TENANT, "documents", "read")
        assert await cache.get("user:tenant-1:user-1:permissions") == ["read-docs"]

    @pytest.mark.asyncio
    async def test_cache_hit_skips_role_graph(self, service, cache):
        await cache.set("user:tenant-1:user-1:permissions", ["*"])
        service.role_manager.get_user_effective_permissions = MagicMock()

        assert await service.can("user-1", TENANT, "documents", "delete") is True
        service.role_manager.get_user_effective_permissions.assert_not_called()

    @pytest.mark.asyncio
    async def test_unassign_invalidates(self, service, cache):
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})
        assert await service.can("user-1", TENANT, "documents", "read") is True

        await service.unassign_role("user-1", "reader", TENANT)

        assert await cache.get("user:tenant-1:user-1:permissions") is None
        assert await service.can("user-1", TENANT, "documents", "read") is False

    @pytest.mark.asyncio
    async def test_assign_invalidates(self, service):
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})
        assert await service.can("user-1", TENANT, "reports", "read") is False

        await grant(service, "user-1", "analyst", {"resource": "reports", "actions": ["read"]})

        assert await service.can("user-1", TENANT, "reports", "read") is True

    @pytest.mark.asyncio
    async def test_role_edit_invalidates_tenant(self, service):
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})
        await service.create_permission(PermissionCreateRequest(
            id="write-docs", name="Write", resource="documents", actions=["write"], tenant_id=TENANT
        ))
        assert await service.can("user-1", TENANT, "documents", "write") is False

        await service.add_permission_to_role("reader", "write-docs", TENANT)
        assert await service.can("user-1", TENANT, "documents", "write") is True

        await service.remove_permission_from_role("reader", "write-docs", TENANT)
        assert await service.can("user-1", TENANT, "documents", "write") is False

    @pytest.mark.asyncio
    async def test_cache_failure_treated_as_miss(self):
        broken = AsyncMock()
        broken.get.side_effect = ConnectionError("down")
        broken.set.side_effect = ConnectionError("down")
        broken.delete.side_effect = ConnectionError("down")
        service = AuthorizationService(RbacConfig(enable_caching=True), cache=broken)

        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})

        assert await service.can("user-1", TENANT, "documents", "read") is True

    @pytest.mark.asyncio
    async def test_cache_ignored_when_disabled(self, cache):
        service = AuthorizationService(RbacConfig(enable_caching=False), cache=cache)
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})
        await service.can("user-1", TENANT, "documents", "read")

        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_cache_metrics(self, service):
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})
        await service.can("user-1", TENANT, "documents", "read")
        await service.can("user-1", TENANT, "documents", "read")

        registry = service.metrics.registry
        assert registry.get_sample_value("rbac_cache_requests_total", {"result": "miss"}) == 1
        assert registry.get_sample_value("rbac_cache_requests_total", {"result": "hit"}) == 1
        assert registry.get_sample_value("rbac_authorization_decisions_total", {"decision": "allowed"}) == 2

    @pytest.mark.asyncio
    async def test_invalidation_during_cache_write(self):
        cache = HeldWriteCache()
        service = AuthorizationService(RbacConfig(enable_caching=True), cache=cache)
        await grant(service, "user-1", "reader", {"resource": "documents", "actions": ["read"]})

        decision = asyncio.create_task(service.can("user-1", TENANT, "documents", "read"))
        await cache.write_started.wait()
        await service.unassign_role("user-1", "reader", TENANT)
        cache.release.set()

        # The in-flight decision was computed before the unassignment
        assert await decision is True
        assert await cache.get("user:tenant-1:user-1:permissions") is None
        assert await service.can("user-1", TENANT, "documents", "read") is False
        assert service._pending_writes == {}
        assert service._key_generations == {}

    @pytest.mark.asyncio
    async def test_generation_map_empty_after_writes_finish(self, service):
        for i in range(20):
            await grant(service, f"user-{i}", f"role-{i}")
            await service.can(f"user-{i}", TENANT, "documents", "read")
            await service.unassign_role(f"user-{i}", f"role-{i}", TENANT)

        assert service._key_generations == {}


class HeldWriteCache(InMemoryCache):
    """In-memory cache whose writes wait until released."""

    def __init__(self):
        super().__init__()
        self.write_started = asyncio.Event()
        self.release = asyncio.Event()

    async def set(self, key, value, ttl=None):
        self.write_started.set()
        await self.release.wait()
        await super().set(key, value, ttl=ttl)
