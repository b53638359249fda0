"""
Authorization service.

Combines the role graph, permission store and policy store into
deny-overrides-allow decisions, keeps the effective-permission cache
coherent with role and assignment mutations, and fans audit events out to
registered handlers.
"""

import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from shared.config import RbacConfig
from shared.logging import get_logger, set_user_context, reset_user_context
from shared.metrics import MetricsCollector
from ..cache.base import PermissionCache, permissions_cache_key
from ..cache.memory_cache import InMemoryCache
from . import matcher
from .models import (
    AuditEvent, AuditEventType,
    AuthorizationContext, AuthorizationResult,
    BatchAuthorizationRequest, BatchAuthorizationResult,
    Permission, PermissionEffect, Policy, Role, UserRoleAssignment,
    PermissionCreateRequest, PermissionUpdateRequest,
    RoleCreateRequest, RoleUpdateRequest, AssignRoleRequest,
    PolicyCreateRequest, PolicyUpdateRequest,
)
from .permissions import PermissionStore
from .policies import PolicyStore
from .roles import RoleGraphManager

CustomEvaluator = Callable[[AuthorizationContext, Permission], Union[bool, Awaitable[bool]]]
EventHandler = Callable[[AuditEvent], Union[None, Awaitable[None]]]


@dataclass
class _Subject:
    """What the engine knows about the caller for one tenant."""
    permission_ids: List[str]
    principals: List[str]


class AuthorizationService:
    """Front door of the RBAC engine.

    Collaborators are injected; anything not supplied is created from
    ``config``. A ``cache`` is only consulted when ``config.enable_caching``
    is set (an ``InMemoryCache`` is created when none is given).
    """

    def __init__(
        self,
        config: Optional[RbacConfig] = None,
        *,
        permission_store: Optional[PermissionStore] = None,
        role_manager: Optional[RoleGraphManager] = None,
        policy_store: Optional[PolicyStore] = None,
        cache: Optional[PermissionCache] = None,
        custom_evaluator: Optional[CustomEvaluator] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or RbacConfig()
        self.logger = get_logger("rbac.service")
        self.permission_store = permission_store or PermissionStore()
        self.role_manager = role_manager or RoleGraphManager(self.config.max_inheritance_depth)
        self.policy_store = policy_store or PolicyStore()
        self.custom_evaluator = custom_evaluator
        self.metrics = metrics or MetricsCollector("rbac")

        if self.config.enable_caching:
            self.cache = cache if cache is not None else InMemoryCache(self.config.cache_ttl_ms)
        else:
            self.cache = None

        self._handlers: List[EventHandler] = []
        # Keys this instance wrote, per tenant, for role-level invalidation
        self._cached_keys: Dict[str, Set[str]] = {}
        self._key_generations: Dict[str, int] = {}
        self._pending_writes: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------

    def on_event(self, handler: EventHandler) -> Callable[[], None]:
        """Register an audit handler; returns a callable that removes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def _emit(self, event: AuditEvent) -> None:
        if not self.config.enable_audit_log:
            return
        for handler in list(self._handlers):
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self.metrics.record_audit_handler_error()
                self.logger.error("Audit handler failed", event_type=event.type.value,
                                  handler=getattr(handler, "__name__", repr(handler)), error=str(e))

    async def _emit_mutation(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                             tenant_id: Optional[str], actor_id: Optional[str] = None,
                             previous_state: Any = None, new_state: Any = None,
                             **metadata) -> None:
        self.metrics.record_mutation(event_type.value)
        await self._emit(AuditEvent(
            type=event_type,
            actor_id=actor_id,
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata,
        ))

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def _cache_get(self, key: str) -> Optional[Any]:
        try:
            return await self.cache.get(key)
        except Exception as e:
            self.logger.warning("Cache read failed", key=key, error=str(e))
            return None

    async def _cache_set(self, key: str, value: Any) -> None:
        try:
            await self.cache.set(key, value, ttl=self.config.cache_ttl_ms)
        except Exception as e:
            self.logger.warning("Cache write failed", key=key, error=str(e))

    async def _cache_delete(self, key: str) -> None:
        try:
            await self.cache.delete(key)
        except Exception as e:
            self.logger.warning("Cache delete failed", key=key, error=str(e))

    def _bump_generation(self, key: str) -> None:
        # Only writes still in flight need to observe the invalidation
        if key in self._pending_writes:
            self._key_generations[key] = self._key_generations.get(key, 0) + 1

    async def _invalidate_user(self, user_id: str, tenant_id: str) -> None:
        if self.cache is None:
            return
        key = permissions_cache_key(tenant_id, user_id)
        self._bump_generation(key)
        await self._cache_delete(key)
        self._cached_keys.get(tenant_id, set()).discard(key)

    async def _invalidate_tenant(self, tenant_id: Optional[str]) -> None:
        """Drop every cached permission set written for ``tenant_id`` (all tenants for ``None``)."""
        if self.cache is None:
            return
        tenants = [tenant_id] if tenant_id is not None else list(self._cached_keys)
        for tenant in tenants:
            keys = self._cached_keys.pop(tenant, set())
            for key in keys:
                self._bump_generation(key)
                await self._cache_delete(key)
            if keys:
                self.logger.debug("Invalidated cached permissions", tenant_id=tenant, keys=len(keys))

    async def _resolve_permission_ids(self, user_id: str, tenant_id: str) -> List[str]:
        if self.cache is None:
            return self.role_manager.get_user_effective_permissions(user_id, tenant_id)

        key = permissions_cache_key(tenant_id, user_id)
        cached = await self._cache_get(key)
        if cached is not None:
            self.metrics.record_cache_lookup(hit=True)
            return list(cached)

        self.metrics.record_cache_lookup(hit=False)
        self._pending_writes[key] = self._pending_writes.get(key, 0) + 1
        generation = self._key_generations.get(key, 0)
        try:
            permission_ids = self.role_manager.get_user_effective_permissions(user_id, tenant_id)
            await self._cache_set(key, permission_ids)
            self._cached_keys.setdefault(tenant_id, set()).add(key)
            if self._key_generations.get(key, 0) != generation:
                # Invalidated while the write was in flight
                await self._cache_delete(key)
                self._cached_keys.get(tenant_id, set()).discard(key)
        finally:
            remaining = self._pending_writes[key] - 1
            if remaining:
                self._pending_writes[key] = remaining
            else:
                del self._pending_writes[key]
                self._key_generations.pop(key, None)
        return permission_ids

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def create_permission(self, request: PermissionCreateRequest,
                                actor_id: Optional[str] = None) -> Permission:
        permission = self.permission_store.create_permission(request)
        await self._emit_mutation(AuditEventType.PERMISSION_CREATED, "permission", permission.id,
                                  permission.tenant_id, actor_id, new_state=permission)
        return permission

    async def get_permission(self, permission_id: str, tenant_id: Optional[str] = None) -> Optional[Permission]:
        return self.permission_store.get_permission(permission_id, tenant_id)

    async def get_permissions(self, tenant_id: Optional[str] = None) -> List[Permission]:
        return self.permission_store.get_permissions(tenant_id)

    async def update_permission(self, permission_id: str, request: PermissionUpdateRequest,
                                tenant_id: Optional[str] = None,
                                actor_id: Optional[str] = None) -> Optional[Permission]:
        previous = self.permission_store.get_permission(permission_id, tenant_id)
        updated = self.permission_store.update_permission(permission_id, request, tenant_id)
        if updated is not None:
            await self._emit_mutation(AuditEventType.PERMISSION_UPDATED, "permission", permission_id,
                                      tenant_id, actor_id, previous_state=previous, new_state=updated)
        return updated

    async def delete_permission(self, permission_id: str, tenant_id: Optional[str] = None,
                                actor_id: Optional[str] = None) -> bool:
        previous = self.permission_store.get_permission(permission_id, tenant_id)
        deleted = self.permission_store.delete_permission(permission_id, tenant_id)
        if deleted:
            await self._emit_mutation(AuditEventType.PERMISSION_DELETED, "permission", permission_id,
                                      tenant_id, actor_id, previous_state=previous)
        return deleted

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def create_role(self, request: RoleCreateRequest, actor_id: Optional[str] = None) -> Role:
        role = self.role_manager.create_role(request)
        await self._emit_mutation(AuditEventType.ROLE_CREATED, "role", role.id, role.tenant_id,
                                  actor_id, new_state=role)
        return role

    async def get_role(self, role_id: str, tenant_id: Optional[str] = None) -> Optional[Role]:
        return self.role_manager.get_role(role_id, tenant_id)

    async def get_roles(self, tenant_id: Optional[str] = None) -> List[Role]:
        return self.role_manager.get_roles(tenant_id)

    async def update_role(self, role_id: str, request: RoleUpdateRequest,
                          tenant_id: Optional[str] = None,
                          actor_id: Optional[str] = None) -> Optional[Role]:
        previous = self.role_manager.get_role(role_id, tenant_id)
        updated = self.role_manager.update_role(role_id, request, tenant_id)
        if updated is not None:
            await self._invalidate_tenant(tenant_id)
            await self._emit_mutation(AuditEventType.ROLE_UPDATED, "role", role_id, tenant_id,
                                      actor_id, previous_state=previous, new_state=updated)
        return updated

    async def delete_role(self, role_id: str, tenant_id: Optional[str] = None,
                          actor_id: Optional[str] = None) -> bool:
        previous = self.role_manager.get_role(role_id, tenant_id)
        deleted = self.role_manager.delete_role(role_id, tenant_id)
        if deleted:
            await self._invalidate_tenant(tenant_id)
            await self._emit_mutation(AuditEventType.ROLE_DELETED, "role", role_id, tenant_id,
                                      actor_id, previous_state=previous)
        return deleted

    async def add_permission_to_role(self, role_id: str, permission_id: str,
                                     tenant_id: Optional[str] = None,
                                     actor_id: Optional[str] = None) -> Optional[Role]:
        previous = self.role_manager.get_role(role_id, tenant_id)
        updated = self.role_manager.add_permission_to_role(role_id, permission_id, tenant_id)
        if updated is not None and updated is not previous:
            await self._invalidate_tenant(tenant_id)
            await self._emit_mutation(AuditEventType.ROLE_UPDATED, "role", role_id, tenant_id,
                                      actor_id, previous_state=previous, new_state=updated,
                                      added_permission=permission_id)
        return updated

    async def remove_permission_from_role(self, role_id: str, permission_id: str,
                                          tenant_id: Optional[str] = None,
                                          actor_id: Optional[str] = None) -> Optional[Role]:
        previous = self.role_manager.get_role(role_id, tenant_id)
        updated = self.role_manager.remove_permission_from_role(role_id, permission_id, tenant_id)
        if updated is not None and updated is not previous:
            await self._invalidate_tenant(tenant_id)
            await self._emit_mutation(AuditEventType.ROLE_UPDATED, "role", role_id, tenant_id,
                                      actor_id, previous_state=previous, new_state=updated,
                                      removed_permission=permission_id)
        return updated

    async def get_effective_permissions(self, role_id: str, tenant_id: Optional[str] = None) -> List[str]:
        return self.role_manager.get_effective_permissions(role_id, tenant_id)

    async def initialize_system_roles(self, tenant_id: Optional[str] = None) -> List[Role]:
        """Seed the built-in roles for a tenant; safe to call repeatedly."""
        existing = {role.id for role in self.role_manager.get_roles(tenant_id)
                    if role.tenant_id == tenant_id}
        roles = self.role_manager.create_system_roles(tenant_id)
        for role in roles:
            if role.id not in existing:
                await self._emit_mutation(AuditEventType.ROLE_CREATED, "role", role.id, tenant_id,
                                          new_state=role, system=True)
        return roles

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    async def assign_role(self, request: AssignRoleRequest) -> UserRoleAssignment:
        assignment = self.role_manager.assign_role(request)
        await self._invalidate_user(request.user_id, request.tenant_id)
        await self._emit_mutation(AuditEventType.ROLE_ASSIGNED, "assignment", request.role_id,
                                  request.tenant_id, request.assigned_by, new_state=assignment,
                                  user_id=request.user_id, scope=request.scope)
        return assignment

    async def unassign_role(self, user_id: str, role_id: str, tenant_id: str,
                            scope: Optional[str] = None, actor_id: Optional[str] = None) -> bool:
        removed = self.role_manager.unassign_role(user_id, role_id, tenant_id, scope)
        if removed:
            await self._invalidate_user(user_id, tenant_id)
            await self._emit_mutation(AuditEventType.ROLE_UNASSIGNED, "assignment", role_id,
                                      tenant_id, actor_id, user_id=user_id, scope=scope)
        return removed

    async def get_user_roles(self, user_id: str, tenant_id: str) -> List[UserRoleAssignment]:
        return self.role_manager.get_user_roles(user_id, tenant_id)

    async def get_users_with_role(self, role_id: str, tenant_id: str) -> List[UserRoleAssignment]:
        return self.role_manager.get_users_with_role(role_id, tenant_id)

    async def user_has_role(self, user_id: str, role_id: str, tenant_id: str,
                            scope: Optional[str] = None) -> bool:
        return self.role_manager.user_has_role(user_id, role_id, tenant_id, scope)

    async def get_user_effective_permissions(self, user_id: str, tenant_id: str) -> List[str]:
        return await self._resolve_permission_ids(user_id, tenant_id)

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    async def create_policy(self, request: PolicyCreateRequest, actor_id: Optional[str] = None) -> Policy:
        policy = self.policy_store.create_policy(request)
        await self._emit_mutation(AuditEventType.POLICY_CREATED, "policy", policy.id, policy.tenant_id,
                                  actor_id, new_state=policy)
        return policy

    async def get_policy(self, policy_id: str, tenant_id: Optional[str] = None) -> Optional[Policy]:
        return self.policy_store.get_policy(policy_id, tenant_id)

    async def get_policies(self, tenant_id: Optional[str] = None) -> List[Policy]:
        return self.policy_store.get_policies(tenant_id)

    async def update_policy(self, policy_id: str, request: PolicyUpdateRequest,
                            tenant_id: Optional[str] = None,
                            actor_id: Optional[str] = None) -> Optional[Policy]:
        previous = self.policy_store.get_policy(policy_id, tenant_id)
        updated = self.policy_store.update_policy(policy_id, request, tenant_id)
        if updated is not None:
            await self._emit_mutation(AuditEventType.POLICY_UPDATED, "policy", policy_id, tenant_id,
                                      actor_id, previous_state=previous, new_state=updated)
        return updated

    async def delete_policy(self, policy_id: str, tenant_id: Optional[str] = None,
                            actor_id: Optional[str] = None) -> bool:
        previous = self.policy_store.get_policy(policy_id, tenant_id)
        deleted = self.policy_store.delete_policy(policy_id, tenant_id)
        if deleted:
            await self._emit_mutation(AuditEventType.POLICY_DELETED, "policy", policy_id, tenant_id,
                                      actor_id, previous_state=previous)
        return deleted

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def authorize(self, context: AuthorizationContext) -> AuthorizationResult:
        """Decide whether ``context.user_id`` may perform ``context.action``.

        Any matching deny wins; otherwise any matching allow grants; with no
        match the request is denied. Evaluation failures are logged and
        reported as a denial.
        """
        start = time.perf_counter()
        tokens = set_user_context(context.user_id, context.tenant_id)
        try:
            try:
                subject = await self._load_subject(context.user_id, context.tenant_id)
                result = await self._evaluate(context, subject)
            except Exception as e:
                result = self._failed(context, e)
            return await self._complete(context, result, start)
        finally:
            reset_user_context(tokens)

    async def authorize_batch(self, request: BatchAuthorizationRequest) -> BatchAuthorizationResult:
        """Evaluate several checks for one user; permissions are resolved once."""
        tokens = set_user_context(request.user_id, request.tenant_id)
        try:
            return await self._authorize_batch(request)
        finally:
            reset_user_context(tokens)

    async def _authorize_batch(self, request: BatchAuthorizationRequest) -> BatchAuthorizationResult:
        start = time.perf_counter()

        subject = None
        load_error = None
        try:
            subject = await self._load_subject(request.user_id, request.tenant_id)
        except Exception as e:
            load_error = e

        results = []
        for check in request.checks:
            check_start = time.perf_counter()
            context = AuthorizationContext(
                user_id=request.user_id,
                tenant_id=request.tenant_id,
                resource=check.resource,
                action=check.action,
                resource_id=check.resource_id,
                resource_attributes=check.resource_attributes,
                user_attributes=request.user_attributes,
                request_context=request.request_context,
            )
            if load_error is not None:
                result = self._failed(context, load_error)
            else:
                try:
                    result = await self._evaluate(context, subject)
                except Exception as e:
                    result = self._failed(context, e)
            results.append(await self._complete(context, result, check_start))

        return BatchAuthorizationResult(
            results=results,
            total_evaluation_time_ms=(time.perf_counter() - start) * 1000,
        )

    async def can(self, user_id: str, tenant_id: str, resource: str, action: str,
                  resource_id: Optional[str] = None) -> bool:
        """Boolean shorthand for ``authorize``."""
        result = await self.authorize(AuthorizationContext(
            user_id=user_id,
            tenant_id=tenant_id,
            resource=resource,
            action=action,
            resource_id=resource_id,
        ))
        return result.allowed

    async def _load_subject(self, user_id: str, tenant_id: str) -> _Subject:
        permission_ids = await self._resolve_permission_ids(user_id, tenant_id)
        role_ids = [a.role_id for a in self.role_manager.get_user_roles(user_id, tenant_id)]
        return _Subject(permission_ids=permission_ids,
                        principals=[user_id] + role_ids + permission_ids)

    async def _permission_matches(self, permission: Permission, context: AuthorizationContext) -> bool:
        if self.custom_evaluator is None:
            return matcher.matches_permission(permission, context)
        outcome = self.custom_evaluator(context, permission)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return bool(outcome)

    async def _evaluate(self, context: AuthorizationContext, subject: _Subject) -> AuthorizationResult:
        allowed_by: List[str] = []
        denied_by: List[str] = []

        for permission in self.permission_store.resolve(subject.permission_ids, context.tenant_id):
            if await self._permission_matches(permission, context):
                if permission.effect == PermissionEffect.DENY:
                    denied_by.append(permission.id)
                else:
                    allowed_by.append(permission.id)

        for policy in self.policy_store.get_applicable_policies(context.tenant_id):
            for index, statement in enumerate(policy.statements):
                if not matcher.matches_statement(statement, context, subject.principals):
                    continue
                rule_id = f"{policy.id}:{statement.sid or index}"
                if statement.effect == PermissionEffect.DENY:
                    denied_by.append(rule_id)
                else:
                    allowed_by.append(rule_id)

        if denied_by:
            return AuthorizationResult(
                allowed=False,
                reason=f"Denied by {denied_by[0]}",
                decided_by=denied_by[0],
                matching_rules=allowed_by,
                denied_by=denied_by,
            )
        if allowed_by:
            return AuthorizationResult(
                allowed=True,
                reason=f"Allowed by {allowed_by[0]}",
                decided_by=allowed_by[0],
                matching_rules=allowed_by,
            )
        return AuthorizationResult(allowed=False, reason="No matching permission or policy")

    def _failed(self, context: AuthorizationContext, error: Exception) -> AuthorizationResult:
        self.metrics.record_error(type(error).__name__)
        self.logger.error("Authorization evaluation failed", user_id=context.user_id,
                          tenant_id=context.tenant_id, resource=context.resource,
                          action=context.action, error=str(error))
        return AuthorizationResult(allowed=False, reason=f"Evaluation error: {error}")

    async def _complete(self, context: AuthorizationContext, result: AuthorizationResult,
                        start: float) -> AuthorizationResult:
        elapsed = time.perf_counter() - start
        result.evaluation_time_ms = elapsed * 1000
        self.metrics.record_authorization(result.allowed, elapsed)

        self.logger.debug("Authorization decided", user_id=context.user_id,
                          tenant_id=context.tenant_id, resource=context.resource,
                          action=context.action, allowed=result.allowed,
                          decided_by=result.decided_by)

        await self._emit(AuditEvent(
            type=AuditEventType.AUTHORIZATION_ALLOWED if result.allowed
            else AuditEventType.AUTHORIZATION_DENIED,
            actor_id=context.user_id,
            tenant_id=context.tenant_id,
            entity_type="resource",
            entity_id=context.resource_id or context.resource,
            metadata={
                "resource": context.resource,
                "resource_id": context.resource_id,
                "action": context.action,
                "decided_by": result.decided_by,
                "reason": result.reason,
                "evaluation_time_ms": result.evaluation_time_ms,
            },
        ))
        return result
