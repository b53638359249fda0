"""
RBAC service for the Access Layer.
"""

from typing import Optional

from fastapi import HTTPException, Query, Header

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config

from .cache.redis_cache import RedisCache
from .rbac.models import (
    PermissionCreateRequest, PermissionUpdateRequest,
    RoleCreateRequest, RoleUpdateRequest, AssignRoleRequest,
    PolicyCreateRequest, PolicyUpdateRequest,
    AuthorizeRequest, BatchAuthorizeRequest,
)
from .rbac.service import AuthorizationService

SERVICE_NAME = "rbac"
SERVICE_PORT = 8016


class RbacApiService(BaseService):
    """HTTP surface over ``AuthorizationService``."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 authorization: Optional[AuthorizationService] = None):
        config = config or get_config(SERVICE_NAME, SERVICE_PORT)
        super().__init__(SERVICE_NAME, config.port, config=config)

        self.redis_cache: Optional[RedisCache] = None
        if authorization is None:
            cache = None
            if self.config.enable_caching and self.config.cache_backend == "redis":
                self.redis_cache = RedisCache(self.config.redis_url, self.config.cache_ttl_ms)
                cache = self.redis_cache
            authorization = AuthorizationService(self.config, cache=cache, metrics=self.metrics)
        self.authorization = authorization

        self._setup_rbac_routes()

    def _setup_rbac_routes(self):
        """Set up RBAC-specific routes."""
        authz = self.authorization

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Access Layer - RBAC Service",
                "version": "1.0.0",
                "capabilities": ["roles", "permissions", "policies", "authorization"]
            }

        # Permissions

        @self.app.post("/rbac/permissions", status_code=201)
        async def create_permission(request: PermissionCreateRequest,
                                    actor_id: Optional[str] = Header(None, alias="X-Actor-ID")):
            return await authz.create_permission(request, actor_id=actor_id)

        @self.app.get("/rbac/permissions")
        async def list_permissions(tenant_id: Optional[str] = Query(None, description="Filter by tenant")):
            permissions = await authz.get_permissions(tenant_id)
            return {"permissions": permissions, "total": len(permissions)}

        @self.app.get("/rbac/permissions/{permission_id}")
        async def get_permission(permission_id: str, tenant_id: Optional[str] = Query(None)):
            permission = await authz.get_permission(permission_id, tenant_id)
            if permission is None:
                raise HTTPException(status_code=404, detail="Permission not found")
            return permission

        @self.app.patch("/rbac/permissions/{permission_id}")
        async def update_permission(permission_id: str, request: PermissionUpdateRequest,
                                    tenant_id: Optional[str] = Query(None),
                                    actor_id: Optional[str] = Header(None, alias="X-Actor-ID")):
            permission = await authz.update_permission(permission_id, request, tenant_id, actor_id=actor_id)
            if permission is None:
                raise HTTPException(status_code=404, detail="Permission not found")
            return permission

        @self.app.delete("/rbac/permissions/{permission_id}")
        async def delete_permission(permission_id: str, tenant_id: Optional[str] = Query(None),
                                    actor_id: Optional[str] = Header(None, alias="X-Actor-ID")):
            if not await authz.delete_permission(permission_id, tenant_id, actor_id=actor_id):
                raise HTTPException(status_code=404, detail="Permission not found")
            return {"success": True, "message": "Permission deleted successfully"}

        # Roles

        @self.app.post("/rbac/roles", status_code=201)
        async def create_role(request: RoleCreateRequest,
                              actor_id: Optional[str] = Header(None, alias="X-Actor-ID")):
            return await authz.create_role(request, actor_id=actor_id)

        @self.app.get("/rbac/roles")
        async def list_roles(tenant_id: Optional[str] = Query(None, description="Filter by tenant")):
            roles = await authz.get_roles(tenant_id)
            return {"roles": roles, "total": len(roles)}

        @self.app.get("/rbac/roles/{role_id}")
        async def get_role(role_id: str, tenant_id: Optional[str] = Query(None)):
            role = await authz.get_role(role_id, tenant_id)
            if role is None:
                raise HTTPException(status_code=404, detail="Role not found")
            return role

        @self.app.patch("/rbac/roles/{role_id}")
        async def update_role(role_id: str, request: RoleUpdateRequest,
                              tenant_id: Optional[str] = Query(None),
                              actor_id: Optional[str] = Header(None, alias="X-Actor-ID")):
            role = await authz.update_role(role_id, request, tenant_id, actor_id=actor_id)
            if role is None:
                raise HTTPException(status_code=404, detail="Role not found")
            return role

        @self.app.delete("/rbac/roles/{role_id}")
        async def delete_role(role_id: str, tenant_id: Optional[str] = Query(None),
                              actor_id: Optional[str] = Header(None, alias="X-Actor-ID")):
            if not await authz.delete_role(role_id, tenant_id, actor_id=actor_id):
                raise HTTPException(status_code=404, detail="Role not found")
            return {"success": True, "message": "Role deleted successfully"}

        @self.app.post("/rbac/roles/{role_id}/permissions/{permission_id}")
        async def add_permission_to_role(role_id: str, permission_id: str,
                                         tenant_id: Optional[str] = Query(None),
                                         actor_id: Optional[str] = Header(None, alias="X-Actor-ID")):
            role = await authz.add_permission_to_role(role_id, permission_id, tenant_id, actor_id=actor_id)
            if role is None:
                raise HTTPException(status_code=404, detail="Role not found")
            return role

        @self.app.delete("/rbac/roles/{role_id}/permissions/{permission_id}")
        async def remove_permission_from_role(role_id: str, permission_id: str,
                                              tenant_id: Optional[str] = Query(None),
                                              actor_id: Optional[str] = Header(None, alias="X-Actor-ID")):
            role = await authz.remove_permission_from_role(role_id, permission_id, tenant_id,
                                                           actor_id=actor_id)
            if role is None:
                raise HTTPException(status_code=404, detail="Role not found")
            return role

        @self.app.get("/rbac/roles/{role_id}/effective-permissions")
        async def get_effective_permissions(role_id: str, tenant_id: Optional[str] = Query(None)):
            permissions = await authz.get_effective_permissions(role_id, tenant_id)
            return {"role_id": role_id, "permissions": permissions}

        @self.app.get("/rbac/roles/{role_id}/users")
        async def get_users_with_role(role_id: str, tenant_id: str = Query(...)):
            assignments = await authz.get_users_with_role(role_id, tenant_id)
            return {"assignments": assignments, "total": len(assignments)}

        @self.app.post("/rbac/system-roles")
        async def initialize_system_roles(tenant_id: Optional[str] = Query(None)):
            roles = await authz.initialize_system_roles(tenant_id)
            return {"roles": roles}

        # Assignments

        @self.app.post("/rbac/assignments", status_code=201)
        async def assign_role(request: AssignRoleRequest):
            return await authz.assign_role(request)

        @self.app.delete("/rbac/assignments")
        async def unassign_role(
            user_id: str = Query(...),
            role_id: str = Query(...),
            tenant_id: str = Query(...),
            scope: Optional[str] = Query(None, description="Only this scope; all scopes when absent"),
            actor_id: Optional[str] = Header(None, alias="X-Actor-ID")
        ):
            if not await authz.unassign_role(user_id, role_id, tenant_id, scope, actor_id=actor_id):
                raise HTTPException(status_code=404, detail="Assignment not found")
            return {"success": True, "message": "Role unassigned successfully"}

        @self.app.get("/rbac/users/{user_id}/roles")
        async def get_user_roles(user_id: str, tenant_id: str = Query(...)):
            assignments = await authz.get_user_roles(user_id, tenant_id)
            return {"user_id": user_id, "tenant_id": tenant_id, "assignments": assignments}

        @self.app.get("/rbac/users/{user_id}/roles/{role_id}")
        async def user_has_role(user_id: str, role_id: str, tenant_id: str = Query(...),
                                scope: Optional[str] = Query(None)):
            has_role = await authz.user_has_role(user_id, role_id, tenant_id, scope)
            return {"user_id": user_id, "role_id": role_id, "has_role": has_role}

        @self.app.get("/rbac/users/{user_id}/permissions")
        async def get_user_effective_permissions(user_id: str, tenant_id: str = Query(...)):
            permissions = await authz.get_user_effective_permissions(user_id, tenant_id)
            return {"user_id": user_id, "tenant_id": tenant_id, "permissions": permissions}

        # Policies

        @self.app.post("/rbac/policies", status_code=201)
        async def create_policy(request: PolicyCreateRequest,
                                actor_id: Optional[str] = Header(None, alias="X-Actor-ID")):
            return await authz.create_policy(request, actor_id=actor_id)

        @self.app.get("/rbac/policies")
        async def list_policies(tenant_id: Optional[str] = Query(None, description="Filter by tenant")):
            policies = await authz.get_policies(tenant_id)
            return {"policies": policies, "total": len(policies)}

        @self.app.get("/rbac/policies/{policy_id}")
        async def get_policy(policy_id: str, tenant_id: Optional[str] = Query(None)):
            policy = await authz.get_policy(policy_id, tenant_id)
            if policy is None:
                raise HTTPException(status_code=404, detail="Policy not found")
            return policy

        @self.app.patch("/rbac/policies/{policy_id}")
        async def update_policy(policy_id: str, request: PolicyUpdateRequest,
                                tenant_id: Optional[str] = Query(None),
                                actor_id: Optional[str] = Header(None, alias="X-Actor-ID")):
            policy = await authz.update_policy(policy_id, request, tenant_id, actor_id=actor_id)
            if policy is None:
                raise HTTPException(status_code=404, detail="Policy not found")
            return policy

        @self.app.delete("/rbac/policies/{policy_id}")
        async def delete_policy(policy_id: str, tenant_id: Optional[str] = Query(None),
                                actor_id: Optional[str] = Header(None, alias="X-Actor-ID")):
            if not await authz.delete_policy(policy_id, tenant_id, actor_id=actor_id):
                raise HTTPException(status_code=404, detail="Policy not found")
            return {"success": True, "message": "Policy deleted successfully"}

        # Decisions

        @self.app.post("/rbac/authorize")
        async def authorize(request: AuthorizeRequest):
            return await authz.authorize(request.to_context())

        @self.app.post("/rbac/authorize/batch")
        async def authorize_batch(request: BatchAuthorizeRequest):
            return await authz.authorize_batch(request.to_batch())

        @self.app.get("/rbac/can")
        async def can(
            user_id: str = Query(...),
            tenant_id: str = Query(...),
            resource: str = Query(...),
            action: str = Query(...),
            resource_id: Optional[str] = Query(None)
        ):
            allowed = await authz.can(user_id, tenant_id, resource, action, resource_id)
            return {"allowed": allowed}

    async def _check_dependencies(self):
        """Check RBAC service dependencies."""
        dependencies = {}
        if self.redis_cache is not None:
            health = await self.redis_cache.health_check()
            dependencies["redis"] = "ok" if health.get("status") == "healthy" else "error"
        return dependencies

    async def start(self):
        """Start RBAC service components."""
        if self.redis_cache is not None:
            await self.redis_cache.start()
        self.logger.info("RBAC service started", caching=self.config.enable_caching,
                         cache_backend=self.config.cache_backend)

    async def stop(self):
        """Stop RBAC service components."""
        if self.redis_cache is not None:
            await self.redis_cache.stop()
        self.logger.info("RBAC service stopped")


def create_app(config: Optional[ServiceConfig] = None):
    """Create RBAC service application."""
    service = RbacApiService(config)
    return service.app


if __name__ == "__main__":
    service = RbacApiService()
    service.run()
