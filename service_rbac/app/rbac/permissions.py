"""
Tenant-scoped permission storage.
"""

import threading
import uuid
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple

from shared.errors import ConflictError, ValidationError
from shared.logging import get_logger
from . import matcher
from .models import (
    PERMISSION_WILDCARD,
    Permission, PermissionEffect, PermissionCreateRequest, PermissionUpdateRequest,
    utcnow,
)

# Stands in for the "*" permission ID held by super administrators
WILDCARD_PERMISSION = Permission(
    id=PERMISSION_WILDCARD,
    name="All permissions",
    resource="*",
    actions=["*"],
    effect=PermissionEffect.ALLOW,
)

StoreKey = Tuple[Optional[str], str]


def _parse_effect(value) -> PermissionEffect:
    try:
        return PermissionEffect(value)
    except ValueError:
        raise ValidationError(f"Invalid effect '{value}'", {"effect": value})


class PermissionStore:
    """Permission records keyed by ``(tenant_id, permission_id)``."""

    def __init__(self):
        self.logger = get_logger("rbac.permissions")
        self._permissions: Dict[StoreKey, Permission] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(permission_id: str, tenant_id: Optional[str] = None) -> StoreKey:
        return (tenant_id or None, permission_id)

    @staticmethod
    def _generate_id() -> str:
        return f"perm_{uuid.uuid4().hex[:12]}"

    def _validate(self, permission: Permission) -> None:
        if not permission.name or not permission.name.strip():
            raise ValidationError("Permission name is required")
        if not permission.resource or not permission.resource.strip():
            raise ValidationError("Permission resource is required")
        matcher.validate_non_empty(permission.actions, "Permission must have at least one action")
        matcher.validate_conditions(permission.conditions)
        if permission.time_conditions is not None:
            matcher.validate_time_condition(permission.time_conditions)

    def create_permission(self, request: PermissionCreateRequest) -> Permission:
        """Validate and store a new permission."""
        permission = Permission(
            id=request.id or self._generate_id(),
            name=request.name,
            description=request.description,
            resource=request.resource,
            actions=list(request.actions),
            effect=_parse_effect(request.effect),
            conditions=[c.to_condition() for c in request.conditions],
            time_conditions=request.time_conditions.to_time_condition() if request.time_conditions else None,
            priority=request.priority,
            metadata=dict(request.metadata),
            tenant_id=request.tenant_id,
        )
        self._validate(permission)

        key = self._key(permission.id, permission.tenant_id)
        with self._lock:
            if key in self._permissions:
                raise ConflictError(
                    f"Permission with ID '{permission.id}' already exists",
                    {"permission_id": permission.id, "tenant_id": permission.tenant_id}
                )
            self._permissions[key] = permission

        self.logger.info("Permission created", permission_id=permission.id,
                         tenant_id=permission.tenant_id, name=permission.name)
        return permission

    def get_permission(self, permission_id: str, tenant_id: Optional[str] = None) -> Optional[Permission]:
        """Exact-key lookup."""
        return self._permissions.get(self._key(permission_id, tenant_id))

    def get_permissions(self, tenant_id: Optional[str] = None) -> List[Permission]:
        """All permissions, or those of exactly one tenant."""
        with self._lock:
            permissions = list(self._permissions.values())
        if tenant_id is None:
            return permissions
        return [p for p in permissions if p.tenant_id == tenant_id]

    def update_permission(self, permission_id: str, request: PermissionUpdateRequest,
                          tenant_id: Optional[str] = None) -> Optional[Permission]:
        """Apply the fields set on ``request``; ``None`` if the permission is unknown."""
        changes = request.model_dump(exclude_unset=True)
        key = self._key(permission_id, tenant_id)

        with self._lock:
            existing = self._permissions.get(key)
            if existing is None:
                return None

            if "effect" in changes:
                changes["effect"] = _parse_effect(changes["effect"])
            if "conditions" in changes:
                changes["conditions"] = [c.to_condition() for c in request.conditions or []]
            if "time_conditions" in changes:
                changes["time_conditions"] = (
                    request.time_conditions.to_time_condition() if request.time_conditions else None
                )
            changes = {k: v for k, v in changes.items()
                       if v is not None or k in ("description", "time_conditions")}

            updated = replace(existing, **changes, updated_at=utcnow())
            self._validate(updated)
            self._permissions[key] = updated

        self.logger.info("Permission updated", permission_id=permission_id, tenant_id=tenant_id,
                         fields=sorted(changes))
        return updated

    def delete_permission(self, permission_id: str, tenant_id: Optional[str] = None) -> bool:
        with self._lock:
            removed = self._permissions.pop(self._key(permission_id, tenant_id), None)
        if removed is not None:
            self.logger.info("Permission deleted", permission_id=permission_id, tenant_id=tenant_id)
        return removed is not None

    def resolve(self, permission_ids: Iterable[str], tenant_id: Optional[str]) -> List[Permission]:
        """Records for ``permission_ids`` as seen from ``tenant_id``.

        A tenant's own record wins; otherwise the tenant-agnostic record with
        the same ID is used. ``*`` resolves to the allow-all permission.
        Unknown IDs are skipped.
        """
        resolved: List[Permission] = []
        for permission_id in permission_ids:
            if permission_id == PERMISSION_WILDCARD:
                resolved.append(WILDCARD_PERMISSION)
                continue
            permission = self.get_permission(permission_id, tenant_id)
            if permission is None and tenant_id:
                permission = self.get_permission(permission_id, None)
            if permission is not None:
                resolved.append(permission)
        return resolved

    def import_permissions(self, permissions: Iterable[Permission]) -> int:
        """Load existing records (e.g. from a durable store) without events."""
        count = 0
        with self._lock:
            for permission in permissions:
                self._permissions[self._key(permission.id, permission.tenant_id)] = permission
                count += 1
        return count

    def clear(self) -> None:
        with self._lock:
            self._permissions.clear()
