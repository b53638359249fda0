"""
Role inheritance graph and user role assignments.

Roles live in an arena keyed by ``(tenant_id, role_id)``; parent edges are
plain role IDs resolved inside the same tenant. Every mutation runs under a
re-entrant lock so cycle and depth checks always see a fully applied graph.
"""

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from shared.errors import (
    ConflictError, ForbiddenError, NotFoundError, ValidationError,
    CircularInheritanceError, InheritanceDepthError,
)
from shared.logging import get_logger
from .models import (
    PERMISSION_WILDCARD,
    Role, SystemRole, UserRoleAssignment,
    RoleCreateRequest, RoleUpdateRequest, AssignRoleRequest,
    utcnow,
)

RoleKey = Tuple[Optional[str], str]

DEFAULT_MAX_INHERITANCE_DEPTH = 10

SYSTEM_ROLE_DEFINITIONS = (
    (SystemRole.SUPER_ADMIN, "Super Administrator", "Full system access", [PERMISSION_WILDCARD]),
    (SystemRole.ADMIN, "Administrator", "Administrative access", []),
    (SystemRole.USER, "User", "Standard user access", []),
    (SystemRole.GUEST, "Guest", "Limited guest access", []),
)


class RoleGraphManager:
    """Owns roles, their parent edges and the assignments of roles to users."""

    def __init__(self, max_inheritance_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH):
        self.logger = get_logger("rbac.roles")
        self.max_inheritance_depth = max_inheritance_depth
        self._roles: Dict[RoleKey, Role] = {}
        # (tenant_id, user_id) -> assignments
        self._assignments: Dict[Tuple[str, str], List[UserRoleAssignment]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(role_id: str, tenant_id: Optional[str] = None) -> RoleKey:
        return (tenant_id or None, role_id)

    @staticmethod
    def _generate_id() -> str:
        return f"role_{uuid.uuid4().hex[:12]}"

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, request: RoleCreateRequest) -> Role:
        """Create a role after checking its name, ID and parent edges."""
        if not request.name or not request.name.strip():
            raise ValidationError("Role name is required")
        if request.max_assignments is not None and request.max_assignments < 0:
            raise ValidationError("max_assignments must not be negative",
                                  {"max_assignments": request.max_assignments})

        role_id = request.id or self._generate_id()
        tenant_id = request.tenant_id

        with self._lock:
            if self._key(role_id, tenant_id) in self._roles:
                raise ConflictError(
                    f"Role with ID '{role_id}' already exists",
                    {"role_id": role_id, "tenant_id": tenant_id}
                )
            parents = self._dedupe(request.parent_roles)
            self._check_parents(role_id, parents, tenant_id)

            role = Role(
                id=role_id,
                name=request.name,
                description=request.description,
                permissions=self._dedupe(request.permissions),
                parent_roles=parents,
                is_system=request.is_system,
                max_assignments=request.max_assignments,
                metadata=dict(request.metadata),
                tenant_id=tenant_id,
            )
            self._roles[self._key(role_id, tenant_id)] = role

        self.logger.info("Role created", role_id=role_id, tenant_id=tenant_id,
                         parent_roles=parents)
        return role

    def get_role(self, role_id: str, tenant_id: Optional[str] = None) -> Optional[Role]:
        return self._roles.get(self._key(role_id, tenant_id))

    def get_roles(self, tenant_id: Optional[str] = None) -> List[Role]:
        """All roles, or those of exactly one tenant."""
        with self._lock:
            roles = list(self._roles.values())
        if tenant_id is None:
            return roles
        return [r for r in roles if r.tenant_id == tenant_id]

    def update_role(self, role_id: str, request: RoleUpdateRequest,
                    tenant_id: Optional[str] = None) -> Optional[Role]:
        """Apply the fields set on ``request``.

        System roles keep their name and permissions. A new parent list is
        checked against the graph as it would look after the update.
        Returns ``None`` when the role does not exist.
        """
        changes = {k: v for k, v in request.model_dump(exclude_unset=True).items()
                   if v is not None or k in ("description", "max_assignments")}

        with self._lock:
            existing = self.get_role(role_id, tenant_id)
            if existing is None:
                return None

            if existing.is_system and ("name" in changes or "permissions" in changes):
                raise ForbiddenError(
                    "Cannot modify name or permissions of system role",
                    {"role_id": role_id, "tenant_id": tenant_id}
                )
            if "name" in changes and not changes["name"].strip():
                raise ValidationError("Role name is required")
            if changes.get("max_assignments") is not None and changes["max_assignments"] < 0:
                raise ValidationError("max_assignments must not be negative",
                                      {"max_assignments": changes["max_assignments"]})
            if "permissions" in changes:
                changes["permissions"] = self._dedupe(changes["permissions"])
            if "parent_roles" in changes:
                changes["parent_roles"] = self._dedupe(changes["parent_roles"])
                self._check_parents(role_id, changes["parent_roles"], tenant_id)

            updated = replace(existing, **changes, updated_at=utcnow())
            self._roles[self._key(role_id, tenant_id)] = updated

        self.logger.info("Role updated", role_id=role_id, tenant_id=tenant_id,
                         fields=sorted(changes))
        return updated

    def delete_role(self, role_id: str, tenant_id: Optional[str] = None) -> bool:
        """Delete a role and every assignment of it within the tenant."""
        with self._lock:
            role = self.get_role(role_id, tenant_id)
            if role is None:
                return False
            if role.is_system:
                raise ForbiddenError("Cannot delete system role",
                                     {"role_id": role_id, "tenant_id": tenant_id})

            children = [r.id for r in self._roles.values()
                        if r.tenant_id == role.tenant_id and role_id in r.parent_roles]
            if children:
                raise ConflictError(
                    f"Role '{role_id}' is inherited by other roles",
                    {"role_id": role_id, "inherited_by": children}
                )

            del self._roles[self._key(role_id, tenant_id)]
            removed = 0
            for (assignment_tenant, user_id), assignments in list(self._assignments.items()):
                if assignment_tenant != role.tenant_id:
                    continue
                kept = [a for a in assignments if a.role_id != role_id]
                removed += len(assignments) - len(kept)
                self._assignments[(assignment_tenant, user_id)] = kept

        self.logger.info("Role deleted", role_id=role_id, tenant_id=tenant_id,
                         assignments_removed=removed)
        return True

    def add_permission_to_role(self, role_id: str, permission_id: str,
                               tenant_id: Optional[str] = None) -> Optional[Role]:
        role = self.get_role(role_id, tenant_id)
        if role is None:
            return None
        if permission_id in role.permissions:
            return role
        return self.update_role(
            role_id, RoleUpdateRequest(permissions=role.permissions + [permission_id]), tenant_id
        )

    def remove_permission_from_role(self, role_id: str, permission_id: str,
                                    tenant_id: Optional[str] = None) -> Optional[Role]:
        role = self.get_role(role_id, tenant_id)
        if role is None:
            return None
        if permission_id not in role.permissions:
            return role
        remaining = [p for p in role.permissions if p != permission_id]
        return self.update_role(role_id, RoleUpdateRequest(permissions=remaining), tenant_id)

    def get_effective_permissions(self, role_id: str, tenant_id: Optional[str] = None) -> List[str]:
        """Permission IDs of the role and all of its ancestors, deduplicated.

        Raises ``InheritanceDepthError`` once the walk goes deeper than
        ``max_inheritance_depth`` parent edges.
        """
        collected: List[str] = []
        self._collect_permissions(role_id, tenant_id, set(), 0, collected)
        return self._dedupe(collected)

    def _collect_permissions(self, role_id: str, tenant_id: Optional[str], visited: Set[str],
                             depth: int, collected: List[str]) -> None:
        if depth > self.max_inheritance_depth:
            raise InheritanceDepthError(
                f"Maximum role inheritance depth ({self.max_inheritance_depth}) exceeded",
                {"role_id": role_id, "tenant_id": tenant_id, "max_depth": self.max_inheritance_depth}
            )
        if role_id in visited:
            return
        visited.add(role_id)

        role = self.get_role(role_id, tenant_id)
        if role is None:
            return
        collected.extend(role.permissions)
        for parent_id in role.parent_roles:
            self._collect_permissions(parent_id, tenant_id, visited, depth + 1, collected)

    def _check_parents(self, role_id: str, parents: List[str], tenant_id: Optional[str]) -> None:
        for parent_id in parents:
            if parent_id == role_id:
                raise CircularInheritanceError(
                    f"Role '{role_id}' cannot inherit from itself",
                    {"role_id": role_id, "parent_role": parent_id}
                )
            if self.get_role(parent_id, tenant_id) is None:
                raise NotFoundError(
                    f"Parent role '{parent_id}' not found",
                    {"role_id": role_id, "parent_role": parent_id, "tenant_id": tenant_id}
                )
            if self._would_create_cycle(role_id, parent_id, tenant_id):
                raise CircularInheritanceError(
                    f"Adding parent role '{parent_id}' would create circular inheritance",
                    {"role_id": role_id, "parent_role": parent_id}
                )

        # Longest chain through role_id: edges above it plus edges below it
        above = max((self._ancestor_height(p, tenant_id) + 1 for p in parents), default=0)
        below = self._descendant_height(role_id, tenant_id)
        if above + below > self.max_inheritance_depth:
            raise InheritanceDepthError(
                f"Maximum role inheritance depth ({self.max_inheritance_depth}) exceeded",
                {"role_id": role_id, "tenant_id": tenant_id, "depth": above + below,
                 "max_depth": self.max_inheritance_depth}
            )

    def _ancestor_height(self, role_id: str, tenant_id: Optional[str],
                         memo: Optional[Dict[str, int]] = None) -> int:
        """Number of parent edges on the longest path up from ``role_id``."""
        memo = {} if memo is None else memo
        if role_id not in memo:
            memo[role_id] = 0
            role = self.get_role(role_id, tenant_id)
            if role is not None and role.parent_roles:
                memo[role_id] = 1 + max(self._ancestor_height(p, tenant_id, memo)
                                        for p in role.parent_roles)
        return memo[role_id]

    def _descendant_height(self, role_id: str, tenant_id: Optional[str]) -> int:
        """Number of child edges on the longest path down from ``role_id``."""
        children: Dict[str, List[str]] = {}
        for role in self._roles.values():
            if (role.tenant_id or None) == (tenant_id or None):
                for parent_id in role.parent_roles:
                    children.setdefault(parent_id, []).append(role.id)

        memo: Dict[str, int] = {}

        def height(current: str) -> int:
            if current not in memo:
                memo[current] = 0
                below = children.get(current, [])
                if below:
                    memo[current] = 1 + max(height(c) for c in below)
            return memo[current]

        return height(role_id)

    def _would_create_cycle(self, child_id: str, parent_id: str, tenant_id: Optional[str]) -> bool:
        """True when ``child_id`` is already an ancestor of ``parent_id``."""
        stack = [parent_id]
        visited: Set[str] = set()
        while stack:
            current = stack.pop()
            if current == child_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            role = self.get_role(current, tenant_id)
            if role is not None:
                stack.extend(role.parent_roles)
        return False

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def assign_role(self, request: AssignRoleRequest) -> UserRoleAssignment:
        """Grant a role to a user within a tenant, optionally for one scope."""
        with self._lock:
            role = self.get_role(request.role_id, request.tenant_id)
            if role is None:
                raise NotFoundError(
                    f"Role '{request.role_id}' not found",
                    {"role_id": request.role_id, "tenant_id": request.tenant_id}
                )

            now = utcnow()
            assignments = self._assignments.setdefault((request.tenant_id, request.user_id), [])
            existing = next(
                (a for a in assignments if a.role_id == request.role_id and a.scope == request.scope),
                None
            )
            if existing is not None and existing.is_active(now):
                raise ConflictError(
                    f"User '{request.user_id}' already has role '{request.role_id}'",
                    {"user_id": request.user_id, "role_id": request.role_id, "scope": request.scope}
                )

            if role.max_assignments is not None:
                current = len(self.get_users_with_role(request.role_id, request.tenant_id))
                if current >= role.max_assignments:
                    raise ConflictError(
                        f"Role '{request.role_id}' has reached maximum assignments ({role.max_assignments})",
                        {"role_id": request.role_id, "max_assignments": role.max_assignments}
                    )

            if existing is not None:
                # Expired grant for the same scope is replaced
                assignments.remove(existing)

            assignment = UserRoleAssignment(
                user_id=request.user_id,
                role_id=request.role_id,
                tenant_id=request.tenant_id,
                scope=request.scope,
                expires_at=request.expires_at,
                assigned_by=request.assigned_by,
                metadata=dict(request.metadata),
                assigned_at=now,
            )
            assignments.append(assignment)

        self.logger.info("Role assigned", user_id=request.user_id, role_id=request.role_id,
                         tenant_id=request.tenant_id, scope=request.scope)
        return assignment

    def unassign_role(self, user_id: str, role_id: str, tenant_id: str,
                      scope: Optional[str] = None) -> bool:
        """Remove a grant. Without ``scope`` every scope of the role is removed."""
        with self._lock:
            assignments = self._assignments.get((tenant_id, user_id))
            if not assignments:
                return False
            kept = [a for a in assignments
                    if not (a.role_id == role_id and (scope is None or a.scope == scope))]
            if len(kept) == len(assignments):
                return False
            self._assignments[(tenant_id, user_id)] = kept

        self.logger.info("Role unassigned", user_id=user_id, role_id=role_id,
                         tenant_id=tenant_id, scope=scope)
        return True

    def get_user_roles(self, user_id: str, tenant_id: str,
                       now: Optional[datetime] = None) -> List[UserRoleAssignment]:
        """Non-expired assignments of the user in exactly this tenant."""
        now = now or utcnow()
        return [a for a in self._assignments.get((tenant_id, user_id), []) if a.is_active(now)]

    def get_users_with_role(self, role_id: str, tenant_id: str) -> List[UserRoleAssignment]:
        now = utcnow()
        with self._lock:
            return [
                a
                for (assignment_tenant, _), assignments in self._assignments.items()
                if assignment_tenant == tenant_id
                for a in assignments
                if a.role_id == role_id and a.is_active(now)
            ]

    def user_has_role(self, user_id: str, role_id: str, tenant_id: str,
                      scope: Optional[str] = None) -> bool:
        """An unscoped assignment satisfies any requested scope."""
        return any(
            a.role_id == role_id and (scope is None or a.scope is None or a.scope == scope)
            for a in self.get_user_roles(user_id, tenant_id)
        )

    def get_user_effective_permissions(self, user_id: str, tenant_id: str) -> List[str]:
        permissions: List[str] = []
        for assignment in self.get_user_roles(user_id, tenant_id):
            permissions.extend(self.get_effective_permissions(assignment.role_id, tenant_id))
        return self._dedupe(permissions)

    # ------------------------------------------------------------------
    # Seeding and bulk load
    # ------------------------------------------------------------------

    def create_system_roles(self, tenant_id: Optional[str] = None) -> List[Role]:
        """Seed the built-in roles. Roles that already exist are left alone."""
        roles = []
        created = []
        with self._lock:
            for role_id, name, description, permissions in SYSTEM_ROLE_DEFINITIONS:
                key = self._key(role_id.value, tenant_id)
                role = self._roles.get(key)
                if role is None:
                    role = Role(
                        id=role_id.value,
                        name=name,
                        description=description,
                        permissions=list(permissions),
                        is_system=True,
                        tenant_id=tenant_id,
                    )
                    self._roles[key] = role
                    created.append(role.id)
                roles.append(role)

        if created:
            self.logger.info("System roles created", tenant_id=tenant_id, role_ids=created)
        return roles

    def import_roles(self, roles: Iterable[Role]) -> int:
        """Load existing roles, then verify the resulting graph is acyclic."""
        with self._lock:
            snapshot = dict(self._roles)
            count = 0
            for role in roles:
                self._roles[self._key(role.id, role.tenant_id)] = role
                count += 1
            try:
                for role in self._roles.values():
                    for parent_id in role.parent_roles:
                        if self._would_create_cycle(role.id, parent_id, role.tenant_id):
                            raise CircularInheritanceError(
                                f"Imported role '{role.id}' is part of an inheritance cycle",
                                {"role_id": role.id, "parent_role": parent_id}
                            )
            except CircularInheritanceError:
                self._roles = snapshot
                raise
        return count

    def import_assignments(self, assignments: Iterable[UserRoleAssignment]) -> int:
        count = 0
        with self._lock:
            for assignment in assignments:
                self._assignments.setdefault((assignment.tenant_id, assignment.user_id), []).append(assignment)
                count += 1
        return count

    def clear(self) -> None:
        with self._lock:
            self._roles.clear()
            self._assignments.clear()

    @staticmethod
    def _dedupe(values: Iterable[str]) -> List[str]:
        return list(dict.fromkeys(values))
