"""
Tenant-scoped policy storage.
"""

import threading
import uuid
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple

from shared.errors import ConflictError, ValidationError
from shared.logging import get_logger
from . import matcher
from .models import (
    Policy, PolicyStatement, PermissionEffect,
    PolicyCreateRequest, PolicyUpdateRequest, PolicyStatementSpec,
    utcnow,
)

StoreKey = Tuple[Optional[str], str]


def build_statement(spec: PolicyStatementSpec, index: int) -> PolicyStatement:
    """Convert caller input into a validated statement."""
    try:
        effect = PermissionEffect(spec.effect)
    except ValueError:
        raise ValidationError(f"Invalid effect '{spec.effect}' in statement {index}",
                              {"statement": index, "effect": spec.effect})

    details = {"statement": index, "sid": spec.sid}
    matcher.validate_non_empty(spec.actions, f"Statement {index} must have actions", details)
    matcher.validate_non_empty(spec.resources, f"Statement {index} must have resources", details)

    statement = PolicyStatement(
        sid=spec.sid,
        effect=effect,
        actions=list(spec.actions),
        resources=list(spec.resources),
        conditions=[c.to_condition() for c in spec.conditions],
        principals=list(spec.principals),
        not_principals=list(spec.not_principals),
        not_actions=list(spec.not_actions),
        not_resources=list(spec.not_resources),
    )
    matcher.validate_conditions(statement.conditions)
    return statement


class PolicyStore:
    """Policies keyed by ``(tenant_id, policy_id)``."""

    def __init__(self):
        self.logger = get_logger("rbac.policies")
        self._policies: Dict[StoreKey, Policy] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(policy_id: str, tenant_id: Optional[str] = None) -> StoreKey:
        return (tenant_id or None, policy_id)

    @staticmethod
    def _generate_id() -> str:
        return f"policy_{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _build_statements(specs: List[PolicyStatementSpec]) -> List[PolicyStatement]:
        if not specs:
            raise ValidationError("Policy must have at least one statement")
        return [build_statement(spec, index) for index, spec in enumerate(specs)]

    def create_policy(self, request: PolicyCreateRequest) -> Policy:
        if not request.name or not request.name.strip():
            raise ValidationError("Policy name is required")

        policy = Policy(
            id=request.id or self._generate_id(),
            name=request.name,
            description=request.description,
            version=request.version,
            statements=self._build_statements(request.statements),
            is_active=request.is_active,
            priority=request.priority,
            tenant_id=request.tenant_id,
        )

        key = self._key(policy.id, policy.tenant_id)
        with self._lock:
            if key in self._policies:
                raise ConflictError(
                    f"Policy with ID '{policy.id}' already exists",
                    {"policy_id": policy.id, "tenant_id": policy.tenant_id}
                )
            self._policies[key] = policy

        self.logger.info("Policy created", policy_id=policy.id, tenant_id=policy.tenant_id,
                         statements=len(policy.statements), priority=policy.priority)
        return policy

    def get_policy(self, policy_id: str, tenant_id: Optional[str] = None) -> Optional[Policy]:
        return self._policies.get(self._key(policy_id, tenant_id))

    def get_policies(self, tenant_id: Optional[str] = None) -> List[Policy]:
        """All policies, or those of exactly one tenant."""
        with self._lock:
            policies = list(self._policies.values())
        if tenant_id is None:
            return policies
        return [p for p in policies if p.tenant_id == tenant_id]

    def get_applicable_policies(self, tenant_id: Optional[str]) -> List[Policy]:
        """Active policies of the tenant plus tenant-agnostic ones, highest priority first."""
        with self._lock:
            policies = [
                p for p in self._policies.values()
                if p.is_active and (p.tenant_id is None or p.tenant_id == tenant_id)
            ]
        return sorted(policies, key=lambda p: p.priority, reverse=True)

    def update_policy(self, policy_id: str, request: PolicyUpdateRequest,
                      tenant_id: Optional[str] = None) -> Optional[Policy]:
        changes = {k: v for k, v in request.model_dump(exclude_unset=True).items()
                   if v is not None or k == "description"}

        with self._lock:
            existing = self.get_policy(policy_id, tenant_id)
            if existing is None:
                return None

            if "name" in changes and not changes["name"].strip():
                raise ValidationError("Policy name is required")
            if "statements" in changes:
                changes["statements"] = self._build_statements(request.statements)

            updated = replace(existing, **changes, updated_at=utcnow())
            self._policies[self._key(policy_id, tenant_id)] = updated

        self.logger.info("Policy updated", policy_id=policy_id, tenant_id=tenant_id,
                         fields=sorted(changes))
        return updated

    def delete_policy(self, policy_id: str, tenant_id: Optional[str] = None) -> bool:
        with self._lock:
            removed = self._policies.pop(self._key(policy_id, tenant_id), None)
        if removed is not None:
            self.logger.info("Policy deleted", policy_id=policy_id, tenant_id=tenant_id)
        return removed is not None

    def import_policies(self, policies: Iterable[Policy]) -> int:
        count = 0
        with self._lock:
            for policy in policies:
                self._policies[self._key(policy.id, policy.tenant_id)] = policy
                count += 1
        return count

    def clear(self) -> None:
        with self._lock:
            self._policies.clear()
