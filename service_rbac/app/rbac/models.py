"""
Data models for the RBAC engine.

Core records are dataclasses owned by the stores; the pydantic models at the
bottom describe caller input (create/update/assign requests and the HTTP
payloads built on them).
"""

import re
from typing import Dict, Any, Optional, List, Union
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


RESOURCE_WILDCARD = "*"
ACTION_WILDCARD = "*"
PERMISSION_WILDCARD = "*"
DEFAULT_PERMISSION_PRIORITY = 0

_VARIABLE_PATTERN = re.compile(r"^\$\{(.+)\}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PermissionEffect(str, Enum):
    """Rule effect."""
    ALLOW = "allow"
    DENY = "deny"


class ConditionOperator(str, Enum):
    """Condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    REGEX = "regex"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    LESS_THAN = "lessThan"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "notIn"
    EXISTS = "exists"
    NOT_EXISTS = "notExists"


class SystemRole(str, Enum):
    """Built-in role IDs seeded per tenant."""
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"


class AuditEventType(str, Enum):
    """Audit event types."""
    PERMISSION_CREATED = "permission_created"
    PERMISSION_UPDATED = "permission_updated"
    PERMISSION_DELETED = "permission_deleted"
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_UNASSIGNED = "role_unassigned"
    POLICY_CREATED = "policy_created"
    POLICY_UPDATED = "policy_updated"
    POLICY_DELETED = "policy_deleted"
    AUTHORIZATION_ALLOWED = "authorization_allowed"
    AUTHORIZATION_DENIED = "authorization_denied"


@dataclass(frozen=True)
class LiteralValue:
    """Condition operand used as-is."""
    value: Any


@dataclass(frozen=True)
class ContextRef:
    """Condition operand resolved against the authorization context."""
    path: str


Operand = Union[LiteralValue, ContextRef]


@dataclass(frozen=True)
class Condition:
    """Attribute condition; all conditions of a rule are ANDed."""
    field: str
    operator: Union[ConditionOperator, str]
    value: Any = None
    is_variable: bool = False

    def __post_init__(self):
        if isinstance(self.operator, str) and not isinstance(self.operator, ConditionOperator):
            try:
                object.__setattr__(self, "operator", ConditionOperator(self.operator))
            except ValueError:
                # Left as a plain string; validation and evaluation reject it
                pass
        object.__setattr__(self, "_operand", self._build_operand())

    def _build_operand(self) -> Operand:
        if self.is_variable and isinstance(self.value, str):
            match = _VARIABLE_PATTERN.match(self.value)
            if match:
                return ContextRef(match.group(1))
        return LiteralValue(self.value)

    @property
    def operand(self) -> Operand:
        return self._operand


@dataclass
class TimeCondition:
    """Wall-clock constraints; every present field must hold."""
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    days_of_week: List[int] = field(default_factory=list)
    hours_of_day: List[int] = field(default_factory=list)
    timezone: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.start_time or self.end_time or self.days_of_week or self.hours_of_day)


@dataclass
class Permission:
    """Permission record."""
    id: str
    name: str
    resource: str
    actions: List[str]
    effect: PermissionEffect = PermissionEffect.ALLOW
    description: Optional[str] = None
    conditions: List[Condition] = field(default_factory=list)
    time_conditions: Optional[TimeCondition] = None
    priority: int = DEFAULT_PERMISSION_PRIORITY
    metadata: Dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    """Role node in the inheritance graph. Parent edges are role IDs."""
    id: str
    name: str
    description: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    parent_roles: List[str] = field(default_factory=list)
    is_system: bool = False
    max_assignments: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UserRoleAssignment:
    """A role granted to a user within a tenant, optionally scoped."""
    user_id: str
    role_id: str
    tenant_id: str
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    assigned_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utcnow())


@dataclass
class PolicyStatement:
    """One allow/deny rule inside a policy."""
    effect: PermissionEffect
    actions: List[str]
    resources: List[str]
    conditions: List[Condition] = field(default_factory=list)
    sid: Optional[str] = None
    principals: List[str] = field(default_factory=list)
    not_principals: List[str] = field(default_factory=list)
    not_actions: List[str] = field(default_factory=list)
    not_resources: List[str] = field(default_factory=list)


@dataclass
class Policy:
    """Ordered statement list evaluated by priority."""
    id: str
    name: str
    statements: List[PolicyStatement]
    description: Optional[str] = None
    version: str = "1.0"
    is_active: bool = True
    priority: int = 0
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AuthorizationContext:
    """Read-only input to every match and condition evaluation."""
    user_id: str
    tenant_id: str
    resource: str
    action: str
    resource_id: Optional[str] = None
    resource_attributes: Dict[str, Any] = field(default_factory=dict)
    user_attributes: Dict[str, Any] = field(default_factory=dict)
    request_context: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuthorizationResult:
    """Outcome of one authorization decision."""
    allowed: bool
    reason: Optional[str] = None
    decided_by: Optional[str] = None
    matching_rules: List[str] = field(default_factory=list)
    denied_by: List[str] = field(default_factory=list)
    evaluation_time_ms: float = 0.0


@dataclass
class BatchCheck:
    """Single resource/action pair inside a batch request."""
    resource: str
    action: str
    resource_id: Optional[str] = None
    resource_attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchAuthorizationRequest:
    """Several checks for one user in one tenant."""
    user_id: str
    tenant_id: str
    checks: List[BatchCheck]
    user_attributes: Dict[str, Any] = field(default_factory=dict)
    request_context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchAuthorizationResult:
    """Per-check results, in request order."""
    results: List[AuthorizationResult]
    total_evaluation_time_ms: float = 0.0


@dataclass
class AuditEvent:
    """Event handed to audit listeners."""
    type: AuditEventType
    timestamp: datetime = field(default_factory=utcnow)
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    previous_state: Any = None
    new_state: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class ConditionSpec(BaseModel):
    """Condition as supplied by callers."""
    field: str = Field(..., description="Dot-path into the authorization context")
    operator: str = Field(..., description="Condition operator")
    value: Any = Field(None, description="Comparison value or ${path} reference")
    is_variable: bool = Field(False, description="Resolve ${path} values against the context")

    def to_condition(self) -> Condition:
        return Condition(field=self.field, operator=self.operator, value=self.value,
                         is_variable=self.is_variable)


class TimeConditionSpec(BaseModel):
    """Time condition as supplied by callers."""
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    days_of_week: List[int] = Field(default_factory=list)
    hours_of_day: List[int] = Field(default_factory=list)
    timezone: Optional[str] = None

    def to_time_condition(self) -> TimeCondition:
        return TimeCondition(**self.model_dump())


class PermissionCreateRequest(BaseModel):
    """Request model for creating a permission."""
    id: Optional[str] = Field(None, description="Permission ID, generated when absent")
    name: str = Field(..., description="Permission name")
    description: Optional[str] = Field(None, description="Permission description")
    resource: str = Field(..., description="Resource pattern")
    actions: List[str] = Field(..., description="Actions covered")
    effect: str = Field(PermissionEffect.ALLOW.value, description="allow or deny")
    conditions: List[ConditionSpec] = Field(default_factory=list, description="Attribute conditions")
    time_conditions: Optional[TimeConditionSpec] = Field(None, description="Time window")
    priority: int = Field(DEFAULT_PERMISSION_PRIORITY, description="Permission priority")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tenant_id: Optional[str] = Field(None, description="Tenant ID")


class PermissionUpdateRequest(BaseModel):
    """Request model for updating a permission."""
    name: Optional[str] = None
    description: Optional[str] = None
    resource: Optional[str] = None
    actions: Optional[List[str]] = None
    effect: Optional[str] = None
    conditions: Optional[List[ConditionSpec]] = None
    time_conditions: Optional[TimeConditionSpec] = None
    priority: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class RoleCreateRequest(BaseModel):
    """Request model for creating a role."""
    id: Optional[str] = Field(None, description="Role ID, generated when absent")
    name: str = Field(..., description="Role name")
    description: Optional[str] = Field(None, description="Role description")
    permissions: List[str] = Field(default_factory=list, description="Permission IDs")
    parent_roles: List[str] = Field(default_factory=list, description="Parent role IDs")
    is_system: bool = Field(False, description="Built-in role")
    max_assignments: Optional[int] = Field(None, description="Assignment cap")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tenant_id: Optional[str] = Field(None, description="Tenant ID")


class RoleUpdateRequest(BaseModel):
    """Request model for updating a role."""
    name: Optional[str] = None
    description: Optional[str] = None
    permissions: Optional[List[str]] = None
    parent_roles: Optional[List[str]] = None
    max_assignments: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class AssignRoleRequest(BaseModel):
    """Request model for assigning a role to a user."""
    user_id: str = Field(..., description="User ID")
    role_id: str = Field(..., description="Role ID")
    tenant_id: str = Field(..., description="Tenant ID")
    scope: Optional[str] = Field(None, description="Sub-resource qualifier")
    expires_at: Optional[datetime] = Field(None, description="Expiration date")
    assigned_by: Optional[str] = Field(None, description="Assigning user")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PolicyStatementSpec(BaseModel):
    """Policy statement as supplied by callers."""
    sid: Optional[str] = None
    effect: str = Field(..., description="allow or deny")
    actions: List[str] = Field(default_factory=list)
    resources: List[str] = Field(default_factory=list)
    conditions: List[ConditionSpec] = Field(default_factory=list)
    principals: List[str] = Field(default_factory=list)
    not_principals: List[str] = Field(default_factory=list)
    not_actions: List[str] = Field(default_factory=list)
    not_resources: List[str] = Field(default_factory=list)


class PolicyCreateRequest(BaseModel):
    """Request model for creating a policy."""
    id: Optional[str] = Field(None, description="Policy ID, generated when absent")
    name: str = Field(..., description="Policy name")
    description: Optional[str] = None
    version: str = "1.0"
    statements: List[PolicyStatementSpec] = Field(default_factory=list)
    is_active: bool = True
    priority: int = Field(0, description="Higher priority policies are evaluated first")
    tenant_id: Optional[str] = Field(None, description="Tenant ID")


class PolicyUpdateRequest(BaseModel):
    """Request model for updating a policy."""
    name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    statements: Optional[List[PolicyStatementSpec]] = None
    is_active: Optional[bool] = None
    priority: Optional[int] = None


class AuthorizeRequest(BaseModel):
    """Request model for a single authorization check."""
    user_id: str
    tenant_id: str
    resource: str
    action: str
    resource_id: Optional[str] = None
    resource_attributes: Dict[str, Any] = Field(default_factory=dict)
    user_attributes: Dict[str, Any] = Field(default_factory=dict)
    request_context: Dict[str, Any] = Field(default_factory=dict)
    environment: Dict[str, Any] = Field(default_factory=dict)

    def to_context(self) -> AuthorizationContext:
        return AuthorizationContext(**self.model_dump())


class BatchCheckSpec(BaseModel):
    resource: str
    action: str
    resource_id: Optional[str] = None
    resource_attributes: Dict[str, Any] = Field(default_factory=dict)


class BatchAuthorizeRequest(BaseModel):
    """Request model for batch authorization."""
    user_id: str
    tenant_id: str
    checks: List[BatchCheckSpec]
    user_attributes: Dict[str, Any] = Field(default_factory=dict)
    request_context: Dict[str, Any] = Field(default_factory=dict)

    def to_batch(self) -> BatchAuthorizationRequest:
        return BatchAuthorizationRequest(
            user_id=self.user_id,
            tenant_id=self.tenant_id,
            checks=[BatchCheck(**check.model_dump()) for check in self.checks],
            user_attributes=self.user_attributes,
            request_context=self.request_context,
        )
