"""
RBAC Service package for the Access Layer.

This package decides whether a user may perform an action on a resource
within a tenant. It provides:

- app.main: HTTP surface for role, permission, policy and decision APIs.
- app.rbac: Role graph, permission matching, policies and the
  authorization service that combines them.
- app.cache: Effective-permission caches (in-memory and Redis).
"""
