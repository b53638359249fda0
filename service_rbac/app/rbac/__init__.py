"""
Role-based access control engine.

- models: records, enums and request models.
- matcher: pure permission, statement and condition matching.
- permissions / roles / policies: tenant-scoped stores.
- service: the authorization service tying the stores together.
"""
