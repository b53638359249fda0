"""
Cache package for the RBAC Service.

Effective-permission sets are cached per user and tenant under
``user:<tenant_id>:<user_id>:permissions``. An in-process TTL cache and a
Redis-backed cache share the same async interface.
"""

from .base import PermissionCache, permissions_cache_key
from .memory_cache import InMemoryCache
from .redis_cache import RedisCache

__all__ = ["PermissionCache", "permissions_cache_key", "InMemoryCache", "RedisCache"]
