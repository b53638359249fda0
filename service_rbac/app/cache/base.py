"""
Cache interface used by the authorization service.
"""

from typing import Any, Optional, Protocol


def permissions_cache_key(tenant_id: str, user_id: str) -> str:
    """Key of a user's effective-permission set."""
    return f"user:{tenant_id}:{user_id}:permissions"


class PermissionCache(Protocol):
    """Async key/value cache with per-entry TTL in milliseconds."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...
