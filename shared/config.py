"""
Shared configuration management for the RBAC service.

Every setting can be provided through the environment with the ``ACCESS_``
prefix (``ACCESS_MAX_INHERITANCE_DEPTH=5``) or through a ``.env`` file.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    log_format: Literal["json", "console"] = Field(default="json")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")


class RbacConfig(BaseConfig):
    """Options recognised by the authorization engine."""

    max_inheritance_depth: int = Field(default=10, ge=1)
    enable_caching: bool = Field(default=False)
    cache_ttl_ms: int = Field(default=300_000, ge=1)
    enable_audit_log: bool = Field(default=True)


class ServiceConfig(RbacConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"
    cache_backend: Literal["memory", "redis"] = "memory"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
