"""Settings loaded from environment variables."""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from aumai_imagescope.cache import DEFAULT_NAMESPACE, DEFAULT_TTL_SECONDS


class Settings(BaseSettings):
    """aumai-imagescope settings.

    Every value can be overridden with an ``IMAGESCOPE_`` environment
    variable, e.g. ``IMAGESCOPE_REDIS_URL=redis://cache:6379``.  Caching is
    disabled while ``redis_url`` is unset.
    """

    model_config = SettingsConfigDict(env_prefix="IMAGESCOPE_")

    redis_url: str | None = None
    cache_namespace: str = DEFAULT_NAMESPACE
    cache_ttl_seconds: int = Field(default=DEFAULT_TTL_SECONDS, gt=0)

    trivy_server: str | None = None
    trivy_username: str | None = None
    trivy_password: SecretStr | None = None
    trivy_timeout_seconds: float = Field(default=600.0, gt=0)

    cosign_timeout_seconds: float = Field(default=120.0, gt=0)
    registry_timeout_seconds: float = Field(default=30.0, gt=0)

    trim_identity: bool = True
    log_level: str = "INFO"


__all__ = ["Settings"]
