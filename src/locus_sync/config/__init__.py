"""Locus sync configuration module.

Provides centralized configuration management using pydantic-settings.

Usage:
    from locus_sync.config import get_settings

    settings = get_settings()
    print(settings.url)
    print(settings.retry_envelope())
"""

from functools import lru_cache

from locus_sync.config.settings import RetryEnvelope, Settings

__all__ = ["RetryEnvelope", "Settings", "get_settings"]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns a singleton Settings instance that is cached for the lifetime
    of the application. This ensures consistent configuration across all
    modules.

    To reload settings, call get_settings.cache_clear() first.

    Returns:
        Settings instance loaded from environment variables.
    """
    return Settings()
