"""
Decision Core — Secrets Management

Secrets are read from environment variables and cached in-memory
with a TTL so a rotated signing key is picked up without a restart.
Secrets are NEVER logged, exposed in health endpoints, or written to
the communication log.

Usage:
    from engine.secrets import get_secret

    signing_key = get_secret("CC_SIGNING_KEY")

Configuration:
    CC_SECRETS_CACHE_TTL    — Cache TTL in seconds (default: 3600 = 1 hour)
"""

from __future__ import annotations

import logging
import os
import threading
import time

logger = logging.getLogger("decision_core.secrets")

SIGNING_KEY_NAME = "CC_SIGNING_KEY"


class SecretStore:
    """Thread-safe env var secrets store with a TTL cache."""

    def __init__(self, cache_ttl: int = 3600, environ: dict[str, str] | None = None):
        self._cache_ttl = int(os.environ.get("CC_SECRETS_CACHE_TTL", str(cache_ttl)))
        self._environ = environ
        self._cache: dict[str, tuple[str, float]] = {}  # name → (value, expires_at)
        self._lock = threading.Lock()

    def get(self, name: str, default: str = "") -> str:
        """
        Get a secret by name.

        Resolution order:
          1. In-memory cache (if not expired)
          2. Environment variable
          3. Default value
        """
        with self._lock:
            if name in self._cache:
                value, expires = self._cache[name]
                if time.time() < expires:
                    return value
                del self._cache[name]

        environ = os.environ if self._environ is None else self._environ
        value = environ.get(name, "")
        if value:
            self._set_cache(name, value)
            return value

        logger.debug("Secret not set: %s", name)
        return default

    def _set_cache(self, name: str, value: str):
        with self._lock:
            self._cache[name] = (value, time.time() + self._cache_ttl)

    def clear_cache(self):
        """Clear the secret cache (e.g., for rotation)."""
        with self._lock:
            self._cache.clear()
        logger.info("Secret cache cleared")

    @property
    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)


# ═══════════════════════════════════════════════════════════════════
# Module-level convenience
# ═══════════════════════════════════════════════════════════════════

_default_store: SecretStore | None = None
_store_lock = threading.Lock()


def get_store() -> SecretStore:
    """Get the default SecretStore instance."""
    global _default_store
    with _store_lock:
        if _default_store is None:
            _default_store = SecretStore()
    return _default_store


def get_secret(name: str, default: str = "") -> str:
    """Get a secret from the default store."""
    return get_store().get(name, default)


def reset_store():
    """Reset the default store (for testing)."""
    global _default_store
    with _store_lock:
        _default_store = None
