"""
Workflow Read Cache

Provides a thin cache wrapper with:
  - Step catalog cache per entity type (changes rarely)
  - Progress row cache per entity instance (invalidated on every step mutation)
  - Manual invalidation helpers

Uses Redis in production (via REDIS_URL), falls back to
a simple in-memory dict for development/testing.
"""

import json
import logging
import os
import time

import redis

logger = logging.getLogger(__name__)

# ── In-memory backend ────────────────────────────────────────────────────

_memory_store: dict = {}  # key → (value_json, expire_ts)


class _MemoryBackend:
    """Simple dict cache for dev/testing."""

    def get(self, key):
        entry = _memory_store.get(key)
        if entry is None:
            return None
        val, expires = entry
        if expires and time.time() > expires:
            _memory_store.pop(key, None)
            return None
        return val

    def setex(self, key, ttl_seconds, value):
        _memory_store[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        for k in keys:
            _memory_store.pop(k, None)

    def keys(self, pattern):
        """Simple glob matching for 'prefix*' patterns."""
        if pattern.endswith("*"):
            prefix = pattern[:-1]
            return [k for k in _memory_store if k.startswith(prefix)]
        return [k for k in _memory_store if k == pattern]

    def flushdb(self):
        _memory_store.clear()

    def ping(self):
        return True


# ── Singleton cache backend ──────────────────────────────────────────────

_backend = None


def _get_backend():
    """Lazy-initialise Redis or fall back to in-memory."""
    global _backend
    if _backend is not None:
        return _backend

    redis_url = os.getenv("REDIS_URL")
    if redis_url and not redis_url.startswith("memory://"):
        try:
            _backend = redis.from_url(redis_url, decode_responses=True)
            _backend.ping()
            logger.info("Cache: using Redis at %s", redis_url.split("@")[-1])
        except redis.RedisError as exc:
            logger.warning("Redis unavailable (%s) — falling back to memory cache", exc)
            _backend = _MemoryBackend()
    else:
        _backend = _MemoryBackend()
    return _backend


# ── Default TTLs ─────────────────────────────────────────────────────────

CATALOG_TTL = 600      # 10 minutes
DEFAULT_TTL = 60


# ── Key builders ─────────────────────────────────────────────────────────

def steps_key(entity_type):
    return f"workflow-steps:{entity_type}"


def progress_key(entity_type, entity_id):
    return f"workflow-progress:{entity_type}:{entity_id}"


# ── Public API ───────────────────────────────────────────────────────────


def invalidate_progress(entity_type, entity_id):
    """Drop the cached progress rows of one entity (after any step mutation)."""
    _get_backend().delete(progress_key(entity_type, entity_id))


def invalidate_steps(entity_type=None):
    """Drop the cached catalog of one entity type, or of all of them."""
    be = _get_backend()
    if entity_type:
        be.delete(steps_key(entity_type))
        return
    keys = be.keys(steps_key("*"))
    if keys:
        be.delete(*keys)


def get_cached(key, ttl=DEFAULT_TTL, loader=None):
    """Generic cache-aside.  If *loader* is provided, it's called on miss
    and the result is cached."""
    be = _get_backend()
    raw = be.get(key)
    if raw is not None:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            pass
    if loader is None:
        return None
    value = loader()
    if value is not None and ttl > 0:
        be.setex(key, ttl, json.dumps(value))
    return value


def set_cached(key, value, ttl=DEFAULT_TTL):
    """Generic set."""
    _get_backend().setex(key, ttl, json.dumps(value))


def clear_all():
    """Flush entire cache (use sparingly — mainly for testing)."""
    _get_backend().flushdb()


def health_check():
    """Return cache backend status."""
    try:
        be = _get_backend()
        be.ping()
        backend_type = "redis" if not isinstance(be, _MemoryBackend) else "memory"
        return {"status": "ok", "backend": backend_type}
    except redis.RedisError as exc:
        return {"status": "error", "detail": str(exc)}
