"""Small key/value cache for read-mostly responses (act lists per estimate).

Keys are plain strings built by the helpers below; invalidation is by key
prefix, so every write route drops the entries of its tenant and estimate.
"""

from __future__ import annotations

import time
from threading import Lock
from typing import Any, Dict, Optional, Protocol, Tuple

DEFAULT_TTL_SECONDS = 300


class ReferenceCache(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    def invalidate(self, prefix: str) -> int: ...


class InMemoryReferenceCache:
    def __init__(self, default_ttl: int = DEFAULT_TTL_SECONDS) -> None:
        self._default_ttl = default_ttl
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        timeout = self._default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = (time.monotonic() + timeout, value)

    def invalidate(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``; returns how many."""
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def tenant_prefix(tenant_id: str) -> str:
    return f"acts:{tenant_id}:"


def estimate_prefix(tenant_id: str, estimate_id: str) -> str:
    return f"{tenant_prefix(tenant_id)}{estimate_id}:"


def act_list_key(tenant_id: str, estimate_id: str, act_type: Optional[str]) -> str:
    return f"{estimate_prefix(tenant_id, estimate_id)}list:{act_type or 'all'}"
