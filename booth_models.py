"""
Suit-Booth — Model Cache
========================
Lazy, at-most-once loading of the heavy model handles (landmark
tracker, person segmenter).

A successful load is cached and shared. A failed load is NOT cached:
the slot is cleared so the next ``get()`` retries from scratch.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

from booth_types import SetupFailure

_log = logging.getLogger("BoothModels")


class ModelCache:
    """Thread-safe lazy holder for one model handle."""

    def __init__(self, name: str, factory: Callable[[], Any]):
        self.name = name
        self._factory = factory
        self._instance: Optional[Any] = None
        self._lock = threading.Lock()
        self.load_count = 0
        self.failure_count = 0

    @property
    def loaded(self) -> bool:
        return self._instance is not None

    def peek(self) -> Optional[Any]:
        """Current handle without loading (None when not ready)."""
        return self._instance

    def get(self) -> Any:
        """Return the cached handle, loading it on first use.

        Raises:
            SetupFailure: the factory failed; the cache stays empty.
        """
        with self._lock:
            if self._instance is not None:
                return self._instance
            try:
                instance = self._factory()
            except Exception as e:
                self.failure_count += 1
                self._instance = None
                _log.error("Model '%s' failed to load: %s", self.name, e)
                raise SetupFailure(f"{self.name} failed to load: {e}") from e
            self._instance = instance
            self.load_count += 1
            _log.info("Model '%s' loaded", self.name)
            return instance

    def release(self) -> None:
        """Release the handle (if any) and empty the slot. Idempotent."""
        with self._lock:
            instance, self._instance = self._instance, None
        if instance is not None and hasattr(instance, "release"):
            instance.release()
            _log.info("Model '%s' released", self.name)


# ── Process-wide registry ─────────────────────────────────────

_caches: Dict[str, ModelCache] = {}
_registry_lock = threading.Lock()


def get_model_cache(name: str, factory: Callable[[], Any]) -> ModelCache:
    """Return the process-wide cache for ``name``, creating it on first use.

    An empty cache adopts the latest factory so the next load uses the
    caller's configuration; a loaded handle is shared as-is.
    """
    with _registry_lock:
        cache = _caches.get(name)
        if cache is None:
            cache = ModelCache(name, factory)
            _caches[name] = cache
        elif not cache.loaded:
            cache._factory = factory
        return cache


def release_all() -> None:
    """Release every cached model handle."""
    with _registry_lock:
        caches = list(_caches.values())
    for cache in caches:
        cache.release()


def clear_registry() -> None:
    """Release and forget every cache."""
    release_all()
    with _registry_lock:
        _caches.clear()
