"""
Suit-Booth — Model Cache Tests
==============================
At-most-once loading, retry after a failed load, idempotent release
and the process-wide registry.
"""

import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

import booth_models
from booth_models import ModelCache, get_model_cache
from booth_types import SetupFailure


@pytest.fixture(autouse=True)
def _clean_registry():
    booth_models.clear_registry()
    yield
    booth_models.clear_registry()


def test_factory_called_once():
    handle = MagicMock()
    factory = MagicMock(return_value=handle)
    cache = ModelCache("tracker", factory)

    assert cache.loaded is False
    assert cache.peek() is None
    assert cache.get() is handle
    assert cache.get() is handle
    assert factory.call_count == 1
    assert cache.load_count == 1


def test_concurrent_get_loads_once():
    factory = MagicMock(return_value=MagicMock())
    cache = ModelCache("tracker", factory)
    results = []

    threads = [threading.Thread(target=lambda: results.append(cache.get())) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert factory.call_count == 1
    assert len({id(r) for r in results}) == 1


def test_failed_load_is_not_cached():
    handle = MagicMock()
    factory = MagicMock(side_effect=[FileNotFoundError("model missing"), handle])
    cache = ModelCache("segmenter", factory)

    with pytest.raises(SetupFailure, match="model missing"):
        cache.get()
    assert cache.loaded is False
    assert cache.failure_count == 1

    assert cache.get() is handle
    assert factory.call_count == 2


def test_release_is_idempotent_and_allows_reload():
    first, second = MagicMock(), MagicMock()
    cache = ModelCache("tracker", MagicMock(side_effect=[first, second]))

    cache.get()
    cache.release()
    cache.release()

    first.release.assert_called_once()
    assert cache.loaded is False
    assert cache.get() is second


def test_registry_shares_loaded_handle():
    handle = MagicMock()
    a = get_model_cache("tracker", MagicMock(return_value=handle))
    a.get()
    other_factory = MagicMock()
    b = get_model_cache("tracker", other_factory)

    assert b is a
    assert b.get() is handle
    other_factory.assert_not_called()


def test_registry_empty_cache_adopts_new_factory():
    get_model_cache("tracker", MagicMock(side_effect=RuntimeError("old config")))
    fresh = MagicMock()
    cache = get_model_cache("tracker", MagicMock(return_value=fresh))
    assert cache.get() is fresh


def test_release_all():
    handle = MagicMock()
    cache = get_model_cache("segmenter", MagicMock(return_value=handle))
    cache.get()
    booth_models.release_all()
    handle.release.assert_called_once()
    assert cache.loaded is False
