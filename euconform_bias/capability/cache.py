# File: euconform_bias/capability/cache.py
"""
Capability cache with TTLs and a pluggable persistence store.

The cache maps a model id to its most recent `CapabilityCacheEntry`.
Successful detections live for a long time (24h by default); failed ones
expire quickly (5 minutes) so a transient fault is re-probed soon after it
clears. An expired entry is indistinguishable from a missing one: `get`
returns None and drops it.

Persistence goes through a small key-value store port (`get`, `set`,
`remove`, `keys`) holding JSON blobs under `<prefix><model_id>`. Two stores
ship with the package: `InMemoryStore` and `JsonFileStore`.

## Usage

```python
from euconform_bias.capability.cache import CapabilityCache, JsonFileStore

with CapabilityCache(JsonFileStore(".cache/capabilities.json")) as cache:
    cache.put(capability)
    entry = cache.get("llama3.2:1b")
```
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, ContextManager, Dict, Iterator, List, Optional, Protocol, Union

from euconform_bias.utils.config import CacheSettings
from euconform_bias.utils.paths import get_cache_dir

from .schema import CapabilityCacheEntry, ModelCapability, utc_now

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "euconform_capability_"
DEFAULT_SUCCESS_TTL = timedelta(hours=24)
DEFAULT_ERROR_TTL = timedelta(minutes=5)

TTL = Union[timedelta, float, int]


def _as_timedelta(ttl: TTL) -> timedelta:
    return ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)


# ============================================================================
# Storage port
# ============================================================================


class KeyValueStore(Protocol):
    """External key -> JSON blob store."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...


class InMemoryStore:
    """Process-local store, the default when nothing is persisted."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)


class JsonFileStore:
    """
    Store backed by a single JSON document on disk.

    The document is read once and rewritten atomically (temp file + replace)
    after every change, or once at the end of a `deferred()` block.

    Attributes:
        path: Location of the JSON document.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._defer_depth = 0
        self._dirty = False
        self._data: Dict[str, str] = self._read()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable capability store {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring capability store {self.path}: not a JSON object")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".capabilities-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _changed(self) -> None:
        if self._defer_depth:
            self._dirty = True
        else:
            self._write()

    @contextmanager
    def deferred(self) -> Iterator[None]:
        """
        Hold writes until the block exits, then write the document once.

        Blocks nest; only the outermost one writes.
        """
        with self._lock:
            self._defer_depth += 1
        try:
            yield
        finally:
            with self._lock:
                self._defer_depth -= 1
                if self._defer_depth == 0 and self._dirty:
                    self._dirty = False
                    self._write()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._changed()

    def remove(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._changed()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)


# ============================================================================
# Cache
# ============================================================================


class CapabilityCache:
    """
    TTL cache of model capabilities with write-through persistence.

    Safe to share between concurrent detection tasks: every operation holds an
    internal lock, writes replace whole entries, and the last writer wins.

    Attributes:
        key_prefix: Prefix of every key written to the store.
        success_ttl: Lifetime of entries for available models.
        error_ttl: Lifetime of entries for unavailable/failed models.

    Examples:
        >>> cache = CapabilityCache()
        >>> entry = cache.put(capability)
        >>> cache.get(capability.model_id) == entry
        True
        >>> cache.invalidate_all()
        1
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        success_ttl: TTL = DEFAULT_SUCCESS_TTL,
        error_ttl: TTL = DEFAULT_ERROR_TTL,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store if store is not None else InMemoryStore()
        self.key_prefix = key_prefix
        self.success_ttl = _as_timedelta(success_ttl)
        self.error_ttl = _as_timedelta(error_ttl)
        self._clock = clock
        self._entries: Dict[str, CapabilityCacheEntry] = {}
        self._lock = threading.Lock()

        self._load_from_store()

    @classmethod
    def from_settings(
        cls,
        settings: CacheSettings,
        store: Optional[KeyValueStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "CapabilityCache":
        """
        Build a cache from `CacheSettings`, using a file store if a path is set.

        Relative paths are resolved under the project's `.cache/` directory.
        """
        if store is None and settings.path:
            path = Path(settings.path)
            if not path.is_absolute():
                path = get_cache_dir() / path
            store = JsonFileStore(path)
        return cls(
            store=store,
            key_prefix=settings.key_prefix,
            success_ttl=settings.success_ttl_seconds,
            error_ttl=settings.error_ttl_seconds,
            clock=clock,
        )

    def _key(self, model_id: str) -> str:
        return f"{self.key_prefix}{model_id}"

    def _decode(self, key: str, blob: str) -> Optional[CapabilityCacheEntry]:
        try:
            return CapabilityCacheEntry.from_dict(json.loads(blob))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Dropping corrupt cache entry {key}: {e}")
            self.store.remove(key)
            return None

    def _load_from_store(self) -> None:
        now = self._clock()
        loaded = 0

        for key in self.store.keys():
            if not key.startswith(self.key_prefix):
                continue
            blob = self.store.get(key)
            if blob is None:
                continue
            entry = self._decode(key, blob)
            if entry is None:
                continue
            if entry.is_expired(now):
                self.store.remove(key)
                continue
            self._entries[entry.model_id] = entry
            loaded += 1

        if loaded:
            logger.debug(f"Loaded {loaded} cached capabilities from store")

    def get(self, model_id: str) -> Optional[CapabilityCacheEntry]:
        """
        Return the valid entry for `model_id`, or None on miss or expiry.
        """
        with self._lock:
            entry = self._entries.get(model_id)

            if entry is None:
                key = self._key(model_id)
                blob = self.store.get(key)
                if blob is None:
                    return None
                entry = self._decode(key, blob)
                if entry is None:
                    return None

            if entry.is_expired(self._clock()):
                logger.debug(f"Cache entry for {model_id} expired")
                self._entries.pop(model_id, None)
                self.store.remove(self._key(model_id))
                return None

            self._entries[model_id] = entry
            return entry

    def put(self, capability: ModelCapability, ttl: Optional[TTL] = None) -> CapabilityCacheEntry:
        """
        Store a capability, replacing any previous entry for the model.

        Args:
            capability: Capability to cache.
            ttl: Lifetime override; defaults to the success TTL for available
                capabilities and the error TTL otherwise.

        Returns:
            The entry that was written.
        """
        if ttl is None:
            lifetime = self.success_ttl if capability.is_available else self.error_ttl
        else:
            lifetime = _as_timedelta(ttl)

        now = self._clock()
        entry = CapabilityCacheEntry(
            capability=capability,
            cached_at=now,
            expires_at=now + lifetime,
        )

        with self._lock:
            self._entries[capability.model_id] = entry
            self.store.set(self._key(capability.model_id), json.dumps(entry.to_dict()))

        return entry

    def invalidate(self, model_id: str) -> bool:
        """Remove one entry. Returns True if something was removed."""
        with self._lock:
            key = self._key(model_id)
            existed = self._entries.pop(model_id, None) is not None or self.store.get(key) is not None
            self.store.remove(key)
            return existed

    def invalidate_all(self) -> int:
        """Remove every entry this cache owns. Returns the number of keys removed."""
        with self._lock:
            self._entries.clear()
            keys = [k for k in self.store.keys() if k.startswith(self.key_prefix)]
            for key in keys:
                self.store.remove(key)

        logger.info(f"Invalidated {len(keys)} cached capabilities")
        return len(keys)

    def cleanup_expired(self) -> int:
        """Drop expired entries from memory and the store."""
        now = self._clock()
        with self._lock:
            expired = [mid for mid, entry in self._entries.items() if entry.is_expired(now)]
            for model_id in expired:
                del self._entries[model_id]
                self.store.remove(self._key(model_id))
        return len(expired)

    def entries(self) -> List[CapabilityCacheEntry]:
        """All currently valid entries."""
        now = self._clock()
        with self._lock:
            return [e for e in self._entries.values() if not e.is_expired(now)]

    def __len__(self) -> int:
        return len(self.entries())

    def __contains__(self, model_id: str) -> bool:
        return self.get(model_id) is not None

    def batch(self) -> ContextManager[None]:
        """
        Group writes so a file-backed store is rewritten once, when the block exits.

        Stores without a `deferred()` method are written through as usual.
        """
        deferred = getattr(self.store, "deferred", None)
        return deferred() if deferred is not None else nullcontext()

    def close(self) -> None:
        """Drop in-memory entries; persisted entries stay in the store."""
        with self._lock:
            self._entries.clear()

    def __enter__(self) -> "CapabilityCache":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
