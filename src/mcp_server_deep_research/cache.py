"""Fingerprint cache: bounded LRU with optional TTL, plus canonical request fingerprints.

Design goals:
- Fingerprints are stable across dict ordering and omit fields left at their default
- List-valued context (learnings, sources) is summarized by an order-sensitive digest
- Cache failures never reach the caller; ``SafeCache`` turns them into misses
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, Literal, TypeVar

from .exceptions import CacheFailure, InvalidConfiguration

if TYPE_CHECKING:
    from .config import CacheSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

EvictionReason = Literal["capacity", "expired", "cleared"]
EvictHook = Callable[[str, Any, EvictionReason], None]

_MISSING = object()


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    fingerprint: str
    value: T
    created_at: float
    ttl: float | None

    def expired(self, now: float) -> bool:
        return self.ttl is not None and now - self.created_at >= self.ttl


class FingerprintCache(Generic[T]):
    """Thread-safe LRU cache keyed by fingerprint, with optional expiry.

    ``get`` refreshes recency. Expired entries are dropped lazily on access and
    whenever the cache is written to. ``on_evict`` is called for every removal
    and is meant for auditing only; exceptions it raises are logged and ignored.
    """

    def __init__(
        self,
        max_size: int,
        ttl: float | None = None,
        on_evict: EvictHook | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        if max_size < 1:
            raise InvalidConfiguration(f"Cache capacity must be >= 1, got {max_size}")
        if ttl is not None and ttl <= 0:
            raise InvalidConfiguration(f"Cache ttl must be positive, got {ttl}")
        self.max_size = max_size
        self.ttl = ttl
        self.name = name
        self._on_evict = on_evict
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._entries)

    def __contains__(self, fingerprint: object) -> bool:
        with self._lock:
            entry = self._entries.get(fingerprint)  # type: ignore[arg-type]
            return entry is not None and not entry.expired(self._clock())

    def get(self, fingerprint: str) -> T | None:
        evicted: list[tuple[str, Any, EvictionReason]] = []
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            if entry.expired(self._clock()):
                del self._entries[fingerprint]
                evicted.append((fingerprint, entry.value, "expired"))
                value = None
            else:
                self._entries.move_to_end(fingerprint)
                value = entry.value
        self._notify(evicted)
        return value

    def set(self, fingerprint: str, value: T, ttl: float | None = _MISSING) -> None:  # type: ignore[assignment]
        entry_ttl = self.ttl if ttl is _MISSING else ttl
        if entry_ttl is not None and entry_ttl <= 0:
            raise InvalidConfiguration(f"Entry ttl must be positive, got {entry_ttl}")

        evicted: list[tuple[str, Any, EvictionReason]] = []
        with self._lock:
            now = self._clock()
            evicted.extend(self._purge_expired(now))
            if fingerprint in self._entries:
                del self._entries[fingerprint]
            self._entries[fingerprint] = CacheEntry(fingerprint=fingerprint, value=value, created_at=now, ttl=entry_ttl)
            while len(self._entries) > self.max_size:
                old_key, old_entry = self._entries.popitem(last=False)
                evicted.append((old_key, old_entry.value, "capacity"))
        self._notify(evicted)

    def delete(self, fingerprint: str) -> bool:
        with self._lock:
            return self._entries.pop(fingerprint, None) is not None

    def clear(self) -> None:
        with self._lock:
            evicted = [(k, e.value, "cleared") for k, e in self._entries.items()]
            self._entries.clear()
        self._notify(evicted)  # type: ignore[arg-type]

    def keys(self) -> list[str]:
        """Fingerprints from least to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def _purge_expired(self, now: float) -> list[tuple[str, Any, EvictionReason]]:
        expired = [(k, e) for k, e in self._entries.items() if e.expired(now)]
        for key, _ in expired:
            del self._entries[key]
        return [(k, e.value, "expired") for k, e in expired]

    def _notify(self, evicted: list[tuple[str, Any, EvictionReason]]) -> None:
        if not self._on_evict:
            return
        for key, value, reason in evicted:
            try:
                self._on_evict(key, value, reason)
            except Exception as e:
                logger.warning(f"[{self.name}] eviction hook failed for {key[:8]}: {e}")


def digest_list(values: Iterable[Any]) -> str:
    """Order-sensitive SHA-256 digest of a list's canonical JSON serialization ("" when empty)."""
    items = list(values)
    if not items:
        return ""
    payload = json.dumps(items, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def make_fingerprint(
    descriptor: Mapping[str, Any],
    defaults: Mapping[str, Any] | None = None,
    list_fields: Iterable[str] | None = None,
) -> str:
    """Compute a canonical fingerprint for a request descriptor.

    - Fields equal to their documented default are omitted
    - Fields named in ``list_fields`` (and any other list or tuple value) are
      replaced by ``<name>_hash`` holding ``digest_list`` of their contents
    - The remaining descriptor is serialized with sorted keys and hashed
    """
    defaults = defaults or {}
    hashed = set(list_fields or ())
    canonical: dict[str, Any] = {}
    for key, value in descriptor.items():
        if key in defaults and defaults[key] == value:
            continue
        if key in hashed or isinstance(value, (list, tuple, set, frozenset)):
            seq = sorted(value) if isinstance(value, (set, frozenset)) else value
            canonical[f"{key}_hash"] = digest_list(seq)
            continue
        canonical[key] = value
    for key in hashed:
        canonical.setdefault(f"{key}_hash", "")

    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def hash_key(obj: Any) -> str:
    """SHA-256 of an object's JSON serialization, falling back to ``str(obj)``."""
    try:
        payload = json.dumps(obj, sort_keys=True, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        payload = str(obj)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SafeCache(Generic[T]):
    """Facade that never raises: every failure is reported and treated as a miss."""

    def __init__(self, cache: FingerprintCache[T]):
        self.cache = cache

    @property
    def name(self) -> str:
        return self.cache.name

    def fingerprint(
        self,
        descriptor: Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
        list_fields: Iterable[str] | None = None,
    ) -> str | None:
        try:
            return make_fingerprint(descriptor, defaults=defaults, list_fields=list_fields)
        except Exception as e:
            self._report(CacheFailure(f"fingerprint failed: {e}"))
            return None

    def get(self, fingerprint: str | None) -> T | None:
        if fingerprint is None:
            return None
        try:
            value = self.cache.get(fingerprint)
        except Exception as e:
            self._report(CacheFailure(f"get failed: {e}"))
            return None
        if value is not None:
            logger.debug(f"[{self.name}] HIT {fingerprint[:8]}")
        else:
            logger.debug(f"[{self.name}] MISS {fingerprint[:8]}")
        return value

    def set(self, fingerprint: str | None, value: T) -> None:
        if fingerprint is None:
            return
        try:
            self.cache.set(fingerprint, value)
        except Exception as e:
            self._report(CacheFailure(f"set failed: {e}"))

    def clear(self) -> None:
        try:
            self.cache.clear()
        except Exception as e:
            self._report(CacheFailure(f"clear failed: {e}"))

    def _report(self, error: CacheFailure) -> None:
        logger.warning(f"[{self.name}] {error}")


def log_eviction(fingerprint: str, value: Any, reason: EvictionReason) -> None:
    logger.debug(f"Cache evicted ({reason}): {fingerprint[:8]}")


class CacheRegistry:
    """The caches one research pipeline uses, created at pipeline start and cleared at its end."""

    def __init__(self, cache_settings: CacheSettings | None = None, on_evict: EvictHook | None = log_eviction):
        if cache_settings is None:
            from .config import CacheSettings

            cache_settings = CacheSettings()
        self.settings = cache_settings
        self.sub_queries: SafeCache[list] = SafeCache(FingerprintCache(cache_settings.sub_query_max, on_evict=on_evict, name="sub-queries"))
        self.reports: SafeCache[Any] = SafeCache(FingerprintCache(cache_settings.report_max, on_evict=on_evict, name="reports"))
        self.feedback: SafeCache[Any] = SafeCache(
            FingerprintCache(cache_settings.feedback_max, ttl=cache_settings.feedback_ttl, on_evict=on_evict, name="feedback")
        )
        self.results: SafeCache[Any] = SafeCache(
            FingerprintCache(cache_settings.result_max, ttl=cache_settings.provider_ttl, on_evict=on_evict, name="results")
        )
        self.provider: SafeCache[str] | None = None
        if cache_settings.provider_cache_enabled:
            self.provider = SafeCache(
                FingerprintCache(cache_settings.provider_max, ttl=cache_settings.provider_ttl, on_evict=on_evict, name="provider")
            )

    def all(self) -> list[SafeCache]:
        caches: list[SafeCache] = [self.sub_queries, self.reports, self.feedback, self.results]
        if self.provider is not None:
            caches.append(self.provider)
        return caches

    def clear_all(self) -> None:
        for cache in self.all():
            cache.clear()
