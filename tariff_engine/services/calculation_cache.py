"""
Calculation Cache.

Read-through cache over factor lookups, tariff resolution and whole
calculation results. Every entry carries a set of tags (bucket, plan,
service, tariff, financial year, patient). Each tag has a generation
counter; invalidation increments the counters, drops matching entries and
then broadcasts a ``CacheInvalidatedEvent`` to subscribers. A read is served
only if every tag of the entry still has the generation recorded at store
time, so a value computed before an invalidation is never returned after it.
"""

import asyncio
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from tariff_engine.core.config import get_settings
from tariff_engine.core.enums import CacheBucket, InvalidationType
from tariff_engine.schemas.calculation import CacheInvalidatedEvent, CacheKey, CacheStats
from tariff_engine.utils.logging import get_logger

logger = get_logger(__name__)

# ("plan", 7), ("factors", 2025), ("bucket", "tariff") ...
Tag = tuple[str, Any]
Listener = Callable[[CacheInvalidatedEvent], None]


# =============================================================================
# Tags
# =============================================================================


def bucket_tag(bucket: CacheBucket) -> Tag:
    return ("bucket", bucket.value)


def plan_tag(plan_id: int) -> Tag:
    return ("plan", plan_id)


def service_tag(service_id: int) -> Tag:
    return ("service", service_id)


def tariff_tag(tariff_id: int) -> Tag:
    return ("tariff", tariff_id)


def factors_tag(financial_year: int) -> Tag:
    return ("factors", financial_year)


def patient_tag(patient_id: int) -> Tag:
    return ("patient", patient_id)


def _wildcard(tag: Tag) -> Tag:
    # ("factors", None) invalidates every financial year at once
    return (tag[0], None)


_ALL_TAG: Tag = ("all", None)


@dataclass
class CacheEntry:
    """Single cache entry with the tag generations it was stored under."""

    key: CacheKey
    value: Any
    generations: dict[Tag, int]
    expires_at: float
    access_count: int = 0
    tags: frozenset[Tag] = field(default_factory=frozenset)


class CalculationCache:
    """Tag-invalidated LRU cache with generation counters."""

    def __init__(
        self,
        max_entries: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
        max_compute_attempts: Optional[int] = None,
        enabled: Optional[bool] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize CalculationCache (unset arguments come from EngineSettings)."""
        settings = get_settings()
        self._max_entries = max_entries or settings.CACHE_MAX_ENTRIES
        self._ttl = ttl_seconds or settings.CACHE_TTL_SECONDS
        self._max_attempts = max_compute_attempts or settings.CACHE_MAX_COMPUTE_ATTEMPTS
        self._enabled = settings.CACHE_ENABLED if enabled is None else enabled
        self._clock = clock

        # One mutex guards entries, generations and the epoch
        self._lock = threading.Lock()
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._generations: dict[Tag, int] = {}
        self._epoch = 0
        self._listeners: list[Listener] = []

        # Statistics
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0
        self._stale_rejections = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def epoch(self) -> int:
        """Logical clock incremented by every invalidation."""
        return self._epoch

    # =========================================================================
    # Read path
    # =========================================================================

    async def get_or_compute(
        self,
        key: CacheKey,
        compute_fn: Callable[[], Any],
        tags: Iterable[Tag] = (),
        tags_from_result: Optional[Callable[[Any], Iterable[Tag]]] = None,
        use_cache: bool = True,
    ) -> Any:
        """
        Return the cached value for a key or compute and store it.

        Args:
            key: Normalized cache key
            compute_fn: Sync or async factory producing the value
            tags: Tags known before computing
            tags_from_result: Derives further tags from the computed value
            use_cache: False bypasses the cache entirely

        Returns:
            Cached or freshly computed value
        """
        if not (self._enabled and use_cache):
            return await self._compute(compute_fn)

        cached = self._lookup(key)
        if cached is not None:
            return cached.value

        static_tags = frozenset(tags) | {bucket_tag(key.bucket), _ALL_TAG}
        attempt = 0
        while True:
            attempt += 1
            started_epoch = self._epoch
            value = await self._compute(compute_fn)

            entry_tags = static_tags
            if tags_from_result is not None:
                entry_tags = entry_tags | frozenset(tags_from_result(value))

            if self._store(key, value, entry_tags, started_epoch):
                return value

            # An invalidation overlapped the computation
            if attempt >= self._max_attempts:
                logger.warning(
                    f"Cache key {key} invalidated during {attempt} computations, "
                    "returning uncached value"
                )
                return value
            logger.debug(f"Recomputing {key} after concurrent invalidation (attempt {attempt})")

    async def _compute(self, compute_fn: Callable[[], Any]) -> Any:
        if asyncio.iscoroutinefunction(compute_fn):
            return await compute_fn()
        value = compute_fn()
        if asyncio.iscoroutine(value):
            return await value
        return value

    def _is_current(self, entry: CacheEntry) -> bool:
        return all(self._generations.get(tag, 0) == gen for tag, gen in entry.generations.items())

    def _lookup(self, key: CacheKey) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self._misses += 1
                return None

            if not self._is_current(entry):
                del self._entries[key]
                self._stale_rejections += 1
                self._misses += 1
                return None

            self._entries.move_to_end(key)
            entry.access_count += 1
            self._hits += 1
            return entry

    def _store(self, key: CacheKey, value: Any, tags: frozenset[Tag], started_epoch: int) -> bool:
        with self._lock:
            if self._epoch != started_epoch:
                return False

            generations: dict[Tag, int] = {}
            for tag in tags:
                generations[tag] = self._generations.get(tag, 0)
                if tag[1] is not None:
                    wildcard = _wildcard(tag)
                    generations[wildcard] = self._generations.get(wildcard, 0)

            # Evict if at capacity
            while len(self._entries) >= self._max_entries and key not in self._entries:
                self._entries.popitem(last=False)
                self._evictions += 1

            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                generations=generations,
                expires_at=self._clock() + self._ttl,
                tags=tags,
            )
            self._entries.move_to_end(key)
            return True

    # =========================================================================
    # Invalidation
    # =========================================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for invalidation events.

        Returns:
            Callable that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _invalidate(
        self,
        tag: Tag,
        invalidation_type: InvalidationType,
        target_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> int:
        with self._lock:
            self._generations[tag] = self._generations.get(tag, 0) + 1
            self._epoch += 1
            self._invalidations += 1
            epoch = self._epoch

            if tag == _ALL_TAG:
                stale = list(self._entries)
            else:
                stale = [k for k, e in self._entries.items() if not self._is_current(e)]
            for k in stale:
                del self._entries[k]
            listeners = list(self._listeners)

        logger.info(
            f"Cache invalidated: type={invalidation_type.value}, id={target_id}, "
            f"dropped={len(stale)}, epoch={epoch}"
        )

        event = CacheInvalidatedEvent(
            invalidation_type=invalidation_type,
            target_id=target_id,
            epoch=epoch,
            reason=reason,
        )
        for listener in listeners:
            listener(event)
        return len(stale)

    def invalidate_all(self, reason: Optional[str] = None) -> int:
        """Drop every entry."""
        return self._invalidate(_ALL_TAG, InvalidationType.ALL, reason=reason)

    def invalidate_tariff(self, tariff_id: int, reason: Optional[str] = None) -> int:
        """Drop entries that used a tariff, and the statistics."""
        dropped = self._invalidate(tariff_tag(tariff_id), InvalidationType.TARIFF, tariff_id, reason)
        return dropped + self.invalidate_statistics(reason)

    def invalidate_by_plan(self, plan_id: int, reason: Optional[str] = None) -> int:
        """Drop entries touching a plan, and the statistics."""
        dropped = self._invalidate(plan_tag(plan_id), InvalidationType.PLAN, plan_id, reason)
        return dropped + self.invalidate_statistics(reason)

    def invalidate_by_service(self, service_id: int, reason: Optional[str] = None) -> int:
        """Drop entries touching a service under any plan, and the statistics."""
        dropped = self._invalidate(
            service_tag(service_id), InvalidationType.SERVICE, service_id, reason
        )
        return dropped + self.invalidate_statistics(reason)

    def invalidate_statistics(self, reason: Optional[str] = None) -> int:
        """Drop the statistics bucket."""
        return self._invalidate(
            bucket_tag(CacheBucket.STATISTICS), InvalidationType.STATISTICS, reason=reason
        )

    def invalidate_factors(
        self, financial_year: Optional[int] = None, reason: Optional[str] = None
    ) -> int:
        """Drop entries priced with one financial year's factors (all years when None)."""
        tag = factors_tag(financial_year) if financial_year is not None else ("factors", None)
        return self._invalidate(tag, InvalidationType.FACTOR, financial_year, reason)

    def invalidate_by_patient(self, patient_id: int, reason: Optional[str] = None) -> int:
        """Drop calculation results of a patient."""
        return self._invalidate(patient_tag(patient_id), InvalidationType.PATIENT, patient_id, reason)

    # =========================================================================
    # Statistics
    # =========================================================================

    def size(self) -> int:
        """Get current cache size."""
        return len(self._entries)

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        with self._lock:
            return CacheStats(
                entries=len(self._entries),
                max_entries=self._max_entries,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                invalidations=self._invalidations,
                stale_rejections=self._stale_rejections,
                epoch=self._epoch,
            )

    def reset_stats(self) -> None:
        """Reset statistics."""
        with self._lock:
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            self._invalidations = 0
            self._stale_rejections = 0


# =============================================================================
# Factory Functions
# =============================================================================


_calculation_cache: CalculationCache | None = None


def get_calculation_cache() -> CalculationCache:
    """Get singleton CalculationCache instance."""
    global _calculation_cache
    if _calculation_cache is None:
        _calculation_cache = CalculationCache()
    return _calculation_cache


def create_calculation_cache(**kwargs: Any) -> CalculationCache:
    """Create new CalculationCache instance."""
    return CalculationCache(**kwargs)
