"""Memoisation of effective multipliers with expiry-aware invalidation."""
from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from .models import ActiveModifier, ModifierDefinition, ModifierTarget
from .modifiers import contributing_modifiers, fold_contributions, nearest_expiry
from .storage import ensure_utc
from .telemetry import get_telemetry

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str, Optional[str]]
ModifierLoader = Callable[
    [str, datetime], Tuple[Iterable[ActiveModifier], Mapping[int, ModifierDefinition]]
]


@dataclass(frozen=True)
class CachedMultiplier:
    value: float
    computed_at: datetime
    valid_until: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModifierCache:
    """Caches aggregator output per ``(subject, target, sub_target)``.

    An entry is valid until the earliest expiry among the modifiers that
    produced it (bounded by ``ttl``). Writers of a subject's active modifiers
    must call :meth:`invalidate`. The cache is an optimisation only; liveness
    checks on individual modifiers go to the registry.
    """

    def __init__(
        self,
        loader: ModifierLoader,
        *,
        ttl: timedelta = timedelta(hours=1),
        max_entries: int = 1000,
        floor: Optional[float] = None,
        ceiling: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._loader = loader
        self._ttl = ttl
        self._max_entries = max(1, max_entries)
        self._floor = floor
        self._ceiling = ceiling
        self._clock = clock
        self._entries: Dict[CacheKey, CachedMultiplier] = {}
        self._versions: Dict[str, int] = {}
        self._generation = 0
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(subject_id: str, target: ModifierTarget, sub_target: Optional[str]) -> CacheKey:
        return (subject_id, ModifierTarget(target).value, sub_target)

    def get_or_compute(
        self,
        subject_id: str,
        target: ModifierTarget,
        sub_target: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> float:
        now = ensure_utc(now or self._clock())
        key = self._key(subject_id, target, sub_target)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now < entry.valid_until:
                self._hits += 1
                hit = True
            else:
                if entry is not None:
                    del self._entries[key]
                self._misses += 1
                hit = False
            version = (self._generation, self._versions.get(subject_id, 0))
        self._report(hit)
        if hit:
            return entry.value

        active, definitions = self._loader(subject_id, now)
        contributions = contributing_modifiers(
            subject_id, target, sub_target, active, definitions, now
        )
        value = fold_contributions(contributions, floor=self._floor, ceiling=self._ceiling)
        valid_until = now + self._ttl
        expiry = nearest_expiry(contributions)
        if expiry is not None and expiry < valid_until:
            valid_until = expiry

        with self._lock:
            # Skip storing when an invalidation or clear raced with this computation.
            if (self._generation, self._versions.get(subject_id, 0)) == version:
                if key not in self._entries and len(self._entries) >= self._max_entries:
                    self._evict_one()
                self._entries[key] = CachedMultiplier(value, now, valid_until)
        return value

    def peek(
        self, subject_id: str, target: ModifierTarget, sub_target: Optional[str] = None
    ) -> Optional[CachedMultiplier]:
        with self._lock:
            return self._entries.get(self._key(subject_id, target, sub_target))

    def invalidate(self, subject_id: str) -> int:
        """Drop every cached value for ``subject_id``; returns the count removed."""

        with self._lock:
            self._versions[subject_id] = self._versions.get(subject_id, 0) + 1
            stale = [key for key in self._entries if key[0] == subject_id]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Invalidated %d cached multipliers for %s", len(stale), subject_id)
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"hits": self._hits, "misses": self._misses, "size": len(self._entries)}

    def _evict_one(self) -> None:
        victim = min(self._entries, key=lambda k: self._entries[k].valid_until)
        del self._entries[victim]

    def _report(self, hit: bool) -> None:
        try:
            get_telemetry().track_cache_lookup(hit=hit)
        except sqlite3.Error:  # pragma: no cover - telemetry must not break lookups
            logger.debug("Cache telemetry unavailable", exc_info=True)


__all__ = ["CachedMultiplier", "ModifierCache"]
