"""Content-addressed cache of rendered prompts.

Entries are keyed by selection fingerprint.  A hit returns the stored
:class:`RenderedPrompt` without calling the render function; a miss renders,
stores and returns.  Because rendering is a pure function of the selection,
eviction and expiry only ever cost latency: a cold cache and a warm cache
return equal values.

The cache is bounded (least-recently-used eviction) and optionally
time-bounded (``ttl_seconds``).  It lives in process memory; a cold cache is
a valid startup state.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .prompt_builder import RenderedPrompt, compute_fingerprint
from .validation import SelectionRequest

logger = logging.getLogger(__name__)

RenderFn = Callable[[SelectionRequest], RenderedPrompt]


@dataclass
class CacheEntry:
    """A cached render and its usage counters.

    Timestamps come from the cache's clock (monotonic seconds by default).
    """

    fingerprint: str
    rendered: RenderedPrompt
    created_at: float
    last_used: float
    hit_count: int = 0


class PromptCache:
    """Thread-safe LRU cache of rendered prompts.

    Args:
        max_entries: Capacity; the least recently used entry is evicted when
            a new entry would exceed it.
        ttl_seconds: Optional lifetime.  Expired entries count as misses and
            are re-rendered.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be at least 1, got {max_entries}")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    # -- Core contract --------------------------------------------------------

    def get_or_render(
        self, selection: SelectionRequest | dict[str, Any], render_fn: RenderFn
    ) -> RenderedPrompt:
        """Return the cached render for *selection*, rendering on a miss.

        The lookup, render and store happen under one lock, so concurrent
        misses on the same fingerprint call *render_fn* once.
        """
        if not isinstance(selection, SelectionRequest):
            selection = SelectionRequest.model_validate(selection)
        fingerprint = compute_fingerprint(selection)

        with self._lock:
            now = self._clock()
            entry = self._entries.get(fingerprint)
            if entry is not None and self._is_expired(entry, now):
                del self._entries[fingerprint]
                entry = None

            if entry is not None:
                entry.hit_count += 1
                entry.last_used = now
                self._entries.move_to_end(fingerprint)
                self._hits += 1
                return entry.rendered

            self._misses += 1
            rendered = render_fn(selection)
            self._entries[fingerprint] = CacheEntry(
                fingerprint=fingerprint,
                rendered=rendered,
                created_at=now,
                last_used=now,
            )
            self._evict_overflow()
            return rendered

    # -- Inspection -----------------------------------------------------------

    def contains(self, selection: SelectionRequest | dict[str, Any]) -> bool:
        """Whether *selection* would hit, without touching usage counters."""
        fingerprint = compute_fingerprint(selection)
        with self._lock:
            entry = self._entries.get(fingerprint)
            return entry is not None and not self._is_expired(entry, self._clock())

    def peek(self, fingerprint: str) -> CacheEntry | None:
        """Return the entry for *fingerprint* without refreshing it."""
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None or self._is_expired(entry, self._clock()):
                return None
            return entry

    def stats(self) -> dict[str, Any]:
        """Counters since construction or the last :meth:`clear`."""
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": (self._hits / lookups) if lookups else 0.0,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # -- Maintenance ----------------------------------------------------------

    def invalidate(self, selection: SelectionRequest | dict[str, Any]) -> bool:
        """Drop the entry for *selection*.  Returns ``True`` if one existed."""
        fingerprint = compute_fingerprint(selection)
        with self._lock:
            return self._entries.pop(fingerprint, None) is not None

    def clear(self) -> int:
        """Drop every entry and reset the counters.  Returns the entry count."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._hits = self._misses = self._evictions = 0
        logger.info("Prompt cache cleared (%d entries).", count)
        return count

    def prune_expired(self) -> int:
        """Remove expired entries eagerly.  Returns how many were removed."""
        if self.ttl_seconds is None:
            return 0
        with self._lock:
            now = self._clock()
            expired = [fp for fp, entry in self._entries.items() if self._is_expired(entry, now)]
            for fingerprint in expired:
                del self._entries[fingerprint]
        if expired:
            logger.debug("Pruned %d expired prompt cache entries.", len(expired))
        return len(expired)

    def warm(
        self,
        selections: Iterable[SelectionRequest | dict[str, Any]],
        render_fn: RenderFn,
    ) -> int:
        """Pre-render common selections.  Returns how many were newly cached."""
        added = 0
        for selection in selections:
            if not self.contains(selection):
                self.get_or_render(selection, render_fn)
                added += 1
        logger.info("Prompt cache warmed with %d selections.", added)
        return added

    # -- Internals ------------------------------------------------------------

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return self.ttl_seconds is not None and now - entry.created_at >= self.ttl_seconds

    def _evict_overflow(self) -> None:
        while len(self._entries) > self.max_entries:
            fingerprint, _entry = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug("Evicted prompt cache entry %s.", fingerprint[:12])
