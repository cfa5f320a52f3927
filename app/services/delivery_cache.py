"""
Delivery Cache
==============
Bounded dedup window keyed on webhook delivery-id.

A source-control host may deliver the same push event more than once
(redelivery after a slow 2xx, manual "redeliver" in the UI). Each
delivery-id is remembered for ``ttl_seconds`` so that replays never
create a second PipelineRun.

Retention:
    - Entries older than ttl_seconds are evicted lazily on access.
    - At most max_entries are kept; the oldest entry is evicted first.
    - In-memory only; a restart forgets the window.

Usage:
    cache = DeliveryCache()
    if cache.claim("abc-123"):
        run = ...create run...
        cache.bind("abc-123", run.id)
    else:
        cache.run_id_for("abc-123")  # original run
"""
import logging
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from app.core.config import DEDUP_MAX_ENTRIES, DEDUP_TTL_SECONDS

logger = logging.getLogger(__name__)


class DeliveryCache:
    """
    delivery_id → (first_seen, run_id) with TTL and size bound.
    """

    def __init__(
        self,
        ttl_seconds: float = DEDUP_TTL_SECONDS,
        max_entries: int = DEDUP_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: "OrderedDict[str, Tuple[float, Optional[str]]]" = OrderedDict()
        self._ttl = ttl_seconds
        self._max = max_entries
        self._clock = clock

    def _evict_expired(self) -> None:
        cutoff = self._clock() - self._ttl
        while self._entries:
            key, (seen, _) = next(iter(self._entries.items()))
            if seen >= cutoff:
                break
            self._entries.popitem(last=False)

    def claim(self, delivery_id: str) -> bool:
        """
        Record a delivery-id. Returns True if this is the first sighting
        inside the window, False for a duplicate.
        """
        self._evict_expired()
        if delivery_id in self._entries:
            logger.info("Duplicate delivery %s ignored", delivery_id)
            return False
        while len(self._entries) >= self._max:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Dedup window full, evicted delivery %s", evicted)
        self._entries[delivery_id] = (self._clock(), None)
        return True

    def bind(self, delivery_id: str, run_id: str) -> None:
        """Attach the run created for a claimed delivery."""
        entry = self._entries.get(delivery_id)
        if entry is not None:
            self._entries[delivery_id] = (entry[0], run_id)

    def release(self, delivery_id: str) -> None:
        """Forget a claim whose run could not be created, so a redelivery may retry."""
        self._entries.pop(delivery_id, None)

    def run_id_for(self, delivery_id: str) -> Optional[str]:
        entry = self._entries.get(delivery_id)
        return entry[1] if entry else None

    def __contains__(self, delivery_id: str) -> bool:
        self._evict_expired()
        return delivery_id in self._entries

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._entries)
