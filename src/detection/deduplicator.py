"""Order cache that classifies every sighting of an order."""
import threading
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import structlog

from src.models import Classification, Order

logger = structlog.get_logger()


@dataclass
class _CacheEntry:
    order: Order
    sequence: int
    seen_at: datetime
    # fingerprint -> sequence at which that version was accepted
    versions: "OrderedDict[tuple, int]" = field(default_factory=OrderedDict)


class OrderDeduplicator:
    """Keeps the authoritative copy of each order and ranks new sightings.

    Events carry no reliable sequence number, so recency is arrival order:
    a version never seen before is newer than the cached one, a version
    equal to the cached one is a duplicate, and a version equal to an
    already superseded copy is stale.
    """

    def __init__(self, retention_hours: float = 48, history_size: int = 32):
        self.retention = timedelta(hours=retention_hours)
        self.history_size = history_size
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            entry = self._entries.get(order_id)
            return entry.order if entry else None

    def classify(self, order: Order) -> tuple[Classification, Order]:
        """Classify an incoming order and update the cache if it is accepted.

        Returns the classification and the order as it now stands: the
        accepted copy with its assigned sequence, or the cached copy when
        the incoming one was discarded.
        """
        seen_at = order.last_seen_at or datetime.now(timezone.utc)
        fingerprint = order.fingerprint()

        with self._lock:
            entry = self._entries.get(order.order_id)

            # 1. First sighting
            if entry is None:
                accepted = replace(order, raw_sequence=1, last_seen_at=seen_at)
                entry = _CacheEntry(order=accepted, sequence=1, seen_at=seen_at)
                entry.versions[fingerprint] = 1
                self._entries[order.order_id] = entry
                return Classification.NEW, accepted

            known_sequence = entry.versions.get(fingerprint)

            # 2. Content never seen before: newer by arrival
            if known_sequence is None:
                sequence = entry.sequence + 1
                accepted = replace(order, raw_sequence=sequence, last_seen_at=seen_at)
                entry.order = accepted
                entry.sequence = sequence
                entry.seen_at = seen_at
                entry.versions[fingerprint] = sequence
                while len(entry.versions) > self.history_size:
                    entry.versions.popitem(last=False)
                return Classification.UPDATED, accepted

            # 3. Same content as the authoritative copy
            if known_sequence == entry.sequence:
                entry.seen_at = max(entry.seen_at, seen_at)
                entry.order = replace(entry.order, last_seen_at=entry.seen_at)
                return Classification.DUPLICATE, entry.order

            # 4. A superseded snapshot arriving late
            cached = entry.order

        logger.info(
            "order_stale_conflict",
            order_id=order.order_id,
            incoming_sequence=known_sequence,
            current_sequence=cached.raw_sequence,
        )
        return Classification.STALE_CONFLICT, cached

    def restore(self, orders: Iterable[Order]) -> int:
        """Warm the cache from persisted orders, keeping their sequence."""
        restored = 0
        with self._lock:
            for order in orders:
                sequence = max(order.raw_sequence, 1)
                seen_at = order.last_seen_at or datetime.now(timezone.utc)
                current = self._entries.get(order.order_id)
                if current is not None and current.sequence >= sequence:
                    continue
                entry = _CacheEntry(
                    order=replace(order, raw_sequence=sequence, last_seen_at=seen_at),
                    sequence=sequence,
                    seen_at=seen_at,
                )
                entry.versions[order.fingerprint()] = sequence
                self._entries[order.order_id] = entry
                restored += 1
        logger.info("order_cache_restored", count=restored)
        return restored

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Drop orders that have not been seen within the retention window."""
        cutoff = (now or datetime.now(timezone.utc)) - self.retention
        with self._lock:
            expired = [oid for oid, entry in self._entries.items() if entry.seen_at < cutoff]
            for order_id in expired:
                del self._entries[order_id]
        if expired:
            logger.info("orders_evicted", count=len(expired), remaining=len(self._entries))
        return len(expired)
