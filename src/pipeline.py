"""Ingestion pipeline: relay events in, notification directives out."""
import asyncio
from datetime import datetime, timezone
from typing import Optional, Protocol

import aiosqlite
import structlog

from src.detection.deduplicator import OrderDeduplicator
from src.detection.matcher import match_alerts
from src.detection.normalizer import normalize_event
from src.detection.throttle import NotificationThrottle
from src.errors import CollaboratorUnavailable, InvariantViolation
from src.models import Classification, Decision, NotificationDirective, Order, Rejection
from src.storage.database import Database

logger = structlog.get_logger()


class Dispatcher(Protocol):
    async def dispatch(self, directive: NotificationDirective) -> None: ...


class IngestionPipeline:
    """Merges relay events into one bounded queue and processes them.

    Relays never wait on processing: when the queue is full the incoming
    (newest) event is dropped so already queued events are not starved.
    """

    def __init__(
        self,
        db: Database,
        dispatcher: Dispatcher,
        deduplicator: OrderDeduplicator,
        throttle: NotificationThrottle,
        queue_size: int = 1000,
        workers: int = 1,
        eviction_interval: float = 600,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.deduplicator = deduplicator
        self.throttle = throttle
        self.queue_size = queue_size
        self.worker_count = workers
        self.eviction_interval = eviction_interval

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._workers: list[asyncio.Task] = []
        self._evictor: Optional[asyncio.Task] = None
        self._stopping = False

        # Stats
        self.events_received = 0
        self.events_dropped = 0
        self.events_rejected = 0
        self.orders_accepted = 0
        self.duplicates = 0
        self.stale_conflicts = 0
        self.matches = 0
        self.notifications_sent = 0
        self.notifications_denied = 0
        self.errors = 0

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize() if self._queue else 0

    async def start(self):
        """Create the merge queue and start the workers."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._stopping = False
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"pipeline-worker-{i}")
            for i in range(self.worker_count)
        ]
        if self.eviction_interval:
            self._evictor = asyncio.create_task(self._eviction_loop(), name="order-eviction")
        logger.info("pipeline_started", workers=self.worker_count, queue_size=self.queue_size)

    def submit(self, event: dict, relay_url: str):
        """Hand an event over from a relay thread. Never blocks."""
        loop = self._loop
        if loop is None or self._stopping:
            return
        try:
            loop.call_soon_threadsafe(self.enqueue, event, relay_url)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug("event_after_shutdown", relay=relay_url)

    def enqueue(self, event: dict, relay_url: str) -> bool:
        """Queue an event on the loop thread, dropping it if the queue is full."""
        if self._queue is None or self._stopping:
            return False
        self.events_received += 1
        try:
            self._queue.put_nowait((event, relay_url))
        except asyncio.QueueFull:
            self.events_dropped += 1
            logger.warning("event_dropped_queue_full", relay=relay_url, dropped=self.events_dropped)
            return False
        return True

    async def stop(self):
        """Discard queued events and let each worker finish its current event."""
        if self._queue is None:
            return
        self._stopping = True

        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            discarded += 1

        for _ in self._workers:
            await self._queue.put(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        if self._evictor is not None:
            self._evictor.cancel()
            await asyncio.gather(self._evictor, return_exceptions=True)
            self._evictor = None

        logger.info("pipeline_stopped", discarded=discarded, **self.stats())

    async def _worker(self, index: int):
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                event, relay_url = item
                await self.process_event(event, relay_url)
            except Exception as e:
                self.errors += 1
                logger.error("pipeline_worker_error", worker=index, error=str(e), exc_info=True)
            finally:
                self._queue.task_done()

    async def process_event(self, event, relay_url: Optional[str] = None) -> list[NotificationDirective]:
        """Run one raw event through the whole pipeline."""
        # 1. Normalize
        result = normalize_event(event)
        if isinstance(result, Rejection):
            self.events_rejected += 1
            logger.info("event_rejected", relay=relay_url, event_id=result.event_id[:16], reason=result.reason)
            return []

        # 2. Deduplicate
        classification, order = self.deduplicator.classify(result)
        if not classification.accepted:
            if classification == Classification.DUPLICATE:
                self.duplicates += 1
                logger.debug("order_duplicate", order_id=order.order_id, relay=relay_url)
                await self._touch(order)
            else:
                self.stale_conflicts += 1
            return []

        self.orders_accepted += 1
        logger.info(
            "order_accepted",
            order_id=order.order_id,
            classification=classification.value,
            sequence=order.raw_sequence,
            kind=order.kind,
            fiat=order.fiat_code,
            platform=order.platform.value,
            relay=relay_url,
        )

        # 3. Match, throttle and dispatch
        try:
            return await self._notify(order)
        except CollaboratorUnavailable as e:
            self.errors += 1
            logger.warning("event_abandoned", order_id=order.order_id, collaborator=e.collaborator, error=str(e.cause))
        except InvariantViolation as e:
            self.errors += 1
            logger.error("invariant_violation", order_id=order.order_id, error=str(e))
        return []

    async def _notify(self, order: Order) -> list[NotificationDirective]:
        try:
            await self.db.save_order(order)
            alerts = await self.db.get_active_alerts(order.fiat_code, order.kind)
        except aiosqlite.Error as e:
            raise CollaboratorUnavailable("storage", e) from e

        matches = match_alerts(order, alerts)
        if not matches:
            return []

        alerts_by_id = {alert.alert_id: alert for alert in alerts}
        day = self.throttle.today()
        directives = []

        for match in matches:
            self.matches += 1
            try:
                # The match row exists before any quota unit is spent
                match_id = await self.db.record_match(match.user_id, match.alert_id, order.order_id)
                tier = await self.db.get_user_tier(match.user_id)
                decision = await self.throttle.check(match.user_id, tier, day)
            except aiosqlite.Error as e:
                raise CollaboratorUnavailable("storage", e) from e

            try:
                await self.db.set_match_decision(match_id, decision.value)
            except aiosqlite.Error as e:
                logger.warning("match_decision_not_recorded", match_id=match_id, decision=decision.value, error=str(e))

            if decision == Decision.DENY:
                self.notifications_denied += 1
                continue

            directive = NotificationDirective(
                user_id=match.user_id,
                order=order,
                alert=alerts_by_id[match.alert_id],
            )
            try:
                await self.dispatcher.dispatch(directive)
            except Exception as e:
                # Single attempt; other matches for this order still go out
                self.errors += 1
                logger.warning("dispatch_failed", user_id=match.user_id, order_id=order.order_id, error=str(e))
                continue

            self.notifications_sent += 1
            directives.append(directive)
            logger.info(
                "notification_dispatched",
                user_id=match.user_id,
                alert_id=match.alert_id,
                order_id=order.order_id,
            )

        return directives

    async def _touch(self, order: Order):
        try:
            await self.db.touch_order(order.order_id, order.last_seen_at)
        except aiosqlite.Error as e:
            logger.warning("order_touch_failed", order_id=order.order_id, error=str(e))

    async def _eviction_loop(self):
        while True:
            await asyncio.sleep(self.eviction_interval)
            await self.evict_expired()

    async def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Evict stale orders from the cache and from storage."""
        now = now or datetime.now(timezone.utc)
        evicted = self.deduplicator.evict_expired(now)
        try:
            await self.db.prune_orders(now - self.deduplicator.retention)
        except aiosqlite.Error as e:
            logger.warning("order_prune_failed", error=str(e))
        return evicted

    def stats(self) -> dict:
        return {
            "received": self.events_received,
            "dropped": self.events_dropped,
            "rejected": self.events_rejected,
            "accepted": self.orders_accepted,
            "duplicates": self.duplicates,
            "stale": self.stale_conflicts,
            "matches": self.matches,
            "sent": self.notifications_sent,
            "denied": self.notifications_denied,
            "errors": self.errors,
            "queue_depth": self.queue_depth,
        }
