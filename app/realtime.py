"""
In-process realtime change feed.

Writers publish a ChangeEvent after each committed insert/update/delete;
subscribers register for a table, an event type and an optional row filter
and get back a Subscription whose unsubscribe() is the disposer. A
Subscription is also a context manager, so scoped use releases it on exit.

Callbacks may be plain functions or coroutine functions. Coroutines are
scheduled on the running event loop and tracked until they finish;
``await feed.drain()`` waits for all of them. A callback that raises is
logged and counted, it never reaches the publisher or other subscribers.

TypingChannel replaces a persisted typing table with an ephemeral
broadcast on the same feed: touching refreshes an entry (INSERT event),
entries expire after a TTL, clearing emits a DELETE event.
"""

import asyncio
import inspect
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from app.metrics import record_realtime_event, realtime_callback_errors_total, realtime_subscriptions

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
ALL = "*"

MESSAGES = "messages"
TYPING = "typing_indicators"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None

    @property
    def row(self) -> Dict[str, Any]:
        """The row the event is about: new for inserts/updates, old for deletes."""
        return self.new if self.new is not None else (self.old or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"table": self.table, "event": self.event_type, "new": self.new, "old": self.old}


@dataclass(eq=False)
class Subscription:
    id: int
    table: str
    event_type: str
    callback: Callable[[ChangeEvent], Any]
    filters: Dict[str, Any] = field(default_factory=dict)
    predicate: Optional[Callable[[Dict[str, Any]], bool]] = None
    feed: Optional["ChangeFeed"] = None

    @property
    def active(self) -> bool:
        return self.feed is not None

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.event_type != ALL and event.event_type != self.event_type:
            return False
        row = event.row
        for key, value in self.filters.items():
            if row.get(key) != value:
                return False
        if self.predicate is not None and not self.predicate(row):
            return False
        return True

    def unsubscribe(self) -> None:
        """Release the subscription. Safe to call more than once."""
        if self.feed is not None:
            self.feed._remove(self)
            self.feed = None

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.unsubscribe()


class ChangeFeed:
    def __init__(self):
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(
        self,
        table: str,
        callback: Callable[[ChangeEvent], Any],
        event_type: str = ALL,
        filters: Optional[Dict[str, Any]] = None,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> Subscription:
        """
        Register callback for events on table.

        Args:
            table: Table name (MESSAGES, TYPING)
            callback: Called with the ChangeEvent; may be a coroutine function
            event_type: INSERT, UPDATE, DELETE or ALL
            filters: Column equality filters applied to the event row
            predicate: Extra row filter

        Returns:
            Subscription handle; call unsubscribe() to release it
        """
        subscription = Subscription(
            id=next(self._ids),
            table=table,
            event_type=event_type,
            callback=callback,
            filters=dict(filters or {}),
            predicate=predicate,
            feed=self,
        )
        self._subscriptions[subscription.id] = subscription
        realtime_subscriptions.inc()
        logger.debug(f"Subscribed #{subscription.id} to {table}/{event_type} filters={subscription.filters}")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if self._subscriptions.pop(subscription.id, None) is not None:
            realtime_subscriptions.dec()
            logger.debug(f"Unsubscribed #{subscription.id} from {subscription.table}")

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> int:
        """
        Deliver event to every matching subscriber.

        Returns:
            Number of subscribers the event was delivered to
        """
        record_realtime_event(event.table, event.event_type)
        delivered = 0
        # Callbacks may unsubscribe while we iterate
        for subscription in list(self._subscriptions.values()):
            if not subscription.active:
                continue
            try:
                if not subscription.matches(event):
                    continue
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    self._track(result, subscription)
                delivered += 1
            except Exception:
                realtime_callback_errors_total.inc()
                logger.exception(f"Realtime subscriber #{subscription.id} failed on {event.table}/{event.event_type}")
        return delivered

    def _track(self, awaitable, subscription: Subscription) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError:
            # No running loop to schedule on
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                realtime_callback_errors_total.inc()
                logger.error(
                    f"Realtime subscriber #{subscription.id} failed: {error!r}",
                    exc_info=(type(error), error, error.__traceback__),
                )

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait until every scheduled callback (including ones they trigger) finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class TypingChannel:
    """
    Ephemeral "user is typing" signal per listing.

    Entries are keyed by (listing_id, user_id) and expire ttl_seconds after
    the last touch. Nothing is persisted.
    """

    def __init__(self, feed: ChangeFeed, ttl_seconds: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self.feed = feed
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[float, Dict[str, Any]]] = {}

    def touch(self, listing_id: str, user_id: str, receiver_id: Optional[str] = None) -> Dict[str, Any]:
        """Refresh the typing entry and broadcast an INSERT."""
        self.expire()
        row = {
            "listing_id": listing_id,
            "user_id": user_id,
            "receiver_id": receiver_id,
            "ts": time.time(),
        }
        self._entries[(listing_id, user_id)] = (self.clock() + self.ttl_seconds, row)
        self.feed.publish(ChangeEvent(TYPING, INSERT, new=row))
        return row

    def clear(self, listing_id: str, user_id: str) -> bool:
        """Drop the entry and broadcast a DELETE. Returns False if there was none."""
        entry = self._entries.pop((listing_id, user_id), None)
        if entry is None:
            return False
        self.feed.publish(ChangeEvent(TYPING, DELETE, old=entry[1]))
        return True

    def expire(self) -> int:
        """Drop entries whose TTL elapsed, broadcasting a DELETE for each."""
        now = self.clock()
        expired = [key for key, (deadline, _) in self._entries.items() if deadline <= now]
        for key in expired:
            _, row = self._entries.pop(key)
            self.feed.publish(ChangeEvent(TYPING, DELETE, old=row))
        return len(expired)

    def active(self, listing_id: str, among: Optional[Iterable[str]] = None) -> List[str]:
        """User ids currently typing on a listing, limited to ``among`` when given."""
        self.expire()
        allowed = None if among is None else set(among)
        return [
            user_id for (entry_listing, user_id) in self._entries
            if entry_listing == listing_id and (allowed is None or user_id in allowed)
        ]

    async def sweep(self, interval: float = 0.5) -> None:
        """Expire entries periodically until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.expire()


change_feed = ChangeFeed()
