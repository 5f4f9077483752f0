"""
Tests for the in-process change feed and the typing channel.
"""

import pytest

from app.realtime import ALL, DELETE, INSERT, MESSAGES, TYPING, UPDATE, ChangeEvent, ChangeFeed, TypingChannel


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def message_event(event_type=INSERT, **row):
    values = {"id": "m1", "listing_id": "L1", "sender_id": "alice", "receiver_id": "bob"}
    values.update(row)
    if event_type == DELETE:
        return ChangeEvent(MESSAGES, event_type, old=values)
    return ChangeEvent(MESSAGES, event_type, new=values)


class TestSubscriptions:
    """Test routing of events to subscribers."""

    def test_table_and_event_type_filtering(self):
        """Test subscribers only see their table and event type."""
        feed = ChangeFeed()
        inserts, everything, typing = [], [], []
        feed.subscribe(MESSAGES, inserts.append, INSERT)
        feed.subscribe(MESSAGES, everything.append, ALL)
        feed.subscribe(TYPING, typing.append)

        feed.publish(message_event(INSERT))
        feed.publish(message_event(UPDATE))
        feed.publish(message_event(DELETE))

        assert [e.event_type for e in inserts] == [INSERT]
        assert [e.event_type for e in everything] == [INSERT, UPDATE, DELETE]
        assert typing == []

    def test_row_filters_and_predicate(self):
        """Test column filters and predicates both apply to the event row."""
        feed = ChangeFeed()
        scoped = []
        feed.subscribe(
            MESSAGES, scoped.append,
            filters={"listing_id": "L1"},
            predicate=lambda row: row["receiver_id"] == "bob",
        )

        feed.publish(message_event(listing_id="L2"))
        feed.publish(message_event(receiver_id="carol"))
        delivered = feed.publish(message_event())

        assert delivered == 1
        assert len(scoped) == 1

    def test_delete_events_match_on_old_row(self):
        """Test filters see the old row of a delete."""
        feed = ChangeFeed()
        seen = []
        feed.subscribe(MESSAGES, seen.append, DELETE, filters={"listing_id": "L1"})

        feed.publish(message_event(DELETE))

        assert seen[0].row["id"] == "m1"

    def test_unsubscribe_is_idempotent(self):
        """Test a released subscription gets nothing and can be released again."""
        feed = ChangeFeed()
        seen = []
        subscription = feed.subscribe(MESSAGES, seen.append)

        subscription.unsubscribe()
        subscription.unsubscribe()
        feed.publish(message_event())

        assert seen == []
        assert not subscription.active
        assert feed.subscription_count == 0

    def test_context_manager_releases(self):
        """Test leaving the with block releases the subscription."""
        feed = ChangeFeed()
        with feed.subscribe(MESSAGES, lambda event: None):
            assert feed.subscription_count == 1

        assert feed.subscription_count == 0

    def test_failing_callback_does_not_affect_others(self):
        """Test a raising subscriber is isolated from the publisher and the rest."""
        feed = ChangeFeed()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        feed.subscribe(MESSAGES, broken)
        feed.subscribe(MESSAGES, seen.append)

        feed.publish(message_event())

        assert len(seen) == 1

    def test_unsubscribe_during_publish(self):
        """Test a subscriber released by an earlier callback is skipped."""
        feed = ChangeFeed()
        seen = []
        later = None

        def release_later(event):
            later.unsubscribe()

        feed.subscribe(MESSAGES, release_later)
        later = feed.subscribe(MESSAGES, seen.append)

        feed.publish(message_event())

        assert seen == []


class TestAsyncCallbacks:
    """Test coroutine subscribers."""

    @pytest.mark.anyio
    async def test_coroutine_callback_runs_on_drain(self):
        """Test coroutine callbacks are scheduled and awaited by drain()."""
        feed = ChangeFeed()
        seen = []

        async def handler(event):
            seen.append(event.event_type)

        feed.subscribe(MESSAGES, handler)
        feed.publish(message_event())
        await feed.drain()

        assert seen == [INSERT]

    @pytest.mark.anyio
    async def test_failing_coroutine_is_contained(self):
        """Test a coroutine that raises does not break drain() or later events."""
        feed = ChangeFeed()
        seen = []

        async def handler(event):
            if event.event_type == INSERT:
                raise RuntimeError("boom")
            seen.append(event.event_type)

        feed.subscribe(MESSAGES, handler)
        feed.publish(message_event(INSERT))
        feed.publish(message_event(UPDATE))
        await feed.drain()

        assert seen == [UPDATE]


class TestTypingChannel:
    """Test the ephemeral typing broadcast."""

    def test_touch_broadcasts_insert(self):
        """Test touching publishes an INSERT addressed to the receiver."""
        feed = ChangeFeed()
        seen = []
        feed.subscribe(TYPING, seen.append)
        channel = TypingChannel(feed, ttl_seconds=2.0, clock=FakeClock())

        channel.touch("L1", "alice", receiver_id="bob")

        assert seen[0].event_type == INSERT
        assert seen[0].new["user_id"] == "alice"
        assert seen[0].new["receiver_id"] == "bob"
        assert channel.active("L1") == ["alice"]
        assert channel.active("L2") == []
        assert channel.active("L1", among={"bob"}) == []

    def test_entries_expire_after_ttl(self):
        """Test an entry disappears with a DELETE once its TTL elapsed."""
        feed = ChangeFeed()
        seen = []
        feed.subscribe(TYPING, seen.append)
        clock = FakeClock()
        channel = TypingChannel(feed, ttl_seconds=2.0, clock=clock)

        channel.touch("L1", "alice")
        clock.advance(1.0)
        assert channel.expire() == 0

        clock.advance(1.5)
        assert channel.expire() == 1
        assert seen[-1].event_type == DELETE
        assert channel.active("L1") == []

    def test_touch_refreshes_deadline(self):
        """Test each keystroke extends the entry."""
        clock = FakeClock()
        channel = TypingChannel(ChangeFeed(), ttl_seconds=2.0, clock=clock)

        channel.touch("L1", "alice")
        clock.advance(1.5)
        channel.touch("L1", "alice")
        clock.advance(1.5)

        assert channel.active("L1") == ["alice"]

    def test_clear(self):
        """Test clearing removes the entry once and reports missing entries."""
        feed = ChangeFeed()
        seen = []
        feed.subscribe(TYPING, seen.append, DELETE)
        channel = TypingChannel(feed, clock=FakeClock())

        channel.touch("L1", "alice")

        assert channel.clear("L1", "alice")
        assert not channel.clear("L1", "alice")
        assert len(seen) == 1
