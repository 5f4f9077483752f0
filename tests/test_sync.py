"""
Tests for the live chat views.

Tests cover:
- Thread view loading, auto-read and realtime updates
- Optimistic sends that never duplicate a message
- Edit gating and two-step delete
- Typing indicator timeout
- Subscription release on unmount and on conversation switch
- Conversation list updates across tabs
"""

from datetime import timedelta

import anyio
import pytest

from app import chat
from app.realtime import ChangeFeed, TypingChannel
from app.sync import ChatSession, ConversationListView, ConversationView, SessionChatBackend
from app.utils import utc_now


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenSendBackend(SessionChatBackend):
    async def send_message(self, listing_id, receiver_id, body, client_id=None):
        return {"error": "Failed to send message", "code": "backend"}


class GatedInboxBackend(SessionChatBackend):
    """Takes the inbox snapshot immediately but returns it only once a gate opens."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = None
        self.waiting = False

    async def get_inbox_rows(self):
        result = chat.get_inbox_rows(self.db, self.viewer_id)
        gate, self.gate = self.gate, None
        if gate is not None:
            self.waiting = True
            await gate.wait()
        return result


class GatedReadBackend(SessionChatBackend):
    """Flips read state immediately but answers only once a gate opens."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = None
        self.waiting = False

    async def mark_messages_as_read(self, listing_id, counterpart_id):
        result = await super().mark_messages_as_read(listing_id, counterpart_id)
        gate, self.gate = self.gate, None
        if gate is not None:
            self.waiting = True
            await gate.wait()
        return result


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def backend(db, users, feed):
    """Backend factory; every viewer shares the test session and feed."""
    def _backend(viewer_id, cls=SessionChatBackend):
        return cls(db, viewer_id, feed=feed)
    return _backend


def bodies(view):
    return [row["body"] for row in view.messages]


class TestConversationView:
    """Test one open thread."""

    @pytest.mark.anyio
    async def test_mount_loads_and_marks_read(self, backend, feed):
        """Test opening a thread loads it and marks incoming messages read."""
        await backend("alice").send_message("L1", "bob", "hello")
        view = ConversationView(backend("bob"), "bob", "L1", "alice", feed=feed)

        await view.mount()
        await feed.drain()

        assert bodies(view) == ["hello"]
        assert view.messages[0]["read"] is True
        assert view.unread_count == 0
        assert (await backend("bob").get_unread_message_count()) == {"count": 0}

    @pytest.mark.anyio
    async def test_optimistic_send_is_not_duplicated(self, backend, feed):
        """Test the response and the realtime echo collapse into one entry."""
        view = ConversationView(backend("alice"), "alice", "L1", "bob", feed=feed)
        await view.mount()

        view.draft = "is it available?"
        assert await view.send()
        await feed.drain()

        assert bodies(view) == ["is it available?"]
        assert not view.messages[0].get("pending")
        assert view.draft == ""
        assert view.error is None

    @pytest.mark.anyio
    async def test_second_tab_receives_insert_once(self, backend, feed):
        """Test another tab of the sender shows the message exactly once."""
        first = ConversationView(backend("alice"), "alice", "L1", "bob", feed=feed)
        second = ConversationView(backend("alice"), "alice", "L1", "bob", feed=feed)
        await first.mount()
        await second.mount()

        await first.send("hi")
        await feed.drain()

        assert bodies(first) == ["hi"]
        assert bodies(second) == ["hi"]

    @pytest.mark.anyio
    async def test_failed_send_keeps_draft(self, backend, feed):
        """Test a failed send removes the placeholder and keeps the text."""
        view = ConversationView(backend("alice", BrokenSendBackend), "alice", "L1", "bob", feed=feed)
        await view.mount()
        view.draft = "please keep me"

        assert not await view.send()

        assert view.messages == []
        assert view.draft == "please keep me"
        assert view.error == "Failed to send message"

    @pytest.mark.anyio
    async def test_blank_send_rejected_locally(self, backend, feed):
        view = ConversationView(backend("alice"), "alice", "L1", "bob", feed=feed)
        await view.mount()

        assert not await view.send("   ")

        assert view.messages == []
        assert view.error == "Message cannot be empty"

    @pytest.mark.anyio
    async def test_receiver_view_updates_live(self, backend, feed):
        """Test an open receiver view shows new messages and reads them."""
        sender_view = ConversationView(backend("alice"), "alice", "L1", "bob", feed=feed)
        receiver_view = ConversationView(backend("bob"), "bob", "L1", "alice", feed=feed)
        await sender_view.mount()
        await receiver_view.mount()

        await sender_view.send("hello")
        await feed.drain()

        assert bodies(receiver_view) == ["hello"]
        assert receiver_view.messages[0]["read"] is True
        # The read flip reaches the sender through the UPDATE event
        assert sender_view.messages[0]["read"] is True

    @pytest.mark.anyio
    async def test_other_threads_are_not_shown(self, backend, feed):
        """Test messages of another pair on the same listing are filtered out."""
        view = ConversationView(backend("alice"), "alice", "L1", "bob", feed=feed)
        await view.mount()

        await backend("carol").send_message("L1", "bob", "me too")
        await backend("bob").send_message("L2", "alice", "other listing")
        await feed.drain()

        assert view.messages == []

    @pytest.mark.anyio
    async def test_edit(self, backend, feed):
        view = ConversationView(backend("alice"), "alice", "L1", "bob", feed=feed)
        await view.mount()
        await view.send("helo")
        await feed.drain()
        message_id = view.messages[0]["id"]

        assert await view.edit(message_id, "hello")

        assert bodies(view) == ["hello"]
        assert view.messages[0]["edited"] is True
        assert view.pending_edits == set()

    @pytest.mark.anyio
    async def test_edit_gating(self, backend, feed):
        """Test edit is only offered on own messages inside the window."""
        later = utc_now() + timedelta(minutes=3)
        await backend("bob").send_message("L1", "alice", "from bob")
        view = ConversationView(backend("alice"), "alice", "L1", "bob", feed=feed, now=lambda: later)
        await view.mount()
        await view.send("from alice")
        await feed.drain()

        own = next(row for row in view.messages if row["sender_id"] == "alice")
        theirs = next(row for row in view.messages if row["sender_id"] == "bob")

        assert not view.can_edit(theirs)
        # The view clock is three minutes ahead of the store
        assert not view.can_edit(own)
        assert not await view.edit(own["id"], "changed")
        assert view.error == "This message can no longer be edited"

    @pytest.mark.anyio
    async def test_two_step_delete(self, backend, feed):
        """Test delete needs a request and a confirmation and reaches the other side."""
        sender_view = ConversationView(backend("alice"), "alice", "L1", "bob", feed=feed)
        receiver_view = ConversationView(backend("bob"), "bob", "L1", "alice", feed=feed)
        await sender_view.mount()
        await receiver_view.mount()
        await sender_view.send("oops")
        await feed.drain()
        message_id = sender_view.messages[0]["id"]

        assert not receiver_view.request_delete(message_id)

        assert sender_view.request_delete(message_id)
        sender_view.cancel_delete()
        assert not await sender_view.confirm_delete()
        assert bodies(sender_view) == ["oops"]

        sender_view.request_delete(message_id)
        assert await sender_view.confirm_delete()
        await feed.drain()

        assert sender_view.messages == []
        assert receiver_view.messages == []
        assert sender_view.pending_delete_id is None

    @pytest.mark.anyio
    async def test_typing_indicator_times_out(self, backend, feed):
        """Test the counterpart's typing flag clears without further events."""
        clock = FakeClock()
        channel = TypingChannel(feed, ttl_seconds=2.0, clock=FakeClock())
        view = ConversationView(backend("bob"), "bob", "L1", "alice", feed=feed, typing_timeout=3.0, clock=clock)
        await view.mount()

        channel.touch("L1", "carol", receiver_id="bob")
        assert not view.counterpart_typing

        channel.touch("L1", "alice", receiver_id="bob")
        assert view.counterpart_typing

        clock.advance(3.5)
        assert not view.counterpart_typing

    @pytest.mark.anyio
    async def test_typing_cleared_by_delete(self, backend, feed):
        channel = TypingChannel(feed, clock=FakeClock())
        view = ConversationView(backend("bob"), "bob", "L1", "alice", feed=feed, clock=FakeClock())
        await view.mount()

        channel.touch("L1", "alice", receiver_id="bob")
        channel.clear("L1", "alice")

        assert not view.counterpart_typing

    @pytest.mark.anyio
    async def test_mark_read_patches_only_flipped_rows(self, db, backend, feed):
        """Test a message arriving while a read call is in flight stays unread."""
        reader = backend("bob", GatedReadBackend)
        view = ConversationView(reader, "bob", "L1", "alice", feed=feed)
        await view.mount()

        gate = anyio.Event()
        reader.gate = gate
        async with anyio.create_task_group() as tg:
            tg.start_soon(view.mark_read)
            while not reader.waiting:
                await anyio.sleep(0)

            # Stored after the flip and delivered outside this view's feed
            late = chat.send_message(db, "alice", "L1", "bob", "late", feed=ChangeFeed())
            view._upsert(late["message"])
            gate.set()

        assert bodies(view) == ["late"]
        assert view.messages[0]["read"] is False
        assert view.unread_count == 1

    @pytest.mark.anyio
    async def test_unmount_releases_subscriptions(self, backend, feed):
        """Test every subscription is released and later events are ignored."""
        view = ConversationView(backend("bob"), "bob", "L1", "alice", feed=feed)
        await view.mount()
        assert feed.subscription_count == len(view.subscriptions) == 5

        view.unmount()
        await backend("alice").send_message("L1", "bob", "too late")
        await feed.drain()

        assert feed.subscription_count == 0
        assert view.messages == []

    @pytest.mark.anyio
    async def test_remount_does_not_duplicate_subscriptions(self, backend, feed):
        view = ConversationView(backend("bob"), "bob", "L1", "alice", feed=feed)
        await view.mount()
        await view.mount()
        view.unmount()
        await view.mount()

        assert feed.subscription_count == 5


class TestConversationListView:
    """Test the live conversation list."""

    @pytest.mark.anyio
    async def test_two_tabs_update_without_refresh(self, backend, feed):
        """Test both tabs' unread badges follow a new message in a known conversation."""
        await backend("alice").send_message("L1", "bob", "first")
        tab_one = ConversationListView(backend("bob"), "bob", feed=feed)
        tab_two = ConversationListView(backend("bob"), "bob", feed=feed)
        await tab_one.mount()
        await tab_two.mount()
        assert tab_one.unread_total == tab_two.unread_total == 1

        await backend("alice").send_message("L1", "bob", "second")
        await feed.drain()

        for tab in (tab_one, tab_two):
            assert tab.unread_total == 2
            assert tab.conversations[0].last_message == "second"
            # Only the initial load hit the store
            assert tab.reloads == 1

    @pytest.mark.anyio
    async def test_new_conversation_triggers_reload(self, backend, feed):
        """Test a message opening a new conversation reloads summaries."""
        view = ConversationListView(backend("bob"), "bob", feed=feed)
        await view.mount()

        await backend("alice").send_message("L1", "bob", "hello")
        await feed.drain()

        assert view.reloads == 2
        conversation = view.conversations[0]
        assert conversation.other_user == {"id": "alice", "display_name": "Alice"}
        assert conversation.listing["title"] == "Desk"
        assert conversation.unread_count == 1

    @pytest.mark.anyio
    async def test_read_elsewhere_clears_badge(self, backend, feed):
        """Test reading in a thread view clears the list's unread count."""
        await backend("alice").send_message("L1", "bob", "hello")
        conversation_list = ConversationListView(backend("bob"), "bob", feed=feed)
        await conversation_list.mount()

        await backend("bob").mark_messages_as_read("L1", "alice")
        await feed.drain()

        assert conversation_list.unread_total == 0

    @pytest.mark.anyio
    async def test_superseded_reload_is_discarded(self, db, users, feed):
        """Test an older reload finishing last cannot overwrite a newer one."""
        backend = GatedInboxBackend(db, "bob", feed=ChangeFeed())
        view = ConversationListView(backend, "bob", feed=ChangeFeed())
        await view.mount()

        gate = anyio.Event()
        backend.gate = gate
        async with anyio.create_task_group() as tg:
            tg.start_soon(view.reload)
            while not backend.waiting:
                await anyio.sleep(0)

            chat.send_message(db, "alice", "L1", "bob", "hello", feed=feed)
            await view.reload()
            gate.set()

        assert len(view.conversations) == 1
        assert view.reloads == 2

    @pytest.mark.anyio
    async def test_events_during_reload_are_kept(self, db, backend, feed):
        """Test changes seen while a reload is in flight survive its older snapshot."""
        await backend("alice").send_message("L1", "bob", "first")
        inbox = backend("bob", GatedInboxBackend)
        view = ConversationListView(inbox, "bob", feed=feed)
        await view.mount()
        assert view.unread_total == 1

        gate = anyio.Event()
        inbox.gate = gate
        async with anyio.create_task_group() as tg:
            tg.start_soon(view.reload)
            while not inbox.waiting:
                await anyio.sleep(0)

            chat.send_message(db, "alice", "L1", "bob", "second", feed=feed)
            await feed.drain()
            gate.set()

        assert view.unread_total == 2
        assert view.conversations[0].last_message == "second"
        assert view.reloads == 2


class TestChatSession:
    """Test switching between conversations."""

    @pytest.mark.anyio
    async def test_switching_releases_previous_view(self, backend, feed):
        async with ChatSession(backend("bob"), "bob", feed=feed) as session:
            first = await session.open("L1", "alice")
            second = await session.open("L2", "carol")

            assert not first.mounted
            assert first.subscriptions == []
            assert second.mounted
            # One list subscription plus one thread view
            assert feed.subscription_count == 6

        assert feed.subscription_count == 0
        assert session.active is None
