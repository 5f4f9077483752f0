"""
Live client-side state for chat screens.

ConversationView mirrors one open thread (listing + counterpart) and keeps
it current from the change feed; ConversationListView mirrors the viewer's
conversation list; ChatSession owns both and guarantees that at most one
thread view is subscribed at a time.

Views talk to the service through a backend object exposing coroutine
methods (see SessionChatBackend). Every subscription a view takes is
released by unmount(); results of calls still in flight when a view is
unmounted are dropped.
"""

import logging
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from app import chat
from app.config import settings
from app.conversations import Conversation, ConversationIndex
from app.realtime import (
    ALL,
    DELETE,
    INSERT,
    MESSAGES,
    TYPING,
    UPDATE,
    ChangeEvent,
    ChangeFeed,
    Subscription,
    change_feed,
)
from app.utils import format_ts, utc_now

logger = logging.getLogger(__name__)


class SessionChatBackend:
    """Chat actions bound to one database session and one viewer."""

    def __init__(self, db: Session, viewer_id: Optional[str], feed: ChangeFeed = change_feed, notifier=None):
        self.db = db
        self.viewer_id = viewer_id
        self.feed = feed
        self.notifier = notifier

    async def get_inbox_rows(self) -> Dict[str, Any]:
        return chat.get_inbox_rows(self.db, self.viewer_id)

    async def get_all_conversations(self) -> Dict[str, Any]:
        return chat.get_all_conversations(self.db, self.viewer_id)

    async def get_messages(self, listing_id: str, counterpart_id: str) -> Dict[str, Any]:
        return chat.get_messages(self.db, self.viewer_id, listing_id, counterpart_id)

    async def send_message(self, listing_id: str, receiver_id: str, body: str, client_id: Optional[str] = None):
        return chat.send_message(
            self.db, self.viewer_id, listing_id, receiver_id, body,
            client_id=client_id, feed=self.feed, notifier=self.notifier,
        )

    async def edit_message(self, message_id: str, body: str) -> Dict[str, Any]:
        return chat.edit_message(self.db, self.viewer_id, message_id, body, feed=self.feed)

    async def delete_message(self, message_id: str) -> Dict[str, Any]:
        return chat.delete_message(self.db, self.viewer_id, message_id, feed=self.feed)

    async def mark_messages_as_read(self, listing_id: str, counterpart_id: str) -> Dict[str, Any]:
        return chat.mark_messages_as_read(self.db, self.viewer_id, listing_id, counterpart_id, feed=self.feed)

    async def get_unread_message_count(self) -> Dict[str, int]:
        return chat.get_unread_message_count(self.db, self.viewer_id)


def _sort_key(row: Dict[str, Any]):
    return row["created_at"], row["id"]


class ConversationView:
    """
    One open thread.

    messages is ordered by created_at ascending. Optimistic entries carry
    pending=True and the client_id sent with the message; the first of the
    server response and the realtime echo replaces the entry, the other one
    only patches it.
    """

    def __init__(
        self,
        backend,
        viewer_id: str,
        listing_id: str,
        counterpart_id: str,
        feed: ChangeFeed = change_feed,
        typing_timeout: Optional[float] = None,
        edit_time_limit: Optional[timedelta] = None,
        clock: Callable[[], float] = time.monotonic,
        now=utc_now,
    ):
        self.backend = backend
        self.viewer_id = viewer_id
        self.listing_id = listing_id
        self.counterpart_id = counterpart_id
        self.feed = feed
        self.typing_timeout = typing_timeout if typing_timeout is not None else settings.TYPING_DISPLAY_SECONDS
        self.edit_time_limit = edit_time_limit or timedelta(seconds=settings.EDIT_TIME_LIMIT_SECONDS)
        self.clock = clock
        self.now = now

        self.messages: List[Dict[str, Any]] = []
        self.draft = ""
        self.error: Optional[str] = None
        self.loading = False
        self.sending = False
        self.deleting = False
        self.pending_edits: Set[str] = set()
        self.pending_delete_id: Optional[str] = None

        self.mounted = False
        self._subscriptions: List[Subscription] = []
        self._typing_deadline: Optional[float] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def mount(self) -> None:
        if self.mounted:
            return
        self._release()
        self.mounted = True
        self._subscribe()
        await self.refresh()

    def unmount(self) -> None:
        self.mounted = False
        self._release()
        self._typing_deadline = None

    def _subscribe(self) -> None:
        scope = {"listing_id": self.listing_id}
        typing_scope = {"listing_id": self.listing_id, "user_id": self.counterpart_id}
        self._subscriptions = [
            self.feed.subscribe(MESSAGES, self._on_insert, INSERT, filters=scope, predicate=self._belongs),
            self.feed.subscribe(MESSAGES, self._on_update, UPDATE, filters=scope, predicate=self._belongs),
            self.feed.subscribe(MESSAGES, self._on_delete, DELETE, filters=scope, predicate=self._belongs),
            self.feed.subscribe(TYPING, self._on_typing_insert, INSERT, filters=typing_scope, predicate=self._addressed_to_viewer),
            self.feed.subscribe(TYPING, self._on_typing_delete, DELETE, filters=typing_scope, predicate=self._addressed_to_viewer),
        ]
        logger.debug(f"Conversation view subscribed: listing={self.listing_id}, counterpart={self.counterpart_id}")

    def _release(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions)

    def _belongs(self, row: Dict[str, Any]) -> bool:
        return {row.get("sender_id"), row.get("receiver_id")} == {self.viewer_id, self.counterpart_id}

    def _addressed_to_viewer(self, row: Dict[str, Any]) -> bool:
        return row.get("receiver_id") in (None, self.viewer_id)

    # -------------------------------------------------------------------------
    # Loading and read state
    # -------------------------------------------------------------------------

    async def refresh(self) -> None:
        self.loading = True
        result = await self.backend.get_messages(self.listing_id, self.counterpart_id)
        if not self.mounted:
            return
        self.loading = False
        if "error" in result:
            self.error = result["error"]
            return

        pending = [row for row in self.messages if row.get("pending")]
        self.messages = []
        for row in result["messages"]:
            self._upsert(row)
        for row in pending:
            if self._index_of_client(row["client_id"]) is None and self._index_of(row["id"]) is None:
                self._insert_sorted(row)

        if self.unread_count:
            await self.mark_read()

    @property
    def unread_count(self) -> int:
        return sum(1 for row in self.messages if row["receiver_id"] == self.viewer_id and not row.get("read"))

    async def mark_read(self) -> bool:
        result = await self.backend.mark_messages_as_read(self.listing_id, self.counterpart_id)
        if not self.mounted:
            return "error" not in result
        if "error" in result:
            self.error = result["error"]
            return False
        # Flipped rows also arrive as UPDATE events; patch them now so the view
        # does not depend on delivery timing. Rows that arrived during the call
        # were not flipped and keep their state.
        flipped = set(result.get("message_ids", ()))
        for row in self.messages:
            if row["id"] in flipped:
                row["read"] = True
        return True

    # -------------------------------------------------------------------------
    # Change feed callbacks
    # -------------------------------------------------------------------------

    async def _on_insert(self, event: ChangeEvent) -> None:
        if not self.mounted:
            return
        row = event.new
        self._upsert(row)
        if row["receiver_id"] == self.viewer_id and not row.get("read"):
            await self.mark_read()

    def _on_update(self, event: ChangeEvent) -> None:
        if self.mounted:
            self._patch(event.new)

    def _on_delete(self, event: ChangeEvent) -> None:
        if self.mounted:
            self._remove(event.old["id"])

    def _on_typing_insert(self, event: ChangeEvent) -> None:
        if self.mounted:
            self._typing_deadline = self.clock() + self.typing_timeout

    def _on_typing_delete(self, event: ChangeEvent) -> None:
        self._typing_deadline = None

    @property
    def counterpart_typing(self) -> bool:
        """True until typing_timeout after the counterpart's latest keystroke."""
        if self._typing_deadline is None:
            return False
        if self.clock() >= self._typing_deadline:
            self._typing_deadline = None
            return False
        return True

    # -------------------------------------------------------------------------
    # Local message list
    # -------------------------------------------------------------------------

    def _index_of(self, message_id: Optional[str]) -> Optional[int]:
        for i, row in enumerate(self.messages):
            if row["id"] == message_id:
                return i
        return None

    def _index_of_client(self, client_id: Optional[str]) -> Optional[int]:
        if not client_id:
            return None
        for i, row in enumerate(self.messages):
            if row.get("pending") and row.get("client_id") == client_id:
                return i
        return None

    def _insert_sorted(self, row: Dict[str, Any]) -> None:
        self.messages.append(row)
        self.messages.sort(key=_sort_key)

    def _upsert(self, row: Dict[str, Any]) -> None:
        existing = self._index_of(row["id"])
        if existing is not None:
            self.messages[existing].update(row)
            return
        placeholder = self._index_of_client(row.get("client_id"))
        if placeholder is not None:
            del self.messages[placeholder]
        self._insert_sorted(dict(row))

    def _patch(self, row: Dict[str, Any]) -> None:
        existing = self._index_of(row["id"])
        if existing is not None:
            self.messages[existing].update(row)

    def _remove(self, message_id: str) -> None:
        existing = self._index_of(message_id)
        if existing is not None:
            del self.messages[existing]

    # -------------------------------------------------------------------------
    # Composer
    # -------------------------------------------------------------------------

    async def send(self, body: Optional[str] = None) -> bool:
        """
        Send body (or the current draft). The draft is kept when the send
        fails and cleared when it succeeds.
        """
        text = self.draft if body is None else body
        if self.sending:
            return False
        body_error = chat.validate_body(text)
        if body_error:
            self.error = body_error
            return False

        client_id = str(uuid.uuid4())
        self._insert_sorted({
            "id": f"pending-{client_id}",
            "client_id": client_id,
            "pending": True,
            "listing_id": self.listing_id,
            "sender_id": self.viewer_id,
            "receiver_id": self.counterpart_id,
            "body": text,
            "created_at": format_ts(self.now()),
            "read": False,
            "edited": False,
        })
        self.draft = text
        self.sending = True
        try:
            result = await self.backend.send_message(self.listing_id, self.counterpart_id, text, client_id=client_id)
        finally:
            self.sending = False

        if not self.mounted:
            return "error" not in result

        if "error" in result:
            placeholder = self._index_of_client(client_id)
            if placeholder is not None:
                del self.messages[placeholder]
            self.error = result["error"]
            return False

        self._upsert(result["message"])
        self.draft = ""
        self.error = None
        return True

    def can_edit(self, message: Dict[str, Any]) -> bool:
        """Whether to offer editing. Advisory: the store decides."""
        if message.get("pending") or message["sender_id"] != self.viewer_id:
            return False
        return chat.within_edit_window(message["created_at"], self.now(), self.edit_time_limit)

    def can_delete(self, message: Dict[str, Any]) -> bool:
        return not message.get("pending") and message["sender_id"] == self.viewer_id

    async def edit(self, message_id: str, body: str) -> bool:
        if message_id in self.pending_edits:
            return False
        body_error = chat.validate_body(body)
        if body_error:
            self.error = body_error
            return False
        index = self._index_of(message_id)
        if index is None:
            self.error = "Message not found"
            return False
        if not self.can_edit(self.messages[index]):
            self.error = "This message can no longer be edited"
            return False

        self.pending_edits.add(message_id)
        try:
            result = await self.backend.edit_message(message_id, body)
        finally:
            self.pending_edits.discard(message_id)

        if not self.mounted:
            return "error" not in result
        if "error" in result:
            self.error = result["error"]
            return False
        self._patch(result["message"])
        return True

    def request_delete(self, message_id: str) -> bool:
        """First step of deletion: remember what the user asked to delete."""
        index = self._index_of(message_id)
        if index is None or not self.can_delete(self.messages[index]):
            return False
        self.pending_delete_id = message_id
        return True

    def cancel_delete(self) -> None:
        self.pending_delete_id = None

    async def confirm_delete(self) -> bool:
        """Second step of deletion: actually delete the requested message."""
        message_id = self.pending_delete_id
        if message_id is None or self.deleting:
            return False

        self.deleting = True
        try:
            result = await self.backend.delete_message(message_id)
        finally:
            self.deleting = False
            self.pending_delete_id = None

        if not self.mounted:
            return "error" not in result
        if "error" in result:
            self.error = result["error"]
            return False
        self._remove(message_id)
        return True


class ConversationListView:
    """
    The viewer's conversation list, kept current by one unscoped
    subscription on the messages table.
    """

    def __init__(self, backend, viewer_id: str, feed: ChangeFeed = change_feed):
        self.backend = backend
        self.viewer_id = viewer_id
        self.feed = feed
        self.index = ConversationIndex(viewer_id)
        self.error: Optional[str] = None
        self.loading = False
        self.mounted = False
        self.reloads = 0
        self._subscription: Optional[Subscription] = None
        self._generation = 0
        # Events seen while a reload is in flight, replayed over its snapshot
        self._buffered: Optional[List[ChangeEvent]] = None

    async def mount(self) -> None:
        if self.mounted:
            return
        self.mounted = True
        self._subscription = self.feed.subscribe(MESSAGES, self._on_change, ALL)
        await self.reload()

    def unmount(self) -> None:
        self.mounted = False
        self._buffered = None
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def reload(self) -> None:
        self._generation += 1
        generation = self._generation
        self.loading = True
        if self._buffered is None:
            self._buffered = []
        result = await self.backend.get_inbox_rows()
        # A newer reload superseded this one
        if not self.mounted or generation != self._generation:
            return
        self.loading = False
        self.reloads += 1
        buffered, self._buffered = self._buffered or [], None
        if "error" in result:
            self.error = result["error"]
            return
        self.error = None
        self.index.load(result["rows"])

        # The snapshot may predate these; applying by id is idempotent
        for event in buffered:
            self.index.apply(event)
        if self.index.stale:
            await self.reload()

    async def _on_change(self, event: ChangeEvent) -> None:
        if not self.mounted:
            return
        if self._buffered is not None:
            self._buffered.append(event)
        if self.index.apply(event) and self.index.stale and self._buffered is None:
            await self.reload()

    @property
    def conversations(self) -> List[Conversation]:
        return self.index.conversations()

    @property
    def unread_total(self) -> int:
        return self.index.total_unread


class ChatSession:
    """
    A viewer's chat screen: the conversation list plus at most one open
    thread. Use as an async context manager to guarantee release.
    """

    def __init__(self, backend, viewer_id: str, feed: ChangeFeed = change_feed, **view_options):
        self.backend = backend
        self.viewer_id = viewer_id
        self.feed = feed
        self.view_options = view_options
        self.conversation_list = ConversationListView(backend, viewer_id, feed=feed)
        self.active: Optional[ConversationView] = None

    async def start(self) -> None:
        await self.conversation_list.mount()

    async def open(self, listing_id: str, counterpart_id: str) -> ConversationView:
        """Switch to another thread; the previous one is released first."""
        self.close_conversation()
        view = ConversationView(
            self.backend, self.viewer_id, listing_id, counterpart_id,
            feed=self.feed, **self.view_options,
        )
        self.active = view
        await view.mount()
        return view

    def close_conversation(self) -> None:
        if self.active is not None:
            self.active.unmount()
            self.active = None

    def close(self) -> None:
        self.close_conversation()
        self.conversation_list.unmount()

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()
