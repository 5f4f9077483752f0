"""
Conversation aggregation.

A conversation is not stored anywhere: it is the set of messages between the
viewer and one counterpart on one listing. aggregate_conversations() folds a
flat list of message rows into conversations; ConversationIndex keeps the
rows bucketed per conversation so a single change event only re-folds the
bucket it touches.

Message rows are plain dicts with at least id, listing_id, sender_id,
receiver_id, body, created_at and read. Rows coming from the store may also
carry "listing", "sender" and "receiver" summaries.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.realtime import DELETE, MESSAGES, ChangeEvent

ConversationKey = Tuple[str, str]


@dataclass
class Conversation:
    listing_id: str
    other_user_id: str
    last_message: str
    last_message_time: str
    last_message_id: str
    unread_count: int = 0
    listing: Optional[Dict[str, Any]] = None
    other_user: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> ConversationKey:
        return self.listing_id, self.other_user_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def counterpart_of(row: Dict[str, Any], viewer_id: str) -> str:
    return row["receiver_id"] if row["sender_id"] == viewer_id else row["sender_id"]


def involves(row: Dict[str, Any], viewer_id: str) -> bool:
    return viewer_id in (row.get("sender_id"), row.get("receiver_id"))


def conversation_key(row: Dict[str, Any], viewer_id: str) -> ConversationKey:
    return row["listing_id"], counterpart_of(row, viewer_id)


def is_unread_for(row: Dict[str, Any], viewer_id: str) -> bool:
    return row["receiver_id"] == viewer_id and not row.get("read", False)


def _newest_first(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(rows, key=lambda r: (r["created_at"], r["id"]), reverse=True)


def _summaries(row: Dict[str, Any], viewer_id: str) -> Tuple[Optional[dict], Optional[dict]]:
    other_user = row.get("receiver") if row["sender_id"] == viewer_id else row.get("sender")
    return row.get("listing"), other_user


def _fold_bucket(
    key: ConversationKey,
    rows: Iterable[Dict[str, Any]],
    viewer_id: str,
    listing: Optional[dict] = None,
    other_user: Optional[dict] = None,
) -> Optional[Conversation]:
    ordered = _newest_first(rows)
    if not ordered:
        return None
    latest = ordered[0]
    return Conversation(
        listing_id=key[0],
        other_user_id=key[1],
        last_message=latest["body"],
        last_message_time=latest["created_at"],
        last_message_id=latest["id"],
        # Every row counts, not just the latest one
        unread_count=sum(1 for row in ordered if is_unread_for(row, viewer_id)),
        listing=listing,
        other_user=other_user,
    )


def sort_conversations(conversations: Iterable[Conversation]) -> List[Conversation]:
    return sorted(conversations, key=lambda c: (c.last_message_time, c.last_message_id), reverse=True)


def aggregate_conversations(rows: Iterable[Dict[str, Any]], viewer_id: str) -> List[Conversation]:
    """
    Group the viewer's messages into conversations, most recent first.

    Rows not involving the viewer are ignored. Denormalised listing and
    counterpart summaries are taken from the newest row that carries them.
    """
    buckets: Dict[ConversationKey, List[Dict[str, Any]]] = {}
    summaries: Dict[ConversationKey, List[Optional[dict]]] = {}

    for row in _newest_first(rows):
        if not involves(row, viewer_id):
            continue
        key = conversation_key(row, viewer_id)
        buckets.setdefault(key, []).append(row)
        listing, other_user = _summaries(row, viewer_id)
        known = summaries.setdefault(key, [None, None])
        if known[0] is None:
            known[0] = listing
        if known[1] is None:
            known[1] = other_user

    conversations = [
        _fold_bucket(key, bucket, viewer_id, *summaries[key])
        for key, bucket in buckets.items()
    ]
    return sort_conversations(conversations)


class ConversationIndex:
    """
    Conversations of one viewer, maintained incrementally from change events.

    stale is set when an event opens a conversation the index has no
    summaries for; callers should reload() from the store in that case.
    """

    def __init__(self, viewer_id: str):
        self.viewer_id = viewer_id
        self.stale = True
        self._rows: Dict[ConversationKey, Dict[str, Dict[str, Any]]] = {}
        self._keys_by_message: Dict[str, ConversationKey] = {}
        self._summaries: Dict[ConversationKey, Tuple[Optional[dict], Optional[dict]]] = {}
        self._folded: Dict[ConversationKey, Conversation] = {}

    def load(self, rows: Iterable[Dict[str, Any]]) -> None:
        """Replace the index content with a full result set from the store."""
        rows = list(rows)
        self._rows.clear()
        self._keys_by_message.clear()
        self._summaries.clear()
        self._folded.clear()

        for conversation in aggregate_conversations(rows, self.viewer_id):
            self._summaries[conversation.key] = (conversation.listing, conversation.other_user)
            self._folded[conversation.key] = conversation
        for row in rows:
            if involves(row, self.viewer_id):
                self._store(row)
        self.stale = False

    def _store(self, row: Dict[str, Any]) -> ConversationKey:
        key = conversation_key(row, self.viewer_id)
        self._rows.setdefault(key, {})[row["id"]] = row
        self._keys_by_message[row["id"]] = key
        return key

    def _refold(self, key: ConversationKey) -> None:
        listing, other_user = self._summaries.get(key, (None, None))
        folded = _fold_bucket(key, self._rows.get(key, {}).values(), self.viewer_id, listing, other_user)
        if folded is None:
            self._rows.pop(key, None)
            self._summaries.pop(key, None)
            self._folded.pop(key, None)
        else:
            self._folded[key] = folded

    def apply(self, event: ChangeEvent) -> bool:
        """
        Apply one messages change event.

        Returns:
            True if a conversation of this viewer changed
        """
        if event.table != MESSAGES:
            return False
        row = event.row
        if not row or not involves(row, self.viewer_id):
            return False

        if event.event_type == DELETE:
            key = self._keys_by_message.pop(row.get("id"), None)
            if key is None:
                return False
            self._rows.get(key, {}).pop(row["id"], None)
            self._refold(key)
            return True

        previous_key = self._keys_by_message.get(row["id"])
        key = conversation_key(row, self.viewer_id)
        if key not in self._summaries and previous_key is None:
            self.stale = True
        self._store(row)
        self._refold(key)
        return True

    def conversations(self) -> List[Conversation]:
        return sort_conversations(self._folded.values())

    def get(self, listing_id: str, other_user_id: str) -> Optional[Conversation]:
        return self._folded.get((listing_id, other_user_id))

    @property
    def total_unread(self) -> int:
        return sum(c.unread_count for c in self._folded.values())
