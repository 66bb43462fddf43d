"""
Message synchronizer: reconcile server pages with what the client holds.

merge() is the only way messages enter a timeline, whether they came from
a poll, the push channel or a send confirmation. It is keyed by identity
and idempotent, so applying the same page twice, or pages out of order,
converges on the same timeline.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from chatsync.client.models import LocalMessage

logger = logging.getLogger(__name__)


def _sort_key(message: LocalMessage):
    # Confirmed ids are ints, placeholders strings; keep the tuple comparable
    numeric = message.id if isinstance(message.id, int) else -1
    return (message.created_at, numeric, str(message.id))


def sort_messages(messages: Iterable[LocalMessage]) -> List[LocalMessage]:
    """Newest first by (created_at, id)."""
    return sorted(messages, key=_sort_key, reverse=True)


def _prefer(current: LocalMessage, incoming: LocalMessage) -> LocalMessage:
    """
    Incoming copy wins, but its status may not be behind the current one.
    """
    if current.rank > incoming.rank:
        return incoming.model_copy(
            update={
                "status": current.status,
                "seen_at": current.seen_at,
                "updated_at": current.updated_at,
            }
        )
    return incoming


def merge(existing: Iterable[LocalMessage], incoming: Iterable[LocalMessage]) -> List[LocalMessage]:
    """
    Merge incoming messages into an existing timeline.

    - one entry per identity; on collision the incoming copy wins except
      that status never moves backward
    - a confirmed message whose client_ref matches a placeholder id
      replaces that placeholder
    - result is ordered newest first
    """
    by_id: Dict[Union[int, str], LocalMessage] = {}
    for message in existing:
        current = by_id.get(message.id)
        by_id[message.id] = message if current is None else _prefer(current, message)

    for message in incoming:
        current = by_id.get(message.id)
        by_id[message.id] = message if current is None else _prefer(current, message)

    confirmed_refs = {
        m.client_ref for m in by_id.values() if not m.is_placeholder and m.client_ref
    }
    merged = [
        m for m in by_id.values() if not (m.is_placeholder and m.id in confirmed_refs)
    ]
    return sort_messages(merged)


def latest_id(messages: Iterable[LocalMessage]) -> Optional[int]:
    """Identity of the newest confirmed message, or None."""
    ids = [m.id for m in messages if not m.is_placeholder]
    return max(ids) if ids else None


def new_since(messages: Iterable[LocalMessage], since_id: Optional[int]) -> List[LocalMessage]:
    """Confirmed messages newer than since_id (all of them when since_id is None), newest first."""
    confirmed = [m for m in messages if not m.is_placeholder]
    if since_id is not None:
        confirmed = [m for m in confirmed if m.id > since_id]
    return sort_messages(confirmed)


class NewMessageNotifier:
    """
    Fire a callback once per newly observed confirmed message.

    The first observation only primes the notifier so that loading a
    conversation's history does not announce every old message.
    """

    def __init__(self, callback: Callable[[LocalMessage], None]):
        self.callback = callback
        self._seen: Set[int] = set()
        self._primed = False

    @property
    def primed(self) -> bool:
        return self._primed

    def prime(self, messages: Iterable[LocalMessage]) -> None:
        self._seen.update(m.id for m in messages if not m.is_placeholder)
        self._primed = True

    def notify(self, messages: Iterable[LocalMessage]) -> List[LocalMessage]:
        """
        Report messages not observed before.

        Returns:
            The newly observed messages, oldest first (callback order)
        """
        messages = list(messages)
        if not self._primed:
            self.prime(messages)
            return []

        fresh = [m for m in messages if not m.is_placeholder and m.id not in self._seen]
        fresh.sort(key=_sort_key)
        for message in fresh:
            self._seen.add(message.id)
            try:
                self.callback(message)
            except Exception:
                logger.exception(f"New message callback failed for message {message.id}")
        return fresh
