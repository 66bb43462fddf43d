import logging
from typing import Dict, List, Union

from chatsync.client.models import LocalMessage
from chatsync.client.sync import sort_messages

logger = logging.getLogger(__name__)


class ConversationCache:
    """
    Bounded per-conversation buffer of recent messages, newest first.

    Gives an open conversation something to show before the first poll
    returns and while the device is offline. Losing it costs a refetch,
    nothing more.
    """

    def __init__(self, cap: int = 100):
        if cap < 1:
            raise ValueError("cap must be at least 1")
        self.cap = cap
        self._entries: Dict[int, List[LocalMessage]] = {}

    def get(self, conversation_id: int) -> List[LocalMessage]:
        return list(self._entries.get(conversation_id, []))

    def set(self, conversation_id: int, messages: List[LocalMessage]) -> None:
        """Replace the conversation's entry, keeping the most recent messages."""
        self._entries[conversation_id] = sort_messages(messages)[: self.cap]

    def append(self, conversation_id: int, message: LocalMessage) -> bool:
        """
        Add one message unless its identity is already cached.

        Returns:
            True if the message was added
        """
        entry = self._entries.setdefault(conversation_id, [])
        if any(m.id == message.id for m in entry):
            return False
        entry = sort_messages(entry + [message])
        if len(entry) > self.cap:
            logger.debug(f"Cache for conversation {conversation_id} full, evicting {len(entry) - self.cap}")
        self._entries[conversation_id] = entry[: self.cap]
        return True

    def discard(self, conversation_id: int, message_id: Union[int, str]) -> None:
        entry = self._entries.get(conversation_id)
        if entry:
            self._entries[conversation_id] = [m for m in entry if m.id != message_id]

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, conversation_id: int) -> bool:
        return conversation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
