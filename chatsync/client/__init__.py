"""
Async sync client for the chat service.

Everything a client process needs hangs off an explicitly constructed
ClientContext; there is no module-level state.
"""

from chatsync.client.context import ClientContext
from chatsync.client.feed import ConversationFeed, MessageFeed
from chatsync.client.models import LocalMessage, OutboundItem, OutboundState

__all__ = [
    "ClientContext",
    "ConversationFeed",
    "LocalMessage",
    "MessageFeed",
    "OutboundItem",
    "OutboundState",
]
