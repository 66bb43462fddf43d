import logging
from typing import Callable, List

logger = logging.getLogger(__name__)


class NetworkStatus:
    """
    Shared reachability flag for one client.

    Pollers flip it after repeated transient failures, the send pipeline
    and feeds listen for transitions. Listeners are only called when the
    value actually changes.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[Callable[[bool], None]] = []

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info(f"Network status changed: online={online}")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("Network status listener failed")

    def add_listener(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove
