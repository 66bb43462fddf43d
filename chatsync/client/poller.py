"""
Generic fetch-and-diff poller.

A Poller calls an async fetch function on a schedule and hands the result
to on_change only when it differs (by ==) from the previous result.

    poller = Poller(fetch=api_call, interval=2.0, on_change=apply)
    poller.start()
    ...
    await poller.refresh()   # out-of-schedule cycle
    poller.stop()            # timer cancelled immediately

At most one fetch is outstanding at a time: a tick that finds a fetch still
running is skipped. Every start/stop bumps a generation counter and results
belonging to an older generation are dropped, so a slow response that lands
after stop() never reaches on_change.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from chatsync.client.network import NetworkStatus
from chatsync.errors import TransientNetworkError

logger = logging.getLogger(__name__)

MIN_OFFLINE_MULTIPLIER = 2.0
MAX_OFFLINE_MULTIPLIER = 5.0


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class Poller:
    def __init__(
        self,
        fetch: Callable[[], Awaitable[Any]],
        interval: float,
        on_change: Callable[[Any], Any],
        offline_interval: Optional[float] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
        network: Optional[NetworkStatus] = None,
        failure_threshold: int = 3,
        immediate: bool = True,
        name: str = "poller",
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if offline_interval is None:
            offline_interval = interval * MAX_OFFLINE_MULTIPLIER
        multiplier = offline_interval / interval
        if not MIN_OFFLINE_MULTIPLIER <= multiplier <= MAX_OFFLINE_MULTIPLIER:
            raise ValueError(
                f"offline_interval must be {MIN_OFFLINE_MULTIPLIER:g}-{MAX_OFFLINE_MULTIPLIER:g}x the interval"
            )
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")

        self.fetch = fetch
        self.interval = interval
        self.offline_interval = offline_interval
        self.on_change = on_change
        self.on_error = on_error
        self.network = network
        self.failure_threshold = failure_threshold
        self.immediate = immediate
        self.name = name

        self.version = 0
        self.consecutive_failures = 0
        self._last: Any = None
        self._has_value = False
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._inflight_generation = 0
        self._closed = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_value(self) -> Any:
        return self._last

    @property
    def current_interval(self) -> float:
        if self.network is not None and not self.network.online:
            return self.offline_interval
        return self.interval

    def start(self) -> None:
        """Start the schedule. Starting a running poller does nothing."""
        if self._closed:
            raise RuntimeError(f"{self.name} is closed")
        if self.running:
            return
        self._generation += 1
        self._task = asyncio.get_running_loop().create_task(self._run(self._generation))
        logger.debug(f"{self.name} started (interval={self.interval}s)")

    def stop(self) -> None:
        """Cancel the timer. A fetch already in flight finishes but its result is dropped."""
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.debug(f"{self.name} stopped")

    def close(self) -> None:
        self.stop()
        self._closed = True
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None

    def reset(self) -> None:
        """Forget the last value so the next result is reported even if unchanged."""
        self._last = None
        self._has_value = False

    async def refresh(self) -> bool:
        """
        Run one cycle now, outside the schedule.

        Joins the outstanding fetch instead of starting a second one. A fetch
        left over from before a stop() is waited out first, since its result
        is dropped.

        Returns:
            True if the cycle produced a change
        """
        while not self._closed and self._busy():
            if self._inflight_generation == self._generation:
                return bool(await asyncio.shield(self._inflight))
            # A superseded fetch would drop its result; wait it out and fetch again
            await asyncio.wait({self._inflight})
        if self._closed:
            return False
        return bool(await self._launch(self._generation))

    def _busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def _launch(self, generation: int) -> asyncio.Task:
        self._inflight = asyncio.get_running_loop().create_task(self._cycle(generation))
        self._inflight_generation = generation
        return self._inflight

    async def _run(self, generation: int) -> None:
        if self.immediate:
            while self._busy() and self._inflight_generation != generation:
                await asyncio.wait({self._inflight})
            if generation != self._generation:
                return
            if not self._busy():
                self._launch(generation)
        while generation == self._generation:
            await asyncio.sleep(self.current_interval)
            if generation != self._generation:
                break
            if self._busy():
                logger.debug(f"{self.name} tick skipped, fetch still in flight")
                continue
            self._launch(generation)

    async def _cycle(self, generation: int) -> bool:
        try:
            value = await self.fetch()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if generation == self._generation:
                await self._handle_failure(exc)
            return False

        if generation != self._generation:
            logger.debug(f"{self.name} dropped a result from a superseded cycle")
            return False

        self.consecutive_failures = 0
        if self.network is not None:
            self.network.set_online(True)

        if self._has_value and value == self._last:
            return False

        self._last = value
        self._has_value = True
        self.version += 1
        try:
            await _maybe_await(self.on_change(value))
        except Exception:
            logger.exception(f"{self.name} change handler failed")
        return True

    async def _handle_failure(self, exc: Exception) -> None:
        if isinstance(exc, TransientNetworkError):
            self.consecutive_failures += 1
            logger.warning(f"{self.name} fetch failed ({self.consecutive_failures} in a row): {exc}")
            if self.network is not None and self.consecutive_failures >= self.failure_threshold:
                self.network.set_online(False)
        else:
            logger.error(f"{self.name} fetch failed: {exc}")

        if self.on_error is not None:
            try:
                await _maybe_await(self.on_error(exc))
            except Exception:
                logger.exception(f"{self.name} error handler failed")
