"""
Tests for the generic poller.

Intervals are a few milliseconds so the schedule runs for real.
"""

import asyncio

import pytest

from chatsync.client.network import NetworkStatus
from chatsync.client.poller import Poller
from chatsync.errors import TransientNetworkError, ValidationError


class Counter:
    """Fetch function returning scripted values (the last one repeats)."""

    def __init__(self, values, delay=0.0):
        self.values = list(values)
        self.calls = 0
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self):
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            value = self.values[min(self.calls, len(self.values)) - 1]
            if isinstance(value, Exception):
                raise value
            return value
        finally:
            self.in_flight -= 1


class TestPollerSchedule:
    def test_only_changes_are_reported(self):
        async def scenario():
            changes = []
            fetch = Counter([[1], [1], [1, 2], [1, 2]])
            poller = Poller(fetch, interval=0.01, on_change=changes.append)
            poller.start()
            await asyncio.sleep(0.1)
            poller.stop()
            return changes, fetch.calls, poller.version

        changes, calls, version = asyncio.run(scenario())

        assert changes == [[1], [1, 2]]
        assert calls >= 4
        assert version == 2

    def test_immediate_first_call(self):
        async def scenario():
            changes = []
            poller = Poller(Counter(["a"]), interval=10.0, on_change=changes.append)
            poller.start()
            await asyncio.sleep(0.02)
            poller.stop()
            return changes

        assert asyncio.run(scenario()) == ["a"]

    def test_stop_cancels_timer(self):
        async def scenario():
            fetch = Counter(["a"])
            poller = Poller(fetch, interval=0.01, on_change=lambda v: None)
            poller.start()
            await asyncio.sleep(0.03)
            poller.stop()
            assert not poller.running
            calls = fetch.calls
            await asyncio.sleep(0.05)
            return calls, fetch.calls

        before, after = asyncio.run(scenario())

        assert before == after

    def test_result_after_stop_is_dropped(self):
        async def scenario():
            changes = []
            fetch = Counter(["late"], delay=0.05)
            poller = Poller(fetch, interval=1.0, on_change=changes.append)
            poller.start()
            await asyncio.sleep(0.01)
            poller.stop()
            await asyncio.sleep(0.08)
            return changes

        assert asyncio.run(scenario()) == []

    def test_single_flight(self):
        """Ticks that find a fetch outstanding are skipped."""
        async def scenario():
            fetch = Counter(["a"], delay=0.05)
            poller = Poller(fetch, interval=0.01, on_change=lambda v: None)
            poller.start()
            await asyncio.sleep(0.2)
            poller.close()
            return fetch.max_in_flight, fetch.calls

        max_in_flight, calls = asyncio.run(scenario())

        assert max_in_flight == 1
        assert calls <= 6

    def test_manual_refresh(self):
        async def scenario():
            changes = []
            poller = Poller(Counter(["a", "b"]), interval=10.0, on_change=changes.append, immediate=False)
            first = await poller.refresh()
            second = await poller.refresh()
            third = await poller.refresh()
            return changes, (first, second, third)

        changes, results = asyncio.run(scenario())

        assert changes == ["a", "b"]
        assert results == (True, True, False)

    def test_async_change_handler(self):
        async def scenario():
            seen = []

            async def on_change(value):
                seen.append(value)

            poller = Poller(Counter(["a"]), interval=10.0, on_change=on_change)
            await poller.refresh()
            return seen

        assert asyncio.run(scenario()) == ["a"]


class TestPollerFailures:
    def test_failures_reported_and_schedule_continues(self):
        async def scenario():
            errors, changes = [], []
            fetch = Counter([ValidationError("bad"), "ok"])
            poller = Poller(fetch, interval=0.01, on_change=changes.append, on_error=errors.append)
            poller.start()
            await asyncio.sleep(0.06)
            poller.stop()
            return errors, changes

        errors, changes = asyncio.run(scenario())

        assert len(errors) == 1
        assert changes == ["ok"]

    def test_consecutive_transient_failures_flip_offline_then_online(self):
        async def scenario():
            network = NetworkStatus()
            transitions = []
            network.add_listener(transitions.append)
            fetch = Counter([TransientNetworkError(), TransientNetworkError(), TransientNetworkError(), "ok"])
            poller = Poller(
                fetch,
                interval=1.0,
                on_change=lambda v: None,
                network=network,
                failure_threshold=3,
                immediate=False,
            )
            for _ in range(3):
                await poller.refresh()
            offline = network.online
            await poller.refresh()
            return offline, network.online, transitions, poller.consecutive_failures

        offline, online, transitions, failures = asyncio.run(scenario())

        assert offline is False
        assert online is True
        assert transitions == [False, True]
        assert failures == 0

    def test_offline_uses_offline_interval(self):
        network = NetworkStatus()
        poller = Poller(Counter(["a"]), interval=2.0, offline_interval=10.0, on_change=lambda v: None, network=network)

        assert poller.current_interval == 2.0
        network.set_online(False)
        assert poller.current_interval == 10.0


class TestPollerConfiguration:
    @pytest.mark.parametrize("offline_interval", [1.0, 2.5, 12.0])
    def test_offline_multiplier_bounds(self, offline_interval):
        with pytest.raises(ValueError):
            Poller(Counter(["a"]), interval=2.0, offline_interval=offline_interval, on_change=lambda v: None)

    def test_default_offline_interval(self):
        poller = Poller(Counter(["a"]), interval=3.0, on_change=lambda v: None)

        assert poller.offline_interval == 15.0

    def test_start_after_close_fails(self):
        async def scenario():
            poller = Poller(Counter(["a"]), interval=1.0, on_change=lambda v: None)
            poller.close()
            with pytest.raises(RuntimeError):
                poller.start()

        asyncio.run(scenario())


class TestPollerRestart:
    def test_restart_with_fetch_in_flight_stays_single_flight(self):
        """stop() then start() waits out the superseded fetch before fetching again."""
        async def scenario():
            changes = []
            fetch = Counter(["a"], delay=0.1)
            poller = Poller(fetch, interval=1.0, on_change=changes.append)
            poller.start()
            await asyncio.sleep(0.02)
            poller.stop()
            poller.start()
            await asyncio.sleep(0.3)
            poller.close()
            return fetch.max_in_flight, fetch.calls, changes

        max_in_flight, calls, changes = asyncio.run(scenario())

        assert max_in_flight == 1
        assert calls == 2
        assert changes == ["a"]

    def test_refresh_after_stop_fetches_again(self):
        async def scenario():
            changes = []
            fetch = Counter(["a", "b"], delay=0.05)
            poller = Poller(fetch, interval=10.0, on_change=changes.append)
            poller.start()
            await asyncio.sleep(0.01)
            poller.stop()
            changed = await poller.refresh()
            poller.close()
            return changed, changes, fetch.max_in_flight

        changed, changes, max_in_flight = asyncio.run(scenario())

        assert changed is True
        assert changes == ["b"]
        assert max_in_flight == 1
