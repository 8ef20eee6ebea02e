"""Tests for the connectivity monitor."""

import asyncio

import pytest

from artrelay.core.connectivity import ConnectivityMonitor, ConnectivityState


class TestTransitions:
    """Tests for online/offline transitions."""

    def test_initial_state(self) -> None:
        assert ConnectivityMonitor().state is ConnectivityState.ONLINE
        assert ConnectivityMonitor(online=False).is_online is False

    def test_listeners_notified_on_change_only(self) -> None:
        """Test that listeners see each transition exactly once."""
        monitor = ConnectivityMonitor()
        seen = []
        monitor.add_listener(seen.append)

        assert monitor.mark_offline() is True
        assert monitor.mark_offline() is False
        assert monitor.mark_online() is True

        assert seen == [ConnectivityState.OFFLINE, ConnectivityState.ONLINE]

    def test_failing_listener_does_not_block_others(self) -> None:
        monitor = ConnectivityMonitor()
        seen = []

        def broken(state: ConnectivityState) -> None:
            raise RuntimeError("listener bug")

        monitor.add_listener(broken)
        monitor.add_listener(seen.append)

        monitor.mark_offline()

        assert seen == [ConnectivityState.OFFLINE]

    def test_warmup_skipped_without_loop(self) -> None:
        """Test that going online outside an event loop does not fail."""
        monitor = ConnectivityMonitor(online=False)
        monitor.add_warmup(lambda: asyncio.sleep(0))

        assert monitor.mark_online() is True
        assert monitor.pending_warmups == 0


class TestAsyncBehaviour:
    """Tests for the asynchronous parts of the monitor."""

    @pytest.mark.asyncio
    async def test_wait_offline(self) -> None:
        monitor = ConnectivityMonitor()
        waiter = asyncio.create_task(monitor.wait_offline())
        await asyncio.sleep(0)
        assert not waiter.done()

        monitor.mark_offline()

        await asyncio.wait_for(waiter, timeout=1.0)

    @pytest.mark.asyncio
    async def test_warmups_run_in_background(self) -> None:
        """Test that going online returns before the warm-up finishes."""
        monitor = ConnectivityMonitor(online=False)
        release = asyncio.Event()
        finished = []

        async def warmup() -> None:
            await release.wait()
            finished.append(True)

        monitor.add_warmup(warmup)

        monitor.mark_online()

        assert monitor.pending_warmups == 1
        assert finished == []
        release.set()
        await monitor.wait_warmups()
        assert finished == [True]
        assert monitor.pending_warmups == 0

    @pytest.mark.asyncio
    async def test_warmup_failure_is_logged(self, caplog) -> None:
        monitor = ConnectivityMonitor(online=False)

        async def warmup() -> None:
            raise RuntimeError("probe failed")

        monitor.add_warmup(warmup)
        monitor.mark_online()
        await monitor.wait_warmups()

        assert "probe failed" in caplog.text

    @pytest.mark.asyncio
    async def test_watch_feeds_state(self) -> None:
        """Test that the watch loop reports check results, failures as offline."""
        monitor = ConnectivityMonitor()
        results = iter([True, False])
        calls = []

        async def check() -> bool:
            calls.append(1)
            try:
                return next(results)
            except StopIteration:
                raise ConnectionError("no route to host")

        seen = []
        monitor.add_listener(seen.append)
        monitor.start_watch(check, interval=0.01)

        for _ in range(100):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
        await monitor.close()

        assert seen == [ConnectivityState.OFFLINE]
        assert monitor.is_online is False

    @pytest.mark.asyncio
    async def test_close_cancels_warmups(self) -> None:
        monitor = ConnectivityMonitor(online=False)
        monitor.add_warmup(lambda: asyncio.sleep(30))
        monitor.mark_online()

        await monitor.close()

        assert monitor.pending_warmups == 0
