"""Tests for polling scheduler and backoff."""

import asyncio

import pytest

from vaultwatch.daemon.config import BackoffConfig, FolderOptions
from vaultwatch.daemon.errors import AccessDeniedError, TransientScanFailure
from vaultwatch.daemon.models import MonitoredFolder
from vaultwatch.daemon.scheduler import (
    PollingScheduler,
    RepeatingTask,
    SchedulerState,
    compute_backoff_interval,
)


def make_folder(interval_ms=20):
    return MonitoredFolder(
        id="f1",
        display_path="/vault",
        is_active=False,
        options=FolderOptions(poll_interval_ms=interval_ms),
    )


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestBackoff:

    def test_no_penalty_up_to_threshold(self):
        for errors in range(0, 4):
            assert compute_backoff_interval(5000, errors) == 5000

    def test_growth_sequence(self):
        assert [compute_backoff_interval(5000, e) for e in (4, 5, 6)] == [7500, 11250, 16875]

    def test_capped(self):
        assert compute_backoff_interval(5000, 30) == 300000
        assert compute_backoff_interval(200000, 5) == 300000

    def test_monotonic(self):
        values = [compute_backoff_interval(5000, e) for e in range(0, 40)]
        assert values == sorted(values)

    def test_custom_config(self):
        assert compute_backoff_interval(1000, 2, error_threshold=1, multiplier=2.0, max_interval_ms=10000) == 2000


class TestRepeatingTask:

    @pytest.mark.asyncio
    async def test_runs_until_none(self):
        runs = []

        async def run():
            runs.append(1)
            return 0.001 if len(runs) < 3 else None

        task = RepeatingTask(run)
        task.start()
        await wait_for(lambda: len(runs) == 3 and not task.pending)
        await asyncio.sleep(0.02)
        assert len(runs) == 3

    @pytest.mark.asyncio
    async def test_cancel_is_synchronous(self):
        runs = []

        async def run():
            runs.append(1)
            return 0.001

        task = RepeatingTask(run)
        task.start(0.05)
        task.cancel()
        await asyncio.sleep(0.1)
        assert runs == []
        assert not task.pending

    @pytest.mark.asyncio
    async def test_crash_stops_rescheduling(self):
        runs = []

        async def run():
            runs.append(1)
            raise RuntimeError("boom")

        task = RepeatingTask(run)
        task.start()
        await wait_for(lambda: runs and not task.pending)
        await asyncio.sleep(0.02)
        assert len(runs) == 1


class TestPollingScheduler:

    def test_initial_state(self):
        scheduler = PollingScheduler(make_folder(), scan=None)
        assert scheduler.state is SchedulerState.STOPPED
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_first_scan_immediate_then_periodic(self):
        folder = make_folder(interval_ms=10)
        scans = []

        async def scan(f):
            scans.append(asyncio.get_running_loop().time())

        scheduler = PollingScheduler(folder, scan)
        scheduler.start()
        assert folder.is_active

        await wait_for(lambda: len(scans) >= 3)
        scheduler.stop()
        await scheduler.wait_idle()

        assert scheduler.state is SchedulerState.STOPPED
        assert not folder.is_active
        assert folder.last_scan_time is not None

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_timer(self):
        folder = make_folder(interval_ms=50)
        scans = []

        async def scan(f):
            scans.append(1)

        scheduler = PollingScheduler(folder, scan)
        scheduler.start()
        await wait_for(lambda: len(scans) == 1)
        await scheduler.wait_idle()

        scheduler.stop()
        await asyncio.sleep(0.15)
        assert len(scans) == 1

    @pytest.mark.asyncio
    async def test_in_flight_scan_result_discarded_after_stop(self):
        folder = make_folder()
        started = asyncio.Event()
        release = asyncio.Event()
        successes = []

        async def scan(f):
            started.set()
            await release.wait()

        scheduler = PollingScheduler(folder, scan, on_success=lambda f: successes.append(f))
        scheduler.start()
        await started.wait()

        scheduler.stop()
        release.set()
        await scheduler.wait_idle()

        assert successes == []
        assert folder.last_scan_time is None
        assert scheduler.state is SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_failures_back_off_and_success_resets(self):
        folder = make_folder(interval_ms=5)
        outcomes = [TransientScanFailure("io")] * 5 + [None]
        errors = []

        async def scan(f):
            outcome = outcomes.pop(0) if outcomes else None
            if outcome is not None:
                raise outcome

        scheduler = PollingScheduler(
            folder, scan,
            on_error=lambda f, e: errors.append((f.consecutive_errors, scheduler.current_interval_ms)),
            backoff=BackoffConfig(),
        )
        scheduler.start()
        await wait_for(lambda: not outcomes and folder.consecutive_errors == 0 and len(errors) == 5)
        scheduler.stop()
        await scheduler.wait_idle()

        assert [e[0] for e in errors] == [1, 2, 3, 4, 5]
        assert [e[1] for e in errors] == [5, 5, 5, 7.5, 11.25]
        assert scheduler.current_interval_ms == 5
        assert folder.last_error is None

    @pytest.mark.asyncio
    async def test_failure_passes_through_backoff_to_idle(self):
        folder = make_folder(interval_ms=10000)
        states = []

        async def scan(f):
            raise TransientScanFailure("io")

        scheduler = PollingScheduler(
            folder, scan, on_error=lambda f, e: states.append(scheduler.state)
        )
        scheduler.start()
        await wait_for(lambda: states)
        await asyncio.sleep(0.02)

        assert states == [SchedulerState.BACKOFF]
        assert scheduler.state is SchedulerState.IDLE
        assert scheduler.running
        assert folder.consecutive_errors == 1

        scheduler.stop()
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_access_denied_deactivates(self):
        folder = make_folder(interval_ms=5)
        calls = []
        errors = []

        async def scan(f):
            calls.append(1)
            raise AccessDeniedError("revoked")

        scheduler = PollingScheduler(folder, scan, on_error=lambda f, e: errors.append(e))
        scheduler.start()
        await wait_for(lambda: errors)
        await asyncio.sleep(0.05)

        assert len(calls) == 1
        assert isinstance(errors[0], AccessDeniedError)
        assert scheduler.state is SchedulerState.STOPPED
        assert not folder.is_active
        assert folder.consecutive_errors == 1

    @pytest.mark.asyncio
    async def test_scans_never_overlap(self):
        folder = make_folder(interval_ms=1)
        active = []
        overlaps = []
        count = []

        async def scan(f):
            if active:
                overlaps.append(1)
            active.append(1)
            await asyncio.sleep(0.01)
            active.pop()
            count.append(1)

        scheduler = PollingScheduler(folder, scan)
        scheduler.start()
        await wait_for(lambda: len(count) >= 5)
        scheduler.stop()
        await scheduler.wait_idle()

        assert overlaps == []
