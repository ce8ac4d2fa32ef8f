"""Unit tests for BatchRunner fetch, retry, timeout and cancellation."""

import asyncio
from datetime import datetime

import pytest

from fakes import FakeReadingStore, make_series
from src.config.settings import Settings
from src.services.batch_runner import BatchRunner
from src.services.errors import CancellationError
from src.services.reading_store import ReadingSample
from src.services.run_context import CancellationToken

JAN = datetime(2024, 1, 1)
FEB = datetime(2024, 2, 1)


def runner_for(store, **kwargs):
    params = dict(concurrency=2, page_size=3, timeout=1.0, max_retries=2, backoff=0.001)
    params.update(kwargs)
    return BatchRunner(store, **params)


class TestFetch:
    @pytest.mark.asyncio
    async def test_paginates_to_exhaustion(self):
        store = FakeReadingStore({1: make_series(1, JAN, range(7))})

        result = await runner_for(store).run([1], JAN, FEB)

        assert [s.values["kWh"] for s in result.series[1]] == list(range(7))
        assert [offset for _, offset in store.fetch_calls] == [0, 3, 6]

    @pytest.mark.asyncio
    async def test_duplicates_keep_latest_import_marker(self):
        store = FakeReadingStore(
            {
                1: [
                    ReadingSample(1, JAN, {"kWh": 1.0}, "2024-01-02"),
                    ReadingSample(1, JAN, {"kWh": 2.0}, "2024-01-05"),
                    ReadingSample(1, JAN, {"kWh": 3.0}, None),
                ]
            }
        )

        result = await runner_for(store).run([1], JAN, FEB)

        assert len(result.series[1]) == 1
        assert result.series[1][0].values["kWh"] == 2.0

    @pytest.mark.asyncio
    async def test_corrections_applied_once_per_meter(self):
        store = FakeReadingStore({1: make_series(1, JAN, [10, 10000, 12])})

        result = await runner_for(store).run([1], JAN, FEB)

        assert result.series[1][1].values["kWh"] == 11
        assert len(result.corrections[1]) == 1

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        store = FakeReadingStore({i: make_series(i, JAN, [1]) for i in range(1, 9)})
        store.delays = {i: 0.01 for i in range(1, 9)}

        result = await runner_for(store, concurrency=3).run(list(range(1, 9)), JAN, FEB)

        assert len(result.series) == 8
        assert store.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_progress_after_each_meter(self):
        store = FakeReadingStore({1: make_series(1, JAN, [1]), 2: make_series(2, JAN, [2])})
        events = []

        await runner_for(store).run([1, 2], JAN, FEB, progress=events.append)

        assert [(e.stage, e.current, e.total) for e in events] == [("fetch", 1, 2), ("fetch", 2, 2)]

    def test_from_settings(self):
        settings = Settings(fetch_concurrency=4, page_size=250, max_retries=1)

        runner = BatchRunner.from_settings(FakeReadingStore(), settings)

        assert runner.concurrency == 4
        assert runner.page_size == 250
        assert runner.max_retries == 1


class TestRetry:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        store = FakeReadingStore({1: make_series(1, JAN, [5])})
        store.failures = {1: 2}

        result = await runner_for(store).run([1], JAN, FEB)

        assert result.series[1][0].values["kWh"] == 5
        assert result.errors == {}

    @pytest.mark.asyncio
    async def test_exhausted_retries_mark_meter_failed(self):
        store = FakeReadingStore({1: make_series(1, JAN, [5]), 2: make_series(2, JAN, [6])})
        store.failures = {1: 10}

        result = await runner_for(store).run([1, 2], JAN, FEB)

        assert 1 not in result.series
        assert "store unavailable" in result.errors[1]
        assert result.series[2][0].values["kWh"] == 6
        # one attempt plus two retries
        assert len([c for c in store.fetch_calls if c[0] == 1]) == 3

    @pytest.mark.asyncio
    async def test_timeout_counts_as_transient(self):
        store = FakeReadingStore({1: make_series(1, JAN, [5])})
        store.delays = {1: 0.5}

        result = await runner_for(store, timeout=0.05, max_retries=1).run([1], JAN, FEB)

        assert "Timed out" in result.errors[1]

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, monkeypatch):
        delays = []
        real_sleep = asyncio.sleep

        async def fake_sleep(delay, *args, **kwargs):
            if delay > 0:
                delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr("src.services.batch_runner.asyncio.sleep", fake_sleep)
        store = FakeReadingStore({1: make_series(1, JAN, [5])})
        store.failures = {1: 3}

        await runner_for(store, max_retries=3, backoff=2.0).fetch_meter(1, JAN, FEB)

        assert delays == [2.0, 4.0, 8.0]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        store = FakeReadingStore({1: make_series(1, JAN, [1])})
        token = CancellationToken()
        token.cancel()

        with pytest.raises(CancellationError):
            await runner_for(store).run([1], JAN, FEB, token=token)

        assert store.fetch_calls == []

    @pytest.mark.asyncio
    async def test_cancel_mid_batch_stops_promptly(self):
        store = FakeReadingStore({i: make_series(i, JAN, [1]) for i in range(1, 11)})
        store.delays = {i: 0.01 for i in range(1, 11)}
        token = CancellationToken()

        def cancel_after_first(event):
            if event.current == 1:
                token.cancel()

        with pytest.raises(CancellationError):
            await runner_for(store, concurrency=1).run(
                list(range(1, 11)), JAN, FEB, token=token, progress=cancel_after_first
            )

        assert len(store.fetch_calls) < 10

    @pytest.mark.asyncio
    async def test_cancel_interrupts_backoff(self):
        store = FakeReadingStore({1: make_series(1, JAN, [1])})
        store.failures = {1: 5}
        token = CancellationToken()
        runner = runner_for(store, backoff=30.0)

        async def cancel_soon():
            await asyncio.sleep(0.05)
            token.cancel()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(CancellationError):
            await asyncio.wait_for(runner.run([1], JAN, FEB, token=token), timeout=2)
        await canceller
