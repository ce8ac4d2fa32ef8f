"""Integration tests for multi-period bulk reconciliation."""

from datetime import datetime, timedelta

import pytest
from fakes import MALL_START, seed_mall

from src.config.settings import Settings
from src.services.bulk_service import BulkOrchestrator, BulkStatus, ReconciliationPeriod
from src.services.errors import ConfigurationError
from src.services.options import ReconciliationOptions
from src.services.run_context import CancellationToken, ProgressEvent
from src.services.run_repository import RunRepository
from src.services.run_service import ReconciliationRunService

DAY = timedelta(days=1)


@pytest.fixture
def repository(session_factory):
    return RunRepository(session_factory)


@pytest.fixture
def orchestrator(session_factory, repository):
    settings = Settings(_env_file=None, retry_backoff_seconds=0.0)
    return BulkOrchestrator(
        ReconciliationRunService.from_session_factory(session_factory, settings), repository
    )


def day_period(name, offset):
    start = MALL_START + offset * DAY
    return ReconciliationPeriod(name, start, start + DAY)


class TestBulkReconciliation:
    @pytest.mark.asyncio
    async def test_periods_run_oldest_first(self, session_factory, orchestrator, repository):
        ids = await seed_mall(session_factory)
        periods = [day_period("second", 1), day_period("first", 0)]
        events: list[ProgressEvent] = []

        summary = await orchestrator.run_bulk(ids["site"], periods, progress=events.append)

        assert summary.status == BulkStatus.COMPLETE
        assert summary.succeeded == 2
        runs = await repository.list_for_site(ids["site"])
        assert [r.run_name for r in runs] == ["first", "second"]
        assert runs[0].supply_total == pytest.approx(44.0)
        assert runs[1].supply_total == 0.0
        bulk_events = [e for e in events if e.stage == "bulk"]
        assert [(e.current, e.total, e.detail) for e in bulk_events] == [(1, 2, "first"), (2, 2, "second")]

    @pytest.mark.asyncio
    async def test_failing_period_does_not_stop_the_rest(self, session_factory, orchestrator, repository):
        ids = await seed_mall(session_factory)
        broken = ReconciliationPeriod("broken", MALL_START + 5 * DAY, MALL_START + 5 * DAY)
        periods = [day_period("first", 0), broken, day_period("last", 10)]

        summary = await orchestrator.run_bulk(ids["site"], periods)

        assert summary.status == BulkStatus.COMPLETE
        assert summary.succeeded == 2
        assert summary.failed == 1
        assert summary.failed_periods == ["broken"]
        assert len(await repository.list_for_site(ids["site"])) == 2

    @pytest.mark.asyncio
    async def test_all_periods_failing(self, session_factory, orchestrator):
        ids = await seed_mall(session_factory)
        start = datetime(2024, 3, 1)

        summary = await orchestrator.run_bulk(ids["site"], [ReconciliationPeriod("empty", start, start)])

        assert summary.status == BulkStatus.FAILED
        assert summary.to_dict()["failed_periods"] == ["empty"]

    @pytest.mark.asyncio
    async def test_cancellation_keeps_saved_runs(self, session_factory, orchestrator, repository):
        ids = await seed_mall(session_factory)
        token = CancellationToken()

        def cancel_after_first(event: ProgressEvent) -> None:
            if event.stage == "bulk" and event.current == 1:
                token.cancel()

        summary = await orchestrator.run_bulk(
            ids["site"],
            [day_period(f"day-{i}", i) for i in range(3)],
            token=token,
            progress=cancel_after_first,
        )

        assert summary.status == BulkStatus.CANCELLED
        assert summary.succeeded == 1
        assert [r.run_name for r in await repository.list_for_site(ids["site"])] == ["day-0"]

    @pytest.mark.asyncio
    async def test_configuration_error_aborts_the_job(self, session_factory, orchestrator, repository):
        ids = await seed_mall(session_factory, supply_authority=None)

        with pytest.raises(ConfigurationError):
            await orchestrator.run_bulk(
                ids["site"],
                [day_period("first", 0), day_period("second", 1)],
                ReconciliationOptions(enable_revenue=True),
            )

        assert await repository.list_for_site(ids["site"]) == []
