"""Unit tests for SqlReadingStore and reading deduplication."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from src.models import MeterReading, ReadingSource, Site
from src.models.meter import Meter, MeterType
from src.services.errors import TransientStoreError
from src.services.reading_store import (
    ReadingSample,
    SqlReadingStore,
    deduplicate_readings,
    sample_from_row,
)

JAN = datetime(2024, 1, 1)
FEB = datetime(2024, 2, 1)


@pytest.fixture
async def meter_id(session_factory):
    async with session_factory() as session:
        async with session.begin():
            site = Site(name="Mall")
            session.add(site)
            await session.flush()
            meter = Meter(site_id=site.id, meter_number="T1", meter_type=MeterType.TENANT)
            session.add(meter)
            await session.flush()
            for i in range(5):
                session.add(
                    MeterReading(
                        meter_id=meter.id,
                        reading_timestamp=JAN + timedelta(hours=i),
                        kwh_value=float(i),
                        channel_values={"kWh": float(i), "kVA": 2.0 * i},
                        source=ReadingSource.PARSED,
                        import_marker="a",
                    )
                )
            # Outside the half-open range
            session.add(
                MeterReading(
                    meter_id=meter.id,
                    reading_timestamp=FEB,
                    kwh_value=99.0,
                    channel_values={},
                    source=ReadingSource.PARSED,
                )
            )
        return meter.id


class TestDeduplicate:
    def test_keeps_greatest_marker_per_timestamp(self):
        samples = [
            ReadingSample(1, JAN, {"kWh": 1}, "2024-01-03T10:00"),
            ReadingSample(1, JAN, {"kWh": 2}, "2024-01-09T08:00"),
            ReadingSample(1, JAN + timedelta(hours=1), {"kWh": 3}, None),
            ReadingSample(1, JAN, {"kWh": 4}, None),
        ]

        kept = deduplicate_readings(samples)

        assert [s.values["kWh"] for s in kept] == [2, 3]
        assert len({s.timestamp for s in kept}) == len(kept)

    def test_result_is_time_ordered(self):
        samples = [ReadingSample(1, JAN + timedelta(hours=h), {"kWh": h}) for h in (3, 1, 2)]

        assert [s.timestamp.hour for s in deduplicate_readings(samples)] == [1, 2, 3]


class TestSampleFromRow:
    def test_bare_row_exposes_kwh(self):
        row = MeterReading(meter_id=1, reading_timestamp=JAN, kwh_value=4.5, channel_values={})

        assert sample_from_row(row).values == {"kWh": 4.5}


class TestSqlReadingStore:
    @pytest.mark.asyncio
    async def test_fetch_page_is_ordered_and_paginated(self, session_factory, meter_id):
        store = SqlReadingStore(session_factory)

        first = await store.fetch_page(meter_id, JAN, FEB, 0, 3)
        rest = await store.fetch_page(meter_id, JAN, FEB, 3, 3)

        assert [s.values["kWh"] for s in first] == [0, 1, 2]
        assert [s.values["kWh"] for s in rest] == [3, 4]
        assert rest[-1].values["kVA"] == 8.0

    @pytest.mark.asyncio
    async def test_replace_derived_swaps_atomically(self, session_factory, meter_id):
        store = SqlReadingStore(session_factory)
        first = [ReadingSample(meter_id, JAN, {"kWh": 1.0}), ReadingSample(meter_id, JAN + timedelta(hours=1), {"kWh": 2.0})]
        second = [ReadingSample(meter_id, JAN, {"kWh": 7.0})]

        await store.replace_derived(meter_id, JAN, FEB, first)
        await store.replace_derived(meter_id, JAN, FEB, second)

        derived = await store.fetch_page(meter_id, JAN, FEB, 0, 10, source=ReadingSource.DERIVED)
        assert [s.values["kWh"] for s in derived] == [7.0]
        assert derived[0].import_marker == "derived"
        # Parsed readings untouched
        assert len(await store.fetch_page(meter_id, JAN, FEB, 0, 10)) == 5

    @pytest.mark.asyncio
    async def test_delete_derived_only_touches_range(self, session_factory, meter_id):
        store = SqlReadingStore(session_factory)
        await store.replace_derived(
            meter_id,
            JAN,
            datetime(2024, 3, 1),
            [ReadingSample(meter_id, JAN, {"kWh": 1.0}), ReadingSample(meter_id, FEB, {"kWh": 2.0})],
        )

        removed = await store.delete_derived([meter_id], JAN, FEB)

        assert removed == 1
        async with session_factory() as session:
            rows = (
                await session.execute(
                    select(MeterReading).where(MeterReading.source == ReadingSource.DERIVED)
                )
            ).scalars().all()
        assert [r.reading_timestamp for r in rows] == [FEB]

    @pytest.mark.asyncio
    async def test_driver_errors_become_transient(self, session_factory):
        store = SqlReadingStore(session_factory)

        class BrokenSession:
            async def __aenter__(self):
                raise OperationalError("SELECT", {}, Exception("database is locked"))

            async def __aexit__(self, *exc):
                return False

        store.session_factory = lambda: BrokenSession()

        with pytest.raises(TransientStoreError):
            await store.fetch_page(1, JAN, FEB, 0, 10)
