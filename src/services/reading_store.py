"""Paginated, time-ordered access to meter readings."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.models.meter_reading import MeterReading, ReadingSource
from src.services.errors import TransientStoreError

logger = logging.getLogger(__name__)

DERIVED_IMPORT_MARKER = "derived"


@dataclass(frozen=True)
class ReadingSample:
    """One interval sample of a meter with its named channel values."""

    meter_id: int
    timestamp: datetime
    values: Mapping[str, float] = field(default_factory=dict)
    import_marker: str | None = None


def deduplicate_readings(samples: Iterable[ReadingSample]) -> list[ReadingSample]:
    """Keep one sample per (meter, timestamp), preferring the latest import marker.

    Markers compare lexicographically; a missing marker sorts before any marker.
    The result is ordered by timestamp.
    """
    kept: dict[tuple[int, datetime], ReadingSample] = {}
    for sample in samples:
        key = (sample.meter_id, sample.timestamp)
        current = kept.get(key)
        if current is None or (sample.import_marker or "") > (current.import_marker or ""):
            kept[key] = sample
    return sorted(kept.values(), key=lambda s: (s.timestamp, s.meter_id))


def sample_from_row(row: MeterReading) -> ReadingSample:
    """Convert an ORM reading to a sample; bare rows expose ``kwh_value`` as ``kWh``."""
    values = {k: float(v) for k, v in (row.channel_values or {}).items() if v is not None}
    if not values:
        values = {"kWh": float(row.kwh_value or 0.0)}
    return ReadingSample(
        meter_id=row.meter_id,
        timestamp=row.reading_timestamp,
        values=values,
        import_marker=row.import_marker,
    )


class ReadingStore(ABC):
    """Reading persistence consumed by the batch runner and the aggregator."""

    @abstractmethod
    async def fetch_page(
        self,
        meter_id: int,
        date_from: datetime,
        date_to: datetime,
        offset: int,
        limit: int,
        source: ReadingSource = ReadingSource.PARSED,
    ) -> list[ReadingSample]:
        """Return up to ``limit`` samples in ``[date_from, date_to)`` ordered by timestamp."""

    @abstractmethod
    async def delete_derived(
        self, meter_ids: Sequence[int], date_from: datetime, date_to: datetime
    ) -> int:
        """Discard derived readings of the given meters in range; returns rows removed."""

    @abstractmethod
    async def replace_derived(
        self,
        meter_id: int,
        date_from: datetime,
        date_to: datetime,
        samples: Sequence[ReadingSample],
    ) -> int:
        """Atomically swap a meter's derived readings in range for ``samples``."""


class SqlReadingStore(ReadingStore):
    """Reading store over the ``meter_readings`` table.

    Opens one session per call so concurrent fetches never share a session.
    Driver and connection failures surface as ``TransientStoreError``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def fetch_page(
        self,
        meter_id: int,
        date_from: datetime,
        date_to: datetime,
        offset: int,
        limit: int,
        source: ReadingSource = ReadingSource.PARSED,
    ) -> list[ReadingSample]:
        stmt = (
            select(MeterReading)
            .where(
                MeterReading.meter_id == meter_id,
                MeterReading.source == source,
                MeterReading.reading_timestamp >= date_from,
                MeterReading.reading_timestamp < date_to,
            )
            .order_by(MeterReading.reading_timestamp, MeterReading.id)
            .offset(offset)
            .limit(limit)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Failed to fetch readings for meter {meter_id}: {e}") from e

        return [sample_from_row(row) for row in rows]

    async def delete_derived(
        self, meter_ids: Sequence[int], date_from: datetime, date_to: datetime
    ) -> int:
        if not meter_ids:
            return 0
        stmt = delete(MeterReading).where(
            MeterReading.meter_id.in_(list(meter_ids)),
            MeterReading.source == ReadingSource.DERIVED,
            MeterReading.reading_timestamp >= date_from,
            MeterReading.reading_timestamp < date_to,
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Failed to discard derived readings: {e}") from e

        logger.info("Discarded %d derived readings for %d meters", result.rowcount, len(meter_ids))
        return result.rowcount or 0

    async def replace_derived(
        self,
        meter_id: int,
        date_from: datetime,
        date_to: datetime,
        samples: Sequence[ReadingSample],
    ) -> int:
        rows = [
            MeterReading(
                meter_id=meter_id,
                reading_timestamp=sample.timestamp,
                kwh_value=_primary_energy(sample.values),
                channel_values=dict(sample.values),
                source=ReadingSource.DERIVED,
                import_marker=DERIVED_IMPORT_MARKER,
            )
            for sample in samples
        ]
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(MeterReading).where(
                            MeterReading.meter_id == meter_id,
                            MeterReading.source == ReadingSource.DERIVED,
                            MeterReading.reading_timestamp >= date_from,
                            MeterReading.reading_timestamp < date_to,
                        )
                    )
                    session.add_all(rows)
        except SQLAlchemyError as e:
            raise TransientStoreError(
                f"Failed to store derived readings for meter {meter_id}: {e}"
            ) from e

        return len(rows)


def _primary_energy(values: Mapping[str, float]) -> float:
    if "kWh" in values:
        return float(values["kWh"])
    return float(sum(v for k, v in values.items() if "kwh" in k.lower()))


__all__ = [
    "ReadingSample",
    "ReadingStore",
    "SqlReadingStore",
    "deduplicate_readings",
    "sample_from_row",
    "DERIVED_IMPORT_MARKER",
]
