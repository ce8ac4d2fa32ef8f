"""Meter reading ORM model for measured and derived interval samples."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from src.models import Base, BaseModel


class ReadingSource(str, Enum):
    """Where a reading came from."""

    PARSED = "parsed"
    """Measured sample imported from a meter export"""

    DERIVED = "derived"
    """Synthetic sample produced by summing child meters"""


class MeterReading(Base, BaseModel):
    """Model representing one timestamped interval sample of a meter.

    Channel values (kWh, kVA, P1, ...) live in the ``channel_values`` JSON map;
    ``kwh_value`` mirrors the main energy channel for simple queries. Several
    imports may deliver the same timestamp; ``import_marker`` orders them so the
    latest import wins during deduplication.
    """

    __tablename__ = "meter_readings"

    meter_id: Mapped[int] = mapped_column(
        ForeignKey("meters.id"),
        nullable=False,
        index=True,
    )
    reading_timestamp: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        comment="Start of the metering interval (site local, naive)",
    )
    kwh_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    channel_values: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    source: Mapped[ReadingSource] = mapped_column(
        SQLEnum(ReadingSource),
        nullable=False,
        default=ReadingSource.PARSED,
        index=True,
    )
    import_marker: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
        comment="Import batch identifier; lexicographically latest wins on duplicates",
    )

    __table_args__ = (
        Index("idx_reading_meter_source_ts", "meter_id", "source", "reading_timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<MeterReading(id={self.id}, meter_id={self.meter_id}, "
            f"ts={self.reading_timestamp}, source={self.source})>"
        )


__all__ = ["MeterReading", "ReadingSource"]
