"""SQLAlchemy base model with common fields and model exports."""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Base class for all models
Base = declarative_base()


class BaseModel:
    """Base model with common timestamp fields."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


# Import models to register them with Base (after Base is defined)
# This must be after Base declaration to avoid circular imports
from src.models.meter import Meter, MeterConnection, MeterType  # noqa: E402
from src.models.meter_reading import MeterReading, ReadingSource  # noqa: E402
from src.models.reconciliation_run import (  # noqa: E402
    ReadingCorrection,
    ReconciliationMeterResult,
    ReconciliationRun,
    RunStatus,
)
from src.models.site import Site  # noqa: E402
from src.models.tariff import (  # noqa: E402
    TariffBlock,
    TariffCharge,
    TariffStructure,
    TariffTimePeriod,
)

__all__ = [
    "Base",
    "BaseModel",
    "Site",
    "Meter",
    "MeterConnection",
    "MeterType",
    "MeterReading",
    "ReadingSource",
    "TariffStructure",
    "TariffBlock",
    "TariffCharge",
    "TariffTimePeriod",
    "ReconciliationRun",
    "ReconciliationMeterResult",
    "ReadingCorrection",
    "RunStatus",
]
