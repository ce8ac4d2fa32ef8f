"""Tariff structure ORM models: validity window, blocks, charges and TOU rules."""

from datetime import date
from decimal import Decimal

from sqlalchemy import Boolean, Date, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models import Base, BaseModel


class TariffStructure(Base, BaseModel):
    """Model representing one validity period of a named utility tariff.

    A tariff name published by a supply authority is stored as several rows,
    one per validity window (``effective_to`` of None means open-ended).
    Pricing comes from the block table, the TOU rule table, or flat charges.
    """

    __tablename__ = "tariff_structures"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    supply_authority: Mapped[str | None] = mapped_column(String(200), nullable=True)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
        comment="Exclusive end of validity; NULL for open-ended",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    uses_tou: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    blocks: Mapped[list["TariffBlock"]] = relationship(
        "TariffBlock",
        back_populates="tariff",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    charges: Mapped[list["TariffCharge"]] = relationship(
        "TariffCharge",
        back_populates="tariff",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    time_periods: Mapped[list["TariffTimePeriod"]] = relationship(
        "TariffTimePeriod",
        back_populates="tariff",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_tariff_authority_name", "supply_authority", "name"),
    )

    def __repr__(self) -> str:
        return (
            f"<TariffStructure(id={self.id}, name={self.name}, "
            f"from={self.effective_from}, to={self.effective_to})>"
        )


class TariffBlock(Base, BaseModel):
    """Consumption band of a block/tiered tariff; ``kwh_to`` None is unbounded."""

    __tablename__ = "tariff_blocks"

    tariff_id: Mapped[int] = mapped_column(
        ForeignKey("tariff_structures.id"),
        nullable=False,
        index=True,
    )
    block_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    kwh_from: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal(0))
    kwh_to: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 6),
        nullable=False,
        comment="Currency per kWh",
    )

    tariff: Mapped["TariffStructure"] = relationship("TariffStructure", back_populates="blocks")


class TariffCharge(Base, BaseModel):
    """Flat, seasonal-energy, fixed or demand charge of a tariff.

    Known charge types: ``basic_monthly``, ``basic_charge``,
    ``energy_both_seasons``, ``energy_high_season``, ``energy_low_season``,
    ``demand_high_season``, ``demand_low_season``.
    """

    __tablename__ = "tariff_charges"

    tariff_id: Mapped[int] = mapped_column(
        ForeignKey("tariff_structures.id"),
        nullable=False,
        index=True,
    )
    charge_type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False)

    tariff: Mapped["TariffStructure"] = relationship("TariffStructure", back_populates="charges")


class TariffTimePeriod(Base, BaseModel):
    """Time-of-use rule: season x day type x hour range -> rate."""

    __tablename__ = "tariff_time_periods"

    tariff_id: Mapped[int] = mapped_column(
        ForeignKey("tariff_structures.id"),
        nullable=False,
        index=True,
    )
    season: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="all_year",
        comment="high_demand, low_demand or all_year",
    )
    day_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="all_days",
        comment="weekday, saturday, sunday, weekend or all_days",
    )
    start_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    end_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False)

    tariff: Mapped["TariffStructure"] = relationship("TariffStructure", back_populates="time_periods")


__all__ = ["TariffStructure", "TariffBlock", "TariffCharge", "TariffTimePeriod"]
