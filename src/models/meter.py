"""Meter and meter connection ORM models."""

from enum import Enum

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models import Base, BaseModel


class MeterType(str, Enum):
    """Physical role of a meter in the site's metering tree."""

    COUNCIL = "council"
    """Utility point of supply"""

    BULK = "bulk"
    """Bulk / grid supply meter"""

    CHECK = "check"
    """Intermediate check meter"""

    TENANT = "tenant"
    """Tenant / distribution meter"""

    SOLAR = "solar"
    """Solar generation meter"""

    OTHER = "other"


class Meter(Base, BaseModel):
    """Model representing a single metering point at a site.

    Meters are created and maintained outside the reconciliation engine; the
    engine only reads them. A meter may reference its tariff directly by id,
    or by name (resolved against the site's supply authority).
    """

    __tablename__ = "meters"

    site_id: Mapped[int] = mapped_column(
        ForeignKey("sites.id"),
        nullable=False,
        index=True,
    )
    meter_number: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Meter serial / label",
    )
    meter_type: Mapped[MeterType] = mapped_column(
        SQLEnum(MeterType),
        nullable=False,
        default=MeterType.OTHER,
    )
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Tariff reference (either by id or by name within the supply authority)
    tariff_structure_id: Mapped[int | None] = mapped_column(
        ForeignKey("tariff_structures.id"),
        nullable=True,
    )
    assigned_tariff_name: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
        comment="Tariff name resolved against the site's supply authority",
    )

    # Layout hints used to derive connections when none are stored
    indent_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    site: Mapped["Site"] = relationship("Site", back_populates="meters")  # noqa: F821

    __table_args__ = (
        Index("idx_meter_site_number", "site_id", "meter_number"),
    )

    def __repr__(self) -> str:
        return f"<Meter(id={self.id}, number={self.meter_number}, type={self.meter_type})>"


class MeterConnection(Base, BaseModel):
    """Parent/child edge in the meter forest."""

    __tablename__ = "meter_connections"

    parent_meter_id: Mapped[int] = mapped_column(
        ForeignKey("meters.id"),
        nullable=False,
        index=True,
    )
    child_meter_id: Mapped[int] = mapped_column(
        ForeignKey("meters.id"),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        UniqueConstraint("parent_meter_id", "child_meter_id", name="uq_meter_connection"),
    )

    def __repr__(self) -> str:
        return f"<MeterConnection(parent={self.parent_meter_id}, child={self.child_meter_id})>"


__all__ = ["Meter", "MeterConnection", "MeterType"]
