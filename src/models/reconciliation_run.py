"""Reconciliation run ORM models: run snapshot, per-meter results, correction audit."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models import Base, BaseModel


class RunStatus(str, Enum):
    """Outcome of a persisted reconciliation run."""

    SUCCESS = "success"
    SUCCESS_WITH_WARNINGS = "success_with_warnings"
    """Some meters failed to fetch or price; totals exclude them"""


class ReconciliationRun(Base, BaseModel):
    """Immutable snapshot of one reconciliation over a date range.

    Holds everything needed to reproduce the summary without re-querying
    meters, tariffs or readings: the range, category totals, recovery rate,
    discrepancy, revenue figures, the meter ordering and the options used.
    Rows are inserted once and never updated.
    """

    __tablename__ = "reconciliation_runs"

    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id"), nullable=False, index=True)
    run_name: Mapped[str] = mapped_column(String(200), nullable=False)
    date_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    date_to: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[RunStatus] = mapped_column(
        SQLEnum(RunStatus),
        nullable=False,
        default=RunStatus.SUCCESS,
    )

    # Category totals (kWh)
    grid_supply_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    solar_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tenant_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    check_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    unassigned_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    supply_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    distribution_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    recovery_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    discrepancy: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Revenue
    revenue_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    grid_supply_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    solar_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tenant_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_revenue: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_cost_per_unit: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Reproducibility
    meter_order: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    # [parent, child] pairs of the hierarchy the run aggregated over
    connections: Mapped[list[list[int]]] = mapped_column(JSON, nullable=False, default=list)
    options: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    meter_results: Mapped[list["ReconciliationMeterResult"]] = relationship(
        "ReconciliationMeterResult",
        back_populates="run",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    corrections: Mapped[list["ReadingCorrection"]] = relationship(
        "ReadingCorrection",
        back_populates="run",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<ReconciliationRun(id={self.id}, name={self.run_name}, "
            f"recovery_rate={self.recovery_rate:.2f})>"
        )


class ReconciliationMeterResult(Base, BaseModel):
    """Per-meter totals and costs captured for a run."""

    __tablename__ = "reconciliation_meter_results"

    run_id: Mapped[int] = mapped_column(
        ForeignKey("reconciliation_runs.id"),
        nullable=False,
        index=True,
    )
    meter_id: Mapped[int] = mapped_column(Integer, nullable=False)
    meter_number: Mapped[str] = mapped_column(String(100), nullable=False)
    meter_type: Mapped[str] = mapped_column(String(20), nullable=False)
    assignment: Mapped[str] = mapped_column(String(20), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    direct_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    direct_readings_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    direct_channel_totals: Mapped[dict[str, float]] = mapped_column(JSON, nullable=False, default=dict)
    direct_channel_maxima: Mapped[dict[str, float]] = mapped_column(JSON, nullable=False, default=dict)

    hierarchical_total: Mapped[float | None] = mapped_column(Float, nullable=True)
    hierarchical_readings_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hierarchical_channel_totals: Mapped[dict[str, float]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    hierarchical_channel_maxima: Mapped[dict[str, float]] = mapped_column(
        JSON, nullable=False, default=dict
    )

    direct_cost: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    hierarchical_cost: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    cost_error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)

    run: Mapped["ReconciliationRun"] = relationship("ReconciliationRun", back_populates="meter_results")


class ReadingCorrection(Base, BaseModel):
    """Append-only audit record of one corrected channel value.

    ``meter_id`` is the meter whose result carries the correction (the source
    meter itself or one of its ancestors); ``source_meter_id`` is the leaf the
    raw sample belongs to.
    """

    __tablename__ = "reading_corrections"

    run_id: Mapped[int] = mapped_column(
        ForeignKey("reconciliation_runs.id"),
        nullable=False,
        index=True,
    )
    meter_id: Mapped[int] = mapped_column(Integer, nullable=False)
    source_meter_id: Mapped[int] = mapped_column(Integer, nullable=False)
    reading_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    channel: Mapped[str] = mapped_column(String(100), nullable=False)
    original_value: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
        comment="NULL when the raw value was not a finite number",
    )
    corrected_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)

    run: Mapped["ReconciliationRun"] = relationship("ReconciliationRun", back_populates="corrections")

    __table_args__ = (
        Index("idx_correction_run_meter", "run_id", "meter_id"),
    )


__all__ = ["ReconciliationRun", "ReconciliationMeterResult", "ReadingCorrection", "RunStatus"]
