"""Persistence of reconciliation run snapshots."""

import logging
import math

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.models.reconciliation_run import (
    ReadingCorrection,
    ReconciliationMeterResult,
    ReconciliationRun,
)
from src.services.errors import TransientStoreError
from src.services.reconciliation_service import MeterResult
from src.services.run_service import ReconciliationOutcome

logger = logging.getLogger(__name__)


def _finite(value: float | None) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return value


def _meter_row(result: MeterResult) -> ReconciliationMeterResult:
    hierarchical = result.hierarchical
    return ReconciliationMeterResult(
        meter_id=result.meter_id,
        meter_number=result.meter_number,
        meter_type=result.meter_type.value,
        assignment=result.category.value,
        position=result.position,
        direct_total=result.direct.total,
        direct_readings_count=result.direct.readings_count,
        direct_channel_totals=dict(result.direct.channel_totals),
        direct_channel_maxima=dict(result.direct.channel_maxima),
        hierarchical_total=hierarchical.total if hierarchical else None,
        hierarchical_readings_count=hierarchical.readings_count if hierarchical else 0,
        hierarchical_channel_totals=dict(hierarchical.channel_totals) if hierarchical else {},
        hierarchical_channel_maxima=dict(hierarchical.channel_maxima) if hierarchical else {},
        direct_cost=result.direct_cost.to_dict() if result.direct_cost else None,
        hierarchical_cost=result.hierarchical_cost.to_dict() if result.hierarchical_cost else None,
        error_message=result.error,
        cost_error_message=result.cost_error,
    )


class RunRepository:
    """Stores each reconciliation as an insert-only snapshot."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save(self, outcome: ReconciliationOutcome, run_name: str) -> ReconciliationRun:
        """Persist a run with its per-meter results and correction audit rows."""
        summary = outcome.summary
        revenue = summary.revenue
        run = ReconciliationRun(
            site_id=outcome.site_id,
            run_name=run_name,
            date_from=outcome.date_from,
            date_to=outcome.date_to,
            status=outcome.status,
            grid_supply_total=summary.totals.grid_supply,
            solar_total=summary.totals.solar,
            tenant_total=summary.totals.tenant,
            check_total=summary.totals.check,
            unassigned_total=summary.totals.unassigned,
            supply_total=summary.supply_total,
            distribution_total=summary.distribution_total,
            recovery_rate=summary.recovery_rate,
            discrepancy=summary.discrepancy,
            revenue_enabled=revenue is not None,
            grid_supply_cost=float(revenue.grid_supply_cost) if revenue else 0.0,
            solar_cost=float(revenue.solar_cost) if revenue else 0.0,
            tenant_cost=float(revenue.tenant_cost) if revenue else 0.0,
            total_revenue=float(revenue.total_revenue) if revenue else 0.0,
            avg_cost_per_unit=float(revenue.avg_cost_per_unit) if revenue else 0.0,
            meter_order=list(outcome.meter_order),
            connections=[[parent, child] for parent, child in outcome.hierarchy.edges],
            options=outcome.options.model_dump(mode="json"),
        )
        run.meter_results = [_meter_row(result) for result in outcome.results]
        run.corrections = [
            ReadingCorrection(
                meter_id=result.meter_id,
                source_meter_id=correction.source_meter_id,
                reading_timestamp=correction.timestamp,
                channel=correction.channel,
                original_value=_finite(correction.original_value),
                corrected_value=_finite(correction.corrected_value),
                reason=correction.reason[:500],
            )
            for result in outcome.results
            for correction in result.corrections
        ]

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(run)
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Failed to save reconciliation run '{run_name}': {e}") from e

        logger.info(
            "Saved reconciliation run %s '%s' (%s, %d meters, %d corrections)",
            run.id,
            run_name,
            run.status.value,
            len(run.meter_results),
            len(run.corrections),
        )
        return run

    async def get(self, run_id: int) -> ReconciliationRun | None:
        try:
            async with self.session_factory() as session:
                return await session.get(ReconciliationRun, run_id)
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Failed to load reconciliation run {run_id}: {e}") from e

    async def list_for_site(self, site_id: int) -> list[ReconciliationRun]:
        stmt = (
            select(ReconciliationRun)
            .where(ReconciliationRun.site_id == site_id)
            .order_by(ReconciliationRun.date_from, ReconciliationRun.id)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Failed to list runs of site {site_id}: {e}") from e


__all__ = ["RunRepository"]
