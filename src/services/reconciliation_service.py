"""Per-meter results, category totals, recovery rate and revenue roll-up."""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Sequence

from src.models.meter import MeterType
from src.services.channels import MeterTotals
from src.services.correction_service import CorrectedReading
from src.services.errors import TransientStoreError, ValidationError
from src.services.options import MeterCategory, ReconciliationOptions
from src.services.reading_store import ReadingSample
from src.services.tariff_service import CostResult, TariffEngine, TariffReference

logger = logging.getLogger(__name__)

RECOVERY_RATE_LIMIT = 1000.0

_DEFAULT_CATEGORY = {
    MeterType.COUNCIL: MeterCategory.GRID_SUPPLY,
    MeterType.BULK: MeterCategory.GRID_SUPPLY,
    MeterType.SOLAR: MeterCategory.SOLAR,
    MeterType.TENANT: MeterCategory.TENANT,
    MeterType.CHECK: MeterCategory.CHECK,
}


def default_category(meter_type: MeterType) -> MeterCategory:
    return _DEFAULT_CATEGORY.get(meter_type, MeterCategory.UNASSIGNED)


@dataclass
class MeterResult:
    """Everything the run knows about one meter.

    ``direct`` is computed from the meter's own readings; ``hierarchical``
    from the aggregated readings of its descendants (parents only).
    """

    meter_id: int
    meter_number: str
    meter_type: MeterType
    category: MeterCategory
    position: int = 0
    tariff: TariffReference | None = None
    direct: MeterTotals = field(default_factory=MeterTotals)
    hierarchical: MeterTotals | None = None
    direct_samples: Sequence[ReadingSample] = ()
    hierarchical_samples: Sequence[ReadingSample] = ()
    direct_cost: CostResult | None = None
    hierarchical_cost: CostResult | None = None
    corrections: list[CorrectedReading] = field(default_factory=list)
    error: str | None = None
    cost_error: str | None = None

    @property
    def is_parent(self) -> bool:
        return self.hierarchical is not None

    @property
    def revenue_cost(self) -> CostResult | None:
        """Parents bill their aggregated consumption, leaves their own."""
        if self.is_parent and self.hierarchical_cost is not None:
            return self.hierarchical_cost
        return self.direct_cost

    def to_dict(self) -> dict[str, Any]:
        return {
            "meter_id": self.meter_id,
            "meter_number": self.meter_number,
            "meter_type": self.meter_type.value,
            "category": self.category.value,
            "position": self.position,
            "direct": self.direct.to_dict(),
            "hierarchical": self.hierarchical.to_dict() if self.hierarchical else None,
            "direct_cost": self.direct_cost.to_dict() if self.direct_cost else None,
            "hierarchical_cost": self.hierarchical_cost.to_dict() if self.hierarchical_cost else None,
            "corrections": [c.to_dict() for c in self.corrections],
            "error": self.error,
            "cost_error": self.cost_error,
        }


@dataclass
class CategoryTotals:
    grid_supply: float = 0.0
    solar: float = 0.0
    tenant: float = 0.0
    check: float = 0.0
    unassigned: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "grid_supply": self.grid_supply,
            "solar": self.solar,
            "tenant": self.tenant,
            "check": self.check,
            "unassigned": self.unassigned,
        }


@dataclass
class RevenueSummary:
    grid_supply_cost: Decimal = Decimal("0.00")
    solar_cost: Decimal = Decimal("0.00")
    tenant_cost: Decimal = Decimal("0.00")
    total_revenue: Decimal = Decimal("0.00")
    avg_cost_per_unit: Decimal = Decimal("0.0000")

    def to_dict(self) -> dict[str, float]:
        return {
            "grid_supply_cost": float(self.grid_supply_cost),
            "solar_cost": float(self.solar_cost),
            "tenant_cost": float(self.tenant_cost),
            "total_revenue": float(self.total_revenue),
            "avg_cost_per_unit": float(self.avg_cost_per_unit),
        }


@dataclass
class ReconciliationSummary:
    totals: CategoryTotals
    supply_total: float
    distribution_total: float
    recovery_rate: float
    discrepancy: float
    revenue: RevenueSummary | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category_totals": self.totals.to_dict(),
            "supply_total": self.supply_total,
            "distribution_total": self.distribution_total,
            "recovery_rate": self.recovery_rate,
            "discrepancy": self.discrepancy,
            "revenue": self.revenue.to_dict() if self.revenue else None,
        }


def recovery_rate(distribution_total: float, supply_total: float) -> float:
    """Distribution as a percentage of supply; 0 when supply is 0, never NaN/inf."""
    if supply_total == 0:
        return 0.0
    rate = distribution_total / supply_total * 100
    if not math.isfinite(rate):
        return 0.0
    return max(-RECOVERY_RATE_LIMIT, min(RECOVERY_RATE_LIMIT, rate))


class ReconciliationCalculator:
    """Categorizes meters, totals each category and rolls up revenue."""

    def __init__(self, engine: TariffEngine | None = None):
        self.engine = engine

    @staticmethod
    def categorize(
        meter_id: int, meter_type: MeterType, assignments: Mapping[int, MeterCategory]
    ) -> MeterCategory:
        return assignments.get(meter_id) or default_category(meter_type)

    @staticmethod
    def _figures(result: MeterResult, prefer_hierarchical: bool) -> MeterTotals:
        if result.hierarchical is not None and (prefer_hierarchical or not result.direct.has_data):
            return result.hierarchical
        return result.direct

    def summarize(
        self, results: Sequence[MeterResult], options: ReconciliationOptions
    ) -> ReconciliationSummary:
        """Category totals, supply, distribution, recovery rate and discrepancy.

        Meters that failed to load are left out of every total.
        """
        totals = CategoryTotals()
        grid_positive = 0.0
        grid_negative = 0.0

        for result in results:
            if result.error:
                continue
            figures = self._figures(result, options.prefer_hierarchical_totals)

            if result.category == MeterCategory.GRID_SUPPLY:
                positive = figures.total_positive if figures.total_positive > 0 else max(0.0, figures.total)
                grid_positive += positive
                grid_negative += figures.total_negative
                totals.grid_supply += positive
            elif result.category == MeterCategory.SOLAR:
                totals.solar += figures.total
            elif result.category == MeterCategory.TENANT:
                totals.tenant += figures.total
            elif result.category == MeterCategory.CHECK:
                totals.check += figures.total
            else:
                totals.unassigned += figures.total

        supply_total = grid_positive + max(0.0, totals.solar + grid_negative)
        distribution_total = totals.tenant
        return ReconciliationSummary(
            totals=totals,
            supply_total=supply_total,
            distribution_total=distribution_total,
            recovery_rate=recovery_rate(distribution_total, supply_total),
            discrepancy=supply_total - distribution_total,
        )

    async def price_meters(
        self,
        results: Sequence[MeterResult],
        date_from: datetime,
        date_to: datetime,
        options: ReconciliationOptions,
    ) -> None:
        """Price direct and (for parents) hierarchical totals of every tariff-bound meter.

        Costing problems are recorded on the meter and never abort the run.
        """
        if self.engine is None:
            return

        for result in results:
            if result.error or result.tariff is None or not result.tariff.is_bound:
                continue
            try:
                if result.direct.total > 0:
                    result.direct_cost = await self.engine.calculate_cost(
                        result.meter_id,
                        result.tariff,
                        date_from,
                        date_to,
                        result.direct.total,
                        result.direct.max_demand,
                        result.direct_samples,
                        options.channels,
                    )
                if result.hierarchical is not None and result.hierarchical.total > 0:
                    result.hierarchical_cost = await self.engine.calculate_cost(
                        result.meter_id,
                        result.tariff,
                        date_from,
                        date_to,
                        result.hierarchical.total,
                        result.hierarchical.max_demand,
                        result.hierarchical_samples,
                        options.channels,
                    )
            except (ValidationError, TransientStoreError) as e:
                logger.warning("Meter %s could not be priced: %s", result.meter_number, e.message)
                result.cost_error = e.message
                continue

            failed = [c.error for c in (result.direct_cost, result.hierarchical_cost) if c and c.error]
            if failed:
                result.cost_error = failed[0]

    @staticmethod
    def summarize_revenue(results: Sequence[MeterResult], summary: ReconciliationSummary) -> RevenueSummary:
        revenue = RevenueSummary()
        for result in results:
            cost = result.revenue_cost
            if result.error or cost is None or not cost.ok:
                continue
            if result.category == MeterCategory.GRID_SUPPLY:
                revenue.grid_supply_cost += cost.total_cost
            elif result.category == MeterCategory.SOLAR:
                revenue.solar_cost += cost.total_cost
            elif result.category == MeterCategory.TENANT:
                revenue.tenant_cost += cost.total_cost

        revenue.total_revenue = revenue.tenant_cost
        if summary.totals.tenant > 0:
            revenue.avg_cost_per_unit = (
                revenue.tenant_cost / Decimal(str(summary.totals.tenant))
            ).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)
        return revenue

    async def calculate(
        self,
        results: Sequence[MeterResult],
        date_from: datetime,
        date_to: datetime,
        options: ReconciliationOptions,
    ) -> ReconciliationSummary:
        summary = self.summarize(results, options)
        if options.enable_revenue:
            await self.price_meters(results, date_from, date_to, options)
            summary.revenue = self.summarize_revenue(results, summary)
        logger.info(
            "Reconciled %d meters: supply=%.2f distribution=%.2f recovery=%.2f%%",
            len(results),
            summary.supply_total,
            summary.distribution_total,
            summary.recovery_rate,
        )
        return summary


__all__ = [
    "CategoryTotals",
    "MeterResult",
    "ReconciliationCalculator",
    "ReconciliationSummary",
    "RevenueSummary",
    "default_category",
    "recovery_rate",
]
