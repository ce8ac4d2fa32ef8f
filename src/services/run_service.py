"""End-to-end reconciliation of one site over one date range."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config.settings import Settings, get_settings
from src.models.meter import Meter
from src.models.reconciliation_run import RunStatus
from src.services.aggregation_service import Aggregator
from src.services.batch_runner import BatchRunner
from src.services.channels import summarize_series
from src.services.correction_service import CorrectedReading, merge_corrections
from src.services.errors import ConfigurationError, ValidationError
from src.services.hierarchy_service import (
    HierarchyResolver,
    MeterHierarchy,
    derive_connections_from_indents,
    order_meters,
)
from src.services.options import MeterCategory, ReconciliationOptions
from src.services.reading_store import ReadingStore, SqlReadingStore
from src.services.reconciliation_service import (
    MeterResult,
    ReconciliationCalculator,
    ReconciliationSummary,
)
from src.services.run_context import CancellationToken, ProgressHandler, emit_progress
from src.services.site_repository import SiteRepository
from src.services.tariff_service import SqlTariffLookup, TariffEngine, TariffLookup, TariffReference

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationOutcome:
    """Result of one reconciliation, ready to persist or render."""

    site_id: int
    date_from: datetime
    date_to: datetime
    options: ReconciliationOptions
    meter_order: list[int]
    hierarchy: MeterHierarchy
    results: list[MeterResult]
    summary: ReconciliationSummary
    corrections: list[CorrectedReading] = field(default_factory=list)
    incomplete_parents: dict[int, list[int]] = field(default_factory=dict)

    @property
    def errors(self) -> dict[int, str]:
        return {r.meter_id: r.error for r in self.results if r.error}

    @property
    def has_warnings(self) -> bool:
        return bool(
            self.errors
            or self.incomplete_parents
            or any(r.cost_error for r in self.results)
        )

    @property
    def status(self) -> RunStatus:
        return RunStatus.SUCCESS_WITH_WARNINGS if self.has_warnings else RunStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "date_from": self.date_from.isoformat(),
            "date_to": self.date_to.isoformat(),
            "status": self.status.value,
            "has_warnings": self.has_warnings,
            "meter_order": list(self.meter_order),
            "connections": [list(edge) for edge in self.hierarchy.edges],
            **self.summary.to_dict(),
            "meters": [r.to_dict() for r in self.results],
            "errors": {str(k): v for k, v in self.errors.items()},
            "incomplete_parents": {str(k): v for k, v in self.incomplete_parents.items()},
            "corrections_count": len(self.corrections),
        }


class ReconciliationRunService:
    """Runs fetch, correction, aggregation, totalling and costing for a site."""

    def __init__(
        self,
        site_repository: SiteRepository,
        reading_store: ReadingStore,
        tariff_lookup: TariffLookup,
        settings: Settings | None = None,
        batch_runner: BatchRunner | None = None,
    ):
        settings = settings or get_settings()
        self.site_repository = site_repository
        self.batch_runner = batch_runner or BatchRunner.from_settings(reading_store, settings)
        self.resolver = HierarchyResolver()
        self.aggregator = Aggregator(reading_store)
        self.calculator = ReconciliationCalculator(
            TariffEngine(tariff_lookup, settings.high_season_months)
        )

    @classmethod
    def from_session_factory(
        cls, session_factory: async_sessionmaker[AsyncSession], settings: Settings | None = None
    ) -> "ReconciliationRunService":
        return cls(
            SiteRepository(session_factory),
            SqlReadingStore(session_factory),
            SqlTariffLookup(session_factory),
            settings=settings,
        )

    @staticmethod
    def _tariff_reference(meter: Meter, supply_authority: str | None) -> TariffReference | None:
        if meter.tariff_structure_id is None and not meter.assigned_tariff_name:
            return None
        return TariffReference(
            tariff_id=meter.tariff_structure_id,
            name=meter.assigned_tariff_name,
            supply_authority=supply_authority,
        )

    async def run_reconciliation(
        self,
        site_id: int,
        date_from: datetime,
        date_to: datetime,
        options: ReconciliationOptions | None = None,
        token: CancellationToken | None = None,
        progress: ProgressHandler | None = None,
    ) -> ReconciliationOutcome:
        """Reconcile a site's meters over ``[date_from, date_to)``.

        Per-meter fetch and costing failures are isolated into the outcome;
        the run only aborts on bad input, configuration problems or
        cancellation.

        Raises:
            ValidationError: Empty range or unknown site
            ConfigurationError: Site cannot be reconciled as configured
            CancellationError: Run cancelled through ``token``
            TransientStoreError: Site configuration or derived readings
                could not be read or written
        """
        options = options or ReconciliationOptions()
        if date_from >= date_to:
            raise ValidationError(f"Date range start {date_from} must be before end {date_to}")

        site = await self.site_repository.get_site(site_id)
        if site is None:
            raise ValidationError(f"Site {site_id} not found")

        meters = order_meters(await self.site_repository.list_meters(site_id), options.meter_order)
        if not meters:
            raise ConfigurationError(f"Site '{site.name}' has no meters")

        if options.enable_revenue and not site.supply_authority:
            named = [m.meter_number for m in meters if m.tariff_structure_id is None and m.assigned_tariff_name]
            if named:
                raise ConfigurationError(
                    f"Site '{site.name}' has no supply authority to resolve tariffs of meters "
                    f"{', '.join(named)}"
                )

        meter_ids = [m.id for m in meters]
        edges = await self.site_repository.list_connections(site_id)
        if not edges:
            indent_levels = options.indent_levels or {m.id: m.indent_level or 0 for m in meters}
            edges = derive_connections_from_indents(meter_ids, indent_levels)
            if edges:
                logger.info("Derived %d connections from indent levels for site %s", len(edges), site_id)
        hierarchy = self.resolver.build(meter_ids, edges)

        categories = {
            m.id: self.calculator.categorize(m.id, m.meter_type, options.assignments) for m in meters
        }
        if options.negative_meter_ids is not None:
            negative_ids = set(options.negative_meter_ids)
        else:
            negative_ids = {mid for mid, cat in categories.items() if cat == MeterCategory.SOLAR}

        logger.info(
            "Reconciling site %s (%d meters, %d parents) from %s to %s",
            site_id,
            len(meters),
            len(hierarchy.parents_bottom_up),
            date_from.isoformat(),
            date_to.isoformat(),
        )

        batch = await self.batch_runner.run(meter_ids, date_from, date_to, token, progress)
        if token:
            token.raise_if_cancelled()

        aggregated = await self.aggregator.run(
            hierarchy,
            {mid: s for mid, s in batch.series.items() if not hierarchy.is_parent(mid)},
            batch.corrections,
            date_from,
            date_to,
            negative_ids,
            token,
            progress,
        )

        results: list[MeterResult] = []
        for position, meter in enumerate(meters):
            direct_samples = batch.series.get(meter.id, [])
            result = MeterResult(
                meter_id=meter.id,
                meter_number=meter.meter_number,
                meter_type=meter.meter_type,
                category=categories[meter.id],
                position=position,
                tariff=self._tariff_reference(meter, site.supply_authority),
                direct=summarize_series(direct_samples, options.channels),
                direct_samples=direct_samples,
                error=batch.errors.get(meter.id),
            )
            own_corrections = batch.corrections.get(meter.id, [])
            if hierarchy.is_parent(meter.id):
                derived = aggregated.series.get(meter.id, [])
                result.hierarchical = summarize_series(derived, options.channels)
                result.hierarchical_samples = derived
                result.corrections = merge_corrections(
                    own_corrections, aggregated.corrections.get(meter.id, [])
                )
            else:
                result.corrections = list(own_corrections)
            results.append(result)

        if token:
            token.raise_if_cancelled()
        summary = await self.calculator.calculate(results, date_from, date_to, options)
        emit_progress(progress, "reconcile", 1, 1)

        return ReconciliationOutcome(
            site_id=site_id,
            date_from=date_from,
            date_to=date_to,
            options=options,
            meter_order=meter_ids,
            hierarchy=hierarchy,
            results=results,
            summary=summary,
            corrections=merge_corrections(*batch.corrections.values()),
            incomplete_parents=aggregated.missing,
        )


__all__ = ["ReconciliationOutcome", "ReconciliationRunService"]
