"""Sequential reconciliation of a site across several periods."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from src.services.errors import CancellationError, ConfigurationError, ReconciliationError
from src.services.options import ReconciliationOptions
from src.services.run_context import CancellationToken, ProgressHandler, emit_progress
from src.services.run_repository import RunRepository
from src.services.run_service import ReconciliationRunService

logger = logging.getLogger(__name__)


class BulkStatus:
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ReconciliationPeriod:
    """A named ``[date_from, date_to)`` range to reconcile."""

    name: str
    date_from: datetime
    date_to: datetime


@dataclass
class BulkSummary:
    succeeded: int = 0
    failed: int = 0
    failed_periods: list[str] = field(default_factory=list)
    run_ids: list[int] = field(default_factory=list)
    cancelled: bool = False

    @property
    def status(self) -> str:
        if self.cancelled:
            return BulkStatus.CANCELLED
        if self.succeeded == 0 and self.failed > 0:
            return BulkStatus.FAILED
        return BulkStatus.COMPLETE

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failed_periods": list(self.failed_periods),
            "run_ids": list(self.run_ids),
            "status": self.status,
        }


class BulkOrchestrator:
    """Reconciles and saves one run per period, oldest period first.

    A failing period is logged and counted and the next period proceeds;
    cancellation stops immediately and keeps the runs already saved. A
    configuration problem affects every period alike and aborts the job.
    """

    def __init__(self, run_service: ReconciliationRunService, run_repository: RunRepository):
        self.run_service = run_service
        self.run_repository = run_repository

    async def run_bulk(
        self,
        site_id: int,
        periods: Sequence[ReconciliationPeriod],
        options: ReconciliationOptions | None = None,
        token: CancellationToken | None = None,
        progress: ProgressHandler | None = None,
    ) -> BulkSummary:
        summary = BulkSummary()
        ordered = sorted(periods, key=lambda p: (p.date_from, p.date_to))
        total = len(ordered)

        for index, period in enumerate(ordered, start=1):
            try:
                if token:
                    token.raise_if_cancelled()
                outcome = await self.run_service.run_reconciliation(
                    site_id, period.date_from, period.date_to, options, token, progress
                )
                run = await self.run_repository.save(outcome, period.name)
            except CancellationError:
                logger.info("Bulk reconciliation of site %s cancelled at '%s'", site_id, period.name)
                summary.cancelled = True
                break
            except ConfigurationError:
                raise
            except ReconciliationError as e:
                logger.error("Period '%s' failed: %s", period.name, e.message, exc_info=True)
                summary.failed += 1
                summary.failed_periods.append(period.name)
            except Exception:
                logger.error("Period '%s' failed unexpectedly", period.name, exc_info=True)
                summary.failed += 1
                summary.failed_periods.append(period.name)
            else:
                summary.succeeded += 1
                summary.run_ids.append(run.id)
            emit_progress(progress, "bulk", index, total, period.name)

        logger.info(
            "Bulk reconciliation of site %s finished: %d succeeded, %d failed (%s)",
            site_id,
            summary.succeeded,
            summary.failed,
            summary.status,
        )
        return summary


__all__ = ["BulkOrchestrator", "BulkStatus", "BulkSummary", "ReconciliationPeriod"]
