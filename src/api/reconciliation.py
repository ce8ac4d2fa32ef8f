"""Reconciliation API endpoints."""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config.settings import get_settings
from src.models.reconciliation_run import RunStatus
from src.services import AsyncSessionLocal
from src.services.bulk_service import BulkOrchestrator, ReconciliationPeriod
from src.services.errors import ReconciliationError, error_response
from src.services.options import ReconciliationOptions
from src.services.run_context import JobRegistry, ProgressEvent
from src.services.run_repository import RunRepository
from src.services.run_service import ReconciliationRunService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reconciliation", tags=["reconciliation"])

# Cancellation tokens of runs and bulk jobs in flight in this process
job_registry = JobRegistry()


# Request schemas
class RunRequest(BaseModel):
    """Request schema for a single reconciliation run."""

    site_id: int
    date_from: datetime
    date_to: datetime
    options: ReconciliationOptions = Field(default_factory=ReconciliationOptions)
    save: bool = False  # Persist the run snapshot
    run_name: str | None = None
    job_id: str | None = None  # Client-chosen id usable for cancellation

    @model_validator(mode="after")
    def check_range(self) -> "RunRequest":
        if self.date_from >= self.date_to:
            raise ValueError("date_from must be before date_to")
        return self


class PeriodRequest(BaseModel):
    name: str
    date_from: datetime
    date_to: datetime

    @model_validator(mode="after")
    def check_range(self) -> "PeriodRequest":
        if self.date_from >= self.date_to:
            raise ValueError(f"Period '{self.name}': date_from must be before date_to")
        return self


class BulkRequest(BaseModel):
    """Request schema for reconciling several periods in one job."""

    site_id: int
    periods: list[PeriodRequest] = Field(min_length=1)
    options: ReconciliationOptions = Field(default_factory=ReconciliationOptions)
    job_id: str | None = None


# Response schemas
class MeterResultResponse(BaseModel):
    meter_id: int
    meter_number: str
    meter_type: str
    assignment: str
    position: int
    direct_total: float
    hierarchical_total: float | None
    direct_cost: dict[str, Any] | None
    hierarchical_cost: dict[str, Any] | None
    error_message: str | None
    cost_error_message: str | None

    model_config = ConfigDict(from_attributes=True)


class RunResponse(BaseModel):
    """Response schema for a saved reconciliation run."""

    id: int
    site_id: int
    run_name: str
    date_from: datetime
    date_to: datetime
    status: RunStatus
    grid_supply_total: float
    solar_total: float
    tenant_total: float
    check_total: float
    unassigned_total: float
    supply_total: float
    distribution_total: float
    recovery_rate: float
    discrepancy: float
    revenue_enabled: bool
    grid_supply_cost: float
    solar_cost: float
    tenant_cost: float
    total_revenue: float
    avg_cost_per_unit: float
    meter_order: list[int]
    connections: list[list[int]]
    meter_results: list[MeterResultResponse]

    model_config = ConfigDict(from_attributes=True)


# Dependencies
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal


def get_run_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),  # noqa: B008
) -> ReconciliationRunService:
    return ReconciliationRunService.from_session_factory(session_factory, get_settings())


def get_run_repository(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),  # noqa: B008
) -> RunRepository:
    return RunRepository(session_factory)


def get_job_registry() -> JobRegistry:
    return job_registry


async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    """Render taxonomy errors as ``{"error": {"code", "message"}}``."""
    logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.http_status, content=error_response(exc))


def _ndjson(payload: dict[str, Any]) -> str:
    return json.dumps(payload, default=str) + "\n"


@router.post("/run")
async def run_reconciliation(
    request: RunRequest,
    service: ReconciliationRunService = Depends(get_run_service),  # noqa: B008
    repository: RunRepository = Depends(get_run_repository),  # noqa: B008
    registry: JobRegistry = Depends(get_job_registry),  # noqa: B008
) -> dict[str, Any]:
    """Reconcile one site over one range, optionally saving the snapshot."""
    job_id, token = registry.create(request.job_id)
    try:
        outcome = await service.run_reconciliation(
            request.site_id,
            request.date_from,
            request.date_to,
            request.options,
            token,
        )
        body = outcome.to_dict()
        if request.save:
            name = request.run_name or f"{request.date_from:%Y-%m-%d} - {request.date_to:%Y-%m-%d}"
            run = await repository.save(outcome, name)
            body["run_id"] = run.id
    finally:
        registry.discard(job_id)

    body["job_id"] = job_id
    return body


@router.post("/bulk")
async def run_bulk(
    request: BulkRequest,
    service: ReconciliationRunService = Depends(get_run_service),  # noqa: B008
    repository: RunRepository = Depends(get_run_repository),  # noqa: B008
    registry: JobRegistry = Depends(get_job_registry),  # noqa: B008
) -> StreamingResponse:
    """Reconcile several periods, streaming progress as newline-delimited JSON.

    The first line carries the job id, then one line per progress event and
    finally the job summary (or an error object).
    """
    job_id, token = registry.create(request.job_id)
    orchestrator = BulkOrchestrator(service, repository)
    periods = [ReconciliationPeriod(p.name, p.date_from, p.date_to) for p in request.periods]
    queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    def on_progress(event: ProgressEvent) -> None:
        queue.put_nowait(event.to_dict())

    async def produce() -> None:
        try:
            summary = await orchestrator.run_bulk(
                request.site_id, periods, request.options, token, on_progress
            )
            queue.put_nowait(summary.to_dict())
        except ReconciliationError as e:
            logger.warning("Bulk job %s aborted: %s", job_id, e.message)
            queue.put_nowait(error_response(e))
        except Exception:
            logger.error("Bulk job %s crashed", job_id, exc_info=True)
            queue.put_nowait({"error": {"code": "internal_error", "message": "Server error"}})
        finally:
            registry.discard(job_id)
            queue.put_nowait(None)

    async def stream() -> AsyncIterator[str]:
        yield _ndjson({"job_id": job_id})
        task = asyncio.create_task(produce())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield _ndjson(item)
        finally:
            if not task.done():
                # Client went away
                token.cancel()
            await task

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    registry: JobRegistry = Depends(get_job_registry),  # noqa: B008
) -> dict[str, Any]:
    if not registry.cancel(job_id):
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return {"job_id": job_id, "cancelled": True}


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: int,
    repository: RunRepository = Depends(get_run_repository),  # noqa: B008
) -> RunResponse:
    run = await repository.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return RunResponse.model_validate(run)


@router.get("/sites/{site_id}/runs", response_model=list[RunResponse])
async def list_runs(
    site_id: int,
    repository: RunRepository = Depends(get_run_repository),  # noqa: B008
) -> list[RunResponse]:
    return [RunResponse.model_validate(run) for run in await repository.list_for_site(site_id)]


__all__ = [
    "router",
    "job_registry",
    "get_session_factory",
    "get_run_service",
    "get_run_repository",
    "get_job_registry",
    "reconciliation_error_handler",
]
