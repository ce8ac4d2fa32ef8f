"""Cancellation signal, progress events and the registry of running jobs."""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable

from src.services.errors import CancellationError, ValidationError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation signal shared by every stage of a run.

    Stages poll ``raise_if_cancelled()`` at page, meter and period boundaries;
    ``sleep()`` wakes early when the signal is raised.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError()

    async def sleep(self, delay: float) -> None:
        """Wait ``delay`` seconds or until cancelled, whichever comes first."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        self.raise_if_cancelled()


@dataclass(frozen=True)
class ProgressEvent:
    """Progress of one stage: ``current`` of ``total`` units done."""

    stage: str
    current: int
    total: int
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


ProgressHandler = Callable[[ProgressEvent], None]


def emit_progress(
    handler: ProgressHandler | None,
    stage: str,
    current: int,
    total: int,
    detail: str | None = None,
) -> None:
    if handler is not None:
        handler(ProgressEvent(stage=stage, current=current, total=total, detail=detail))


class JobRegistry:
    """Cancellation tokens of in-flight jobs, keyed by job id."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    def create(self, job_id: str | None = None) -> tuple[str, CancellationToken]:
        """Register a new job; callers may pick the id so they can cancel early.

        Raises:
            ValidationError: If ``job_id`` is already running
        """
        job_id = job_id or uuid.uuid4().hex
        if job_id in self._tokens:
            raise ValidationError(f"Job {job_id} is already running")
        token = CancellationToken()
        self._tokens[job_id] = token
        return job_id, token

    def cancel(self, job_id: str) -> bool:
        token = self._tokens.get(job_id)
        if token is None:
            return False
        logger.info("Cancellation requested for job %s", job_id)
        token.cancel()
        return True

    def discard(self, job_id: str) -> None:
        self._tokens.pop(job_id, None)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._tokens


__all__ = [
    "CancellationToken",
    "ProgressEvent",
    "ProgressHandler",
    "emit_progress",
    "JobRegistry",
]
