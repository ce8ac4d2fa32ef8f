"""Bounded-concurrency fetch and correction of per-meter reading series."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from src.config.settings import Settings
from src.services.correction_service import CorrectedReading, CorruptionThresholds, ValueCorrector
from src.services.errors import TransientStoreError
from src.services.reading_store import ReadingSample, ReadingStore, deduplicate_readings
from src.services.run_context import CancellationToken, ProgressHandler, emit_progress

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Corrected series per fetched meter and the error of every failed one."""

    series: dict[int, list[ReadingSample]] = field(default_factory=dict)
    corrections: dict[int, list[CorrectedReading]] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)


class BatchRunner:
    """Fetches meters a few at a time with timeout, retry and cancellation.

    Every meter's series is paginated to exhaustion, deduplicated and passed
    once through the value corrector. A meter whose retries are exhausted is
    recorded in ``errors`` and the batch carries on.
    """

    def __init__(
        self,
        store: ReadingStore,
        corrector: ValueCorrector | None = None,
        concurrency: int = 5,
        page_size: int = 1000,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff: float = 2.0,
    ):
        self.store = store
        self.corrector = corrector or ValueCorrector()
        self.concurrency = max(1, concurrency)
        self.page_size = page_size
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff

    @classmethod
    def from_settings(cls, store: ReadingStore, settings: Settings) -> "BatchRunner":
        return cls(
            store,
            corrector=ValueCorrector(CorruptionThresholds.from_settings(settings)),
            concurrency=settings.fetch_concurrency,
            page_size=settings.page_size,
            timeout=settings.fetch_timeout_seconds,
            max_retries=settings.max_retries,
            backoff=settings.retry_backoff_seconds,
        )

    async def _fetch_all(
        self,
        meter_id: int,
        date_from: datetime,
        date_to: datetime,
        token: CancellationToken | None,
    ) -> list[ReadingSample]:
        samples: list[ReadingSample] = []
        offset = 0
        while True:
            if token:
                token.raise_if_cancelled()
            page = await self.store.fetch_page(meter_id, date_from, date_to, offset, self.page_size)
            samples.extend(page)
            if len(page) < self.page_size:
                return samples
            offset += self.page_size

    async def fetch_meter(
        self,
        meter_id: int,
        date_from: datetime,
        date_to: datetime,
        token: CancellationToken | None = None,
    ) -> list[ReadingSample]:
        """Fetch one meter's deduplicated series, retrying transient failures.

        Raises:
            TransientStoreError: When every attempt failed or timed out
            CancellationError: When the token is raised
        """
        attempt = 0
        while True:
            try:
                samples = await asyncio.wait_for(
                    self._fetch_all(meter_id, date_from, date_to, token),
                    timeout=self.timeout,
                )
                return deduplicate_readings(samples)
            except asyncio.TimeoutError as e:
                error = TransientStoreError(f"Timed out after {self.timeout:g}s fetching meter {meter_id}")
                if attempt >= self.max_retries:
                    raise error from e
            except TransientStoreError as e:
                error = e
                if attempt >= self.max_retries:
                    raise

            delay = self.backoff * (2 ** attempt)
            attempt += 1
            logger.warning(
                "Fetch of meter %s failed (%s); retry %d/%d in %.1fs",
                meter_id,
                error.message,
                attempt,
                self.max_retries,
                delay,
            )
            if token:
                await token.sleep(delay)
            else:
                await asyncio.sleep(delay)

    async def run(
        self,
        meter_ids: Sequence[int],
        date_from: datetime,
        date_to: datetime,
        token: CancellationToken | None = None,
        progress: ProgressHandler | None = None,
    ) -> BatchResult:
        """Fetch and correct every meter in ``meter_ids``.

        Args:
            meter_ids: Meters to load
            date_from: Inclusive range start
            date_to: Exclusive range end
            token: Cancellation signal, polled before each meter and page
            progress: Receives ("fetch", completed, total) after each meter

        Returns:
            BatchResult; each meter lands in exactly one of series / errors

        Raises:
            CancellationError: If cancelled; outstanding fetches are abandoned
        """
        result = BatchResult()
        semaphore = asyncio.Semaphore(self.concurrency)
        total = len(meter_ids)
        completed = 0

        async def process(meter_id: int) -> None:
            nonlocal completed
            async with semaphore:
                if token:
                    token.raise_if_cancelled()
                try:
                    samples = await self.fetch_meter(meter_id, date_from, date_to, token)
                except TransientStoreError as e:
                    logger.error("Giving up on meter %s: %s", meter_id, e.message)
                    result.errors[meter_id] = e.message
                else:
                    corrected = self.corrector.correct_series(samples)
                    result.series[meter_id] = corrected.samples
                    result.corrections[meter_id] = corrected.corrections
                completed += 1
                emit_progress(progress, "fetch", completed, total)

        tasks = [asyncio.create_task(process(meter_id)) for meter_id in meter_ids]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        logger.info(
            "Fetched %d of %d meters (%d failed)", len(result.series), total, len(result.errors)
        )
        return result


__all__ = ["BatchResult", "BatchRunner"]
