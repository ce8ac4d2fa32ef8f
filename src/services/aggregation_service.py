"""Bottom-up synthesis of parent meter readings from their children."""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Collection, Mapping, Sequence

from src.services.correction_service import CorrectedReading, merge_corrections
from src.services.hierarchy_service import MeterHierarchy
from src.services.reading_store import DERIVED_IMPORT_MARKER, ReadingSample, ReadingStore
from src.services.run_context import CancellationToken, ProgressHandler, emit_progress

logger = logging.getLogger(__name__)


@dataclass
class AggregationResult:
    """Derived series and inherited corrections per parent meter.

    ``missing`` lists, per parent, the children that contributed nothing
    because their readings could not be fetched.
    """

    series: dict[int, list[ReadingSample]] = field(default_factory=dict)
    corrections: dict[int, list[CorrectedReading]] = field(default_factory=dict)
    missing: dict[int, list[int]] = field(default_factory=dict)


def sum_series(
    meter_id: int,
    contributions: Sequence[tuple[Sequence[ReadingSample], int]],
) -> list[ReadingSample]:
    """Align ``(series, sign)`` contributions by timestamp and sum channel values."""
    buckets: dict[datetime, dict[str, float]] = {}
    for series, sign in contributions:
        for sample in series:
            bucket = buckets.setdefault(sample.timestamp, {})
            for channel, value in sample.values.items():
                if value is None or math.isnan(value):
                    continue
                bucket[channel] = bucket.get(channel, 0.0) + sign * value

    return [
        ReadingSample(
            meter_id=meter_id,
            timestamp=timestamp,
            values=values,
            import_marker=DERIVED_IMPORT_MARKER,
        )
        for timestamp, values in sorted(buckets.items())
    ]


class Aggregator:
    """Materializes derived readings for every parent meter, leaves first.

    Each run is a full replace: derived readings of all in-scope parents are
    discarded before anything is written, and each parent's new set is
    committed atomically.
    """

    def __init__(self, store: ReadingStore):
        self.store = store

    async def run(
        self,
        hierarchy: MeterHierarchy,
        leaf_series: Mapping[int, Sequence[ReadingSample]],
        leaf_corrections: Mapping[int, Sequence[CorrectedReading]],
        date_from: datetime,
        date_to: datetime,
        negative_meter_ids: Collection[int] = (),
        token: CancellationToken | None = None,
        progress: ProgressHandler | None = None,
    ) -> AggregationResult:
        """Aggregate every parent of ``hierarchy`` over ``[date_from, date_to)``.

        Args:
            hierarchy: Resolved meter forest
            leaf_series: Corrected series of successfully fetched leaves
            leaf_corrections: Corrections applied to each leaf's series
            date_from: Inclusive range start
            date_to: Exclusive range end
            negative_meter_ids: Meters of opposite polarity to the grid. A child is
                subtracted when its polarity differs from its parent's and
                added when they match
            token: Cancellation signal, polled before each parent
            progress: Receives ("aggregate", done, total) after each parent

        Returns:
            AggregationResult with one derived series per parent

        Raises:
            CancellationError: If cancelled between parents
            TransientStoreError: If the store rejects a write
        """
        parents = hierarchy.parents_bottom_up
        result = AggregationResult()
        if not parents:
            return result

        if token:
            token.raise_if_cancelled()
        await self.store.delete_derived(parents, date_from, date_to)

        negative = set(negative_meter_ids)
        for index, parent_id in enumerate(parents, start=1):
            if token:
                token.raise_if_cancelled()

            contributions: list[tuple[Sequence[ReadingSample], int]] = []
            correction_groups: list[Sequence[CorrectedReading]] = []
            for child_id in hierarchy.children[parent_id]:
                if hierarchy.is_parent(child_id):
                    series = result.series.get(child_id)
                    corrections = result.corrections.get(child_id, [])
                else:
                    series = leaf_series.get(child_id)
                    corrections = leaf_corrections.get(child_id, [])

                if series is None:
                    result.missing.setdefault(parent_id, []).append(child_id)
                    logger.warning(
                        "Meter %s has no readings for parent %s; aggregating without it",
                        child_id,
                        parent_id,
                    )
                    continue

                # Signs are relative to the parent, so a negative board sums its
                # negative children as a magnitude and is subtracted once above.
                sign = -1 if (child_id in negative) != (parent_id in negative) else 1
                contributions.append((series, sign))
                correction_groups.append(corrections)

            derived = sum_series(parent_id, contributions)
            await self.store.replace_derived(parent_id, date_from, date_to, derived)

            result.series[parent_id] = derived
            result.corrections[parent_id] = merge_corrections(*correction_groups)
            logger.debug(
                "Aggregated %d readings for parent meter %s from %d children",
                len(derived),
                parent_id,
                len(contributions),
            )
            emit_progress(progress, "aggregate", index, len(parents))

        logger.info("Aggregated %d parent meters", len(parents))
        return result


__all__ = ["AggregationResult", "Aggregator", "sum_series"]
