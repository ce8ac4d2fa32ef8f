"""Detection and interpolation of implausible channel samples."""

import dataclasses
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from src.config.settings import Settings
from src.services.channels import is_demand_channel, is_energy_channel
from src.services.reading_store import ReadingSample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CorruptionThresholds:
    """Largest plausible absolute value of one interval sample, per channel kind."""

    max_kwh: float = 10000.0
    max_kva: float = 50000.0
    max_other: float = 100000.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "CorruptionThresholds":
        return cls(
            max_kwh=settings.max_kwh_per_interval,
            max_kva=settings.max_kva_per_interval,
            max_other=settings.max_other_value,
        )


@dataclass(frozen=True)
class CorrectedReading:
    """Audit record of one corrected channel value.

    Records are immutable; ancestors of the source meter carry the same record.
    """

    source_meter_id: int
    timestamp: datetime
    channel: str
    original_value: float
    corrected_value: float
    reason: str
    previous_value: float | None = None
    next_value: float | None = None

    @property
    def key(self) -> tuple[int, datetime, str]:
        return (self.source_meter_id, self.timestamp, self.channel)

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class CorrectionResult:
    samples: list[ReadingSample]
    corrections: list[CorrectedReading]


def merge_corrections(*groups: Sequence[CorrectedReading]) -> list[CorrectedReading]:
    """Union correction lists, dropping repeats of the same sample/channel."""
    seen: set[tuple[int, datetime, str]] = set()
    merged: list[CorrectedReading] = []
    for group in groups:
        for correction in group:
            if correction.key in seen:
                continue
            seen.add(correction.key)
            merged.append(correction)
    return merged


class ValueCorrector:
    """Flags implausible channel values and interpolates them from neighbours.

    A flagged value is replaced by the mean of the previous and next samples of
    the same channel when both are valid, by the single valid neighbour
    otherwise, and kept as-is (still flagged) when neither is usable.
    """

    def __init__(self, thresholds: CorruptionThresholds | None = None):
        self.thresholds = thresholds or CorruptionThresholds()

    def check(self, value: float, channel: str) -> str | None:
        """Return the reason a value is implausible for ``channel``, or None."""
        if value is None or math.isnan(value) or math.isinf(value):
            return f"Value {value} is not a finite number"

        magnitude = abs(value)
        if is_energy_channel(channel):
            limit, label = self.thresholds.max_kwh, "kWh"
        elif is_demand_channel(channel):
            limit, label = self.thresholds.max_kva, "kVA"
        else:
            limit, label = self.thresholds.max_other, "channel"

        if magnitude >= limit:
            return f"Value {value:,.2f} reaches max {label} threshold {limit:,.0f}"
        return None

    def _neighbour(self, sample: ReadingSample | None, channel: str) -> float | None:
        if sample is None:
            return None
        value = sample.values.get(channel)
        if value is None or self.check(value, channel) is not None:
            return None
        return float(value)

    def correct_series(self, samples: Sequence[ReadingSample]) -> CorrectionResult:
        """Return a corrected copy of a single meter's time-ordered series.

        The input samples are left untouched.
        """
        corrected: list[ReadingSample] = []
        corrections: list[CorrectedReading] = []

        for index, sample in enumerate(samples):
            previous = samples[index - 1] if index > 0 else None
            following = samples[index + 1] if index + 1 < len(samples) else None
            new_values: dict[str, float] | None = None

            for channel, value in sample.values.items():
                problem = self.check(value, channel)
                if problem is None:
                    continue

                prev_value = self._neighbour(previous, channel)
                next_value = self._neighbour(following, channel)
                if prev_value is not None and next_value is not None:
                    fixed = (prev_value + next_value) / 2
                    how = f"interpolated from neighbours ({prev_value:.2f}, {next_value:.2f})"
                elif prev_value is not None:
                    fixed = prev_value
                    how = f"used previous value ({prev_value:.2f})"
                elif next_value is not None:
                    fixed = next_value
                    how = f"used next value ({next_value:.2f})"
                else:
                    fixed = value
                    how = "left unchanged (no valid neighbours)"

                logger.warning(
                    "Corrupt value on meter %s @ %s - %s: %s -> %s (%s)",
                    sample.meter_id,
                    sample.timestamp.isoformat(),
                    channel,
                    value,
                    fixed,
                    how,
                )
                corrections.append(
                    CorrectedReading(
                        source_meter_id=sample.meter_id,
                        timestamp=sample.timestamp,
                        channel=channel,
                        original_value=value,
                        corrected_value=fixed,
                        reason=f"{problem}; {how}",
                        previous_value=prev_value,
                        next_value=next_value,
                    )
                )
                if new_values is None:
                    new_values = dict(sample.values)
                new_values[channel] = fixed

            if new_values is None:
                corrected.append(sample)
            else:
                corrected.append(dataclasses.replace(sample, values=new_values))

        return CorrectionResult(samples=corrected, corrections=corrections)


__all__ = [
    "CorrectedReading",
    "CorrectionResult",
    "CorruptionThresholds",
    "ValueCorrector",
    "merge_corrections",
]
