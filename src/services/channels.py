"""Channel classification and per-meter totals over a reading series."""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from src.services.options import ChannelOperation, ChannelSettings
from src.services.reading_store import ReadingSample

_REGISTER_CHANNEL = re.compile(r"^p\d+$", re.IGNORECASE)


def is_demand_channel(channel: str) -> bool:
    """Apparent-power channels (kVA, S) feed maxima, never energy totals."""
    lowered = channel.lower()
    return "kva" in lowered or lowered == "s"


def is_energy_channel(channel: str) -> bool:
    lowered = channel.lower()
    return "kwh" in lowered or bool(_REGISTER_CHANNEL.match(lowered))


@dataclass
class MeterTotals:
    """Collapsed channel figures for one meter's series.

    ``total`` is the signed sum of energy channel totals; ``total_positive``
    and ``total_negative`` split it by sign (negative channels are exports).
    """

    total: float = 0.0
    total_positive: float = 0.0
    total_negative: float = 0.0
    channel_totals: dict[str, float] = field(default_factory=dict)
    channel_maxima: dict[str, float] = field(default_factory=dict)
    readings_count: int = 0

    @property
    def has_data(self) -> bool:
        return self.readings_count > 0

    @property
    def max_demand(self) -> float:
        demand = [v for k, v in self.channel_maxima.items() if is_demand_channel(k)]
        return max(demand) if demand else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "total_positive": self.total_positive,
            "total_negative": self.total_negative,
            "channel_totals": dict(self.channel_totals),
            "channel_maxima": dict(self.channel_maxima),
            "readings_count": self.readings_count,
            "max_demand": self.max_demand,
        }


def summarize_series(samples: Iterable[ReadingSample], channels: ChannelSettings) -> MeterTotals:
    """Apply channel selection, operations and factors to a series.

    Sum and average channels land in ``channel_totals``; max-operation and
    demand channels land in ``channel_maxima`` only. Every selected channel
    also reports its (factored) maximum.
    """
    sums: dict[str, float] = {}
    counts: dict[str, int] = {}
    maxima: dict[str, float] = {}
    readings_count = 0

    for sample in samples:
        readings_count += 1
        for channel, value in sample.values.items():
            if not channels.includes(channel) or value is None or math.isnan(value):
                continue
            sums[channel] = sums.get(channel, 0.0) + value
            counts[channel] = counts.get(channel, 0) + 1
            maxima[channel] = max(maxima.get(channel, -math.inf), value)

    totals = MeterTotals(readings_count=readings_count)
    for channel, raw_sum in sums.items():
        factor = channels.factor(channel)
        operation = channels.operation(channel)
        totals.channel_maxima[channel] = maxima[channel] * factor

        if operation == ChannelOperation.MAX or is_demand_channel(channel):
            continue
        if operation == ChannelOperation.AVERAGE:
            value = raw_sum / counts[channel]
        else:
            value = raw_sum
        totals.channel_totals[channel] = value * factor

    for value in totals.channel_totals.values():
        if value > 0:
            totals.total_positive += value
        elif value < 0:
            totals.total_negative += value
    totals.total = totals.total_positive + totals.total_negative
    return totals


def sample_energy(sample: ReadingSample, channels: ChannelSettings) -> float:
    """Energy carried by one sample: factored sum of its selected energy-like channels."""
    energy = 0.0
    for channel, value in sample.values.items():
        if not channels.includes(channel) or value is None or math.isnan(value):
            continue
        if is_demand_channel(channel) or channels.operation(channel) != ChannelOperation.SUM:
            continue
        energy += value * channels.factor(channel)
    return energy


__all__ = [
    "MeterTotals",
    "is_demand_channel",
    "is_energy_channel",
    "sample_energy",
    "summarize_series",
]
