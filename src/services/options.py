"""Run request options threaded explicitly through every reconciliation stage."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class MeterCategory(str, Enum):
    """Reconciliation bucket a meter's consumption is totalled into."""

    GRID_SUPPLY = "grid_supply"
    SOLAR = "solar"
    TENANT = "tenant"
    CHECK = "check"
    UNASSIGNED = "unassigned"


class ChannelOperation(str, Enum):
    """How a channel's interval values collapse into one figure."""

    SUM = "sum"
    AVERAGE = "average"
    MAX = "max"


class ChannelSettings(BaseModel):
    """Channel selection, per-channel operation and multiplicative factor.

    ``selected`` of None means every channel found in the readings is used.
    """

    model_config = ConfigDict(frozen=True)

    selected: list[str] | None = None
    operations: dict[str, ChannelOperation] = Field(default_factory=dict)
    factors: dict[str, float] = Field(default_factory=dict)

    def includes(self, channel: str) -> bool:
        return self.selected is None or channel in self.selected

    def operation(self, channel: str) -> ChannelOperation:
        return self.operations.get(channel, ChannelOperation.SUM)

    def factor(self, channel: str) -> float:
        return float(self.factors.get(channel, 1.0))


class ReconciliationOptions(BaseModel):
    """Saved configuration for one reconciliation request.

    Attributes:
        channels: Channel selection / operations / factors
        assignments: Meter id -> category; meters not listed default by type
        meter_order: Explicit meter ordering (ids); default is type priority
        negative_meter_ids: Meters of opposite polarity to the grid, subtracted
            by a positive parent and summed by a negative one; None means
            every meter in the solar category
        indent_levels: Meter id -> indent level, used to derive connections
            when the site stores none
        enable_revenue: Price meters against their tariffs
        prefer_hierarchical_totals: Use aggregated totals for parent meters
            in category totals instead of their own measured readings
    """

    channels: ChannelSettings = Field(default_factory=ChannelSettings)
    assignments: dict[int, MeterCategory] = Field(default_factory=dict)
    meter_order: list[int] | None = None
    negative_meter_ids: list[int] | None = None
    indent_levels: dict[int, int] | None = None
    enable_revenue: bool = False
    prefer_hierarchical_totals: bool = False


__all__ = ["MeterCategory", "ChannelOperation", "ChannelSettings", "ReconciliationOptions"]
