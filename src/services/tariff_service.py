"""Tariff resolution and pricing of meter consumption over a date range."""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Sequence

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.models.tariff import TariffBlock, TariffStructure, TariffTimePeriod
from src.services.channels import sample_energy
from src.services.errors import TransientStoreError, ValidationError
from src.services.options import ChannelSettings
from src.services.reading_store import ReadingSample

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
UNIT_PRECISION = Decimal("0.0001")

FIXED_CHARGE_TYPES = ("basic_monthly", "basic_charge")
ENERGY_BOTH_SEASONS = "energy_both_seasons"
ENERGY_HIGH_SEASON = "energy_high_season"
ENERGY_LOW_SEASON = "energy_low_season"
DEMAND_HIGH_SEASON = "demand_high_season"
DEMAND_LOW_SEASON = "demand_low_season"

SEASON_HIGH = "high_demand"
SEASON_LOW = "low_demand"
SEASON_ALL = "all_year"

DAY_WEEKEND = "weekend"
DAY_ALL = "all_days"
_WEEKDAY_NAMES = ("weekday",) * 5 + ("saturday", "sunday")


def _to_decimal(value: float | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _quantize(value: Decimal, precision: Decimal = CENTS) -> Decimal:
    return value.quantize(precision, rounding=ROUND_HALF_UP)


def _as_datetime(day: date) -> datetime:
    return datetime.combine(day, time.min)


def months_in_range(date_from: datetime, date_to: datetime) -> list[int]:
    """Calendar months (1-12) touched by ``[date_from, date_to)``."""
    months: list[int] = []
    year, month = date_from.year, date_from.month
    while datetime(year, month, 1) < date_to:
        months.append(month)
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return months


@dataclass(frozen=True)
class TariffReference:
    """How a meter points at its tariff: by id, or by name within an authority."""

    tariff_id: int | None = None
    name: str | None = None
    supply_authority: str | None = None

    @property
    def is_bound(self) -> bool:
        return self.tariff_id is not None or bool(self.name)

    def describe(self) -> str:
        if self.tariff_id is not None:
            return f"tariff #{self.tariff_id}"
        return f"tariff '{self.name}' ({self.supply_authority or 'no authority'})"


@dataclass
class PeriodCost:
    """Cost of the slice of the range covered by one tariff validity period."""

    tariff_id: int | None
    tariff_name: str
    date_from: datetime
    date_to: datetime
    quantity: float
    method: str
    energy_cost: Decimal
    fixed_charges: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "tariff_id": self.tariff_id,
            "tariff_name": self.tariff_name,
            "date_from": self.date_from.isoformat(),
            "date_to": self.date_to.isoformat(),
            "quantity": self.quantity,
            "method": self.method,
            "energy_cost": float(self.energy_cost),
            "fixed_charges": float(self.fixed_charges),
        }


@dataclass
class CostResult:
    """Cost breakdown for one meter, or the reason it could not be priced."""

    energy_cost: Decimal = Decimal("0.00")
    demand_cost: Decimal = Decimal("0.00")
    fixed_charges: Decimal = Decimal("0.00")
    total_cost: Decimal = Decimal("0.00")
    avg_cost_per_unit: Decimal = Decimal("0.0000")
    tariff_name: str | None = None
    periods: list[PeriodCost] = field(default_factory=list)
    unpriced_quantity: float = 0.0
    error: str | None = None

    @classmethod
    def failed(cls, message: str) -> "CostResult":
        return cls(error=message)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "energy_cost": float(self.energy_cost),
            "demand_cost": float(self.demand_cost),
            "fixed_charges": float(self.fixed_charges),
            "total_cost": float(self.total_cost),
            "avg_cost_per_unit": float(self.avg_cost_per_unit),
            "tariff_name": self.tariff_name,
            "periods": [p.to_dict() for p in self.periods],
            "unpriced_quantity": self.unpriced_quantity,
            "error": self.error,
        }


class TariffLookup(ABC):
    """Source of tariff validity periods."""

    @abstractmethod
    async def resolve(
        self, reference: TariffReference, date_from: datetime, date_to: datetime
    ) -> list[TariffStructure]:
        """Return every validity period of the referenced tariff overlapping the range."""


class SqlTariffLookup(TariffLookup):
    """Tariff lookup over the ``tariff_structures`` table.

    A reference by id pulls in the sibling validity periods (same name and
    supply authority) so a range crossing a tariff change is priced against
    each period in turn.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def resolve(
        self, reference: TariffReference, date_from: datetime, date_to: datetime
    ) -> list[TariffStructure]:
        try:
            async with self.session_factory() as session:
                name = reference.name
                authority = reference.supply_authority
                if reference.tariff_id is not None:
                    anchor = await session.get(TariffStructure, reference.tariff_id)
                    if anchor is None:
                        return []
                    name, authority = anchor.name, anchor.supply_authority
                if not name:
                    return []

                last_day = (date_to - timedelta(microseconds=1)).date()
                stmt = (
                    select(TariffStructure)
                    .where(
                        TariffStructure.name == name,
                        TariffStructure.supply_authority == authority,
                        TariffStructure.effective_from <= last_day,
                        or_(
                            TariffStructure.effective_to.is_(None),
                            TariffStructure.effective_to > date_from.date(),
                        ),
                    )
                    .order_by(TariffStructure.effective_from)
                )
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Failed to resolve {reference.describe()}: {e}") from e


def day_type_of(moment: datetime) -> str:
    return _WEEKDAY_NAMES[moment.weekday()]


def hour_matches(rule: TariffTimePeriod, hour: int) -> bool:
    """Hour ranges are ``[start, end)``; ``start > end`` wraps past midnight."""
    start, end = rule.start_hour, rule.end_hour
    if start == end:
        return True
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def _rule_specificity(rule: TariffTimePeriod, season: str, day_type: str) -> tuple[int, int] | None:
    if rule.season == season:
        season_rank = 1
    elif rule.season == SEASON_ALL:
        season_rank = 0
    else:
        return None

    if rule.day_type == day_type:
        day_rank = 2
    elif rule.day_type == DAY_WEEKEND and day_type in ("saturday", "sunday"):
        day_rank = 1
    elif rule.day_type == DAY_ALL:
        day_rank = 0
    else:
        return None
    return season_rank, day_rank


def price_blocks(blocks: Sequence[TariffBlock], quantity: Decimal) -> Decimal:
    """Fill blocks in ascending order; anything above the last bound uses its rate."""
    ordered = sorted(blocks, key=lambda b: _to_decimal(b.kwh_from or 0))
    remaining = quantity
    cost = Decimal(0)
    for block in ordered:
        if remaining <= 0:
            break
        if block.kwh_to is None:
            absorbed = remaining
        else:
            width = _to_decimal(block.kwh_to) - _to_decimal(block.kwh_from or 0)
            absorbed = min(remaining, max(width, Decimal(0)))
        cost += absorbed * _to_decimal(block.rate)
        remaining -= absorbed

    if remaining > 0 and ordered:
        cost += remaining * _to_decimal(ordered[-1].rate)
    return cost


class TariffEngine:
    """Prices a meter's consumption and demand against its tariff.

    The range is split at tariff validity boundaries and each slice is priced
    against the period in force, by TOU rules, the block table or flat
    seasonal charges, in that order of preference. Fixed charges apply once
    per touched period; demand is charged on the maximum demand in range.
    """

    def __init__(self, lookup: TariffLookup, high_season_months: Iterable[int] = (6, 7, 8)):
        self.lookup = lookup
        self.high_season_months = frozenset(high_season_months)

    def season_of(self, moment: datetime) -> str:
        return SEASON_HIGH if moment.month in self.high_season_months else SEASON_LOW

    def match_rule(
        self, rules: Sequence[TariffTimePeriod], moment: datetime
    ) -> TariffTimePeriod | None:
        """Most specific TOU rule for ``moment``; table order breaks ties."""
        season = self.season_of(moment)
        day_type = day_type_of(moment)
        best: TariffTimePeriod | None = None
        best_rank: tuple[int, int] | None = None
        for rule in rules:
            if not hour_matches(rule, moment.hour):
                continue
            rank = _rule_specificity(rule, season, day_type)
            if rank is None:
                continue
            if best_rank is None or rank > best_rank:
                best, best_rank = rule, rank
        return best

    async def calculate_cost(
        self,
        meter_id: int,
        reference: TariffReference,
        date_from: datetime,
        date_to: datetime,
        total_quantity: float,
        max_demand: float = 0.0,
        samples: Sequence[ReadingSample] = (),
        channels: ChannelSettings | None = None,
    ) -> CostResult:
        """Price ``total_quantity`` kWh and ``max_demand`` kVA over ``[date_from, date_to)``.

        Args:
            meter_id: Meter being priced (for logging)
            reference: Tariff the meter is bound to
            date_from: Inclusive range start
            date_to: Exclusive range end
            total_quantity: Consumption in kWh
            max_demand: Maximum demand in kVA
            samples: Interval samples behind ``total_quantity``; used for TOU
                pricing and to split consumption across validity periods
            channels: Channel settings used to read energy off the samples

        Returns:
            CostResult; ``error`` is set when the tariff is missing, inactive
            or carries no pricing structure

        Raises:
            ValidationError: If a quantity is negative or not a number, or the
                range is empty
            TransientStoreError: If the tariff lookup fails
        """
        for label, value in (("consumption", total_quantity), ("maximum demand", max_demand)):
            if value is None or math.isnan(value) or math.isinf(value) or value < 0:
                raise ValidationError(f"Invalid {label} {value} for meter {meter_id}")
        if date_from >= date_to:
            raise ValidationError(f"Empty date range {date_from} - {date_to}")

        tariffs = await self.lookup.resolve(reference, date_from, date_to)
        if not tariffs:
            logger.warning("Meter %s: no %s in force for the range", meter_id, reference.describe())
            return CostResult.failed(f"No {reference.describe()} in force for the range")

        active = [t for t in tariffs if t.is_active is not False]
        if not active:
            return CostResult.failed(f"Tariff '{tariffs[0].name}' is inactive")

        windows = self._split(active, date_from, date_to)
        if not windows:
            return CostResult.failed(f"No {reference.describe()} in force for the range")

        channels = channels or ChannelSettings()
        energy_by_sample = [(s, sample_energy(s, channels)) for s in samples]
        sampled_total = sum(e for _, e in energy_by_sample)
        span = (date_to - date_from).total_seconds()

        result = CostResult(tariff_name=active[-1].name)
        quantity = _to_decimal(total_quantity)
        priced_quantity = 0.0
        energy_cost = Decimal(0)
        fixed = Decimal(0)

        for tariff, start, end in windows:
            window_samples = [(s, e) for s, e in energy_by_sample if start <= s.timestamp < end]
            if energy_by_sample and sampled_total > 0:
                share = total_quantity * sum(e for _, e in window_samples) / sampled_total
            else:
                share = total_quantity * (end - start).total_seconds() / span

            priced = self._price_window(
                meter_id, tariff, start, end, share, window_samples, bool(energy_by_sample)
            )
            if isinstance(priced, str):
                return CostResult.failed(priced)
            cost, method, unpriced = priced

            period_fixed = sum(
                (_to_decimal(c.amount) for c in tariff.charges if c.charge_type in FIXED_CHARGE_TYPES),
                Decimal(0),
            )
            result.periods.append(
                PeriodCost(
                    tariff_id=tariff.id,
                    tariff_name=tariff.name,
                    date_from=start,
                    date_to=end,
                    quantity=share,
                    method=method,
                    energy_cost=_quantize(cost),
                    fixed_charges=_quantize(period_fixed),
                )
            )
            energy_cost += cost
            fixed += period_fixed
            priced_quantity += share - unpriced

        result.unpriced_quantity = max(0.0, total_quantity - priced_quantity)
        if result.unpriced_quantity > 1e-9:
            logger.warning(
                "Meter %s: %.3f kWh not covered by %s",
                meter_id,
                result.unpriced_quantity,
                reference.describe(),
            )

        demand_rate = self._demand_rate(windows[-1][0], date_from, date_to)
        result.energy_cost = _quantize(energy_cost)
        result.fixed_charges = _quantize(fixed)
        result.demand_cost = _quantize(demand_rate * _to_decimal(max_demand))
        result.total_cost = result.energy_cost + result.demand_cost + result.fixed_charges
        if quantity > 0:
            result.avg_cost_per_unit = _quantize(result.total_cost / quantity, UNIT_PRECISION)
        return result

    @staticmethod
    def _split(
        tariffs: Sequence[TariffStructure], date_from: datetime, date_to: datetime
    ) -> list[tuple[TariffStructure, datetime, datetime]]:
        """Clip each validity period to the range; overlaps go to the earlier period."""
        windows: list[tuple[TariffStructure, datetime, datetime]] = []
        cursor = date_from
        for tariff in sorted(tariffs, key=lambda t: t.effective_from):
            start = max(cursor, _as_datetime(tariff.effective_from))
            end = date_to if tariff.effective_to is None else min(date_to, _as_datetime(tariff.effective_to))
            if start >= end:
                continue
            windows.append((tariff, start, end))
            cursor = end
        return windows

    def _price_window(
        self,
        meter_id: int,
        tariff: TariffStructure,
        start: datetime,
        end: datetime,
        share: float,
        window_samples: Sequence[tuple[ReadingSample, float]],
        has_samples: bool = False,
    ) -> tuple[Decimal, str, float] | str:
        """Energy cost of one slice as ``(cost, method, unpriced kWh)``, or an error message.

        A time-of-use slice with no samples of its own is priced at zero when the
        meter has interval data elsewhere in the range; any share left over is
        reported as unpriced.
        """
        if tariff.time_periods and tariff.uses_tou is not False and (window_samples or has_samples):
            cost = Decimal(0)
            unpriced = 0.0 if window_samples else share
            for sample, energy in window_samples:
                rule = self.match_rule(tariff.time_periods, sample.timestamp)
                if rule is None:
                    unpriced += energy
                    continue
                cost += _to_decimal(energy) * _to_decimal(rule.rate)
            if unpriced:
                logger.warning(
                    "Meter %s: %.3f kWh outside every TOU rule of '%s'",
                    meter_id,
                    unpriced,
                    tariff.name,
                )
            return cost, "tou", unpriced

        if tariff.blocks:
            return price_blocks(tariff.blocks, _to_decimal(share)), "blocks", 0.0

        charges = {c.charge_type: _to_decimal(c.amount) for c in tariff.charges}
        if ENERGY_BOTH_SEASONS in charges:
            return _to_decimal(share) * charges[ENERGY_BOTH_SEASONS], "flat", 0.0

        all_high = all(m in self.high_season_months for m in months_in_range(start, end))
        if all_high and ENERGY_HIGH_SEASON in charges:
            return _to_decimal(share) * charges[ENERGY_HIGH_SEASON], "seasonal", 0.0
        if ENERGY_LOW_SEASON in charges:
            return _to_decimal(share) * charges[ENERGY_LOW_SEASON], "seasonal", 0.0
        if ENERGY_HIGH_SEASON in charges:
            return _to_decimal(share) * charges[ENERGY_HIGH_SEASON], "seasonal", 0.0

        if tariff.time_periods:
            return f"Tariff '{tariff.name}' needs interval readings for time-of-use pricing"
        return f"Tariff '{tariff.name}' has no energy pricing"

    def _demand_rate(self, tariff: TariffStructure, date_from: datetime, date_to: datetime) -> Decimal:
        charges = {c.charge_type: _to_decimal(c.amount) for c in tariff.charges}
        touches_high = any(m in self.high_season_months for m in months_in_range(date_from, date_to))
        key = DEMAND_HIGH_SEASON if touches_high else DEMAND_LOW_SEASON
        return charges.get(key, Decimal(0))


__all__ = [
    "CostResult",
    "PeriodCost",
    "SqlTariffLookup",
    "TariffEngine",
    "TariffLookup",
    "TariffReference",
    "day_type_of",
    "hour_matches",
    "months_in_range",
    "price_blocks",
]
