"""Unit tests for channel classification and series summaries."""

from datetime import datetime, timedelta

import pytest

from src.services.channels import (
    is_demand_channel,
    is_energy_channel,
    sample_energy,
    summarize_series,
)
from src.services.options import ChannelOperation, ChannelSettings
from src.services.reading_store import ReadingSample

START = datetime(2024, 1, 1)


def sample(offset, **values):
    return ReadingSample(1, START + timedelta(minutes=30 * offset), values)


def test_channel_kinds():
    assert is_energy_channel("P1 (kWh)")
    assert is_energy_channel("p2")
    assert not is_energy_channel("kVA")
    assert is_demand_channel("kVA")
    assert is_demand_channel("S")
    assert not is_demand_channel("kWh")


def test_demand_channels_feed_maxima_only():
    series = [sample(0, kWh=2.0, kVA=5.0), sample(1, kWh=3.0, kVA=8.0)]

    totals = summarize_series(series, ChannelSettings())

    assert totals.channel_totals == {"kWh": 5.0}
    assert totals.channel_maxima == {"kWh": 3.0, "kVA": 8.0}
    assert totals.max_demand == 8.0
    assert totals.total == 5.0
    assert totals.readings_count == 2


def test_operations_and_factors():
    channels = ChannelSettings(
        operations={"V": ChannelOperation.AVERAGE, "kW": ChannelOperation.MAX},
        factors={"kWh": 2.0},
    )
    series = [sample(0, kWh=1.0, V=230.0, kW=4.0), sample(1, kWh=2.0, V=240.0, kW=6.0)]

    totals = summarize_series(series, channels)

    assert totals.channel_totals["kWh"] == pytest.approx(6.0)
    assert totals.channel_totals["V"] == pytest.approx(235.0)
    assert "kW" not in totals.channel_totals
    assert totals.channel_maxima["kW"] == 6.0


def test_selection_and_sign_split():
    channels = ChannelSettings(selected=["import", "export"])
    series = [sample(0, **{"import": 10.0, "export": -4.0, "other": 100.0})]

    totals = summarize_series(series, channels)

    assert totals.total_positive == 10.0
    assert totals.total_negative == -4.0
    assert totals.total == 6.0
    assert "other" not in totals.channel_totals


def test_empty_series():
    totals = summarize_series([], ChannelSettings())

    assert not totals.has_data
    assert totals.total == 0.0
    assert totals.max_demand == 0.0


def test_sample_energy_ignores_demand_and_non_sum_channels():
    channels = ChannelSettings(factors={"kWh": 10.0}, operations={"V": ChannelOperation.AVERAGE})

    assert sample_energy(sample(0, kWh=1.5, kVA=9.0, V=230.0), channels) == pytest.approx(15.0)
