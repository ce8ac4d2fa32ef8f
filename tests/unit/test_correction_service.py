"""Unit tests for ValueCorrector."""

import math
from datetime import datetime

import pytest

from fakes import make_series
from src.config.settings import Settings
from src.services.correction_service import (
    CorrectedReading,
    CorruptionThresholds,
    ValueCorrector,
    merge_corrections,
)
from src.services.reading_store import ReadingSample

START = datetime(2024, 3, 1)


@pytest.fixture
def corrector():
    return ValueCorrector()


class TestCheck:
    """Plausibility rule per channel kind."""

    def test_energy_threshold(self, corrector):
        assert corrector.check(9999.99, "kWh") is None
        assert corrector.check(10000, "kWh") is not None
        assert corrector.check(-10000, "P1 (kWh)") is not None

    def test_register_channel_counts_as_energy(self, corrector):
        assert corrector.check(12000, "P2") is not None

    def test_demand_threshold(self, corrector):
        assert corrector.check(20000, "kVA") is None
        assert corrector.check(50000, "kVA") is not None
        assert corrector.check(60000, "S") is not None

    def test_other_channel_threshold(self, corrector):
        assert corrector.check(60000, "Q (kvarh)") is None
        assert corrector.check(100000, "Q (kvarh)") is not None

    def test_nan_is_corrupt(self, corrector):
        assert corrector.check(math.nan, "kWh") is not None

    def test_thresholds_from_settings(self):
        settings = Settings(max_kwh_per_interval=500)
        corrector = ValueCorrector(CorruptionThresholds.from_settings(settings))
        assert corrector.check(499, "kWh") is None
        assert corrector.check(500, "kWh") is not None


class TestCorrectSeries:
    """Neighbour interpolation."""

    def test_interpolates_from_both_neighbours(self, corrector):
        series = make_series(1, START, [10, 10000, 12])

        result = corrector.correct_series(series)

        assert [s.values["kWh"] for s in result.samples] == [10, 11, 12]
        assert len(result.corrections) == 1
        correction = result.corrections[0]
        assert correction.original_value == 10000
        assert correction.corrected_value == 11
        assert correction.previous_value == 10
        assert correction.next_value == 12
        assert correction.channel == "kWh"
        assert correction.source_meter_id == 1
        assert "10.00" in correction.reason and "12.00" in correction.reason

    def test_does_not_mutate_input(self, corrector):
        series = make_series(1, START, [10, 10000, 12])

        corrector.correct_series(series)

        assert series[1].values["kWh"] == 10000

    def test_single_valid_neighbour(self, corrector):
        series = make_series(1, START, [20000, 7])

        result = corrector.correct_series(series)

        assert result.samples[0].values["kWh"] == 7
        assert result.corrections[0].previous_value is None

    def test_corrupt_neighbour_is_not_used(self, corrector):
        series = make_series(1, START, [5, 20000, 30000, 9])

        result = corrector.correct_series(series)

        assert result.samples[1].values["kWh"] == 5
        assert result.samples[2].values["kWh"] == 9
        assert len(result.corrections) == 2

    def test_no_valid_neighbours_keeps_value_and_flags(self, corrector):
        series = make_series(1, START, [20000])

        result = corrector.correct_series(series)

        assert result.samples[0].values["kWh"] == 20000
        assert len(result.corrections) == 1
        assert "left unchanged" in result.corrections[0].reason

    def test_only_the_corrupt_channel_changes(self, corrector):
        samples = [
            ReadingSample(1, START, {"kWh": 4, "kVA": 10}),
            ReadingSample(1, START.replace(minute=30), {"kWh": 15000, "kVA": 12}),
            ReadingSample(1, START.replace(hour=1), {"kWh": 6, "kVA": 11}),
        ]

        result = corrector.correct_series(samples)

        assert result.samples[1].values == {"kWh": 5, "kVA": 12}
        assert result.samples[0] is samples[0]

    def test_clean_series_has_no_corrections(self, corrector):
        result = corrector.correct_series(make_series(1, START, [1, 2, 3]))

        assert result.corrections == []


class TestMergeCorrections:
    def test_duplicates_are_dropped(self):
        a = CorrectedReading(1, START, "kWh", 10000, 11, "r")
        b = CorrectedReading(2, START, "kWh", 20000, 3, "r")

        merged = merge_corrections([a, b], [a], [b])

        assert merged == [a, b]
