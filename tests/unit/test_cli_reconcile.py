"""Unit tests for the reconcile command line parser."""

import argparse
import signal
from datetime import datetime

import pytest

from src.cli.reconcile import build_parser, install_interrupt_handler, main, parse_period
from src.services.errors import CancellationError
from src.services.run_context import CancellationToken


class TestParsePeriod:
    def test_valid_period(self):
        period = parse_period("Jan:2024-01-01:2024-02-01")

        assert period.name == "Jan"
        assert period.date_from == datetime(2024, 1, 1)
        assert period.date_to == datetime(2024, 2, 1)

    def test_name_may_contain_colons(self):
        assert parse_period("Q1: early:2024-01-01:2024-02-01").name == "Q1: early"

    def test_invalid_period(self):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_period("Jan:2024-01-01")


class TestParser:
    def test_repeatable_periods(self):
        args = build_parser().parse_args(
            ["--site", "3", "--period", "a:2024-01-01:2024-01-02", "--period", "b:2024-01-02:2024-01-03"]
        )

        assert args.site == 3
        assert [p.name for p in args.period] == ["a", "b"]
        assert not args.save

    def test_single_range(self):
        args = build_parser().parse_args(["--site", "1", "--from", "2024-01-01", "--to", "2024-02-01", "--save"])

        assert args.date_from == datetime(2024, 1, 1)
        assert args.save

    @pytest.mark.asyncio
    async def test_range_or_period_required(self):
        assert await main(["--site", "1", "--from", "2024-01-01"]) == 1


class TestInterruptHandler:
    @pytest.mark.asyncio
    async def test_sigint_cancels_the_token(self):
        token = CancellationToken()
        remove_handler = install_interrupt_handler(token)
        try:
            signal.raise_signal(signal.SIGINT)
            with pytest.raises(CancellationError):
                await token.sleep(2)
        finally:
            remove_handler()

        assert token.cancelled
