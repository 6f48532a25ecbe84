"""Tests for shared script argument helpers."""

import argparse

import pytest

from src.utils.cli import parse_week_range


class TestWeekRange:
    @pytest.mark.parametrize("value,expected", [("3-8", (3, 8)), ("5", (5, 5)), ("1-1", (1, 1))])
    def test_valid(self, value, expected):
        assert parse_week_range(value) == expected

    @pytest.mark.parametrize("value", ["x", "3-", "a-b", ""])
    def test_not_a_number(self, value):
        with pytest.raises(argparse.ArgumentTypeError, match="Invalid week range"):
            parse_week_range(value)

    def test_reversed(self):
        with pytest.raises(argparse.ArgumentTypeError, match="ends before it starts"):
            parse_week_range("8-3")

    def test_as_argparse_type(self):
        parser = argparse.ArgumentParser()
        parser.add_argument("--weeks", type=parse_week_range, default=None)
        assert parser.parse_args(["--weeks", "2-6"]).weeks == (2, 6)
        assert parser.parse_args([]).weeks is None
