from __future__ import annotations

from decimal import Decimal

import pytest

from branch import comparison_matches
from lexer import CriticalError
from numhelper import (
    BIGGER,
    EQUAL,
    NOT_EQUAL,
    NUMBER_DECIMAL,
    NUMBER_INTEGER,
    NUMBER_STRING,
    SMALLER,
    VersionEx,
    compare_string_number,
    parse_int32,
    parse_int64,
    parse_number,
)


def test_parse_int32_range() -> None:
    assert parse_int32("42") == 42
    assert parse_int32(" -7 ") == -7
    assert parse_int32("2147483648") is None
    assert parse_int32("abc") is None


def test_parse_int64_accepts_hex() -> None:
    assert parse_int64("0x10") == 16
    assert parse_int64("9223372036854775807") == 9223372036854775807
    assert parse_int64("9223372036854775808") is None
    assert parse_int64("0xZZ") is None


def test_parse_number_kinds() -> None:
    assert parse_number("12") == (NUMBER_INTEGER, 12)
    assert parse_number("0xff") == (NUMBER_INTEGER, 255)
    assert parse_number("1.50") == (NUMBER_DECIMAL, Decimal("1.50"))
    assert parse_number("-3") == (NUMBER_STRING, None)
    assert parse_number("") == (NUMBER_STRING, None)


def test_version_parse() -> None:
    assert VersionEx.parse("10.0.19041") == VersionEx(10, 0, 19041, -1)
    assert VersionEx.parse("1.2.3.4.5") is None
    assert VersionEx.parse("1.x") is None


def test_versions_compare_before_numbers() -> None:
    assert compare_string_number("1.10", "1.9") == BIGGER
    assert compare_string_number("2", "10") == SMALLER
    assert compare_string_number("5", "05") == EQUAL


def test_numbers_and_decimals() -> None:
    assert compare_string_number("0x10", "16") == EQUAL
    assert compare_string_number("1.5", "0x1") == BIGGER


def test_strings_only_compare_for_equality() -> None:
    assert compare_string_number("abc", "ABC") == EQUAL
    assert compare_string_number("abc", "ABC", ignore_case=False) == NOT_EQUAL
    assert compare_string_number("apple", "banana") == NOT_EQUAL


def test_match_table() -> None:
    assert comparison_matches("Equal", False, EQUAL)
    assert comparison_matches("Equal", True, NOT_EQUAL)
    assert not comparison_matches("Equal", True, EQUAL)
    assert comparison_matches("SmallerEqual", False, SMALLER)
    assert not comparison_matches("Smaller", False, NOT_EQUAL)
    assert comparison_matches("BiggerEqual", True, SMALLER)
    assert not comparison_matches("Bigger", True, BIGGER)


def test_unknown_comparison_is_critical() -> None:
    with pytest.raises(CriticalError):
        comparison_matches("Sideways", False, EQUAL)
