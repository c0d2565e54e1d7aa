from __future__ import annotations
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple, Union

import numpy as np


INT32 = np.iinfo(np.int32)
INT64 = np.iinfo(np.int64)

_DEC_INT_RE = re.compile(r"^[0-9]+$")
_HEX_INT_RE = re.compile(r"^0x[0-9a-zA-Z]+$")
_DECIMAL_RE = re.compile(r"^([0-9]+)\.([0-9]+)$")
_SIGNED_INT_RE = re.compile(r"^\s*[+-]?[0-9]+\s*$")

NUMBER_STRING = "String"
NUMBER_INTEGER = "Integer"
NUMBER_DECIMAL = "Decimal"

EQUAL = "Equal"
NOT_EQUAL = "NotEqual"
SMALLER = "Smaller"
BIGGER = "Bigger"


def _in_range(value: int, info: "np.iinfo") -> bool:
    return int(info.min) <= value <= int(info.max)


def parse_int32(text: str) -> Optional[int]:
    if not _SIGNED_INT_RE.match(text):
        return None
    value = int(text.strip())
    return value if _in_range(value, INT32) else None


def parse_int64(text: str) -> Optional[int]:
    """Parse a signed decimal or 0x-prefixed hex integer in the 64-bit range."""
    stripped = text.strip()
    if stripped[:2].lower() == "0x":
        digits = stripped[2:]
        if not digits or not all(ch in "0123456789abcdefABCDEF" for ch in digits):
            return None
        value = int(digits, 16)
    elif _SIGNED_INT_RE.match(stripped):
        value = int(stripped)
    else:
        return None
    return value if _in_range(value, INT64) else None


def parse_number(text: str) -> Tuple[str, Union[int, Decimal, None]]:
    """Classify text as an unsigned integer, hex integer, decimal, or plain string."""
    if not text:
        return NUMBER_STRING, None
    if _DEC_INT_RE.match(text):
        value = int(text)
        return (NUMBER_INTEGER, value) if _in_range(value, INT64) else (NUMBER_STRING, None)
    if _HEX_INT_RE.match(text):
        try:
            value = int(text[2:], 16)
        except ValueError:
            return NUMBER_STRING, None
        return (NUMBER_INTEGER, value) if _in_range(value, INT64) else (NUMBER_STRING, None)
    if _DECIMAL_RE.match(text):
        try:
            return NUMBER_DECIMAL, Decimal(text)
        except InvalidOperation:
            return NUMBER_STRING, None
    return NUMBER_STRING, None


@dataclass(frozen=True, order=True)
class VersionEx:
    """Dotted version with one to four parts. Missing build and revision sort as -1."""

    major: int
    minor: int = 0
    build: int = -1
    revision: int = -1

    @classmethod
    def parse(cls, text: str) -> Optional["VersionEx"]:
        parts = text.split(".")
        if not 1 <= len(parts) <= 4:
            return None
        numbers = [0, 0, -1, -1]
        for idx, part in enumerate(parts):
            value = parse_int32(part)
            if value is None or value < 0:
                return None
            numbers[idx] = value
        return cls(*numbers)


def _three_way(left: Any, right: Any) -> str:
    if left < right:
        return SMALLER
    if left == right:
        return EQUAL
    return BIGGER


def compare_string_number(left: str, right: str, ignore_case: bool = True) -> str:
    """Compare two operands as versions, numbers, or strings.

    Strings never order against each other, so the result for them is only
    Equal or NotEqual.
    """
    v1 = VersionEx.parse(left)
    v2 = VersionEx.parse(right)
    if v1 is not None and v2 is not None:
        return _three_way(v1, v2)

    type1, n1 = parse_number(left)
    type2, n2 = parse_number(right)
    if type1 == NUMBER_INTEGER and type2 == NUMBER_INTEGER:
        return _three_way(n1, n2)
    if type1 != NUMBER_STRING and type2 != NUMBER_STRING:
        return _three_way(Decimal(n1), Decimal(n2))

    if ignore_case:
        same = left.upper() == right.upper()
    else:
        same = left == right
    return EQUAL if same else NOT_EQUAL
