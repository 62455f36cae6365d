"""Annotated scalar types shared by the truth contracts."""

from __future__ import annotations

import math
import re
from datetime import date
from typing import Annotated

from pydantic import AfterValidator

_DAY_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _validate_day_key(value: str) -> str:
    if not _DAY_KEY_RE.match(value):
        raise ValueError("day must be formatted YYYY-MM-DD")
    try:
        date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"day is not a calendar date: {value}") from exc
    return value


def _validate_finite(value: int | float) -> int | float:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError("number must be finite")
    return value


def _validate_non_empty(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be empty")
    return stripped


DayKey = Annotated[str, AfterValidator(_validate_day_key)]
FiniteNumber = Annotated[int | float, AfterValidator(_validate_finite)]
NonEmptyStr = Annotated[str, AfterValidator(_validate_non_empty)]


def is_finite_number(value: object) -> bool:
    """True for real ints/floats; bools and NaN/inf are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def is_day_key(value: object) -> bool:
    if not isinstance(value, str):
        return False
    try:
        _validate_day_key(value)
    except ValueError:
        return False
    return True
