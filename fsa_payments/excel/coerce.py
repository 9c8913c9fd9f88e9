from __future__ import annotations

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import pandas as pd

from ..models.config_models import StateInfo
from .heuristics import is_blank_cell, normalize_header

"""Cell value coercion to canonical PaymentRecord types.

All functions return None for blank input and raise RowCoercionError for
values that cannot be interpreted; the normalizer counts and skips such rows.
"""

__all__ = [
    "RowCoercionError",
    "parse_currency",
    "pad_code",
    "clean_text",
    "parse_date",
    "canonical_program",
    "StateLookup",
]

CENTS = Decimal("0.01")
STATE_CODE_WIDTH = 2
COUNTY_CODE_WIDTH = 3
ZIP_WIDTH = 5
# archive column is decimal128(18, 2)
MAX_AMOUNT = Decimal("1e16")

_CURRENCY_STRIP = re.compile(r"[\s$,]")
_WHOLE_FLOAT = re.compile(r"^(\d+)\.0+$")


class RowCoercionError(Exception):
    """Raised when a single row cannot be coerced; the row is skipped."""


def parse_currency(value: Any) -> Decimal | None:
    """Currency cell -> Decimal quantized to cents.

    >>> parse_currency("$1,234.56")
    Decimal('1234.56')
    >>> parse_currency("(500.00)")
    Decimal('-500.00')
    """
    if is_blank_cell(value):
        return None
    if isinstance(value, bool):
        raise RowCoercionError(f"invalid currency value: {value!r}")
    if isinstance(value, (int, float, Decimal)):
        text = str(value)
    else:
        text = _CURRENCY_STRIP.sub("", str(value))
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    elif text.endswith("-") and text[:-1]:
        # 末尾マイナス表記 (mainframe export)
        negative = True
        text = text[:-1]
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise RowCoercionError(f"invalid currency value: {value!r}") from None
    if not amount.is_finite():
        raise RowCoercionError(f"invalid currency value: {value!r}")
    if negative:
        amount = -amount
    try:
        amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise RowCoercionError(f"currency value out of range: {value!r}") from None
    if abs(amount) >= MAX_AMOUNT:
        raise RowCoercionError(f"currency value out of range: {value!r}")
    return amount


def pad_code(value: Any, width: int) -> str | None:
    """Left-zero-pad a numeric administrative code to a fixed width.

    >>> pad_code("6", 3)
    '006'
    >>> pad_code(6.0, 2)
    '06'
    """
    if is_blank_cell(value):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            raise RowCoercionError(f"invalid code value: {value!r}")
        text = str(int(value))
    else:
        text = str(value).strip()
        m = _WHOLE_FLOAT.match(text)
        if m:
            text = m.group(1)
    if not text.isdigit():
        raise RowCoercionError(f"invalid code value: {value!r}")
    text = text.lstrip("0") or "0"
    if len(text) > width:
        raise RowCoercionError(f"code {value!r} wider than {width} digits")
    return text.zfill(width)


def clean_text(value: Any) -> str | None:
    if is_blank_cell(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def clean_zip(value: Any) -> str | None:
    """Zip codes lose leading zeros when Excel stores them as numbers."""
    if is_blank_cell(value):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return pad_code(value, ZIP_WIDTH)
    text = str(value).strip()
    if text.isdigit() and len(text) < ZIP_WIDTH:
        return text.zfill(ZIP_WIDTH)
    return text


def parse_date(value: Any) -> date | None:
    if is_blank_cell(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        ts = pd.to_datetime(str(value).strip(), errors="raise")
    except (ValueError, TypeError, OverflowError):
        raise RowCoercionError(f"invalid date value: {value!r}") from None
    if pd.isna(ts):
        return None
    return ts.date()


def canonical_program(value: Any, vocabulary: dict[str, str]) -> tuple[str | None, bool]:
    """Map a program name onto its canonical upper-case description.

    Returns:
        (name, recognized). Unrecognized names come back trimmed but otherwise
        verbatim with recognized=False so they can be flagged for review.
    """
    text = clean_text(value)
    if text is None:
        return None, True
    canonical = vocabulary.get(normalize_header(text))
    if canonical is None:
        return text, False
    return canonical, True


class StateLookup:
    """Resolve state cells (name, abbreviation or code) to (name, code)."""

    def __init__(self, states: tuple[StateInfo, ...]) -> None:
        self._by_code = {s.code: s for s in states}
        self._by_label: dict[str, StateInfo] = {}
        for s in states:
            self._by_label[normalize_header(s.name)] = s
            self._by_label[normalize_header(s.abbreviation)] = s

    def resolve(self, name: Any, code: Any) -> tuple[str, str]:
        """Return canonical (State FSA Name, State FSA Code).

        A given code always wins over the table; the name is canonicalized
        when the table knows it and kept verbatim otherwise.

        Raises:
            RowCoercionError: When a name or a code cannot be established.
        """
        padded = pad_code(code, STATE_CODE_WIDTH)
        label = clean_text(name)
        info = self._by_label.get(normalize_header(label)) if label else None
        if info is None and padded is not None:
            info = self._by_code.get(padded)
            if info is not None and label is not None and normalize_header(label) != normalize_header(info.name):
                # 表と異なる名称は原文のまま保持
                info = StateInfo(code=padded, name=label, abbreviation=info.abbreviation)
        if padded is None:
            if info is None:
                raise RowCoercionError(f"missing State FSA Code (state={label!r})")
            padded = info.code
        resolved_name = info.name if info is not None else label
        if not resolved_name:
            raise RowCoercionError(f"missing State FSA Name (code={padded})")
        return resolved_name, padded
