from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from typing import Any

import pandas as pd

"""Row classification heuristics for FSA payment spreadsheets.

Each predicate works on a plain list of cell values (one RawRow) so it can be
unit tested without reading a file.

Token lists:
- FOOTER_TOKENS: first-cell values marking summary rows appended by FSA
  ("TOTAL", "Subtotal:", "Grand Total Montana", ...)
- header vocabulary: the normalized keys of the mapping table's header aliases
  and ignored columns, supplied by the caller
"""

__all__ = [
    "FOOTER_TOKENS",
    "normalize_header",
    "is_blank_cell",
    "is_blank_row",
    "is_footer_row",
    "detect_header_row",
]

FOOTER_TOKENS: frozenset[str] = frozenset({
    "total",
    "totals",
    "subtotal",
    "sub total",
    "sub-total",
    "grand total",
    "state total",
    "county total",
})

_WS = re.compile(r"\s+")


def normalize_header(value: Any) -> str:
    """Trim, collapse inner whitespace and casefold a header cell.

    >>> normalize_header("  Disbursement   AMOUNT ")
    'disbursement amount'
    """
    if is_blank_cell(value):
        return ""
    return _WS.sub(" ", str(value)).strip().casefold()


def is_blank_cell(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def is_blank_row(cells: Sequence[Any]) -> bool:
    """True when every cell is empty, whitespace-only or NaN."""
    return all(is_blank_cell(c) for c in cells)


def is_footer_row(cells: Sequence[Any]) -> bool:
    """True when the first cell is a total/subtotal token.

    The token may be followed by a colon or by further words
    ("Total Montana"), but must be the leading word(s) of the cell.
    """
    if not cells:
        return False
    first = normalize_header(cells[0]).rstrip(":").strip()
    if not first:
        return False
    if first in FOOTER_TOKENS:
        return True
    return any(first.startswith(token + " ") or first.startswith(token + ":") for token in FOOTER_TOKENS)


def detect_header_row(cells: Sequence[Any], vocabulary: Iterable[str]) -> bool | None:
    """Classify a row as header (True), data (False) or undetected (None).

    - majority (strictly more than half) of non-blank cells are known header
      tokens -> header
    - no non-blank cell is a known token -> data
    - anything in between -> None (caller falls back to the year's assumption)
    """
    vocab = set(vocabulary)
    tokens = [normalize_header(c) for c in cells if not is_blank_cell(c)]
    if not tokens:
        return None
    matches = sum(1 for t in tokens if t in vocab)
    if matches * 2 > len(tokens):
        return True
    if matches == 0:
        return False
    return None
