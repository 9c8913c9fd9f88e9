from __future__ import annotations

import csv
from pathlib import Path
from zipfile import BadZipFile

import pandas as pd

from ..models.source_file import SourceFormat

"""Raw spreadsheet reader.

Reads every sheet of an xls/xlsx workbook (or a single CSV) with no header
applied, so that header detection can run on the first row itself. Cells are
kept as objects / strings: administrative codes such as "06" must not be turned
into numbers before coercion.
"""

__all__ = [
    "SourceReadError",
    "read_source_file",
]

CSV_SHEET_NAME = "csv"

_EXCEL_ENGINES = {
    SourceFormat.XLS: "xlrd",
    SourceFormat.XLSX: "openpyxl",
}


class SourceReadError(Exception):
    """Raised when a source file cannot be opened or parsed as a table."""


def _read_csv(path: Path) -> pd.DataFrame:
    """CSV -> string frame padded to the widest row.

    Rows may carry extra trailing fields (trailing commas) or a short title
    line; every row is padded with "" so the column count is the maximum.
    """
    with path.open(encoding="utf-8-sig", errors="replace", newline="") as f:
        rows = list(csv.reader(f))
    width = max((len(r) for r in rows), default=0)
    return pd.DataFrame([r + [""] * (width - len(r)) for r in rows], columns=range(width), dtype=object)


def read_source_file(path: Path, fmt: SourceFormat) -> dict[str, pd.DataFrame]:
    """Read a source file returning raw DataFrames keyed by sheet name.

    Parameters
    ----------
    path: local path of the fetched file
    fmt: declared format (decides the parser / Excel engine)

    Sheets are returned in workbook order. CSV files yield one pseudo sheet.
    """
    try:
        if fmt is SourceFormat.CSV:
            return {CSV_SHEET_NAME: _read_csv(path)}

        dfs: dict[str, pd.DataFrame] = {}
        with pd.ExcelFile(path, engine=_EXCEL_ENGINES[fmt]) as xls:
            for name in xls.sheet_names:
                # ヘッダなしで生読み (ヘッダ判定は normalizer 側)
                dfs[str(name)] = xls.parse(name, header=None, dtype=object, keep_default_na=False)
        return dfs
    except (OSError, ValueError, BadZipFile, csv.Error) as e:
        raise SourceReadError(f"cannot read {path.name}: {e}") from e
