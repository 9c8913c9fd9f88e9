from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from ..excel.coerce import (
    COUNTY_CODE_WIDTH,
    RowCoercionError,
    StateLookup,
    canonical_program,
    clean_text,
    clean_zip,
    pad_code,
    parse_currency,
    parse_date,
)
from ..excel.heuristics import (
    detect_header_row,
    is_blank_row,
    is_footer_row,
    normalize_header,
)
from ..excel.reader import read_source_file
from ..models.config_models import MappingTable, YearLayout
from ..models.error_record import ErrorRecord
from ..models.payment_record import CANONICAL_COLUMNS, PaymentRecord
from ..models.source_file import SourceFile

logger = logging.getLogger(__name__)

"""Record normalizer: year-specific spreadsheet layouts -> PaymentRecord.

The algorithm is year-agnostic; everything that changes between releases
lives in the MappingTable (header aliases, positional layouts, ignored
columns, program vocabulary, state table).

Per sheet:
1. drop ``skip_rows`` title rows and leading blank rows
2. decide header vs positional (layout setting, detection, assumption)
3. resolve columns -> canonical attributes (SchemaMismatchError on failure)
4. drop blank / footer rows, coerce the rest; bad rows are skipped + counted
Per file: fail with SchemaMismatchError when the skipped fraction exceeds the
threshold.
"""

__all__ = [
    "SchemaMismatchError",
    "ColumnPlan",
    "NormalizedBatch",
    "plan_columns",
    "normalize_frame",
    "normalize_source",
]

DEFAULT_SKIP_THRESHOLD = 0.05


class SchemaMismatchError(Exception):
    """Raised when a file's columns cannot be mapped onto the canonical schema.

    ``columns`` names the offending header cells when known; ``row_errors``
    carries the per-row failures collected before the file was rejected.
    """

    def __init__(
        self, message: str, columns: Sequence[str] = (), row_errors: Sequence[ErrorRecord] = ()
    ) -> None:
        super().__init__(message)
        self.columns = tuple(columns)
        self.row_errors = list(row_errors)


@dataclass(frozen=True)
class ColumnPlan:
    """Resolved column index -> canonical attribute for one sheet."""
    mode: str  # "header" | "positional"
    columns: dict[int, str]


@dataclass
class NormalizedBatch:
    """Transient output of normalizing one source file."""
    file_name: str
    year: int
    records: list[PaymentRecord] = field(default_factory=list)
    candidate_rows: int = 0  # blank/footer 以外の行
    dropped_rows: int = 0
    skipped_rows: int = 0
    unrecognized_programs: Counter[str] = field(default_factory=Counter)
    row_errors: list[ErrorRecord] = field(default_factory=list)

    @property
    def skip_fraction(self) -> float:
        if self.candidate_rows == 0:
            return 0.0
        return self.skipped_rows / self.candidate_rows


def _resolve_header(
    cells: Sequence[Any], aliases: dict[str, str], ignored: frozenset[str]
) -> dict[int, str]:
    columns: dict[int, str] = {}
    unknown: list[str] = []
    seen: dict[str, int] = {}
    duplicated: list[str] = []
    for idx, cell in enumerate(cells):
        key = normalize_header(cell)
        if not key or key in ignored:
            continue
        attr = aliases.get(key)
        if attr is None:
            unknown.append(str(cell).strip())
            continue
        if attr in seen:
            duplicated.append(str(cell).strip())
            continue
        seen[attr] = idx
        columns[idx] = attr
    if unknown:
        raise SchemaMismatchError(f"unmapped columns: {unknown}", unknown)
    if duplicated:
        raise SchemaMismatchError(f"columns map to an already mapped field: {duplicated}", duplicated)
    return columns


def _resolve_positional(width: int, layout: YearLayout) -> dict[int, str]:
    if not layout.positional:
        raise SchemaMismatchError(f"layout '{layout.name}' has no header row and no positional mapping")
    # 末尾の未使用列は必須にしない
    required = max((i for i, attr in enumerate(layout.positional) if attr is not None), default=-1) + 1
    if width < required:
        raise SchemaMismatchError(
            f"layout '{layout.name}' expects {required} columns, file has {width}",
            [CANONICAL_COLUMNS[a] for a in layout.positional[width:required] if a is not None],
        )
    return {i: attr for i, attr in enumerate(layout.positional) if attr is not None}


def plan_columns(
    first_row: Sequence[Any], width: int, layout: YearLayout, table: MappingTable
) -> ColumnPlan:
    """Decide header vs positional for a sheet and resolve its columns.

    Args:
        first_row: first non-blank row after the layout's title rows
        width: column count of the sheet
        layout: layout selected for the year
        table: mapping table (global aliases / ignored columns)

    Raises:
        SchemaMismatchError: unresolvable header, too few columns, or no
            state column at all
    """
    aliases = table.aliases_for(layout)
    ignored = table.ignored_for(layout)
    if layout.header == "present":
        has_header = True
    elif layout.header == "absent":
        has_header = False
    else:
        detected = detect_header_row(first_row, set(aliases) | ignored)
        has_header = detected if detected is not None else layout.header_assumption == "present"

    if has_header:
        plan = ColumnPlan(mode="header", columns=_resolve_header(first_row, aliases, ignored))
    else:
        plan = ColumnPlan(mode="positional", columns=_resolve_positional(width, layout))

    mapped = set(plan.columns.values())
    if not mapped & {"state_fsa_name", "state_fsa_code"}:
        raise SchemaMismatchError("no State FSA Name / State FSA Code column", ["State FSA Code"])
    return plan


def _coerce_row(
    cells: Sequence[Any],
    plan: ColumnPlan,
    year: int,
    states: StateLookup,
    programs: dict[str, str],
    row_number: int,
) -> tuple[PaymentRecord, bool]:
    values = {attr: (cells[idx] if idx < len(cells) else None) for idx, attr in plan.columns.items()}
    state_name, state_code = states.resolve(values.get("state_fsa_name"), values.get("state_fsa_code"))
    program, recognized = canonical_program(values.get("accounting_program_description"), programs)
    try:
        record = PaymentRecord(
            accounting_program_year=year,  # ファイル内の年列は信用しない
            state_fsa_code=state_code,
            state_fsa_name=state_name,
            county_fsa_name=clean_text(values.get("county_fsa_name")),
            county_fsa_code=pad_code(values.get("county_fsa_code"), COUNTY_CODE_WIDTH),
            formatted_payee_name=clean_text(values.get("formatted_payee_name")),
            address_information_line=clean_text(values.get("address_information_line")),
            delivery_address_line=clean_text(values.get("delivery_address_line")),
            city_name=clean_text(values.get("city_name")),
            state_abbreviation=clean_text(values.get("state_abbreviation")),
            zip_code=clean_zip(values.get("zip_code")),
            delivery_point_bar_code=clean_text(values.get("delivery_point_bar_code")),
            disbursement_amount=parse_currency(values.get("disbursement_amount")),
            payment_date=parse_date(values.get("payment_date")),
            accounting_program_code=clean_text(values.get("accounting_program_code")),
            accounting_program_description=program,
            row_number=row_number,
        )
    except ValueError as e:
        raise RowCoercionError(str(e)) from e
    return record, recognized


def normalize_frame(
    df: pd.DataFrame,
    *,
    year: int,
    table: MappingTable,
    sheet_name: str,
    batch: NormalizedBatch,
    layout: YearLayout | None = None,
) -> NormalizedBatch:
    """Normalize one raw sheet (read with header=None) into ``batch``.

    Row errors are recorded on the batch; schema errors propagate.
    """
    layout = layout or table.layout_for(year)
    rows = [list(r) for r in df.itertuples(index=False, name=None)]
    start = layout.skip_rows
    while start < len(rows) and is_blank_row(rows[start]):
        batch.dropped_rows += 1
        start += 1
    if start >= len(rows):
        logger.debug("file=%s sheet=%s has no rows", batch.file_name, sheet_name)
        return batch

    plan = plan_columns(rows[start], df.shape[1], layout, table)
    data_start = start + 1 if plan.mode == "header" else start
    logger.debug(
        "file=%s sheet=%s layout=%s mode=%s columns=%s",
        batch.file_name, sheet_name, layout.name, plan.mode, sorted(plan.columns.values()),
    )

    states = StateLookup(table.states)
    for pos in range(data_start, len(rows)):
        cells = rows[pos]
        row_number = pos + 1  # 1-based 物理行番号
        if is_blank_row(cells) or is_footer_row(cells):
            batch.dropped_rows += 1
            continue
        batch.candidate_rows += 1
        try:
            record, recognized = _coerce_row(cells, plan, year, states, table.program_aliases, row_number)
        except RowCoercionError as e:
            batch.skipped_rows += 1
            batch.row_errors.append(
                ErrorRecord.create(batch.file_name, sheet_name, row_number, "ROW_COERCION", str(e))
            )
            continue
        if not recognized and record.accounting_program_description is not None:
            batch.unrecognized_programs[record.accounting_program_description] += 1
        batch.records.append(record)
    return batch


def normalize_source(
    source: SourceFile,
    table: MappingTable,
    *,
    skip_threshold: float = DEFAULT_SKIP_THRESHOLD,
) -> NormalizedBatch:
    """Normalize every sheet of a fetched source file.

    Raises:
        ValueError: source has no local_path
        SourceReadError: file cannot be parsed as a spreadsheet
        SchemaMismatchError: mapping problem, no data rows, or skipped-row
            fraction above ``skip_threshold``
    """
    if source.local_path is None:
        raise ValueError(f"source for {source.year} has not been fetched: {source.url}")
    batch = NormalizedBatch(file_name=source.display_name, year=source.year)
    layout = table.layout_for(source.year)
    sheets = read_source_file(source.local_path, source.format)
    for sheet_name, df in sheets.items():
        try:
            normalize_frame(df, year=source.year, table=table, sheet_name=sheet_name, batch=batch, layout=layout)
        except SchemaMismatchError as e:
            raise SchemaMismatchError(
                f"{batch.file_name} [{sheet_name}]: {e}", e.columns, batch.row_errors
            ) from e

    if batch.candidate_rows == 0:
        raise SchemaMismatchError(f"{batch.file_name}: no payment rows found")
    if batch.skip_fraction > skip_threshold:
        raise SchemaMismatchError(
            f"{batch.file_name}: {batch.skipped_rows}/{batch.candidate_rows} rows unparsable "
            f"({batch.skip_fraction:.1%} > {skip_threshold:.1%}); column mapping for {source.year} is likely wrong",
            row_errors=batch.row_errors,
        )
    if batch.skipped_rows:
        logger.warning(
            "file=%s skipped_rows=%d/%d", batch.file_name, batch.skipped_rows, batch.candidate_rows
        )
    return batch
