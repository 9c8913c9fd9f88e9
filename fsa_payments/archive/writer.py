from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote

import pandas as pd
import pyarrow as pa

from ..models.payment_record import CANONICAL_COLUMNS, PARTITION_COLUMNS, PaymentRecord

logger = logging.getLogger(__name__)

"""Partitioned Parquet archive writer.

Layout (hive style, readable by pandas.read_parquet / pyarrow.dataset)::

    <root>/State FSA Name=<name>/Accounting Program Year=<year>/part-0.parquet

Partition values live in the directory names only. Each leaf holds exactly one
file, replaced with ``os.replace`` from a hidden temp file in the same
directory so readers never see a half-written partition. Output is a pure
function of the input records: same rows in the same order give the same bytes.
"""

__all__ = [
    "WriteError",
    "PartitionWrite",
    "ARCHIVE_SCHEMA",
    "PART_FILE_NAME",
    "deduplicate",
    "partition_path",
    "records_to_frame",
    "write_partition",
    "write_year",
    "list_partitions",
    "read_partition",
]

PART_FILE_NAME = "part-0.parquet"
STATE_DIR_PREFIX = f"{PARTITION_COLUMNS[0]}="
YEAR_DIR_PREFIX = f"{PARTITION_COLUMNS[1]}="

ARCHIVE_SCHEMA = pa.schema(
    [
        pa.field(column, pa.decimal128(18, 2)) if column == "Disbursement Amount"
        else pa.field(column, pa.date32()) if column == "Payment Date"
        else pa.field(column, pa.string())
        for column in CANONICAL_COLUMNS.values()
        if column not in PARTITION_COLUMNS
    ]
)


class WriteError(Exception):
    """Raised when a partition cannot be written (filesystem / encoding)."""


@dataclass(frozen=True)
class PartitionWrite:
    state_fsa_name: str
    year: int
    path: Path
    rows: int
    duplicates: int


def deduplicate(records: Iterable[PaymentRecord]) -> tuple[list[PaymentRecord], int]:
    """Collapse records whose canonical fields are all equal.

    The first occurrence (source order) is kept; ``row_number`` does not take
    part in the comparison.

    Returns:
        (unique records in original order, number of duplicates removed)
    """
    seen: set[PaymentRecord] = set()
    unique: list[PaymentRecord] = []
    duplicates = 0
    for record in records:
        if record in seen:
            duplicates += 1
            continue
        seen.add(record)
        unique.append(record)
    return unique, duplicates


def _encode(value: object) -> str:
    return quote(str(value), safe=" ")


def partition_path(root: Path, state_fsa_name: str, year: int) -> Path:
    return root / f"{STATE_DIR_PREFIX}{_encode(state_fsa_name)}" / f"{YEAR_DIR_PREFIX}{int(year)}"


def records_to_frame(records: list[PaymentRecord]) -> pd.DataFrame:
    """Build the leaf-file frame (partition columns dropped)."""
    columns = [f.name for f in ARCHIVE_SCHEMA]
    rows = [record.to_row() for record in records]
    return pd.DataFrame(rows, columns=list(CANONICAL_COLUMNS.values()))[columns]


def write_partition(
    root: Path, state_fsa_name: str, year: int, records: list[PaymentRecord]
) -> PartitionWrite:
    """Deduplicate and atomically replace one partition.

    Raises:
        ValueError: a record does not belong to (state_fsa_name, year)
        WriteError: the partition could not be written
    """
    key = (state_fsa_name, int(year))
    foreign = [r for r in records if r.partition_key != key]
    if foreign:
        raise ValueError(f"{len(foreign)} record(s) do not belong to partition {key}")

    unique, duplicates = deduplicate(records)
    if duplicates:
        logger.info("partition state=%s year=%s duplicates_removed=%d", state_fsa_name, year, duplicates)
    frame = records_to_frame(unique)

    leaf = partition_path(root, state_fsa_name, year)
    tmp_path: Path | None = None
    try:
        leaf.mkdir(parents=True, exist_ok=True)
        # "." 始まりのファイルはデータセット読み込み時に無視される
        fd, tmp_name = tempfile.mkstemp(dir=leaf, prefix=".part-", suffix=".tmp")
        os.close(fd)
        tmp_path = Path(tmp_name)
        frame.to_parquet(
            tmp_path,
            engine="pyarrow",
            index=False,
            schema=ARCHIVE_SCHEMA,
            compression="snappy",
        )
        os.replace(tmp_path, leaf / PART_FILE_NAME)
        tmp_path = None
    except (OSError, pa.ArrowException) as e:
        raise WriteError(f"cannot write partition {leaf}: {e}") from e
    finally:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)

    return PartitionWrite(
        state_fsa_name=state_fsa_name,
        year=int(year),
        path=leaf / PART_FILE_NAME,
        rows=len(unique),
        duplicates=duplicates,
    )


def list_partitions(root: Path, year: int | None = None) -> list[tuple[str, int, Path]]:
    """Existing partitions as (state name, year, leaf dir), sorted."""
    found: list[tuple[str, int, Path]] = []
    if not root.exists():
        return found
    for state_dir in root.iterdir():
        if not state_dir.is_dir() or not state_dir.name.startswith(STATE_DIR_PREFIX):
            continue
        state = unquote(state_dir.name[len(STATE_DIR_PREFIX):])
        for year_dir in state_dir.iterdir():
            if not year_dir.is_dir() or not year_dir.name.startswith(YEAR_DIR_PREFIX):
                continue
            try:
                part_year = int(year_dir.name[len(YEAR_DIR_PREFIX):])
            except ValueError:
                continue
            if year is None or part_year == year:
                found.append((state, part_year, year_dir))
    return sorted(found, key=lambda t: (t[1], t[0]))


def write_year(
    root: Path, year: int, records: Iterable[PaymentRecord], *, prune_stale: bool = True
) -> list[PartitionWrite]:
    """Replace every partition of one program year.

    Records are grouped by State FSA Name in first-seen order. With
    ``prune_stale`` the year's partitions for states absent from ``records``
    are removed, so the new data fully supersedes the previous run. Partitions
    of other years are never touched.
    """
    groups: dict[str, list[PaymentRecord]] = {}
    for record in records:
        if record.accounting_program_year != year:
            raise ValueError(f"record for year {record.accounting_program_year} passed to write_year({year})")
        groups.setdefault(record.state_fsa_name, []).append(record)

    writes = [write_partition(root, state, year, group) for state, group in groups.items()]

    if prune_stale:
        for state, _, leaf in list_partitions(root, year):
            if state in groups:
                continue
            logger.info("removing stale partition state=%s year=%s", state, year)
            try:
                shutil.rmtree(leaf)
                if not any(leaf.parent.iterdir()):
                    leaf.parent.rmdir()
            except OSError as e:
                raise WriteError(f"cannot remove stale partition {leaf}: {e}") from e
    return writes


def read_partition(path: Path) -> pd.DataFrame:
    """Read a leaf directory (or its parquet file) back into a DataFrame."""
    if path.is_dir():
        path = path / PART_FILE_NAME
    return pd.read_parquet(path, engine="pyarrow")
