from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

"""Processing result models for the FSA payment archive pipeline.

YearStat is the per-year outcome reported in the run summary; ProcessingResult
aggregates a whole run and feeds the SUMMARY line.
"""


@dataclass(frozen=True)
class YearStat:
    """Per-year processing statistics."""
    year: int
    status: str  # success/failed/skipped
    source_files: int
    written_rows: int
    partitions: int
    duplicates: int
    skipped_rows: int
    dropped_rows: int  # blank + footer rows
    elapsed_seconds: float
    error_type: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ProcessingResult:
    """Aggregated results of one pipeline run."""
    success_years: int
    failed_years: int
    skipped_years: int
    total_written_rows: int
    total_duplicates: int
    total_skipped_rows: int
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    throughput_rows_per_sec: float
    year_stats: list[YearStat] | None = None

    @property
    def total_years(self) -> int:
        return self.success_years + self.failed_years + self.skipped_years
