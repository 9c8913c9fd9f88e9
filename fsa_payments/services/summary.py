from __future__ import annotations

from ..models.processing_result import ProcessingResult, YearStat

"""Summary line rendering.

SUMMARY years={n}/{n} success={s} failed={f} skipped={k} rows={r}
duplicates={d} skipped_rows={x} elapsed_sec={e} throughput_rps={t}

plus one result line per year for the operator.
"""


def _format_number(value: float) -> str:
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        # 指数表記を避ける
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return str(round(value, 3))


def render_summary_line(result: ProcessingResult) -> str:
    """Render the SUMMARY line for a run.

    Examples:
        >>> from datetime import datetime, timezone
        >>> start = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
        >>> end = datetime(2024, 1, 1, 10, 0, 2, tzinfo=timezone.utc)
        >>> result = ProcessingResult(
        ...     success_years=1, failed_years=0, skipped_years=0, total_written_rows=1000,
        ...     total_duplicates=0, total_skipped_rows=0, start_time=start, end_time=end,
        ...     elapsed_seconds=2.0, throughput_rows_per_sec=500.0,
        ... )
        >>> render_summary_line(result)  # doctest: +ELLIPSIS
        'SUMMARY years=1/1 success=1 failed=0 skipped=0 rows=1000 ...'
    """
    total = result.total_years
    return (
        f"SUMMARY years={total}/{total} "
        f"success={result.success_years} "
        f"failed={result.failed_years} "
        f"skipped={result.skipped_years} "
        f"rows={result.total_written_rows} "
        f"duplicates={result.total_duplicates} "
        f"skipped_rows={result.total_skipped_rows} "
        f"elapsed_sec={_format_number(result.elapsed_seconds)} "
        f"throughput_rps={_format_number(result.throughput_rows_per_sec)}"
    )


def render_year_line(stat: YearStat) -> str:
    line = (
        f"year={stat.year} status={stat.status} files={stat.source_files} "
        f"rows={stat.written_rows} partitions={stat.partitions} "
        f"duplicates={stat.duplicates} skipped_rows={stat.skipped_rows} dropped_rows={stat.dropped_rows}"
    )
    if stat.error_type:
        line += f" error_type={stat.error_type} error={stat.error}"
    return line
