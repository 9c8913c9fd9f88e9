from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from ..archive.crosswalk import CountyCrosswalk
from ..archive.writer import WriteError, list_partitions, write_year
from ..excel.reader import SourceReadError
from ..logging.error_log import ErrorLogBuffer
from ..models.config_models import MappingTable, PipelineConfig
from ..models.error_record import ErrorRecord
from ..models.payment_record import PaymentRecord
from ..models.processing_result import ProcessingResult, YearStat
from ..models.source_file import SourceFile, YearStatus
from .fetcher import Fetcher, FetchError
from .normalizer import SchemaMismatchError, normalize_source
from .progress import ProgressTracker
from .sources import group_by_year, list_sources

logger = logging.getLogger(__name__)

"""Pipeline orchestration: list -> fetch -> normalize -> write, per program year.

Each year is an independent unit: a failure is recorded (ErrorRecord + failed
YearStat) and the run continues with the next year. Only problems that stop
the whole run (listing page unreachable) raise ProcessingError.
"""

__all__ = [
    "ProcessingError",
    "process_all",
    "process_year",
]

FILE_LEVEL = "<FILE_LEVEL>"


class ProcessingError(Exception):
    """Fatal error that prevents the run from starting."""


def _error_type(exc: BaseException) -> str:
    if isinstance(exc, FetchError):
        return "FETCH_ERROR"
    if isinstance(exc, SchemaMismatchError):
        return "SCHEMA_MISMATCH"
    if isinstance(exc, SourceReadError):
        return "READ_ERROR"
    if isinstance(exc, WriteError):
        return "WRITE_ERROR"
    return "UNEXPECTED_ERROR"


def _is_archived(year: int, sources: list[SourceFile], config: PipelineConfig, fetcher: Fetcher) -> bool:
    if not all(fetcher.cache.contains(s) for s in sources):
        return False
    return bool(list_partitions(config.archive_directory, year))


def process_year(
    year: int,
    sources: list[SourceFile],
    *,
    config: PipelineConfig,
    table: MappingTable,
    fetcher: Fetcher,
    error_log: ErrorLogBuffer,
    force: bool = False,
    crosswalk: CountyCrosswalk | None = None,
) -> YearStat:
    """Fetch, normalize and write every source file of one program year.

    All files of the year are normalized before anything is written, so a
    failing file leaves the year's existing partitions untouched.
    """
    start = datetime.now(UTC)

    def _elapsed() -> float:
        return (datetime.now(UTC) - start).total_seconds()

    if not force and _is_archived(year, sources, config, fetcher):
        logger.info("year=%s already cached and archived; use --force to rebuild", year)
        return YearStat(
            year=year,
            status=YearStatus.SKIPPED.value,
            source_files=len(sources),
            written_rows=0,
            partitions=0,
            duplicates=0,
            skipped_rows=0,
            dropped_rows=0,
            elapsed_seconds=_elapsed(),
        )

    records: list[PaymentRecord] = []
    skipped_rows = 0
    dropped_rows = 0
    current = sources[0].display_name if sources else FILE_LEVEL
    try:
        for source in sources:
            current = source.display_name
            fetched = fetcher.fetch(source, force=force)
            current = fetched.display_name
            batch = normalize_source(fetched, table, skip_threshold=config.skip_threshold)
            error_log.extend(batch.row_errors)
            skipped_rows += batch.skipped_rows
            dropped_rows += batch.dropped_rows
            for program, count in sorted(batch.unrecognized_programs.items()):
                logger.warning("unrecognized program year=%s file=%s program=%r rows=%d", year, current, program, count)
                error_log.append(
                    ErrorRecord.create(
                        current, FILE_LEVEL, -1, "UNRECOGNIZED_PROGRAM", f"{program!r} kept verbatim ({count} rows)"
                    )
                )
            records.extend(batch.records)

        if crosswalk is not None:
            records = crosswalk.apply(records)
        writes = write_year(config.archive_directory, year, records)
    except Exception as e:
        error_type = _error_type(e)
        if isinstance(e, SchemaMismatchError):
            error_log.extend(e.row_errors)
            skipped_rows += sum(1 for r in e.row_errors if r.error_type == "ROW_COERCION")
        if error_type == "UNEXPECTED_ERROR":
            logger.debug("unexpected failure for year=%s", year, exc_info=True)
        logger.error("year=%s file=%s %s: %s", year, current, error_type, e)
        error_log.append(ErrorRecord.create(current, FILE_LEVEL, -1, error_type, str(e)))
        return YearStat(
            year=year,
            status=YearStatus.FAILED.value,
            source_files=len(sources),
            written_rows=0,
            partitions=0,
            duplicates=0,
            skipped_rows=skipped_rows,
            dropped_rows=dropped_rows,
            elapsed_seconds=_elapsed(),
            error_type=error_type,
            error=str(e),
        )

    duplicates = sum(w.duplicates for w in writes)
    if duplicates:
        logger.info("year=%s collapsed %d duplicate rows", year, duplicates)
    return YearStat(
        year=year,
        status=YearStatus.SUCCESS.value,
        source_files=len(sources),
        written_rows=sum(w.rows for w in writes),
        partitions=len(writes),
        duplicates=duplicates,
        skipped_rows=skipped_rows,
        dropped_rows=dropped_rows,
        elapsed_seconds=_elapsed(),
    )


def _missing_year(year: int, error_log: ErrorLogBuffer) -> YearStat:
    message = f"no source file listed for year {year}"
    logger.error("year=%s FETCH_ERROR: %s", year, message)
    error_log.append(ErrorRecord.create(FILE_LEVEL, FILE_LEVEL, -1, "FETCH_ERROR", message))
    return YearStat(
        year=year,
        status=YearStatus.FAILED.value,
        source_files=0,
        written_rows=0,
        partitions=0,
        duplicates=0,
        skipped_rows=0,
        dropped_rows=0,
        elapsed_seconds=0.0,
        error_type="FETCH_ERROR",
        error=message,
    )


def process_all(
    config: PipelineConfig,
    table: MappingTable,
    *,
    fetcher: Fetcher,
    years: Iterable[int] | None = None,
    force: bool = False,
    crosswalk: CountyCrosswalk | None = None,
    listing_html: str | None = None,
    error_log: ErrorLogBuffer | None = None,
) -> ProcessingResult:
    """Run the pipeline for the selected years (all listed years when None).

    Args:
        config: pipeline configuration
        table: column mapping table
        fetcher: downloader bound to the cache directory
        years: program years to process
        force: re-download and rewrite even when already archived
        crosswalk: optional county FIPS crosswalk
        listing_html: listing page content; fetched from ``config.listing_url``
            when None and a listing URL is configured
        error_log: buffer for ErrorRecords, flushed once at the end

    Raises:
        ProcessingError: listing page cannot be fetched
    """
    start_time = datetime.now(UTC)
    error_log = error_log if error_log is not None else ErrorLogBuffer()
    wanted = sorted(set(years)) if years is not None else None

    if listing_html is None and config.listing_url:
        try:
            listing_html = fetcher.get_text(config.listing_url)
        except FetchError as e:
            raise ProcessingError(f"cannot fetch listing page {config.listing_url}: {e}") from e

    grouped = group_by_year(list_sources(config, years=wanted, listing_html=listing_html))
    selected = wanted if wanted is not None else sorted(grouped)
    if not selected:
        logger.warning("no source files listed; nothing to do")

    year_stats: list[YearStat] = []
    with ProgressTracker(len(selected), description="Processing years") as progress:
        for year in selected:
            progress.start_year(year)
            if year not in grouped:
                stat = _missing_year(year, error_log)
            else:
                stat = process_year(
                    year,
                    grouped[year],
                    config=config,
                    table=table,
                    fetcher=fetcher,
                    error_log=error_log,
                    force=force,
                    crosswalk=crosswalk,
                )
            year_stats.append(stat)
            progress.set_postfix(
                success=sum(1 for s in year_stats if s.status == YearStatus.SUCCESS.value),
                failed=sum(1 for s in year_stats if s.status == YearStatus.FAILED.value),
                rows=sum(s.written_rows for s in year_stats),
            )
            progress.finish_year()

    # エラーログは最後に一度だけ書き出す
    try:
        error_log.flush()
    except OSError as e:
        logger.warning("cannot write error log %s: %s", error_log.file_path, e)

    end_time = datetime.now(UTC)
    elapsed_seconds = (end_time - start_time).total_seconds()
    total_rows = sum(s.written_rows for s in year_stats)
    throughput_rps = total_rows / elapsed_seconds if elapsed_seconds > 0 else 0.0

    return ProcessingResult(
        success_years=sum(1 for s in year_stats if s.status == YearStatus.SUCCESS.value),
        failed_years=sum(1 for s in year_stats if s.status == YearStatus.FAILED.value),
        skipped_years=sum(1 for s in year_stats if s.status == YearStatus.SKIPPED.value),
        total_written_rows=total_rows,
        total_duplicates=sum(s.duplicates for s in year_stats),
        total_skipped_rows=sum(s.skipped_rows for s in year_stats),
        start_time=start_time,
        end_time=end_time,
        elapsed_seconds=elapsed_seconds,
        throughput_rows_per_sec=throughput_rps,
        year_stats=year_stats,
    )
