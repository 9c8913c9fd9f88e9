from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv

from ..archive.crosswalk import CountyCrosswalk, CrosswalkError
from ..archive.sync import DirectoryStore, sync_archive
from ..config.loader import ConfigError, load_config, load_mapping_table
from ..excel.heuristics import is_blank_row
from ..excel.reader import SourceReadError, read_source_file
from ..logging.init import log_summary, set_debug, setup_logging
from ..models.config_models import MappingTable, PipelineConfig
from ..models.source_file import SourceFormat
from ..services.fetcher import Fetcher, FileCache
from ..services.normalizer import SchemaMismatchError, plan_columns
from ..services.orchestrator import ProcessingError, process_all
from ..services.summary import render_summary_line, render_year_line

"""CLI entrypoint.

Flow:
- load .env, config and the column mapping table (failures -> exit 1)
- run the pipeline for the selected years
- optionally mirror the archive with --sync-to
- print one line per year and the SUMMARY line

Exit codes: 0 all years succeeded (or none selected), 1 fatal startup error,
2 one or more years failed.
"""

EXIT_SUCCESS_ALL = 0
EXIT_FATAL = 1
EXIT_PARTIAL_FAILURE = 2

DEFAULT_CONFIG_PATH = Path("config/pipeline.yml")
INSPECT_ROWS = 3


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv; values in .env win over the process env."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="fsa-payments",
        description="FSA payment files -> partitioned Parquet archive",
    )
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Pipeline config (YAML)")
    p.add_argument(
        "--year", type=int, action="append", dest="years", metavar="YEAR",
        help="Process only this program year (repeatable)",
    )
    p.add_argument("--force", action="store_true", help="Re-download and rewrite already archived years")
    p.add_argument("--sync-to", type=Path, metavar="DIR", help="Mirror changed partitions into DIR")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument(
        "--inspect-data", action="store_true",
        help="Print detected layout and first rows of cached files then exit",
    )
    return p.parse_args(argv)


def _inspect_data(cfg: PipelineConfig, table: MappingTable, years: list[int] | None) -> int:
    cached = FileCache(cfg.download_directory).cached_files()
    if years:
        cached = [p for p in cached if FileCache.year_of(p) in years]
    if not cached:
        print(f"inspect: no cached files under {cfg.download_directory}")
        return EXIT_SUCCESS_ALL
    for path in cached:
        year = FileCache.year_of(path)
        layout = table.layout_for(year)
        print(f"FILE: {year}/{path.name} layout={layout.name}")
        try:
            sheets = read_source_file(path, SourceFormat.from_url(path.name))
        except (SourceReadError, ValueError) as e:
            print(f"  read_error: {e}")
            continue
        for sname, df in sheets.items():
            rows = [list(r) for r in df.itertuples(index=False, name=None)][layout.skip_rows:]
            rows = [r for r in rows if not is_blank_row(r)]
            if not rows:
                print(f"  SHEET: {sname} (empty)")
                continue
            try:
                plan = plan_columns(rows[0], df.shape[1], layout, table)
            except SchemaMismatchError as e:
                print(f"  SHEET: {sname} schema_mismatch: {e}")
                continue
            mapped = [plan.columns[i] for i in sorted(plan.columns)]
            print(f"  SHEET: {sname} mode={plan.mode} columns={mapped}")
            sample = rows[1:] if plan.mode == "header" else rows
            for r in sample[:INSPECT_ROWS]:
                print(f"    {r}")
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # [] を渡されたときに sys.argv を読まないよう None のみ判定
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"), override=True)

    if args.debug:
        set_debug(logger)
        logger.debug("debug mode enabled")

    try:
        cfg = load_config(args.config)
        table = load_mapping_table(cfg.layouts_file)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    if args.inspect_data:
        return _inspect_data(cfg, table, args.years)

    crosswalk = None
    if cfg.county_crosswalk is not None:
        try:
            crosswalk = CountyCrosswalk.load(cfg.county_crosswalk)
        except CrosswalkError as e:
            logger.error(f"crosswalk: {e}")
            return EXIT_FATAL

    try:
        cfg.download_directory.mkdir(parents=True, exist_ok=True)
        cfg.archive_directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"cannot create directories: {e}")
        return EXIT_FATAL

    logger.info(f"archive: {cfg.archive_directory} cache: {cfg.download_directory}")

    try:
        with Fetcher(FileCache(cfg.download_directory), cfg.fetch) as fetcher:
            result = process_all(
                cfg, table, fetcher=fetcher, years=args.years, force=args.force, crosswalk=crosswalk
            )
    except ProcessingError as e:
        logger.error(f"processing: {e}")
        return EXIT_FATAL

    for stat in result.year_stats or []:
        line = render_year_line(stat)
        if stat.error_type:
            logger.error(line)
        else:
            logger.info(line)

    sync_failed = False
    if args.sync_to is not None:
        try:
            synced = sync_archive(cfg.archive_directory, DirectoryStore(args.sync_to))
            logger.info(f"sync: {args.sync_to} uploaded={len(synced.uploaded)} unchanged={synced.unchanged}")
        except OSError as e:
            logger.error(f"sync: {e}")
            sync_failed = True

    # log_summary が "SUMMARY " ラベルを付けるので先頭を外す
    log_summary(render_summary_line(result)[len("SUMMARY "):])

    if result.failed_years > 0 or sync_failed:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
