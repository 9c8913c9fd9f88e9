from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

"""Config dataclasses for the FSA payment archive pipeline.

``PipelineConfig`` is the run configuration (directories, fetch policy,
sources). ``MappingTable`` holds the declarative column mapping data that
absorbs year-to-year spreadsheet drift; ``YearLayout`` is one entry of it.
"""


@dataclass(frozen=True)
class FetchConfig:
    """Network policy for the Fetcher (bounded timeout + retries)."""
    timeout_seconds: float = 60.0
    max_attempts: int = 4
    backoff_seconds: float = 2.0


@dataclass(frozen=True)
class SourceEntry:
    """A source declared in config (format inferred from url when None)."""
    year: int
    url: str
    format: str | None = None


@dataclass(frozen=True)
class PipelineConfig:
    """Root configuration object for a pipeline run."""
    download_directory: Path
    archive_directory: Path
    skip_threshold: float = 0.05
    fetch: FetchConfig = field(default_factory=FetchConfig)
    listing_url: str | None = None
    sources: tuple[SourceEntry, ...] = ()
    layouts_file: Path | None = None  # None -> packaged layouts.yml
    county_crosswalk: Path | None = None


@dataclass(frozen=True)
class YearLayout:
    """Spreadsheet layout for a range of years.

    header:
        ``auto`` runs header detection; ``present``/``absent`` skip it.
    header_assumption:
        Used when detection is inconclusive.
    positional:
        Column index -> canonical attribute (None = unused column). Required
        whenever the file has no header row.
    """
    name: str
    first_year: int | None = None
    last_year: int | None = None
    header: str = "auto"
    header_assumption: str = "present"
    skip_rows: int = 0
    positional: tuple[str | None, ...] = ()
    header_aliases: dict[str, str] = field(default_factory=dict)
    ignored_columns: frozenset[str] = frozenset()

    def covers(self, year: int) -> bool:
        if self.first_year is not None and year < self.first_year:
            return False
        if self.last_year is not None and year > self.last_year:
            return False
        return True


@dataclass(frozen=True)
class StateInfo:
    code: str  # 2 桁 FSA state code
    name: str
    abbreviation: str


@dataclass(frozen=True)
class MappingTable:
    """Column mapping table loaded from layouts.yml.

    All alias keys are stored already normalized (see
    ``fsa_payments.excel.heuristics.normalize_header``).
    """
    header_aliases: dict[str, str]
    ignored_columns: frozenset[str]
    program_aliases: dict[str, str]  # normalized alias -> canonical description
    states: tuple[StateInfo, ...]
    layouts: tuple[YearLayout, ...]
    default_layout: YearLayout

    def layout_for(self, year: int) -> YearLayout:
        for layout in self.layouts:
            if layout.covers(year):
                return layout
        return self.default_layout

    def aliases_for(self, layout: YearLayout) -> dict[str, str]:
        merged = dict(self.header_aliases)
        merged.update(layout.header_aliases)
        return merged

    def ignored_for(self, layout: YearLayout) -> frozenset[str]:
        return self.ignored_columns | layout.ignored_columns
