from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from urllib.parse import unquote, urlparse

"""SourceFile domain model and status enums for the FSA payment archive.

A SourceFile is created during discovery (year + url + format) and a second,
fetched instance carrying ``local_path`` is produced by the Fetcher. Instances
are frozen; ``with_local_path`` returns a new object instead of mutating.
"""

__all__ = [
    "SourceFormat",
    "SourceFile",
    "YearStatus",
]


class SourceFormat(Enum):
    """Spreadsheet formats published by FSA."""
    XLS = "xls"
    XLSX = "xlsx"
    CSV = "csv"

    @classmethod
    def from_url(cls, url: str) -> SourceFormat:
        """Infer the format from the URL path suffix.

        Raises:
            ValueError: If the suffix is not one of xls/xlsx/csv
        """
        suffix = Path(unquote(urlparse(url).path)).suffix.lower().lstrip(".")
        try:
            return cls(suffix)
        except ValueError:
            raise ValueError(f"cannot infer source format from url: {url}") from None


class YearStatus(Enum):
    """Final outcome of one program year in a run.

    A year ends as success or failed once processed, or as skipped when
    it is cached and archived already.
    """
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SourceFile:
    year: int
    url: str
    format: SourceFormat
    local_path: Path | None = None

    @property
    def file_name(self) -> str:
        """Last path segment of the URL (used as cache file name)."""
        name = Path(unquote(urlparse(self.url).path)).name
        return name or f"payments_{self.year}.{self.format.value}"

    @property
    def display_name(self) -> str:
        if self.local_path is not None:
            return self.local_path.name
        return self.file_name

    def with_local_path(self, path: Path) -> SourceFile:
        return replace(self, local_path=path)
