from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from pathlib import PurePosixPath
from urllib.parse import unquote, urljoin, urlparse

from bs4 import BeautifulSoup

from ..models.config_models import PipelineConfig
from ..models.source_file import SourceFile, SourceFormat

logger = logging.getLogger(__name__)

"""Source lister: which file(s) make up each year's release.

Sources are declared in config and/or discovered from a listing page. The
pipeline trusts the resulting list as-is.
"""

SPREADSHEET_SUFFIXES = (".xls", ".xlsx", ".csv")
_YEAR = re.compile(r"(?<!\d)(20\d{2})(?!\d)")


def discover_sources(html: str, base_url: str) -> list[SourceFile]:
    """Extract spreadsheet links carrying a four-digit year from a listing page.

    The year is the last 20xx token of the file name; links without one are
    ignored.
    """
    found: list[SourceFile] = []
    soup = BeautifulSoup(html, "html.parser")
    for anchor in soup.find_all("a", href=True):
        # フラグメントのみ落とす (query はダウンロードに必要)
        url = urljoin(base_url, anchor["href"].strip()).split("#", 1)[0]
        name = PurePosixPath(unquote(urlparse(url).path)).name
        if PurePosixPath(name).suffix.lower() not in SPREADSHEET_SUFFIXES:
            continue
        years = _YEAR.findall(name)
        if not years:
            logger.debug("listing link without year ignored: %s", url)
            continue
        found.append(SourceFile(year=int(years[-1]), url=url, format=SourceFormat.from_url(url)))
    return found


def configured_sources(config: PipelineConfig) -> list[SourceFile]:
    return [
        SourceFile(
            year=entry.year,
            url=entry.url,
            format=SourceFormat(entry.format) if entry.format else SourceFormat.from_url(entry.url),
        )
        for entry in config.sources
    ]


def list_sources(
    config: PipelineConfig,
    *,
    years: Iterable[int] | None = None,
    listing_html: str | None = None,
) -> list[SourceFile]:
    """Configured + discovered sources, filtered by year, sorted by (year, url).

    A configured entry wins over a discovered one with the same URL.
    """
    by_url: dict[str, SourceFile] = {}
    if listing_html is not None and config.listing_url:
        for source in discover_sources(listing_html, config.listing_url):
            by_url[source.url] = source
    for source in configured_sources(config):
        by_url[source.url] = source
    wanted = set(years) if years is not None else None
    selected = [s for s in by_url.values() if wanted is None or s.year in wanted]
    return sorted(selected, key=lambda s: (s.year, s.url))


def group_by_year(sources: Iterable[SourceFile]) -> dict[int, list[SourceFile]]:
    grouped: dict[int, list[SourceFile]] = {}
    for source in sorted(sources, key=lambda s: (s.year, s.url)):
        grouped.setdefault(source.year, []).append(source)
    return grouped
