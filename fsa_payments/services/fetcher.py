from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from types import TracebackType

import requests
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..models.config_models import FetchConfig
from ..models.source_file import SourceFile, SourceFormat

logger = logging.getLogger(__name__)

"""Fetcher: download source files into an explicit per-run cache.

- bounded connect/read timeout on every request
- retries with exponential backoff on connection errors, timeouts,
  408/425/429/5xx and corrupt bodies; other 4xx fail immediately
- downloads stream into a temp file next to the target and are renamed into
  place, so the cache never holds a truncated file
"""

__all__ = [
    "FetchError",
    "RetryableFetchError",
    "FileCache",
    "Fetcher",
    "url_key",
]

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
USER_AGENT = "fsa-payments-archive/0.1 (+https://www.fsa.usda.gov)"
_CHUNK = 64 * 1024
URL_KEY_LENGTH = 10

# 先頭バイトで破損/HTML エラーページを検出
MAGIC_BYTES: dict[SourceFormat, bytes] = {
    SourceFormat.XLSX: b"PK\x03\x04",
    SourceFormat.XLS: b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1",
}


class FetchError(Exception):
    """Raised when a source cannot be retrieved."""


class RetryableFetchError(FetchError):
    pass


def url_key(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:URL_KEY_LENGTH]


class FileCache:
    """Local download cache; one instance per pipeline run.

    Files live at ``<root>/<year>/<url key>/<file name from url>``; the url
    key (a short SHA-256 of the full URL) keeps same-named files published
    under different paths apart.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, source: SourceFile) -> Path:
        return self.root / str(source.year) / url_key(source.url) / source.file_name

    @staticmethod
    def year_of(path: Path) -> int:
        return int(path.parent.parent.name)

    def contains(self, source: SourceFile) -> bool:
        path = self.path_for(source)
        return path.is_file() and path.stat().st_size > 0

    def cached_files(self) -> list[Path]:
        if not self.root.exists():
            return []
        return sorted(
            p for p in self.root.glob("*/*/*")
            if p.is_file() and not p.name.startswith(".") and p.parent.parent.name.isdigit()
        )


def check_magic(path: Path, fmt: SourceFormat) -> None:
    """Raise RetryableFetchError for empty files or wrong file signatures."""
    with path.open("rb") as f:
        head = f.read(8)
    if not head:
        raise RetryableFetchError(f"corrupt download (empty body): {path.name}")
    expected = MAGIC_BYTES.get(fmt)
    if expected is not None and not head.startswith(expected):
        raise RetryableFetchError(f"corrupt download (not a {fmt.value} file): {path.name}")


class Fetcher:
    def __init__(
        self,
        cache: FileCache,
        config: FetchConfig | None = None,
        *,
        session: requests.Session | None = None,
    ) -> None:
        self.cache = cache
        self.config = config or FetchConfig()
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> Fetcher:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _timeout(self) -> tuple[float, float]:
        return (self.config.timeout_seconds, self.config.timeout_seconds)

    def _raise_for_status(self, response: requests.Response, url: str) -> None:
        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            raise RetryableFetchError(f"retryable HTTP status {status}: {url}")
        if status >= 400:
            raise FetchError(f"HTTP status {status}: {url}")

    def _with_retry(self, fn, *args):
        wrapped = retry(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=self.config.backoff_seconds, max=60),
            retry=retry_if_exception_type(RetryableFetchError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )(fn)
        return wrapped(*args)

    def _download_once(self, source: SourceFile, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}-", suffix=".part")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as out:
                try:
                    with self.session.get(source.url, stream=True, timeout=self._timeout()) as response:
                        self._raise_for_status(response, source.url)
                        for chunk in response.iter_content(chunk_size=_CHUNK):
                            if chunk:
                                out.write(chunk)
                except (requests.ConnectionError, requests.Timeout, requests.exceptions.ChunkedEncodingError) as e:
                    raise RetryableFetchError(f"network error for {source.url}: {e}") from e
                except requests.RequestException as e:
                    raise FetchError(f"request failed for {source.url}: {e}") from e
            check_magic(tmp_path, source.format)
            os.replace(tmp_path, target)
        finally:
            tmp_path.unlink(missing_ok=True)

    def fetch(self, source: SourceFile, *, force: bool = False) -> SourceFile:
        """Return ``source`` with local_path set, downloading when needed.

        Raises:
            FetchError: after the bounded number of attempts, or immediately
                for non-retryable HTTP statuses
        """
        target = self.cache.path_for(source)
        if not force and self.cache.contains(source):
            logger.debug("cache hit year=%s path=%s", source.year, target)
            return source.with_local_path(target)
        logger.info("downloading year=%s url=%s", source.year, source.url)
        try:
            self._with_retry(self._download_once, source, target)
        except OSError as e:
            raise FetchError(f"cannot store {source.url} in cache: {e}") from e
        return source.with_local_path(target)

    def get_text(self, url: str) -> str:
        """GET a listing page as text (same timeout/retry policy)."""

        def _get() -> str:
            try:
                response = self.session.get(url, timeout=self._timeout())
            except (requests.ConnectionError, requests.Timeout) as e:
                raise RetryableFetchError(f"network error for {url}: {e}") from e
            except requests.RequestException as e:
                raise FetchError(f"request failed for {url}: {e}") from e
            self._raise_for_status(response, url)
            return response.text

        return self._with_retry(_get)
