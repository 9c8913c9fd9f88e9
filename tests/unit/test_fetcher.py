from __future__ import annotations

from pathlib import Path

import pytest
import requests

from fsa_payments.models.config_models import FetchConfig
from fsa_payments.models.source_file import SourceFile, SourceFormat
from fsa_payments.services.fetcher import (
    Fetcher,
    FetchError,
    FileCache,
    RetryableFetchError,
    check_magic,
    url_key,
)

XLSX_BYTES = b"PK\x03\x04" + b"\x00" * 32
CSV_BYTES = b"State,Amount\nMT,$1.00\n"
NO_WAIT = FetchConfig(timeout_seconds=5, max_attempts=3, backoff_seconds=0)


class FakeResponse:
    def __init__(self, status_code: int, body: bytes = b"", text: str = ""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Returns (or raises) queued outcomes in order and records each call."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []
        self.headers: dict[str, str] = {}

    def get(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        pass


def _source(fmt: SourceFormat = SourceFormat.XLSX, year: int = 2023) -> SourceFile:
    return SourceFile(year=year, url=f"https://payments.example.test/files/payments_{year}.{fmt.value}", format=fmt)


def _fetcher(tmp_path: Path, *outcomes) -> tuple[Fetcher, FakeSession]:
    session = FakeSession(*outcomes)
    return Fetcher(FileCache(tmp_path), NO_WAIT, session=session), session


def test_file_cache_paths(tmp_path: Path):
    cache = FileCache(tmp_path)
    source = _source()
    assert cache.path_for(source) == tmp_path / "2023" / url_key(source.url) / "payments_2023.xlsx"
    assert FileCache.year_of(cache.path_for(source)) == 2023
    assert not cache.contains(source)
    cache.path_for(source).parent.mkdir(parents=True)
    cache.path_for(source).write_bytes(b"")
    # 空ファイルはキャッシュ扱いしない
    assert not cache.contains(source)
    cache.path_for(source).write_bytes(XLSX_BYTES)
    assert cache.contains(source)
    (cache.path_for(source).parent / ".payments_2023.xlsx-abc.part").write_bytes(b"x")
    assert cache.cached_files() == [cache.path_for(source)]


def test_same_file_name_under_different_paths_kept_apart(tmp_path: Path):
    east = SourceFile(year=2023, url="https://payments.example.test/2023/east/payments.xlsx", format=SourceFormat.XLSX)
    west = SourceFile(year=2023, url="https://payments.example.test/2023/west/payments.xlsx", format=SourceFormat.XLSX)
    cache = FileCache(tmp_path)
    assert cache.path_for(east) != cache.path_for(west)
    assert cache.path_for(east).name == cache.path_for(west).name == "payments.xlsx"

    east_body = XLSX_BYTES + b"east"
    west_body = XLSX_BYTES + b"west"
    fetcher, session = _fetcher(tmp_path, FakeResponse(200, east_body), FakeResponse(200, west_body))
    got_east = fetcher.fetch(east)
    got_west = fetcher.fetch(west)

    assert len(session.calls) == 2
    assert got_east.local_path.read_bytes() == east_body
    assert got_west.local_path.read_bytes() == west_body
    assert sorted(cache.cached_files()) == sorted([got_east.local_path, got_west.local_path])


def test_fetch_downloads_into_cache(tmp_path: Path):
    fetcher, session = _fetcher(tmp_path, FakeResponse(200, XLSX_BYTES))
    fetched = fetcher.fetch(_source())
    assert fetched.local_path == FileCache(tmp_path).path_for(_source())
    assert fetched.local_path.read_bytes() == XLSX_BYTES
    assert session.calls[0]["stream"] is True
    assert session.calls[0]["timeout"] == (5, 5)
    assert [p.name for p in fetched.local_path.parent.iterdir()] == ["payments_2023.xlsx"]


def test_fetch_uses_cache_unless_forced(tmp_path: Path):
    fetcher, session = _fetcher(tmp_path, FakeResponse(200, CSV_BYTES), FakeResponse(200, CSV_BYTES + b"ID,$2\n"))
    source = _source(SourceFormat.CSV)
    fetcher.fetch(source)
    fetcher.fetch(source)
    assert len(session.calls) == 1
    refreshed = fetcher.fetch(source, force=True)
    assert len(session.calls) == 2
    assert refreshed.local_path.read_bytes().endswith(b"ID,$2\n")


def test_fetch_retries_transient_failures(tmp_path: Path):
    fetcher, session = _fetcher(
        tmp_path,
        requests.ConnectionError("reset"),
        FakeResponse(503),
        FakeResponse(200, XLSX_BYTES),
    )
    fetched = fetcher.fetch(_source())
    assert len(session.calls) == 3
    assert fetched.local_path.exists()


def test_fetch_gives_up_after_max_attempts(tmp_path: Path):
    fetcher, session = _fetcher(tmp_path, FakeResponse(500), FakeResponse(502), FakeResponse(504))
    with pytest.raises(FetchError, match="504"):
        fetcher.fetch(_source())
    assert len(session.calls) == 3
    assert not FileCache(tmp_path).path_for(_source()).exists()


def test_fetch_404_fails_without_retry(tmp_path: Path):
    fetcher, session = _fetcher(tmp_path, FakeResponse(404), FakeResponse(200, XLSX_BYTES))
    with pytest.raises(FetchError, match="404") as exc_info:
        fetcher.fetch(_source())
    assert not isinstance(exc_info.value, RetryableFetchError)
    assert len(session.calls) == 1


def test_fetch_corrupt_download_is_retried_then_fails(tmp_path: Path):
    html = b"<html>maintenance</html>"
    fetcher, session = _fetcher(tmp_path, FakeResponse(200, html), FakeResponse(200, b""), FakeResponse(200, html))
    with pytest.raises(FetchError, match="corrupt download"):
        fetcher.fetch(_source())
    assert len(session.calls) == 3
    assert list(FileCache(tmp_path).path_for(_source()).parent.iterdir()) == []


def test_check_magic(tmp_path: Path):
    xls = tmp_path / "a.xls"
    xls.write_bytes(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1rest")
    check_magic(xls, SourceFormat.XLS)
    with pytest.raises(RetryableFetchError):
        check_magic(xls, SourceFormat.XLSX)
    csv = tmp_path / "a.csv"
    csv.write_bytes(CSV_BYTES)
    check_magic(csv, SourceFormat.CSV)


def test_get_text(tmp_path: Path):
    fetcher, session = _fetcher(tmp_path, requests.Timeout("slow"), FakeResponse(200, text="<a href='x.csv'>"))
    assert fetcher.get_text("https://payments.example.test/") == "<a href='x.csv'>"
    assert len(session.calls) == 2


def test_fetcher_context_manager_sets_user_agent(tmp_path: Path):
    session = FakeSession()
    with Fetcher(FileCache(tmp_path), session=session) as fetcher:
        assert fetcher.config == FetchConfig()
    assert "fsa-payments-archive" in session.headers["User-Agent"]
