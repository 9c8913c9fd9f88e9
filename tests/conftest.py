# Shared pytest fixtures
from __future__ import annotations

import csv
import tempfile
from pathlib import Path

import pytest

from fsa_payments.config.loader import load_mapping_table
from fsa_payments.logging.init import reset_logging
from fsa_payments.services.fetcher import FileCache
from fsa_payments.models.source_file import SourceFile, SourceFormat

SOURCE_URL_2023 = "https://payments.example.test/files/payments_2023.csv"
SOURCE_URL_2024 = "https://payments.example.test/files/payments_2024.csv"

FULL_HEADER = [
    "State FSA Name",
    "State FSA Code",
    "County FSA Name",
    "County FSA Code",
    "Formatted Payee Name",
    "Address Information Line",
    "Delivery Address Line",
    "City Name",
    "State Abbreviation",
    "Zip Code",
    "Delivery Point Bar Code",
    "Disbursement Amount",
    "Payment Date",
    "Accounting Program Code",
    "Accounting Program Description",
    "Accounting Program Year",
]


def payment_row(
    state: str = "Montana",
    state_code: str = "30",
    county: str = "Missoula",
    county_code: str = "63",
    payee: str = "DOE JOHN",
    amount: str = "$1,234.56",
    program: str = "LFP",
    year: str = "2023",
) -> list[str]:
    return [
        state, state_code, county, county_code, payee, "", "123 MAIN ST", "MISSOULA",
        "MT", "59801", "", amount, "03/15/2023", "2801", program, year,
    ]


def cache_path(root: Path, year: int, url: str) -> Path:
    """Where the fetcher caches ``url`` under ``root``."""
    return FileCache(root).path_for(SourceFile(year=year, url=url, format=SourceFormat.from_url(url)))


def write_csv(path: Path, rows: list[list[str]]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as f:
        csv.writer(f).writerows(rows)
    return path


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "downloads").mkdir()
        (p / "archive").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        monkeypatch.delenv("FSA_DOWNLOAD_DIR", raising=False)
        monkeypatch.delenv("FSA_ARCHIVE_DIR", raising=False)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return f"""download_directory: ./downloads
archive_directory: ./archive
skip_threshold: 0.05
fetch:
  timeout_seconds: 5
  max_attempts: 2
  backoff_seconds: 0
sources:
  - year: 2023
    url: {SOURCE_URL_2023}
  - year: 2024
    url: {SOURCE_URL_2024}
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "pipeline.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture(scope="session")
def mapping_table():
    return load_mapping_table()


@pytest.fixture()
def cached_csv_2023(temp_workdir: Path) -> Path:
    """2023 file already present in the download cache (no network needed)."""
    rows = [
        FULL_HEADER,
        payment_row(),
        payment_row(payee="ROE JANE", amount="(500.00)", program="Livestock Indemnity Program"),
        payment_row(state="Idaho", state_code="16", county="Ada", county_code="1", payee="SMITH FARMS"),
    ]
    return write_csv(cache_path(temp_workdir / "downloads", 2023, SOURCE_URL_2023), rows)


@pytest.fixture()
def cached_csv_2024(temp_workdir: Path) -> Path:
    rows = [FULL_HEADER, payment_row(year="2024", amount="$10.00")]
    return write_csv(cache_path(temp_workdir / "downloads", 2024, SOURCE_URL_2024), rows)


@pytest.fixture()
def csv_source(tmp_path: Path):
    """Factory: rows -> fetched SourceFile backed by a CSV on disk."""
    def _make(rows: list[list[str]], year: int = 2023, name: str | None = None) -> SourceFile:
        name = name or f"payments_{year}.csv"
        path = write_csv(tmp_path / str(year) / name, rows)
        return SourceFile(
            year=year,
            url=f"https://payments.example.test/files/{name}",
            format=SourceFormat.CSV,
            local_path=path,
        )
    return _make


@pytest.fixture()
def clean_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def full_header() -> list[str]:
    return list(FULL_HEADER)


@pytest.fixture()
def make_row():
    return payment_row


@pytest.fixture()
def write_csv_file():
    return write_csv


@pytest.fixture()
def cached_path():
    return cache_path
