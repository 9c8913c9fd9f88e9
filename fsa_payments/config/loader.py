from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..excel.heuristics import normalize_header
from ..models.config_models import (
    FetchConfig,
    MappingTable,
    PipelineConfig,
    SourceEntry,
    StateInfo,
    YearLayout,
)
from ..models.payment_record import COLUMN_TO_FIELD

"""Config loader.

Responsibilities:
- Load YAML run configuration (config/pipeline.yml) into PipelineConfig
- Load the column mapping table (packaged layouts.yml or an override)
- Validate both against packaged JSON schemas
- Apply defaults and environment overrides (FSA_DOWNLOAD_DIR / FSA_ARCHIVE_DIR)
"""

_PACKAGE_DIR = Path(__file__).parent
SCHEMA_PATH = _PACKAGE_DIR / "config_schema.json"
LAYOUTS_SCHEMA_PATH = _PACKAGE_DIR / "layouts_schema.json"
DEFAULT_LAYOUTS_PATH = _PACKAGE_DIR / "layouts.yml"

ENV_DOWNLOAD_DIR = "FSA_DOWNLOAD_DIR"
ENV_ARCHIVE_DIR = "FSA_ARCHIVE_DIR"


class ConfigError(Exception):
    pass


def _validate(data: Any, schema_path: Path, what: str) -> None:
    """Validate data against a JSON schema file.

    Raises:
        ConfigError: If the schema is missing/unreadable or validation fails.
    """
    if not schema_path.exists():
        raise ConfigError(f"{what} schema not found: {schema_path}")
    try:
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"{what} validation failed: {e.message}") from e


def _read_yaml(path: Path, what: str) -> Any:
    if not path.exists():
        raise ConfigError(f"{what} file not found: {path}")
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e


def load_config(path: Path) -> PipelineConfig:
    data = _read_yaml(path, "config")
    _validate(data, SCHEMA_PATH, "config")

    fetch_raw = data.get("fetch") or {}
    fetch = FetchConfig(
        timeout_seconds=float(fetch_raw.get("timeout_seconds", FetchConfig.timeout_seconds)),
        max_attempts=int(fetch_raw.get("max_attempts", FetchConfig.max_attempts)),
        backoff_seconds=float(fetch_raw.get("backoff_seconds", FetchConfig.backoff_seconds)),
    )
    sources = tuple(
        SourceEntry(year=s["year"], url=s["url"], format=s.get("format"))
        for s in data.get("sources") or []
    )
    # 環境変数がディレクトリ設定より優先
    download_dir = os.getenv(ENV_DOWNLOAD_DIR) or data["download_directory"]
    archive_dir = os.getenv(ENV_ARCHIVE_DIR) or data["archive_directory"]

    layouts_file = data.get("layouts_file")
    crosswalk = data.get("county_crosswalk")
    return PipelineConfig(
        download_directory=Path(download_dir),
        archive_directory=Path(archive_dir),
        skip_threshold=float(data.get("skip_threshold", 0.05)),
        fetch=fetch,
        listing_url=data.get("listing_url"),
        sources=sources,
        layouts_file=Path(layouts_file) if layouts_file else None,
        county_crosswalk=Path(crosswalk) if crosswalk else None,
    )


def _field_for(column: str, where: str) -> str:
    try:
        return COLUMN_TO_FIELD[column]
    except KeyError:
        raise ConfigError(f"unknown canonical column '{column}' in {where}") from None


def _alias_map(raw: dict[str, list[str]], where: str) -> dict[str, str]:
    """canonical -> [variants] into normalized variant -> attribute."""
    aliases: dict[str, str] = {}
    for column, variants in raw.items():
        attr = _field_for(column, where)
        for variant in [column, *variants]:
            key = normalize_header(variant)
            existing = aliases.get(key)
            if existing is not None and existing != attr:
                raise ConfigError(
                    f"header variant '{variant}' maps to both {existing} and {attr} in {where}"
                )
            aliases[key] = attr
    return aliases


def _build_layout(name: str, raw: dict[str, Any]) -> YearLayout:
    where = f"layout '{name}'"
    positional = tuple(
        _field_for(column, where) if column is not None else None
        for column in raw.get("positional", [])
    )
    if raw.get("header") == "absent" and not positional:
        raise ConfigError(f"{where} has header: absent but no positional mapping")
    return YearLayout(
        name=name,
        first_year=raw.get("first_year"),
        last_year=raw.get("last_year"),
        header=raw.get("header", "auto"),
        header_assumption=raw.get("header_assumption", "present"),
        skip_rows=raw.get("skip_rows", 0),
        positional=positional,
        header_aliases=_alias_map(raw.get("header_aliases", {}), where),
        ignored_columns=frozenset(normalize_header(c) for c in raw.get("ignored_columns", [])),
    )


def load_mapping_table(path: Path | None = None) -> MappingTable:
    """Load the column mapping table (packaged default when path is None)."""
    path = path or DEFAULT_LAYOUTS_PATH
    data = _read_yaml(path, "layouts")
    _validate(data, LAYOUTS_SCHEMA_PATH, "layouts")

    program_aliases: dict[str, str] = {}
    for canonical, variants in (data.get("program_vocabulary") or {}).items():
        target = " ".join(canonical.split()).upper()
        for variant in [canonical, *variants]:
            program_aliases[normalize_header(variant)] = target

    states = tuple(
        StateInfo(code=code.zfill(2), name=name, abbreviation=abbr.upper())
        for code, name, abbr in data["states"]
    )
    layouts = tuple(
        _build_layout(name, raw) for name, raw in (data.get("layouts") or {}).items()
    )
    return MappingTable(
        header_aliases=_alias_map(data["header_aliases"], "header_aliases"),
        ignored_columns=frozenset(normalize_header(c) for c in data.get("ignored_columns", [])),
        program_aliases=program_aliases,
        states=states,
        layouts=layouts,
        default_layout=_build_layout("default", data["default"]),
    )
