from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

import pandas as pd

from ..excel.coerce import COUNTY_CODE_WIDTH, STATE_CODE_WIDTH, RowCoercionError, pad_code
from ..models.payment_record import PaymentRecord

logger = logging.getLogger(__name__)

"""Optional FSA county code -> FIPS county code join.

FSA county codes follow FSA administrative boundaries and are not ANSI/FIPS
codes. When a crosswalk CSV is configured, each record gets its 5-digit
``County FIPS Code``; records without a crosswalk entry keep null.

CSV columns: State FSA Code, County FSA Code, County FIPS Code
"""

REQUIRED_COLUMNS = ("State FSA Code", "County FSA Code", "County FIPS Code")
FIPS_WIDTH = 5


class CrosswalkError(Exception):
    pass


class CountyCrosswalk:
    def __init__(self, mapping: dict[tuple[str, str], str]) -> None:
        self._mapping = mapping

    def __len__(self) -> int:
        return len(self._mapping)

    @classmethod
    def load(cls, path: Path) -> CountyCrosswalk:
        try:
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
        except (OSError, ValueError) as e:
            raise CrosswalkError(f"cannot read county crosswalk {path}: {e}") from e
        missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise CrosswalkError(f"county crosswalk {path} missing columns: {missing}")
        mapping: dict[tuple[str, str], str] = {}
        for state, county, fips in df[list(REQUIRED_COLUMNS)].itertuples(index=False, name=None):
            try:
                key = (pad_code(state, STATE_CODE_WIDTH), pad_code(county, COUNTY_CODE_WIDTH))
                value = pad_code(fips, FIPS_WIDTH)
            except RowCoercionError as e:
                raise CrosswalkError(f"county crosswalk {path}: {e}") from e
            if None in key or value is None:
                continue
            mapping[key] = value
        logger.debug("county crosswalk loaded entries=%d", len(mapping))
        return cls(mapping)

    def lookup(self, state_code: str, county_code: str | None) -> str | None:
        if county_code is None:
            return None
        return self._mapping.get((state_code, county_code))

    def apply(self, records: list[PaymentRecord]) -> list[PaymentRecord]:
        """Return records with County FIPS Code filled where known."""
        out: list[PaymentRecord] = []
        for record in records:
            fips = self.lookup(record.state_fsa_code, record.county_fsa_code)
            out.append(replace(record, county_fips_code=fips) if fips != record.county_fips_code else record)
        return out
