from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

"""Canonical PaymentRecord model.

Every normalized row from any year's spreadsheet ends up as one PaymentRecord.
Attribute names are snake_case; ``CANONICAL_COLUMNS`` maps them onto the
published column names used in the archive.
"""

__all__ = [
    "PaymentRecord",
    "CANONICAL_COLUMNS",
    "COLUMN_TO_FIELD",
    "PARTITION_COLUMNS",
]

# attribute -> archive column name (archive column order)
CANONICAL_COLUMNS: dict[str, str] = {
    "state_fsa_name": "State FSA Name",
    "state_fsa_code": "State FSA Code",
    "county_fsa_name": "County FSA Name",
    "county_fsa_code": "County FSA Code",
    "formatted_payee_name": "Formatted Payee Name",
    "address_information_line": "Address Information Line",
    "delivery_address_line": "Delivery Address Line",
    "city_name": "City Name",
    "state_abbreviation": "State Abbreviation",
    "zip_code": "Zip Code",
    "delivery_point_bar_code": "Delivery Point Bar Code",
    "disbursement_amount": "Disbursement Amount",
    "payment_date": "Payment Date",
    "accounting_program_code": "Accounting Program Code",
    "accounting_program_description": "Accounting Program Description",
    "accounting_program_year": "Accounting Program Year",
    "county_fips_code": "County FIPS Code",
}

COLUMN_TO_FIELD: dict[str, str] = {v: k for k, v in CANONICAL_COLUMNS.items()}

PARTITION_COLUMNS: tuple[str, str] = ("State FSA Name", "Accounting Program Year")


@dataclass(frozen=True)
class PaymentRecord:
    """One disbursement, in canonical form.

    ``row_number`` is the 1-based position in the source sheet. It is excluded
    from equality/hash so that duplicate detection compares canonical fields
    only, and it is not written to the archive.
    """
    accounting_program_year: int
    state_fsa_code: str
    state_fsa_name: str
    county_fsa_name: str | None = None
    county_fsa_code: str | None = None
    formatted_payee_name: str | None = None
    address_information_line: str | None = None
    delivery_address_line: str | None = None
    city_name: str | None = None
    state_abbreviation: str | None = None
    zip_code: str | None = None
    delivery_point_bar_code: str | None = None
    disbursement_amount: Decimal | None = None
    payment_date: date | None = None
    accounting_program_code: str | None = None
    accounting_program_description: str | None = None
    county_fips_code: str | None = None
    row_number: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        if self.accounting_program_year is None:
            raise ValueError("Accounting Program Year is required")
        if not self.state_fsa_code:
            raise ValueError("State FSA Code is required")
        if not self.state_fsa_name:
            raise ValueError("State FSA Name is required")
        if self.disbursement_amount is not None and not isinstance(self.disbursement_amount, Decimal):
            raise ValueError(
                f"Disbursement Amount must be Decimal or None, got {type(self.disbursement_amount).__name__}"
            )

    @property
    def partition_key(self) -> tuple[str, int]:
        return (self.state_fsa_name, self.accounting_program_year)

    def to_row(self) -> dict[str, Any]:
        """Archive row keyed by canonical column names (row_number dropped)."""
        return {column: getattr(self, attr) for attr, column in CANONICAL_COLUMNS.items()}
