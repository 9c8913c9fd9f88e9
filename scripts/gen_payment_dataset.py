#!/usr/bin/env python3
"""Synthetic FSA payment file generator for performance testing.

Writes one program year's worth of payment rows in the shape the recent
releases use:
- Row 1: title row (xlsx only, matches the ``titled`` layout)
- Row 2: header row with the published column names
- Row 3+: payment rows

Amounts are written as currency text ("$1,234.56", "(12.00)" for negatives) and
a configurable share of rows are exact duplicates, so the generated files go
through the same coercion and dedupe paths as real downloads.
"""
from __future__ import annotations

import argparse
import csv
import sys
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

HEADER = [
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

# (name, FSA code, abbreviation)
STATES = [
    ("Montana", "30", "MT"),
    ("Idaho", "16", "ID"),
    ("Iowa", "19", "IA"),
    ("Texas", "48", "TX"),
    ("Puerto Rico", "72", "PR"),
]

PROGRAMS = [
    ("2801", "LFP"),
    ("2802", "Livestock Indemnity Program"),
    ("4701", "Conservation Reserve Program"),
    ("5101", "Market Facilitation Program"),
]


def _amount_text(value: float) -> str:
    if value < 0:
        return f"({-value:,.2f})"
    return f"${value:,.2f}"


def generate_payment_rows(
    rows: int, year: int, seed: int = 42, duplicate_ratio: float = 0.01
) -> list[list[Any]]:
    """Generate ``rows`` payment rows for ``year`` (header not included)."""
    rng = np.random.default_rng(seed)
    unique = max(1, rows - int(rows * duplicate_ratio))

    out: list[list[Any]] = []
    for i in range(unique):
        name, code, abbr = STATES[int(rng.integers(len(STATES)))]
        program_code, program = PROGRAMS[int(rng.integers(len(PROGRAMS)))]
        amount = round(float(rng.uniform(-500, 25_000)), 2)
        month, day = int(rng.integers(1, 13)), int(rng.integers(1, 29))
        out.append([
            name,
            code,
            f"County {i % 40}",
            str(int(rng.integers(1, 200))),
            f"PAYEE {i:07d}",
            "",
            f"{int(rng.integers(1, 9999))} COUNTY RD",
            "ANYTOWN",
            abbr,
            f"{int(rng.integers(501, 99950)):05d}",
            "",
            _amount_text(amount),
            f"{month:02d}/{day:02d}/{year}",
            program_code,
            program,
            str(year),
        ])
    # 重複行は既存行のコピー
    for j in range(rows - unique):
        out.append(list(out[j % unique]))
    return out


def create_payment_file(
    output_path: Path,
    rows: int,
    year: int,
    sheets: list[str] | None = None,
    title: str = "Payment Files",
    seed: int = 42,
    duplicate_ratio: float = 0.01,
) -> int:
    """Write a CSV or xlsx payment file; returns the number of data rows written.

    The format follows the output suffix. For xlsx every sheet gets the
    same title and header, and ``rows`` is split evenly across sheets.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    data = generate_payment_rows(rows, year, seed, duplicate_ratio)

    if output_path.suffix.lower() == ".csv":
        with output_path.open("w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(HEADER)
            writer.writerows(data)
        return len(data)

    if sheets is None:
        sheets = ["Sheet1"]
    per_sheet = -(-len(data) // len(sheets))
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        for n, sheet_name in enumerate(sheets):
            chunk = data[n * per_sheet:(n + 1) * per_sheet]
            title_row = [f"{title} {year}"] + [""] * (len(HEADER) - 1)
            pd.DataFrame([title_row, HEADER, *chunk]).to_excel(
                writer, sheet_name=sheet_name, header=False, index=False
            )
    return len(data)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Generate synthetic FSA payment files for performance testing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # 50k rows for 2023 as CSV
  %(prog)s out/payments_2023.csv --year 2023

  # titled workbook split over two sheets
  %(prog)s out/payments_2021.xlsx --year 2021 --rows 100000 --sheets "Part 1" "Part 2"
        """,
    )
    parser.add_argument("output", type=Path, help="Output file (.csv or .xlsx)")
    parser.add_argument("--year", type=int, required=True, help="Accounting program year")
    parser.add_argument("--rows", type=int, default=50_000, help="Number of data rows (default: 50,000)")
    parser.add_argument("--sheets", nargs="+", default=["Sheet1"], help="Sheet names for xlsx output")
    parser.add_argument("--title", default="Payment Files", help="Title row text for xlsx output")
    parser.add_argument("--duplicates", type=float, default=0.01, help="Share of duplicate rows (default: 0.01)")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    parser.add_argument("--dry-run", action="store_true", help="Show the plan without writing files")
    args = parser.parse_args()

    if args.rows <= 0:
        print("Error: --rows must be positive", file=sys.stderr)
        return 1
    if args.output.suffix.lower() not in (".csv", ".xlsx"):
        print("Error: output must end in .csv or .xlsx", file=sys.stderr)
        return 1
    if not 0 <= args.duplicates < 1:
        print("Error: --duplicates must be in [0, 1)", file=sys.stderr)
        return 1

    print("Dataset generation plan:")
    print(f"  Output file: {args.output}")
    print(f"  Year: {args.year}")
    print(f"  Rows: {args.rows:,} (~{int(args.rows * args.duplicates):,} duplicates)")
    if args.output.suffix.lower() == ".xlsx":
        print(f"  Sheets: {len(args.sheets)} ({', '.join(args.sheets)})")
    print(f"  Random seed: {args.seed}")

    if args.dry_run:
        print("\n[DRY RUN] Would generate files but not creating them.")
        return 0

    try:
        written = create_payment_file(
            args.output, args.rows, args.year, args.sheets, args.title, args.seed, args.duplicates
        )
    except OSError as e:
        print(f"\nError generating dataset: {e}", file=sys.stderr)
        return 1
    print(f"\nCreated {args.output} with {written:,} rows")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
