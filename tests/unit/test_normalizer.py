from __future__ import annotations

from datetime import date
from decimal import Decimal

import pandas as pd
import pytest

from fsa_payments.models.config_models import YearLayout
from fsa_payments.models.source_file import SourceFile, SourceFormat
from fsa_payments.services.normalizer import (
    NormalizedBatch,
    SchemaMismatchError,
    normalize_frame,
    normalize_source,
    plan_columns,
)


def test_three_row_csv_scenario_2023(csv_source, mapping_table):
    source = csv_source(
        [
            ["County", "State", "Program", "Amount"],
            ["Missoula", "MT", "LFP", "$100.00"],
            ["", "", "", " "],
            ["TOTAL", "", "", "$100.00"],
        ]
    )
    batch = normalize_source(source, mapping_table)

    assert len(batch.records) == 1
    record = batch.records[0]
    assert record.disbursement_amount == Decimal("100.00")
    assert record.county_fsa_name == "Missoula"
    assert record.state_fsa_name == "Montana"
    assert record.state_fsa_code == "30"
    assert record.accounting_program_description == "LIVESTOCK FORAGE PROGRAM"
    assert record.accounting_program_year == 2023
    assert record.row_number == 2
    assert batch.dropped_rows == 2
    assert batch.skipped_rows == 0


def test_full_header_row_coercion(csv_source, mapping_table, full_header, make_row):
    source = csv_source([full_header, make_row(county_code="6", year="2022")])
    record = normalize_source(source, mapping_table).records[0]

    assert record.county_fsa_code == "006"
    assert record.state_fsa_code == "30"
    assert record.zip_code == "59801"
    assert record.payment_date == date(2023, 3, 15)
    assert record.disbursement_amount == Decimal("1234.56")
    assert record.accounting_program_code == "2801"
    # ファイル内の年列より宣言年が優先
    assert record.accounting_program_year == 2023
    assert record.address_information_line is None


def test_header_variants_and_ignored_columns(csv_source, mapping_table):
    source = csv_source(
        [
            ["ST FSA NAME ", "state code", "Cnty FSA Name", "Payee", "Disbursment Amount", "Payment Type"],
            ["Idaho", "16", "Ada", "SMITH FARMS", "50", "EFT"],
        ]
    )
    record = normalize_source(source, mapping_table).records[0]
    assert record.state_fsa_name == "Idaho"
    assert record.county_fsa_name == "Ada"
    assert record.formatted_payee_name == "SMITH FARMS"
    assert record.disbursement_amount == Decimal("50.00")


def test_unmapped_header_raises_schema_mismatch(csv_source, mapping_table):
    source = csv_source([["State", "Farm Size", "Amount"], ["MT", "100", "$1.00"]])
    with pytest.raises(SchemaMismatchError) as exc_info:
        normalize_source(source, mapping_table)
    assert exc_info.value.columns == ("Farm Size",)
    assert "Farm Size" in str(exc_info.value)


def test_duplicate_canonical_column_raises(csv_source, mapping_table):
    source = csv_source([["State", "State Name", "Amount"], ["MT", "Montana", "$1.00"]])
    with pytest.raises(SchemaMismatchError, match="already mapped"):
        normalize_source(source, mapping_table)


def test_missing_state_column_raises(csv_source, mapping_table):
    source = csv_source([["County", "Amount"], ["Missoula", "$1.00"]])
    with pytest.raises(SchemaMismatchError, match="State FSA"):
        normalize_source(source, mapping_table)


def _rows_with_bad_amounts(full_header, make_row, total: int, bad: int) -> list[list[str]]:
    rows = [full_header]
    for i in range(total):
        rows.append(make_row(payee=f"PAYEE {i}", amount="not-money" if i < bad else f"{i}.00"))
    return rows


def test_skip_fraction_above_threshold_fails_file(csv_source, mapping_table, full_header, make_row):
    # 20 行中 2 行 (10%) が変換不能、閾値 5%
    source = csv_source(_rows_with_bad_amounts(full_header, make_row, total=20, bad=2))
    with pytest.raises(SchemaMismatchError, match="rows unparsable") as exc_info:
        normalize_source(source, mapping_table, skip_threshold=0.05)
    assert len(exc_info.value.row_errors) == 2
    assert {e.error_type for e in exc_info.value.row_errors} == {"ROW_COERCION"}
    assert [e.row for e in exc_info.value.row_errors] == [2, 3]


def test_skip_fraction_at_threshold_passes(csv_source, mapping_table, full_header, make_row):
    # 20 行中 1 行 = 5% は閾値以内
    source = csv_source(_rows_with_bad_amounts(full_header, make_row, total=20, bad=1))
    batch = normalize_source(source, mapping_table, skip_threshold=0.05)
    assert len(batch.records) == 19
    assert batch.skipped_rows == 1
    assert batch.candidate_rows == 20
    assert batch.row_errors[0].file == "payments_2023.csv"
    assert batch.row_errors[0].sheet == "csv"


@pytest.mark.parametrize("amount", ["1E+40", "99999999999999999.00"])
def test_unrepresentable_amount_skips_only_that_row(csv_source, mapping_table, full_header, make_row, amount):
    rows = [full_header] + [make_row(payee=f"P{i}", amount=amount if i == 7 else "1.00") for i in range(40)]
    batch = normalize_source(csv_source(rows), mapping_table, skip_threshold=0.05)
    assert batch.skipped_rows == 1
    assert len(batch.records) == 39
    assert batch.row_errors[0].error_type == "ROW_COERCION"
    assert batch.row_errors[0].row == 9
    assert "out of range" in batch.row_errors[0].message


def test_trailing_extra_fields_are_ignored(csv_source, mapping_table):
    source = csv_source(
        [
            ["County", "State", "Program", "Amount"],
            ["Missoula", "MT", "LFP", "$100.00", ""],
            ["Ada", "ID", "LFP", "$5.00", "", "note"],
        ]
    )
    batch = normalize_source(source, mapping_table)
    assert [(r.state_fsa_name, r.disbursement_amount) for r in batch.records] == [
        ("Montana", Decimal("100.00")),
        ("Idaho", Decimal("5.00")),
    ]
    assert batch.skipped_rows == 0


def test_header_only_file_is_schema_mismatch(csv_source, mapping_table, full_header):
    source = csv_source([full_header])
    with pytest.raises(SchemaMismatchError, match="no payment rows"):
        normalize_source(source, mapping_table)


def test_unfetched_source_rejected(mapping_table):
    source = SourceFile(year=2023, url="https://payments.example.test/a.csv", format=SourceFormat.CSV)
    with pytest.raises(ValueError, match="not been fetched"):
        normalize_source(source, mapping_table)


def test_unrecognized_program_kept_and_counted(csv_source, mapping_table, full_header, make_row):
    source = csv_source(
        [
            full_header,
            make_row(program="Brand New Relief Program"),
            make_row(payee="OTHER", program="Brand New Relief Program"),
            make_row(payee="THIRD", program="CFAP 2"),
        ]
    )
    batch = normalize_source(source, mapping_table)
    assert [r.accounting_program_description for r in batch.records] == [
        "Brand New Relief Program",
        "Brand New Relief Program",
        "CORONAVIRUS FOOD ASSISTANCE PROGRAM 2",
    ]
    assert batch.unrecognized_programs == {"Brand New Relief Program": 2}


def _early_row(state_code: str = "30", amount: str = "$25.00") -> list[str]:
    return [
        state_code, "63", "DOE JOHN", "", "123 MAIN ST", "MISSOULA", "MT", "59801", "",
        amount, "2005-06-01", "2801", "DCP",
    ]


def test_positional_layout_for_early_years(csv_source, mapping_table):
    source = csv_source([_early_row(), _early_row(state_code="16", amount="(3.50)")], year=2005)
    batch = normalize_source(source, mapping_table)

    assert [r.state_fsa_name for r in batch.records] == ["Montana", "Idaho"]
    assert batch.records[0].accounting_program_description == "DIRECT AND COUNTER-CYCLICAL PROGRAM"
    assert batch.records[1].disbursement_amount == Decimal("-3.50")
    assert batch.records[0].row_number == 1


def test_positional_layout_too_few_columns(csv_source, mapping_table):
    source = csv_source([["30", "63", "DOE JOHN", "", "x"]], year=2005)
    with pytest.raises(SchemaMismatchError, match="expects 13 columns"):
        normalize_source(source, mapping_table)


def test_positional_layout_extra_columns_ignored(csv_source, mapping_table):
    source = csv_source([_early_row() + ["EXTRA", "MORE"]], year=2006)
    batch = normalize_source(source, mapping_table)
    assert len(batch.records) == 1


def test_transitional_layout_detects_header_or_falls_back(mapping_table, full_header, make_row):
    layout = mapping_table.layout_for(2010)
    width = len(full_header)

    header_plan = plan_columns(full_header, width, layout, mapping_table)
    assert header_plan.mode == "header"

    data_plan = plan_columns(make_row(), width, layout, mapping_table)
    assert data_plan.mode == "positional"
    assert data_plan.columns[0] == "state_fsa_code"
    assert data_plan.columns[1] == "state_fsa_name"


def test_titled_layout_skips_title_row(csv_source, mapping_table, full_header, make_row):
    title = ["USDA FSA Payment Files 2020"] + [""] * (len(full_header) - 1)
    source = csv_source([title, full_header, make_row(year="2020")], year=2020)
    batch = normalize_source(source, mapping_table)
    assert len(batch.records) == 1
    assert batch.records[0].row_number == 3
    assert batch.records[0].accounting_program_year == 2020


def test_normalize_frame_multiple_sheets_accumulate(mapping_table):
    layout = YearLayout(name="test", header="present")
    batch = NormalizedBatch(file_name="book.xlsx", year=2023)
    sheet1 = pd.DataFrame([["State", "Amount"], ["MT", "$1.00"]], dtype=object)
    sheet2 = pd.DataFrame([["State", "Amount"], ["ID", "$2.00"], ["Total", "$3.00"]], dtype=object)

    normalize_frame(sheet1, year=2023, table=mapping_table, sheet_name="A", batch=batch, layout=layout)
    normalize_frame(sheet2, year=2023, table=mapping_table, sheet_name="B", batch=batch, layout=layout)

    assert [r.state_fsa_name for r in batch.records] == ["Montana", "Idaho"]
    assert batch.candidate_rows == 2
    assert batch.dropped_rows == 1


def test_normalize_frame_empty_sheet_is_noop(mapping_table):
    batch = NormalizedBatch(file_name="book.xlsx", year=2023)
    normalize_frame(pd.DataFrame(), year=2023, table=mapping_table, sheet_name="Empty", batch=batch)
    assert batch.records == []
    assert batch.candidate_rows == 0
