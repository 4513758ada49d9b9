from datetime import date
from decimal import Decimal

import pytest

from app.backoffice.modules.finance.parsers.bank_csv import (
    ColumnMapping,
    parse_amount,
    parse_bank_csv,
    parse_statement_date,
)

STATEMENT = b"""Posting Date,Details,Amount,Dr/Cr,Ref,Balance
2026-03-02,Client payment ACME,"1,200.00",CR,R-1,
2026-03-03,Office rent,500.00,DR,,
,Missing date row,10.00,DR,,
2026-03-05,Bank fee,(12.50),DR,,
"""


def test_parse_amount():
    assert parse_amount("$1,234.50") == Decimal("1234.50")
    assert parse_amount("(75.00)") == Decimal("-75.00")
    assert parse_amount("-3") == Decimal("-3")
    assert parse_amount("") is None
    assert parse_amount("n/a") is None


def test_parse_statement_date_prefers_given_format():
    # ambiguous without a hint; month-first is tried before day-first
    assert parse_statement_date("04/03/2026") == date(2026, 4, 3)
    assert parse_statement_date("04/03/2026", "%d/%m/%Y") == date(2026, 3, 4)
    assert parse_statement_date("Mar 7, 2026") == date(2026, 3, 7)
    assert parse_statement_date("garbage") is None


def test_parse_by_header_names_with_type_column():
    mapping = ColumnMapping(date="posting date", description="Details", amount="Amount", type="Dr/Cr", reference="Ref")
    parsed = parse_bank_csv(STATEMENT, mapping, Decimal("1000.00"))

    assert parsed.skipped == 1
    assert parsed.errors == []
    assert [line["type"] for line in parsed.lines] == ["credit", "debit", "debit"]
    assert [line["amount"] for line in parsed.lines] == [Decimal("1200.00"), Decimal("500.00"), Decimal("12.50")]
    assert [line["running_balance"] for line in parsed.lines] == [
        Decimal("2200.00"),
        Decimal("1700.00"),
        Decimal("1687.50"),
    ]
    assert parsed.lines[0]["reference"] == "R-1"
    assert parsed.lines[1]["reference"] is None


def test_parse_by_index_without_header_uses_sign():
    data = b"02/03/2026,Deposit,250.00,900.00\n03/03/2026,Card purchase,-40.00,\n"
    mapping = ColumnMapping(date="0", description="1", amount="2", balance="3", has_header=False, date_format="%d/%m/%Y")
    parsed = parse_bank_csv(data, mapping)

    first, second = parsed.lines
    assert first["line_date"] == date(2026, 3, 2)
    assert first["type"] == "credit"
    # a provided balance column wins over the computed running balance
    assert first["running_balance"] == Decimal("900.00")
    assert second["type"] == "debit"
    assert second["amount"] == Decimal("40.00")
    assert second["running_balance"] == Decimal("860.00")


def test_unknown_header_column_raises():
    mapping = ColumnMapping(date="Value Date", description="Details", amount="Amount")
    with pytest.raises(ValueError, match="not found"):
        parse_bank_csv(STATEMENT, mapping)
