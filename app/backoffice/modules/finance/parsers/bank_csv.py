from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

logger = logging.getLogger(__name__)

CREDIT_MARKERS = ("credit", "deposit", "cr", "+")

DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%b %d, %Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
)


@dataclass(frozen=True)
class ColumnMapping:
    """
    Which CSV column holds which field.

    Each column is a zero-based index ("0", "3") or, when the file has a header row,
    a header name ("Posting Date").
    """

    date: str
    description: str
    amount: str
    type: str | None = None
    reference: str | None = None
    balance: str | None = None
    has_header: bool = True
    date_format: str | None = None


@dataclass(frozen=True)
class CsvRowError:
    row_number: int
    message: str


@dataclass
class ParsedStatement:
    lines: list[dict] = field(default_factory=list)
    errors: list[CsvRowError] = field(default_factory=list)
    skipped: int = 0


def parse_amount(raw: str | None) -> Decimal | None:
    """'$1,234.50' -> 1234.50, '(75.00)' -> -75.00; None when empty or not a number."""
    s = (raw or "").strip()
    if not s:
        return None
    negative = s.startswith("(") and s.endswith(")")
    s = re.sub(r"[^\d.\-+]", "", s)
    if not s:
        return None
    try:
        value = Decimal(s)
    except InvalidOperation:
        return None
    return -abs(value) if negative else value


def parse_statement_date(raw: str | None, preferred_format: str | None = None) -> date | None:
    s = (raw or "").strip()
    if not s:
        return None
    formats = ((preferred_format,) if preferred_format else ()) + DATE_FORMATS
    for fmt in formats:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def _resolve(column: str | None, header: list[str] | None) -> int | None:
    if column is None or str(column).strip() == "":
        return None
    column = str(column).strip()
    if column.isdigit():
        return int(column)
    if header:
        lowered = [h.strip().lower() for h in header]
        if column.lower() in lowered:
            return lowered.index(column.lower())
    raise ValueError(f"Column {column!r} not found in the CSV header.")


def _cell(row: list[str], idx: int | None) -> str:
    if idx is None or idx >= len(row):
        return ""
    return (row[idx] or "").strip()


def parse_bank_csv(file_bytes: bytes, mapping: ColumnMapping, opening_balance: Decimal = Decimal("0.00")) -> ParsedStatement:
    """
    Parse a bank statement export using an explicit column mapping.

    Rows missing a date, description or amount are skipped. A row that fails to parse
    is recorded in `errors` and skipped; the rest of the file still imports.
    Each returned line has: line_date, description, amount (absolute), type (credit|debit),
    reference, running_balance.

    Raises ValueError when the mapping does not fit the file at all.
    """
    text = file_bytes.decode("utf-8-sig", errors="replace")
    rows = list(csv.reader(io.StringIO(text)))
    header = rows.pop(0) if (mapping.has_header and rows) else None

    idx_date = _resolve(mapping.date, header)
    idx_desc = _resolve(mapping.description, header)
    idx_amount = _resolve(mapping.amount, header)
    idx_type = _resolve(mapping.type, header)
    idx_ref = _resolve(mapping.reference, header)
    idx_balance = _resolve(mapping.balance, header)

    result = ParsedStatement()
    running = opening_balance
    first_row = 2 if header is not None else 1

    for row_number, row in enumerate(rows, start=first_row):
        if not row or all(not (c or "").strip() for c in row):
            continue
        try:
            line_date = parse_statement_date(_cell(row, idx_date), mapping.date_format)
            description = _cell(row, idx_desc)
            amount = parse_amount(_cell(row, idx_amount))
            if line_date is None or not description or amount is None:
                result.skipped += 1
                continue

            if idx_type is not None:
                line_type = "credit" if _cell(row, idx_type).lower() in CREDIT_MARKERS else "debit"
            else:
                line_type = "credit" if amount >= 0 else "debit"
            amount = abs(amount)

            running = running + amount if line_type == "credit" else running - amount
            if idx_balance is not None:
                provided = parse_amount(_cell(row, idx_balance))
                if provided is not None:
                    running = provided

            result.lines.append(
                {
                    "line_date": line_date,
                    "description": description[:500],
                    "amount": amount,
                    "type": line_type,
                    "reference": _cell(row, idx_ref)[:128] or None,
                    "running_balance": running,
                }
            )
        except (ValueError, ArithmeticError) as e:
            logger.warning("Skipping bank statement row %s: %s", row_number, e)
            result.errors.append(CsvRowError(row_number, str(e)))

    return result
