from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from werkzeug.utils import secure_filename

from app.backoffice.audit import record_event
from app.backoffice.modules.finance.models import Account, BankStatement, BankStatementLine
from app.backoffice.modules.finance.parsers.bank_csv import ColumnMapping, parse_bank_csv
from app.backoffice.modules.finance.service import FinanceRuleError
from app.backoffice.utils import clean, money, parse_date, parse_decimal

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.backoffice.models import User
    from app.backoffice.storage import Storage

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".csv", ".txt")


def mapping_from_form(form) -> ColumnMapping:
    return ColumnMapping(
        date=(form.get("date_column") or "").strip(),
        description=(form.get("description_column") or "").strip(),
        amount=(form.get("amount_column") or "").strip(),
        type=clean(form.get("type_column")),
        reference=clean(form.get("reference_column")),
        balance=clean(form.get("balance_column")),
        has_header=form.get("has_header") in ("1", "on", "true"),
        date_format=clean(form.get("date_format")),
    )


def validate_statement_upload(payload: dict, filename: str | None, mapping: ColumnMapping) -> list[str]:
    errors: list[str] = []
    if not filename:
        errors.append("Choose a CSV file to upload.")
    elif not filename.lower().endswith(ALLOWED_EXTENSIONS):
        errors.append("Statement file must be a .csv export.")
    if payload.get("account") is None:
        errors.append("Account not found.")

    statement_date = parse_date(payload.get("statement_date"))
    period_start = parse_date(payload.get("period_start"))
    period_end = parse_date(payload.get("period_end"))
    if statement_date is None:
        errors.append("Statement date is required (YYYY-MM-DD).")
    if period_start is None or period_end is None:
        errors.append("Statement period start and end are required (YYYY-MM-DD).")
    elif period_end < period_start:
        errors.append("Period end must be on or after period start.")

    for field, label in (("opening_balance", "Opening balance"), ("closing_balance", "Closing balance")):
        if parse_decimal(payload.get(field)) is None:
            errors.append(f"{label} must be a number.")

    for attr, label in (("date", "Date"), ("description", "Description"), ("amount", "Amount")):
        if not getattr(mapping, attr):
            errors.append(f"{label} column is required.")
    return errors


def _process(s: "Session", statement: BankStatement, file_bytes: bytes, mapping: ColumnMapping) -> BankStatement:
    statement.status = "processing"
    statement.error_message = None
    s.flush()
    try:
        parsed = parse_bank_csv(file_bytes, mapping, opening_balance=statement.opening_balance)
    except ValueError as e:
        logger.warning("Bank statement %s failed to import: %s", statement.id, e)
        statement.status = "failed"
        statement.error_message = str(e)
        return statement

    statement.lines = [
        BankStatementLine(
            line_date=line["line_date"],
            description=line["description"],
            amount=money(line["amount"]),
            type=line["type"],
            reference=line["reference"],
            running_balance=money(line["running_balance"]),
        )
        for line in parsed.lines
    ]
    statement.transactions_imported = len(parsed.lines)
    statement.status = "processed"
    statement.processed_at = datetime.utcnow()
    if parsed.errors:
        statement.error_message = "; ".join(f"row {e.row_number}: {e.message}" for e in parsed.errors[:20])
    logger.info(
        "Bank statement %s imported lines=%s skipped=%s errors=%s",
        statement.id,
        len(parsed.lines),
        parsed.skipped,
        len(parsed.errors),
    )
    return statement


def import_statement(
    s: "Session",
    *,
    account: Account,
    file_bytes: bytes,
    filename: str,
    mapping: ColumnMapping,
    payload: dict,
    user: "User",
    storage: "Storage",
) -> BankStatement:
    """Store the upload, then parse it into statement lines. Parse failures leave status=failed."""
    safe_name = secure_filename(filename) or "statement.csv"
    ts = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    storage_key = f"bank_statements/{account.id}/{ts}_{safe_name}"
    storage.put_bytes(storage_key, file_bytes, content_type="text/csv")

    statement = BankStatement(
        account_id=account.id,
        filename=safe_name,
        storage_key=storage_key,
        statement_date=parse_date(payload.get("statement_date")),
        period_start=parse_date(payload.get("period_start")),
        period_end=parse_date(payload.get("period_end")),
        opening_balance=money(parse_decimal(payload.get("opening_balance"))),
        closing_balance=money(parse_decimal(payload.get("closing_balance"))),
        status="pending",
        column_mapping_json=json.dumps(asdict(mapping), sort_keys=True),
        user_id=user.id,
    )
    s.add(statement)
    s.flush()
    _process(s, statement, file_bytes, mapping)

    record_event(
        s,
        actor=user,
        action="bank_statement.import",
        entity_type="BankStatement",
        entity_id=str(statement.id),
        metadata={
            "account_id": account.id,
            "filename": safe_name,
            "status": statement.status,
            "lines": statement.transactions_imported,
        },
    )
    return statement


def reprocess_statement(s: "Session", statement: BankStatement, actor: "User", storage: "Storage") -> BankStatement:
    if statement.status != "failed":
        raise FinanceRuleError("Only failed statements can be reprocessed.")
    mapping = ColumnMapping(**json.loads(statement.column_mapping_json or "{}"))
    _process(s, statement, storage.read_bytes(statement.storage_key), mapping)
    record_event(
        s,
        actor=actor,
        action="bank_statement.reprocess",
        entity_type="BankStatement",
        entity_id=str(statement.id),
        metadata={"status": statement.status},
    )
    return statement


def delete_statement(s: "Session", statement: BankStatement, actor: "User", storage: "Storage") -> None:
    if any(line.is_reconciled for line in statement.lines):
        raise FinanceRuleError("Cannot delete a statement with reconciled lines.")
    record_event(
        s,
        actor=actor,
        action="bank_statement.delete",
        entity_type="BankStatement",
        entity_id=str(statement.id),
        metadata={"filename": statement.filename},
    )
    key = statement.storage_key
    s.delete(statement)
    s.flush()
    storage.delete(key)


def statement_totals(statement: BankStatement) -> dict[str, Decimal]:
    credits = sum((line.amount for line in statement.lines if line.type == "credit"), Decimal("0.00"))
    debits = sum((line.amount for line in statement.lines if line.type == "debit"), Decimal("0.00"))
    return {"credits": money(credits), "debits": money(debits), "net": money(credits - debits)}


def period_default(today: date | None = None) -> tuple[date, date]:
    today = today or date.today()
    return today.replace(day=1), today
