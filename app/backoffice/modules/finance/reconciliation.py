"""
Bank reconciliation: pair statement lines with book transactions for one account and period.

A reconciliation holds three kinds of items:
- unmatched_bank: a statement line with no book transaction yet
- unmatched_book: a completed, unreconciled transaction with no statement line yet
- matched: a statement line paired with a transaction (the book item is consumed)

Item amounts are signed from the account's point of view (money in > 0).
"""
from __future__ import annotations

import difflib
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.backoffice.audit import record_event
from app.backoffice.modules.finance.models import (
    ZERO,
    Account,
    BankReconciliation,
    BankStatement,
    BankStatementLine,
    ReconciliationItem,
    Transaction,
)
from app.backoffice.modules.finance.service import FinanceRuleError
from app.backoffice.utils import money

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.backoffice.models import User

AUTO_MATCH_THRESHOLD = 80
SUGGESTION_THRESHOLD = 50
MAX_SUGGESTIONS = 5
BALANCED_TOLERANCE = Decimal("0.01")


def generate_reconciliation_number(s: "Session", account: Account, today: date | None = None) -> str:
    """{first 3 letters of account name}-REC-YYYYMMDD-### with a per-account, per-day sequence."""
    today = today or date.today()
    prefix = f"{(account.name or 'REC')[:3].upper()}-REC-{today.strftime('%Y%m%d')}-"
    last = (
        s.query(BankReconciliation.reconciliation_number)
        .filter(
            BankReconciliation.account_id == account.id,
            BankReconciliation.reconciliation_number.like(f"{prefix}%"),
        )
        .order_by(BankReconciliation.reconciliation_number.desc())
        .first()
    )
    seq = int(last[0][-3:]) + 1 if last and last[0][-3:].isdigit() else 1
    return f"{prefix}{seq:03d}"


def book_balance(s: "Session", account: Account, *, before: date | None = None, through: date | None = None) -> Decimal:
    """Initial balance plus completed transactions dated before/through the given day."""
    s.flush()
    q = s.query(Transaction).filter(
        Transaction.status == "completed",
        (Transaction.account_id == account.id) | (Transaction.transfer_to_account_id == account.id),
    )
    if before is not None:
        q = q.filter(Transaction.transaction_date < before)
    if through is not None:
        q = q.filter(Transaction.transaction_date <= through)
    total = account.initial_balance or ZERO
    for tx in q.all():
        total += tx.signed_amount_for(account.id)
    return money(total)


# ============================================================================
# SCORING
# ============================================================================


def description_similarity(a: str | None, b: str | None) -> float:
    a = (a or "").strip().lower()
    b = (b or "").strip().lower()
    if not a or not b:
        return 0.0
    return difflib.SequenceMatcher(None, a, b).ratio()


def match_score(line: BankStatementLine, tx: Transaction, account_id: int) -> int:
    """
    0-100 confidence that `line` and `tx` are the same movement of money.

    amount: exact 50, within 1.00 40; date: same day 30, next day 25, within 3 days 15;
    description similarity up to 20; matching reference +10. Direction must agree
    (credit lines with money in, debit lines with money out) or the score is 0.
    """
    book_amount = tx.signed_amount_for(account_id)
    if (line.type == "credit") != (book_amount > 0):
        return 0

    score = 0.0
    amount_diff = abs(line.amount - abs(book_amount))
    if amount_diff < Decimal("0.01"):
        score += 50
    elif amount_diff < Decimal("1.00"):
        score += 40

    days = abs((line.line_date - tx.transaction_date).days)
    if days == 0:
        score += 30
    elif days == 1:
        score += 25
    elif days <= 3:
        score += 15

    score += description_similarity(line.description, tx.description) * 20

    if line.reference and tx.reference_number and line.reference.strip().lower() == tx.reference_number.strip().lower():
        score += 10

    return min(100, round(score))


def confidence_level(score: int) -> str:
    if score >= 90:
        return "high"
    if score >= 70:
        return "medium"
    return "low"


# ============================================================================
# LIFECYCLE
# ============================================================================


def _items(rec: BankReconciliation, kind: str) -> list[ReconciliationItem]:
    return [i for i in rec.items if i.kind == kind]


def refresh_statistics(rec: BankReconciliation) -> BankReconciliation:
    matched = _items(rec, "matched")
    bank = _items(rec, "unmatched_bank")
    book = _items(rec, "unmatched_book")

    rec.matched_count = len(matched)
    rec.unmatched_bank_count = len(bank)
    rec.unmatched_book_count = len(book)
    rec.matched_amount = money(sum((i.amount for i in matched), ZERO))
    rec.unmatched_bank_amount = money(sum((i.amount for i in bank), ZERO))
    rec.unmatched_book_amount = money(sum((i.amount for i in book), ZERO))
    rec.difference = money(
        rec.statement_closing_balance
        - (rec.book_closing_balance + rec.unmatched_bank_amount - rec.unmatched_book_amount)
    )
    rec.updated_at = datetime.utcnow()
    return rec


def _book_item(tx: Transaction, account_id: int) -> ReconciliationItem:
    return ReconciliationItem(
        kind="unmatched_book",
        transaction=tx,
        transaction_id=tx.id,
        amount=tx.signed_amount_for(account_id),
        item_date=tx.transaction_date,
        description=(tx.description or "")[:500],
    )


def create_reconciliation(
    s: "Session",
    *,
    account: Account,
    statement: BankStatement | None,
    period_start: date,
    period_end: date,
    statement_opening_balance: Decimal,
    statement_closing_balance: Decimal,
    user: "User",
) -> BankReconciliation:
    if period_end < period_start:
        raise FinanceRuleError("Period end must be on or after period start.")
    if statement is not None and statement.account_id != account.id:
        raise FinanceRuleError("Statement belongs to a different account.")
    open_rec = (
        s.query(BankReconciliation.id)
        .filter(BankReconciliation.account_id == account.id, BankReconciliation.status == "in_progress")
        .first()
    )
    if open_rec:
        raise FinanceRuleError("This account already has a reconciliation in progress.")

    rec = BankReconciliation(
        reconciliation_number=generate_reconciliation_number(s, account),
        account_id=account.id,
        statement_id=statement.id if statement else None,
        period_start=period_start,
        period_end=period_end,
        statement_opening_balance=money(statement_opening_balance),
        statement_closing_balance=money(statement_closing_balance),
        book_opening_balance=book_balance(s, account, before=period_start),
        book_closing_balance=book_balance(s, account, through=period_end),
        status="in_progress",
        user_id=user.id,
    )

    items: list[ReconciliationItem] = []
    if statement is not None:
        for line in statement.lines:
            if line.is_reconciled:
                continue
            items.append(
                ReconciliationItem(
                    kind="unmatched_bank",
                    statement_line=line,
                    statement_line_id=line.id,
                    amount=line.signed_amount,
                    item_date=line.line_date,
                    description=line.description,
                )
            )

    txs = (
        s.query(Transaction)
        .filter(
            (Transaction.account_id == account.id) | (Transaction.transfer_to_account_id == account.id),
            Transaction.status == "completed",
            Transaction.is_reconciled.is_(False),
            Transaction.transaction_date >= period_start,
            Transaction.transaction_date <= period_end,
        )
        .order_by(Transaction.transaction_date.asc(), Transaction.id.asc())
        .all()
    )
    items.extend(_book_item(tx, account.id) for tx in txs)

    rec.items = items
    refresh_statistics(rec)
    s.add(rec)
    s.flush()
    record_event(
        s,
        actor=user,
        action="reconciliation.create",
        entity_type="BankReconciliation",
        entity_id=str(rec.id),
        metadata={
            "number": rec.reconciliation_number,
            "bank_items": rec.unmatched_bank_count,
            "book_items": rec.unmatched_book_count,
        },
    )
    return rec


def _require_in_progress(rec: BankReconciliation) -> None:
    if rec.status != "in_progress":
        raise FinanceRuleError("Reconciliation is already completed.")


def _pair(
    bank_item: ReconciliationItem,
    book_item: ReconciliationItem,
    *,
    match_type: str,
    confidence: int | None,
    actor: "User",
    notes: str | None = None,
) -> None:
    bank_item.kind = "matched"
    bank_item.transaction = book_item.transaction
    bank_item.transaction_id = book_item.transaction_id
    bank_item.match_type = match_type
    bank_item.confidence = confidence
    bank_item.amount_difference = money(abs(bank_item.amount) - abs(book_item.amount))
    bank_item.notes = notes
    bank_item.matched_by_user_id = actor.id
    bank_item.matched_at = datetime.utcnow()


def auto_match(s: "Session", rec: BankReconciliation, actor: "User") -> int:
    """Pair each bank item with its best book candidate scoring >= 80; each book item is used once."""
    _require_in_progress(rec)
    available = {i.id: i for i in _items(rec, "unmatched_book") if i.transaction is not None}
    matched = 0
    for bank_item in _items(rec, "unmatched_bank"):
        line = bank_item.statement_line
        if line is None:
            continue
        best: tuple[int, ReconciliationItem] | None = None
        for book_item in available.values():
            score = match_score(line, book_item.transaction, rec.account_id)
            if score >= AUTO_MATCH_THRESHOLD and (best is None or score > best[0]):
                best = (score, book_item)
        if best is None:
            continue
        score, book_item = best
        _pair(bank_item, book_item, match_type="auto", confidence=score, actor=actor)
        del available[book_item.id]
        rec.items.remove(book_item)
        matched += 1

    refresh_statistics(rec)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="reconciliation.auto_match",
        entity_type="BankReconciliation",
        entity_id=str(rec.id),
        metadata={"matched": matched},
    )
    return matched


def suggest_matches(rec: BankReconciliation, bank_item: ReconciliationItem) -> list[dict[str, Any]]:
    """Top 5 book items scoring >= 50 for one bank item, best first."""
    line = bank_item.statement_line
    if bank_item.kind != "unmatched_bank" or line is None:
        return []
    out = []
    for book_item in _items(rec, "unmatched_book"):
        if book_item.transaction is None:
            continue
        score = match_score(line, book_item.transaction, rec.account_id)
        if score >= SUGGESTION_THRESHOLD:
            out.append({"item": book_item, "score": score, "level": confidence_level(score)})
    out.sort(key=lambda d: (-d["score"], d["item"].item_date))
    return out[:MAX_SUGGESTIONS]


def _get_item(rec: BankReconciliation, item_id: int | None, kind: str) -> ReconciliationItem:
    for item in rec.items:
        if item.id == item_id and item.kind == kind:
            return item
    raise FinanceRuleError(f"Item {item_id} is not an open {kind.replace('_', ' ')} item.")


def manual_match(
    s: "Session",
    rec: BankReconciliation,
    bank_item_id: int | None,
    book_item_id: int | None,
    actor: "User",
    notes: str | None = None,
) -> ReconciliationItem:
    _require_in_progress(rec)
    bank_item = _get_item(rec, bank_item_id, "unmatched_bank")
    book_item = _get_item(rec, book_item_id, "unmatched_book")
    if (bank_item.amount > 0) != (book_item.amount > 0):
        raise FinanceRuleError("A deposit can only match money in, and a withdrawal only money out.")

    confidence = None
    if bank_item.statement_line is not None and book_item.transaction is not None:
        confidence = match_score(bank_item.statement_line, book_item.transaction, rec.account_id)
    _pair(bank_item, book_item, match_type="manual", confidence=confidence, actor=actor, notes=(notes or "").strip() or None)
    rec.items.remove(book_item)
    refresh_statistics(rec)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="reconciliation.match",
        entity_type="BankReconciliation",
        entity_id=str(rec.id),
        metadata={"bank_item": bank_item.id, "transaction_id": bank_item.transaction_id},
    )
    return bank_item


def unmatch(s: "Session", rec: BankReconciliation, item_id: int | None, actor: "User") -> None:
    _require_in_progress(rec)
    item = _get_item(rec, item_id, "matched")
    tx = item.transaction
    transaction_id = item.transaction_id

    item.kind = "unmatched_bank"
    item.transaction = None
    item.transaction_id = None
    item.match_type = None
    item.confidence = None
    item.amount_difference = None
    item.notes = None
    item.matched_by_user_id = None
    item.matched_at = None
    if tx is not None:
        rec.items.append(_book_item(tx, rec.account_id))

    refresh_statistics(rec)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="reconciliation.unmatch",
        entity_type="BankReconciliation",
        entity_id=str(rec.id),
        metadata={"bank_item": item.id, "transaction_id": transaction_id},
    )


def complete_reconciliation(s: "Session", rec: BankReconciliation, actor: "User") -> BankReconciliation:
    _require_in_progress(rec)
    refresh_statistics(rec)
    if abs(rec.difference) >= BALANCED_TOLERANCE:
        raise FinanceRuleError(f"Cannot complete: the reconciliation is out of balance by {rec.difference}.")

    now = datetime.utcnow()
    for item in _items(rec, "matched"):
        if item.transaction is not None:
            item.transaction.is_reconciled = True
            item.transaction.reconciled_at = now
        if item.statement_line is not None:
            item.statement_line.is_reconciled = True
    rec.status = "completed"
    rec.completed_at = now
    s.flush()
    record_event(
        s,
        actor=actor,
        action="reconciliation.complete",
        entity_type="BankReconciliation",
        entity_id=str(rec.id),
        metadata={"matched": rec.matched_count, "difference": str(rec.difference)},
    )
    return rec


def delete_reconciliation(s: "Session", rec: BankReconciliation, actor: "User") -> None:
    """Deleting a completed reconciliation releases its transactions and lines for the next one."""
    for item in _items(rec, "matched"):
        if item.transaction is not None:
            item.transaction.is_reconciled = False
            item.transaction.reconciled_at = None
        if item.statement_line is not None:
            item.statement_line.is_reconciled = False
    record_event(
        s,
        actor=actor,
        action="reconciliation.delete",
        entity_type="BankReconciliation",
        entity_id=str(rec.id),
        metadata={"number": rec.reconciliation_number, "status": rec.status},
    )
    s.delete(rec)


def reconciliation_summary(s: "Session", account: Account) -> dict[str, Any]:
    last = (
        s.query(BankReconciliation)
        .filter(BankReconciliation.account_id == account.id, BankReconciliation.status == "completed")
        .order_by(BankReconciliation.completed_at.desc())
        .first()
    )
    unreconciled = (
        s.query(func.count(Transaction.id))
        .filter(
            Transaction.account_id == account.id,
            Transaction.status == "completed",
            Transaction.is_reconciled.is_(False),
        )
        .scalar()
        or 0
    )
    return {"last_completed": last, "unreconciled_transactions": unreconciled}
