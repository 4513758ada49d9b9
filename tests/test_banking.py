"""Bank statement import and reconciliation."""
import io
from datetime import date
from decimal import Decimal

from app.backoffice.db import session_scope
from app.backoffice.models import User
from app.backoffice.modules.finance.models import (
    BankReconciliation,
    BankStatement,
    BankStatementLine,
    Transaction,
)
from app.backoffice.modules.finance.reconciliation import (
    confidence_level,
    description_similarity,
    generate_reconciliation_number,
    match_score,
)
from app.backoffice.modules.finance.service import create_account, create_transaction

from conftest import login, post

STATEMENT = b"""Posting Date,Details,Amount,Dr/Cr,Ref
2026-03-02,Client payment ACME,1200.00,CR,INV-1
2026-03-03,Office rent,500.00,DR,
2026-03-05,Bank fee,12.50,DR,
"""


def _setup_books(app) -> int:
    """Checking account with two booked transactions that also appear on the statement."""
    with session_scope(app) as s:
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        acc = create_account(s, {"name": "Checking", "type": "assets", "initial_balance": "1000.00"}, admin)
        s.flush()
        base = {"account_id": str(acc.id), "status": "completed"}
        create_transaction(
            s,
            {**base, "type": "income", "amount": "1200", "description": "Client payment ACME", "transaction_date": "2026-03-02"},
            admin,
        )
        create_transaction(
            s,
            {**base, "type": "expense", "amount": "500", "description": "Office rent", "transaction_date": "2026-03-03"},
            admin,
        )
        return acc.id


def _upload(client, account_id, content=STATEMENT, **overrides):
    data = {
        "account_id": str(account_id),
        "statement_date": "2026-03-31",
        "period_start": "2026-03-01",
        "period_end": "2026-03-31",
        "opening_balance": "1000.00",
        "closing_balance": "1687.50",
        "has_header": "1",
        "date_column": "Posting Date",
        "description_column": "Details",
        "amount_column": "Amount",
        "type_column": "Dr/Cr",
        "reference_column": "Ref",
        "file": (io.BytesIO(content), "march.csv"),
    }
    data.update(overrides)
    return post(client, "/admin/finance/statements/upload", data=data, follow_redirects=True)


def _statement_id(app, account_id) -> int:
    with session_scope(app) as s:
        return s.query(BankStatement).filter(BankStatement.account_id == account_id).one().id


def _start_reconciliation(client, app, account_id, statement_id, closing="1687.50"):
    r = post(
        client,
        "/admin/finance/reconciliations/new",
        data={
            "account_id": str(account_id),
            "statement_id": str(statement_id),
            "period_start": "2026-03-01",
            "period_end": "2026-03-31",
            "statement_opening_balance": "1000.00",
            "statement_closing_balance": closing,
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        return s.query(BankReconciliation).filter(BankReconciliation.account_id == account_id).one().id


# ---------- statements ----------
def test_statement_upload_imports_lines(client, app, tmp_path):
    account_id = _setup_books(app)
    login(client)
    r = _upload(client, account_id)
    assert b"Imported 3 statement line(s)." in r.data

    with session_scope(app) as s:
        st = s.query(BankStatement).filter(BankStatement.account_id == account_id).one()
        assert st.status == "processed"
        assert st.transactions_imported == 3
        assert st.storage_key.startswith(f"bank_statements/{account_id}/")
        assert [line.type for line in st.lines] == ["credit", "debit", "debit"]
        assert st.lines[0].reference == "INV-1"
        assert (tmp_path / "storage" / st.storage_key).exists()

    r = client.get(f"/admin/finance/statements/{st.id}")
    assert r.status_code == 200
    assert b"Bank fee" in r.data


def test_statement_upload_validation(client, app):
    account_id = _setup_books(app)
    login(client)
    r = post(
        client,
        "/admin/finance/statements/upload",
        data={"account_id": str(account_id), "period_start": "2026-03-31", "period_end": "2026-03-01"},
    )
    assert r.status_code == 400
    assert b"Choose a CSV file to upload." in r.data
    assert b"Period end must be on or after period start." in r.data

    r = _upload(client, account_id, file=(io.BytesIO(STATEMENT), "march.pdf"))
    assert b"must be a .csv export" in r.data


def test_bad_mapping_marks_statement_failed(client, app):
    account_id = _setup_books(app)
    login(client)
    r = _upload(client, account_id, date_column="Value Date")
    assert b"Statement import failed" in r.data
    with session_scope(app) as s:
        st = s.query(BankStatement).filter(BankStatement.account_id == account_id).one()
        assert st.status == "failed"
        assert "Value Date" in st.error_message
        assert st.lines == []


def test_only_failed_statements_reprocess(client, app):
    account_id = _setup_books(app)
    login(client)
    _upload(client, account_id)
    statement_id = _statement_id(app, account_id)
    r = post(client, f"/admin/finance/statements/{statement_id}/reprocess", follow_redirects=True)
    assert b"Only failed statements can be reprocessed." in r.data


def test_staff_cannot_view_statements(client, app):
    account_id = _setup_books(app)
    login(client)
    _upload(client, account_id)
    statement_id = _statement_id(app, account_id)

    client.get("/auth/logout")
    login(client, email="staff@example.com")
    assert client.get(f"/admin/finance/statements/{statement_id}").status_code == 403


# ---------- reconciliation ----------
def test_auto_match_and_complete(client, app):
    account_id = _setup_books(app)
    login(client)
    _upload(client, account_id)
    statement_id = _statement_id(app, account_id)
    rec_id = _start_reconciliation(client, app, account_id, statement_id)

    with session_scope(app) as s:
        rec = s.get(BankReconciliation, rec_id)
        assert rec.reconciliation_number.startswith("CHE-REC-")
        assert rec.book_opening_balance == Decimal("1000.00")
        assert rec.book_closing_balance == Decimal("1700.00")
        assert rec.unmatched_bank_count == 3
        assert rec.unmatched_book_count == 2

    r = post(client, f"/admin/finance/reconciliations/{rec_id}/auto-match", follow_redirects=True)
    assert b"Auto-matched 2 item(s)." in r.data

    with session_scope(app) as s:
        rec = s.get(BankReconciliation, rec_id)
        assert rec.matched_count == 2
        assert rec.unmatched_bank_count == 1
        assert rec.unmatched_book_count == 0
        assert rec.unmatched_bank_amount == Decimal("-12.50")
        assert rec.difference == Decimal("0.00")
        assert rec.progress == 67

    r = post(client, f"/admin/finance/reconciliations/{rec_id}/complete", follow_redirects=True)
    assert b"Reconciliation completed." in r.data

    with session_scope(app) as s:
        assert s.get(BankReconciliation, rec_id).status == "completed"
        txs = s.query(Transaction).filter(Transaction.account_id == account_id).all()
        assert all(tx.is_reconciled for tx in txs)
        reconciled_lines = s.query(BankStatementLine).filter(BankStatementLine.is_reconciled.is_(True)).count()
        assert reconciled_lines == 2

    # reconciled lines pin the statement
    r = post(client, f"/admin/finance/statements/{statement_id}/delete", follow_redirects=True)
    assert b"Cannot delete a statement with reconciled lines." in r.data

    # deleting the reconciliation releases everything
    post(client, f"/admin/finance/reconciliations/{rec_id}/delete")
    with session_scope(app) as s:
        assert s.get(BankReconciliation, rec_id) is None
        assert not any(tx.is_reconciled for tx in s.query(Transaction).all())
    r = post(client, f"/admin/finance/statements/{statement_id}/delete", follow_redirects=True)
    assert b"Statement deleted." in r.data


def test_out_of_balance_cannot_complete(client, app):
    account_id = _setup_books(app)
    login(client)
    _upload(client, account_id)
    rec_id = _start_reconciliation(client, app, account_id, _statement_id(app, account_id), closing="1600.00")
    r = post(client, f"/admin/finance/reconciliations/{rec_id}/complete", follow_redirects=True)
    assert b"out of balance by -87.50" in r.data
    with session_scope(app) as s:
        assert s.get(BankReconciliation, rec_id).status == "in_progress"


def test_one_open_reconciliation_per_account(client, app):
    account_id = _setup_books(app)
    login(client)
    _upload(client, account_id)
    statement_id = _statement_id(app, account_id)
    _start_reconciliation(client, app, account_id, statement_id)
    r = post(
        client,
        "/admin/finance/reconciliations/new",
        data={
            "account_id": str(account_id),
            "period_start": "2026-03-01",
            "period_end": "2026-03-31",
            "statement_opening_balance": "1000",
            "statement_closing_balance": "1687.50",
        },
    )
    assert r.status_code == 400
    assert b"already has a reconciliation in progress" in r.data


def test_suggestions_and_manual_match(client, app):
    account_id = _setup_books(app)
    login(client)
    _upload(client, account_id)
    rec_id = _start_reconciliation(client, app, account_id, _statement_id(app, account_id))

    with session_scope(app) as s:
        rec = s.get(BankReconciliation, rec_id)
        rent = next(i for i in rec.items if i.kind == "unmatched_bank" and i.description == "Office rent")
        payment = next(i for i in rec.items if i.kind == "unmatched_book" and i.amount > 0)
        rent_book = next(i for i in rec.items if i.kind == "unmatched_book" and i.amount < 0)
        rent_id, payment_id, rent_book_id = rent.id, payment.id, rent_book.id

    r = client.get(f"/admin/finance/reconciliations/{rec_id}/items/{rent_id}/suggestions")
    assert r.status_code == 200
    suggestions = r.json["suggestions"]
    assert [sug["book_item_id"] for sug in suggestions] == [rent_book_id]
    assert suggestions[0]["score"] == 100
    assert suggestions[0]["level"] == "high"

    # a withdrawal cannot pair with money in
    r = post(
        client,
        f"/admin/finance/reconciliations/{rec_id}/match",
        data={"bank_item_id": str(rent_id), "book_item_id": str(payment_id)},
        follow_redirects=True,
    )
    assert b"A deposit can only match money in" in r.data

    r = post(
        client,
        f"/admin/finance/reconciliations/{rec_id}/match",
        data={"bank_item_id": str(rent_id), "book_item_id": str(rent_book_id), "notes": "March rent"},
        follow_redirects=True,
    )
    assert b"Items matched." in r.data
    with session_scope(app) as s:
        rec = s.get(BankReconciliation, rec_id)
        matched = [i for i in rec.items if i.kind == "matched"]
        assert len(matched) == 1
        assert matched[0].match_type == "manual"
        assert matched[0].notes == "March rent"
        assert rec.unmatched_book_count == 1

    r = post(
        client,
        f"/admin/finance/reconciliations/{rec_id}/unmatch",
        data={"item_id": str(rent_id)},
        follow_redirects=True,
    )
    assert b"Match removed." in r.data
    with session_scope(app) as s:
        rec = s.get(BankReconciliation, rec_id)
        assert rec.matched_count == 0
        assert rec.unmatched_bank_count == 3
        assert rec.unmatched_book_count == 2


def test_match_score_components():
    line = BankStatementLine(
        line_date=date(2026, 3, 2),
        description="Client payment ACME",
        amount=Decimal("1200.00"),
        type="credit",
        reference="INV-1",
    )
    tx = Transaction(
        type="income",
        amount=Decimal("1200.00"),
        description="Client payment ACME",
        transaction_date=line.line_date,
        account_id=1,
        reference_number="inv-1",
    )
    assert match_score(line, tx, 1) == 100

    tx.type = "expense"
    assert match_score(line, tx, 1) == 0

    tx.type = "income"
    tx.amount = Decimal("1200.50")
    tx.description = "Something else entirely"
    tx.reference_number = None
    tx.transaction_date = date(2026, 3, 4)
    # 40 for a near amount, 15 for two days apart, plus a little description overlap
    assert 55 <= match_score(line, tx, 1) < 70


def test_confidence_and_similarity():
    assert confidence_level(95) == "high"
    assert confidence_level(75) == "medium"
    assert confidence_level(55) == "low"
    assert description_similarity("Office Rent", "office rent") == 1.0
    assert description_similarity("", "x") == 0.0


def test_reconciliation_number_sequence(app):
    with session_scope(app) as s:
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        acc = create_account(s, {"name": "Savings", "type": "assets"}, admin)
        s.flush()
        day = date(2026, 3, 31)
        assert generate_reconciliation_number(s, acc, day) == "SAV-REC-20260331-001"
        s.add(
            BankReconciliation(
                reconciliation_number="SAV-REC-20260331-004",
                account_id=acc.id,
                period_start=day,
                period_end=day,
                statement_opening_balance=Decimal("0"),
                statement_closing_balance=Decimal("0"),
                book_opening_balance=Decimal("0"),
                book_closing_balance=Decimal("0"),
                difference=Decimal("0"),
                user_id=admin.id,
            )
        )
        s.flush()
        assert generate_reconciliation_number(s, acc, day) == "SAV-REC-20260331-005"
