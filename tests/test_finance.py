"""Chart of accounts, transactions, invoices and expenses."""
from datetime import date, timedelta
from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app.backoffice.db import session_scope
from app.backoffice.models import Role, User
from app.backoffice.modules.finance.models import Account, Expense, FinanceCategory, Invoice, Transaction
from app.backoffice.modules.finance.service import (
    FinanceRuleError,
    compute_invoice_totals,
    create_account,
    create_transaction,
    delete_account,
    generate_account_code,
    generate_invoice_number,
    parse_invoice_items,
    recalculate_balance,
    update_transaction,
)

from conftest import login, post

TODAY = date.today().isoformat()


def _admin(s):
    return s.query(User).filter(User.email == "admin@example.com").one()


def _make_account(app, name="Operating", account_type="assets", initial="100.00", **extra) -> int:
    with session_scope(app) as s:
        acc = create_account(s, {"name": name, "type": account_type, "initial_balance": initial, **extra}, _admin(s))
        s.flush()
        return acc.id


def _invoice_form(**overrides):
    data = {
        "client_name": "Globex",
        "client_email": "billing@globex.example",
        "issue_date": TODAY,
        "due_date": (date.today() + timedelta(days=30)).isoformat(),
        "tax_rate": "10",
        "discount_amount": "0",
        "status": "draft",
        "item_description": ["Consulting", "Hosting"],
        "item_quantity": ["2", "1"],
        "item_unit_price": ["100.00", "50.00"],
    }
    data.update(overrides)
    return data


# ---------- pure helpers ----------
def test_compute_invoice_totals():
    items = [
        {"quantity": Decimal("2"), "unit_price": Decimal("100.00")},
        {"quantity": Decimal("1"), "unit_price": Decimal("50.00")},
    ]
    totals = compute_invoice_totals(items, Decimal("10"), Decimal("50.00"))
    assert totals == {
        "subtotal": Decimal("250.00"),
        "tax_amount": Decimal("20.00"),
        "total_amount": Decimal("220.00"),
    }


def test_parse_invoice_items_skips_blank_rows():
    rows = parse_invoice_items(["A", "", "B"], ["1", "", "2"], ["10", "", "5"])
    assert [r["description"] for r in rows] == ["A", "B"]
    assert rows[1]["quantity"] == Decimal("2")


def test_generate_invoice_number_sequences_per_month(app):
    with session_scope(app) as s:
        assert generate_invoice_number(s, today=date(2026, 3, 5)) == "INV-202603-0001"
        s.add(
            Invoice(
                invoice_number="INV-202603-0007",
                client_name="x",
                issue_date=date(2026, 3, 1),
                due_date=date(2026, 3, 31),
                user_id=_admin(s).id,
            )
        )
        s.flush()
        assert generate_invoice_number(s, today=date(2026, 3, 20)) == "INV-202603-0008"
        assert generate_invoice_number(s, today=date(2026, 4, 1)) == "INV-202604-0001"


# ---------- accounts ----------
def test_account_codes_follow_type_prefix_and_parent(app):
    with session_scope(app) as s:
        admin = _admin(s)
        assert generate_account_code(s, "liabilities") == "2000"
        parent = create_account(s, {"name": "Assets", "type": "assets"}, admin)
        assert parent.account_code == "1000"
        assert parent.normal_balance == "debit"
        child = create_account(s, {"name": "Cash", "type": "assets", "parent_account_id": str(parent.id)}, admin)
        assert child.account_code == "100010"
        assert child.level == 2
        second = create_account(s, {"name": "Bank", "type": "assets", "parent_account_id": str(parent.id)}, admin)
        assert second.account_code == "100020"
        income = create_account(s, {"name": "Revenue", "type": "income"}, admin)
        assert income.account_code == "4000"
        assert income.normal_balance == "credit"


def test_account_create_route(client, app):
    login(client)
    r = post(
        client,
        "/admin/finance/accounts/new",
        data={"name": "Checking", "type": "assets", "initial_balance": "250.50", "currency": "eur"},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        acc = s.query(Account).filter(Account.name == "Checking").one()
        assert acc.balance == Decimal("250.50")
        assert acc.currency == "EUR"


def test_account_validation(client):
    login(client)
    r = post(client, "/admin/finance/accounts/new", data={"name": "", "type": "bogus", "currency": "euro"})
    assert r.status_code == 400
    assert b"Name is required." in r.data
    assert b"3-letter code" in r.data


def test_account_cannot_be_own_descendant(client, app):
    parent_id = _make_account(app, name="Parent")
    child_id = _make_account(app, name="Child", parent_account_id=str(parent_id))
    login(client)
    r = post(
        client,
        f"/admin/finance/accounts/{parent_id}/edit",
        data={"name": "Parent", "type": "assets", "parent_account_id": str(child_id), "is_active": "1"},
    )
    assert r.status_code == 400
    assert b"cannot be its own parent" in r.data


def test_staff_cannot_view_accounts(client, app):
    acc_id = _make_account(app)
    login(client, email="staff@example.com")
    # staff lacks accounts.view entirely
    assert client.get(f"/admin/finance/accounts/{acc_id}").status_code == 403


def test_other_users_accounts_are_not_found(client, app):
    acc_id = _make_account(app)
    with session_scope(app) as s:
        manager = User(email="manager@example.com", name="Manager", password_hash=generate_password_hash("pw"), is_active=True)
        manager.roles.append(s.query(Role).filter(Role.key == "manager").one())
        s.add(manager)
    login(client, email="manager@example.com")
    assert client.get("/admin/finance/accounts").status_code == 200
    assert client.get(f"/admin/finance/accounts/{acc_id}").status_code == 404
    assert client.get(f"/admin/finance/accounts/{acc_id}/edit").status_code == 404


def test_delete_account_with_transactions_blocked(app):
    acc_id = _make_account(app)
    with session_scope(app) as s:
        admin = _admin(s)
        create_transaction(
            s,
            {"type": "income", "amount": "5", "description": "x", "transaction_date": TODAY, "account_id": str(acc_id)},
            admin,
        )
        with pytest.raises(FinanceRuleError):
            delete_account(s, s.get(Account, acc_id), admin)


def test_delete_account_reparents_children(client, app):
    parent_id = _make_account(app, name="Parent")
    child_id = _make_account(app, name="Child", parent_account_id=str(parent_id))
    login(client)
    r = post(client, f"/admin/finance/accounts/{parent_id}/delete")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Account, parent_id) is None
        child = s.get(Account, child_id)
        assert child.parent_account_id is None
        assert child.level == 1


# ---------- transactions ----------
def test_balances_follow_transactions(app):
    a_id = _make_account(app, name="A", initial="100.00")
    b_id = _make_account(app, name="B", initial="0.00")
    with session_scope(app) as s:
        admin = _admin(s)
        base = {"transaction_date": TODAY, "description": "t"}
        create_transaction(s, {**base, "type": "income", "amount": "50", "account_id": str(a_id)}, admin)
        create_transaction(s, {**base, "type": "expense", "amount": "20", "account_id": str(a_id)}, admin)
        create_transaction(
            s,
            {**base, "type": "transfer", "amount": "30", "account_id": str(a_id), "transfer_to_account_id": str(b_id)},
            admin,
        )
        create_transaction(
            s, {**base, "type": "income", "amount": "999", "account_id": str(a_id), "status": "pending"}, admin
        )
    with session_scope(app) as s:
        assert s.get(Account, a_id).balance == Decimal("100.00")
        assert s.get(Account, b_id).balance == Decimal("30.00")


def test_reconciled_transaction_is_locked(app):
    acc_id = _make_account(app)
    with session_scope(app) as s:
        admin = _admin(s)
        payload = {"type": "income", "amount": "5", "description": "x", "transaction_date": TODAY, "account_id": str(acc_id)}
        tx = create_transaction(s, payload, admin)
        tx.is_reconciled = True
        with pytest.raises(FinanceRuleError):
            update_transaction(s, tx, {**payload, "amount": "6"}, admin)


def test_transaction_routes(client, app):
    a_id = _make_account(app, name="A", initial="0")
    login(client)
    r = post(
        client,
        "/admin/finance/transactions/new",
        data={"type": "transfer", "amount": "10", "description": "Move", "transaction_date": TODAY, "account_id": str(a_id)},
    )
    assert r.status_code == 400
    assert b"Transfers need a target account." in r.data

    with session_scope(app) as s:
        cat_id = s.query(FinanceCategory).filter(FinanceCategory.name == "Sales").one().id
    r = post(
        client,
        "/admin/finance/transactions/new",
        data={
            "type": "income",
            "amount": "42.10",
            "description": "Widget sale",
            "transaction_date": TODAY,
            "account_id": str(a_id),
            "category_id": str(cat_id),
        },
    )
    assert r.status_code == 302
    r = client.get("/admin/finance/transactions?q=Widget")
    assert b"Widget sale" in r.data
    with session_scope(app) as s:
        tx = s.query(Transaction).filter(Transaction.description == "Widget sale").one()
        assert s.get(Account, a_id).balance == Decimal("42.10")
        tx_id = tx.id
    r = post(client, f"/admin/finance/transactions/{tx_id}/delete")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Account, a_id).balance == Decimal("0.00")


@pytest.mark.parametrize("amount", ["NaN", "Infinity", "-inf", "1e40"])
def test_non_numeric_amounts_are_rejected(client, app, amount):
    a_id = _make_account(app, name="A", initial="0")
    login(client)
    r = post(
        client,
        "/admin/finance/transactions/new",
        data={"type": "income", "amount": amount, "description": "Odd", "transaction_date": TODAY, "account_id": str(a_id)},
    )
    assert r.status_code == 400
    assert b"Amount must be at least 0.01." in r.data


def test_invoice_rejects_oversized_lines(client):
    login(client)
    r = post(client, "/admin/finance/invoices/new", data=_invoice_form(item_quantity=["1e9", "1"], tax_rate="NaN"))
    assert r.status_code == 400
    assert b"Item 1: quantity must be at least 0.01." in r.data
    assert b"Tax rate must be between 0 and 100." in r.data

    r = post(
        client,
        "/admin/finance/invoices/new",
        data=_invoice_form(item_quantity=["2", "1"], item_unit_price=["9000000000000", "1"]),
    )
    assert r.status_code == 400
    assert b"Invoice total is too large." in r.data


def test_recalculate_balance_idempotent(app):
    acc_id = _make_account(app, initial="12.34")
    with session_scope(app) as s:
        acc = s.get(Account, acc_id)
        assert recalculate_balance(s, acc) == Decimal("12.34")
        assert recalculate_balance(s, acc) == Decimal("12.34")


def test_finance_index_renders(client, app):
    _make_account(app)
    login(client)
    r = client.get("/admin/finance/")
    assert r.status_code == 200
    assert b"Operating" in r.data


# ---------- categories ----------
def test_categories_create_and_validate(client, app):
    login(client)
    r = post(client, "/admin/finance/categories", data={"name": "Rent", "type": "expense", "color": "#123456"})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(FinanceCategory).filter(FinanceCategory.name == "Rent").one().type == "expense"
    r = post(client, "/admin/finance/categories", data={"name": "Weird", "type": "other"}, follow_redirects=True)
    assert b"Type must be" in r.data


# ---------- invoices ----------
def test_invoice_lifecycle(client, app):
    acc_id = _make_account(app, name="Receivables", initial="0")
    login(client)
    r = post(client, "/admin/finance/invoices/new", data=_invoice_form())
    assert r.status_code == 302
    with session_scope(app) as s:
        inv = s.query(Invoice).one()
        assert inv.status == "draft"
        assert inv.subtotal == Decimal("250.00")
        assert inv.total_amount == Decimal("275.00")
        assert len(inv.items) == 2
        inv_id = inv.id

    # payments need a sent invoice
    r = post(client, f"/admin/finance/invoices/{inv_id}/payment", data={"amount": "10"}, follow_redirects=True)
    assert b"Cannot record a payment on a draft invoice." in r.data

    post(client, f"/admin/finance/invoices/{inv_id}/send")
    r = post(client, f"/admin/finance/invoices/{inv_id}/payment", data={"amount": "500"}, follow_redirects=True)
    assert b"cannot exceed the remaining amount" in r.data

    post(client, f"/admin/finance/invoices/{inv_id}/payment", data={"amount": "75", "account_id": str(acc_id)})
    with session_scope(app) as s:
        inv = s.get(Invoice, inv_id)
        assert inv.status == "sent"
        assert inv.remaining_amount == Decimal("200.00")
        assert s.get(Account, acc_id).balance == Decimal("75.00")

    post(client, f"/admin/finance/invoices/{inv_id}/payment", data={"amount": "200"})
    with session_scope(app) as s:
        inv = s.get(Invoice, inv_id)
        assert inv.status == "paid"
        assert inv.paid_at is not None

    r = post(client, f"/admin/finance/invoices/{inv_id}/cancel", follow_redirects=True)
    assert b"Paid invoices cannot be cancelled." in r.data
    r = post(client, f"/admin/finance/invoices/{inv_id}/delete", follow_redirects=True)
    assert b"Only draft or cancelled invoices can be deleted." in r.data


def test_invoice_validation(client):
    login(client)
    r = post(
        client,
        "/admin/finance/invoices/new",
        data=_invoice_form(
            client_name="",
            due_date=(date.today() - timedelta(days=1)).isoformat(),
            discount_amount="1000",
        ),
    )
    assert r.status_code == 400
    assert b"Client name is required." in r.data
    assert b"Due date must be on or after the issue date." in r.data


def test_invoice_discount_cannot_exceed_subtotal(client):
    login(client)
    r = post(client, "/admin/finance/invoices/new", data=_invoice_form(discount_amount="1000"))
    assert r.status_code == 400
    assert b"Discount cannot exceed the subtotal." in r.data


def test_invoice_edit_only_in_draft(client, app):
    login(client)
    post(client, "/admin/finance/invoices/new", data=_invoice_form(status="sent"))
    with session_scope(app) as s:
        inv = s.query(Invoice).one()
        assert inv.sent_at is not None
        inv_id = inv.id
    r = client.get(f"/admin/finance/invoices/{inv_id}/edit", follow_redirects=True)
    assert b"Only draft invoices can be edited." in r.data


def test_cancelled_invoice_can_be_deleted(client, app):
    login(client)
    post(client, "/admin/finance/invoices/new", data=_invoice_form())
    with session_scope(app) as s:
        inv_id = s.query(Invoice).one().id
    post(client, f"/admin/finance/invoices/{inv_id}/cancel", data={"reason": "duplicate"})
    r = post(client, f"/admin/finance/invoices/{inv_id}/delete")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Invoice, inv_id) is None


def test_invoice_list_overdue_filter(client, app):
    login(client)
    past = (date.today() - timedelta(days=40)).isoformat()
    post(
        client,
        "/admin/finance/invoices/new",
        data=_invoice_form(client_name="Late Co", issue_date=past, due_date=(date.today() - timedelta(days=10)).isoformat(), status="sent"),
    )
    post(client, "/admin/finance/invoices/new", data=_invoice_form(client_name="Fresh Co", status="sent"))
    r = client.get("/admin/finance/invoices?overdue=1")
    assert r.status_code == 200
    assert b"Late Co" in r.data
    assert b"Fresh Co" not in r.data


# ---------- expenses ----------
def _expense_form(**overrides):
    data = {"title": "Team lunch", "amount": "80.00", "expense_date": TODAY, "vendor": "Diner"}
    data.update(overrides)
    return data


def test_expense_approval_flow(client, app):
    acc_id = _make_account(app, name="Petty cash", initial="100.00")
    login(client)
    with session_scope(app) as s:
        travel = s.query(FinanceCategory).filter(FinanceCategory.name == "Travel").one().id
    r = post(
        client,
        "/admin/finance/expenses/new",
        data=_expense_form(category_id=str(travel), account_id=str(acc_id)),
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        exp = s.query(Expense).one()
        assert exp.status == "pending"
        exp_id = exp.id

    r = post(client, f"/admin/finance/expenses/{exp_id}/paid", follow_redirects=True)
    assert b"Only approved expenses can be marked as paid." in r.data

    post(client, f"/admin/finance/expenses/{exp_id}/approve")
    post(client, f"/admin/finance/expenses/{exp_id}/paid")
    with session_scope(app) as s:
        exp = s.get(Expense, exp_id)
        assert exp.status == "paid"
        assert exp.approved_by is not None
        assert s.get(Account, acc_id).balance == Decimal("20.00")

    r = post(client, f"/admin/finance/expenses/{exp_id}/delete", follow_redirects=True)
    assert b"Paid expenses cannot be deleted." in r.data


def test_expense_reject_needs_reason(client, app):
    login(client)
    post(client, "/admin/finance/expenses/new", data=_expense_form())
    with session_scope(app) as s:
        exp_id = s.query(Expense).one().id
    r = post(client, f"/admin/finance/expenses/{exp_id}/reject", data={"reason": ""}, follow_redirects=True)
    assert b"A rejection reason is required." in r.data
    post(client, f"/admin/finance/expenses/{exp_id}/reject", data={"reason": "Not business related"})
    with session_scope(app) as s:
        exp = s.get(Expense, exp_id)
        assert exp.status == "rejected"
        assert exp.rejection_reason == "Not business related"


def test_expense_category_must_be_expense_type(client, app):
    login(client)
    with session_scope(app) as s:
        sales = s.query(FinanceCategory).filter(FinanceCategory.name == "Sales").one().id
    r = post(client, "/admin/finance/expenses/new", data=_expense_form(category_id=str(sales)))
    assert r.status_code == 400
    assert b"Category must be an expense category." in r.data


def test_staff_can_submit_but_not_approve(client, app):
    login(client, email="staff@example.com")
    r = post(client, "/admin/finance/expenses/new", data=_expense_form())
    assert r.status_code == 302
    with session_scope(app) as s:
        exp_id = s.query(Expense).one().id
    r = post(client, f"/admin/finance/expenses/{exp_id}/approve")
    assert r.status_code == 403
