from __future__ import annotations

from datetime import date, timedelta

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for
from sqlalchemy import func

from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.modules.finance.models import Account, Expense, FinanceCategory, Invoice, Transaction
from app.backoffice.modules.finance.service import (
    ACCOUNT_TYPES,
    CATEGORY_TYPES,
    EXPENSE_STATUSES,
    INVOICE_STATUSES,
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    FinanceRuleError,
    account_has_transactions,
    active_categories,
    approve_expense,
    cancel_invoice,
    create_account,
    create_category,
    create_expense,
    create_invoice,
    create_transaction,
    delete_account,
    delete_expense,
    delete_invoice,
    delete_transaction,
    get_user_account,
    invoice_stats,
    mark_expense_paid,
    parse_expense_filters,
    parse_invoice_filters,
    parse_invoice_items,
    parse_transaction_filters,
    query_accounts,
    query_expenses,
    query_invoices,
    query_transactions,
    record_invoice_payment,
    reject_expense,
    send_invoice,
    update_account,
    update_category,
    update_expense,
    update_invoice,
    update_transaction,
    user_accounts,
    validate_account_payload,
    validate_category_payload,
    validate_expense_payload,
    validate_invoice_payload,
    validate_transaction_payload,
)
from app.backoffice.rbac import require_permission
from app.backoffice.utils import page_urls, paginate, parse_date, parse_int

bp = Blueprint("finance", __name__)

PER_PAGE = 15


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _flash_errors(errors: list[str]) -> None:
    for e in errors:
        flash(e, "danger")


@bp.get("/")
@require_permission("accounts.view")
def finance_index():
    s = db_session()
    u = _current_user()
    accounts = user_accounts(s, u, active_only=True)
    pending_expenses = s.query(func.count(Expense.id)).filter(Expense.status == "pending").scalar() or 0
    recent = query_transactions(s, u, {}).limit(10).all()
    return render_template(
        "admin/finance/index.html",
        accounts=accounts,
        invoice_stats=invoice_stats(s),
        pending_expenses=pending_expenses,
        recent_transactions=recent,
    )


# ============================================================================
# CATEGORIES
# ============================================================================


@bp.get("/categories")
@require_permission("finance_categories.view")
def categories_list():
    s = db_session()
    categories = s.query(FinanceCategory).order_by(FinanceCategory.type.asc(), FinanceCategory.name.asc()).all()
    return render_template("admin/finance/categories.html", categories=categories, category_types=CATEGORY_TYPES)


@bp.post("/categories")
@require_permission("finance_categories.manage")
def categories_create():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_category_payload(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("finance.categories_list"))
    cat = create_category(s, payload, _current_user())
    s.commit()
    flash(f"Category {cat.name} created.", "success")
    return redirect(url_for("finance.categories_list"))


@bp.post("/categories/<int:category_id>/update")
@require_permission("finance_categories.manage")
def categories_update(category_id: int):
    s = db_session()
    cat = s.get(FinanceCategory, category_id)
    if not cat:
        abort(404)
    payload = request.form.to_dict()
    errors = validate_category_payload(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("finance.categories_list"))
    update_category(s, cat, payload, _current_user())
    s.commit()
    flash(f"Category {cat.name} updated.", "success")
    return redirect(url_for("finance.categories_list"))


# ============================================================================
# ACCOUNTS
# ============================================================================


def _get_account(account_id: int) -> Account:
    account = get_user_account(db_session(), _current_user(), account_id)
    if not account:
        abort(404)
    return account


def _account_form_context(account: Account | None, form: dict) -> dict:
    s = db_session()
    parents = [a for a in user_accounts(s, _current_user()) if account is None or a.id != account.id]
    return {"account": account, "form": form, "parents": parents, "account_types": ACCOUNT_TYPES}


@bp.get("/accounts")
@require_permission("accounts.view")
def accounts_list():
    s = db_session()
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "type": (request.args.get("type") or "").strip(),
        "active": (request.args.get("active") or "").strip(),
    }
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_accounts(s, _current_user(), filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/finance/accounts/list.html",
        result=result,
        filters=filters,
        account_types=ACCOUNT_TYPES,
        **page_urls("finance.accounts_list", result, filters),
    )


@bp.get("/accounts/new")
@require_permission("accounts.create")
def accounts_new_get():
    form = {"parent_account_id": request.args.get("parent_id") or "", "currency": "USD"}
    return render_template("admin/finance/accounts/form.html", **_account_form_context(None, form))


@bp.post("/accounts/new")
@require_permission("accounts.create")
def accounts_new_post():
    s = db_session()
    u = _current_user()
    payload = request.form.to_dict()
    errors = validate_account_payload(s, payload, u)
    if errors:
        _flash_errors(errors)
        return render_template("admin/finance/accounts/form.html", **_account_form_context(None, payload)), 400
    account = create_account(s, payload, u)
    s.commit()
    flash(f"Account {account.account_code} {account.name} created.", "success")
    return redirect(url_for("finance.account_detail", account_id=account.id))


@bp.get("/accounts/<int:account_id>")
@require_permission("accounts.view")
def account_detail(account_id: int):
    s = db_session()
    account = _get_account(account_id)
    txs = query_transactions(s, _current_user(), {"account_id": str(account.id)}).limit(25).all()
    return render_template(
        "admin/finance/accounts/detail.html",
        account=account,
        transactions=txs,
        has_transactions=account_has_transactions(s, account),
    )


@bp.get("/accounts/<int:account_id>/edit")
@require_permission("accounts.edit")
def account_edit_get(account_id: int):
    account = _get_account(account_id)
    form = {
        "name": account.name,
        "account_code": account.account_code,
        "type": account.type,
        "parent_account_id": account.parent_account_id or "",
        "normal_balance": account.normal_balance,
        "account_number": account.account_number or "",
        "bank_name": account.bank_name or "",
        "initial_balance": account.initial_balance,
        "currency": account.currency,
        "description": account.description or "",
        "is_active": "1" if account.is_active else "",
        "allow_manual_entries": "1" if account.allow_manual_entries else "",
    }
    return render_template("admin/finance/accounts/form.html", **_account_form_context(account, form))


@bp.post("/accounts/<int:account_id>/edit")
@require_permission("accounts.edit")
def account_edit_post(account_id: int):
    s = db_session()
    account = _get_account(account_id)
    payload = request.form.to_dict()
    errors = validate_account_payload(s, payload, _current_user(), account=account)
    if errors:
        _flash_errors(errors)
        return render_template("admin/finance/accounts/form.html", **_account_form_context(account, payload)), 400
    update_account(s, account, payload, _current_user())
    s.commit()
    flash("Account updated successfully.", "success")
    return redirect(url_for("finance.account_detail", account_id=account.id))


@bp.post("/accounts/<int:account_id>/delete")
@require_permission("accounts.delete")
def account_delete(account_id: int):
    s = db_session()
    account = _get_account(account_id)
    try:
        delete_account(s, account, _current_user())
    except FinanceRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("finance.account_detail", account_id=account_id))
    s.commit()
    flash("Account deleted successfully.", "success")
    return redirect(url_for("finance.accounts_list"))


# ============================================================================
# TRANSACTIONS
# ============================================================================


def _get_transaction(tx_id: int) -> Transaction:
    tx = (
        db_session()
        .query(Transaction)
        .filter(Transaction.id == tx_id, Transaction.user_id == _current_user().id)
        .one_or_none()
    )
    if not tx:
        abort(404)
    return tx


def _transaction_form_context(tx: Transaction | None, form: dict) -> dict:
    s = db_session()
    return {
        "transaction": tx,
        "form": form,
        "accounts": user_accounts(s, _current_user(), active_only=True),
        "categories": active_categories(s),
        "transaction_types": TRANSACTION_TYPES,
        "statuses": TRANSACTION_STATUSES,
    }


@bp.get("/transactions")
@require_permission("transactions.view")
def transactions_list():
    s = db_session()
    u = _current_user()
    filters = parse_transaction_filters(request.args)
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_transactions(s, u, filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/finance/transactions/list.html",
        result=result,
        filters=filters,
        accounts=user_accounts(s, u),
        categories=active_categories(s),
        transaction_types=TRANSACTION_TYPES,
        statuses=TRANSACTION_STATUSES,
        **page_urls("finance.transactions_list", result, filters),
    )


@bp.get("/transactions/new")
@require_permission("transactions.create")
def transactions_new_get():
    form = {
        "type": request.args.get("type") or "expense",
        "account_id": request.args.get("account_id") or "",
        "transaction_date": date.today().isoformat(),
        "status": "completed",
    }
    return render_template("admin/finance/transactions/form.html", **_transaction_form_context(None, form))


@bp.post("/transactions/new")
@require_permission("transactions.create")
def transactions_new_post():
    s = db_session()
    u = _current_user()
    payload = request.form.to_dict()
    errors = validate_transaction_payload(s, payload, u)
    if errors:
        _flash_errors(errors)
        return render_template("admin/finance/transactions/form.html", **_transaction_form_context(None, payload)), 400
    create_transaction(s, payload, u)
    s.commit()
    flash("Transaction recorded successfully.", "success")
    return redirect(url_for("finance.transactions_list"))


@bp.get("/transactions/<int:tx_id>/edit")
@require_permission("transactions.edit")
def transaction_edit_get(tx_id: int):
    tx = _get_transaction(tx_id)
    form = {
        "type": tx.type,
        "amount": tx.amount,
        "description": tx.description,
        "transaction_date": tx.transaction_date.isoformat(),
        "account_id": tx.account_id,
        "transfer_to_account_id": tx.transfer_to_account_id or "",
        "category_id": tx.category_id or "",
        "reference_number": tx.reference_number or "",
        "notes": tx.notes or "",
        "status": tx.status,
    }
    return render_template("admin/finance/transactions/form.html", **_transaction_form_context(tx, form))


@bp.post("/transactions/<int:tx_id>/edit")
@require_permission("transactions.edit")
def transaction_edit_post(tx_id: int):
    s = db_session()
    u = _current_user()
    tx = _get_transaction(tx_id)
    payload = request.form.to_dict()
    errors = validate_transaction_payload(s, payload, u)
    if errors:
        _flash_errors(errors)
        return render_template("admin/finance/transactions/form.html", **_transaction_form_context(tx, payload)), 400
    try:
        update_transaction(s, tx, payload, u)
    except FinanceRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("finance.transactions_list"))
    s.commit()
    flash("Transaction updated successfully.", "success")
    return redirect(url_for("finance.transactions_list"))


@bp.post("/transactions/<int:tx_id>/delete")
@require_permission("transactions.delete")
def transaction_delete(tx_id: int):
    s = db_session()
    tx = _get_transaction(tx_id)
    try:
        delete_transaction(s, tx, _current_user())
    except FinanceRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("finance.transactions_list"))
    s.commit()
    flash("Transaction deleted successfully.", "success")
    return redirect(url_for("finance.transactions_list"))


# ============================================================================
# INVOICES
# ============================================================================


def _get_invoice(invoice_id: int) -> Invoice:
    invoice = db_session().get(Invoice, invoice_id)
    if not invoice:
        abort(404)
    return invoice


def _invoice_form() -> dict:
    payload = request.form.to_dict()
    payload["items"] = parse_invoice_items(
        request.form.getlist("item_description"),
        request.form.getlist("item_quantity"),
        request.form.getlist("item_unit_price"),
    )
    return payload


@bp.get("/invoices")
@require_permission("invoices.view")
def invoices_list():
    s = db_session()
    filters = parse_invoice_filters(request.args)
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_invoices(s, filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/finance/invoices/list.html",
        result=result,
        filters=filters,
        stats=invoice_stats(s),
        statuses=INVOICE_STATUSES,
        **page_urls("finance.invoices_list", result, filters),
    )


@bp.get("/invoices/new")
@require_permission("invoices.create")
def invoices_new_get():
    today = date.today()
    form = {
        "issue_date": today.isoformat(),
        "due_date": (today + timedelta(days=30)).isoformat(),
        "tax_rate": "0",
        "discount_amount": "0",
        "status": "draft",
        "items": [{"description": "", "quantity": "1", "unit_price": ""}],
    }
    return render_template("admin/finance/invoices/form.html", invoice=None, form=form)


@bp.post("/invoices/new")
@require_permission("invoices.create")
def invoices_new_post():
    s = db_session()
    payload = _invoice_form()
    errors = validate_invoice_payload(payload)
    if errors:
        _flash_errors(errors)
        return render_template("admin/finance/invoices/form.html", invoice=None, form=payload), 400
    invoice = create_invoice(s, payload, _current_user())
    s.commit()
    flash(f"Invoice {invoice.invoice_number} created.", "success")
    return redirect(url_for("finance.invoice_detail", invoice_id=invoice.id))


@bp.get("/invoices/<int:invoice_id>")
@require_permission("invoices.view")
def invoice_detail(invoice_id: int):
    invoice = _get_invoice(invoice_id)
    return render_template(
        "admin/finance/invoices/detail.html",
        invoice=invoice,
        accounts=user_accounts(db_session(), _current_user(), active_only=True),
    )


@bp.get("/invoices/<int:invoice_id>/edit")
@require_permission("invoices.edit")
def invoice_edit_get(invoice_id: int):
    invoice = _get_invoice(invoice_id)
    if invoice.status != "draft":
        flash("Only draft invoices can be edited.", "danger")
        return redirect(url_for("finance.invoice_detail", invoice_id=invoice_id))
    form = {
        "client_name": invoice.client_name,
        "client_email": invoice.client_email or "",
        "client_address": invoice.client_address or "",
        "issue_date": invoice.issue_date.isoformat(),
        "due_date": invoice.due_date.isoformat(),
        "tax_rate": invoice.tax_rate,
        "discount_amount": invoice.discount_amount,
        "notes": invoice.notes or "",
        "terms": invoice.terms or "",
        "items": [
            {"description": i.description, "quantity": i.quantity, "unit_price": i.unit_price} for i in invoice.items
        ],
    }
    return render_template("admin/finance/invoices/form.html", invoice=invoice, form=form)


@bp.post("/invoices/<int:invoice_id>/edit")
@require_permission("invoices.edit")
def invoice_edit_post(invoice_id: int):
    s = db_session()
    invoice = _get_invoice(invoice_id)
    payload = _invoice_form()
    payload.setdefault("status", "draft")
    errors = validate_invoice_payload(payload)
    if errors:
        _flash_errors(errors)
        return render_template("admin/finance/invoices/form.html", invoice=invoice, form=payload), 400
    try:
        update_invoice(s, invoice, payload, _current_user())
    except FinanceRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("finance.invoice_detail", invoice_id=invoice_id))
    s.commit()
    flash("Invoice updated successfully.", "success")
    return redirect(url_for("finance.invoice_detail", invoice_id=invoice_id))


def _invoice_action(invoice_id: int, fn, success: str):
    s = db_session()
    invoice = _get_invoice(invoice_id)
    try:
        fn(s, invoice)
    except FinanceRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("finance.invoice_detail", invoice_id=invoice_id))
    s.commit()
    flash(success, "success")
    return redirect(url_for("finance.invoice_detail", invoice_id=invoice_id))


@bp.post("/invoices/<int:invoice_id>/send")
@require_permission("invoices.edit")
def invoice_send(invoice_id: int):
    return _invoice_action(invoice_id, lambda s, inv: send_invoice(s, inv, _current_user()), "Invoice marked as sent.")


@bp.post("/invoices/<int:invoice_id>/payment")
@require_permission("invoices.edit")
def invoice_payment(invoice_id: int):
    s = db_session()
    u = _current_user()
    account = get_user_account(s, u, request.form.get("account_id"))
    payment_date = parse_date(request.form.get("payment_date"))
    return _invoice_action(
        invoice_id,
        lambda s, inv: record_invoice_payment(
            s, inv, request.form.get("amount"), u, account=account, payment_date=payment_date
        ),
        "Payment recorded successfully.",
    )


@bp.post("/invoices/<int:invoice_id>/cancel")
@require_permission("invoices.edit")
def invoice_cancel(invoice_id: int):
    reason = (request.form.get("reason") or "").strip() or None
    return _invoice_action(
        invoice_id, lambda s, inv: cancel_invoice(s, inv, _current_user(), reason), "Invoice cancelled."
    )


@bp.post("/invoices/<int:invoice_id>/delete")
@require_permission("invoices.delete")
def invoice_delete(invoice_id: int):
    s = db_session()
    invoice = _get_invoice(invoice_id)
    try:
        delete_invoice(s, invoice, _current_user())
    except FinanceRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("finance.invoice_detail", invoice_id=invoice_id))
    s.commit()
    flash("Invoice deleted successfully.", "success")
    return redirect(url_for("finance.invoices_list"))


# ============================================================================
# EXPENSES
# ============================================================================


def _get_expense(expense_id: int) -> Expense:
    expense = db_session().get(Expense, expense_id)
    if not expense:
        abort(404)
    return expense


def _expense_form_context(expense: Expense | None, form: dict) -> dict:
    s = db_session()
    return {
        "expense": expense,
        "form": form,
        "categories": active_categories(s, "expense"),
        "accounts": user_accounts(s, _current_user(), active_only=True),
    }


@bp.get("/expenses")
@require_permission("expenses.view")
def expenses_list():
    s = db_session()
    filters = parse_expense_filters(request.args)
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_expenses(s, filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/finance/expenses/list.html",
        result=result,
        filters=filters,
        categories=active_categories(s, "expense"),
        statuses=EXPENSE_STATUSES,
        **page_urls("finance.expenses_list", result, filters),
    )


@bp.get("/expenses/new")
@require_permission("expenses.create")
def expenses_new_get():
    return render_template(
        "admin/finance/expenses/form.html", **_expense_form_context(None, {"expense_date": date.today().isoformat()})
    )


@bp.post("/expenses/new")
@require_permission("expenses.create")
def expenses_new_post():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_expense_payload(s, payload)
    if errors:
        _flash_errors(errors)
        return render_template("admin/finance/expenses/form.html", **_expense_form_context(None, payload)), 400
    expense = create_expense(s, payload, _current_user())
    s.commit()
    flash("Expense submitted for approval.", "success")
    return redirect(url_for("finance.expense_detail", expense_id=expense.id))


@bp.get("/expenses/<int:expense_id>")
@require_permission("expenses.view")
def expense_detail(expense_id: int):
    return render_template("admin/finance/expenses/detail.html", expense=_get_expense(expense_id))


@bp.get("/expenses/<int:expense_id>/edit")
@require_permission("expenses.edit")
def expense_edit_get(expense_id: int):
    expense = _get_expense(expense_id)
    if expense.status == "paid":
        flash("Paid expenses cannot be edited.", "danger")
        return redirect(url_for("finance.expense_detail", expense_id=expense_id))
    form = {
        "title": expense.title,
        "description": expense.description or "",
        "amount": expense.amount,
        "expense_date": expense.expense_date.isoformat(),
        "vendor": expense.vendor or "",
        "receipt_number": expense.receipt_number or "",
        "category_id": expense.category_id or "",
        "account_id": expense.account_id or "",
    }
    return render_template("admin/finance/expenses/form.html", **_expense_form_context(expense, form))


@bp.post("/expenses/<int:expense_id>/edit")
@require_permission("expenses.edit")
def expense_edit_post(expense_id: int):
    s = db_session()
    expense = _get_expense(expense_id)
    payload = request.form.to_dict()
    errors = validate_expense_payload(s, payload)
    if errors:
        _flash_errors(errors)
        return render_template("admin/finance/expenses/form.html", **_expense_form_context(expense, payload)), 400
    try:
        update_expense(s, expense, payload, _current_user())
    except FinanceRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("finance.expense_detail", expense_id=expense_id))
    s.commit()
    flash("Expense updated successfully.", "success")
    return redirect(url_for("finance.expense_detail", expense_id=expense_id))


def _expense_action(expense_id: int, fn, success: str):
    s = db_session()
    expense = _get_expense(expense_id)
    try:
        fn(s, expense)
    except FinanceRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("finance.expense_detail", expense_id=expense_id))
    s.commit()
    flash(success, "success")
    return redirect(url_for("finance.expense_detail", expense_id=expense_id))


@bp.post("/expenses/<int:expense_id>/delete")
@require_permission("expenses.delete")
def expense_delete(expense_id: int):
    s = db_session()
    expense = _get_expense(expense_id)
    try:
        delete_expense(s, expense, _current_user())
    except FinanceRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("finance.expense_detail", expense_id=expense_id))
    s.commit()
    flash("Expense deleted successfully.", "success")
    return redirect(url_for("finance.expenses_list"))


@bp.post("/expenses/<int:expense_id>/approve")
@require_permission("expenses.approve")
def expense_approve(expense_id: int):
    return _expense_action(expense_id, lambda s, e: approve_expense(s, e, _current_user()), "Expense approved.")


@bp.post("/expenses/<int:expense_id>/reject")
@require_permission("expenses.approve")
def expense_reject(expense_id: int):
    reason = request.form.get("reason")
    return _expense_action(expense_id, lambda s, e: reject_expense(s, e, _current_user(), reason), "Expense rejected.")


@bp.post("/expenses/<int:expense_id>/paid")
@require_permission("expenses.approve")
def expense_mark_paid(expense_id: int):
    return _expense_action(expense_id, lambda s, e: mark_expense_paid(s, e, _current_user()), "Expense marked as paid.")
