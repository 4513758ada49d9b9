from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, url_for

from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.modules.finance.models import Account, BankReconciliation, BankStatement
from app.backoffice.modules.finance.reconciliation import (
    auto_match,
    complete_reconciliation,
    create_reconciliation,
    delete_reconciliation,
    manual_match,
    suggest_matches,
    unmatch,
)
from app.backoffice.modules.finance.service import FinanceRuleError, get_user_account, user_accounts
from app.backoffice.modules.finance.statements import (
    delete_statement,
    import_statement,
    mapping_from_form,
    period_default,
    reprocess_statement,
    statement_totals,
    validate_statement_upload,
)
from app.backoffice.rbac import require_permission
from app.backoffice.storage import StorageError, storage_from_config
from app.backoffice.utils import page_urls, paginate, parse_date, parse_decimal, parse_int

bp = Blueprint("banking", __name__)

PER_PAGE = 15


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_statement(statement_id: int) -> BankStatement:
    st = (
        db_session()
        .query(BankStatement)
        .join(Account, Account.id == BankStatement.account_id)
        .filter(BankStatement.id == statement_id, Account.user_id == _current_user().id)
        .one_or_none()
    )
    if not st:
        abort(404)
    return st


def _get_reconciliation(rec_id: int) -> BankReconciliation:
    rec = (
        db_session()
        .query(BankReconciliation)
        .join(Account, Account.id == BankReconciliation.account_id)
        .filter(BankReconciliation.id == rec_id, Account.user_id == _current_user().id)
        .one_or_none()
    )
    if not rec:
        abort(404)
    return rec


# ============================================================================
# BANK STATEMENTS
# ============================================================================


@bp.get("/statements")
@require_permission("bank_statements.view")
def statements_list():
    s = db_session()
    u = _current_user()
    account_id = parse_int(request.args.get("account_id"))
    q = (
        s.query(BankStatement)
        .join(Account, Account.id == BankStatement.account_id)
        .filter(Account.user_id == u.id)
    )
    if account_id is not None:
        q = q.filter(BankStatement.account_id == account_id)
    q = q.order_by(BankStatement.statement_date.desc(), BankStatement.id.desc())
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(q, page=page, per_page=PER_PAGE)
    filters = {"account_id": request.args.get("account_id") or ""}
    return render_template(
        "admin/finance/statements/list.html",
        result=result,
        filters=filters,
        accounts=user_accounts(s, u),
        **page_urls("banking.statements_list", result, filters),
    )


@bp.get("/statements/upload")
@require_permission("bank_statements.import")
def statements_upload_get():
    start, end = period_default()
    form = {
        "account_id": request.args.get("account_id") or "",
        "statement_date": end.isoformat(),
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
        "has_header": "1",
        "date_column": "0",
        "description_column": "1",
        "amount_column": "2",
    }
    return render_template(
        "admin/finance/statements/upload.html", form=form, accounts=user_accounts(db_session(), _current_user())
    )


@bp.post("/statements/upload")
@require_permission("bank_statements.import")
def statements_upload_post():
    s = db_session()
    u = _current_user()
    form = request.form.to_dict()
    f = request.files.get("file")
    mapping = mapping_from_form(request.form)
    account = get_user_account(s, u, form.get("account_id"))
    errors = validate_statement_upload({**form, "account": account}, f.filename if f else None, mapping)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/finance/statements/upload.html", form=form, accounts=user_accounts(s, u)), 400

    statement = import_statement(
        s,
        account=account,
        file_bytes=f.read(),
        filename=f.filename,
        mapping=mapping,
        payload=form,
        user=u,
        storage=storage_from_config(current_app.config),
    )
    s.commit()
    if statement.status == "failed":
        flash(f"Statement import failed: {statement.error_message}", "danger")
    else:
        flash(f"Imported {statement.transactions_imported} statement line(s).", "success")
    return redirect(url_for("banking.statement_detail", statement_id=statement.id))


@bp.get("/statements/<int:statement_id>")
@require_permission("bank_statements.view")
def statement_detail(statement_id: int):
    st = _get_statement(statement_id)
    return render_template("admin/finance/statements/detail.html", statement=st, totals=statement_totals(st))


@bp.post("/statements/<int:statement_id>/reprocess")
@require_permission("bank_statements.import")
def statement_reprocess(statement_id: int):
    s = db_session()
    st = _get_statement(statement_id)
    try:
        reprocess_statement(s, st, _current_user(), storage_from_config(current_app.config))
    except (FinanceRuleError, StorageError) as e:
        flash(str(e), "danger")
        return redirect(url_for("banking.statement_detail", statement_id=statement_id))
    s.commit()
    flash(f"Statement reprocessed: {st.status}.", "success" if st.status == "processed" else "danger")
    return redirect(url_for("banking.statement_detail", statement_id=statement_id))


@bp.post("/statements/<int:statement_id>/delete")
@require_permission("bank_statements.import")
def statement_delete(statement_id: int):
    s = db_session()
    st = _get_statement(statement_id)
    try:
        delete_statement(s, st, _current_user(), storage_from_config(current_app.config))
    except FinanceRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("banking.statement_detail", statement_id=statement_id))
    s.commit()
    flash("Statement deleted.", "success")
    return redirect(url_for("banking.statements_list"))


# ============================================================================
# RECONCILIATIONS
# ============================================================================


@bp.get("/reconciliations")
@require_permission("reconciliations.view")
def reconciliations_list():
    s = db_session()
    u = _current_user()
    status = (request.args.get("status") or "").strip()
    q = (
        s.query(BankReconciliation)
        .join(Account, Account.id == BankReconciliation.account_id)
        .filter(Account.user_id == u.id)
    )
    if status in ("in_progress", "completed"):
        q = q.filter(BankReconciliation.status == status)
    q = q.order_by(BankReconciliation.created_at.desc())
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(q, page=page, per_page=PER_PAGE)
    filters = {"status": status}
    return render_template(
        "admin/finance/reconciliations/list.html",
        result=result,
        filters=filters,
        **page_urls("banking.reconciliations_list", result, filters),
    )


def _processed_statements(account_ids: list[int]) -> list[BankStatement]:
    if not account_ids:
        return []
    return (
        db_session()
        .query(BankStatement)
        .filter(BankStatement.account_id.in_(account_ids), BankStatement.status == "processed")
        .order_by(BankStatement.statement_date.desc())
        .all()
    )


@bp.get("/reconciliations/new")
@require_permission("reconciliations.manage")
def reconciliations_new_get():
    s = db_session()
    accounts = user_accounts(s, _current_user(), active_only=True)
    form = {"statement_id": request.args.get("statement_id") or ""}
    statement_id = parse_int(form["statement_id"])
    if statement_id is not None:
        st = _get_statement(statement_id)
        form.update(
            {
                "account_id": st.account_id,
                "period_start": st.period_start.isoformat(),
                "period_end": st.period_end.isoformat(),
                "statement_opening_balance": st.opening_balance,
                "statement_closing_balance": st.closing_balance,
            }
        )
    return render_template(
        "admin/finance/reconciliations/new.html",
        form=form,
        accounts=accounts,
        statements=_processed_statements([a.id for a in accounts]),
    )


@bp.post("/reconciliations/new")
@require_permission("reconciliations.manage")
def reconciliations_new_post():
    s = db_session()
    u = _current_user()
    form = request.form.to_dict()
    account = get_user_account(s, u, form.get("account_id"))
    statement_id = parse_int(form.get("statement_id"))
    statement = _get_statement(statement_id) if statement_id is not None else None
    period_start = parse_date(form.get("period_start"))
    period_end = parse_date(form.get("period_end"))
    opening = parse_decimal(form.get("statement_opening_balance"))
    closing = parse_decimal(form.get("statement_closing_balance"))

    errors = []
    if account is None:
        errors.append("Account not found.")
    if period_start is None or period_end is None:
        errors.append("Period start and end are required (YYYY-MM-DD).")
    if opening is None or closing is None:
        errors.append("Statement opening and closing balances are required.")

    rec = None
    if not errors:
        try:
            rec = create_reconciliation(
                s,
                account=account,
                statement=statement,
                period_start=period_start,
                period_end=period_end,
                statement_opening_balance=opening,
                statement_closing_balance=closing,
                user=u,
            )
        except FinanceRuleError as e:
            errors.append(str(e))

    if errors:
        for e in errors:
            flash(e, "danger")
        accounts = user_accounts(s, u, active_only=True)
        return (
            render_template(
                "admin/finance/reconciliations/new.html",
                form=form,
                accounts=accounts,
                statements=_processed_statements([a.id for a in accounts]),
            ),
            400,
        )

    s.commit()
    flash(f"Reconciliation {rec.reconciliation_number} started.", "success")
    return redirect(url_for("banking.reconciliation_detail", rec_id=rec.id))


@bp.get("/reconciliations/<int:rec_id>")
@require_permission("reconciliations.view")
def reconciliation_detail(rec_id: int):
    rec = _get_reconciliation(rec_id)
    items = {"matched": [], "unmatched_bank": [], "unmatched_book": []}
    for item in rec.items:
        items[item.kind].append(item)
    return render_template("admin/finance/reconciliations/detail.html", rec=rec, items=items)


def _rec_action(rec_id: int, fn, success):
    s = db_session()
    rec = _get_reconciliation(rec_id)
    try:
        out = fn(s, rec)
    except FinanceRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("banking.reconciliation_detail", rec_id=rec_id))
    s.commit()
    flash(success(out) if callable(success) else success, "success")
    return redirect(url_for("banking.reconciliation_detail", rec_id=rec_id))


@bp.post("/reconciliations/<int:rec_id>/auto-match")
@require_permission("reconciliations.manage")
def reconciliation_auto_match(rec_id: int):
    return _rec_action(
        rec_id,
        lambda s, rec: auto_match(s, rec, _current_user()),
        lambda n: f"Auto-matched {n} item(s).",
    )


@bp.get("/reconciliations/<int:rec_id>/items/<int:item_id>/suggestions")
@require_permission("reconciliations.view")
def reconciliation_suggestions(rec_id: int, item_id: int):
    rec = _get_reconciliation(rec_id)
    bank_item = next((i for i in rec.items if i.id == item_id), None)
    if bank_item is None:
        return jsonify({"error": "Item not found."}), 404
    return jsonify(
        {
            "item_id": bank_item.id,
            "suggestions": [
                {
                    "book_item_id": sug["item"].id,
                    "transaction_id": sug["item"].transaction_id,
                    "date": sug["item"].item_date.isoformat(),
                    "description": sug["item"].description,
                    "amount": str(sug["item"].amount),
                    "score": sug["score"],
                    "level": sug["level"],
                }
                for sug in suggest_matches(rec, bank_item)
            ],
        }
    )


@bp.post("/reconciliations/<int:rec_id>/match")
@require_permission("reconciliations.manage")
def reconciliation_match(rec_id: int):
    bank_item_id = parse_int(request.form.get("bank_item_id"))
    book_item_id = parse_int(request.form.get("book_item_id"))
    notes = request.form.get("notes")
    return _rec_action(
        rec_id,
        lambda s, rec: manual_match(s, rec, bank_item_id, book_item_id, _current_user(), notes),
        "Items matched.",
    )


@bp.post("/reconciliations/<int:rec_id>/unmatch")
@require_permission("reconciliations.manage")
def reconciliation_unmatch(rec_id: int):
    item_id = parse_int(request.form.get("item_id"))
    return _rec_action(rec_id, lambda s, rec: unmatch(s, rec, item_id, _current_user()), "Match removed.")


@bp.post("/reconciliations/<int:rec_id>/complete")
@require_permission("reconciliations.manage")
def reconciliation_complete(rec_id: int):
    return _rec_action(
        rec_id, lambda s, rec: complete_reconciliation(s, rec, _current_user()), "Reconciliation completed."
    )


@bp.post("/reconciliations/<int:rec_id>/delete")
@require_permission("reconciliations.manage")
def reconciliation_delete(rec_id: int):
    s = db_session()
    rec = _get_reconciliation(rec_id)
    delete_reconciliation(s, rec, _current_user())
    s.commit()
    flash("Reconciliation deleted.", "success")
    return redirect(url_for("banking.reconciliations_list"))
