from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.backoffice.audit import record_event
from app.backoffice.modules.finance.models import (
    ZERO,
    Account,
    Expense,
    FinanceCategory,
    Invoice,
    InvoiceItem,
    Transaction,
)
from app.backoffice.utils import MAX_DECIMAL, clean, is_valid_email, money, parse_date, parse_decimal, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

    from app.backoffice.models import User


class FinanceRuleError(ValueError):
    """A finance workflow rule blocked the requested change."""


CATEGORY_TYPES = ("income", "expense")
ACCOUNT_TYPES = ("assets", "liabilities", "equity", "income", "expenses")
ACCOUNT_TYPE_PREFIXES = {"assets": "1", "liabilities": "2", "equity": "3", "income": "4", "expenses": "5"}
TRANSACTION_TYPES = ("income", "expense", "transfer")
TRANSACTION_STATUSES = ("pending", "completed", "cancelled")
INVOICE_STATUSES = ("draft", "sent", "paid", "cancelled")
EXPENSE_STATUSES = ("pending", "approved", "rejected", "paid")

MIN_AMOUNT = Decimal("0.01")
# invoice_items.quantity is Numeric(10, 2)
MAX_QUANTITY = Decimal("1e8")
MAX_EXPENSE_DESCRIPTION = 1000


def _truthy(raw: Any) -> bool:
    return raw in (True, "1", "on", "true", "yes")


def default_normal_balance(account_type: str) -> str:
    return "debit" if account_type in ("assets", "expenses") else "credit"


# ============================================================================
# CATEGORIES
# ============================================================================


def validate_category_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("name")):
        errors.append("Name is required.")
    if payload.get("type") not in CATEGORY_TYPES:
        errors.append("Type must be income or expense.")
    color = clean(payload.get("color"))
    if color and not re.match(r"^#[0-9a-fA-F]{6}$", color):
        errors.append("Color must be a hex value like #3b82f6.")
    return errors


def create_category(s: "Session", payload: dict, actor: "User") -> FinanceCategory:
    cat = FinanceCategory(
        name=clean(payload.get("name")),
        type=payload["type"],
        color=clean(payload.get("color")),
        description=clean(payload.get("description")),
        is_active=True,
    )
    s.add(cat)
    s.flush()
    record_event(s, actor=actor, action="finance_category.create", entity_type="FinanceCategory", entity_id=str(cat.id))
    return cat


def update_category(s: "Session", cat: FinanceCategory, payload: dict, actor: "User") -> FinanceCategory:
    cat.name = clean(payload.get("name")) or cat.name
    cat.type = payload.get("type") or cat.type
    cat.color = clean(payload.get("color"))
    cat.description = clean(payload.get("description"))
    cat.is_active = _truthy(payload.get("is_active"))
    record_event(s, actor=actor, action="finance_category.update", entity_type="FinanceCategory", entity_id=str(cat.id))
    return cat


def active_categories(s: "Session", category_type: str | None = None) -> list[FinanceCategory]:
    q = s.query(FinanceCategory).filter(FinanceCategory.is_active.is_(True))
    if category_type:
        q = q.filter(FinanceCategory.type == category_type)
    return q.order_by(FinanceCategory.name.asc()).all()


# ============================================================================
# ACCOUNTS
# ============================================================================


def generate_account_code(s: "Session", account_type: str, parent: Account | None = None) -> str:
    """
    Root accounts: type prefix + "000", then the last root code + 1000, skipping codes already taken.
    Child accounts: parent code + "10", then the last child code + 10.
    """
    if parent is not None:
        last_child = (
            s.query(Account.account_code)
            .filter(Account.parent_account_id == parent.id)
            .order_by(func.length(Account.account_code).desc(), Account.account_code.desc())
            .first()
        )
        if last_child and last_child[0].isdigit():
            return str(int(last_child[0]) + 10)
        return f"{parent.account_code}10"

    prefix = ACCOUNT_TYPE_PREFIXES.get(account_type)
    if not prefix:
        return "1000"
    last_root = (
        s.query(Account.account_code)
        .filter(Account.parent_account_id.is_(None), Account.account_code.like(f"{prefix}%"))
        .order_by(func.length(Account.account_code).desc(), Account.account_code.desc())
        .first()
    )
    if not (last_root and last_root[0].isdigit()):
        return f"{prefix}000"
    candidate = int(last_root[0]) + 1000
    while s.query(Account.id).filter(Account.account_code == str(candidate)).first():
        candidate += 1000
    return str(candidate)


def user_accounts(s: "Session", user: "User", active_only: bool = False) -> list[Account]:
    q = s.query(Account).filter(Account.user_id == user.id)
    if active_only:
        q = q.filter(Account.is_active.is_(True))
    return q.order_by(Account.account_code.asc()).all()


def get_user_account(s: "Session", user: "User", account_id: Any) -> Account | None:
    aid = parse_int(account_id)
    if aid is None:
        return None
    return s.query(Account).filter(Account.id == aid, Account.user_id == user.id).one_or_none()


def query_accounts(s: "Session", user: "User", filters: dict[str, str]) -> "Query":
    q = s.query(Account).filter(Account.user_id == user.id)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(or_(Account.name.ilike(like), Account.account_code.ilike(like), Account.description.ilike(like)))
    if filters.get("type") in ACCOUNT_TYPES:
        q = q.filter(Account.type == filters["type"])
    if filters.get("active") == "1":
        q = q.filter(Account.is_active.is_(True))
    elif filters.get("active") == "0":
        q = q.filter(Account.is_active.is_(False))
    return q.order_by(Account.account_code.asc())


def _descendant_ids(account: Account) -> set[int]:
    out: set[int] = set()
    stack = list(account.children)
    while stack:
        node = stack.pop()
        out.add(node.id)
        stack.extend(node.children)
    return out


def validate_account_payload(s: "Session", payload: dict, user: "User", account: Account | None = None) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("name")):
        errors.append("Name is required.")
    if payload.get("type") not in ACCOUNT_TYPES:
        errors.append(f"Type must be one of: {', '.join(ACCOUNT_TYPES)}.")
    if payload.get("normal_balance") and payload["normal_balance"] not in ("debit", "credit"):
        errors.append("Normal balance must be debit or credit.")

    raw_initial = payload.get("initial_balance")
    if clean(raw_initial) is not None and parse_decimal(raw_initial) is None:
        errors.append("Initial balance must be a number.")

    code = clean(payload.get("account_code"))
    if code:
        q = s.query(Account.id).filter(Account.account_code == code)
        if account is not None:
            q = q.filter(Account.id != account.id)
        if q.first():
            errors.append(f"Account code {code} is already in use.")

    currency = clean(payload.get("currency"))
    if currency and not re.match(r"^[A-Za-z]{3}$", currency):
        errors.append("Currency must be a 3-letter code.")

    parent_raw = clean(payload.get("parent_account_id"))
    if parent_raw:
        parent = get_user_account(s, user, parent_raw)
        if parent is None:
            errors.append("Parent account not found.")
        elif account is not None and (parent.id == account.id or parent.id in _descendant_ids(account)):
            errors.append("An account cannot be its own parent or a child of its descendants.")
    return errors


def create_account(s: "Session", payload: dict, user: "User") -> Account:
    parent = get_user_account(s, user, payload.get("parent_account_id"))
    account_type = parent.type if parent else payload["type"]
    initial = money(parse_decimal(payload.get("initial_balance")) or ZERO)
    account = Account(
        name=clean(payload.get("name")),
        account_code=clean(payload.get("account_code")) or generate_account_code(s, account_type, parent),
        type=account_type,
        parent_account_id=parent.id if parent else None,
        level=(parent.level + 1) if parent else 1,
        normal_balance=payload.get("normal_balance") or default_normal_balance(account_type),
        account_number=clean(payload.get("account_number")),
        bank_name=clean(payload.get("bank_name")),
        initial_balance=initial,
        balance=initial,
        currency=(clean(payload.get("currency")) or "USD").upper(),
        description=clean(payload.get("description")),
        is_active=True,
        allow_manual_entries=_truthy(payload.get("allow_manual_entries", "1")),
        user_id=user.id,
    )
    s.add(account)
    s.flush()
    record_event(
        s,
        actor=user,
        action="account.create",
        entity_type="Account",
        entity_id=str(account.id),
        metadata={"code": account.account_code, "type": account.type},
    )
    return account


def update_account(s: "Session", account: Account, payload: dict, actor: "User") -> Account:
    parent = get_user_account(s, actor, payload.get("parent_account_id"))
    account.name = clean(payload.get("name")) or account.name
    account.account_code = clean(payload.get("account_code")) or account.account_code
    account.parent_account_id = parent.id if parent else None
    account.level = (parent.level + 1) if parent else 1
    account.type = parent.type if parent else (payload.get("type") or account.type)
    account.normal_balance = payload.get("normal_balance") or account.normal_balance
    account.account_number = clean(payload.get("account_number"))
    account.bank_name = clean(payload.get("bank_name"))
    account.currency = (clean(payload.get("currency")) or account.currency).upper()
    account.description = clean(payload.get("description"))
    account.is_active = _truthy(payload.get("is_active"))
    account.allow_manual_entries = _truthy(payload.get("allow_manual_entries"))
    if clean(payload.get("initial_balance")) is not None:
        account.initial_balance = money(parse_decimal(payload.get("initial_balance")))
    account.updated_at = datetime.utcnow()
    recalculate_balance(s, account)
    record_event(s, actor=actor, action="account.update", entity_type="Account", entity_id=str(account.id))
    return account


def account_has_transactions(s: "Session", account: Account) -> bool:
    return (
        s.query(Transaction.id)
        .filter(or_(Transaction.account_id == account.id, Transaction.transfer_to_account_id == account.id))
        .first()
        is not None
    )


def delete_account(s: "Session", account: Account, actor: "User") -> None:
    if account.is_system_account:
        raise FinanceRuleError("System accounts cannot be deleted.")
    if account_has_transactions(s, account):
        raise FinanceRuleError("Cannot delete an account that has transactions.")
    for child in account.children:
        child.parent_account_id = account.parent_account_id
        child.level = max(1, child.level - 1)
    record_event(
        s,
        actor=actor,
        action="account.delete",
        entity_type="Account",
        entity_id=str(account.id),
        metadata={"code": account.account_code, "name": account.name},
    )
    s.delete(account)


def _completed_sum(s: "Session", *conditions) -> Decimal:
    total = (
        s.query(func.coalesce(func.sum(Transaction.amount), 0))
        .filter(Transaction.status == "completed", *conditions)
        .scalar()
    )
    return money(total)


def recalculate_balance(s: "Session", account: Account) -> Decimal:
    """initial + income - expense - transfers out + transfers in, completed transactions only."""
    s.flush()
    income = _completed_sum(s, Transaction.account_id == account.id, Transaction.type == "income")
    expense = _completed_sum(s, Transaction.account_id == account.id, Transaction.type == "expense")
    transfers_out = _completed_sum(s, Transaction.account_id == account.id, Transaction.type == "transfer")
    transfers_in = _completed_sum(
        s, Transaction.transfer_to_account_id == account.id, Transaction.type == "transfer"
    )
    account.balance = money((account.initial_balance or ZERO) + income - expense - transfers_out + transfers_in)
    return account.balance


# ============================================================================
# TRANSACTIONS
# ============================================================================


def parse_transaction_filters(args) -> dict[str, str]:
    return {
        "q": (args.get("q") or "").strip(),
        "account_id": (args.get("account_id") or "").strip(),
        "type": (args.get("type") or "").strip(),
        "status": (args.get("status") or "").strip(),
        "category_id": (args.get("category_id") or "").strip(),
        "date_from": (args.get("date_from") or "").strip(),
        "date_to": (args.get("date_to") or "").strip(),
    }


def query_transactions(s: "Session", user: "User", filters: dict[str, str]) -> "Query":
    q = s.query(Transaction).filter(Transaction.user_id == user.id)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(or_(Transaction.description.ilike(like), Transaction.reference_number.ilike(like)))
    account_id = parse_int(filters.get("account_id"))
    if account_id is not None:
        q = q.filter(or_(Transaction.account_id == account_id, Transaction.transfer_to_account_id == account_id))
    if filters.get("type") in TRANSACTION_TYPES:
        q = q.filter(Transaction.type == filters["type"])
    if filters.get("status") in TRANSACTION_STATUSES:
        q = q.filter(Transaction.status == filters["status"])
    category_id = parse_int(filters.get("category_id"))
    if category_id is not None:
        q = q.filter(Transaction.category_id == category_id)
    d_from = parse_date(filters.get("date_from"))
    if d_from:
        q = q.filter(Transaction.transaction_date >= d_from)
    d_to = parse_date(filters.get("date_to"))
    if d_to:
        q = q.filter(Transaction.transaction_date <= d_to)
    return q.order_by(Transaction.transaction_date.desc(), Transaction.id.desc())


def validate_transaction_payload(s: "Session", payload: dict, user: "User") -> list[str]:
    errors: list[str] = []
    tx_type = payload.get("type")
    if tx_type not in TRANSACTION_TYPES:
        errors.append("Type must be income, expense or transfer.")

    amount = parse_decimal(payload.get("amount"))
    if amount is None or amount < MIN_AMOUNT:
        errors.append("Amount must be at least 0.01.")

    if not clean(payload.get("description")):
        errors.append("Description is required.")
    elif len(clean(payload.get("description")) or "") > 255:
        errors.append("Description must be at most 255 characters.")

    if parse_date(payload.get("transaction_date")) is None:
        errors.append("Transaction date is required (YYYY-MM-DD).")

    status = payload.get("status") or "completed"
    if status not in TRANSACTION_STATUSES:
        errors.append("Status must be pending, completed or cancelled.")

    account = get_user_account(s, user, payload.get("account_id"))
    if account is None:
        errors.append("Account not found.")

    if tx_type == "transfer":
        target = get_user_account(s, user, payload.get("transfer_to_account_id"))
        if target is None:
            errors.append("Transfers need a target account.")
        elif account is not None and target.id == account.id:
            errors.append("Transfer target must be a different account.")

    category_id = parse_int(payload.get("category_id"))
    if category_id is not None and s.get(FinanceCategory, category_id) is None:
        errors.append("Category not found.")
    return errors


def _touched_accounts(s: "Session", *ids: int | None) -> list[Account]:
    out = []
    for aid in {i for i in ids if i}:
        acc = s.get(Account, aid)
        if acc is not None:
            out.append(acc)
    return out


def _apply_transaction_fields(tx: Transaction, payload: dict) -> None:
    tx.type = payload["type"]
    tx.amount = money(parse_decimal(payload.get("amount")))
    tx.description = clean(payload.get("description"))
    tx.transaction_date = parse_date(payload.get("transaction_date"))
    tx.account_id = int(payload["account_id"])
    tx.transfer_to_account_id = parse_int(payload.get("transfer_to_account_id")) if tx.type == "transfer" else None
    tx.category_id = parse_int(payload.get("category_id")) if tx.type != "transfer" else None
    tx.reference_number = clean(payload.get("reference_number"))
    tx.notes = clean(payload.get("notes"))
    tx.status = payload.get("status") or "completed"


def create_transaction(s: "Session", payload: dict, user: "User") -> Transaction:
    tx = Transaction(user_id=user.id)
    _apply_transaction_fields(tx, payload)
    s.add(tx)
    s.flush()
    for acc in _touched_accounts(s, tx.account_id, tx.transfer_to_account_id):
        recalculate_balance(s, acc)
    record_event(
        s,
        actor=user,
        action="transaction.create",
        entity_type="Transaction",
        entity_id=str(tx.id),
        metadata={"type": tx.type, "amount": str(tx.amount), "account_id": tx.account_id},
    )
    return tx


def update_transaction(s: "Session", tx: Transaction, payload: dict, actor: "User") -> Transaction:
    if tx.is_reconciled:
        raise FinanceRuleError("Reconciled transactions cannot be edited.")
    before_ids = (tx.account_id, tx.transfer_to_account_id)
    before = {"type": tx.type, "amount": str(tx.amount), "status": tx.status}
    _apply_transaction_fields(tx, payload)
    tx.updated_at = datetime.utcnow()
    s.flush()
    for acc in _touched_accounts(s, *before_ids, tx.account_id, tx.transfer_to_account_id):
        recalculate_balance(s, acc)
    record_event(
        s,
        actor=actor,
        action="transaction.update",
        entity_type="Transaction",
        entity_id=str(tx.id),
        metadata={"before": before, "after": {"type": tx.type, "amount": str(tx.amount), "status": tx.status}},
    )
    return tx


def delete_transaction(s: "Session", tx: Transaction, actor: "User") -> None:
    if tx.is_reconciled:
        raise FinanceRuleError("Reconciled transactions cannot be deleted.")
    ids = (tx.account_id, tx.transfer_to_account_id)
    record_event(
        s,
        actor=actor,
        action="transaction.delete",
        entity_type="Transaction",
        entity_id=str(tx.id),
        metadata={"type": tx.type, "amount": str(tx.amount), "description": tx.description},
    )
    s.delete(tx)
    s.flush()
    for acc in _touched_accounts(s, *ids):
        recalculate_balance(s, acc)


# ============================================================================
# INVOICES
# ============================================================================


def generate_invoice_number(s: "Session", today: date | None = None) -> str:
    """INV-YYYYMM-#### with a per-month sequence."""
    today = today or date.today()
    prefix = f"INV-{today.strftime('%Y%m')}-"
    last = (
        s.query(Invoice.invoice_number)
        .filter(Invoice.invoice_number.like(f"{prefix}%"))
        .order_by(Invoice.invoice_number.desc())
        .first()
    )
    seq = int(last[0][-4:]) + 1 if last and last[0][-4:].isdigit() else 1
    return f"{prefix}{seq:04d}"


def compute_invoice_totals(items: list[dict], tax_rate: Decimal, discount: Decimal) -> dict[str, Decimal]:
    subtotal = money(sum((Decimal(i["quantity"]) * Decimal(i["unit_price"]) for i in items), ZERO))
    taxable = money(subtotal - discount)
    tax_amount = money(taxable * tax_rate / Decimal(100))
    return {
        "subtotal": subtotal,
        "tax_amount": tax_amount,
        "total_amount": money(taxable + tax_amount),
    }


def parse_invoice_items(descriptions: list, quantities: list, prices: list) -> list[dict]:
    """Zip parallel form lists; rows with every field blank are dropped."""
    rows = []
    for desc, qty, price in zip(descriptions, quantities, prices):
        if not (clean(desc) or clean(qty) or clean(price)):
            continue
        rows.append(
            {
                "description": clean(desc),
                "quantity": parse_decimal(qty, max_abs=MAX_QUANTITY),
                "unit_price": parse_decimal(price),
            }
        )
    return rows


def validate_invoice_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("client_name")):
        errors.append("Client name is required.")
    email = clean(payload.get("client_email"))
    if email and not is_valid_email(email):
        errors.append("Client email is not valid.")

    issue = parse_date(payload.get("issue_date"))
    due = parse_date(payload.get("due_date"))
    if issue is None:
        errors.append("Issue date is required (YYYY-MM-DD).")
    if due is None:
        errors.append("Due date is required (YYYY-MM-DD).")
    if issue and due and due < issue:
        errors.append("Due date must be on or after the issue date.")

    if payload.get("status", "draft") not in ("draft", "sent"):
        errors.append("New invoices must be draft or sent.")

    tax_rate = parse_decimal(payload.get("tax_rate") or "0")
    if tax_rate is None or tax_rate < 0 or tax_rate > 100:
        errors.append("Tax rate must be between 0 and 100.")
    discount = parse_decimal(payload.get("discount_amount") or "0")
    if discount is None or discount < 0:
        errors.append("Discount must be zero or more.")

    items = payload.get("items") or []
    if not items:
        errors.append("At least one line item is required.")
    for n, item in enumerate(items, start=1):
        if not item.get("description"):
            errors.append(f"Item {n}: description is required.")
        if item.get("quantity") is None or item["quantity"] < MIN_AMOUNT:
            errors.append(f"Item {n}: quantity must be at least 0.01.")
        if item.get("unit_price") is None or item["unit_price"] < 0:
            errors.append(f"Item {n}: unit price must be zero or more.")

    if not errors and discount is not None:
        subtotal = sum((i["quantity"] * i["unit_price"] for i in items), ZERO)
        if discount > subtotal:
            errors.append("Discount cannot exceed the subtotal.")
        elif subtotal >= MAX_DECIMAL:
            errors.append("Invoice total is too large.")
    return errors


def _apply_invoice_fields(invoice: Invoice, payload: dict) -> None:
    tax_rate = parse_decimal(payload.get("tax_rate") or "0") or ZERO
    discount = money(parse_decimal(payload.get("discount_amount") or "0") or ZERO)
    items = payload.get("items") or []

    invoice.client_name = clean(payload.get("client_name"))
    invoice.client_email = clean(payload.get("client_email"))
    invoice.client_address = clean(payload.get("client_address"))
    invoice.issue_date = parse_date(payload.get("issue_date"))
    invoice.due_date = parse_date(payload.get("due_date"))
    invoice.tax_rate = tax_rate
    invoice.discount_amount = discount
    invoice.notes = clean(payload.get("notes"))
    invoice.terms = clean(payload.get("terms"))
    invoice.items = [
        InvoiceItem(
            description=i["description"],
            quantity=i["quantity"],
            unit_price=money(i["unit_price"]),
            total=money(i["quantity"] * i["unit_price"]),
        )
        for i in items
    ]
    totals = compute_invoice_totals(items, tax_rate, discount)
    invoice.subtotal = totals["subtotal"]
    invoice.tax_amount = totals["tax_amount"]
    invoice.total_amount = totals["total_amount"]


def create_invoice(s: "Session", payload: dict, user: "User") -> Invoice:
    invoice = Invoice(invoice_number=generate_invoice_number(s), user_id=user.id, paid_amount=ZERO)
    _apply_invoice_fields(invoice, payload)
    invoice.status = payload.get("status") or "draft"
    if invoice.status == "sent":
        invoice.sent_at = datetime.utcnow()
    s.add(invoice)
    s.flush()
    record_event(
        s,
        actor=user,
        action="invoice.create",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        metadata={"number": invoice.invoice_number, "total": str(invoice.total_amount), "status": invoice.status},
    )
    return invoice


def update_invoice(s: "Session", invoice: Invoice, payload: dict, actor: "User") -> Invoice:
    if invoice.status != "draft":
        raise FinanceRuleError("Only draft invoices can be edited.")
    _apply_invoice_fields(invoice, payload)
    invoice.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="invoice.update",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        metadata={"total": str(invoice.total_amount)},
    )
    return invoice


def send_invoice(s: "Session", invoice: Invoice, actor: "User") -> Invoice:
    if invoice.status != "draft":
        raise FinanceRuleError("Only draft invoices can be sent.")
    invoice.status = "sent"
    invoice.sent_at = datetime.utcnow()
    invoice.updated_at = invoice.sent_at
    record_event(s, actor=actor, action="invoice.send", entity_type="Invoice", entity_id=str(invoice.id))
    return invoice


def record_invoice_payment(
    s: "Session",
    invoice: Invoice,
    amount_raw: Any,
    actor: "User",
    *,
    account: Account | None = None,
    payment_date: date | None = None,
) -> Invoice:
    """Apply a payment; a full payment marks the invoice paid. Optionally books income on `account`."""
    if invoice.status != "sent":
        raise FinanceRuleError(f"Cannot record a payment on a {invoice.status} invoice.")
    amount = parse_decimal(amount_raw)
    if amount is None or amount < MIN_AMOUNT:
        raise FinanceRuleError("Payment amount must be at least 0.01.")
    amount = money(amount)
    if amount > invoice.remaining_amount:
        raise FinanceRuleError(f"Payment cannot exceed the remaining amount ({invoice.remaining_amount}).")

    invoice.paid_amount = money((invoice.paid_amount or ZERO) + amount)
    if invoice.is_fully_paid:
        invoice.status = "paid"
        invoice.paid_at = datetime.utcnow()
    invoice.updated_at = datetime.utcnow()

    if account is not None:
        create_transaction(
            s,
            {
                "type": "income",
                "amount": str(amount),
                "description": f"Payment received for invoice {invoice.invoice_number}",
                "transaction_date": (payment_date or date.today()).isoformat(),
                "account_id": account.id,
                "reference_number": invoice.invoice_number,
                "status": "completed",
            },
            actor,
        )

    record_event(
        s,
        actor=actor,
        action="invoice.payment",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        metadata={"amount": str(amount), "paid_amount": str(invoice.paid_amount), "status": invoice.status},
    )
    return invoice


def cancel_invoice(s: "Session", invoice: Invoice, actor: "User", reason: str | None = None) -> Invoice:
    if invoice.status == "paid":
        raise FinanceRuleError("Paid invoices cannot be cancelled.")
    if invoice.status == "cancelled":
        raise FinanceRuleError("Invoice is already cancelled.")
    invoice.status = "cancelled"
    invoice.updated_at = datetime.utcnow()
    record_event(s, actor=actor, action="invoice.cancel", entity_type="Invoice", entity_id=str(invoice.id), reason=reason)
    return invoice


def delete_invoice(s: "Session", invoice: Invoice, actor: "User") -> None:
    if invoice.status not in ("draft", "cancelled"):
        raise FinanceRuleError("Only draft or cancelled invoices can be deleted.")
    record_event(
        s,
        actor=actor,
        action="invoice.delete",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        metadata={"number": invoice.invoice_number},
    )
    s.delete(invoice)


def parse_invoice_filters(args) -> dict[str, str]:
    return {
        "q": (args.get("q") or "").strip(),
        "status": (args.get("status") or "").strip(),
        "overdue": "1" if args.get("overdue") in ("1", "on", "true") else "",
    }


def query_invoices(s: "Session", filters: dict[str, str]) -> "Query":
    q = s.query(Invoice)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(
            or_(Invoice.invoice_number.ilike(like), Invoice.client_name.ilike(like), Invoice.client_email.ilike(like))
        )
    if filters.get("status") in INVOICE_STATUSES:
        q = q.filter(Invoice.status == filters["status"])
    if filters.get("overdue") == "1":
        q = q.filter(Invoice.status == "sent", Invoice.due_date < date.today())
    return q.order_by(Invoice.issue_date.desc(), Invoice.id.desc())


def invoice_stats(s: "Session") -> dict[str, Any]:
    outstanding = (
        s.query(func.coalesce(func.sum(Invoice.total_amount - Invoice.paid_amount), 0))
        .filter(Invoice.status == "sent")
        .scalar()
    )
    return {
        "draft": s.query(func.count(Invoice.id)).filter(Invoice.status == "draft").scalar() or 0,
        "sent": s.query(func.count(Invoice.id)).filter(Invoice.status == "sent").scalar() or 0,
        "paid": s.query(func.count(Invoice.id)).filter(Invoice.status == "paid").scalar() or 0,
        "overdue": s.query(func.count(Invoice.id))
        .filter(Invoice.status == "sent", Invoice.due_date < date.today())
        .scalar()
        or 0,
        "outstanding": money(outstanding),
    }


# ============================================================================
# EXPENSES
# ============================================================================


def validate_expense_payload(s: "Session", payload: dict) -> list[str]:
    errors: list[str] = []
    title = clean(payload.get("title"))
    if not title:
        errors.append("Title is required.")
    elif len(title) > 255:
        errors.append("Title must be at most 255 characters.")
    description = clean(payload.get("description")) or ""
    if len(description) > MAX_EXPENSE_DESCRIPTION:
        errors.append(f"Description must be at most {MAX_EXPENSE_DESCRIPTION} characters.")
    amount = parse_decimal(payload.get("amount"))
    if amount is None or amount < MIN_AMOUNT:
        errors.append("Amount must be at least 0.01.")
    if parse_date(payload.get("expense_date")) is None:
        errors.append("Expense date is required (YYYY-MM-DD).")
    category_id = parse_int(payload.get("category_id"))
    if category_id is not None:
        cat = s.get(FinanceCategory, category_id)
        if cat is None or cat.type != "expense":
            errors.append("Category must be an expense category.")
    account_id = parse_int(payload.get("account_id"))
    if account_id is not None and s.get(Account, account_id) is None:
        errors.append("Account not found.")
    return errors


def _apply_expense_fields(expense: Expense, payload: dict) -> None:
    expense.title = clean(payload.get("title"))
    expense.description = clean(payload.get("description"))
    expense.amount = money(parse_decimal(payload.get("amount")))
    expense.expense_date = parse_date(payload.get("expense_date"))
    expense.vendor = clean(payload.get("vendor"))
    expense.receipt_number = clean(payload.get("receipt_number"))
    expense.category_id = parse_int(payload.get("category_id"))
    expense.account_id = parse_int(payload.get("account_id"))


def create_expense(s: "Session", payload: dict, user: "User") -> Expense:
    expense = Expense(user_id=user.id, status="pending")
    _apply_expense_fields(expense, payload)
    s.add(expense)
    s.flush()
    record_event(
        s,
        actor=user,
        action="expense.create",
        entity_type="Expense",
        entity_id=str(expense.id),
        metadata={"amount": str(expense.amount), "title": expense.title},
    )
    return expense


def update_expense(s: "Session", expense: Expense, payload: dict, actor: "User") -> Expense:
    if expense.status == "paid":
        raise FinanceRuleError("Paid expenses cannot be edited.")
    _apply_expense_fields(expense, payload)
    expense.updated_at = datetime.utcnow()
    record_event(s, actor=actor, action="expense.update", entity_type="Expense", entity_id=str(expense.id))
    return expense


def delete_expense(s: "Session", expense: Expense, actor: "User") -> None:
    if expense.status == "paid":
        raise FinanceRuleError("Paid expenses cannot be deleted.")
    record_event(
        s,
        actor=actor,
        action="expense.delete",
        entity_type="Expense",
        entity_id=str(expense.id),
        metadata={"title": expense.title, "amount": str(expense.amount)},
    )
    s.delete(expense)


def approve_expense(s: "Session", expense: Expense, actor: "User") -> Expense:
    if expense.status != "pending":
        raise FinanceRuleError("Only pending expenses can be approved.")
    expense.status = "approved"
    expense.approved_by_user_id = actor.id
    expense.approved_at = datetime.utcnow()
    expense.rejection_reason = None
    record_event(s, actor=actor, action="expense.approve", entity_type="Expense", entity_id=str(expense.id))
    return expense


def reject_expense(s: "Session", expense: Expense, actor: "User", reason: str | None) -> Expense:
    if expense.status != "pending":
        raise FinanceRuleError("Only pending expenses can be rejected.")
    reason = clean(reason)
    if not reason:
        raise FinanceRuleError("A rejection reason is required.")
    expense.status = "rejected"
    expense.approved_by_user_id = actor.id
    expense.approved_at = datetime.utcnow()
    expense.rejection_reason = reason
    record_event(
        s, actor=actor, action="expense.reject", entity_type="Expense", entity_id=str(expense.id), reason=reason
    )
    return expense


def mark_expense_paid(s: "Session", expense: Expense, actor: "User") -> Expense:
    """Approved -> paid. Books an expense transaction when the expense names an account."""
    if expense.status != "approved":
        raise FinanceRuleError("Only approved expenses can be marked as paid.")
    expense.status = "paid"
    expense.paid_at = datetime.utcnow()
    account = s.get(Account, expense.account_id) if expense.account_id else None
    if account is not None:
        tx = Transaction(
            type="expense",
            amount=expense.amount,
            description=f"Expense: {expense.title}"[:255],
            transaction_date=date.today(),
            account_id=expense.account_id,
            category_id=expense.category_id,
            reference_number=expense.receipt_number,
            status="completed",
            user_id=account.user_id,
        )
        s.add(tx)
        recalculate_balance(s, account)
    record_event(s, actor=actor, action="expense.paid", entity_type="Expense", entity_id=str(expense.id))
    return expense


def parse_expense_filters(args) -> dict[str, str]:
    return {
        "q": (args.get("q") or "").strip(),
        "status": (args.get("status") or "").strip(),
        "category_id": (args.get("category_id") or "").strip(),
        "date_from": (args.get("date_from") or "").strip(),
        "date_to": (args.get("date_to") or "").strip(),
    }


def query_expenses(s: "Session", filters: dict[str, str]) -> "Query":
    q = s.query(Expense)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(or_(Expense.title.ilike(like), Expense.vendor.ilike(like), Expense.receipt_number.ilike(like)))
    if filters.get("status") in EXPENSE_STATUSES:
        q = q.filter(Expense.status == filters["status"])
    category_id = parse_int(filters.get("category_id"))
    if category_id is not None:
        q = q.filter(Expense.category_id == category_id)
    d_from = parse_date(filters.get("date_from"))
    if d_from:
        q = q.filter(Expense.expense_date >= d_from)
    d_to = parse_date(filters.get("date_to"))
    if d_to:
        q = q.filter(Expense.expense_date <= d_to)
    return q.order_by(Expense.expense_date.desc(), Expense.id.desc())
