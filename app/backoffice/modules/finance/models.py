from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.backoffice.models import Base

if TYPE_CHECKING:
    from app.backoffice.models import User

ZERO = Decimal("0.00")


def _money_col(nullable: bool = False, default: Decimal | None = ZERO):
    return mapped_column(Numeric(precision=15, scale=2), nullable=nullable, default=default)


class FinanceCategory(Base):
    __tablename__ = "finance_categories"
    __table_args__ = (CheckConstraint("type IN ('income','expense')", name="ck_finance_categories_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        Index("idx_accounts_user", "user_id"),
        Index("idx_accounts_parent", "parent_account_id"),
        CheckConstraint(
            "type IN ('assets','liabilities','equity','income','expenses')", name="ck_accounts_type"
        ),
        CheckConstraint("normal_balance IN ('debit','credit')", name="ck_accounts_normal_balance"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    parent_account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    normal_balance: Mapped[str] = mapped_column(String(8), nullable=False, default="debit")

    account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    initial_balance: Mapped[Decimal] = _money_col()
    balance: Mapped[Decimal] = _money_col()
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_system_account: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allow_manual_entries: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    parent: Mapped["Account | None"] = relationship("Account", remote_side="Account.id", back_populates="children")
    children: Mapped[list["Account"]] = relationship("Account", back_populates="parent", order_by="Account.account_code")
    user: Mapped["User"] = relationship("User", lazy="selectin")

    @property
    def full_path(self) -> str:
        names = [self.name]
        node = self.parent
        while node is not None:
            names.append(node.name)
            node = node.parent
        return " > ".join(reversed(names))


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("idx_transactions_account", "account_id"),
        Index("idx_transactions_date", "transaction_date"),
        Index("idx_transactions_user", "user_id"),
        CheckConstraint("type IN ('income','expense','transfer')", name="ck_transactions_type"),
        CheckConstraint("status IN ('pending','completed','cancelled')", name="ck_transactions_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = _money_col(default=None)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)

    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    transfer_to_account_id: Mapped[int | None] = mapped_column(ForeignKey("accounts.id"), nullable=True)
    category_id: Mapped[int | None] = mapped_column(
        ForeignKey("finance_categories.id", ondelete="SET NULL"), nullable=True
    )
    reference_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="completed")

    is_reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id], lazy="selectin")
    transfer_to_account: Mapped["Account | None"] = relationship(
        "Account", foreign_keys=[transfer_to_account_id], lazy="selectin"
    )
    category: Mapped["FinanceCategory | None"] = relationship("FinanceCategory", lazy="selectin")

    def signed_amount_for(self, account_id: int) -> Decimal:
        """Amount as seen from `account_id`: money in is positive."""
        if self.type == "income":
            return self.amount
        if self.type == "transfer" and self.transfer_to_account_id == account_id:
            return self.amount
        return -self.amount


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_due_date", "due_date"),
        CheckConstraint("status IN ('draft','sent','paid','cancelled')", name="ck_invoices_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # INV-YYYYMM-####

    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    client_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    subtotal: Mapped[Decimal] = _money_col()
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(precision=5, scale=2), nullable=False, default=ZERO)
    tax_amount: Mapped[Decimal] = _money_col()
    discount_amount: Mapped[Decimal] = _money_col()
    total_amount: Mapped[Decimal] = _money_col()
    paid_amount: Mapped[Decimal] = _money_col()

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    items: Mapped[list["InvoiceItem"]] = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.id",
        lazy="selectin",
    )

    @property
    def remaining_amount(self) -> Decimal:
        return max(ZERO, (self.total_amount or ZERO) - (self.paid_amount or ZERO))

    @property
    def is_fully_paid(self) -> bool:
        return (self.paid_amount or ZERO) >= (self.total_amount or ZERO) and (self.total_amount or ZERO) > 0

    @property
    def is_overdue(self) -> bool:
        return self.status == "sent" and self.due_date < date.today()

    @property
    def days_until_due(self) -> int:
        return (self.due_date - date.today()).days


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(precision=10, scale=2), nullable=False)
    unit_price: Mapped[Decimal] = _money_col(default=None)
    total: Mapped[Decimal] = _money_col()

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="items")


class Expense(Base):
    __tablename__ = "expenses"
    __table_args__ = (
        Index("idx_expenses_status", "status"),
        Index("idx_expenses_date", "expense_date"),
        CheckConstraint("status IN ('pending','approved','rejected','paid')", name="ck_expenses_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = _money_col(default=None)
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    vendor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    receipt_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")

    category_id: Mapped[int | None] = mapped_column(
        ForeignKey("finance_categories.id", ondelete="SET NULL"), nullable=True
    )
    account_id: Mapped[int | None] = mapped_column(ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    approved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    category: Mapped["FinanceCategory | None"] = relationship("FinanceCategory", lazy="selectin")
    account: Mapped["Account | None"] = relationship("Account", lazy="selectin")
    user: Mapped["User"] = relationship("User", foreign_keys=[user_id], lazy="selectin")
    approved_by: Mapped["User | None"] = relationship("User", foreign_keys=[approved_by_user_id], lazy="selectin")


class BankStatement(Base):
    __tablename__ = "bank_statements"
    __table_args__ = (
        Index("idx_bank_statements_account", "account_id"),
        CheckConstraint(
            "status IN ('pending','processing','processed','failed')", name="ck_bank_statements_status"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    statement_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    opening_balance: Mapped[Decimal] = _money_col()
    closing_balance: Mapped[Decimal] = _money_col()
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    transactions_imported: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    column_mapping_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    account: Mapped["Account"] = relationship("Account", lazy="selectin")
    lines: Mapped[list["BankStatementLine"]] = relationship(
        "BankStatementLine",
        back_populates="statement",
        cascade="all, delete-orphan",
        order_by="BankStatementLine.line_date",
    )


class BankStatementLine(Base):
    __tablename__ = "bank_statement_lines"
    __table_args__ = (
        Index("idx_bank_statement_lines_statement", "statement_id"),
        CheckConstraint("type IN ('credit','debit')", name="ck_bank_statement_lines_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    statement_id: Mapped[int] = mapped_column(ForeignKey("bank_statements.id", ondelete="CASCADE"), nullable=False)
    line_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[Decimal] = _money_col(default=None)  # absolute value; direction in type
    type: Mapped[str] = mapped_column(String(8), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    running_balance: Mapped[Decimal | None] = _money_col(nullable=True, default=None)
    is_reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    statement: Mapped["BankStatement"] = relationship("BankStatement", back_populates="lines")

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.type == "credit" else -self.amount


class BankReconciliation(Base):
    __tablename__ = "bank_reconciliations"
    __table_args__ = (
        Index("idx_bank_reconciliations_account", "account_id"),
        CheckConstraint("status IN ('in_progress','completed')", name="ck_bank_reconciliations_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reconciliation_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    statement_id: Mapped[int | None] = mapped_column(
        ForeignKey("bank_statements.id", ondelete="SET NULL"), nullable=True
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    statement_opening_balance: Mapped[Decimal] = _money_col()
    statement_closing_balance: Mapped[Decimal] = _money_col()
    book_opening_balance: Mapped[Decimal] = _money_col()
    book_closing_balance: Mapped[Decimal] = _money_col()
    difference: Mapped[Decimal] = _money_col()

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="in_progress")
    matched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unmatched_bank_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unmatched_book_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matched_amount: Mapped[Decimal] = _money_col()
    unmatched_bank_amount: Mapped[Decimal] = _money_col()
    unmatched_book_amount: Mapped[Decimal] = _money_col()
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    account: Mapped["Account"] = relationship("Account", lazy="selectin")
    statement: Mapped["BankStatement | None"] = relationship("BankStatement", lazy="selectin")
    items: Mapped[list["ReconciliationItem"]] = relationship(
        "ReconciliationItem",
        back_populates="reconciliation",
        cascade="all, delete-orphan",
        order_by="ReconciliationItem.item_date",
    )

    @property
    def progress(self) -> int:
        total = self.matched_count + self.unmatched_bank_count
        if total == 0:
            return 0
        return round(self.matched_count / total * 100)


class ReconciliationItem(Base):
    __tablename__ = "reconciliation_items"
    __table_args__ = (
        Index("idx_reconciliation_items_reconciliation", "reconciliation_id"),
        CheckConstraint(
            "kind IN ('unmatched_bank','unmatched_book','matched')", name="ck_reconciliation_items_kind"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reconciliation_id: Mapped[int] = mapped_column(
        ForeignKey("bank_reconciliations.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    statement_line_id: Mapped[int | None] = mapped_column(
        ForeignKey("bank_statement_lines.id", ondelete="SET NULL"), nullable=True
    )
    transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True
    )
    amount: Mapped[Decimal] = _money_col()  # signed: money in > 0
    item_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    match_type: Mapped[str | None] = mapped_column(String(8), nullable=True)  # auto|manual
    confidence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount_difference: Mapped[Decimal | None] = _money_col(nullable=True, default=None)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    matched_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    reconciliation: Mapped["BankReconciliation"] = relationship("BankReconciliation", back_populates="items")
    statement_line: Mapped["BankStatementLine | None"] = relationship("BankStatementLine", lazy="selectin")
    transaction: Mapped["Transaction | None"] = relationship("Transaction", lazy="selectin")
