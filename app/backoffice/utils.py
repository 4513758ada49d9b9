from __future__ import annotations

import csv
import io
import re
import unicodedata
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from flask import send_file, url_for

CENT = Decimal("0.01")
# Numeric(15, 2), the widest money column
MAX_DECIMAL = Decimal("1e13")


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string; None for empty or invalid input."""
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def parse_decimal(raw: Any, *, max_abs: Decimal = MAX_DECIMAL) -> Decimal | None:
    """None for empty, non-numeric, NaN/Infinity, or values whose magnitude reaches max_abs."""
    if raw is None:
        return None
    if isinstance(raw, Decimal):
        value = raw
    else:
        s = str(raw).strip()
        if not s:
            return None
        try:
            value = Decimal(s)
        except InvalidOperation:
            return None
    if not value.is_finite() or abs(value) >= max_abs:
        return None
    return value


def parse_int(raw: Any, default: int | None = None) -> int | None:
    if raw is None:
        return default
    s = str(raw).strip()
    if not s:
        return default
    try:
        return int(s)
    except ValueError:
        return default


def money(value: Decimal | int | float | None) -> Decimal:
    """Round to cents, half-up (accounting rounding)."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def clean(raw: Any) -> str | None:
    s = (str(raw) if raw is not None else "").strip()
    return s or None


def slugify(value: str) -> str:
    value = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^\w\s-]", "", value.lower())
    return re.sub(r"[-\s_]+", "-", value).strip("-")


def is_valid_email(email: str) -> bool:
    pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    return bool(re.match(pattern, email or ""))


@dataclass(frozen=True)
class Page:
    items: list
    page: int
    per_page: int
    total: int

    @property
    def pages(self) -> int:
        return max(1, (self.total + self.per_page - 1) // self.per_page)

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page * self.per_page < self.total

    @property
    def first_index(self) -> int:
        return 0 if not self.total else (self.page - 1) * self.per_page + 1

    @property
    def last_index(self) -> int:
        return min(self.page * self.per_page, self.total)


def paginate(q, *, page: int, per_page: int) -> Page:
    page = max(1, page)
    total = q.count()
    items = q.offset((page - 1) * per_page).limit(per_page).all()
    return Page(items=items, page=page, per_page=per_page, total=total)


def page_urls(endpoint: str, page: Page, filters: dict[str, Any], **view_args: Any) -> dict[str, str | None]:
    # Jinja cannot splat **kwargs in url_for; precompute pagination URLs here.
    params = {k: v for k, v in filters.items() if k != "page" and v not in (None, "")}
    return {
        "prev_url": url_for(endpoint, page=page.page - 1, **view_args, **params) if page.has_prev else None,
        "next_url": url_for(endpoint, page=page.page + 1, **view_args, **params) if page.has_next else None,
    }


def csv_download(header: list[str], rows: Iterable[Iterable[Any]], filename: str):
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(header)
    for row in rows:
        w.writerow(["" if v is None else v for v in row])
    data = out.getvalue().encode("utf-8")
    return send_file(
        io.BytesIO(data),
        mimetype="text/csv",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )
