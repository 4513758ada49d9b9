from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.backoffice.models import Base

if TYPE_CHECKING:
    from app.backoffice.models import User


class Menu(Base):
    __tablename__ = "cms_menus"
    __table_args__ = (
        Index("idx_cms_menus_location", "location"),
        CheckConstraint(
            "location IN ('header','footer','sidebar','mobile','breadcrumb')", name="ck_cms_menus_location"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str] = mapped_column(String(16), nullable=False, default="header")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    created_by: Mapped["User | None"] = relationship("User", lazy="selectin")
    items: Mapped[list["MenuItem"]] = relationship(
        "MenuItem",
        back_populates="menu",
        cascade="all, delete-orphan",
        order_by="MenuItem.sort_order",
    )

    @property
    def root_items(self) -> list["MenuItem"]:
        return [i for i in self.items if i.parent_id is None]


class MenuItem(Base):
    __tablename__ = "cms_menu_items"
    __table_args__ = (
        Index("idx_cms_menu_items_menu", "menu_id"),
        Index("idx_cms_menu_items_parent", "parent_id"),
        CheckConstraint("target IN ('_self','_blank','_parent','_top')", name="ck_cms_menu_items_target"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    menu_id: Mapped[int] = mapped_column(ForeignKey("cms_menus.id", ondelete="CASCADE"), nullable=False)
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("cms_menu_items.id", ondelete="SET NULL"), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    target: Mapped[str] = mapped_column(String(8), nullable=False, default="_self")
    icon: Mapped[str | None] = mapped_column(String(64), nullable=True)
    css_class: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    require_auth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    permissions: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)  # permission keys
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    menu: Mapped["Menu"] = relationship("Menu", back_populates="items")
    parent: Mapped["MenuItem | None"] = relationship("MenuItem", remote_side="MenuItem.id")

    def to_dict(self, children: list[dict[str, Any]] | None = None) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url or "#",
            "target": self.target,
            "icon": self.icon,
            "css_class": self.css_class,
            "children": children or [],
        }
