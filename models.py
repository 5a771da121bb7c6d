from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class SpendingPeriod(str, Enum):
    monthly = "monthly"
    yearly = "yearly"


class ReportFormat(str, Enum):
    csv = "csv"
    pdf = "pdf"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(254), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    categories: Mapped[list["Category"]] = relationship(
        "Category",
        primaryjoin="User.id == foreign(Category.user_id)",
        viewonly=True,
    )
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense",
        primaryjoin="User.id == foreign(Expense.user_id)",
        viewonly=True,
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    budget_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )

    __table_args__ = (
        CheckConstraint("budget_cents >= 0", name="ck_categories_budget_non_negative"),
    )


# names are unique per user regardless of case
Index(
    "uq_categories_user_lower_name",
    Category.user_id,
    func.lower(Category.name),
    unique=True,
)


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    category: Mapped["Category"] = relationship("Category", back_populates="expenses")

    __table_args__ = (
        Index("ix_expenses_user_occurred", "user_id", "occurred_at"),
        Index("ix_expenses_user_category", "user_id", "category_id"),
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )
