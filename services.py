from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy import extract, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from auth import hash_password, issue_access_token, verify_password
from config import Settings
from context import BudgetLocks
from csv_utils import export_expenses, format_amount, format_timestamp
from errors import (
    BudgetBelowCurrentSpend,
    BudgetExceeded,
    CategoryInUse,
    DuplicateCategory,
    DuplicateEmail,
    InvalidBudget,
    InvalidCategory,
    InvalidInput,
    NotFound,
    ReportGenerationError,
    Unauthenticated,
)
from models import Category, Expense, ReportFormat, SpendingPeriod, User
from notifications import EXPENSE_UPDATED, ChangeNotifier, NullNotifier
from periods import PeriodKey, most_recent_first, resolve_spending_period
from schemas import (
    CategoryIn,
    ExpenseIn,
    ExpenseUpdate,
    LoginIn,
    UserIn,
    UserUpdate,
)

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


def _as_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.lower())
        )

    def register(self, data: UserIn) -> User:
        email = str(data.email).strip().lower()
        if self._by_email(email):
            raise DuplicateEmail("Email already exists")
        user = User(
            name=data.name.strip(),
            email=email,
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        self._commit_unique_email()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def _commit_unique_email(self) -> None:
        # a concurrent registration can take the address after the lookup
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateEmail("Email already exists") from exc

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self._by_email(email.strip())
        if not user or not verify_password(password, user.password_hash):
            raise Unauthenticated("Invalid email or password")
        return user

    def login(self, data: LoginIn, settings: Settings) -> tuple[User, str]:
        user = self.authenticate(str(data.email), data.password)
        token = issue_access_token(user.id, settings)
        logger.info(f"user_login: user_id={user.id}")
        return user, token

    def update(self, user_id: int, data: UserUpdate) -> User:
        user = self.get(user_id)
        fields = data.model_dump(exclude_unset=True)
        for key in ("name", "email", "password"):
            if key in fields and fields[key] is None:
                raise InvalidInput(f"{key} cannot be null")
        if "email" in fields:
            email = str(fields["email"]).strip().lower()
            existing = self._by_email(email)
            if existing and existing.id != user.id:
                raise DuplicateEmail("Email already exists")
            user.email = email
        if "name" in fields:
            user.name = fields["name"].strip()
        if "password" in fields:
            user.password_hash = hash_password(fields["password"])
        self._commit_unique_email()
        self.session.refresh(user)
        return user

    def delete(self, user_id: int) -> None:
        # owned categories and expenses are left in place
        user = self.get(user_id)
        self.session.delete(user)
        self.session.commit()
        logger.info(f"user_deleted: user_id={user_id}")


class CategoryService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        locks: Optional[BudgetLocks] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.locks = locks or BudgetLocks()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def _by_name(self, name: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == name.lower(),
            )
        )

    def spent_cents(self, category_id: int) -> int:
        stmt = select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
            Expense.user_id == self.user_id,
            Expense.category_id == category_id,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def create(self, data: CategoryIn) -> Category:
        if data.budget_cents < 0:
            raise InvalidBudget("Budget cannot be negative")
        name = data.name.strip()
        if not name:
            raise InvalidInput("Category name cannot be empty")
        if self._by_name(name):
            raise DuplicateCategory("Category already exists")
        category = Category(
            user_id=self.user_id,
            name=name,
            budget_cents=data.budget_cents,
        )
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateCategory("Category already exists") from exc
        self.session.refresh(category)
        logger.info(
            f"category_created: user_id={self.user_id} category_id={category.id} "
            f"budget_cents={category.budget_cents}"
        )
        return category

    def update_budget(self, category_id: int, budget_cents: int) -> Category:
        with self.locks.hold(self.user_id, category_id):
            category = self.get(category_id)
            if budget_cents < 0:
                raise InvalidBudget("Budget cannot be negative")
            current = self.spent_cents(category_id)
            if budget_cents < current:
                raise BudgetBelowCurrentSpend(
                    "New budget must be greater than current expenses "
                    f"({format_amount(current)})"
                )
            category.budget_cents = budget_cents
            self.session.commit()
        self.session.refresh(category)
        logger.info(
            f"category_budget_updated: user_id={self.user_id} "
            f"category_id={category_id} budget_cents={budget_cents}"
        )
        return category

    def delete(self, category_id: int) -> None:
        with self.locks.hold(self.user_id, category_id):
            category = self.get(category_id)
            usage = self.session.execute(
                select(func.count(Expense.id)).where(Expense.category_id == category_id)
            ).scalar_one()
            if usage:
                raise CategoryInUse("Cannot delete category with existing expenses")
            self.session.delete(category)
            self.session.commit()
        logger.info(
            f"category_deleted: user_id={self.user_id} category_id={category_id}"
        )


class ExpenseService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        locks: Optional[BudgetLocks] = None,
        notifier: Optional[ChangeNotifier] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.locks = locks or BudgetLocks()
        self.notifier = notifier or NullNotifier()
        self.categories = CategoryService(session, user_id, locks=self.locks)

    def _owned_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise InvalidCategory("Invalid category")
        return category

    def create(self, data: ExpenseIn) -> Expense:
        with self.locks.hold(self.user_id, data.category_id):
            category = self._owned_category(data.category_id)
            current = self.categories.spent_cents(category.id)
            if current + data.amount_cents > category.budget_cents:
                raise BudgetExceeded("Expense exceeds category budget")
            expense = Expense(
                user_id=self.user_id,
                category_id=category.id,
                amount_cents=data.amount_cents,
                description=data.description,
                occurred_at=_as_utc_naive(data.occurred_at)
                if data.occurred_at
                else datetime.utcnow(),
            )
            self.session.add(expense)
            self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"expense_created: user_id={self.user_id} expense_id={expense.id} "
            f"category_id={expense.category_id} amount_cents={expense.amount_cents}"
        )
        return expense

    def get(self, expense_id: int) -> Expense:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.user_id == self.user_id, Expense.id == expense_id)
        )
        expense = self.session.scalar(stmt)
        if not expense:
            raise NotFound("Expense not found")
        return expense

    def list_all(self) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.user_id == self.user_id)
            .order_by(Expense.occurred_at.desc(), Expense.id.desc())
        )
        return self.session.scalars(stmt).all()

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        expense = self.get(expense_id)
        fields = data.model_dump(exclude_unset=True)
        if "amount_cents" in fields and fields["amount_cents"] is None:
            raise InvalidInput("amount_cents cannot be null")
        if "occurred_at" in fields and fields["occurred_at"] is None:
            raise InvalidInput("occurred_at cannot be null")

        with self.locks.hold(self.user_id, expense.category_id):
            self.session.refresh(expense)
            if "amount_cents" in fields:
                category = self._owned_category(expense.category_id)
                current = self.categories.spent_cents(category.id)
                new_amount = fields["amount_cents"]
                if current - expense.amount_cents + new_amount > category.budget_cents:
                    raise BudgetExceeded("Expense exceeds category budget")
                expense.amount_cents = new_amount
            if "description" in fields:
                expense.description = fields["description"]
            if "occurred_at" in fields:
                expense.occurred_at = _as_utc_naive(fields["occurred_at"])
            self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"expense_updated: user_id={self.user_id} expense_id={expense.id} "
            f"fields={','.join(sorted(fields))}"
        )
        self.notifier.publish(EXPENSE_UPDATED, self.user_id)
        return expense

    def delete(self, expense_id: int) -> dict[str, object]:
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.user_id != self.user_id:
            raise NotFound("Expense not found")
        self.session.delete(expense)
        self.session.commit()
        logger.info(f"expense_deleted: user_id={self.user_id} expense_id={expense_id}")
        self.notifier.publish(EXPENSE_UPDATED, self.user_id)
        return {"id": expense_id, "message": "Expense deleted successfully"}


class BudgetService:
    def __init__(
        self, session: Session, user_id: int, *, owner_scoped: bool = False
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.owner_scoped = owner_scoped

    def summary(self) -> dict[str, int]:
        total_budget = self.session.execute(
            select(func.coalesce(func.sum(Category.budget_cents), 0)).where(
                Category.user_id == self.user_id
            )
        ).scalar_one()
        total_expenses = self.session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.user_id == self.user_id
            )
        ).scalar_one()
        total_budget = int(total_budget or 0)
        total_expenses = int(total_expenses or 0)
        return {
            "total_budget_cents": total_budget,
            "total_expenses_cents": total_expenses,
            "remaining_budget_cents": total_budget - total_expenses,
        }

    def category_breakdown(self) -> list[dict[str, object]]:
        spent_stmt = select(
            Expense.category_id,
            func.coalesce(func.sum(Expense.amount_cents), 0).label("total"),
        ).group_by(Expense.category_id)
        category_stmt = select(Category).order_by(Category.id)
        if self.owner_scoped:
            spent_stmt = spent_stmt.where(Expense.user_id == self.user_id)
            category_stmt = category_stmt.where(Category.user_id == self.user_id)

        spent_map = {
            row.category_id: int(row.total or 0)
            for row in self.session.execute(spent_stmt)
        }
        breakdown = []
        for category in self.session.scalars(category_stmt):
            spent = spent_map.get(category.id, 0)
            breakdown.append(
                {
                    "category_id": category.id,
                    "category_name": category.name,
                    "total_budget_cents": category.budget_cents,
                    "total_expense_cents": spent,
                    "remaining_cents": category.budget_cents - spent,
                }
            )
        return breakdown


class SpendingService:
    def __init__(
        self, session: Session, user_id: int, *, owner_scoped: bool = False
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.owner_scoped = owner_scoped

    def _scoped(self, stmt):
        if self.owner_scoped:
            stmt = stmt.where(Expense.user_id == self.user_id)
        return stmt

    def period_summary(
        self, period: Union[SpendingPeriod, str]
    ) -> list[dict[str, int]]:
        period = resolve_spending_period(period)
        monthly = period == SpendingPeriod.monthly
        year = extract("year", Expense.occurred_at)
        month = extract("month", Expense.occurred_at)
        group_cols = [year, month] if monthly else [year]

        stmt = select(
            year.label("year"),
            *([month.label("month")] if monthly else []),
            func.coalesce(func.sum(Expense.amount_cents), 0).label("total"),
        ).group_by(*group_cols)

        totals: dict[PeriodKey, int] = {}
        for row in self.session.execute(self._scoped(stmt)):
            key = PeriodKey(int(row.year), int(row.month) if monthly else None)
            totals[key] = int(row.total or 0)

        entries: list[dict[str, int]] = []
        for key in sorted(totals, key=most_recent_first):
            entry = {"year": key.year}
            if monthly:
                entry["month"] = key.month
            entry["total_spent_cents"] = totals[key]
            entries.append(entry)
        return entries

    def trends(self) -> list[dict[str, object]]:
        year = extract("year", Expense.occurred_at)
        month = extract("month", Expense.occurred_at)
        stmt = select(
            year.label("year"),
            month.label("month"),
            Expense.category_id,
            func.coalesce(func.sum(Expense.amount_cents), 0).label("total"),
        ).group_by(year, month, Expense.category_id)
        rows = self.session.execute(self._scoped(stmt)).all()

        categories = {c.id: c for c in self.session.scalars(select(Category))}

        out: list[dict[str, object]] = []
        for row in rows:
            category = categories.get(row.category_id)
            name = category.name if category else "Unknown"
            budget = category.budget_cents if category else 0
            total = int(row.total or 0)
            if total > budget:
                suggestion = f"overspending on {name}"
            else:
                suggestion = f"within budget for {name}"
            out.append(
                {
                    "year": int(row.year),
                    "month": int(row.month),
                    "category_id": row.category_id,
                    "category": name,
                    "budget_cents": budget,
                    "total_spent_cents": total,
                    "suggestion": suggestion,
                }
            )
        out.sort(
            key=lambda r: (
                most_recent_first(PeriodKey(r["year"], r["month"])),
                r["category_id"],
            )
        )
        return out


def _report_environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["amount"] = format_amount
    env.filters["timestamp"] = format_timestamp
    return env


def render_report_html(expenses: list[Expense], *, generated_at: datetime) -> str:
    template = _report_environment().get_template("expense_report.html")
    return template.render(expenses=expenses, generated_at=generated_at)


class ReportService:
    def __init__(self, session: Session, user_id: int, *, reports_dir: Path) -> None:
        self.session = session
        self.user_id = user_id
        self.reports_dir = Path(reports_dir)
        self.expense_service = ExpenseService(session, user_id)

    def pdf_path(self) -> Path:
        return self.reports_dir / f"expense_report_{self.user_id}.pdf"

    def export(self, report_format: Union[ReportFormat, str]) -> Union[str, Path]:
        try:
            report_format = ReportFormat(report_format)
        except ValueError as exc:
            raise InvalidInput("Invalid format. Use pdf or csv") from exc
        if report_format == ReportFormat.csv:
            return self.export_csv()
        return self.export_pdf()

    def export_csv(self) -> str:
        expenses = self.expense_service.list_all()
        try:
            csv_text = export_expenses(expenses)
        except Exception as exc:
            logger.exception(f"report_failed: user_id={self.user_id} format=csv")
            raise ReportGenerationError("Error generating report") from exc
        logger.info(
            f"report_generated: user_id={self.user_id} format=csv rows={len(expenses)}"
        )
        return csv_text

    def export_pdf(self) -> Path:
        expenses = self.expense_service.list_all()
        target = self.pdf_path()
        try:
            self.reports_dir.mkdir(parents=True, exist_ok=True)
            html = render_report_html(expenses, generated_at=datetime.utcnow())
            try:
                from weasyprint import HTML
            except Exception as exc:
                raise ReportGenerationError(
                    "PDF export requires WeasyPrint system dependencies"
                ) from exc

            start_time = datetime.now()
            HTML(string=html).write_pdf(target)
            pdf_duration = (datetime.now() - start_time).total_seconds()
        except ReportGenerationError:
            logger.exception(f"report_failed: user_id={self.user_id} format=pdf")
            raise
        except Exception as exc:
            logger.exception(f"report_failed: user_id={self.user_id} format=pdf")
            raise ReportGenerationError("Error generating report") from exc
        logger.info(
            f"report_generated: user_id={self.user_id} format=pdf "
            f"rows={len(expenses)} pdf_duration={pdf_duration:.2f}s"
        )
        return target
