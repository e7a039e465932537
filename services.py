from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import extract, func, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, contains_eager, joinedload

from config import get_settings
from models import Budget, Category, Transaction, TransactionType, User
from periods import MONTH_LABELS, month_bounds, today_in, year_bounds
from schemas import (
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
    UserIn,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

DEFAULT_CATEGORIES: dict[TransactionType, tuple[str, ...]] = {
    TransactionType.income: (
        "Salary",
        "Freelance",
        "Investments",
        "Gifts",
        "Other Income",
    ),
    TransactionType.expense: (
        "Housing",
        "Food",
        "Transportation",
        "Utilities",
        "Entertainment",
        "Healthcare",
        "Education",
        "Shopping",
        "Other Expense",
    ),
}


class ConstraintViolation(ValueError):
    """A write was rejected by a uniqueness, check or ownership rule."""


class StorageUnavailable(RuntimeError):
    """The database could not be reached or failed to run a statement."""


def _translate_db_errors(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except IntegrityError as exc:
            self.session.rollback()
            logger.warning(
                f"constraint_violation: op={method.__qualname__} "
                f"user_id={getattr(self, 'user_id', None)} error={exc.orig}"
            )
            raise ConstraintViolation(str(exc.orig)) from exc
        except DBAPIError as exc:
            self.session.rollback()
            logger.error(
                f"storage_error: op={method.__qualname__} "
                f"user_id={getattr(self, 'user_id', None)} error={exc.orig}"
            )
            raise StorageUnavailable(f"{method.__qualname__} failed") from exc

    return wrapper


def _money(value: object) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT)


@dataclass(frozen=True)
class MonthlyTotal:
    month: int
    type: TransactionType
    total: Decimal


@dataclass(frozen=True)
class CategoryTotal:
    category_name: str
    total: Decimal
    percent: float = 0.0


@dataclass(frozen=True)
class BudgetComparisonRow:
    category_id: int
    category_name: str
    budget_amount: Decimal
    actual_amount: Decimal
    difference: Decimal


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    limit: Optional[int] = None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    @_translate_db_errors
    def get(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    @_translate_db_errors
    def get_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )

    @_translate_db_errors
    def create(self, data: UserIn, *, with_default_categories: bool = True) -> User:
        if self.get_by_email(data.email):
            raise ConstraintViolation("User with this email already exists")
        user = User(
            name=data.name.strip(),
            email=data.email.strip().lower(),
            password_hash=data.password_hash,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_created: id={user.id}")
        if with_default_categories:
            CategoryService(self.session, user.id).create_defaults()
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    @_translate_db_errors
    def list_all(self, type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return list(self.session.scalars(stmt).all())

    @_translate_db_errors
    def get(self, category_id: int) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id, Category.id == category_id
            )
        )

    @_translate_db_errors
    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        existing = self.session.scalar(
            select(Category.id).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                Category.name == name,
            )
        )
        if existing:
            raise ConstraintViolation("Category with this name already exists")
        category = Category(user_id=self.user_id, name=name, type=data.type)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        logger.info(
            f"category_created: id={category.id} user_id={self.user_id} "
            f"type={category.type.value}"
        )
        return category

    @_translate_db_errors
    def create_defaults(self) -> list[Category]:
        existing = {(c.type, c.name) for c in self.list_all()}
        created: list[Category] = []
        for txn_type, names in DEFAULT_CATEGORIES.items():
            for name in names:
                if (txn_type, name) in existing:
                    continue
                category = Category(user_id=self.user_id, name=name, type=txn_type)
                self.session.add(category)
                created.append(category)
        self.session.commit()
        return created

    @_translate_db_errors
    def rename(self, category_id: int, name: str) -> Optional[Category]:
        category = self.get(category_id)
        if not category:
            return None
        category.name = name.strip()
        self.session.commit()
        self.session.refresh(category)
        return category

    @_translate_db_errors
    def delete(self, category_id: int) -> bool:
        """Delete a category.

        Transactions that pointed at it become uncategorised; its budgets are
        removed with it. Returns False when the category does not exist.
        """
        category = self.get(category_id)
        if not category:
            return False
        self.session.delete(category)
        self.session.commit()
        logger.info(f"category_deleted: id={category_id} user_id={self.user_id}")
        return True


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        if CategoryService(self.session, self.user_id).get(category_id) is None:
            raise ConstraintViolation("Category not found")

    @_translate_db_errors
    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id is not None:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start_date:
            stmt = stmt.where(Transaction.date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Transaction.date <= filters.end_date)
        if filters.limit is not None:
            stmt = stmt.limit(filters.limit)
        return list(self.session.scalars(stmt).all())

    def recent(self, limit: int = 5) -> list[Transaction]:
        return self.list(TransactionFilters(limit=limit))

    @_translate_db_errors
    def get(self, transaction_id: int) -> Optional[Transaction]:
        return self.session.scalar(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )

    @_translate_db_errors
    def create(self, data: TransactionIn) -> Transaction:
        # the transaction type is kept as given even if the category's type differs
        self._check_category(data.category_id)
        txn = Transaction(
            user_id=self.user_id,
            amount=data.amount,
            description=data.description,
            date=data.date,
            type=data.type,
            category_id=data.category_id,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} user_id={self.user_id} "
            f"type={txn.type.value} date={txn.date.isoformat()}"
        )
        return txn

    @_translate_db_errors
    def update(
        self, transaction_id: int, data: TransactionUpdate
    ) -> Optional[Transaction]:
        txn = self.get(transaction_id)
        if not txn:
            return None
        self._check_category(data.category_id)
        txn.amount = data.amount
        txn.description = data.description
        txn.date = data.date
        txn.category_id = data.category_id
        self.session.commit()
        self.session.refresh(txn)
        return txn

    @_translate_db_errors
    def delete(self, transaction_id: int) -> bool:
        txn = self.get(transaction_id)
        if not txn:
            return False
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: id={transaction_id} user_id={self.user_id}")
        return True

    @_translate_db_errors
    def monthly_summary(self, year: int) -> list[MonthlyTotal]:
        """Per-month, per-type sums of the owner's transactions dated in ``year``."""
        period = year_bounds(year)
        month = extract("month", Transaction.date).label("month")
        stmt = (
            select(
                month,
                Transaction.type,
                func.sum(Transaction.amount).label("total"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(month, Transaction.type)
            .order_by(month, Transaction.type)
        )
        return [
            MonthlyTotal(
                month=int(row.month),
                type=TransactionType(row.type),
                total=_money(row.total),
            )
            for row in self.session.execute(stmt)
        ]

    @_translate_db_errors
    def category_summary(
        self, transaction_type: TransactionType, start: date, end: date
    ) -> list[CategoryTotal]:
        """Per-category sums of one type within the inclusive ``start``..``end``.

        Uncategorised transactions are left out. Rows come back largest first.
        """
        total = func.sum(Transaction.amount)
        stmt = (
            select(Category.name.label("name"), total.label("total"))
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == self.user_id,
                Category.user_id == self.user_id,
                Transaction.type == transaction_type,
                Transaction.date.between(start, end),
            )
            .group_by(Category.id, Category.name)
            .order_by(total.desc(), Category.name)
        )
        rows = [(row.name, _money(row.total)) for row in self.session.execute(stmt)]
        grand_total = sum((amount for _, amount in rows), ZERO)
        return [
            CategoryTotal(
                category_name=name,
                total=amount,
                percent=float(amount / grand_total * 100) if grand_total else 0.0,
            )
            for name, amount in rows
        ]


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    @_translate_db_errors
    def list(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[Budget]:
        stmt = (
            select(Budget)
            .join(Budget.category)
            .options(contains_eager(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Category.name, Budget.year, Budget.month)
        )
        if month is not None:
            stmt = stmt.where(Budget.month == month)
        if year is not None:
            stmt = stmt.where(Budget.year == year)
        return list(self.session.scalars(stmt).all())

    @_translate_db_errors
    def get(self, budget_id: int) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id, Budget.id == budget_id)
        )

    def _existing_id(self, data: BudgetIn) -> Optional[int]:
        return self.session.scalar(
            select(Budget.id).where(
                Budget.user_id == self.user_id,
                Budget.category_id == data.category_id,
                Budget.year == data.year,
                Budget.month == data.month,
            )
        )

    @_translate_db_errors
    def create(self, data: BudgetIn) -> Budget:
        if CategoryService(self.session, self.user_id).get(data.category_id) is None:
            raise ConstraintViolation("Category not found")
        # the unique constraint still rejects a row committed after this check
        if self._existing_id(data) is not None:
            raise ConstraintViolation(
                "Budget already exists for this category and month"
            )
        budget = Budget(
            user_id=self.user_id,
            amount=data.amount,
            month=data.month,
            year=data.year,
            category_id=data.category_id,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(
            f"budget_created: id={budget.id} user_id={self.user_id} "
            f"period={budget.year:04d}-{budget.month:02d}"
        )
        return budget

    @_translate_db_errors
    def update(self, budget_id: int, data: BudgetUpdate) -> Optional[Budget]:
        budget = self.get(budget_id)
        if not budget:
            return None
        budget.amount = data.amount
        self.session.commit()
        self.session.refresh(budget)
        return budget

    @_translate_db_errors
    def delete(self, budget_id: int) -> bool:
        budget = self.get(budget_id)
        if not budget:
            return False
        self.session.delete(budget)
        self.session.commit()
        logger.info(f"budget_deleted: id={budget_id} user_id={self.user_id}")
        return True

    @_translate_db_errors
    def comparison(self, month: int, year: int) -> list[BudgetComparisonRow]:
        """Budget against actual spending for every expense category.

        Categories without a budget or without spending still get a row, with
        zero on the missing side.
        """
        categories = CategoryService(self.session, self.user_id).list_all(
            TransactionType.expense
        )
        if not categories:
            return []

        budget_by_category = {
            row.category_id: _money(row.amount)
            for row in self.session.execute(
                select(Budget.category_id, Budget.amount).where(
                    Budget.user_id == self.user_id,
                    Budget.month == month,
                    Budget.year == year,
                )
            )
        }

        period = month_bounds(year, month)
        actual_stmt = (
            select(
                Transaction.category_id,
                func.sum(Transaction.amount).label("spent"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.category_id.is_not(None),
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.category_id)
        )
        actual_by_category = {
            row.category_id: _money(row.spent)
            for row in self.session.execute(actual_stmt)
        }

        rows: list[BudgetComparisonRow] = []
        for category in categories:
            budget_amount = budget_by_category.get(category.id, ZERO)
            actual_amount = actual_by_category.get(category.id, ZERO)
            rows.append(
                BudgetComparisonRow(
                    category_id=category.id,
                    category_name=category.name,
                    budget_amount=budget_amount,
                    actual_amount=actual_amount,
                    difference=budget_amount - actual_amount,
                )
            )
        return rows


@dataclass
class Totals:
    income: Decimal = ZERO
    expense: Decimal = ZERO
    savings: Decimal = ZERO


@dataclass
class ChartSeries:
    labels: list[str] = field(default_factory=list)
    income: list[Decimal] = field(default_factory=list)
    expense: list[Decimal] = field(default_factory=list)


@dataclass
class Dashboard:
    year: int
    month: int
    recent_transactions: list[dict[str, object]] = field(default_factory=list)
    monthly_totals: Totals = field(default_factory=Totals)
    chart_series: ChartSeries = field(default_factory=ChartSeries)
    expense_breakdown: list[CategoryTotal] = field(default_factory=list)
    income_breakdown: list[CategoryTotal] = field(default_factory=list)
    budget_comparison: list[BudgetComparisonRow] = field(default_factory=list)
    error: Optional[str] = None


def calculate_totals(transactions: Iterable[Transaction]) -> Totals:
    income = ZERO
    expense = ZERO
    for txn in transactions:
        if txn.type == TransactionType.income:
            income += _money(txn.amount)
        else:
            expense += _money(txn.amount)
    return Totals(income=income, expense=expense, savings=income - expense)


def totals_for_month(summary: Iterable[MonthlyTotal], month: int) -> Totals:
    totals = Totals()
    for row in summary:
        if row.month != month:
            continue
        if row.type == TransactionType.income:
            totals.income += row.total
        else:
            totals.expense += row.total
    totals.savings = totals.income - totals.expense
    return totals


def chart_series(summary: Iterable[MonthlyTotal], month: int) -> ChartSeries:
    """January..``month`` income/expense series, zero where a month had nothing."""
    series = ChartSeries(
        labels=list(MONTH_LABELS[:month]),
        income=[ZERO] * month,
        expense=[ZERO] * month,
    )
    for row in summary:
        if not 1 <= row.month <= month:
            continue
        if row.type == TransactionType.income:
            series.income[row.month - 1] = row.total
        else:
            series.expense[row.month - 1] = row.total
    return series


class DashboardService:
    ERROR_MESSAGE = "Failed to load dashboard data"

    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        recent_limit: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.recent_limit = recent_limit
        self.timezone = timezone

    def build(self, today: Optional[date] = None) -> Dashboard:
        if today is None:
            today = today_in(self.timezone or get_settings().timezone)
        try:
            return self._assemble(today.year, today.month)
        except StorageUnavailable:
            logger.exception(
                f"dashboard_degraded: user_id={self.user_id} "
                f"period={today.year:04d}-{today.month:02d}"
            )
            return Dashboard(
                year=today.year, month=today.month, error=self.ERROR_MESSAGE
            )

    def _assemble(self, year: int, month: int) -> Dashboard:
        limit = self.recent_limit
        if limit is None:
            limit = get_settings().recent_transactions
        period = month_bounds(year, month)
        transactions = TransactionService(self.session, self.user_id)
        budgets = BudgetService(self.session, self.user_id)

        recent = transactions.recent(limit)
        summary = transactions.monthly_summary(year)
        expense_breakdown = transactions.category_summary(
            TransactionType.expense, period.start, period.end
        )
        income_breakdown = transactions.category_summary(
            TransactionType.income, period.start, period.end
        )
        comparison = budgets.comparison(month, year)

        return Dashboard(
            year=year,
            month=month,
            recent_transactions=[
                TransactionOut.model_validate(t).model_dump() for t in recent
            ],
            monthly_totals=totals_for_month(summary, month),
            chart_series=chart_series(summary, month),
            expense_breakdown=expense_breakdown,
            income_breakdown=income_breakdown,
            budget_comparison=comparison,
        )
