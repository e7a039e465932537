from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import text

from helpers import make_session, make_user
from models import TransactionType
from schemas import BudgetIn, BudgetUpdate, CategoryIn, TransactionIn
from services import (
    BudgetService,
    CategoryService,
    ConstraintViolation,
    StorageUnavailable,
    TransactionService,
)


def _expense(session, user_id, amount, on, category_id):
    return TransactionService(session, user_id).create(
        TransactionIn(
            amount=Decimal(amount),
            description="expense",
            date=on,
            type=TransactionType.expense,
            category_id=category_id,
        )
    )


def test_comparison_reports_budget_actual_and_difference() -> None:
    session = make_session()
    user = make_user(session)
    food = CategoryService(session, user.id).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    _expense(session, user.id, "50.00", date(2024, 3, 15), food.id)
    BudgetService(session, user.id).create(
        BudgetIn(amount=Decimal("200.00"), month=3, year=2024, category_id=food.id)
    )

    rows = BudgetService(session, user.id).comparison(3, 2024)
    assert len(rows) == 1
    row = rows[0]
    assert row.category_id == food.id
    assert row.category_name == "Food"
    assert row.budget_amount == Decimal("200.00")
    assert row.actual_amount == Decimal("50.00")
    assert row.difference == Decimal("150.00")


def test_comparison_keeps_categories_without_budget_or_spending() -> None:
    session = make_session()
    user = make_user(session)
    categories = CategoryService(session, user.id)
    rent = categories.create(CategoryIn(name="Rent", type=TransactionType.expense))
    food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    travel = categories.create(CategoryIn(name="Travel", type=TransactionType.expense))
    categories.create(CategoryIn(name="Salary", type=TransactionType.income))

    _expense(session, user.id, "30.00", date(2024, 3, 1), food.id)
    _expense(session, user.id, "12.00", date(2024, 3, 31), food.id)
    # outside the month
    _expense(session, user.id, "500.00", date(2024, 2, 29), food.id)
    _expense(session, user.id, "500.00", date(2023, 3, 10), food.id)
    BudgetService(session, user.id).create(
        BudgetIn(amount=Decimal("80.00"), month=3, year=2024, category_id=travel.id)
    )

    rows = BudgetService(session, user.id).comparison(3, 2024)
    by_name = {row.category_name: row for row in rows}
    assert [row.category_name for row in rows] == ["Food", "Rent", "Travel"]

    assert by_name["Rent"].category_id == rent.id
    assert by_name["Rent"].budget_amount == Decimal("0")
    assert by_name["Rent"].actual_amount == Decimal("0")
    assert by_name["Rent"].difference == Decimal("0")

    assert by_name["Food"].budget_amount == Decimal("0")
    assert by_name["Food"].actual_amount == Decimal("42.00")
    assert by_name["Food"].difference == Decimal("-42.00")

    assert by_name["Travel"].budget_amount == Decimal("80.00")
    assert by_name["Travel"].actual_amount == Decimal("0")
    assert by_name["Travel"].difference == Decimal("80.00")

    for row in rows:
        assert row.difference == row.budget_amount - row.actual_amount


def test_comparison_ignores_income_and_other_users() -> None:
    session = make_session()
    ada = make_user(session, "ada@example.com")
    bob = make_user(session, "bob@example.com")
    food = CategoryService(session, ada.id).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    TransactionService(session, ada.id).create(
        TransactionIn(
            amount=Decimal("25.00"),
            description="refund",
            date=date(2024, 3, 3),
            type=TransactionType.income,
            category_id=food.id,
        )
    )
    CategoryService(session, bob.id).create(
        CategoryIn(name="Bob's Food", type=TransactionType.expense)
    )

    rows = BudgetService(session, ada.id).comparison(3, 2024)
    assert [(r.category_name, r.actual_amount) for r in rows] == [
        ("Food", Decimal("0"))
    ]
    assert BudgetService(session, make_user(session, "cy@example.com").id).comparison(
        3, 2024
    ) == []


def test_duplicate_budget_for_same_period_is_rejected() -> None:
    session = make_session()
    user = make_user(session)
    food = CategoryService(session, user.id).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    budgets = BudgetService(session, user.id)
    first = budgets.create(
        BudgetIn(amount=Decimal("200.00"), month=3, year=2024, category_id=food.id)
    )

    with pytest.raises(ConstraintViolation):
        budgets.create(
            BudgetIn(amount=Decimal("999.00"), month=3, year=2024, category_id=food.id)
        )

    stored = budgets.list(month=3, year=2024)
    assert [(b.id, b.amount) for b in stored] == [(first.id, Decimal("200.00"))]

    # a different month is a different key
    budgets.create(
        BudgetIn(amount=Decimal("150.00"), month=4, year=2024, category_id=food.id)
    )
    assert len(budgets.list(year=2024)) == 2


def test_list_is_ordered_by_category_name_and_scoped() -> None:
    session = make_session()
    ada = make_user(session, "ada@example.com")
    bob = make_user(session, "bob@example.com")
    categories = CategoryService(session, ada.id)
    utilities = categories.create(
        CategoryIn(name="Utilities", type=TransactionType.expense)
    )
    food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    budgets = BudgetService(session, ada.id)
    budgets.create(
        BudgetIn(amount=Decimal("60.00"), month=5, year=2024, category_id=utilities.id)
    )
    food_budget = budgets.create(
        BudgetIn(amount=Decimal("300.00"), month=5, year=2024, category_id=food.id)
    )

    listed = budgets.list(month=5, year=2024)
    assert [b.category_name for b in listed] == ["Food", "Utilities"]
    assert listed[0].category_type == TransactionType.expense

    bob_budgets = BudgetService(session, bob.id)
    assert bob_budgets.list() == []
    assert bob_budgets.get(food_budget.id) is None
    assert bob_budgets.delete(food_budget.id) is False
    assert bob_budgets.update(food_budget.id, BudgetUpdate(amount=Decimal("1.00"))) is None

    with pytest.raises(ConstraintViolation):
        bob_budgets.create(
            BudgetIn(amount=Decimal("10.00"), month=5, year=2024, category_id=food.id)
        )


def test_update_changes_amount_only_and_delete_is_idempotent() -> None:
    session = make_session()
    user = make_user(session)
    food = CategoryService(session, user.id).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    budgets = BudgetService(session, user.id)
    budget = budgets.create(
        BudgetIn(amount=Decimal("200.00"), month=3, year=2024, category_id=food.id)
    )

    updated = budgets.update(budget.id, BudgetUpdate(amount=Decimal("250.50")))
    assert updated.amount == Decimal("250.50")
    assert (updated.month, updated.year, updated.category_id) == (3, 2024, food.id)

    assert budgets.delete(budget.id) is True
    assert budgets.delete(budget.id) is False
    assert budgets.get(budget.id) is None


def test_storage_failure_is_surfaced_as_storage_unavailable() -> None:
    session = make_session()
    user = make_user(session)
    CategoryService(session, user.id).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    session.execute(text("DROP TABLE budgets"))
    session.commit()

    with pytest.raises(StorageUnavailable):
        BudgetService(session, user.id).comparison(3, 2024)


def test_unique_constraint_rejects_duplicate_that_slips_past_check(monkeypatch) -> None:
    session = make_session()
    user = make_user(session)
    food = CategoryService(session, user.id).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    budgets = BudgetService(session, user.id)
    first = budgets.create(
        BudgetIn(amount=Decimal("200.00"), month=3, year=2024, category_id=food.id)
    )

    # another writer committed the same period between the check and our insert
    monkeypatch.setattr(BudgetService, "_existing_id", lambda self, data: None)
    with pytest.raises(ConstraintViolation):
        budgets.create(
            BudgetIn(amount=Decimal("999.00"), month=3, year=2024, category_id=food.id)
        )

    stored = budgets.list(month=3, year=2024)
    assert [(b.id, b.amount) for b in stored] == [(first.id, Decimal("200.00"))]
