import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from context import BudgetLocks
from database import Base
from errors import BudgetExceeded, InvalidCategory, NotFound
from models import Expense
from notifications import EXPENSE_UPDATED, BroadcastNotifier
from schemas import CategoryIn, ExpenseIn, ExpenseUpdate
from services import CategoryService, ExpenseService


def _expense_count(session: Session) -> int:
    return session.execute(select(func.count(Expense.id))).scalar_one()


def test_create_rejects_expense_over_budget_and_leaves_ledger_unchanged() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session, user_id=1).create(
            CategoryIn(name="Food", budget_cents=10_000)
        )
        expenses = ExpenseService(session, user_id=1)
        expenses.create(ExpenseIn(category_id=food.id, amount_cents=7_000))

        with pytest.raises(BudgetExceeded):
            expenses.create(ExpenseIn(category_id=food.id, amount_cents=3_001))

        assert _expense_count(session) == 1
        assert CategoryService(session, user_id=1).spent_cents(food.id) == 7_000

        # filling the budget exactly is allowed
        expenses.create(ExpenseIn(category_id=food.id, amount_cents=3_000))
        assert CategoryService(session, user_id=1).spent_cents(food.id) == 10_000


def test_create_requires_owned_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session, user_id=1).create(
            CategoryIn(name="Food", budget_cents=10_000)
        )

        with pytest.raises(InvalidCategory):
            ExpenseService(session, user_id=2).create(
                ExpenseIn(category_id=food.id, amount_cents=100)
            )
        with pytest.raises(InvalidCategory):
            ExpenseService(session, user_id=1).create(
                ExpenseIn(category_id=404, amount_cents=100)
            )
        assert _expense_count(session) == 0


def test_create_defaults_date_and_normalizes_aware_timestamps() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session, user_id=1).create(
            CategoryIn(name="Food", budget_cents=10_000)
        )
        expenses = ExpenseService(session, user_id=1)

        before = datetime.utcnow()
        defaulted = expenses.create(ExpenseIn(category_id=food.id, amount_cents=100))
        assert before - timedelta(seconds=1) <= defaulted.occurred_at

        berlin = timezone(timedelta(hours=1))
        aware = expenses.create(
            ExpenseIn(
                category_id=food.id,
                amount_cents=100,
                occurred_at=datetime(2025, 3, 1, 13, 0, tzinfo=berlin),
            )
        )
        assert aware.occurred_at == datetime(2025, 3, 1, 12, 0)


def test_round_trip_create_update_delete() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session, user_id=1)
        food = categories.create(CategoryIn(name="Food", budget_cents=10_000))
        expenses = ExpenseService(session, user_id=1)

        created = expenses.create(
            ExpenseIn(
                category_id=food.id,
                amount_cents=2_500,
                description="Groceries",
                occurred_at=datetime(2025, 1, 5, 12, 0),
            )
        )
        fetched = expenses.get(created.id)
        assert fetched.amount_cents == 2_500
        assert fetched.category_id == food.id
        assert fetched.category.name == "Food"
        assert fetched.category.budget_cents == 10_000
        assert fetched.occurred_at == datetime(2025, 1, 5, 12, 0)

        expenses.update(created.id, ExpenseUpdate(amount_cents=4_000))
        assert expenses.get(created.id).amount_cents == 4_000
        assert categories.spent_cents(food.id) == 4_000

        result = expenses.delete(created.id)
        assert result["id"] == created.id
        with pytest.raises(NotFound):
            expenses.get(created.id)
        assert categories.spent_cents(food.id) == 0


def test_update_excludes_own_prior_amount_from_budget_check() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session, user_id=1).create(
            CategoryIn(name="Food", budget_cents=10_000)
        )
        expenses = ExpenseService(session, user_id=1)
        lunch = expenses.create(ExpenseIn(category_id=food.id, amount_cents=6_000))
        expenses.create(ExpenseIn(category_id=food.id, amount_cents=1_000))

        updated = expenses.update(lunch.id, ExpenseUpdate(amount_cents=9_000))
        assert updated.amount_cents == 9_000

        with pytest.raises(BudgetExceeded):
            expenses.update(lunch.id, ExpenseUpdate(amount_cents=9_001))
        assert expenses.get(lunch.id).amount_cents == 9_000


def test_partial_update_only_touches_given_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session, user_id=1).create(
            CategoryIn(name="Food", budget_cents=10_000)
        )
        expenses = ExpenseService(session, user_id=1)
        expense = expenses.create(
            ExpenseIn(
                category_id=food.id,
                amount_cents=1_500,
                description="Lunch",
                occurred_at=datetime(2025, 1, 5, 12, 0),
            )
        )

        updated = expenses.update(expense.id, ExpenseUpdate(description="Team lunch"))
        assert updated.description == "Team lunch"
        assert updated.amount_cents == 1_500
        assert updated.occurred_at == datetime(2025, 1, 5, 12, 0)

        moved = expenses.update(
            expense.id, ExpenseUpdate(occurred_at=datetime(2025, 2, 1, 9, 0))
        )
        assert moved.occurred_at == datetime(2025, 2, 1, 9, 0)
        assert moved.description == "Team lunch"


def test_expenses_are_scoped_to_owner() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session, user_id=1).create(
            CategoryIn(name="Food", budget_cents=10_000)
        )
        expense = ExpenseService(session, user_id=1).create(
            ExpenseIn(category_id=food.id, amount_cents=500)
        )
        intruder = ExpenseService(session, user_id=2)

        with pytest.raises(NotFound):
            intruder.get(expense.id)
        with pytest.raises(NotFound):
            intruder.update(expense.id, ExpenseUpdate(amount_cents=1))
        with pytest.raises(NotFound):
            intruder.delete(expense.id)
        assert intruder.list_all() == []


def test_list_all_orders_most_recent_first() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session, user_id=1).create(
            CategoryIn(name="Food", budget_cents=10_000)
        )
        expenses = ExpenseService(session, user_id=1)
        for day in (3, 20, 11):
            expenses.create(
                ExpenseIn(
                    category_id=food.id,
                    amount_cents=100,
                    occurred_at=datetime(2025, 1, day, 12, 0),
                )
            )

        days = [e.occurred_at.day for e in expenses.list_all()]
        assert days == [20, 11, 3]


def test_update_and_delete_publish_change_notifications() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    notifier = BroadcastNotifier()
    received: list[tuple[str, int]] = []
    notifier.subscribe(lambda event, user_id: received.append((event, user_id)))

    with Session(engine) as session:
        food = CategoryService(session, user_id=7).create(
            CategoryIn(name="Food", budget_cents=10_000)
        )
        expenses = ExpenseService(session, user_id=7, notifier=notifier)
        expense = expenses.create(ExpenseIn(category_id=food.id, amount_cents=500))
        expenses.update(expense.id, ExpenseUpdate(amount_cents=700))
        expenses.delete(expense.id)

    assert received == [(EXPENSE_UPDATED, 7), (EXPENSE_UPDATED, 7)]


def test_failing_listener_does_not_fail_the_write() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    notifier = BroadcastNotifier()

    def broken(event: str, user_id: int) -> None:
        raise RuntimeError("socket closed")

    received: list[str] = []
    notifier.subscribe(broken)
    notifier.subscribe(lambda event, user_id: received.append(event))

    with Session(engine) as session:
        food = CategoryService(session, user_id=1).create(
            CategoryIn(name="Food", budget_cents=10_000)
        )
        expenses = ExpenseService(session, user_id=1, notifier=notifier)
        expense = expenses.create(ExpenseIn(category_id=food.id, amount_cents=500))

        result = expenses.delete(expense.id)
        assert result["message"] == "Expense deleted successfully"
        assert _expense_count(session) == 0

    assert received == [EXPENSE_UPDATED]


def test_concurrent_creates_cannot_jointly_overshoot_budget(tmp_path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    locks = BudgetLocks()

    with Session(engine) as session:
        food = CategoryService(session, user_id=1).create(
            CategoryIn(name="Food", budget_cents=10_000)
        )
        category_id = food.id

    outcomes: list[str] = []
    outcomes_lock = threading.Lock()
    start = threading.Barrier(5)

    def worker() -> None:
        start.wait()
        with Session(engine) as session:
            try:
                ExpenseService(session, user_id=1, locks=locks).create(
                    ExpenseIn(category_id=category_id, amount_cents=6_000)
                )
                outcome = "created"
            except BudgetExceeded:
                outcome = "rejected"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["created"] + ["rejected"] * 4
    with Session(engine) as session:
        assert CategoryService(session, user_id=1).spent_cents(category_id) == 6_000
    engine.dispose()


def test_budget_locks_are_shared_while_held_and_dropped_when_idle() -> None:
    locks = BudgetLocks()

    with locks.hold(1, 10):
        assert locks.active_count() == 1
        waiter_got_lock = threading.Event()

        def waiter() -> None:
            with locks.hold(1, 10):
                waiter_got_lock.set()

        thread = threading.Thread(target=waiter)
        thread.start()
        # same key, same lock: the waiter blocks until this block exits
        assert not waiter_got_lock.wait(timeout=0.2)

    thread.join(timeout=5)
    assert waiter_got_lock.is_set()
    assert locks.active_count() == 0

    for category_id in range(100):
        with locks.hold(1, category_id):
            pass
    assert locks.active_count() == 0
