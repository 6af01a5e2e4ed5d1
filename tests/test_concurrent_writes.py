from datetime import date

import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Transaction, User
from months import Month
from schemas import AccountIn, CategoryIn, TransactionIn
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    InsufficientFundsError,
    TransactionService,
)

JAN = Month(2024, 1)


def _enable_foreign_keys(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


@pytest.fixture
def sessions(tmp_path):
    # a file database so every session gets its own connection
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'budget.db'}")
    event.listen(engine, "connect", _enable_foreign_keys)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


def _seed(Sessions, balance: int):
    with Sessions() as session:
        user = User(email="owner@example.com", password_hash="not-a-real-hash")
        session.add(user)
        session.commit()
        account = AccountService(session, user.id).create(
            AccountIn(name="Checking", balance=balance)
        )
        groceries = CategoryService(session, user.id).create(
            CategoryIn(name="Groceries")
        )
        BudgetService(session, user.id).assign(JAN, groceries.id, 500)
        return user.id, account.id, groceries.id


def test_interleaved_postings_keep_both_increments(sessions) -> None:
    user_id, account_id, category_id = _seed(sessions, balance=1_000)

    with sessions() as first, sessions() as second:
        _, seen_by_first = BudgetService(first, user_id).resolve(JAN, category_id)
        _, seen_by_second = BudgetService(second, user_id).resolve(JAN, category_id)
        assert seen_by_first.spent == seen_by_second.spent == 0

        for session in (first, second):
            TransactionService(session, user_id).create(
                TransactionIn(
                    amount=-100,
                    account_id=account_id,
                    category_id=category_id,
                    date=date(2024, 1, 10),
                )
            )

    with sessions() as check:
        items = BudgetService(check, user_id).items_for_month(JAN)
        assert [(i.amount, i.spent, i.available) for i in items] == [
            (500, -200, 700)
        ]
        assert AccountService(check, user_id).get(account_id).balance == 800


def test_second_outflow_cannot_overdraw_after_first_lands(sessions) -> None:
    user_id, account_id, category_id = _seed(sessions, balance=1_000)

    with sessions() as first, sessions() as second:
        # both sessions have seen the full balance before either writes
        assert AccountService(first, user_id).get(account_id).balance == 1_000
        assert AccountService(second, user_id).get(account_id).balance == 1_000

        spend = TransactionIn(
            amount=-800,
            account_id=account_id,
            category_id=category_id,
            date=date(2024, 1, 10),
        )
        TransactionService(first, user_id).create(spend)
        with pytest.raises(InsufficientFundsError):
            TransactionService(second, user_id).create(spend)

    with sessions() as check:
        assert AccountService(check, user_id).get(account_id).balance == 200
        assert check.execute(select(func.count(Transaction.id))).scalar_one() == 1
        items = BudgetService(check, user_id).items_for_month(JAN)
        assert [i.spent for i in items] == [-800]
