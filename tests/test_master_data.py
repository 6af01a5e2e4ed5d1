from datetime import date

import pytest

from months import Month
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    CategoryUpdate,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    InUseError,
    NotFoundError,
    OwnershipError,
    TransactionService,
)


def test_account_crud(session, user_id) -> None:
    accounts = AccountService(session, user_id)
    checking = accounts.create(AccountIn(name="  Checking ", balance=12_000))
    accounts.create(AccountIn(name="Wallet"))

    assert checking.name == "Checking"
    assert [(a.name, a.balance) for a in accounts.list_all()] == [
        ("Checking", 12_000),
        ("Wallet", 0),
    ]

    updated = accounts.update(checking.id, AccountUpdate(name="Main"))
    assert (updated.name, updated.balance) == ("Main", 12_000)

    accounts.delete(checking.id)
    assert [a.name for a in accounts.list_all()] == ["Wallet"]
    with pytest.raises(NotFoundError):
        accounts.get(checking.id)


def test_account_with_transactions_cannot_be_deleted(session, user_id) -> None:
    account = AccountService(session, user_id).create(
        AccountIn(name="Checking", balance=500)
    )
    TransactionService(session, user_id).create(
        TransactionIn(amount=-100, account_id=account.id, date=date(2024, 1, 2))
    )

    with pytest.raises(InUseError):
        AccountService(session, user_id).delete(account.id)


def test_accounts_are_private(session, user_id, other_user_id) -> None:
    theirs = AccountService(session, other_user_id).create(AccountIn(name="Theirs"))
    accounts = AccountService(session, user_id)

    assert accounts.list_all() == []
    with pytest.raises(OwnershipError):
        accounts.update(theirs.id, AccountUpdate(balance=1))
    with pytest.raises(OwnershipError):
        accounts.delete(theirs.id)


def test_category_crud_orders_by_group_then_name(session, user_id) -> None:
    categories = CategoryService(session, user_id)
    categories.create(CategoryIn(name="Transport", group="Essentials"))
    fun = categories.create(CategoryIn(name="Dining Out", group="Fun"))
    categories.create(CategoryIn(name="Groceries", group="Essentials"))
    gifts = categories.create(CategoryIn(name="Gifts"))

    assert gifts.group == "Other"
    assert [(c.group, c.name) for c in categories.list_all()] == [
        ("Essentials", "Groceries"),
        ("Essentials", "Transport"),
        ("Fun", "Dining Out"),
        ("Other", "Gifts"),
    ]

    renamed = categories.update(fun.id, CategoryUpdate(name="Restaurants"))
    assert (renamed.name, renamed.group) == ("Restaurants", "Fun")

    categories.delete(gifts.id)
    assert "Gifts" not in [c.name for c in categories.list_all()]


def test_category_with_budget_item_cannot_be_deleted(session, user_id) -> None:
    category = CategoryService(session, user_id).create(CategoryIn(name="Groceries"))
    BudgetService(session, user_id).assign(Month(2024, 1), category.id, 1_000)

    with pytest.raises(InUseError):
        CategoryService(session, user_id).delete(category.id)


def test_category_with_transactions_cannot_be_deleted(session, user_id) -> None:
    account = AccountService(session, user_id).create(
        AccountIn(name="Checking", balance=500)
    )
    category = CategoryService(session, user_id).create(CategoryIn(name="Groceries"))
    TransactionService(session, user_id).create(
        TransactionIn(
            amount=-100,
            account_id=account.id,
            category_id=category.id,
            date=date(2024, 1, 2),
        )
    )

    with pytest.raises(InUseError):
        CategoryService(session, user_id).delete(category.id)


def test_categories_are_private(session, user_id, other_user_id) -> None:
    theirs = CategoryService(session, other_user_id).create(CategoryIn(name="Rent"))
    categories = CategoryService(session, user_id)

    assert categories.list_all() == []
    with pytest.raises(OwnershipError):
        categories.update(theirs.id, CategoryUpdate(group="Mine"))
    with pytest.raises(NotFoundError):
        categories.delete(9_999)
