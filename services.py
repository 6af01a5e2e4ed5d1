from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, joinedload, selectinload

from config import Settings, SpentConvention, get_settings
from models import Account, BudgetItem, BudgetMonth, Category, Goal, Transaction
from months import Month, current_month, local_today
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    CategoryUpdate,
    GoalIn,
    GoalUpdate,
    TransactionIn,
)

logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class OwnershipError(ValueError):
    pass


class InsufficientFundsError(ValueError):
    pass


class InUseError(ValueError):
    pass


class RolloverAlreadyAppliedError(ValueError):
    pass


def _dialect_insert(session: Session):
    name = session.get_bind().dialect.name
    if name == "sqlite":
        return sqlite.insert
    if name == "postgresql":
        return postgresql.insert
    raise RuntimeError(f"Atomic budget upserts are not supported on {name}")


def _owned(session: Session, model, obj_id: int, user_id: int, label: str):
    obj = session.get(model, obj_id)
    if not obj:
        raise NotFoundError(f"{label} not found")
    if obj.user_id != user_id:
        raise OwnershipError("Unauthorized")
    return obj


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.id)
            .execution_options(populate_existing=True)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = _owned(self.session, Account, account_id, self.user_id, "Account")
        self.session.refresh(account)
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id, name=data.name.strip(), balance=data.balance
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        if data.name is not None:
            account.name = data.name.strip()
        if data.balance is not None:
            account.balance = data.balance
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        in_use = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.account_id == account.id
            )
        ).scalar_one()
        if in_use:
            raise InUseError("Cannot delete account with transactions")
        self.session.delete(account)
        self.session.commit()


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.group, Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        return _owned(self.session, Category, category_id, self.user_id, "Category")

    def create(self, data: CategoryIn) -> Category:
        category = Category(
            user_id=self.user_id, name=data.name.strip(), group=data.group.strip()
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        if data.name is not None:
            category.name = data.name.strip()
        if data.group is not None:
            category.group = data.group.strip()
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        transactions_using = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.category_id == category.id
            )
        ).scalar_one()
        items_using = self.session.execute(
            select(func.count(BudgetItem.id)).where(
                BudgetItem.category_id == category.id
            )
        ).scalar_one()
        if transactions_using or items_using:
            raise InUseError(
                "Cannot delete category with transactions or budget items"
            )
        self.session.delete(category)
        self.session.commit()


class BudgetService:
    """Per-month envelope figures: assigned ``amount``, ``spent`` and
    ``available`` for each category.

    Writes go through single ``INSERT .. ON CONFLICT`` statements keyed on
    ``(budget_month_id, category_id)`` so concurrent writers cannot lose an
    increment. Callers own the commit unless a method says otherwise.
    """

    def __init__(
        self, session: Session, user_id: int, settings: Optional[Settings] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()

    def _find_month(self, month: Month) -> Optional[BudgetMonth]:
        stmt = (
            select(BudgetMonth)
            .where(
                BudgetMonth.user_id == self.user_id,
                BudgetMonth.month == str(month),
            )
            .execution_options(populate_existing=True)
        )
        return self.session.scalar(stmt)

    def get_or_create_month(self, month: Month) -> BudgetMonth:
        existing = self._find_month(month)
        if existing:
            return existing
        insert = _dialect_insert(self.session)
        now = datetime.utcnow()
        stmt = insert(BudgetMonth).values(
            user_id=self.user_id,
            month=str(month),
            created_at=now,
            updated_at=now,
        )
        self.session.execute(
            stmt.on_conflict_do_nothing(index_elements=["user_id", "month"])
        )
        return self._find_month(month)

    def _find_item(
        self, budget_month_id: int, category_id: int
    ) -> Optional[BudgetItem]:
        stmt = (
            select(BudgetItem)
            .options(joinedload(BudgetItem.category))
            .where(
                BudgetItem.budget_month_id == budget_month_id,
                BudgetItem.category_id == category_id,
            )
            .execution_options(populate_existing=True)
        )
        return self.session.scalar(stmt)

    def resolve(
        self, month: Month, category_id: int
    ) -> tuple[BudgetMonth, BudgetItem]:
        """Return the month and item for ``category_id``, creating the month.

        A missing item comes back as an unsaved zero item rather than an error.
        """
        budget_month = self.get_or_create_month(month)
        item = self._find_item(budget_month.id, category_id)
        if item is None:
            item = BudgetItem(
                budget_month_id=budget_month.id,
                category_id=category_id,
                amount=0,
                spent=0,
                available=0,
            )
        return budget_month, item

    def _upsert_item(self, budget_month_id: int, category_id: int, *, values, set_):
        insert = _dialect_insert(self.session)
        now = datetime.utcnow()
        stmt = insert(BudgetItem).values(
            budget_month_id=budget_month_id,
            category_id=category_id,
            created_at=now,
            updated_at=now,
            **values,
        )
        set_ = dict(set_(stmt.excluded))
        set_["updated_at"] = now
        self.session.execute(
            stmt.on_conflict_do_update(
                index_elements=["budget_month_id", "category_id"], set_=set_
            )
        )

    def assign(self, month: Month, category_id: int, amount: int) -> BudgetItem:
        CategoryService(self.session, self.user_id).get(category_id)
        budget_month, _ = self.resolve(month, category_id)
        self._upsert_item(
            budget_month.id,
            category_id,
            values={"amount": amount, "spent": 0, "available": amount},
            set_=lambda excluded: {
                "amount": excluded.amount,
                "available": excluded.amount - BudgetItem.spent,
            },
        )
        self.session.commit()
        item = self._find_item(budget_month.id, category_id)
        logger.info(
            f"budget_assign: user_id={self.user_id} month={month} "
            f"category_id={category_id} amount={amount}"
        )
        return item

    def spent_delta(self, transaction_amount: int) -> int:
        if self.settings.spent_convention == SpentConvention.outflow:
            return -transaction_amount
        return transaction_amount

    def apply_transaction(
        self, category_id: Optional[int], txn_date: date, transaction_amount: int
    ) -> None:
        """Record a categorized transaction against its own month.

        Pass the negated amount to undo an earlier call. Does not commit.
        """
        if category_id is None:
            return
        month = Month.from_date(txn_date)
        delta = self.spent_delta(transaction_amount)
        budget_month = self.get_or_create_month(month)
        self._upsert_item(
            budget_month.id,
            category_id,
            values={"amount": 0, "spent": delta, "available": -delta},
            set_=lambda excluded: {
                "spent": BudgetItem.spent + excluded.spent,
                "available": BudgetItem.available - excluded.spent,
            },
        )
        logger.info(
            f"budget_spend: user_id={self.user_id} month={month} "
            f"category_id={category_id} spent_delta={delta}"
        )

    def rollover(self, month: Month) -> Month:
        source = self.session.scalar(
            select(BudgetMonth)
            .options(selectinload(BudgetMonth.items))
            .where(
                BudgetMonth.user_id == self.user_id,
                BudgetMonth.month == str(month),
            )
            .execution_options(populate_existing=True)
        )
        if not source:
            raise NotFoundError("Current month not found")
        if self.settings.rollover_guard and source.rolled_over_at is not None:
            raise RolloverAlreadyAppliedError(f"Month {month} was already rolled over")

        target = month.next()
        destination = self.get_or_create_month(target)
        carried = 0
        carried_items = 0
        for item in source.items:
            if item.available <= 0:
                continue
            self._upsert_item(
                destination.id,
                item.category_id,
                values={"amount": 0, "spent": 0, "available": item.available},
                set_=lambda excluded: {
                    "available": BudgetItem.available + excluded.available,
                },
            )
            carried += item.available
            carried_items += 1
        source.rolled_over_at = datetime.utcnow()
        self.session.commit()
        logger.info(
            f"budget_rollover: user_id={self.user_id} source={month} "
            f"target={target} items={carried_items} carried={carried}"
        )
        return target

    def items_for_month(self, month: Month) -> list[BudgetItem]:
        stmt = (
            select(BudgetItem)
            .join(BudgetMonth, BudgetItem.budget_month_id == BudgetMonth.id)
            .options(joinedload(BudgetItem.category))
            .where(
                BudgetMonth.user_id == self.user_id,
                BudgetMonth.month == str(month),
            )
            .order_by(BudgetItem.id)
            .execution_options(populate_existing=True)
        )
        return self.session.scalars(stmt).all()

    def reset_current_month(self) -> None:
        month = current_month(self.settings.timezone)
        budget_month = self._find_month(month)
        if not budget_month:
            return
        self.session.execute(
            delete(BudgetItem).where(BudgetItem.budget_month_id == budget_month.id)
        )
        self.session.execute(
            delete(BudgetMonth).where(BudgetMonth.id == budget_month.id)
        )
        self.session.commit()
        logger.info(
            f"budget_reset: user_id={self.user_id} month={month}"
        )


class TransactionService:
    def __init__(
        self, session: Session, user_id: int, settings: Optional[Settings] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()
        self.budget = BudgetService(session, user_id, self.settings)

    def _check_refs(self, data: TransactionIn) -> Account:
        account = _owned(
            self.session, Account, data.account_id, self.user_id, "Account"
        )
        if data.category_id is not None:
            _owned(self.session, Category, data.category_id, self.user_id, "Category")
        return account

    def _withdraw(self, account_id: int, amount: int) -> None:
        # one statement: the balance test and the write cannot interleave
        moved = self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.balance + amount >= 0)
            .values(balance=Account.balance + amount)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount == 0:
            self.session.rollback()
            raise InsufficientFundsError("Insufficient funds in the account.")
        self.session.expire(self.session.get(Account, account_id), ["balance"])

    def _apply(self, txn: Transaction, sign: int) -> None:
        delta = sign * txn.amount
        if sign > 0 and delta < 0 and not self.settings.allow_overdraft:
            self._withdraw(txn.account_id, delta)
        else:
            account = self.session.get(Account, txn.account_id)
            account.balance = Account.balance + delta
        self.budget.apply_transaction(txn.category_id, txn.date, delta)

    def get(self, transaction_id: int) -> Transaction:
        return _owned(
            self.session, Transaction, transaction_id, self.user_id, "Transaction"
        )

    def list_all(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.account), joinedload(Transaction.category)
            )
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .execution_options(populate_existing=True)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: TransactionIn) -> Transaction:
        self._check_refs(data)
        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            category_id=data.category_id,
            amount=data.amount,
            description=data.description,
            date=data.date or local_today(self.settings.timezone),
        )
        self.session.add(txn)
        self.session.flush()
        self._apply(txn, 1)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: user_id={self.user_id} id={txn.id} "
            f"amount={txn.amount} category_id={txn.category_id} date={txn.date}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._check_refs(data)

        self._apply(txn, -1)
        self.session.flush()

        txn.account_id = data.account_id
        txn.category_id = data.category_id
        txn.amount = data.amount
        txn.description = data.description
        if data.date is not None:
            txn.date = data.date
        self.session.flush()
        self._apply(txn, 1)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_updated: user_id={self.user_id} id={txn.id} "
            f"amount={txn.amount} category_id={txn.category_id} date={txn.date}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self._apply(txn, -1)
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: user_id={self.user_id} id={transaction_id}")


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Goal]:
        stmt = select(Goal).where(Goal.user_id == self.user_id).order_by(Goal.id)
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> Goal:
        return _owned(self.session, Goal, goal_id, self.user_id, "Goal")

    def create(self, data: GoalIn) -> Goal:
        goal = Goal(
            user_id=self.user_id,
            name=data.name.strip(),
            target_amount=data.target_amount,
            current_amount=0,
            due_date=data.due_date,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        logger.info(f"goal_created: user_id={self.user_id} id={goal.id}")
        return goal

    def update(self, goal_id: int, data: GoalUpdate) -> Goal:
        goal = self.get(goal_id)
        if data.name is not None:
            goal.name = data.name.strip()
        if data.target_amount is not None:
            goal.target_amount = data.target_amount
        if data.current_amount is not None:
            goal.current_amount = data.current_amount
        # an explicit null clears the due date
        if "due_date" in data.model_fields_set:
            goal.due_date = data.due_date
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()
        logger.info(f"goal_deleted: user_id={self.user_id} id={goal_id}")


class ReportService:
    def __init__(
        self, session: Session, user_id: int, settings: Optional[Settings] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()

    def spending(self, start: date, end: date) -> dict[str, object]:
        if start > end:
            raise ValueError("Start date must be before end date")
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.amount < 0,
                Transaction.date.between(start, end),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        transactions = self.session.scalars(stmt).all()
        by_category: dict[str, int] = {}
        for txn in transactions:
            name = txn.category.name if txn.category else "Uncategorized"
            by_category[name] = by_category.get(name, 0) + txn.amount
        return {
            "by_category": by_category,
            "total_spent": sum(txn.amount for txn in transactions),
            "transactions": transactions,
        }

    def net_worth(self) -> dict[str, object]:
        accounts = AccountService(self.session, self.user_id).list_all()
        return {
            "net_worth": sum(a.balance for a in accounts),
            "accounts": accounts,
        }

    def trends(self, months: int = 6) -> dict[str, dict[str, int]]:
        if months < 1:
            raise ValueError("months must be at least 1")
        last = current_month(self.settings.timezone)
        first = last.add(-(months - 1))
        series: dict[str, dict[str, int]] = {
            str(first.add(i)): {"income": 0, "expenses": 0} for i in range(months)
        }
        rows = self.session.execute(
            select(Transaction.date, Transaction.amount).where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(first.start, last.end),
            )
        ).all()
        for txn_date, amount in rows:
            bucket = series[str(Month.from_date(txn_date))]
            if amount > 0:
                bucket["income"] += amount
            else:
                bucket["expenses"] += amount
        return series

    def _outflow_total(self, *conditions) -> int:
        return self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.amount < 0,
                *conditions,
            )
        ).scalar_one()

    def dashboard(self, today: Optional[date] = None) -> dict[str, object]:
        """Balances, this month's spending and a summary of the last week.

        The week is the seven days ending ``today``; the one before it is
        used for ``weekly_change_percent``.
        """
        today = today or local_today(self.settings.timezone)
        month = Month.from_date(today)
        accounts = AccountService(self.session, self.user_id).list_all()
        total_balance = sum(a.balance for a in accounts)
        total_spent = abs(
            self._outflow_total(Transaction.date.between(month.start, month.end))
        )

        recent = self.session.scalars(
            select(Transaction)
            .options(
                joinedload(Transaction.account), joinedload(Transaction.category)
            )
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(7)
        ).all()

        week_ago = today - timedelta(days=7)
        two_weeks_ago = today - timedelta(days=14)
        this_week = self.session.scalars(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date > week_ago,
                Transaction.date <= today,
            )
        ).all()
        expenses = [txn for txn in this_week if txn.amount < 0]
        top_purchase = min(expenses, key=lambda txn: txn.amount) if expenses else None
        by_category: dict[str, int] = {}
        for txn in expenses:
            if txn.category is not None:
                name = txn.category.name
                by_category[name] = by_category.get(name, 0) + abs(txn.amount)
        top_category = max(by_category, key=by_category.get) if by_category else None

        this_week_total = sum(txn.amount for txn in this_week)
        last_week_total = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.date > two_weeks_ago,
                Transaction.date <= week_ago,
            )
        ).scalar_one()
        weekly_change = 0
        if last_week_total > 0:
            weekly_change = round(
                (this_week_total - last_week_total) / last_week_total * 100
            )

        return {
            "accounts": accounts,
            "total_balance": total_balance,
            "total_spent": total_spent,
            "unassigned": total_balance - total_spent,
            "recent_transactions": recent,
            "summary": {
                "top_purchase": (
                    top_purchase.description
                    if top_purchase and top_purchase.description
                    else "Unknown"
                ),
                "top_category": top_category or "Unknown",
                "weekly_change_percent": weekly_change,
            },
        }
