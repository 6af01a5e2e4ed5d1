import datetime as dt
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class SignupIn(CamelModel):
    email: str = Field(
        ..., max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
    )
    password: str = Field(..., min_length=8, max_length=72)


class LoginIn(CamelModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=72)


class RefreshIn(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=64)


class TokenPairOut(CamelModel):
    token: str
    refresh_token: str
    expires_at: datetime


class SignupOut(TokenPairOut):
    message: str
    user_id: int


class AccountIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    balance: StrictInt = 0


class AccountUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    balance: Optional[StrictInt] = None


class AccountOut(CamelModel):
    id: int
    name: str
    balance: int


class CategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    group: str = Field(default="Other", min_length=1, max_length=100)


class CategoryUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    group: Optional[str] = Field(default=None, min_length=1, max_length=100)


class CategoryOut(CamelModel):
    id: int
    name: str
    group: str


class TransactionIn(CamelModel):
    amount: StrictInt
    account_id: StrictInt
    description: str = Field(default="", max_length=200)
    category_id: Optional[StrictInt] = None
    date: Optional[dt.date] = None


class TransactionOut(CamelModel):
    id: int
    amount: int
    account_id: int
    category_id: Optional[int]
    description: Optional[str]
    date: dt.date
    account: Optional[AccountOut] = None
    category: Optional[CategoryOut] = None


class TransactionCreatedOut(CamelModel):
    message: str
    transaction_id: int


class BudgetAssignIn(CamelModel):
    amount: StrictInt


class BudgetItemOut(CamelModel):
    id: Optional[int] = None
    budget_month_id: Optional[int] = None
    category_id: int
    amount: int
    spent: int
    available: int
    category: Optional[CategoryOut] = None


class MessageOut(CamelModel):
    message: str


class PasswordChangeIn(CamelModel):
    old_password: str = Field(..., max_length=72)
    new_password: str = Field(..., min_length=8, max_length=72)


class GoalIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    target_amount: StrictInt
    due_date: Optional[dt.date] = None


class GoalUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    target_amount: Optional[StrictInt] = None
    current_amount: Optional[StrictInt] = None
    due_date: Optional[dt.date] = None


class GoalOut(CamelModel):
    id: int
    name: str
    target_amount: int
    current_amount: int
    due_date: Optional[dt.date]
