from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from auth import (
    AuthError,
    AuthService,
    InvalidTokenError,
    hash_password,
    issue_access_token,
    read_access_token,
    verify_password,
)
from models import BudgetItem, BudgetMonth, Category, RefreshToken, User
from months import current_month
from services import NotFoundError


def test_password_hash_verifies_only_the_same_password() -> None:
    hashed = hash_password("correct horse")

    assert hashed != "correct horse"
    assert verify_password("correct horse", hashed)
    assert not verify_password("wrong horse", hashed)


def test_access_token_round_trip() -> None:
    token = issue_access_token(42)
    assert read_access_token(token) == 42


def test_tampered_access_token_is_rejected() -> None:
    token = issue_access_token(42)
    with pytest.raises(InvalidTokenError):
        read_access_token(token.rsplit(".", 1)[0] + ".forgedsignature")
    with pytest.raises(InvalidTokenError):
        read_access_token("not-a-token")


def test_access_token_from_other_secret_is_rejected(make_settings) -> None:
    token = issue_access_token(42, make_settings(token_secret="another-secret"))
    with pytest.raises(InvalidTokenError):
        read_access_token(token)


def test_expired_access_token_is_rejected(make_settings) -> None:
    settings = make_settings(access_token_ttl_secs=-1)
    token = issue_access_token(42, settings)
    with pytest.raises(InvalidTokenError):
        read_access_token(token, settings)


def test_signup_seeds_categories_and_current_month(session) -> None:
    issued = AuthService(session).signup("New@Example.com ", "s3cret-pass")

    user = session.get(User, issued.user_id)
    assert user.email == "new@example.com"
    assert read_access_token(issued.token) == user.id

    categories = session.scalars(
        select(Category).where(Category.user_id == user.id).order_by(Category.id)
    ).all()
    assert [(c.name, c.group) for c in categories] == [
        ("Groceries", "Essentials"),
        ("Transport", "Essentials"),
        ("Dining Out", "Fun"),
    ]

    budget_month = session.scalar(
        select(BudgetMonth).where(BudgetMonth.user_id == user.id)
    )
    assert budget_month.month == str(current_month())
    items = session.scalars(
        select(BudgetItem).where(BudgetItem.budget_month_id == budget_month.id)
    ).all()
    assert sorted(i.category_id for i in items) == sorted(c.id for c in categories)
    assert all((i.amount, i.spent, i.available) == (0, 0, 0) for i in items)


def test_duplicate_signup_is_rejected(session) -> None:
    AuthService(session).signup("dup@example.com", "s3cret-pass")
    with pytest.raises(AuthError):
        AuthService(session).signup("DUP@example.com", "other-pass")


def test_login_checks_password(session) -> None:
    auth = AuthService(session)
    signed_up = auth.signup("me@example.com", "s3cret-pass")

    issued = auth.login("me@example.com", "s3cret-pass")
    assert issued.user_id == signed_up.user_id
    assert issued.refresh_token != signed_up.refresh_token

    with pytest.raises(AuthError):
        auth.login("me@example.com", "wrong-pass")
    with pytest.raises(AuthError):
        auth.login("nobody@example.com", "s3cret-pass")


def test_refresh_rotates_the_refresh_token(session) -> None:
    auth = AuthService(session)
    first = auth.signup("me@example.com", "s3cret-pass")

    second = auth.refresh(first.refresh_token)

    assert second.user_id == first.user_id
    assert second.refresh_token != first.refresh_token
    assert read_access_token(second.token) == first.user_id
    with pytest.raises(InvalidTokenError):
        auth.refresh(first.refresh_token)


def test_expired_refresh_token_is_rejected(session) -> None:
    auth = AuthService(session)
    issued = auth.signup("me@example.com", "s3cret-pass")
    stored = session.scalar(
        select(RefreshToken).where(RefreshToken.token == issued.refresh_token)
    )
    stored.expires_at = datetime.utcnow() - timedelta(minutes=1)
    session.commit()

    with pytest.raises(InvalidTokenError):
        auth.refresh(issued.refresh_token)


def test_logout_revokes_refresh_token(session) -> None:
    auth = AuthService(session)
    issued = auth.signup("me@example.com", "s3cret-pass")

    auth.logout(issued.refresh_token)

    with pytest.raises(InvalidTokenError):
        auth.refresh(issued.refresh_token)
    with pytest.raises(NotFoundError):
        auth.logout(issued.refresh_token)


def test_change_password_requires_the_current_one(session) -> None:
    auth = AuthService(session)
    issued = auth.signup("me@example.com", "s3cret-pass")

    with pytest.raises(AuthError):
        auth.change_password(issued.user_id, "wrong-pass", "new-s3cret-pass")
    auth.change_password(issued.user_id, "s3cret-pass", "new-s3cret-pass")

    assert auth.login("me@example.com", "new-s3cret-pass").user_id == issued.user_id
    with pytest.raises(AuthError):
        auth.login("me@example.com", "s3cret-pass")
    with pytest.raises(NotFoundError):
        auth.change_password(9999, "s3cret-pass", "new-s3cret-pass")
