import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from models import BudgetItem, BudgetMonth, Category, RefreshToken, User
from months import current_month
from services import NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = (
    ("Groceries", "Essentials"),
    ("Transport", "Essentials"),
    ("Dining Out", "Fun"),
)


class AuthError(ValueError):
    pass


class InvalidTokenError(AuthError):
    pass


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def _serializer(settings: Optional[Settings] = None) -> URLSafeTimedSerializer:
    settings = settings or get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="access-token")


def issue_access_token(user_id: int, settings: Optional[Settings] = None) -> str:
    return _serializer(settings).dumps({"u": user_id})


def read_access_token(token: str, settings: Optional[Settings] = None) -> int:
    """Return the user id carried by ``token``.

    Raises ``InvalidTokenError`` for tampered, malformed or expired tokens.
    """
    settings = settings or get_settings()
    try:
        data = _serializer(settings).loads(
            token, max_age=settings.access_token_ttl_secs
        )
    except BadSignature as exc:
        raise InvalidTokenError("invalid token") from exc
    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise InvalidTokenError("invalid token")
    return user_id


@dataclass(frozen=True)
class IssuedTokens:
    user_id: int
    token: str
    refresh_token: str
    expires_at: datetime


class AuthService:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def _issue(self, user_id: int) -> IssuedTokens:
        expires_at = datetime.utcnow() + timedelta(
            days=self.settings.refresh_token_ttl_days
        )
        refresh = RefreshToken(
            user_id=user_id, token=str(uuid.uuid4()), expires_at=expires_at
        )
        self.session.add(refresh)
        return IssuedTokens(
            user_id=user_id,
            token=issue_access_token(user_id, self.settings),
            refresh_token=refresh.token,
            expires_at=expires_at,
        )

    def signup(self, email: str, password: str) -> IssuedTokens:
        clean_email = email.strip().lower()
        existing = self.session.scalar(select(User).where(User.email == clean_email))
        if existing:
            raise AuthError("User already exists")

        user = User(email=clean_email, password_hash=hash_password(password))
        self.session.add(user)
        self.session.flush()

        categories = [
            Category(user_id=user.id, name=name, group=group)
            for name, group in DEFAULT_CATEGORIES
        ]
        self.session.add_all(categories)
        budget_month = BudgetMonth(
            user_id=user.id, month=str(current_month(self.settings.timezone))
        )
        self.session.add(budget_month)
        self.session.flush()
        self.session.add_all(
            BudgetItem(
                budget_month_id=budget_month.id,
                category_id=category.id,
                amount=0,
                spent=0,
                available=0,
            )
            for category in categories
        )

        issued = self._issue(user.id)
        self.session.commit()
        logger.info(f"auth_signup: user_id={user.id}")
        return issued

    def login(self, email: str, password: str) -> IssuedTokens:
        user = self.session.scalar(
            select(User).where(User.email == email.strip().lower())
        )
        if not user or not verify_password(password, user.password_hash):
            raise AuthError("Invalid email or password")
        issued = self._issue(user.id)
        self.session.commit()
        logger.info(f"auth_login: user_id={user.id}")
        return issued

    def refresh(self, refresh_token: str) -> IssuedTokens:
        stored = self.session.scalar(
            select(RefreshToken).where(RefreshToken.token == refresh_token)
        )
        if not stored or stored.expires_at < datetime.utcnow():
            raise InvalidTokenError("Invalid or expired refresh token")
        user_id = stored.user_id
        self.session.delete(stored)
        issued = self._issue(user_id)
        self.session.commit()
        logger.info(f"auth_refresh: user_id={user_id}")
        return issued

    def logout(self, refresh_token: str) -> None:
        stored = self.session.scalar(
            select(RefreshToken).where(RefreshToken.token == refresh_token)
        )
        if not stored:
            raise NotFoundError("Refresh token not found")
        user_id = stored.user_id
        self.session.delete(stored)
        self.session.commit()
        logger.info(f"auth_logout: user_id={user_id}")

    def change_password(
        self, user_id: int, old_password: str, new_password: str
    ) -> None:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        if not verify_password(old_password, user.password_hash):
            raise AuthError("Invalid old password")
        user.password_hash = hash_password(new_password)
        self.session.commit()
        logger.info(f"auth_password_changed: user_id={user_id}")
