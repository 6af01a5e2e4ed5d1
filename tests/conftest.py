import os

# Tests assume the default budget policies and never touch the on-disk database
os.environ.setdefault("ENVELOPES_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ENVELOPES_SPENT_CONVENTION", "signed")
os.environ.setdefault("ENVELOPES_ROLLOVER_GUARD", "false")
os.environ.setdefault("ENVELOPES_ALLOW_OVERDRAFT", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import models  # noqa: F401,E402
from config import Settings, get_settings  # noqa: E402
from database import Base  # noqa: E402
from main import app, get_db  # noqa: E402
from models import User  # noqa: E402


def _enable_foreign_keys(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(eng, "connect", _enable_foreign_keys)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with TestingSession() as session:
        yield session


def _make_user(session: Session, email: str) -> int:
    user = User(email=email, password_hash="not-a-real-hash")
    session.add(user)
    session.commit()
    return user.id


@pytest.fixture
def user_id(session) -> int:
    return _make_user(session, "owner@example.com")


@pytest.fixture
def other_user_id(session) -> int:
    return _make_user(session, "intruder@example.com")


@pytest.fixture
def make_settings():
    def factory(**overrides) -> Settings:
        values = dict(vars(get_settings()))
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def client(engine):
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
