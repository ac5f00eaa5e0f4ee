import os

# Settings are read once at import time; point them at throwaway backends.
os.environ.setdefault("LEDGER_DATABASE_URL", "sqlite://")
os.environ.setdefault("LEDGER_CACHE_URL", "memory://")
os.environ.setdefault("LEDGER_RATE_LIMIT_ENABLED", "0")
os.environ.setdefault("LEDGER_ENV", "test")

from datetime import date, datetime  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import models  # noqa: E402,F401
from auth import hash_password  # noqa: E402
from database import Base, enable_sqlite_pragmas  # noqa: E402
from models import Category, Role, Transaction, TransactionType, User  # noqa: E402


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(eng, "connect", enable_sqlite_pragmas)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def make_user(session: Session, username: str, role: Role = Role.user) -> User:
    user = User(
        email=f"{username}@example.com",
        username=username,
        password_hash=hash_password("Secret123", iterations=1_000),
        role=role,
    )
    session.add(user)
    session.commit()
    return user


def make_category(session: Session, name: str, color: str = "#3B82F6") -> Category:
    category = Category(name=name, color=color)
    session.add(category)
    session.commit()
    return category


def make_transaction(
    session: Session,
    user: User,
    category: Category,
    amount_cents: int,
    txn_type: TransactionType,
    on: date,
    created_at: datetime = None,
    description: str = None,
) -> Transaction:
    txn = Transaction(
        user_id=user.id,
        category_id=category.id,
        amount_cents=amount_cents,
        type=txn_type,
        date=on,
        description=description,
    )
    if created_at is not None:
        txn.created_at = created_at
    session.add(txn)
    session.commit()
    return txn
