from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from campus_eats import ledger
from campus_eats.db import Base
from campus_eats.models import Cafeteria, UserAccount, UserAlias

PIN = "123456"


@pytest.fixture()
def db():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def make_user(db, email: str, aliases: tuple[str, ...] = ()) -> UserAccount:
    user = UserAccount(email=email.lower(), name=email.split("@")[0], created_at=datetime.now(timezone.utc))
    db.add(user)
    db.flush()
    for alias in aliases:
        db.add(UserAlias(user_id=user.id, identifier=alias.lower()))
    db.commit()
    db.refresh(user)
    return user


def make_cafeteria(db, owner: UserAccount, name: str = "Arked Meranti") -> Cafeteria:
    cafeteria = Cafeteria(
        owner_user_id=owner.id,
        name=name,
        location="Block M",
        is_open=True,
        created_at=datetime.now(timezone.utc),
    )
    db.add(cafeteria)
    db.commit()
    db.refresh(cafeteria)
    return cafeteria


def make_wallet(db, owner: UserAccount, balance: str = "100.00", kind: str = "ewallet"):
    return ledger.create_instrument(
        db,
        owner_id=owner.id,
        instrument_type=kind,
        display_name=f"{kind} of {owner.email}",
        credential=PIN,
        opening_amount=Decimal(balance),
    )


def make_card(db, owner: UserAccount, limit: str = "500.00"):
    return ledger.create_instrument(
        db,
        owner_id=owner.id,
        instrument_type="card",
        display_name="Visa 4242",
        credential=None,
        opening_amount=Decimal(limit),
    )
