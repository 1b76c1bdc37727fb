from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from campus_eats import ledger
from campus_eats.errors import AuthorizationError, InsufficientFunds, NotFound, ValidationError
from campus_eats.models import PaymentInstrument

from conftest import PIN, make_card, make_user, make_wallet


def test_fpx_debit_beyond_balance_is_rejected_and_balance_unchanged(db) -> None:
    user = make_user(db, "aina@student.edu.my")
    fpx = make_wallet(db, user, balance="100.00", kind="fpx")

    with pytest.raises(InsufficientFunds):
        ledger.debit(db, fpx, 12000)
    db.rollback()

    db.refresh(fpx)
    assert fpx.balance_cents == 10000


def test_debit_moves_the_right_column(db) -> None:
    user = make_user(db, "aina@student.edu.my")
    wallet = make_wallet(db, user, balance="20.00")
    card = make_card(db, user, limit="50.00")

    ledger.debit(db, wallet, 1550)
    ledger.debit(db, card, 5000)
    db.commit()

    assert wallet.balance_cents == 450
    assert wallet.credit_limit_cents is None
    assert card.credit_limit_cents == 0
    assert card.balance_cents is None


def test_debit_of_exact_balance_succeeds_then_any_more_fails(db) -> None:
    user = make_user(db, "aina@student.edu.my")
    wallet = make_wallet(db, user, balance="10.00")

    ledger.debit(db, wallet, 1000)
    db.commit()
    assert wallet.balance_cents == 0

    with pytest.raises(InsufficientFunds):
        ledger.debit(db, wallet, 1)
    db.rollback()


def test_debit_decides_on_stored_balance_not_loaded_copy(db) -> None:
    user = make_user(db, "aina@student.edu.my")
    wallet = make_wallet(db, user, balance="30.00")

    other = sessionmaker(bind=db.get_bind(), autoflush=False, autocommit=False)()
    try:
        stale = other.get(PaymentInstrument, wallet.id)
        assert stale.balance_cents == 3000

        ledger.debit(db, wallet, 2000)
        db.commit()

        # the second session still holds 30.00 in memory
        with pytest.raises(InsufficientFunds):
            ledger.debit(other, stale, 2000)
        other.rollback()
    finally:
        other.close()

    db.refresh(wallet)
    assert wallet.balance_cents == 1000


def test_negative_debit_is_rejected(db) -> None:
    user = make_user(db, "aina@student.edu.my")
    wallet = make_wallet(db, user)
    with pytest.raises(ValidationError):
        ledger.debit(db, wallet, -1)


def test_validate_credential(db) -> None:
    user = make_user(db, "aina@student.edu.my")
    wallet = make_wallet(db, user)
    card = make_card(db, user)

    assert ledger.validate_credential(wallet, PIN)
    assert not ledger.validate_credential(wallet, "654321")
    assert not ledger.validate_credential(wallet, None)
    assert ledger.validate_credential(card, None)
    assert wallet.credential_hash != PIN


def test_can_cover(db) -> None:
    user = make_user(db, "aina@student.edu.my")
    wallet = make_wallet(db, user, balance="15.17")
    assert ledger.can_cover(wallet, 1517)
    assert not ledger.can_cover(wallet, 1518)


def test_create_instrument_requires_six_digit_pin_for_balance_types(db) -> None:
    user = make_user(db, "aina@student.edu.my")
    with pytest.raises(ValidationError):
        ledger.create_instrument(db, user.id, "fpx", "Maybank2u", "1234", Decimal("10.00"))
    with pytest.raises(ValidationError):
        ledger.create_instrument(db, user.id, "ewallet", "TNG", None, Decimal("10.00"))
    with pytest.raises(ValidationError):
        ledger.create_instrument(db, user.id, "cash", "Cash", None, Decimal("10.00"))


def test_first_instrument_is_default_and_default_can_move(db) -> None:
    user = make_user(db, "aina@student.edu.my")
    first = make_wallet(db, user)
    second = make_card(db, user)
    assert first.is_default
    assert not second.is_default

    ledger.set_default_instrument(db, user.id, second.id)
    db.refresh(first)
    db.refresh(second)
    assert second.is_default
    assert not first.is_default


def test_ownership_checks(db) -> None:
    owner = make_user(db, "aina@student.edu.my")
    stranger = make_user(db, "ben@student.edu.my")
    wallet = make_wallet(db, owner)

    with pytest.raises(NotFound):
        ledger.get_owned_instrument(db, wallet.id, stranger.id)
    with pytest.raises(AuthorizationError):
        ledger.require_owner(wallet, stranger.id)
    assert ledger.get_owned_instrument(db, wallet.id, owner.id).id == wallet.id
