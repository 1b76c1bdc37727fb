"""Payment ledger: credential checks and atomic debits. ``debit`` never commits."""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from campus_eats.errors import AuthorizationError, InsufficientFunds, NotFound, ValidationError
from campus_eats.models import BALANCE_TYPES, INSTRUMENT_TYPES, PaymentInstrument
from campus_eats.money import to_cents

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"^\d{6}$")


def hash_credential(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def is_balance_type(instrument: PaymentInstrument) -> bool:
    return instrument.type in BALANCE_TYPES


def validate_credential(instrument: PaymentInstrument, supplied: Optional[str]) -> bool:
    # cards are pre-authorized at checkout
    if not is_balance_type(instrument):
        return True
    if not supplied or not instrument.credential_hash:
        return False
    return hmac.compare_digest(hash_credential(supplied), instrument.credential_hash)


def available_cents(instrument: PaymentInstrument) -> int:
    if is_balance_type(instrument):
        return int(instrument.balance_cents or 0)
    return int(instrument.credit_limit_cents or 0)


def can_cover(instrument: PaymentInstrument, amount_cents: int) -> bool:
    return amount_cents <= available_cents(instrument)


def debit(db: Session, instrument: PaymentInstrument, amount_cents: int) -> PaymentInstrument:
    if amount_cents < 0:
        raise ValidationError("debit amount must not be negative")
    column = (
        PaymentInstrument.balance_cents
        if is_balance_type(instrument)
        else PaymentInstrument.credit_limit_cents
    )
    stmt = (
        update(PaymentInstrument)
        .where(PaymentInstrument.id == instrument.id, column >= amount_cents)
        .values({column: column - amount_cents})
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        logger.warning(
            "debit rejected instrument_id=%s amount_cents=%s", instrument.id, amount_cents
        )
        raise InsufficientFunds("insufficient funds on payment instrument")
    db.refresh(instrument)
    logger.info("debited instrument_id=%s amount_cents=%s", instrument.id, amount_cents)
    return instrument


def get_owned_instrument(db: Session, instrument_id: int, owner_id: int) -> PaymentInstrument:
    """Load an instrument for a payment by ``owner_id``.

    Checkout reports a foreign instrument as missing; split payments check
    ownership themselves through :func:`require_owner`.
    """
    instrument = db.get(PaymentInstrument, instrument_id)
    if not instrument or instrument.owner_id != owner_id:
        raise NotFound("payment instrument not found")
    return instrument


def require_owner(instrument: PaymentInstrument, owner_id: int) -> None:
    if instrument.owner_id != owner_id:
        raise AuthorizationError("payment instrument belongs to another user")


def create_instrument(
    db: Session,
    owner_id: int,
    instrument_type: str,
    display_name: str,
    credential: Optional[str],
    opening_amount: Decimal,
) -> PaymentInstrument:
    if instrument_type not in INSTRUMENT_TYPES:
        raise ValidationError(f"unsupported instrument type: {instrument_type}")
    if not (display_name or "").strip():
        raise ValidationError("display_name is required")
    credential_hash = None
    if instrument_type in BALANCE_TYPES:
        if not credential or not PIN_PATTERN.match(credential):
            raise ValidationError("a 6-digit PIN is required for fpx and ewallet instruments")
        credential_hash = hash_credential(credential)
    opening_cents = to_cents(opening_amount)
    if opening_cents < 0:
        raise ValidationError("opening amount must not be negative")
    has_instruments = (
        db.query(PaymentInstrument.id).filter(PaymentInstrument.owner_id == owner_id).first()
        is not None
    )
    instrument = PaymentInstrument(
        owner_id=owner_id,
        type=instrument_type,
        display_name=display_name.strip(),
        credential_hash=credential_hash,
        is_default=not has_instruments,
        balance_cents=opening_cents if instrument_type in BALANCE_TYPES else None,
        credit_limit_cents=None if instrument_type in BALANCE_TYPES else opening_cents,
        created_at=datetime.now(timezone.utc),
    )
    db.add(instrument)
    db.commit()
    db.refresh(instrument)
    logger.info("created instrument_id=%s owner_id=%s type=%s", instrument.id, owner_id, instrument_type)
    return instrument


def set_default_instrument(db: Session, owner_id: int, instrument_id: int) -> PaymentInstrument:
    instrument = get_owned_instrument(db, instrument_id, owner_id)
    db.execute(
        update(PaymentInstrument)
        .where(PaymentInstrument.owner_id == owner_id)
        .values(is_default=PaymentInstrument.id == instrument.id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(instrument)
    return instrument
