"""Split-bill sessions: invitations, per-participant settlement and lifecycle."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import exists, func, select, update
from sqlalchemy.orm import Session

from campus_eats import ledger, orders
from campus_eats.config import settings
from campus_eats.db import as_utc, transaction
from campus_eats.errors import (
    AlreadyResolved,
    AuthorizationError,
    CredentialMismatch,
    DuplicateParticipant,
    NotFound,
    SelfInvite,
    SessionInactive,
    StateConflict,
    UnregisteredIdentifier,
    ValidationError,
)
from campus_eats.identity import Principal, normalize_identifier, resolve_account
from campus_eats.models import (
    PARTICIPANT_ACCEPTED,
    PARTICIPANT_DECLINED,
    PARTICIPANT_PAID,
    PARTICIPANT_PENDING,
    SESSION_ACTIVE,
    SESSION_CANCELLED,
    SESSION_COMPLETED,
    SESSION_EXPIRED,
    SPLIT_CUSTOM,
    SPLIT_EQUAL,
    SPLIT_METHODS,
    Cafeteria,
    Order,
    PaymentInstrument,
    SplitBillParticipant,
    SplitBillSession,
    UserAccount,
)
from campus_eats.money import split_custom, split_equal, to_cents

logger = logging.getLogger(__name__)

ACCEPT = "Accept"
DECLINE = "Decline"
RESPONSE_STATUS = {ACCEPT: PARTICIPANT_ACCEPTED, DECLINE: PARTICIPANT_DECLINED}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _session_is_active(session_id: int):
    return exists(
        select(SplitBillSession.id).where(
            SplitBillSession.id == session_id,
            SplitBillSession.status == SESSION_ACTIVE,
        )
    )


def effective_status(session: SplitBillSession, now: Optional[datetime] = None) -> str:
    now = now or _now()
    expires_at = as_utc(session.expires_at)
    if session.status == SESSION_ACTIVE and expires_at is not None and now > expires_at:
        return SESSION_EXPIRED
    return session.status


def _persist_expiry(db: Session, session: SplitBillSession, now: datetime) -> None:
    with transaction(db):
        db.execute(
            update(SplitBillSession)
            .where(SplitBillSession.id == session.id, SplitBillSession.status == SESSION_ACTIVE)
            .values(status=SESSION_EXPIRED, closed_at=now)
            .execution_options(synchronize_session=False)
        )
    db.refresh(session)
    logger.info("split session expired session_id=%s", session.id)


def refresh_status(db: Session, session: SplitBillSession, now: Optional[datetime] = None) -> str:
    """Read-time expiry: store Expired once ``expires_at`` has passed."""
    now = now or _now()
    status = effective_status(session, now)
    if status == SESSION_EXPIRED and session.status == SESSION_ACTIVE:
        _persist_expiry(db, session, now)
    return status


def _require_active(db: Session, session: SplitBillSession, now: datetime) -> None:
    status = refresh_status(db, session, now)
    if status != SESSION_ACTIVE:
        raise SessionInactive(f"split bill session is {status}")


def _get_session(db: Session, session_id: int) -> SplitBillSession:
    session = db.get(SplitBillSession, session_id)
    if not session:
        raise NotFound("split bill session not found")
    return session


def _get_participant(db: Session, participant_id: int) -> SplitBillParticipant:
    participant = db.get(SplitBillParticipant, participant_id)
    if not participant:
        raise NotFound("participant not found")
    return participant


def _authorize_participant(participant: SplitBillParticipant, caller_identifiers: Iterable[str]) -> None:
    identifiers = {normalize_identifier(value) for value in caller_identifiers}
    if normalize_identifier(participant.identifier) not in identifiers:
        raise AuthorizationError("invitation is addressed to a different identifier")


def participants_for(db: Session, session_id: int) -> list[SplitBillParticipant]:
    return (
        db.query(SplitBillParticipant)
        .filter(SplitBillParticipant.session_id == session_id)
        .order_by(SplitBillParticipant.position)
        .all()
    )


def _custom_shares(
    total_cents: int,
    initiator_identifier: str,
    invitees: list[tuple[str, UserAccount]],
    custom_amounts: dict[str, Decimal],
) -> list[int]:
    amounts = {normalize_identifier(key): value for key, value in custom_amounts.items()}
    known = {initiator_identifier, *(identifier for identifier, _ in invitees)}
    unknown = sorted(set(amounts) - known)
    if unknown:
        raise ValidationError(f"custom amount given for a non-participant: {unknown[0]}")
    missing = [identifier for identifier, _ in invitees if identifier not in amounts]
    if missing:
        raise ValidationError(f"custom amount missing for {missing[0]}")
    ordered = [amounts.get(initiator_identifier, 0)]
    ordered.extend(amounts[identifier] for identifier, _ in invitees)
    return split_custom(total_cents, ordered)


def create_session(
    db: Session,
    initiator_id: int,
    cafeteria_id: int,
    items: list[dict[str, Any]],
    total_amount: Decimal,
    participant_identifiers: list[str],
    split_method: str = SPLIT_EQUAL,
    now: Optional[datetime] = None,
    ttl_minutes: Optional[int] = None,
    custom_amounts: Optional[dict[str, Decimal]] = None,
) -> SplitBillSession:
    """Open a session; the initiator is participant 0 and starts Accepted.

    ``custom_amounts`` (Custom split only) maps each invited identifier, and
    optionally the initiator's email, to a share. Shares must sum to the total;
    an initiator left out owes nothing.
    """
    now = now or _now()
    initiator = db.get(UserAccount, initiator_id)
    if not initiator:
        raise NotFound("initiator not found")
    if not db.get(Cafeteria, cafeteria_id):
        raise NotFound("cafeteria not found")
    if split_method not in SPLIT_METHODS:
        raise ValidationError(f"unknown split method: {split_method}")
    if split_method not in (SPLIT_EQUAL, SPLIT_CUSTOM):
        raise ValidationError(f"split method {split_method} is not supported yet")
    if custom_amounts and split_method != SPLIT_CUSTOM:
        raise ValidationError("custom amounts are only accepted for the Custom split")
    normalized_items = orders.normalize_items(items)
    total_cents = to_cents(total_amount)
    if total_cents <= 0:
        raise ValidationError("total amount must be positive")
    if not participant_identifiers:
        raise ValidationError("at least one participant must be invited")

    seen_identifiers: set[str] = set()
    seen_accounts: set[int] = set()
    invitees: list[tuple[str, UserAccount]] = []
    for raw in participant_identifiers:
        identifier = normalize_identifier(raw)
        if not identifier:
            raise ValidationError("participant identifier must not be empty")
        if identifier in seen_identifiers:
            raise DuplicateParticipant(f"{identifier} was invited more than once")
        account = resolve_account(db, identifier)
        if account is None:
            raise UnregisteredIdentifier(f"{identifier} is not a registered account")
        if account.id == initiator.id:
            raise SelfInvite("the initiator cannot invite themself")
        if account.id in seen_accounts:
            raise DuplicateParticipant(f"{identifier} belongs to an account already invited")
        seen_identifiers.add(identifier)
        seen_accounts.add(account.id)
        invitees.append((identifier, account))

    initiator_identifier = normalize_identifier(initiator.email)
    if split_method == SPLIT_CUSTOM:
        shares = _custom_shares(total_cents, initiator_identifier, invitees, custom_amounts or {})
    else:
        shares = split_equal(total_cents, len(invitees) + 1)
    ttl = settings.split_session_ttl_minutes if ttl_minutes is None else ttl_minutes
    with transaction(db):
        session = SplitBillSession(
            initiator_user_id=initiator.id,
            cafeteria_id=cafeteria_id,
            items=normalized_items,
            total_amount_cents=total_cents,
            split_method=split_method,
            status=SESSION_ACTIVE,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl) if ttl else None,
        )
        db.add(session)
        db.flush()
        db.add(
            SplitBillParticipant(
                session_id=session.id,
                user_id=initiator.id,
                identifier=initiator_identifier,
                position=0,
                is_initiator=True,
                amount_due_cents=shares[0],
                status=PARTICIPANT_ACCEPTED if shares[0] else PARTICIPANT_PAID,
                responded_at=now,
                paid_at=None if shares[0] else now,
            )
        )
        for position, ((identifier, account), share) in enumerate(zip(invitees, shares[1:]), start=1):
            db.add(
                SplitBillParticipant(
                    session_id=session.id,
                    user_id=account.id,
                    identifier=identifier,
                    position=position,
                    is_initiator=False,
                    amount_due_cents=share,
                    status=PARTICIPANT_PENDING,
                )
            )
    db.refresh(session)
    logger.info(
        "split session created session_id=%s participants=%s total_cents=%s",
        session.id,
        len(shares),
        total_cents,
    )
    return session


def respond_to_invitation(
    db: Session,
    participant_id: int,
    caller_identifiers: Iterable[str],
    response: str,
    now: Optional[datetime] = None,
) -> SplitBillParticipant:
    """Accept or decline an invitation.

    Repeating the recorded resolution returns the participant unchanged;
    asking for the opposite one raises AlreadyResolved.
    """
    now = now or _now()
    target = RESPONSE_STATUS.get(response)
    if target is None:
        raise ValidationError(f"response must be {ACCEPT} or {DECLINE}")
    participant = _get_participant(db, participant_id)
    _authorize_participant(participant, caller_identifiers)
    session = _get_session(db, participant.session_id)
    _require_active(db, session, now)

    with transaction(db):
        result = db.execute(
            update(SplitBillParticipant)
            .where(
                SplitBillParticipant.id == participant.id,
                SplitBillParticipant.status == PARTICIPANT_PENDING,
                _session_is_active(session.id),
            )
            .values(status=target, responded_at=now)
            .execution_options(synchronize_session=False)
        )
    db.refresh(participant)
    if result.rowcount == 1:
        logger.info("participant %s participant_id=%s", target.lower(), participant.id)
        return participant

    if participant.status == target or (target == PARTICIPANT_ACCEPTED and participant.status == PARTICIPANT_PAID):
        return participant
    if participant.status == PARTICIPANT_PENDING:
        db.refresh(session)
        raise SessionInactive(f"split bill session is {effective_status(session, now)}")
    raise AlreadyResolved(f"invitation was already {participant.status.lower()}")


def _complete_if_settled(db: Session, session: SplitBillSession, now: datetime) -> bool:
    unsettled = (
        db.query(func.count(SplitBillParticipant.id))
        .filter(
            SplitBillParticipant.session_id == session.id,
            SplitBillParticipant.status != PARTICIPANT_PAID,
            SplitBillParticipant.covered_at.is_(None),
        )
        .scalar()
    )
    if unsettled:
        return False
    result = db.execute(
        update(SplitBillSession)
        .where(SplitBillSession.id == session.id, SplitBillSession.status == SESSION_ACTIVE)
        .values(status=SESSION_COMPLETED, closed_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _load_payment_instrument(
    db: Session, instrument_id: int, principal: Principal, credential: Optional[str]
) -> PaymentInstrument:
    instrument = db.get(PaymentInstrument, instrument_id)
    if not instrument:
        raise NotFound("payment instrument not found")
    ledger.require_owner(instrument, principal.user_id)
    if not ledger.validate_credential(instrument, credential):
        raise CredentialMismatch("payment credential does not match")
    return instrument


def _stale_write(db: Session, session: SplitBillSession, message: str) -> StateConflict:
    status = db.execute(
        select(SplitBillSession.status).where(SplitBillSession.id == session.id)
    ).scalar_one()
    if status != SESSION_ACTIVE:
        return SessionInactive(f"split bill session is {status}")
    return StateConflict(message)


def pay_share(
    db: Session,
    participant_id: int,
    principal: Principal,
    instrument_id: int,
    credential: Optional[str],
    now: Optional[datetime] = None,
) -> Order:
    """Settle one participant's share and record their order."""
    now = now or _now()
    participant = _get_participant(db, participant_id)
    _authorize_participant(participant, principal.identifiers)
    session = _get_session(db, participant.session_id)
    _require_active(db, session, now)
    instrument = _load_payment_instrument(db, instrument_id, principal, credential)
    if participant.status == PARTICIPANT_PAID:
        raise StateConflict("share is already paid")
    if participant.status != PARTICIPANT_ACCEPTED:
        raise StateConflict("invitation must be accepted before paying")
    if participant.covered_at is not None:
        raise StateConflict("share was covered by the initiator")
    user = db.get(UserAccount, principal.user_id)
    cafeteria = db.get(Cafeteria, session.cafeteria_id)

    with transaction(db):
        result = db.execute(
            update(SplitBillParticipant)
            .where(
                SplitBillParticipant.id == participant.id,
                SplitBillParticipant.status == PARTICIPANT_ACCEPTED,
                SplitBillParticipant.covered_at.is_(None),
                _session_is_active(session.id),
            )
            .values(status=PARTICIPANT_PAID, paid_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _stale_write(db, session, "share is no longer payable")
        ledger.debit(db, instrument, participant.amount_due_cents)
        order = orders.record_order(
            db,
            user=user,
            cafeteria=cafeteria,
            instrument=instrument,
            items=session.items,
            total_cents=participant.amount_due_cents,
            split_session_id=session.id,
            now=now,
        )
        db.execute(
            update(SplitBillParticipant)
            .where(SplitBillParticipant.id == participant.id)
            .values(order_id=order.id)
            .execution_options(synchronize_session=False)
        )
        completed = _complete_if_settled(db, session, now)
    db.refresh(participant)
    db.refresh(session)
    db.refresh(order)
    logger.info(
        "share paid participant_id=%s session_id=%s amount_cents=%s order_id=%s",
        participant.id,
        session.id,
        participant.amount_due_cents,
        order.id,
    )
    if completed:
        logger.info("split session completed session_id=%s", session.id)
    return order


def cover_remaining(
    db: Session,
    session_id: int,
    principal: Principal,
    instrument_id: int,
    credential: Optional[str],
    now: Optional[datetime] = None,
) -> Order:
    """Initiator pays every share that is still unsettled and closes the session.

    Covered participants keep their own status; ``covered_at`` marks that
    their share was settled by the initiator.
    """
    now = now or _now()
    session = _get_session(db, session_id)
    if session.initiator_user_id != principal.user_id:
        raise AuthorizationError("only the initiator may cover the remaining balance")
    _require_active(db, session, now)
    instrument = _load_payment_instrument(db, instrument_id, principal, credential)
    user = db.get(UserAccount, principal.user_id)
    cafeteria = db.get(Cafeteria, session.cafeteria_id)

    with transaction(db):
        unsettled = (
            db.query(SplitBillParticipant)
            .filter(
                SplitBillParticipant.session_id == session.id,
                SplitBillParticipant.status != PARTICIPANT_PAID,
                SplitBillParticipant.covered_at.is_(None),
            )
            .order_by(SplitBillParticipant.position)
            .all()
        )
        if not unsettled:
            raise StateConflict("every share is already settled")
        ids = [participant.id for participant in unsettled]
        amount_cents = sum(participant.amount_due_cents for participant in unsettled)
        result = db.execute(
            update(SplitBillParticipant)
            .where(
                SplitBillParticipant.id.in_(ids),
                SplitBillParticipant.status != PARTICIPANT_PAID,
                SplitBillParticipant.covered_at.is_(None),
                _session_is_active(session.id),
            )
            .values(covered_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            raise _stale_write(db, session, "shares changed while covering the balance")
        ledger.debit(db, instrument, amount_cents)
        order = orders.record_order(
            db,
            user=user,
            cafeteria=cafeteria,
            instrument=instrument,
            items=session.items,
            total_cents=amount_cents,
            split_session_id=session.id,
            now=now,
        )
        _complete_if_settled(db, session, now)
    db.refresh(session)
    db.refresh(order)
    logger.info(
        "initiator covered session_id=%s shares=%s amount_cents=%s", session.id, len(ids), amount_cents
    )
    return order


def cancel_session(
    db: Session, session_id: int, initiator_id: int, now: Optional[datetime] = None
) -> SplitBillSession:
    now = now or _now()
    session = _get_session(db, session_id)
    if session.initiator_user_id != initiator_id:
        raise AuthorizationError("only the initiator may cancel the session")
    _require_active(db, session, now)
    with transaction(db):
        result = db.execute(
            update(SplitBillSession)
            .where(SplitBillSession.id == session.id, SplitBillSession.status == SESSION_ACTIVE)
            .values(status=SESSION_CANCELLED, closed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _stale_write(db, session, "session changed while cancelling")
    db.refresh(session)
    logger.info("split session cancelled session_id=%s", session.id)
    return session


def get_session(
    db: Session, session_id: int, principal: Principal, now: Optional[datetime] = None
) -> tuple[SplitBillSession, list[SplitBillParticipant]]:
    session = _get_session(db, session_id)
    participants = participants_for(db, session.id)
    if session.initiator_user_id != principal.user_id and not any(
        principal.owns_identifier(participant.identifier) for participant in participants
    ):
        raise AuthorizationError("not a participant of this session")
    refresh_status(db, session, now)
    return session, participants


def list_invitations(
    db: Session, caller_identifiers: Iterable[str], now: Optional[datetime] = None
) -> list[tuple[SplitBillParticipant, SplitBillSession, str]]:
    """Invitations addressed to any of the caller's identifiers, newest first."""
    now = now or _now()
    identifiers = sorted({normalize_identifier(value) for value in caller_identifiers})
    if not identifiers:
        return []
    rows = (
        db.query(SplitBillParticipant, SplitBillSession)
        .join(SplitBillSession, SplitBillSession.id == SplitBillParticipant.session_id)
        .filter(
            SplitBillParticipant.identifier.in_(identifiers),
            SplitBillParticipant.is_initiator.is_(False),
        )
        .order_by(SplitBillSession.created_at.desc(), SplitBillParticipant.id.desc())
        .all()
    )
    return [(participant, session, effective_status(session, now)) for participant, session in rows]
