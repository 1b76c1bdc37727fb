from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campus_eats import ledger, orders, split_bill
from campus_eats.config import Settings, get_settings, settings
from campus_eats.db import check_connection, get_db
from campus_eats.errors import CoreError
from campus_eats.estimator import OrderEta, QueueTuning, format_eta
from campus_eats.identity import Principal, get_principal, normalize_identifier, resolve_account
from campus_eats.models import (
    BALANCE_TYPES,
    SPLIT_EQUAL,
    Cafeteria,
    Order,
    PaymentInstrument,
    SplitBillParticipant,
    SplitBillSession,
    UserAccount,
    UserAlias,
    UserPreference,
)
from campus_eats.money import from_cents

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Campus Eats")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _amount(cents: Optional[int]) -> Optional[float]:
    if cents is None:
        return None
    return float(from_cents(cents))


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _tuning(current: Settings = Depends(get_settings)) -> QueueTuning:
    return QueueTuning.from_settings(current)


@app.exception_handler(CoreError)
async def handle_core_error(request: Request, exc: CoreError) -> JSONResponse:
    if exc.status_code in (402, 409):
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict(), "meta": _meta()})


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.get("/health/db", tags=["health"])
def health_check_db(db: Session = Depends(get_db)) -> dict:
    ok, error = check_connection(db.get_bind())
    if not ok:
        raise HTTPException(status_code=503, detail=f"database unavailable: {error}")
    return {"status": "healthy", "database": "ok"}


class UserCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'email': 'aina@student.edu.my', 'name': 'Aina', 'aliases': ['aina.k']}}}
    email: str
    name: Optional[str] = None
    aliases: list[str] = Field(default_factory=list)


@app.post("/api/v1/users", tags=["Users"])
def create_user(payload: UserCreate, db: Session = Depends(get_db)) -> dict:
    email = normalize_identifier(payload.email)
    if not email:
        raise HTTPException(status_code=400, detail="email is required")
    aliases = sorted({normalize_identifier(alias) for alias in payload.aliases} - {"", email})
    for identifier in [email, *aliases]:
        if resolve_account(db, identifier) is not None:
            raise HTTPException(status_code=409, detail=f"{identifier} is already registered")
    user = UserAccount(email=email, name=payload.name, created_at=_now())
    db.add(user)
    try:
        db.flush()
        for alias in aliases:
            db.add(UserAlias(user_id=user.id, identifier=alias))
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="email or alias already registered")
    db.refresh(user)
    return {
        "data": {
            "user_id": user.id,
            "email": user.email,
            "name": user.name,
            "aliases": aliases,
            "created_at": user.created_at.isoformat(),
        },
        "meta": _meta(),
    }


class PreferenceUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'favourite_cafeteria_ids': [1, 3], 'favourite_categories': ['Rice'], 'promotions': True, 'spice_level': 'Medium'}}}
    favourite_cafeteria_ids: Optional[list[int]] = None
    favourite_categories: Optional[list[str]] = None
    email_notifications: Optional[bool] = None
    order_updates: Optional[bool] = None
    promotions: Optional[bool] = None
    dietary_type: Optional[str] = None
    spice_level: Optional[str] = None


def _preference_data(user_id: int, pref: Optional[UserPreference]) -> dict:
    if pref is None:
        return {
            "user_id": user_id,
            "favourite_cafeteria_ids": [],
            "favourite_categories": [],
            "email_notifications": True,
            "order_updates": True,
            "promotions": False,
            "dietary_type": None,
            "spice_level": None,
            "updated_at": None,
        }
    return {
        "user_id": pref.user_id,
        "favourite_cafeteria_ids": list(pref.favourite_cafeteria_ids or []),
        "favourite_categories": list(pref.favourite_categories or []),
        "email_notifications": pref.email_notifications,
        "order_updates": pref.order_updates,
        "promotions": pref.promotions,
        "dietary_type": pref.dietary_type,
        "spice_level": pref.spice_level,
        "updated_at": _isoformat(pref.updated_at),
    }


@app.get("/api/v1/users/me/preferences", tags=["Users"])
def get_preferences(
    principal: Principal = Depends(get_principal), db: Session = Depends(get_db)
) -> dict:
    pref = db.get(UserPreference, principal.user_id)
    return {"data": _preference_data(principal.user_id, pref), "meta": _meta()}


@app.put("/api/v1/users/me/preferences", tags=["Users"])
def update_preferences(
    payload: PreferenceUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    pref = db.get(UserPreference, principal.user_id)
    if pref is None:
        pref = UserPreference(
            user_id=principal.user_id,
            favourite_cafeteria_ids=[],
            favourite_categories=[],
            email_notifications=True,
            order_updates=True,
            promotions=False,
            updated_at=_now(),
        )
        db.add(pref)
    for field, value in payload.model_dump(exclude_none=True).items():
        setattr(pref, field, value)
    pref.updated_at = _now()
    db.commit()
    db.refresh(pref)
    return {"data": _preference_data(principal.user_id, pref), "meta": _meta()}


class CafeteriaCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Arked Meranti', 'location': 'Block M', 'is_open': True}}}
    name: str
    location: Optional[str] = None
    is_open: bool = True


@app.post("/api/v1/cafeterias", tags=["Cafeterias"])
def create_cafeteria(
    payload: CafeteriaCreate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="name is required")
    cafeteria = Cafeteria(
        owner_user_id=principal.user_id,
        name=payload.name.strip(),
        location=payload.location,
        is_open=payload.is_open,
        created_at=_now(),
    )
    db.add(cafeteria)
    db.commit()
    db.refresh(cafeteria)
    return {
        "data": {
            "cafeteria_id": cafeteria.id,
            "owner_user_id": cafeteria.owner_user_id,
            "name": cafeteria.name,
            "location": cafeteria.location,
            "is_open": cafeteria.is_open,
        },
        "meta": _meta(),
    }


class InstrumentCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'type': 'ewallet', 'display_name': "Touch 'n Go", 'credential': '123456', 'opening_amount': '100.00'}}}
    type: str
    display_name: str
    credential: Optional[str] = None
    opening_amount: Optional[Decimal] = None


def _instrument_data(instrument: PaymentInstrument) -> dict:
    return {
        "instrument_id": instrument.id,
        "type": instrument.type,
        "display_name": instrument.display_name,
        "is_default": instrument.is_default,
        "balance": _amount(instrument.balance_cents),
        "credit_limit": _amount(instrument.credit_limit_cents),
    }


@app.post("/api/v1/payment-instruments", tags=["Payment Instruments"])
def create_payment_instrument(
    payload: InstrumentCreate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    current: Settings = Depends(get_settings),
) -> dict:
    opening_amount = payload.opening_amount
    if opening_amount is None:
        opening_amount = (
            current.default_wallet_balance
            if payload.type in BALANCE_TYPES
            else current.default_card_credit_limit
        )
    instrument = ledger.create_instrument(
        db,
        owner_id=principal.user_id,
        instrument_type=payload.type,
        display_name=payload.display_name,
        credential=payload.credential,
        opening_amount=opening_amount,
    )
    return {"data": _instrument_data(instrument), "meta": _meta()}


@app.get("/api/v1/payment-instruments", tags=["Payment Instruments"])
def list_payment_instruments(
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(PaymentInstrument).filter(PaymentInstrument.owner_id == principal.user_id)
    instruments, next_cursor = _paginate_by_id(query, PaymentInstrument, limit, cursor)
    data = [_instrument_data(instrument) for instrument in instruments]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/api/v1/payment-instruments/{instrument_id}:setDefault", tags=["Payment Instruments"])
def set_default_payment_instrument(
    instrument_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    instrument = ledger.set_default_instrument(db, principal.user_id, instrument_id)
    return {"data": _instrument_data(instrument), "meta": _meta()}


class OrderItemInput(BaseModel):
    name: str
    quantity: int
    unit_price: Decimal


class OrderCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'cafeteria_id': 1, 'items': [{'name': 'Nasi Lemak', 'quantity': 2, 'unit_price': '6.50'}], 'instrument_id': 1, 'credential': '123456'}}}
    cafeteria_id: int
    items: list[OrderItemInput]
    instrument_id: int
    credential: Optional[str] = None


def _items_data(items: list[dict]) -> list[dict]:
    return [
        {
            "name": item["name"],
            "quantity": item["quantity"],
            "unit_price": _amount(item["unit_price_cents"]),
        }
        for item in items
    ]


def _eta_data(eta: OrderEta) -> dict:
    return {
        "rank": eta.rank,
        "eta_minutes": eta.eta_minutes,
        "eta_text": format_eta(eta.eta_minutes),
        "is_bulk": eta.is_bulk,
    }


def _order_data(order: Order, eta: Optional[OrderEta] = None) -> dict:
    data = {
        "order_id": order.id,
        "user_id": order.user_id,
        "cafeteria_id": order.cafeteria_id,
        "items": _items_data(order.items),
        "subtotal": _amount(order.subtotal_cents),
        "total_amount": _amount(order.total_amount_cents),
        "instrument_id": order.instrument_id,
        "status": order.status,
        "queue_number": order.queue_number,
        "split_session_id": order.split_session_id,
        "created_at": _isoformat(order.created_at),
        "paid_at": _isoformat(order.paid_at),
    }
    if eta is not None:
        data["eta"] = _eta_data(eta)
    return data


@app.post("/api/v1/orders", tags=["Orders"])
def create_order(
    payload: OrderCreate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    tuning: QueueTuning = Depends(_tuning),
) -> dict:
    order = orders.place_order(
        db,
        user_id=principal.user_id,
        cafeteria_id=payload.cafeteria_id,
        items=[item.model_dump() for item in payload.items],
        instrument_id=payload.instrument_id,
        credential=payload.credential,
    )
    eta = orders.get_order_eta(db, order, tuning)
    return {"data": _order_data(order, eta), "meta": _meta()}


@app.get("/api/v1/orders", tags=["Orders"])
def list_orders(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Order).filter(Order.user_id == principal.user_id)
    if status is not None:
        query = query.filter(Order.status == status)
    rows, next_cursor = _paginate_by_id(query, Order, limit, cursor)
    data = [_order_data(order) for order in rows]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/orders/{order_id}", tags=["Orders"])
def get_order(
    order_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    tuning: QueueTuning = Depends(_tuning),
) -> dict:
    order = orders.get_order_for_user(db, order_id, principal.user_id)
    eta = orders.get_order_eta(db, order, tuning)
    return {"data": _order_data(order, eta), "meta": _meta()}


@app.get("/api/v1/orders/{order_id}/receipt", tags=["Orders"])
def get_order_receipt(
    order_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    receipt = orders.get_receipt(db, order_id, principal.user_id)
    return {
        "data": {
            "receipt_id": receipt.id,
            "order_id": receipt.order_id,
            "cafeteria_name": receipt.cafeteria_name,
            "cafeteria_location": receipt.cafeteria_location,
            "queue_number": receipt.queue_number,
            "items": _items_data(receipt.items),
            "subtotal": _amount(receipt.subtotal_cents),
            "total_amount": _amount(receipt.total_amount_cents),
            "payment_method": receipt.payment_method,
            "customer_email": receipt.customer_email,
            "created_at": _isoformat(receipt.created_at),
        },
        "meta": _meta(),
    }


class OrderTransition(BaseModel):
    model_config = {"json_schema_extra": {"example": {'status': 'Cooking', 'expected_status': 'Pending'}}}
    status: str
    expected_status: Optional[str] = None


@app.post("/api/v1/orders/{order_id}:transition", tags=["Orders"])
def transition_order(
    order_id: int,
    payload: OrderTransition,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    order = orders.advance_order_status(
        db,
        order_id,
        target_status=payload.status,
        staff_user_id=principal.user_id,
        expected_status=payload.expected_status,
    )
    return {"data": _order_data(order), "meta": _meta()}


@app.get("/api/v1/cafeterias/{cafeteria_id}/queue", tags=["Cafeterias"])
def get_cafeteria_queue(
    cafeteria_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    tuning: QueueTuning = Depends(_tuning),
) -> dict:
    queue = orders.get_queue_snapshot(db, cafeteria_id, tuning)
    snapshot = queue.snapshot
    return {
        "data": {
            "cafeteria_id": queue.cafeteria_id,
            "queue_length": snapshot.queue_length,
            "average_wait_minutes": snapshot.average_wait_minutes,
            "per_order_eta": [
                {"order_id": eta.order_id, "queue_number": eta.queue_number, **_eta_data(eta)}
                for eta in snapshot.per_order_eta
            ],
            "status_breakdown": queue.breakdown,
        },
        "meta": _meta(),
    }


class SplitSessionCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'cafeteria_id': 1, 'items': [{'name': 'Chicken Rice', 'quantity': 3, 'unit_price': '15.00'}], 'total_amount': '45.50', 'participant_identifiers': ['ben@student.edu.my', 'chloe.t'], 'split_method': 'Equal'}}}
    cafeteria_id: int
    items: list[OrderItemInput]
    total_amount: Decimal
    participant_identifiers: list[str]
    split_method: str = SPLIT_EQUAL
    custom_amounts: Optional[dict[str, Decimal]] = None


def _participant_data(participant: SplitBillParticipant) -> dict:
    return {
        "participant_id": participant.id,
        "user_id": participant.user_id,
        "identifier": participant.identifier,
        "is_initiator": participant.is_initiator,
        "amount_due": _amount(participant.amount_due_cents),
        "status": participant.status,
        "covered": participant.covered_at is not None,
        "order_id": participant.order_id,
        "responded_at": _isoformat(participant.responded_at),
        "paid_at": _isoformat(participant.paid_at),
    }


def _session_data(session: SplitBillSession, participants: list[SplitBillParticipant]) -> dict:
    return {
        "session_id": session.id,
        "initiator_user_id": session.initiator_user_id,
        "cafeteria_id": session.cafeteria_id,
        "items": _items_data(session.items),
        "total_amount": _amount(session.total_amount_cents),
        "split_method": session.split_method,
        "status": session.status,
        "created_at": _isoformat(session.created_at),
        "expires_at": _isoformat(session.expires_at),
        "participants": [_participant_data(participant) for participant in participants],
    }


@app.post("/api/v1/split-bill/sessions", tags=["Split Bill"])
def create_split_session(
    payload: SplitSessionCreate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    session = split_bill.create_session(
        db,
        initiator_id=principal.user_id,
        cafeteria_id=payload.cafeteria_id,
        items=[item.model_dump() for item in payload.items],
        total_amount=payload.total_amount,
        participant_identifiers=payload.participant_identifiers,
        split_method=payload.split_method,
        custom_amounts=payload.custom_amounts,
    )
    participants = split_bill.participants_for(db, session.id)
    return {"data": _session_data(session, participants), "meta": _meta()}


@app.get("/api/v1/split-bill/sessions/{session_id}", tags=["Split Bill"])
def get_split_session(
    session_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    session, participants = split_bill.get_session(db, session_id, principal)
    return {"data": _session_data(session, participants), "meta": _meta()}


@app.post("/api/v1/split-bill/sessions/{session_id}:cancel", tags=["Split Bill"])
def cancel_split_session(
    session_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    session = split_bill.cancel_session(db, session_id, principal.user_id)
    participants = split_bill.participants_for(db, session.id)
    return {"data": _session_data(session, participants), "meta": _meta()}


class SplitPayment(BaseModel):
    model_config = {"json_schema_extra": {"example": {'instrument_id': 2, 'credential': '123456'}}}
    instrument_id: int
    credential: Optional[str] = None


@app.post("/api/v1/split-bill/sessions/{session_id}:coverRemaining", tags=["Split Bill"])
def cover_remaining_balance(
    session_id: int,
    payload: SplitPayment,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    order = split_bill.cover_remaining(
        db, session_id, principal, payload.instrument_id, payload.credential
    )
    session, participants = split_bill.get_session(db, session_id, principal)
    return {
        "data": {"order": _order_data(order), "session": _session_data(session, participants)},
        "meta": _meta(),
    }


@app.get("/api/v1/split-bill/invitations", tags=["Split Bill"])
def list_split_invitations(
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    rows = split_bill.list_invitations(db, principal.identifiers)
    data = [
        {
            **_participant_data(participant),
            "session_id": session.id,
            "initiator_user_id": session.initiator_user_id,
            "cafeteria_id": session.cafeteria_id,
            "total_amount": _amount(session.total_amount_cents),
            "session_status": status,
            "expires_at": _isoformat(session.expires_at),
        }
        for participant, session, status in rows
    ]
    return {"data": data, "meta": _meta()}


class InvitationResponse(BaseModel):
    model_config = {"json_schema_extra": {"example": {'response': 'Accept'}}}
    response: str


@app.post("/api/v1/split-bill/participants/{participant_id}:respond", tags=["Split Bill"])
def respond_to_split_invitation(
    participant_id: int,
    payload: InvitationResponse,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    participant = split_bill.respond_to_invitation(
        db, participant_id, principal.identifiers, payload.response
    )
    return {"data": _participant_data(participant), "meta": _meta()}


@app.post("/api/v1/split-bill/participants/{participant_id}:pay", tags=["Split Bill"])
def pay_split_share(
    participant_id: int,
    payload: SplitPayment,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    order = split_bill.pay_share(
        db, participant_id, principal, payload.instrument_id, payload.credential
    )
    participant = db.get(SplitBillParticipant, participant_id)
    session = db.get(SplitBillSession, participant.session_id)
    return {
        "data": {
            "order": _order_data(order),
            "participant": _participant_data(participant),
            "session_status": session.status,
        },
        "meta": _meta(),
    }
