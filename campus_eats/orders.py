from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Any, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from campus_eats import ledger
from campus_eats.db import transaction
from campus_eats.errors import (
    AuthorizationError,
    CredentialMismatch,
    NotFound,
    StateConflict,
    ValidationError,
)
from campus_eats.estimator import (
    ACTIVE_STATUSES,
    READY,
    OrderEta,
    QueueEntry,
    QueueSnapshot,
    QueueTuning,
    build_snapshot,
    is_bulk,
    next_queue_number,
    status_breakdown,
)
from campus_eats.models import (
    ORDER_COMPLETED,
    ORDER_COOKING,
    ORDER_PENDING,
    ORDER_READY,
    ORDER_STATUSES,
    Cafeteria,
    Order,
    PaymentInstrument,
    Receipt,
    UserAccount,
)
from campus_eats.money import MAX_CENTS, to_cents

logger = logging.getLogger(__name__)

NEXT_STATUS = {
    ORDER_PENDING: ORDER_COOKING,
    ORDER_COOKING: ORDER_READY,
    ORDER_READY: ORDER_COMPLETED,
}


@dataclass(frozen=True)
class CafeteriaQueue:
    cafeteria_id: int
    snapshot: QueueSnapshot
    breakdown: dict[str, int]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_items(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Validate checkout items and convert prices to sen for storage."""
    if not items:
        raise ValidationError("at least one item is required")
    normalized = []
    for item in items:
        name = str(item.get("name") or "").strip()
        if not name:
            raise ValidationError("item name is required")
        quantity = item.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError(f"quantity for {name} must be a positive integer")
        unit_price_cents = to_cents(item.get("unit_price", 0))
        if unit_price_cents < 0:
            raise ValidationError(f"unit price for {name} must not be negative")
        normalized.append({"name": name, "quantity": quantity, "unit_price_cents": unit_price_cents})
    if items_subtotal_cents(normalized) > MAX_CENTS:
        raise ValidationError("order total is out of range")
    return normalized


def items_subtotal_cents(items: list[dict[str, Any]]) -> int:
    return sum(item["quantity"] * item["unit_price_cents"] for item in items)


def _start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), time.min, tzinfo=timezone.utc)


def _tickets_today(db: Session, cafeteria_id: int, now: datetime) -> int:
    since = _start_of_day(now)
    plain = (
        db.query(func.count(Order.id))
        .filter(
            Order.cafeteria_id == cafeteria_id,
            Order.created_at >= since,
            Order.split_session_id.is_(None),
        )
        .scalar()
    )
    grouped = (
        db.query(func.count(func.distinct(Order.split_session_id)))
        .filter(
            Order.cafeteria_id == cafeteria_id,
            Order.created_at >= since,
            Order.split_session_id.is_not(None),
        )
        .scalar()
    )
    return int(plain or 0) + int(grouped or 0)


def _assign_queue_number(
    db: Session, cafeteria: Cafeteria, split_session_id: Optional[int], now: datetime
) -> str:
    if split_session_id is not None:
        sibling = (
            db.query(Order)
            .filter(Order.split_session_id == split_session_id)
            .order_by(Order.created_at, Order.id)
            .first()
        )
        if sibling:
            return sibling.queue_number
    return next_queue_number(cafeteria.name, _tickets_today(db, cafeteria.id, now))


def record_order(
    db: Session,
    *,
    user: UserAccount,
    cafeteria: Cafeteria,
    instrument: PaymentInstrument,
    items: list[dict[str, Any]],
    total_cents: int,
    split_session_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Add a paid order and its receipt to the open transaction (no commit)."""
    now = now or _now()
    order = Order(
        user_id=user.id,
        cafeteria_id=cafeteria.id,
        items=items,
        subtotal_cents=items_subtotal_cents(items),
        total_amount_cents=total_cents,
        instrument_id=instrument.id,
        status=ORDER_PENDING,
        queue_number=_assign_queue_number(db, cafeteria, split_session_id, now),
        split_session_id=split_session_id,
        created_at=now,
        paid_at=now,
    )
    db.add(order)
    db.flush()
    db.add(
        Receipt(
            order_id=order.id,
            user_id=user.id,
            cafeteria_name=cafeteria.name,
            cafeteria_location=cafeteria.location,
            queue_number=order.queue_number,
            items=items,
            subtotal_cents=order.subtotal_cents,
            total_amount_cents=total_cents,
            payment_method=instrument.display_name,
            customer_email=user.email,
            created_at=now,
        )
    )
    db.flush()
    return order


def place_order(
    db: Session,
    user_id: int,
    cafeteria_id: int,
    items: list[dict[str, Any]],
    instrument_id: int,
    credential: Optional[str],
) -> Order:
    normalized = normalize_items(items)
    user = db.get(UserAccount, user_id)
    if not user:
        raise NotFound("user not found")
    cafeteria = db.get(Cafeteria, cafeteria_id)
    if not cafeteria:
        raise NotFound("cafeteria not found")
    instrument = ledger.get_owned_instrument(db, instrument_id, user_id)
    if not ledger.validate_credential(instrument, credential):
        raise CredentialMismatch("payment credential does not match")
    total_cents = items_subtotal_cents(normalized)
    with transaction(db):
        ledger.debit(db, instrument, total_cents)
        order = record_order(
            db,
            user=user,
            cafeteria=cafeteria,
            instrument=instrument,
            items=normalized,
            total_cents=total_cents,
        )
    db.refresh(order)
    logger.info(
        "order placed order_id=%s cafeteria_id=%s total_cents=%s queue_number=%s",
        order.id,
        cafeteria_id,
        total_cents,
        order.queue_number,
    )
    return order


def get_order_for_user(db: Session, order_id: int, user_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order or order.user_id != user_id:
        raise NotFound("order not found")
    return order


def get_receipt(db: Session, order_id: int, user_id: int) -> Receipt:
    get_order_for_user(db, order_id, user_id)
    receipt = db.query(Receipt).filter(Receipt.order_id == order_id).first()
    if not receipt:
        raise NotFound("receipt not found")
    return receipt


def advance_order_status(
    db: Session,
    order_id: int,
    target_status: str,
    staff_user_id: int,
    expected_status: Optional[str] = None,
) -> Order:
    """Move an order one step along Pending -> Cooking -> ReadyForPickup -> Completed.

    The write is conditional on the order id and the expected prior status, so
    two staff screens racing on the same order cannot both apply a transition.
    """
    order = db.get(Order, order_id)
    if not order:
        raise NotFound("order not found")
    cafeteria = db.get(Cafeteria, order.cafeteria_id)
    if not cafeteria or cafeteria.owner_user_id != staff_user_id:
        raise AuthorizationError("only cafeteria staff may update order status")
    if target_status not in ORDER_STATUSES:
        raise ValidationError(f"unknown order status: {target_status}")
    expected = expected_status or order.status
    if expected not in ORDER_STATUSES:
        raise ValidationError(f"unknown order status: {expected}")
    if NEXT_STATUS.get(expected) != target_status:
        raise StateConflict(f"order cannot move from {expected} to {target_status}")

    with transaction(db):
        result = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == expected)
            .values(status=target_status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StateConflict(f"order is no longer {expected}")
    db.refresh(order)
    logger.info("order status order_id=%s %s -> %s", order.id, expected, target_status)
    return order


def _queue_entry(order: Order) -> QueueEntry:
    return QueueEntry(
        order_id=order.id,
        status=order.status,
        quantities=tuple(int(item["quantity"]) for item in order.items),
        created_at=order.created_at,
        queue_number=order.queue_number,
    )


def _active_orders(db: Session, cafeteria_id: int) -> list[Order]:
    return (
        db.query(Order)
        .filter(Order.cafeteria_id == cafeteria_id, Order.status.in_(ACTIVE_STATUSES))
        .order_by(Order.created_at, Order.id)
        .all()
    )


def get_queue_snapshot(db: Session, cafeteria_id: int, tuning: QueueTuning) -> CafeteriaQueue:
    if not db.get(Cafeteria, cafeteria_id):
        raise NotFound("cafeteria not found")
    active = _active_orders(db, cafeteria_id)
    today = (
        db.query(Order)
        .filter(Order.cafeteria_id == cafeteria_id, Order.created_at >= _start_of_day(_now()))
        .all()
    )
    # orders created before today that are still in the kitchen count too
    counted = {order.id: order for order in today}
    counted.update((order.id, order) for order in active)
    return CafeteriaQueue(
        cafeteria_id=cafeteria_id,
        snapshot=build_snapshot([_queue_entry(order) for order in active], tuning),
        breakdown=status_breakdown(_queue_entry(order) for order in counted.values()),
    )


def get_order_eta(db: Session, order: Order, tuning: QueueTuning) -> OrderEta:
    """ETA for one order as shown on its tracking view."""
    if order.status not in ACTIVE_STATUSES:
        return OrderEta(
            order_id=order.id,
            rank=None,
            eta_minutes=READY,
            is_bulk=is_bulk(_queue_entry(order), tuning),
            queue_number=order.queue_number,
        )
    entries = [_queue_entry(active) for active in _active_orders(db, order.cafeteria_id)]
    eta = build_snapshot(entries, tuning).eta_for(order.id)
    if eta is None:
        raise NotFound("order is not in the active queue")
    return eta
