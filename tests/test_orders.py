from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from campus_eats import orders, split_bill
from campus_eats.errors import (
    AuthorizationError,
    CredentialMismatch,
    InsufficientFunds,
    NotFound,
    StateConflict,
    ValidationError,
)
from campus_eats.estimator import READY, QueueTuning
from campus_eats.identity import load_principal
from campus_eats.models import Order, Receipt

from conftest import PIN, make_cafeteria, make_card, make_user, make_wallet

NASI_LEMAK = {"name": "Nasi Lemak", "quantity": 2, "unit_price": Decimal("6.50")}


@pytest.fixture()
def shop(db):
    owner = make_user(db, "staff@arked.my")
    cafeteria = make_cafeteria(db, owner)
    customer = make_user(db, "aina@student.edu.my")
    wallet = make_wallet(db, customer)
    return {"owner": owner, "cafeteria": cafeteria, "customer": customer, "wallet": wallet}


def _place(db, shop, items=None, credential=PIN):
    return orders.place_order(
        db,
        user_id=shop["customer"].id,
        cafeteria_id=shop["cafeteria"].id,
        items=items or [NASI_LEMAK],
        instrument_id=shop["wallet"].id,
        credential=credential,
    )


def test_place_order_debits_and_writes_receipt(db, shop) -> None:
    order = _place(db, shop)

    assert order.status == "Pending"
    assert order.total_amount_cents == 1300
    assert order.queue_number == "A01"
    db.refresh(shop["wallet"])
    assert shop["wallet"].balance_cents == 10000 - 1300

    receipt = orders.get_receipt(db, order.id, shop["customer"].id)
    assert receipt.queue_number == "A01"
    assert receipt.customer_email == "aina@student.edu.my"
    assert receipt.payment_method == shop["wallet"].display_name


def test_queue_numbers_count_up(db, shop) -> None:
    numbers = [_place(db, shop).queue_number for _ in range(3)]
    assert numbers == ["A01", "A02", "A03"]


def test_place_order_failures_leave_no_trace(db, shop) -> None:
    with pytest.raises(CredentialMismatch):
        _place(db, shop, credential="999999")
    with pytest.raises(InsufficientFunds):
        _place(db, shop, items=[{"name": "Catering tray", "quantity": 1, "unit_price": Decimal("150.00")}])
    with pytest.raises(ValidationError):
        _place(db, shop, items=[{"name": "Teh Tarik", "quantity": 0, "unit_price": Decimal("2.00")}])
    with pytest.raises(ValidationError):
        _place(db, shop, items=[{"name": "Teh Tarik", "quantity": 1, "unit_price": Decimal("2.005")}])

    assert db.query(Order).count() == 0
    assert db.query(Receipt).count() == 0
    db.refresh(shop["wallet"])
    assert shop["wallet"].balance_cents == 10000


def test_foreign_instrument_is_not_found(db, shop) -> None:
    stranger = make_user(db, "ben@student.edu.my")
    card = make_card(db, stranger)
    with pytest.raises(NotFound):
        orders.place_order(
            db,
            user_id=shop["customer"].id,
            cafeteria_id=shop["cafeteria"].id,
            items=[NASI_LEMAK],
            instrument_id=card.id,
            credential=None,
        )


def test_status_moves_one_step_at_a_time(db, shop) -> None:
    order = _place(db, shop)
    staff = shop["owner"].id

    with pytest.raises(StateConflict):
        orders.advance_order_status(db, order.id, "ReadyForPickup", staff)
    with pytest.raises(AuthorizationError):
        orders.advance_order_status(db, order.id, "Cooking", shop["customer"].id)
    with pytest.raises(ValidationError):
        orders.advance_order_status(db, order.id, "Eaten", staff)

    for status in ("Cooking", "ReadyForPickup", "Completed"):
        order = orders.advance_order_status(db, order.id, status, staff)
        assert order.status == status

    with pytest.raises(StateConflict):
        orders.advance_order_status(db, order.id, "Pending", staff)


def test_stale_expected_status_loses(db, shop) -> None:
    order = _place(db, shop)
    staff = shop["owner"].id
    orders.advance_order_status(db, order.id, "Cooking", staff, expected_status="Pending")

    with pytest.raises(StateConflict):
        orders.advance_order_status(db, order.id, "Cooking", staff, expected_status="Pending")
    db.refresh(order)
    assert order.status == "Cooking"


def test_queue_snapshot_and_order_eta(db, shop) -> None:
    tuning = QueueTuning()
    first = _place(db, shop)
    second = _place(db, shop, items=[{"name": "Mee Goreng", "quantity": 6, "unit_price": Decimal("5.00")}])
    third = _place(db, shop)
    orders.advance_order_status(db, first.id, "Cooking", shop["owner"].id)

    queue = orders.get_queue_snapshot(db, shop["cafeteria"].id, tuning)
    snapshot = queue.snapshot
    assert snapshot.queue_length == 3
    assert [eta.order_id for eta in snapshot.per_order_eta] == [first.id, second.id, third.id]
    assert snapshot.eta_for(first.id).eta_minutes == 5
    assert snapshot.eta_for(second.id).eta_minutes == 20
    assert snapshot.eta_for(second.id).is_bulk
    # 10 + 2 * ((10 + 45) / 2)
    assert snapshot.eta_for(third.id).eta_minutes == 65
    assert queue.breakdown["Cooking"] == 1
    assert queue.breakdown["Pending"] == 2

    assert orders.get_order_eta(db, third, tuning).rank == 2
    first = orders.advance_order_status(db, first.id, "ReadyForPickup", shop["owner"].id)
    assert orders.get_order_eta(db, first, tuning).eta_minutes == READY
    assert orders.get_order_eta(db, second, tuning).eta_minutes == 10


def test_queue_snapshot_for_unknown_cafeteria(db) -> None:
    with pytest.raises(NotFound):
        orders.get_queue_snapshot(db, 999, QueueTuning())


def test_split_orders_each_hold_a_place_in_the_queue(db, shop) -> None:
    tuning = QueueTuning()
    ben = make_user(db, "ben@student.edu.my")
    solo = _place(db, shop)
    session = split_bill.create_session(
        db,
        initiator_id=shop["customer"].id,
        cafeteria_id=shop["cafeteria"].id,
        items=[{"name": "Chicken Rice", "quantity": 2, "unit_price": Decimal("7.00")}],
        total_amount=Decimal("14.00"),
        participant_identifiers=["ben@student.edu.my"],
    )
    aina_share, ben_share = split_bill.participants_for(db, session.id)
    ben_principal = load_principal(db, ben.id)
    split_bill.respond_to_invitation(db, ben_share.id, ben_principal.identifiers, "Accept")
    aina_order = split_bill.pay_share(
        db, aina_share.id, load_principal(db, shop["customer"].id), shop["wallet"].id, PIN
    )
    ben_order = split_bill.pay_share(db, ben_share.id, ben_principal, make_card(db, ben).id, None)

    assert solo.queue_number == "A01"
    assert aina_order.queue_number == ben_order.queue_number == "A02"

    queue = orders.get_queue_snapshot(db, shop["cafeteria"].id, tuning)
    snapshot = queue.snapshot
    assert snapshot.queue_length == db.query(Order).filter(Order.status == "Pending").count() == 3
    assert [eta.order_id for eta in snapshot.per_order_eta] == [solo.id, aina_order.id, ben_order.id]
    assert queue.breakdown["Pending"] == 3

    ben_eta = orders.get_order_eta(db, ben_order, tuning)
    assert ben_eta.order_id == ben_order.id
    assert ben_eta.rank == 2
    assert ben_eta == snapshot.eta_for(ben_order.id)

    orders.advance_order_status(db, ben_order.id, "Cooking", shop["owner"].id)
    db.refresh(aina_order)
    db.refresh(ben_order)
    assert ben_order.status == "Cooking"
    assert aina_order.status == "Pending"


def test_breakdown_counts_each_order_once_across_days(db, shop) -> None:
    yesterday = _place(db, shop)
    yesterday.created_at = datetime.now(timezone.utc) - timedelta(days=1)
    db.commit()
    _place(db, shop)

    queue = orders.get_queue_snapshot(db, shop["cafeteria"].id, QueueTuning())
    assert queue.snapshot.queue_length == 2
    assert queue.breakdown == {"Pending": 2, "Cooking": 0, "ReadyForPickup": 0, "Completed": 0}


def test_oversized_prices_are_validation_errors(db, shop) -> None:
    with pytest.raises(ValidationError):
        _place(db, shop, items=[{"name": "Gold plate", "quantity": 1, "unit_price": Decimal("1e30")}])
    with pytest.raises(ValidationError):
        _place(
            db,
            shop,
            items=[{"name": "Teh Tarik", "quantity": 10**18, "unit_price": Decimal("99999.00")}],
        )
