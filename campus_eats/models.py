from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from campus_eats.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")

INSTRUMENT_TYPES = ("fpx", "ewallet", "card")
BALANCE_TYPES = ("fpx", "ewallet")

ORDER_PENDING = "Pending"
ORDER_COOKING = "Cooking"
ORDER_READY = "ReadyForPickup"
ORDER_COMPLETED = "Completed"
ORDER_STATUSES = (ORDER_PENDING, ORDER_COOKING, ORDER_READY, ORDER_COMPLETED)

SESSION_ACTIVE = "Active"
SESSION_EXPIRED = "Expired"
SESSION_CANCELLED = "Cancelled"
SESSION_COMPLETED = "Completed"

PARTICIPANT_PENDING = "Pending"
PARTICIPANT_ACCEPTED = "Accepted"
PARTICIPANT_DECLINED = "Declined"
PARTICIPANT_PAID = "Paid"

SPLIT_EQUAL = "Equal"
SPLIT_CUSTOM = "Custom"
SPLIT_METHODS = (SPLIT_EQUAL, "ByItems", SPLIT_CUSTOM)


class UserAccount(Base):
    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class UserAlias(Base):
    __tablename__ = "user_alias"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_account.id"), nullable=False, index=True
    )
    identifier: Mapped[str] = mapped_column(Text, nullable=False, unique=True)


class UserPreference(Base):
    __tablename__ = "user_preference"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_account.id"), primary_key=True
    )
    favourite_cafeteria_ids: Mapped[list] = mapped_column(JSON_TYPE, nullable=False, default=list)
    favourite_categories: Mapped[list] = mapped_column(JSON_TYPE, nullable=False, default=list)
    email_notifications: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    order_updates: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    promotions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dietary_type: Mapped[str | None] = mapped_column(Text)
    spice_level: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Cafeteria(Base):
    __tablename__ = "cafeteria"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    owner_user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_account.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str | None] = mapped_column(Text)
    is_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class PaymentInstrument(Base):
    __tablename__ = "payment_instrument"
    __table_args__ = (
        CheckConstraint("type IN ('fpx', 'ewallet', 'card')", name="instrument_type"),
        CheckConstraint(
            "(type = 'card' AND credit_limit_cents IS NOT NULL AND balance_cents IS NULL) "
            "OR (type <> 'card' AND balance_cents IS NOT NULL AND credit_limit_cents IS NULL)",
            name="instrument_funding_kind",
        ),
        CheckConstraint("balance_cents IS NULL OR balance_cents >= 0", name="balance_non_negative"),
        CheckConstraint(
            "credit_limit_cents IS NULL OR credit_limit_cents >= 0", name="credit_limit_non_negative"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_account.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    credential_hash: Mapped[str | None] = mapped_column(Text)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    balance_cents: Mapped[int | None] = mapped_column(BigInteger)
    credit_limit_cents: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Order(Base):
    __tablename__ = "customer_order"
    __table_args__ = (
        CheckConstraint(
            "status IN ('Pending', 'Cooking', 'ReadyForPickup', 'Completed')", name="order_status"
        ),
        Index("ix_customer_order_queue", "cafeteria_id", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_account.id"), nullable=False, index=True
    )
    cafeteria_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("cafeteria.id"), nullable=False
    )
    items: Mapped[list] = mapped_column(JSON_TYPE, nullable=False)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    instrument_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("payment_instrument.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(Text, nullable=False, default=ORDER_PENDING)
    queue_number: Mapped[str] = mapped_column(Text, nullable=False)
    split_session_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("split_bill_session.id"), index=True
    )
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class Receipt(Base):
    __tablename__ = "receipt"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("customer_order.id"), nullable=False, unique=True
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_account.id"), nullable=False
    )
    cafeteria_name: Mapped[str] = mapped_column(Text, nullable=False)
    cafeteria_location: Mapped[str | None] = mapped_column(Text)
    queue_number: Mapped[str] = mapped_column(Text, nullable=False)
    items: Mapped[list] = mapped_column(JSON_TYPE, nullable=False)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_method: Mapped[str] = mapped_column(Text, nullable=False)
    customer_email: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class SplitBillSession(Base):
    __tablename__ = "split_bill_session"
    __table_args__ = (
        CheckConstraint(
            "status IN ('Active', 'Expired', 'Cancelled', 'Completed')", name="session_status"
        ),
        CheckConstraint("total_amount_cents > 0", name="session_total_positive"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    initiator_user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_account.id"), nullable=False, index=True
    )
    cafeteria_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("cafeteria.id"), nullable=False
    )
    items: Mapped[list] = mapped_column(JSON_TYPE, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    split_method: Mapped[str] = mapped_column(Text, nullable=False, default=SPLIT_EQUAL)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=SESSION_ACTIVE)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class SplitBillParticipant(Base):
    __tablename__ = "split_bill_participant"
    __table_args__ = (
        CheckConstraint(
            "status IN ('Pending', 'Accepted', 'Declined', 'Paid')", name="participant_status"
        ),
        CheckConstraint("amount_due_cents >= 0", name="participant_amount_non_negative"),
        Index("ix_split_bill_participant_position", "session_id", "position", unique=True),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("split_bill_session.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_account.id"), nullable=False
    )
    identifier: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    is_initiator: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    amount_due_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=PARTICIPANT_PENDING)
    order_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("customer_order.id")
    )
    covered_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    responded_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
