"""eta = baseline(status) + rank * mean contribution of the orders ahead."""
from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence, Union

from campus_eats.models import (
    ORDER_COMPLETED,
    ORDER_COOKING,
    ORDER_PENDING,
    ORDER_READY,
    ORDER_STATUSES,
)

READY = "READY"

ACTIVE_STATUSES = (ORDER_PENDING, ORDER_COOKING)

Eta = Union[int, str]


@dataclass(frozen=True)
class QueueTuning:
    pending_baseline_minutes: int = 10
    cooking_baseline_minutes: int = 5
    minutes_per_item: float = 5
    default_slot_minutes: float = 3
    bulk_threshold: int = 5
    bulk_multiplier: float = 1.5

    @classmethod
    def from_settings(cls, settings) -> "QueueTuning":
        return cls(
            pending_baseline_minutes=settings.pending_baseline_minutes,
            cooking_baseline_minutes=settings.cooking_baseline_minutes,
            minutes_per_item=settings.minutes_per_item,
            default_slot_minutes=settings.default_slot_minutes,
            bulk_threshold=settings.bulk_threshold,
            bulk_multiplier=settings.bulk_multiplier,
        )


@dataclass(frozen=True)
class QueueEntry:
    order_id: int
    status: str
    quantities: tuple[int, ...] = field(default_factory=tuple)
    created_at: Optional[datetime] = None
    queue_number: Optional[str] = None

    @property
    def item_count(self) -> int:
        return sum(self.quantities)


@dataclass(frozen=True)
class OrderEta:
    order_id: int
    rank: Optional[int]
    eta_minutes: Eta
    is_bulk: bool
    queue_number: Optional[str] = None


@dataclass(frozen=True)
class QueueSnapshot:
    queue_length: int
    average_wait_minutes: int
    per_order_eta: tuple[OrderEta, ...]

    def eta_for(self, order_id: int) -> Optional[OrderEta]:
        for eta in self.per_order_eta:
            if eta.order_id == order_id:
                return eta
        return None


def is_active(status: str) -> bool:
    return status in ACTIVE_STATUSES


def is_bulk(entry: QueueEntry, tuning: QueueTuning) -> bool:
    return entry.item_count > tuning.bulk_threshold


def baseline(status: str, tuning: QueueTuning) -> Eta:
    if status == ORDER_PENDING:
        return tuning.pending_baseline_minutes
    if status == ORDER_COOKING:
        return tuning.cooking_baseline_minutes
    if status in (ORDER_READY, ORDER_COMPLETED):
        return READY
    raise ValueError(f"unknown order status: {status}")


def marginal_contribution(entry: QueueEntry, tuning: QueueTuning) -> float:
    minutes = tuning.minutes_per_item * entry.item_count
    if is_bulk(entry, tuning):
        minutes *= tuning.bulk_multiplier
    return minutes


def average_slot(ahead: Sequence[QueueEntry], tuning: QueueTuning) -> float:
    if not ahead:
        return tuning.default_slot_minutes
    return sum(marginal_contribution(entry, tuning) for entry in ahead) / len(ahead)


def _whole_minutes(value: float) -> int:
    # round first so float noise (3.3000000000000003) does not add a minute
    return int(math.ceil(round(value, 6)))


def estimate_eta(entry: QueueEntry, ahead: Sequence[QueueEntry], tuning: QueueTuning) -> Eta:
    base = baseline(entry.status, tuning)
    if base == READY:
        return READY
    rank = len(ahead)
    if rank == 0:
        return base
    return _whole_minutes(base + rank * average_slot(ahead, tuning))


def build_snapshot(entries: Iterable[QueueEntry], tuning: QueueTuning) -> QueueSnapshot:
    """Rank the active entries FIFO (input order) and estimate each one."""
    active = [entry for entry in entries if is_active(entry.status)]
    etas = []
    for rank, entry in enumerate(active):
        etas.append(
            OrderEta(
                order_id=entry.order_id,
                rank=rank,
                eta_minutes=estimate_eta(entry, active[:rank], tuning),
                is_bulk=is_bulk(entry, tuning),
                queue_number=entry.queue_number,
            )
        )
    average = 0
    if etas:
        average = _whole_minutes(sum(eta.eta_minutes for eta in etas) / len(etas))
    return QueueSnapshot(
        queue_length=len(active),
        average_wait_minutes=average,
        per_order_eta=tuple(etas),
    )


def status_breakdown(entries: Iterable[QueueEntry]) -> dict[str, int]:
    counts = Counter(entry.status for entry in entries)
    return {status: counts.get(status, 0) for status in ORDER_STATUSES}


def format_eta(eta: Eta) -> str:
    if eta == READY:
        return "Ready now"
    if eta <= 60:
        return f"Ready in approximately {eta} minutes"
    hours, minutes = divmod(eta, 60)
    return f"Ready in approximately {hours}h {minutes}m"


def next_queue_number(cafeteria_name: str, orders_today: int) -> str:
    """Queue number for the next order of the day, e.g. ``A01`` or ``B12``."""
    name = (cafeteria_name or "").strip()
    prefix = name[0].upper() if name and name[0].isalpha() else "A"
    return f"{prefix}{orders_today + 1:02d}"
