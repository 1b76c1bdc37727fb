from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from campus_eats.errors import ValidationError

CENT = Decimal("0.01")
# largest amount a BIGINT *_cents column holds
MAX_CENTS = 2**63 - 1


def to_cents(amount: Decimal | int | str) -> int:
    """Convert a two-place ringgit amount to sen; more than two places is rejected."""
    try:
        value = Decimal(str(amount))
        if not value.is_finite():
            raise ValidationError(f"invalid amount: {amount!r}")
        quantized = value.quantize(CENT)
    except InvalidOperation as exc:
        raise ValidationError(f"invalid amount: {amount!r}") from exc
    if value != quantized:
        raise ValidationError(f"amount has more than two decimal places: {amount}")
    cents = int(quantized * 100)
    if abs(cents) > MAX_CENTS:
        raise ValidationError(f"amount is out of range: {amount}")
    return cents


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def split_equal(total_cents: int, parts: int) -> list[int]:
    """Split ``total_cents`` into ``parts`` shares that sum to the total exactly.

    Every share but the last is ``total / parts`` rounded half-up to the sen;
    the last share absorbs the remainder. 4550 over 3 gives 1517, 1517, 1516.
    When rounding up would push the last share below zero the base share is
    floored instead.
    """
    if parts < 1:
        raise ValidationError("at least one participant is required")
    if total_cents < 0:
        raise ValidationError("total must not be negative")
    base = int((Decimal(total_cents) / parts).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if base * (parts - 1) > total_cents:
        base = total_cents // parts
    shares = [base] * (parts - 1)
    shares.append(total_cents - base * (parts - 1))
    return shares


def split_custom(total_cents: int, amounts: list[Decimal | int | str]) -> list[int]:
    shares = [to_cents(amount) for amount in amounts]
    if any(share < 0 for share in shares):
        raise ValidationError("custom amounts must not be negative")
    if sum(shares) != total_cents:
        raise ValidationError("custom amounts must sum to the total amount")
    return shares
