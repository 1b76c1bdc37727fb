from decimal import Decimal

import pytest

from campus_eats.errors import ValidationError
from campus_eats.money import from_cents, split_custom, split_equal, to_cents


def test_forty_five_fifty_over_three() -> None:
    assert split_equal(4550, 3) == [1517, 1517, 1516]


def test_even_split_has_no_remainder() -> None:
    assert split_equal(3000, 3) == [1000, 1000, 1000]


def test_single_participant_takes_everything() -> None:
    assert split_equal(999, 1) == [999]


def test_rounding_up_never_makes_the_last_share_negative() -> None:
    # 2/4 rounds half-up to 1 sen, which would leave -1 for the last share
    shares = split_equal(2, 4)
    assert shares == [0, 0, 0, 2]
    assert split_equal(5, 4) == [1, 1, 1, 2]


@pytest.mark.parametrize("parts", [2, 3, 4, 6, 7, 9, 13])
def test_shares_always_sum_to_total(parts: int) -> None:
    for total in (1, 2, 7, 99, 100, 101, 4550, 12345, 99999):
        shares = split_equal(total, parts)
        assert len(shares) == parts
        assert sum(shares) == total
        assert min(shares) >= 0
        assert len(set(shares[:-1])) <= 1


def test_split_rejects_bad_input() -> None:
    with pytest.raises(ValidationError):
        split_equal(100, 0)
    with pytest.raises(ValidationError):
        split_equal(-1, 2)


def test_to_cents() -> None:
    assert to_cents(Decimal("45.50")) == 4550
    assert to_cents("6.5") == 650
    assert to_cents(3) == 300
    with pytest.raises(ValidationError):
        to_cents("1.005")
    with pytest.raises(ValidationError):
        to_cents("abc")
    with pytest.raises(ValidationError):
        to_cents("NaN")


def test_from_cents() -> None:
    assert from_cents(1517) == Decimal("15.17")
    assert from_cents(0) == Decimal("0.00")


def test_to_cents_rejects_amounts_beyond_storage() -> None:
    with pytest.raises(ValidationError):
        to_cents(Decimal("1e30"))
    with pytest.raises(ValidationError):
        to_cents(Decimal("1e20"))
    assert to_cents(Decimal("92233720368547758.07")) == 2**63 - 1


def test_split_custom() -> None:
    assert split_custom(4550, ["5.50", Decimal("20.00"), 20]) == [550, 2000, 2000]
    with pytest.raises(ValidationError):
        split_custom(4550, ["5.50", "20.00", "19.99"])
    with pytest.raises(ValidationError):
        split_custom(100, ["1.50", "-0.50"])
