from decimal import Decimal

import pytest

from budgetbuddy.domain.errors import SplitValidationError
from budgetbuddy.domain.splits import validate_splits
from budgetbuddy.models import TransactionSplit
from conftest import make_tx


def _split(category_id: str, amount: str) -> TransactionSplit:
    return TransactionSplit(category_id=category_id, amount=Decimal(amount))


def test_exact_sum_accepted() -> None:
    validate_splits(make_tx(amount="-100.00"), [_split("a", "-60.00"), _split("b", "-40.00")])


def test_one_cent_off_accepted() -> None:
    validate_splits(make_tx(amount="-100.00"), [_split("a", "-60.00"), _split("b", "-40.01")])
    validate_splits(make_tx(amount="-100.00"), [_split("a", "-60.00"), _split("b", "-39.99")])


def test_two_cents_off_rejected() -> None:
    with pytest.raises(SplitValidationError):
        validate_splits(make_tx(amount="-100.00"), [_split("a", "-60.00"), _split("b", "-40.02")])
    with pytest.raises(SplitValidationError):
        validate_splits(make_tx(amount="-100.00"), [_split("a", "-60.00"), _split("b", "-39.98")])


def test_single_entry_rejected_even_when_amount_matches() -> None:
    with pytest.raises(SplitValidationError, match="at least 2"):
        validate_splits(make_tx(amount="-100.00"), [_split("a", "-100.00")])


def test_entry_without_category_rejected() -> None:
    with pytest.raises(SplitValidationError, match="category"):
        validate_splits(make_tx(amount="-100.00"), [_split("a", "-50.00"), _split("", "-50.00")])
