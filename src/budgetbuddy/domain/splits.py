from decimal import Decimal

from budgetbuddy.domain.errors import SplitValidationError
from budgetbuddy.models import BankTransaction, TransactionSplit

SPLIT_TOLERANCE = Decimal("0.01")


def validate_splits(transaction: BankTransaction, splits: list[TransactionSplit]) -> None:
    """Raise ``SplitValidationError`` unless ``splits`` is a valid allocation of ``transaction``."""
    if len(splits) < 2:
        raise SplitValidationError(transaction.id, "a split needs at least 2 entries")

    for split in splits:
        if not split.category_id:
            raise SplitValidationError(transaction.id, "every split needs a category")

    total = sum((split.amount for split in splits), Decimal("0"))
    difference = abs(total - transaction.amount.amount)
    if difference > SPLIT_TOLERANCE:
        raise SplitValidationError(
            transaction.id,
            f"splits sum to {total}, transaction amount is {transaction.amount.amount}",
        )
