from dataclasses import dataclass

from rapidfuzz import fuzz

from budgetbuddy.core import settings
from budgetbuddy.domain.import_ids import extract_reference, matches_import_id
from budgetbuddy.logger import get_logger
from budgetbuddy.models import (
    BankTransaction,
    ConfirmedDuplicate,
    DuplicateDetectionDetails,
    DuplicateStatus,
    NotDuplicate,
    PossibleDuplicate,
    SyncTransaction,
    YnabTransaction,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class DuplicateCounts:
    confirmed: int = 0
    possible: int = 0
    none: int = 0


def _normalize_payee(payee: str | None) -> str:
    return " ".join((payee or "").lower().split())


class DuplicateDetector:
    """Compares fetched bank transactions with what the budget already holds.

    Three signals are collected for every transaction: an import-id match, the
    bank reference inside an existing memo, and a same-day same-amount record
    with a similar payee. The strongest signal decides the verdict.
    """

    def __init__(self, payee_threshold: float | None = None):
        if payee_threshold is None:
            payee_threshold = settings.DUPLICATE_PAYEE_THRESHOLD
        self.payee_threshold = payee_threshold

    @staticmethod
    def matches_by_import_id(transaction: BankTransaction, existing: list[YnabTransaction]) -> bool:
        return any(matches_import_id(transaction.id, ynab_tx.import_id) for ynab_tx in existing)

    @staticmethod
    def matches_by_reference(transaction: BankTransaction, existing: list[YnabTransaction]) -> bool:
        reference = transaction.reference.strip()
        if not reference:
            return False
        for ynab_tx in existing:
            if not ynab_tx.memo:
                continue
            if reference in ynab_tx.memo or extract_reference(ynab_tx.memo) == reference:
                return True
        return False

    def payees_similar(self, left: str | None, right: str | None) -> bool:
        a = _normalize_payee(left)
        b = _normalize_payee(right)
        if not a or not b:
            return False
        if a in b or b in a:
            return True
        return fuzz.ratio(a, b) >= self.payee_threshold

    def matches_by_date_amount_payee(
        self,
        transaction: BankTransaction,
        existing: list[YnabTransaction],
    ) -> YnabTransaction | None:
        for ynab_tx in existing:
            if ynab_tx.date != transaction.booking_date:
                continue
            if ynab_tx.amount != transaction.amount.amount:
                continue
            if self.payees_similar(transaction.payee, ynab_tx.payee):
                return ynab_tx
        return None

    def detect(self, transaction: BankTransaction, existing: list[YnabTransaction]) -> DuplicateStatus:
        import_id_found = self.matches_by_import_id(transaction, existing)
        reference_found = self.matches_by_reference(transaction, existing)
        fuzzy_match = self.matches_by_date_amount_payee(transaction, existing)

        details = DuplicateDetectionDetails(
            transaction_reference=transaction.reference,
            reference_found=reference_found,
            import_id_found=import_id_found,
            fuzzy_match_date=fuzzy_match.date if fuzzy_match else None,
            fuzzy_match_amount=fuzzy_match.amount if fuzzy_match else None,
            fuzzy_match_payee=fuzzy_match.payee if fuzzy_match else None,
        )

        if import_id_found:
            return ConfirmedDuplicate(reference=transaction.id, details=details)
        if reference_found:
            return ConfirmedDuplicate(reference=transaction.reference, details=details)
        if fuzzy_match is not None:
            reason = (
                f"Similar transaction found: {fuzzy_match.payee or 'Unknown'} "
                f"on {fuzzy_match.date.isoformat()} for {fuzzy_match.amount}"
            )
            return PossibleDuplicate(reason=reason, details=details)
        return NotDuplicate(details=details)

    def mark_duplicates(self, sync_txs: list[SyncTransaction], existing: list[YnabTransaction]) -> DuplicateCounts:
        for sync_tx in sync_txs:
            sync_tx.duplicate_status = self.detect(sync_tx.transaction, existing)
        counts = count_duplicates(sync_txs)
        logger.info(
            "[DEDUP] Checked %d transactions against %d existing: %d confirmed, %d possible",
            len(sync_txs),
            len(existing),
            counts.confirmed,
            counts.possible,
        )
        return counts


def count_duplicates(sync_txs: list[SyncTransaction]) -> DuplicateCounts:
    confirmed = sum(1 for tx in sync_txs if isinstance(tx.duplicate_status, ConfirmedDuplicate))
    possible = sum(1 for tx in sync_txs if isinstance(tx.duplicate_status, PossibleDuplicate))
    return DuplicateCounts(confirmed=confirmed, possible=possible, none=len(sync_txs) - confirmed - possible)
