import asyncio

from budgetbuddy.domain.errors import BudgetServiceError, SplitValidationError, YnabImportFailed
from budgetbuddy.domain.import_ids import (
    format_import_memo,
    generate_forced_import_id,
    generate_import_id,
    truncate_memo,
)
from budgetbuddy.domain.splits import validate_splits
from budgetbuddy.integration.base import (
    Accepted,
    BudgetClient,
    ImportOutcome,
    RejectedDuplicate,
    SubtransactionSubmission,
    TransactionSubmission,
)
from budgetbuddy.logger import get_logger
from budgetbuddy.models import (
    ConfirmedDuplicate,
    DuplicateImportId,
    ImportResult,
    NotDuplicate,
    RejectedByYnab,
    SyncTransaction,
    TransactionStatus,
    UnknownRejection,
    YnabImported,
)

logger = get_logger(__name__)


def is_eligible(sync_tx: SyncTransaction) -> bool:
    if sync_tx.status in (TransactionStatus.SKIPPED, TransactionStatus.IMPORTED):
        return False
    if isinstance(sync_tx.duplicate_status, ConfirmedDuplicate):
        return sync_tx.force_import
    return True


def is_remote_duplicate(sync_tx: SyncTransaction) -> bool:
    status = sync_tx.import_status
    return isinstance(status, RejectedByYnab) and isinstance(status.reason, DuplicateImportId)


def build_submission(sync_tx: SyncTransaction, *, forced: bool = False) -> TransactionSubmission:
    transaction = sync_tx.transaction
    import_id = generate_forced_import_id(transaction.id) if forced else generate_import_id(transaction.id)

    subtransactions = None
    category_id = sync_tx.category_id
    if sync_tx.splits:
        # The review may have stayed open long enough for the splits to drift.
        validate_splits(transaction, sync_tx.splits)
        subtransactions = [
            SubtransactionSubmission(
                amount=split.amount,
                category_id=split.category_id,
                memo=truncate_memo(split.memo) if split.memo else None,
            )
            for split in sync_tx.splits
        ]
        category_id = None

    return TransactionSubmission(
        import_id=import_id,
        date=transaction.booking_date,
        amount=transaction.amount.amount,
        payee_name=sync_tx.final_payee,
        memo=format_import_memo(transaction.memo, transaction.reference),
        category_id=category_id,
        subtransactions=subtransactions,
    )


class ImportOrchestrator:
    """Sends reviewed transactions to the budget one at a time.

    Rejections are recorded on each transaction and never stop the batch.
    Only a transport failure aborts; it surfaces as ``YnabImportFailed`` while
    the outcomes recorded so far stay on the transactions.
    """

    def __init__(self, budget: BudgetClient, call_timeout: float = 30.0):
        self.budget = budget
        self.call_timeout = call_timeout

    async def _submit(self, budget_id: str, account_id: str, submission: TransactionSubmission) -> ImportOutcome:
        return await asyncio.wait_for(
            self.budget.import_transaction(budget_id, account_id, submission),
            timeout=self.call_timeout,
        )

    def _record(self, sync_tx: SyncTransaction, submission: TransactionSubmission, outcome: ImportOutcome,
                result: ImportResult) -> None:
        if isinstance(outcome, Accepted):
            sync_tx.status = TransactionStatus.IMPORTED
            sync_tx.import_status = YnabImported(import_id=submission.import_id)
            result.imported_count += 1
            return

        result.rejected_count += 1
        if isinstance(outcome, RejectedDuplicate):
            sync_tx.import_status = RejectedByYnab(reason=DuplicateImportId(import_id=outcome.import_id))
            result.duplicate_rejections.append(sync_tx.id)
            if isinstance(sync_tx.duplicate_status, NotDuplicate):
                result.missed_duplicates.append(sync_tx.id)
                logger.warning(
                    "[IMPORT] YNAB rejected %s as duplicate but local detection found none",
                    sync_tx.id,
                )
            return

        sync_tx.import_status = RejectedByYnab(reason=UnknownRejection(message=outcome.message))
        logger.warning("[IMPORT] YNAB rejected %s: %s", sync_tx.id, outcome.message)

    async def import_transactions(
        self,
        budget_id: str,
        account_id: str,
        sync_txs: list[SyncTransaction],
        *,
        forced: bool = False,
    ) -> ImportResult:
        result = ImportResult()
        logger.info("[IMPORT] Importing %d transactions (forced=%s)", len(sync_txs), forced)

        for index, sync_tx in enumerate(sync_txs):
            try:
                submission = build_submission(sync_tx, forced=forced)
            except SplitValidationError as exc:
                sync_tx.import_status = RejectedByYnab(reason=UnknownRejection(message=exc.message))
                result.rejected_count += 1
                logger.warning("[IMPORT] Not sending %s: %s", sync_tx.id, exc.message)
                continue

            try:
                outcome = await self._submit(budget_id, account_id, submission)
            except asyncio.TimeoutError:
                message = f"Request timed out after {self.call_timeout:g}s"
                sync_tx.import_status = RejectedByYnab(reason=UnknownRejection(message=message))
                result.rejected_count += 1
                logger.warning("[IMPORT] %s: %s", sync_tx.id, message)
                continue
            except BudgetServiceError as exc:
                not_sent = len(sync_txs) - index
                logger.error("[IMPORT] Aborting import, %d not sent: %s", not_sent, exc.message)
                raise YnabImportFailed(not_sent, exc.message) from exc

            self._record(sync_tx, submission, outcome, result)

        logger.info(
            "[IMPORT] Done: %d imported, %d rejected (%d duplicates, %d missed by detection)",
            result.imported_count,
            result.rejected_count,
            len(result.duplicate_rejections),
            len(result.missed_duplicates),
        )
        return result
