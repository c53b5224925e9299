"""Owner of the single active sync session.

All state changes go through one ``asyncio.Lock``. Bank and budget-service
calls are started as tasks while the lock is held and awaited after it is
released, so ``cancel`` can always get in and stop them. When such a call
returns, the result is applied only if the session it was started for is still
the active one.
"""
import asyncio
import uuid
from collections.abc import Coroutine, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from budgetbuddy.core.settings import SyncConfig
from budgetbuddy.domain.errors import (
    BankAuthFailed,
    BankError,
    BudgetAccountNotFound,
    BudgetNotFound,
    BudgetServiceError,
    CategoryNotFound,
    InvalidSessionState,
    NotForceImportable,
    SessionAlreadyInProgress,
    SessionCancelled,
    SessionNotFound,
    StaleSessionVersion,
    TanChallengeExpired,
    TanTimeout,
    TransactionAlreadyImported,
    TransactionFetchFailed,
    TransactionNotFound,
    YnabImportFailed,
)
from budgetbuddy.domain.splits import validate_splits
from budgetbuddy.integration.base import BankAuthSession, BankClient, BudgetClient, Tokens
from budgetbuddy.logger import get_logger
from budgetbuddy.manager import CategorizerService
from budgetbuddy.models import (
    ConfirmedDuplicate,
    ImportResult,
    SyncSession,
    SyncSessionStatus,
    SyncTransaction,
    TransactionSplit,
    TransactionStatus,
)
from budgetbuddy.persistence.stores import SessionHistoryStore
from budgetbuddy.services.duplicates import DuplicateCounts, DuplicateDetector, count_duplicates
from budgetbuddy.services.importer import ImportOrchestrator, is_eligible, is_remote_duplicate

logger = get_logger(__name__)

T = TypeVar("T")

PAYEE_MAX_LENGTH = 200


@dataclass
class _ActiveSession:
    session: SyncSession
    transactions: list[SyncTransaction] = field(default_factory=list)
    version: int = 0
    auth: BankAuthSession | None = None
    tokens: Tokens | None = None
    task: asyncio.Task | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SyncSessionManager:
    def __init__(
        self,
        bank: BankClient,
        budget: BudgetClient,
        history: SessionHistoryStore,
        categorizer: CategorizerService,
        config: SyncConfig,
        detector: DuplicateDetector | None = None,
        importer: ImportOrchestrator | None = None,
    ) -> None:
        self.bank = bank
        self.budget = budget
        self.history = history
        self.categorizer = categorizer
        self.config = config
        self.detector = detector or DuplicateDetector()
        self.importer = importer or ImportOrchestrator(budget, call_timeout=config.import_call_timeout)
        self._lock = asyncio.Lock()
        self._active: _ActiveSession | None = None

    # Read side

    def get_current(self) -> SyncSession | None:
        return self._active.session.model_copy() if self._active else None

    @property
    def version(self) -> int:
        return self._active.version if self._active else 0

    def get_transactions(self) -> list[SyncTransaction]:
        if self._active is None:
            raise SessionNotFound(None)
        return [tx.model_copy(deep=True) for tx in self._active.transactions]

    def get_transaction(self, transaction_id: str) -> SyncTransaction:
        if self._active is None:
            raise SessionNotFound(None)
        return self._find(self._active, [transaction_id])[0].model_copy(deep=True)

    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TransactionStatus}
        if self._active:
            for tx in self._active.transactions:
                counts[tx.status.value] += 1
        return counts

    def duplicate_counts(self) -> DuplicateCounts:
        if self._active is None:
            return DuplicateCounts()
        return count_duplicates(self._active.transactions)

    def history_records(self, count: int = 10) -> list[SyncSession]:
        return self.history.get_recent_sessions(count)

    # Internals

    def _require(self, expected: SyncSessionStatus) -> _ActiveSession:
        active = self._active
        if active is None:
            raise SessionNotFound(None)
        if active.session.status != expected:
            raise InvalidSessionState(expected.value, active.session.status.value)
        return active

    def _begin_review(self, expected_version: int | None) -> _ActiveSession:
        active = self._require(SyncSessionStatus.REVIEWING_TRANSACTIONS)
        if expected_version is not None and expected_version != active.version:
            raise StaleSessionVersion(expected_version, active.version)
        return active

    @staticmethod
    def _find(active: _ActiveSession, transaction_ids: Iterable[str]) -> list[SyncTransaction]:
        by_id = {tx.id: tx for tx in active.transactions}
        wanted = list(dict.fromkeys(transaction_ids))
        missing = [tx_id for tx_id in wanted if tx_id not in by_id]
        if missing:
            raise TransactionNotFound(missing)
        return [by_id[tx_id] for tx_id in wanted]

    @staticmethod
    def _ensure_not_imported(sync_tx: SyncTransaction) -> None:
        if sync_tx.status == TransactionStatus.IMPORTED:
            raise TransactionAlreadyImported(sync_tx.id)

    @classmethod
    def _ensure_force_importable(cls, sync_tx: SyncTransaction) -> None:
        cls._ensure_not_imported(sync_tx)
        if sync_tx.status == TransactionStatus.SKIPPED:
            raise NotForceImportable(sync_tx.id, "it is skipped")
        if not (is_remote_duplicate(sync_tx) or isinstance(sync_tx.duplicate_status, ConfirmedDuplicate)):
            raise NotForceImportable(sync_tx.id, "it was not detected or rejected as a duplicate")

    def _ensure_current(self, active: _ActiveSession) -> None:
        if self._active is not active:
            raise SessionCancelled(active.session.id)

    @staticmethod
    def _ensure_idle(active: _ActiveSession) -> None:
        if active.task is not None and not active.task.done():
            status = active.session.status.value
            raise InvalidSessionState(status, f"{status} (request still running)")

    @staticmethod
    def _transition(active: _ActiveSession, status: SyncSessionStatus) -> None:
        logger.info("[SYNC] Session %s: %s -> %s", active.session.id, active.session.status.value, status.value)
        active.session.status = status
        active.version += 1

    @staticmethod
    def _spawn(active: _ActiveSession, coro: Coroutine[Any, Any, T]) -> "asyncio.Task[T]":
        task = asyncio.create_task(coro)
        active.task = task
        return task

    async def _await(self, active: _ActiveSession, task: "asyncio.Task[T]") -> T:
        try:
            return await task
        except asyncio.CancelledError:
            if self._active is not active:
                raise SessionCancelled(active.session.id) from None
            raise
        finally:
            if active.task is task:
                active.task = None

    def _finish(self, active: _ActiveSession, status: SyncSessionStatus) -> None:
        self._transition(active, status)
        active.session.completed_at = _now()
        self.history.persist_session(active.session)

    async def _fail(self, active: _ActiveSession, reason: str) -> SyncSession:
        async with self._lock:
            self._ensure_current(active)
            active.session.failure_reason = reason
            self._finish(active, SyncSessionStatus.FAILED)
            logger.error("[SYNC] Session %s failed: %s", active.session.id, reason)
            return active.session.model_copy()

    async def _resolve_category(self, category_id: str) -> str:
        if not self.config.budget_id:
            return ""
        categories = await self.budget.list_categories(self.config.budget_id)
        if not categories:
            return ""
        for category in categories:
            if category.id == category_id:
                return category.name
        raise CategoryNotFound(category_id)

    # Pipeline

    async def start_sync(self) -> SyncSession:
        async with self._lock:
            current = self._active
            if current is not None and not current.session.status.is_terminal:
                raise SessionAlreadyInProgress(current.session.id, current.session.status.value)
            active = _ActiveSession(session=SyncSession(id=str(uuid.uuid4()), started_at=_now()))
            self._active = active
            logger.info("[SYNC] Session %s started", active.session.id)
            credentials = self.config.credentials
            if credentials is not None:
                task = self._spawn(active, self.bank.start_auth(credentials))

        if credentials is None:
            return await self._fail(active, BankAuthFailed("bank credentials are not configured").message)

        try:
            auth = await self._await(active, task)
        except BankError as exc:
            return await self._fail(active, BankAuthFailed(exc.message).message)

        async with self._lock:
            self._ensure_current(active)
            active.auth = auth
            self._transition(active, SyncSessionStatus.AWAITING_TAN)
            return active.session.model_copy()

    async def _load_transactions(self, tokens: Tokens) -> list[SyncTransaction]:
        account_id = self.config.bank_account_id or ""
        bank_txs = await self.bank.fetch_transactions(tokens, account_id, self.config.days_to_fetch)
        logger.info("[BANK] Fetched %d transactions for the last %d days", len(bank_txs), self.config.days_to_fetch)

        existing = []
        if self.config.budget_id:
            existing = await self.budget.list_recent_transactions(
                self.config.budget_id,
                self.config.budget_account_id,
                since_days=self.config.days_to_fetch,
            )
        else:
            logger.warning("[SYNC] YNAB_BUDGET_ID not set, skipping duplicate detection")

        sync_txs = await asyncio.to_thread(self.categorizer.categorize, bank_txs)
        await asyncio.to_thread(self.detector.mark_duplicates, sync_txs, existing)
        return sync_txs

    async def confirm_tan(self) -> SyncSession:
        async with self._lock:
            active = self._require(SyncSessionStatus.AWAITING_TAN)
            self._ensure_idle(active)
            task = self._spawn(active, self.bank.complete_auth(active.auth))

        try:
            tokens = await self._await(active, task)
        except TanChallengeExpired:
            return await self._fail(active, TanTimeout().message)
        except BankError as exc:
            return await self._fail(active, BankAuthFailed(exc.message).message)

        async with self._lock:
            self._ensure_current(active)
            active.tokens = tokens
            self._transition(active, SyncSessionStatus.FETCHING_TRANSACTIONS)
            fetch = self._spawn(active, self._load_transactions(tokens))

        try:
            sync_txs = await self._await(active, fetch)
        except (BankError, BudgetServiceError) as exc:
            return await self._fail(active, TransactionFetchFailed(exc.message).message)

        async with self._lock:
            self._ensure_current(active)
            active.transactions = sync_txs
            active.session.transaction_count = len(sync_txs)
            self._transition(active, SyncSessionStatus.REVIEWING_TRANSACTIONS)
            return active.session.model_copy()

    # Review

    async def categorize(
        self,
        transaction_id: str,
        category_id: str | None,
        *,
        expected_version: int | None = None,
    ) -> SyncTransaction:
        updated = await self.bulk_categorize([transaction_id], category_id, expected_version=expected_version)
        return updated[0]

    async def bulk_categorize(
        self,
        transaction_ids: list[str],
        category_id: str | None,
        *,
        expected_version: int | None = None,
    ) -> list[SyncTransaction]:
        # Checked up front so a lookup never runs for a session in the wrong state.
        self._begin_review(expected_version)
        category_name = await self._resolve_category(category_id) if category_id else ""

        async with self._lock:
            active = self._begin_review(expected_version)
            targets = self._find(active, transaction_ids)
            for sync_tx in targets:
                self._ensure_not_imported(sync_tx)

            for sync_tx in targets:
                sync_tx.splits = None
                sync_tx.matched_rule_id = None
                if category_id:
                    sync_tx.category_id = category_id
                    sync_tx.category_name = category_name or None
                    sync_tx.status = TransactionStatus.MANUAL_CATEGORIZED
                else:
                    sync_tx.category_id = None
                    sync_tx.category_name = None
                    sync_tx.status = TransactionStatus.PENDING
            active.version += 1
            return [tx.model_copy(deep=True) for tx in targets]

    async def skip(self, transaction_id: str, *, expected_version: int | None = None) -> SyncTransaction:
        async with self._lock:
            active = self._begin_review(expected_version)
            sync_tx = self._find(active, [transaction_id])[0]
            self._ensure_not_imported(sync_tx)
            sync_tx.status = TransactionStatus.SKIPPED
            active.version += 1
            return sync_tx.model_copy(deep=True)

    async def unskip(self, transaction_id: str, *, expected_version: int | None = None) -> SyncTransaction:
        async with self._lock:
            active = self._begin_review(expected_version)
            sync_tx = self._find(active, [transaction_id])[0]
            self._ensure_not_imported(sync_tx)
            if sync_tx.status == TransactionStatus.SKIPPED:
                if sync_tx.splits:
                    sync_tx.status = TransactionStatus.MANUAL_CATEGORIZED
                elif sync_tx.category_id and sync_tx.matched_rule_id:
                    sync_tx.status = TransactionStatus.AUTO_CATEGORIZED
                elif sync_tx.category_id:
                    sync_tx.status = TransactionStatus.MANUAL_CATEGORIZED
                elif sync_tx.external_links:
                    sync_tx.status = TransactionStatus.NEEDS_ATTENTION
                else:
                    sync_tx.status = TransactionStatus.PENDING
                active.version += 1
            return sync_tx.model_copy(deep=True)

    async def split(
        self,
        transaction_id: str,
        splits: list[TransactionSplit],
        *,
        expected_version: int | None = None,
    ) -> SyncTransaction:
        active = self._begin_review(expected_version)
        sync_tx = self._find(active, [transaction_id])[0]
        self._ensure_not_imported(sync_tx)
        validate_splits(sync_tx.transaction, splits)
        named = []
        for entry in splits:
            name = await self._resolve_category(entry.category_id)
            named.append(entry.model_copy(update={"category_name": name or entry.category_name}))

        async with self._lock:
            active = self._begin_review(expected_version)
            sync_tx = self._find(active, [transaction_id])[0]
            self._ensure_not_imported(sync_tx)
            sync_tx.splits = named
            sync_tx.status = TransactionStatus.MANUAL_CATEGORIZED
            active.version += 1
            return sync_tx.model_copy(deep=True)

    async def clear_split(self, transaction_id: str, *, expected_version: int | None = None) -> SyncTransaction:
        async with self._lock:
            active = self._begin_review(expected_version)
            sync_tx = self._find(active, [transaction_id])[0]
            self._ensure_not_imported(sync_tx)
            if sync_tx.splits:
                sync_tx.splits = None
                if sync_tx.status != TransactionStatus.SKIPPED:
                    sync_tx.status = (
                        TransactionStatus.MANUAL_CATEGORIZED if sync_tx.category_id else TransactionStatus.PENDING
                    )
                active.version += 1
            return sync_tx.model_copy(deep=True)

    async def set_payee_override(
        self,
        transaction_id: str,
        payee: str | None,
        *,
        expected_version: int | None = None,
    ) -> SyncTransaction:
        cleaned = (payee or "").strip()[:PAYEE_MAX_LENGTH] or None
        async with self._lock:
            active = self._begin_review(expected_version)
            sync_tx = self._find(active, [transaction_id])[0]
            self._ensure_not_imported(sync_tx)
            sync_tx.payee_override = cleaned
            sync_tx.payee_override_from_rule = False
            active.version += 1
            return sync_tx.model_copy(deep=True)

    async def set_notes(
        self,
        transaction_id: str,
        notes: str | None,
        *,
        expected_version: int | None = None,
    ) -> SyncTransaction:
        async with self._lock:
            active = self._begin_review(expected_version)
            sync_tx = self._find(active, [transaction_id])[0]
            sync_tx.user_notes = (notes or "").strip() or None
            active.version += 1
            return sync_tx.model_copy(deep=True)

    async def reapply_rules(self, *, expected_version: int | None = None) -> int:
        async with self._lock:
            active = self._begin_review(expected_version)
            changed = self.categorizer.apply_rules(active.transactions)
            active.version += 1
            return changed

    async def mark_force_import(
        self,
        transaction_ids: list[str],
        *,
        expected_version: int | None = None,
    ) -> list[SyncTransaction]:
        async with self._lock:
            active = self._begin_review(expected_version)
            targets = self._find(active, transaction_ids)
            for sync_tx in targets:
                self._ensure_not_imported(sync_tx)
            for sync_tx in targets:
                sync_tx.force_import = True
            active.version += 1
            return [tx.model_copy(deep=True) for tx in targets]

    # Import

    def _import_target(self) -> tuple[str, str]:
        if not self.config.budget_id:
            raise BudgetNotFound("<not configured>")
        if not self.config.budget_account_id:
            raise BudgetAccountNotFound("<not configured>")
        return self.config.budget_id, self.config.budget_account_id

    @staticmethod
    def _update_counters(active: _ActiveSession) -> None:
        session = active.session
        session.imported_count = sum(1 for tx in active.transactions if tx.status == TransactionStatus.IMPORTED)
        session.skipped_count = sum(1 for tx in active.transactions if tx.status == TransactionStatus.SKIPPED)

    async def import_to_ynab(self, *, expected_version: int | None = None) -> ImportResult:
        async with self._lock:
            active = self._begin_review(expected_version)
            budget_id, account_id = self._import_target()
            eligible = [tx for tx in active.transactions if is_eligible(tx)]
            self._transition(active, SyncSessionStatus.IMPORTING_TO_YNAB)
            task = self._spawn(active, self.importer.import_transactions(budget_id, account_id, eligible))

        try:
            result = await self._await(active, task)
        except YnabImportFailed as exc:
            await self._fail(active, exc.message)
            raise

        async with self._lock:
            self._ensure_current(active)
            self._update_counters(active)
            self._finish(active, SyncSessionStatus.COMPLETED)
            logger.info(
                "[SYNC] Session %s completed: %d imported, %d skipped of %d",
                active.session.id,
                active.session.imported_count,
                active.session.skipped_count,
                active.session.transaction_count,
            )
            return result

    async def force_import(self, transaction_ids: list[str] | None = None) -> ImportResult:
        """Resubmit transactions YNAB rejected as duplicates, under a fresh import id."""
        async with self._lock:
            active = self._require(SyncSessionStatus.COMPLETED)
            self._ensure_idle(active)
            budget_id, account_id = self._import_target()
            if transaction_ids is None:
                targets = [tx for tx in active.transactions if is_remote_duplicate(tx)]
            else:
                targets = self._find(active, transaction_ids)
                for sync_tx in targets:
                    self._ensure_force_importable(sync_tx)
            task = self._spawn(
                active,
                self.importer.import_transactions(budget_id, account_id, targets, forced=True),
            )

        result = await self._await(active, task)

        async with self._lock:
            self._ensure_current(active)
            self._update_counters(active)
            active.version += 1
            self.history.persist_session(active.session)
            return result

    async def cancel(self) -> None:
        async with self._lock:
            active = self._active
            if active is None:
                raise SessionNotFound(None)
            self._active = None
            if active.task is not None and not active.task.done():
                active.task.cancel()
            logger.info("[SYNC] Session %s cancelled in state %s", active.session.id, active.session.status.value)
