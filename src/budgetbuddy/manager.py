from budgetbuddy.classifiers.rules import CompiledRule, RuleSet, compile_rule
from budgetbuddy.classifiers.special import SpecialCaseDetector
from budgetbuddy.logger import get_logger
from budgetbuddy.models import (
    BankTransaction,
    DuplicateDetectionDetails,
    NotDuplicate,
    Rule,
    SyncTransaction,
    TransactionStatus,
)
from budgetbuddy.persistence.stores import RuleStore

logger = get_logger(__name__)


class CategorizerService:
    """Applies the stored rules to bank transactions.

    Compiled patterns are cached per rule and recompiled only when the rule's
    ``updated_at`` moves, so a sync with thousands of transactions compiles
    every rule once.
    """

    def __init__(self, rule_store: RuleStore, detector: SpecialCaseDetector | None = None):
        self.rule_store = rule_store
        self.detector = detector or SpecialCaseDetector()
        self._compiled: dict[str, CompiledRule] = {}

    def invalidate(self, rule_id: str | None = None) -> None:
        if rule_id is None:
            self._compiled.clear()
        else:
            self._compiled.pop(rule_id, None)

    def _compiled_rule(self, rule: Rule) -> CompiledRule:
        cached = self._compiled.get(rule.id)
        if cached is not None and cached.rule.updated_at == rule.updated_at:
            return cached
        compiled = compile_rule(rule)
        self._compiled[rule.id] = compiled
        return compiled

    def rule_set(self) -> RuleSet:
        rules = self.rule_store.get_enabled_rules_by_priority()
        live_ids = {rule.id for rule in rules}
        for stale_id in set(self._compiled) - live_ids:
            del self._compiled[stale_id]
        return RuleSet(self._compiled_rule(rule) for rule in rules)

    def _apply(self, sync_tx: SyncTransaction, rule_set: RuleSet) -> None:
        transaction = sync_tx.transaction
        rule = rule_set.match(transaction)
        sync_tx.external_links = self.detector.detect(transaction)

        if rule is not None:
            sync_tx.status = TransactionStatus.AUTO_CATEGORIZED
            sync_tx.category_id = rule.category_id
            sync_tx.category_name = rule.category_name
            sync_tx.matched_rule_id = rule.id
            if rule.payee_override and (sync_tx.payee_override is None or sync_tx.payee_override_from_rule):
                sync_tx.payee_override = rule.payee_override
                sync_tx.payee_override_from_rule = True
            logger.debug("[RULES] '%s' matched rule '%s'", transaction.payee, rule.name)
        elif sync_tx.external_links:
            sync_tx.status = TransactionStatus.NEEDS_ATTENTION
            logger.debug("[RULES] '%s' needs attention (special case)", transaction.payee)
        else:
            sync_tx.status = TransactionStatus.PENDING

    def categorize(self, transactions: list[BankTransaction]) -> list[SyncTransaction]:
        rule_set = self.rule_set()
        results: list[SyncTransaction] = []
        for transaction in transactions:
            sync_tx = SyncTransaction(
                transaction=transaction,
                duplicate_status=NotDuplicate(
                    details=DuplicateDetectionDetails(transaction_reference=transaction.reference)
                ),
            )
            self._apply(sync_tx, rule_set)
            results.append(sync_tx)

        matched = sum(1 for tx in results if tx.status == TransactionStatus.AUTO_CATEGORIZED)
        logger.info(
            "[RULES] Categorized %d/%d transactions with %d active rules",
            matched,
            len(results),
            len(rule_set),
        )
        return results

    def apply_rules(self, sync_txs: list[SyncTransaction]) -> int:
        """Re-run rules on transactions that were not touched by the user.

        Manual decisions, skips, splits and imported transactions are left as
        they are. Returns how many transactions changed category.
        """
        rule_set = self.rule_set()
        changed = 0
        for sync_tx in sync_txs:
            if sync_tx.status not in (
                TransactionStatus.PENDING,
                TransactionStatus.AUTO_CATEGORIZED,
                TransactionStatus.NEEDS_ATTENTION,
            ) or sync_tx.splits:
                continue
            previous = sync_tx.category_id
            if sync_tx.status == TransactionStatus.AUTO_CATEGORIZED:
                sync_tx.category_id = None
                sync_tx.category_name = None
                sync_tx.matched_rule_id = None
            if sync_tx.payee_override_from_rule:
                sync_tx.payee_override = None
                sync_tx.payee_override_from_rule = False
            self._apply(sync_tx, rule_set)
            if sync_tx.category_id != previous:
                changed += 1
        logger.info("[RULES] Re-applied rules, %d transactions changed", changed)
        return changed
