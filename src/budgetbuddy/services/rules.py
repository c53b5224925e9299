import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import TypeAdapter, ValidationError

from budgetbuddy.classifiers.rules import build_regex, check_pattern
from budgetbuddy.domain.errors import (
    CategoryNotFound,
    DuplicateRule,
    RulesError,
    RuleValidationError,
)
from budgetbuddy.integration.base import BudgetClient
from budgetbuddy.logger import get_logger
from budgetbuddy.manager import CategorizerService
from budgetbuddy.models import (
    PatternType,
    Rule,
    RuleCreateRequest,
    RuleUpdateRequest,
    TargetField,
    YnabCategory,
)
from budgetbuddy.persistence.stores import RuleStore

logger = get_logger(__name__)

NAME_MAX_LENGTH = 100
PATTERN_MAX_LENGTH = 500
PAYEE_OVERRIDE_MAX_LENGTH = 200
PRIORITY_MIN = 0
PRIORITY_MAX = 10000

_CREATE_LIST_ADAPTER = TypeAdapter(list[RuleCreateRequest])


def validate_rule_fields(
    name: str,
    pattern: str,
    priority: int,
    payee_override: str | None,
) -> list[str]:
    errors: list[str] = []
    if not name.strip():
        errors.append("Name is required")
    elif len(name) > NAME_MAX_LENGTH:
        errors.append(f"Name must be at most {NAME_MAX_LENGTH} characters")
    if not pattern.strip():
        errors.append("Pattern is required")
    elif len(pattern) > PATTERN_MAX_LENGTH:
        errors.append(f"Pattern must be at most {PATTERN_MAX_LENGTH} characters")
    if not PRIORITY_MIN <= priority <= PRIORITY_MAX:
        errors.append(f"Priority must be between {PRIORITY_MIN} and {PRIORITY_MAX}")
    if payee_override is not None:
        if not payee_override.strip():
            errors.append("Payee override must not be blank")
        elif len(payee_override) > PAYEE_OVERRIDE_MAX_LENGTH:
            errors.append(f"Payee override must be at most {PAYEE_OVERRIDE_MAX_LENGTH} characters")
    return errors


class RuleService:
    def __init__(
        self,
        store: RuleStore,
        categorizer: CategorizerService,
        budget: BudgetClient | None = None,
        budget_id: str | None = None,
    ) -> None:
        self.store = store
        self.categorizer = categorizer
        self.budget = budget
        self.budget_id = budget_id

    def list_rules(self) -> list[Rule]:
        return sorted(self.store.list_rules(), key=lambda rule: (rule.priority, rule.created_at, rule.id))

    def get_rule(self, rule_id: str) -> Rule:
        return self.store.get_rule(rule_id)

    async def list_categories(self) -> list[YnabCategory]:
        if self.budget is None or not self.budget_id:
            return []
        return await self.budget.list_categories(self.budget_id)

    async def _category_name(self, category_id: str) -> str:
        categories = await self.list_categories()
        if not categories:
            # No budget connection configured; the name is filled in on the next edit.
            return ""
        for category in categories:
            if category.id == category_id:
                return category.name
        raise CategoryNotFound(category_id)

    def _ensure_unique(
        self,
        pattern: str,
        pattern_type: PatternType,
        target_field: TargetField,
        exclude_id: str | None = None,
    ) -> None:
        for rule in self.store.list_rules():
            if rule.id == exclude_id or not rule.enabled:
                continue
            if (
                rule.pattern.lower() == pattern.lower()
                and rule.pattern_type == pattern_type
                and rule.target_field == target_field
            ):
                raise DuplicateRule(pattern)

    async def create_rule(self, request: RuleCreateRequest) -> Rule:
        errors = validate_rule_fields(request.name, request.pattern, request.priority, request.payee_override)
        if errors:
            raise RuleValidationError(errors)
        build_regex(request.pattern, request.pattern_type)
        self._ensure_unique(request.pattern, request.pattern_type, request.target_field)
        category_name = await self._category_name(request.category_id)

        now = datetime.now(timezone.utc)
        rule = Rule(
            id=str(uuid.uuid4()),
            name=request.name.strip(),
            pattern=request.pattern,
            pattern_type=request.pattern_type,
            target_field=request.target_field,
            category_id=request.category_id,
            category_name=category_name,
            payee_override=request.payee_override.strip() if request.payee_override else None,
            priority=request.priority,
            enabled=True,
            created_at=now,
            updated_at=now,
        )
        self.store.save_rule(rule)
        self.categorizer.invalidate(rule.id)
        logger.info("[RULES] Created rule '%s' (%s %s)", rule.name, rule.pattern_type.value, rule.pattern)
        return rule

    async def update_rule(self, rule_id: str, request: RuleUpdateRequest) -> Rule:
        existing = self.store.get_rule(rule_id)
        changes: dict[str, Any] = request.model_dump(exclude_unset=True)
        # An explicit null clears the override; other fields ignore nulls.
        changes = {
            key: value for key, value in changes.items()
            if value is not None or key == "payee_override"
        }
        candidate = existing.model_copy(update=changes)

        errors = validate_rule_fields(
            candidate.name,
            candidate.pattern,
            candidate.priority,
            candidate.payee_override,
        )
        if errors:
            raise RuleValidationError(errors)
        build_regex(candidate.pattern, candidate.pattern_type)
        if candidate.enabled:
            self._ensure_unique(candidate.pattern, candidate.pattern_type, candidate.target_field, exclude_id=rule_id)
        if "category_id" in changes:
            category_name = await self._category_name(candidate.category_id)
            candidate = candidate.model_copy(update={"category_name": category_name})

        updated = candidate.model_copy(update={
            "name": candidate.name.strip(),
            "payee_override": candidate.payee_override.strip() if candidate.payee_override else None,
            "updated_at": datetime.now(timezone.utc),
        })
        self.store.save_rule(updated)
        self.categorizer.invalidate(rule_id)
        logger.info("[RULES] Updated rule '%s'", updated.name)
        return updated

    def delete_rule(self, rule_id: str) -> None:
        self.store.delete_rule(rule_id)
        self.categorizer.invalidate(rule_id)
        logger.info("[RULES] Deleted rule %s", rule_id)

    def check_pattern(
        self,
        pattern: str,
        pattern_type: PatternType,
        target_field: TargetField,
        payee: str | None = None,
        memo: str | None = None,
    ) -> bool:
        return check_pattern(pattern, pattern_type, target_field, payee=payee, memo=memo)

    def export_rules(self) -> list[dict[str, Any]]:
        return [
            RuleCreateRequest(
                name=rule.name,
                pattern=rule.pattern,
                pattern_type=rule.pattern_type,
                target_field=rule.target_field,
                category_id=rule.category_id,
                payee_override=rule.payee_override,
                priority=rule.priority,
            ).model_dump(mode="json")
            for rule in self.list_rules()
        ]

    async def import_rules(self, payload: list[dict[str, Any]]) -> dict[str, Any]:
        """Create rules from an exported list; entries that fail are reported, not fatal."""
        try:
            requests = _CREATE_LIST_ADAPTER.validate_python(payload)
        except ValidationError as exc:
            raise RuleValidationError([str(error["msg"]) for error in exc.errors()]) from exc

        created = 0
        failures: list[dict[str, str]] = []
        for request in requests:
            try:
                await self.create_rule(request)
            except RulesError as exc:
                failures.append({"pattern": request.pattern, "error": exc.message})
            else:
                created += 1
        logger.info("[RULES] Imported %d rules, %d failed", created, len(failures))
        return {"created": created, "failed": failures}
