"""Pattern rules: compilation and first-match evaluation.

``Combined`` rules test payee and memo independently (payee first) for every
pattern type. Concatenating the two fields would let a substring or regex match
across the field boundary, so the fields are never joined for matching.
"""
import re
from collections.abc import Iterable
from dataclasses import dataclass

from budgetbuddy.domain.errors import InvalidPattern
from budgetbuddy.models import BankTransaction, PatternType, Rule, TargetField


def build_regex(pattern: str, pattern_type: PatternType) -> re.Pattern[str]:
    if pattern_type == PatternType.EXACT:
        source = r"\A" + re.escape(pattern) + r"\Z"
    elif pattern_type == PatternType.CONTAINS:
        source = re.escape(pattern)
    else:
        source = pattern
    try:
        return re.compile(source, re.IGNORECASE)
    except re.error as exc:
        raise InvalidPattern(pattern, str(exc)) from exc


def target_texts(target_field: TargetField, payee: str | None, memo: str | None) -> list[str]:
    if target_field == TargetField.PAYEE:
        return [payee or ""]
    if target_field == TargetField.MEMO:
        return [memo or ""]
    return [payee or "", memo or ""]


@dataclass(frozen=True)
class CompiledRule:
    rule: Rule
    regex: re.Pattern[str]

    def matches(self, payee: str | None, memo: str | None) -> bool:
        return any(
            self.regex.search(text) is not None
            for text in target_texts(self.rule.target_field, payee, memo)
        )


def compile_rule(rule: Rule) -> CompiledRule:
    return CompiledRule(rule=rule, regex=build_regex(rule.pattern, rule.pattern_type))


def _priority_key(compiled: CompiledRule) -> tuple:
    rule = compiled.rule
    return (rule.priority, rule.created_at, rule.id)


class RuleSet:
    """Enabled rules, compiled once and ordered by ascending priority."""

    def __init__(self, compiled_rules: Iterable[CompiledRule]) -> None:
        self.rules = sorted(
            (compiled for compiled in compiled_rules if compiled.rule.enabled),
            key=_priority_key,
        )

    @classmethod
    def from_rules(cls, rules: Iterable[Rule]) -> "RuleSet":
        return cls(compile_rule(rule) for rule in rules)

    def __len__(self) -> int:
        return len(self.rules)

    def match(self, transaction: BankTransaction) -> Rule | None:
        for compiled in self.rules:
            if compiled.matches(transaction.payee, transaction.memo):
                return compiled.rule
        return None


def check_pattern(
    pattern: str,
    pattern_type: PatternType,
    target_field: TargetField,
    payee: str | None = None,
    memo: str | None = None,
) -> bool:
    """Evaluate one pattern the same way batch matching does."""
    regex = build_regex(pattern, pattern_type)
    return any(regex.search(text) is not None for text in target_texts(target_field, payee, memo))
