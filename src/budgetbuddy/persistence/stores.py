import json
import os
from abc import ABC, abstractmethod

from pydantic import TypeAdapter, ValidationError

from budgetbuddy.domain.errors import RuleNotFound, StorageError
from budgetbuddy.logger import get_logger
from budgetbuddy.models import Rule, SyncSession

logger = get_logger(__name__)

_RULES_ADAPTER = TypeAdapter(list[Rule])
_SESSIONS_ADAPTER = TypeAdapter(list[SyncSession])


class RuleStore(ABC):
    @abstractmethod
    def list_rules(self) -> list[Rule]:
        """All rules, enabled or not."""

    @abstractmethod
    def save_rule(self, rule: Rule) -> Rule:
        """Insert or replace a rule by id."""

    @abstractmethod
    def delete_rule(self, rule_id: str) -> None:
        """Remove a rule; raises ``RuleNotFound`` when absent."""

    def get_rule(self, rule_id: str) -> Rule:
        for rule in self.list_rules():
            if rule.id == rule_id:
                return rule
        raise RuleNotFound(rule_id)

    def get_enabled_rules_by_priority(self) -> list[Rule]:
        rules = [rule for rule in self.list_rules() if rule.enabled]
        return sorted(rules, key=lambda rule: (rule.priority, rule.created_at, rule.id))


class SessionHistoryStore(ABC):
    @abstractmethod
    def persist_session(self, session: SyncSession) -> None:
        """Record a terminal session; a later record with the same id replaces it."""

    @abstractmethod
    def get_recent_sessions(self, count: int) -> list[SyncSession]:
        """Newest first."""


class InMemoryRuleStore(RuleStore):
    def __init__(self, rules: list[Rule] | None = None) -> None:
        self._rules: dict[str, Rule] = {rule.id: rule for rule in rules or []}

    def list_rules(self) -> list[Rule]:
        return list(self._rules.values())

    def save_rule(self, rule: Rule) -> Rule:
        self._rules[rule.id] = rule
        return rule

    def delete_rule(self, rule_id: str) -> None:
        if rule_id not in self._rules:
            raise RuleNotFound(rule_id)
        del self._rules[rule_id]


class InMemorySessionHistoryStore(SessionHistoryStore):
    def __init__(self) -> None:
        self._sessions: dict[str, SyncSession] = {}

    def persist_session(self, session: SyncSession) -> None:
        self._sessions.pop(session.id, None)
        self._sessions[session.id] = session.model_copy(deep=True)

    def get_recent_sessions(self, count: int) -> list[SyncSession]:
        return list(reversed(list(self._sessions.values())))[:count]


class _JsonFile:
    def __init__(self, data_path: str) -> None:
        self.data_path = data_path

    def read(self) -> list:
        if not os.path.exists(self.data_path):
            return []
        try:
            with open(self.data_path, encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError as exc:
            raise StorageError("load", f"{self.data_path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise StorageError("load", str(exc)) from exc
        return data if isinstance(data, list) else []

    def write(self, payload: bytes) -> None:
        tmp_path = f"{self.data_path}.tmp"
        try:
            with open(tmp_path, "wb") as handle:
                handle.write(payload)
            os.replace(tmp_path, self.data_path)
        except OSError as exc:
            raise StorageError("save", str(exc)) from exc


class JsonRuleStore(InMemoryRuleStore):
    def __init__(self, data_path: str = "rules.json") -> None:
        self._file = _JsonFile(data_path)
        super().__init__(self._load())

    def _load(self) -> list[Rule]:
        try:
            rules = _RULES_ADAPTER.validate_python(self._file.read())
        except ValidationError as exc:
            raise StorageError("load rules", str(exc)) from exc
        logger.info("[RULES] Loaded %d rules from %s", len(rules), self._file.data_path)
        return rules

    def _save(self) -> None:
        self._file.write(_RULES_ADAPTER.dump_json(self.list_rules(), indent=2))

    def save_rule(self, rule: Rule) -> Rule:
        saved = super().save_rule(rule)
        self._save()
        return saved

    def delete_rule(self, rule_id: str) -> None:
        super().delete_rule(rule_id)
        self._save()


class JsonSessionHistoryStore(SessionHistoryStore):
    def __init__(self, data_path: str = "sessions.json", max_records: int = 200) -> None:
        self._file = _JsonFile(data_path)
        self.max_records = max_records

    def _load(self) -> list[SyncSession]:
        try:
            return _SESSIONS_ADAPTER.validate_python(self._file.read())
        except ValidationError as exc:
            raise StorageError("load sessions", str(exc)) from exc

    def persist_session(self, session: SyncSession) -> None:
        sessions = [existing for existing in self._load() if existing.id != session.id]
        sessions.insert(0, session)
        self._file.write(_SESSIONS_ADAPTER.dump_json(sessions[: self.max_records], indent=2))

    def get_recent_sessions(self, count: int) -> list[SyncSession]:
        return self._load()[:count]
