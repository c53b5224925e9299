import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from budgetbuddy.core.settings import BankCredentials, SyncConfig
from budgetbuddy.integration.base import (
    Accepted,
    BankAuthSession,
    BankClient,
    BudgetClient,
    ImportOutcome,
    TanChallenge,
    Tokens,
    TransactionSubmission,
)
from budgetbuddy.manager import CategorizerService
from budgetbuddy.models import (
    BankTransaction,
    Money,
    PatternType,
    Rule,
    TargetField,
    YnabCategory,
    YnabTransaction,
)
from budgetbuddy.persistence.stores import InMemoryRuleStore, InMemorySessionHistoryStore
from budgetbuddy.services.sessions import SyncSessionManager

TODAY = date(2026, 3, 14)


@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_tx(
    tx_id: str = "tx-1",
    payee: str | None = "REWE Markt",
    amount: str = "-42.50",
    memo: str = "",
    reference: str = "",
    booking_date: date = TODAY,
) -> BankTransaction:
    return BankTransaction(
        id=tx_id,
        booking_date=booking_date,
        amount=Money(amount=Decimal(amount)),
        payee=payee,
        memo=memo,
        reference=reference,
    )


def make_rule(
    rule_id: str = "rule-1",
    pattern: str = "AMAZON",
    category_id: str = "cat-shopping",
    category_name: str = "Shopping",
    priority: int = 100,
    pattern_type: PatternType = PatternType.CONTAINS,
    target_field: TargetField = TargetField.COMBINED,
    enabled: bool = True,
    payee_override: str | None = None,
    updated_at: datetime | None = None,
) -> Rule:
    created = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return Rule(
        id=rule_id,
        name=f"Rule {rule_id}",
        pattern=pattern,
        pattern_type=pattern_type,
        target_field=target_field,
        category_id=category_id,
        category_name=category_name,
        payee_override=payee_override,
        priority=priority,
        enabled=enabled,
        created_at=created,
        updated_at=updated_at or created,
    )


def make_ynab_tx(
    ynab_id: str = "y-1",
    payee: str | None = "REWE Markt",
    amount: str = "-42.50",
    memo: str | None = None,
    import_id: str | None = None,
    on: date = TODAY,
) -> YnabTransaction:
    return YnabTransaction(id=ynab_id, date=on, amount=Decimal(amount), payee=payee, memo=memo, import_id=import_id)


CATEGORIES = [
    YnabCategory(id="cat-shopping", name="Shopping", group_name="Everyday"),
    YnabCategory(id="cat-groceries", name="Groceries", group_name="Everyday"),
    YnabCategory(id="cat-fun", name="Fun", group_name="Wants"),
]


class FakeBank(BankClient):
    def __init__(self, transactions: list[BankTransaction] | None = None) -> None:
        self.transactions = transactions or []
        self.start_error: Exception | None = None
        self.complete_error: Exception | None = None
        self.fetch_error: Exception | None = None
        # When set, fetching waits until the test releases it.
        self.fetch_gate: asyncio.Event | None = None
        self.fetch_started: asyncio.Event | None = None
        self.fetched_days: int | None = None

    async def start_auth(self, credentials: BankCredentials) -> BankAuthSession:
        if self.start_error:
            raise self.start_error
        return BankAuthSession(
            tokens=Tokens(access="access", refresh="refresh"),
            session_identifier="session-1",
            challenge=TanChallenge(id="challenge-1", type="P_TAN_PUSH"),
        )

    async def complete_auth(self, session: BankAuthSession) -> Tokens:
        if self.complete_error:
            raise self.complete_error
        return Tokens(access="banking", refresh="refresh-2")

    async def fetch_transactions(self, tokens: Tokens, account_id: str, days_back: int) -> list[BankTransaction]:
        self.fetched_days = days_back
        if self.fetch_started is not None:
            self.fetch_started.set()
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_error:
            raise self.fetch_error
        return list(self.transactions)


class FakeBudget(BudgetClient):
    def __init__(
        self,
        existing: list[YnabTransaction] | None = None,
        categories: list[YnabCategory] | None = None,
    ) -> None:
        self.existing = existing or []
        self.categories = CATEGORIES if categories is None else categories
        # Consumed one per import call; an exception entry is raised. Defaults to Accepted.
        self.outcomes: list[ImportOutcome | Exception] = []
        self.submissions: list[TransactionSubmission] = []

    async def list_recent_transactions(
        self,
        budget_id: str,
        account_id: str | None = None,
        since_days: int = 30,
    ) -> list[YnabTransaction]:
        return list(self.existing)

    async def list_categories(self, budget_id: str) -> list[YnabCategory]:
        return list(self.categories)

    async def import_transaction(
        self,
        budget_id: str,
        account_id: str,
        submission: TransactionSubmission,
    ) -> ImportOutcome:
        self.submissions.append(submission)
        outcome = self.outcomes.pop(0) if self.outcomes else Accepted(transaction_id=f"y-{len(self.submissions)}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_config(**overrides) -> SyncConfig:
    values = {
        "credentials": BankCredentials(
            client_id="client",
            client_secret="secret",
            username="user",
            password="pin",
        ),
        "bank_account_id": "bank-account",
        "budget_id": "budget-1",
        "budget_account_id": "ynab-account",
        "days_to_fetch": 30,
        "import_call_timeout": 1.0,
    }
    values.update(overrides)
    return SyncConfig(**values)


@pytest.fixture
def rule_store() -> InMemoryRuleStore:
    return InMemoryRuleStore([make_rule()])


@pytest.fixture
def bank() -> FakeBank:
    return FakeBank([
        make_tx("tx-1", payee="AMAZON MARKETPLACE", amount="-19.99", reference="REF1"),
        make_tx("tx-2", payee="Unknown Shop", amount="-5.00", reference="REF2"),
        make_tx("tx-3", payee="REWE Markt", amount="-42.50", reference="REF3"),
    ])


@pytest.fixture
def budget() -> FakeBudget:
    return FakeBudget()


@pytest.fixture
def history() -> InMemorySessionHistoryStore:
    return InMemorySessionHistoryStore()


@pytest.fixture
def manager(
    bank: FakeBank,
    budget: FakeBudget,
    history: InMemorySessionHistoryStore,
    rule_store: InMemoryRuleStore,
) -> SyncSessionManager:
    return SyncSessionManager(
        bank=bank,
        budget=budget,
        history=history,
        categorizer=CategorizerService(rule_store),
        config=make_config(),
    )


async def start_review(manager: SyncSessionManager) -> None:
    await manager.start_sync()
    await manager.confirm_tan()
