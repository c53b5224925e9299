from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from pydantic import BaseModel

from budgetbuddy.core.settings import BankCredentials
from budgetbuddy.models import BankTransaction, YnabCategory, YnabTransaction


@dataclass(frozen=True)
class Tokens:
    access: str
    refresh: str
    # Bank-side request context that must accompany every call made with these tokens.
    session_id: str = ""
    request_id: str = ""


@dataclass(frozen=True)
class TanChallenge:
    id: str
    type: str


@dataclass(frozen=True)
class BankAuthSession:
    tokens: Tokens
    session_identifier: str
    challenge: TanChallenge | None = None


class BankClient(ABC):
    """Bank OAuth + push-TAN flow and transaction access.

    Implementations raise ``BankError`` subclasses only.
    """

    @abstractmethod
    async def start_auth(self, credentials: BankCredentials) -> BankAuthSession:
        """Authenticate and request a push-TAN challenge."""

    @abstractmethod
    async def complete_auth(self, session: BankAuthSession) -> Tokens:
        """Finish authentication once the TAN was confirmed on the phone."""

    @abstractmethod
    async def fetch_transactions(
        self, tokens: Tokens, account_id: str, days_back: int
    ) -> list[BankTransaction]:
        """Booked transactions of the last ``days_back`` days."""

    async def aclose(self) -> None:
        return None


class SubtransactionSubmission(BaseModel):
    amount: Decimal
    category_id: str
    memo: str | None = None


class TransactionSubmission(BaseModel):
    import_id: str
    date: date
    amount: Decimal
    payee_name: str
    memo: str
    category_id: str | None = None
    subtransactions: list[SubtransactionSubmission] | None = None
    cleared: str = "cleared"


@dataclass(frozen=True)
class Accepted:
    transaction_id: str | None = None


@dataclass(frozen=True)
class RejectedDuplicate:
    import_id: str


@dataclass(frozen=True)
class RejectedOther:
    message: str


ImportOutcome = Accepted | RejectedDuplicate | RejectedOther


class BudgetClient(ABC):
    """Budget-service access. Implementations raise ``BudgetServiceError`` subclasses only."""

    @abstractmethod
    async def list_recent_transactions(
        self,
        budget_id: str,
        account_id: str | None = None,
        since_days: int = 30,
    ) -> list[YnabTransaction]:
        """Existing transactions of the recent window, for duplicate detection."""

    @abstractmethod
    async def list_categories(self, budget_id: str) -> list[YnabCategory]:
        """Assignable categories of the budget."""

    @abstractmethod
    async def import_transaction(
        self,
        budget_id: str,
        account_id: str,
        submission: TransactionSubmission,
    ) -> ImportOutcome:
        """Create one transaction. Rejections are outcomes, transport failures raise."""

    async def aclose(self) -> None:
        return None
