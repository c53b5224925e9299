from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field


class Money(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: str = "EUR"


class BankTransaction(BaseModel):
    """A booked transaction as reported by the bank. Never mutated."""
    model_config = ConfigDict(frozen=True)

    id: str
    booking_date: date
    amount: Money
    payee: str | None = None
    memo: str = ""
    reference: str = ""
    raw_data: str = ""  # original JSON, debugging only


class TransactionStatus(str, Enum):
    PENDING = "pending"
    AUTO_CATEGORIZED = "auto_categorized"
    MANUAL_CATEGORIZED = "manual_categorized"
    NEEDS_ATTENTION = "needs_attention"
    SKIPPED = "skipped"
    IMPORTED = "imported"


class PatternType(str, Enum):
    CONTAINS = "contains"
    EXACT = "exact"
    REGEX = "regex"


class TargetField(str, Enum):
    PAYEE = "payee"
    MEMO = "memo"
    COMBINED = "combined"


class ExternalLink(BaseModel):
    label: str
    url: str


class TransactionSplit(BaseModel):
    category_id: str
    category_name: str = ""
    amount: Decimal
    memo: str | None = None


# Duplicate detection verdicts. ``kind`` is the discriminator.

class DuplicateDetectionDetails(BaseModel):
    transaction_reference: str
    reference_found: bool = False
    import_id_found: bool = False
    fuzzy_match_date: date | None = None
    fuzzy_match_amount: Decimal | None = None
    fuzzy_match_payee: str | None = None


class NotDuplicate(BaseModel):
    kind: Literal["not_duplicate"] = "not_duplicate"
    details: DuplicateDetectionDetails


class PossibleDuplicate(BaseModel):
    kind: Literal["possible_duplicate"] = "possible_duplicate"
    reason: str
    details: DuplicateDetectionDetails


class ConfirmedDuplicate(BaseModel):
    kind: Literal["confirmed_duplicate"] = "confirmed_duplicate"
    reference: str
    details: DuplicateDetectionDetails


DuplicateStatus = Annotated[
    NotDuplicate | PossibleDuplicate | ConfirmedDuplicate,
    Field(discriminator="kind"),
]


# Outcome of submitting a transaction to the budget service.

class DuplicateImportId(BaseModel):
    kind: Literal["duplicate_import_id"] = "duplicate_import_id"
    import_id: str


class UnknownRejection(BaseModel):
    kind: Literal["unknown"] = "unknown"
    message: str | None = None


RejectionReason = Annotated[
    DuplicateImportId | UnknownRejection,
    Field(discriminator="kind"),
]


class NotAttempted(BaseModel):
    kind: Literal["not_attempted"] = "not_attempted"


class YnabImported(BaseModel):
    kind: Literal["imported"] = "imported"
    import_id: str


class RejectedByYnab(BaseModel):
    kind: Literal["rejected"] = "rejected"
    reason: RejectionReason


YnabImportStatus = Annotated[
    NotAttempted | YnabImported | RejectedByYnab,
    Field(discriminator="kind"),
]


class SyncTransaction(BaseModel):
    transaction: BankTransaction
    status: TransactionStatus = TransactionStatus.PENDING
    category_id: str | None = None
    category_name: str | None = None
    matched_rule_id: str | None = None
    payee_override: str | None = None
    payee_override_from_rule: bool = False
    external_links: list[ExternalLink] = Field(default_factory=list)
    user_notes: str | None = None
    duplicate_status: DuplicateStatus
    import_status: YnabImportStatus = Field(default_factory=NotAttempted)
    splits: list[TransactionSplit] | None = None
    force_import: bool = False

    @property
    def id(self) -> str:
        return self.transaction.id

    @property
    def final_payee(self) -> str:
        return self.payee_override or self.transaction.payee or "Unknown"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duplicate_detection_missed(self) -> bool:
        """The budget service rejected a duplicate that local detection let through."""
        return (
            isinstance(self.import_status, RejectedByYnab)
            and isinstance(self.import_status.reason, DuplicateImportId)
            and isinstance(self.duplicate_status, NotDuplicate)
        )


class Rule(BaseModel):
    id: str
    name: str
    pattern: str
    pattern_type: PatternType = PatternType.CONTAINS
    target_field: TargetField = TargetField.COMBINED
    category_id: str
    category_name: str = ""
    payee_override: str | None = None
    priority: int = 100
    enabled: bool = True
    created_at: datetime
    updated_at: datetime


class RuleCreateRequest(BaseModel):
    name: str
    pattern: str
    pattern_type: PatternType = PatternType.CONTAINS
    target_field: TargetField = TargetField.COMBINED
    category_id: str
    payee_override: str | None = None
    priority: int = 100


class RuleUpdateRequest(BaseModel):
    name: str | None = None
    pattern: str | None = None
    pattern_type: PatternType | None = None
    target_field: TargetField | None = None
    category_id: str | None = None
    payee_override: str | None = None
    priority: int | None = None
    enabled: bool | None = None


class YnabCategory(BaseModel):
    id: str
    name: str
    group_name: str = ""


class YnabTransaction(BaseModel):
    """An existing budget-service transaction, used for duplicate detection."""
    id: str
    date: date
    amount: Decimal
    payee: str | None = None
    memo: str | None = None
    import_id: str | None = None


class SyncSessionStatus(str, Enum):
    AWAITING_BANK_AUTH = "awaiting_bank_auth"
    AWAITING_TAN = "awaiting_tan"
    FETCHING_TRANSACTIONS = "fetching_transactions"
    REVIEWING_TRANSACTIONS = "reviewing_transactions"
    IMPORTING_TO_YNAB = "importing_to_ynab"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncSessionStatus.COMPLETED, SyncSessionStatus.FAILED)


class SyncSession(BaseModel):
    id: str
    started_at: datetime
    completed_at: datetime | None = None
    status: SyncSessionStatus = SyncSessionStatus.AWAITING_BANK_AUTH
    failure_reason: str | None = None
    transaction_count: int = 0
    imported_count: int = 0
    skipped_count: int = 0


class ImportResult(BaseModel):
    imported_count: int = 0
    rejected_count: int = 0
    duplicate_rejections: list[str] = Field(default_factory=list)
    missed_duplicates: list[str] = Field(default_factory=list)
