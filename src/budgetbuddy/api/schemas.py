from pydantic import BaseModel, Field

from budgetbuddy.models import (
    PatternType,
    SyncSession,
    SyncTransaction,
    TargetField,
    TransactionSplit,
)


class VersionedRequest(BaseModel):
    expected_version: int | None = None


class CategorizeRequest(VersionedRequest):
    category_id: str | None = None


class BulkCategorizeRequest(VersionedRequest):
    transaction_ids: list[str] = Field(min_length=1)
    category_id: str | None = None


class SplitRequest(VersionedRequest):
    splits: list[TransactionSplit]


class PayeeOverrideRequest(VersionedRequest):
    payee: str | None = None


class NotesRequest(VersionedRequest):
    notes: str | None = None


class ForceImportRequest(VersionedRequest):
    transaction_ids: list[str] | None = None


class DuplicateCountsResponse(BaseModel):
    confirmed: int
    possible: int
    none: int


class SessionResponse(BaseModel):
    session: SyncSession | None
    version: int
    status_counts: dict[str, int]
    duplicate_counts: DuplicateCountsResponse


class TransactionsResponse(BaseModel):
    version: int
    transactions: list[SyncTransaction]


class PatternTestRequest(BaseModel):
    pattern: str
    pattern_type: PatternType = PatternType.CONTAINS
    target_field: TargetField = TargetField.COMBINED
    payee: str | None = None
    memo: str | None = None


class PatternTestResponse(BaseModel):
    matches: bool
