"""Error taxonomy for the sync pipeline.

Every error carries a human readable message and a ``hint`` telling the user
what to do next. Collaborator failures (bank, budget service) are wrapped into
these types at the integration boundary, so nothing above it sees ``httpx``
exceptions.
"""


class BudgetBuddyError(Exception):
    """Base class for all domain-level errors."""

    hint = "Please try again."

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint


class StorageError(BudgetBuddyError):
    hint = "Check that the data directory is writable."

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"Storage error during {operation}: {message}")
        self.operation = operation


# Bank side

class BankError(BudgetBuddyError):
    hint = "Start a new sync to authenticate with the bank again."


class BankAuthenticationFailed(BankError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Bank authentication failed: {message}")


class TanChallengeExpired(BankError):
    def __init__(self) -> None:
        super().__init__("The push-TAN challenge expired before it was confirmed.")


class TanRejected(BankError):
    def __init__(self) -> None:
        super().__init__("The push-TAN challenge was rejected.")


class BankSessionExpired(BankError):
    def __init__(self) -> None:
        super().__init__("The bank session expired.")


class InvalidBankCredentials(BankError):
    hint = "Check the bank credentials in the settings."

    def __init__(self) -> None:
        super().__init__("The bank rejected the configured credentials.")


class BankNetworkError(BankError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Bank request failed (HTTP {status_code}): {message}")
        self.status_code = status_code


class BankInvalidResponse(BankError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Unexpected response from the bank: {message}")


# Budget service side

class BudgetServiceError(BudgetBuddyError):
    hint = "Check the YNAB connection and try again."


class BudgetUnauthorized(BudgetServiceError):
    hint = "Update the YNAB personal access token in the settings."

    def __init__(self, message: str = "Invalid YNAB token") -> None:
        super().__init__(message)


class BudgetNotFound(BudgetServiceError):
    hint = "Select an existing budget in the settings."

    def __init__(self, budget_id: str) -> None:
        super().__init__(f"Budget {budget_id} not found")
        self.budget_id = budget_id


class BudgetAccountNotFound(BudgetServiceError):
    hint = "Select an existing account in the settings."

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class RateLimitExceeded(BudgetServiceError):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            "YNAB rate limit exceeded",
            hint=f"Wait {retry_after_seconds} seconds before retrying.",
        )
        self.retry_after_seconds = retry_after_seconds


class BudgetNetworkError(BudgetServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(f"YNAB request failed: {message}")


class BudgetInvalidResponse(BudgetServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Unexpected response from YNAB: {message}")


# Rules

class RulesError(BudgetBuddyError):
    hint = "Fix the rule and save it again."


class RuleNotFound(RulesError):
    hint = "Reload the rule list."

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Rule {rule_id} not found")
        self.rule_id = rule_id


class InvalidPattern(RulesError):
    def __init__(self, pattern: str, reason: str) -> None:
        super().__init__(f"Invalid pattern '{pattern}': {reason}")
        self.pattern = pattern
        self.reason = reason


class CategoryNotFound(RulesError):
    hint = "Pick a category that exists in the budget."

    def __init__(self, category_id: str) -> None:
        super().__init__(f"Category {category_id} not found")
        self.category_id = category_id


class DuplicateRule(RulesError):
    hint = "Edit the existing rule instead of creating a new one."

    def __init__(self, pattern: str) -> None:
        super().__init__(f"A rule with pattern '{pattern}' already exists")
        self.pattern = pattern


class RuleValidationError(RulesError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


# Sync session

class SyncError(BudgetBuddyError):
    pass


class SessionNotFound(SyncError):
    hint = "Start a new sync."

    def __init__(self, session_id: str | None) -> None:
        super().__init__(f"Sync session {session_id or '<none>'} not found")
        self.session_id = session_id


class SessionAlreadyInProgress(SyncError):
    hint = "Finish or cancel the running sync before starting a new one."

    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(f"Sync session {session_id} is already in progress ({status})")
        self.session_id = session_id


class InvalidSessionState(SyncError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f"Operation requires session state '{expected}', but the session is '{actual}'",
            hint=f"Retry once the session is in state '{expected}'.",
        )
        self.expected = expected
        self.actual = actual


class TransactionNotFound(SyncError):
    hint = "Reload the transaction list."

    def __init__(self, transaction_ids: list[str]) -> None:
        super().__init__(f"Transactions not found: {', '.join(transaction_ids)}")
        self.transaction_ids = transaction_ids


class TransactionAlreadyImported(SyncError):
    hint = "Imported transactions can no longer be changed."

    def __init__(self, transaction_id: str) -> None:
        super().__init__(f"Transaction {transaction_id} was already imported")
        self.transaction_id = transaction_id


class NotForceImportable(SyncError):
    hint = "Only transactions detected or rejected as duplicates, and not skipped, can be force imported."

    def __init__(self, transaction_id: str, reason: str) -> None:
        super().__init__(f"Transaction {transaction_id} cannot be force imported: {reason}")
        self.transaction_id = transaction_id
        self.reason = reason


class SplitValidationError(SyncError):
    hint = "Adjust the split amounts so they add up to the transaction amount."

    def __init__(self, transaction_id: str, reason: str) -> None:
        super().__init__(f"Invalid split for transaction {transaction_id}: {reason}")
        self.transaction_id = transaction_id
        self.reason = reason


class StaleSessionVersion(SyncError):
    hint = "Reload the session and repeat the change."

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Session changed meanwhile (version {actual}, request was based on {expected})")
        self.expected = expected
        self.actual = actual


class SessionCancelled(SyncError):
    hint = "Start a new sync."

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Sync session {session_id} was cancelled")
        self.session_id = session_id


# Pipeline-level failures, recorded as the reason of a failed session.

class BankAuthFailed(SyncError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Bank authentication failed: {reason}", hint="Start a new sync.")


class TanTimeout(SyncError):
    def __init__(self) -> None:
        super().__init__(
            "TAN confirmation timed out",
            hint="Start a new sync and confirm the push-TAN on your phone promptly.",
        )


class TransactionFetchFailed(SyncError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Fetching transactions failed: {message}", hint="Start a new sync.")


class YnabImportFailed(SyncError):
    def __init__(self, failed_count: int, message: str) -> None:
        super().__init__(
            f"Import to YNAB aborted with {failed_count} transaction(s) not sent: {message}",
            hint="Start a new sync; already imported transactions are protected by their import id.",
        )
        self.failed_count = failed_count
