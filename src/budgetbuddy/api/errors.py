from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from budgetbuddy.domain.errors import (
    BankError,
    BudgetBuddyError,
    BudgetServiceError,
    CategoryNotFound,
    DuplicateRule,
    InvalidSessionState,
    RateLimitExceeded,
    RuleNotFound,
    SessionAlreadyInProgress,
    SessionCancelled,
    SessionNotFound,
    StaleSessionVersion,
    StorageError,
    NotForceImportable,
    TransactionAlreadyImported,
    TransactionNotFound,
    YnabImportFailed,
)
from budgetbuddy.logger import get_logger

logger = get_logger(__name__)

# Most specific first; the first isinstance hit wins.
_STATUS_BY_ERROR: tuple[tuple[type[BudgetBuddyError], int], ...] = (
    (RateLimitExceeded, 429),
    (BankError, 502),
    (BudgetServiceError, 502),
    (YnabImportFailed, 502),
    (StorageError, 500),
    (SessionNotFound, 404),
    (TransactionNotFound, 404),
    (RuleNotFound, 404),
    (CategoryNotFound, 404),
    (SessionAlreadyInProgress, 409),
    (InvalidSessionState, 409),
    (StaleSessionVersion, 409),
    (SessionCancelled, 409),
    (TransactionAlreadyImported, 409),
    (NotForceImportable, 409),
    (DuplicateRule, 409),
)


def status_for(exc: BudgetBuddyError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 400


async def handle_domain_error(request: Request, exc: BudgetBuddyError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("[API] %s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status,
        content={"error": type(exc).__name__, "message": exc.message, "hint": exc.hint},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BudgetBuddyError, handle_domain_error)
