from typing import Annotated

from fastapi import APIRouter, Depends, Query

from budgetbuddy.api.dependencies import get_session_manager
from budgetbuddy.api.schemas import (
    BulkCategorizeRequest,
    CategorizeRequest,
    DuplicateCountsResponse,
    ForceImportRequest,
    NotesRequest,
    PayeeOverrideRequest,
    SessionResponse,
    SplitRequest,
    TransactionsResponse,
    VersionedRequest,
)
from budgetbuddy.models import ImportResult, SyncSession, SyncSessionStatus, SyncTransaction
from budgetbuddy.services.sessions import SyncSessionManager

router = APIRouter(prefix="/api/sync")

Manager = Annotated[SyncSessionManager, Depends(get_session_manager)]


def _version(req: VersionedRequest | None) -> int | None:
    return req.expected_version if req else None


def _session_response(manager: SyncSessionManager) -> SessionResponse:
    counts = manager.duplicate_counts()
    return SessionResponse(
        session=manager.get_current(),
        version=manager.version,
        status_counts=manager.status_counts(),
        duplicate_counts=DuplicateCountsResponse(
            confirmed=counts.confirmed,
            possible=counts.possible,
            none=counts.none,
        ),
    )


@router.post("/start")
async def start_sync(manager: Manager) -> SessionResponse:
    await manager.start_sync()
    return _session_response(manager)


@router.post("/confirm-tan")
async def confirm_tan(manager: Manager) -> SessionResponse:
    await manager.confirm_tan()
    return _session_response(manager)


@router.get("/current")
async def get_current(manager: Manager) -> SessionResponse:
    return _session_response(manager)


@router.get("/transactions")
async def get_transactions(manager: Manager) -> TransactionsResponse:
    return TransactionsResponse(version=manager.version, transactions=manager.get_transactions())


@router.post("/transactions/bulk-categorize")
async def bulk_categorize(req: BulkCategorizeRequest, manager: Manager) -> list[SyncTransaction]:
    return await manager.bulk_categorize(
        req.transaction_ids,
        req.category_id,
        expected_version=req.expected_version,
    )


@router.get("/transactions/{transaction_id}")
async def get_transaction(transaction_id: str, manager: Manager) -> SyncTransaction:
    return manager.get_transaction(transaction_id)


@router.post("/transactions/{transaction_id}/categorize")
async def categorize(transaction_id: str, req: CategorizeRequest, manager: Manager) -> SyncTransaction:
    return await manager.categorize(transaction_id, req.category_id, expected_version=req.expected_version)


@router.post("/transactions/{transaction_id}/skip")
async def skip(transaction_id: str, manager: Manager, req: VersionedRequest | None = None) -> SyncTransaction:
    return await manager.skip(transaction_id, expected_version=_version(req))


@router.post("/transactions/{transaction_id}/unskip")
async def unskip(transaction_id: str, manager: Manager, req: VersionedRequest | None = None) -> SyncTransaction:
    return await manager.unskip(transaction_id, expected_version=_version(req))


@router.post("/transactions/{transaction_id}/split")
async def split(transaction_id: str, req: SplitRequest, manager: Manager) -> SyncTransaction:
    return await manager.split(transaction_id, req.splits, expected_version=req.expected_version)


@router.post("/transactions/{transaction_id}/clear-split")
async def clear_split(
    transaction_id: str,
    manager: Manager,
    req: VersionedRequest | None = None,
) -> SyncTransaction:
    return await manager.clear_split(transaction_id, expected_version=_version(req))


@router.post("/transactions/{transaction_id}/payee")
async def set_payee(transaction_id: str, req: PayeeOverrideRequest, manager: Manager) -> SyncTransaction:
    return await manager.set_payee_override(transaction_id, req.payee, expected_version=req.expected_version)


@router.post("/transactions/{transaction_id}/notes")
async def set_notes(transaction_id: str, req: NotesRequest, manager: Manager) -> SyncTransaction:
    return await manager.set_notes(transaction_id, req.notes, expected_version=req.expected_version)


@router.post("/reapply-rules")
async def reapply_rules(manager: Manager, req: VersionedRequest | None = None) -> dict[str, int]:
    changed = await manager.reapply_rules(expected_version=_version(req))
    return {"changed": changed}


@router.post("/import")
async def import_to_ynab(manager: Manager, req: VersionedRequest | None = None) -> ImportResult:
    return await manager.import_to_ynab(expected_version=_version(req))


@router.post("/force-import")
async def force_import(
    req: ForceImportRequest,
    manager: Manager,
) -> ImportResult | list[SyncTransaction]:
    current = manager.get_current()
    if current is not None and current.status == SyncSessionStatus.REVIEWING_TRANSACTIONS:
        return await manager.mark_force_import(req.transaction_ids or [], expected_version=req.expected_version)
    return await manager.force_import(req.transaction_ids)


@router.post("/cancel")
async def cancel(manager: Manager) -> dict[str, str]:
    await manager.cancel()
    return {"status": "cancelled"}


@router.get("/history")
async def history(
    manager: Manager,
    count: Annotated[int, Query(ge=1, le=100)] = 10,
) -> list[SyncSession]:
    return manager.history_records(count)
