import asyncio
import os
from datetime import date, timedelta
from decimal import Decimal
from time import monotonic
from typing import Any

import httpx

from budgetbuddy.core.settings import get_env_float
from budgetbuddy.domain.errors import (
    BudgetAccountNotFound,
    BudgetInvalidResponse,
    BudgetNetworkError,
    BudgetNotFound,
    BudgetServiceError,
    BudgetUnauthorized,
    RateLimitExceeded,
)
from budgetbuddy.integration.base import (
    Accepted,
    BudgetClient,
    ImportOutcome,
    RejectedDuplicate,
    RejectedOther,
    TransactionSubmission,
)
from budgetbuddy.logger import get_logger
from budgetbuddy.models import YnabCategory, YnabTransaction

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.ynab.com/v1"
DEFAULT_CATEGORIES_CACHE_TTL_SECONDS = 60.0
DEFAULT_RETRY_AFTER_SECONDS = 60
MILLIUNITS = Decimal(1000)


def to_milliunits(amount: Decimal) -> int:
    return int(amount * MILLIUNITS)


def from_milliunits(value: int | str) -> Decimal:
    return Decimal(int(value)) / MILLIUNITS


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("detail") or error.get("name") or error)
    return response.text


def _retry_after(response: httpx.Response) -> int:
    raw = response.headers.get("Retry-After")
    try:
        return int(raw) if raw else DEFAULT_RETRY_AFTER_SECONDS
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


def _parse_transaction(raw: dict[str, Any]) -> YnabTransaction:
    return YnabTransaction(
        id=str(raw["id"]),
        date=date.fromisoformat(str(raw["date"])[:10]),
        amount=from_milliunits(raw["amount"]),
        payee=raw.get("payee_name"),
        memo=raw.get("memo"),
        import_id=raw.get("import_id"),
    )


def _encode_submission(account_id: str, submission: TransactionSubmission) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "account_id": account_id,
        "date": submission.date.isoformat(),
        "amount": to_milliunits(submission.amount),
        "payee_name": submission.payee_name,
        "memo": submission.memo,
        "cleared": submission.cleared,
        "import_id": submission.import_id,
    }
    if submission.subtransactions:
        # Split: the parent carries no category of its own.
        payload["subtransactions"] = [
            {
                "amount": to_milliunits(sub.amount),
                "category_id": sub.category_id,
                **({"memo": sub.memo} if sub.memo else {}),
            }
            for sub in submission.subtransactions
        ]
    elif submission.category_id:
        payload["category_id"] = submission.category_id
    return payload


class YnabClient(BudgetClient):
    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        categories_cache_ttl: float | None = None,
        timeout: float = 30.0,
    ):
        self.token = token or os.getenv("YNAB_TOKEN")
        self.base_url = (base_url or os.getenv("YNAB_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._client = client
        self._client_lock = asyncio.Lock()
        self._cache_lock = asyncio.Lock()
        self._categories_cache: dict[str, list[YnabCategory]] = {}
        self._categories_cache_expires_at: dict[str, float] = {}
        cache_ttl = categories_cache_ttl
        if cache_ttl is None:
            cache_ttl = get_env_float("YNAB_CATEGORIES_TTL", DEFAULT_CATEGORIES_CACHE_TTL_SECONDS)
        self._categories_cache_ttl = max(0.0, cache_ttl)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def refresh(self, token: str | None = None) -> None:
        self.token = token if token is not None else os.getenv("YNAB_TOKEN")
        self._categories_cache.clear()
        self._categories_cache_expires_at.clear()

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get_client(self) -> httpx.AsyncClient:
        client = self._client
        if client is not None and not client.is_closed:
            return client

        async with self._client_lock:
            client = self._client
            if client is None or client.is_closed:
                client = httpx.AsyncClient(timeout=self.timeout)
                self._client = client
            return client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        budget_id: str | None = None,
        account_id: str | None = None,
        expected: tuple[int, ...] = (200,),
        **kwargs: Any,
    ) -> httpx.Response:
        if not self.token:
            raise BudgetUnauthorized("YNAB token is not configured")

        client = await self._get_client()
        try:
            response = await client.request(
                method,
                f"{self.base_url}{path}",
                headers=self.headers,
                **kwargs,
            )
        except httpx.HTTPError as exc:
            logger.error("[YNAB] %s %s failed: %s", method, path, exc)
            raise BudgetNetworkError(str(exc) or exc.__class__.__name__) from exc

        status = response.status_code
        if status in expected:
            return response
        if status == 401:
            raise BudgetUnauthorized()
        if status == 404:
            if account_id:
                raise BudgetAccountNotFound(account_id)
            raise BudgetNotFound(budget_id or "<unknown>")
        if status == 429:
            raise RateLimitExceeded(_retry_after(response))
        raise BudgetNetworkError(f"HTTP {status}: {_error_detail(response)}")

    @staticmethod
    def _data(response: httpx.Response, key: str) -> Any:
        try:
            return response.json()["data"][key]
        except (ValueError, KeyError, TypeError) as exc:
            raise BudgetInvalidResponse(f"missing data.{key}") from exc

    async def list_budgets(self) -> list[dict[str, str]]:
        response = await self._request("GET", "/budgets")
        return [
            {"id": str(budget["id"]), "name": str(budget.get("name", ""))}
            for budget in self._data(response, "budgets")
        ]

    def _get_cached_categories(self, budget_id: str, *, allow_stale: bool = False) -> list[YnabCategory] | None:
        cached = self._categories_cache.get(budget_id)
        if cached is None or self._categories_cache_ttl <= 0:
            return None
        if allow_stale:
            return cached
        if monotonic() >= self._categories_cache_expires_at.get(budget_id, 0.0):
            return None
        return cached

    def _cache_categories(self, budget_id: str, categories: list[YnabCategory]) -> None:
        """Must be called while holding _cache_lock."""
        if self._categories_cache_ttl <= 0:
            return
        self._categories_cache[budget_id] = categories
        self._categories_cache_expires_at[budget_id] = monotonic() + self._categories_cache_ttl

    async def _fetch_categories(self, budget_id: str) -> list[YnabCategory]:
        response = await self._request("GET", f"/budgets/{budget_id}/categories", budget_id=budget_id)
        categories: list[YnabCategory] = []
        try:
            for group in self._data(response, "category_groups"):
                if group.get("hidden") or group.get("deleted"):
                    continue
                # Internal groups may come without a categories field.
                for raw in group.get("categories") or []:
                    if raw.get("hidden") or raw.get("deleted"):
                        continue
                    categories.append(YnabCategory(
                        id=str(raw["id"]),
                        name=str(raw["name"]),
                        group_name=str(group.get("name", "")),
                    ))
        except (KeyError, TypeError, AttributeError) as exc:
            raise BudgetInvalidResponse(f"malformed category list: {exc}") from exc
        return categories

    async def list_categories(self, budget_id: str, *, use_cache: bool = True) -> list[YnabCategory]:
        if not use_cache:
            return await self._fetch_categories(budget_id)

        async with self._cache_lock:
            cached = self._get_cached_categories(budget_id)
            if cached is not None:
                return cached
            try:
                categories = await self._fetch_categories(budget_id)
            except BudgetServiceError as exc:
                stale = self._get_cached_categories(budget_id, allow_stale=True)
                if stale is not None:
                    logger.warning("[YNAB] Using stale categories after error: %s", exc.message)
                    return stale
                raise
            self._cache_categories(budget_id, categories)
            return categories

    async def list_recent_transactions(
        self,
        budget_id: str,
        account_id: str | None = None,
        since_days: int = 30,
    ) -> list[YnabTransaction]:
        since_date = (date.today() - timedelta(days=since_days)).isoformat()
        if account_id:
            path = f"/budgets/{budget_id}/accounts/{account_id}/transactions"
        else:
            path = f"/budgets/{budget_id}/transactions"
        response = await self._request(
            "GET",
            path,
            budget_id=budget_id,
            account_id=account_id,
            params={"since_date": since_date},
        )
        try:
            transactions = [
                _parse_transaction(raw)
                for raw in self._data(response, "transactions")
                if not raw.get("deleted")
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise BudgetInvalidResponse(f"malformed transaction list: {exc}") from exc
        logger.debug("[YNAB] Loaded %d existing transactions since %s", len(transactions), since_date)
        return transactions

    async def import_transaction(
        self,
        budget_id: str,
        account_id: str,
        submission: TransactionSubmission,
    ) -> ImportOutcome:
        response = await self._request(
            "POST",
            f"/budgets/{budget_id}/transactions",
            budget_id=budget_id,
            account_id=account_id,
            expected=(200, 201, 400, 409, 422),
            json={"transaction": _encode_submission(account_id, submission)},
        )
        status = response.status_code
        if status == 409:
            return RejectedDuplicate(import_id=submission.import_id)
        if status in (400, 422):
            return RejectedOther(message=_error_detail(response))

        try:
            data = response.json()["data"]
        except (ValueError, KeyError, TypeError) as exc:
            raise BudgetInvalidResponse("missing data in import response") from exc
        if submission.import_id in (data.get("duplicate_import_ids") or []):
            return RejectedDuplicate(import_id=submission.import_id)
        transaction_ids = data.get("transaction_ids") or []
        created = data.get("transaction") or {}
        return Accepted(transaction_id=created.get("id") or (transaction_ids[0] if transaction_ids else None))
