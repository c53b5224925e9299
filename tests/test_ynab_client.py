from datetime import date
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from budgetbuddy.domain.errors import (
    BudgetAccountNotFound,
    BudgetNetworkError,
    BudgetNotFound,
    BudgetUnauthorized,
    RateLimitExceeded,
)
from budgetbuddy.integration.base import (
    Accepted,
    RejectedDuplicate,
    RejectedOther,
    SubtransactionSubmission,
    TransactionSubmission,
)
from budgetbuddy.integration.ynab import YnabClient, from_milliunits, to_milliunits


def _response(status_code: int = 200, payload: Any = None, headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(status_code, json=payload if payload is not None else {}, headers=headers)


def _categories(*names: str) -> httpx.Response:
    return _response(payload={"data": {"category_groups": [
        {
            "name": "Everyday",
            "categories": [{"id": f"cat-{name.lower()}", "name": name} for name in names],
        },
    ]}})


def _mock_client(*responses: Any) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.is_closed = False
    mock_client.request = AsyncMock(side_effect=list(responses))
    return mock_client


def _submission(**overrides) -> TransactionSubmission:
    values = {
        "import_id": "BB:tx1",
        "date": date(2026, 3, 14),
        "amount": Decimal("-42.50"),
        "payee_name": "REWE",
        "memo": "Ref: R1",
        "category_id": "cat-groceries",
    }
    values.update(overrides)
    return TransactionSubmission(**values)


def test_milliunits_conversion() -> None:
    assert to_milliunits(Decimal("-42.50")) == -42500
    assert to_milliunits(Decimal("0.001")) == 1
    assert from_milliunits(-42500) == Decimal("-42.5")


@pytest.mark.anyio
async def test_list_categories_skips_hidden_and_deleted() -> None:
    payload = {"data": {"category_groups": [
        {"name": "Everyday", "categories": [
            {"id": "c1", "name": "Groceries"},
            {"id": "c2", "name": "Old", "hidden": True},
            {"id": "c3", "name": "Gone", "deleted": True},
        ]},
        {"name": "Hidden Group", "hidden": True, "categories": [{"id": "c4", "name": "Secret"}]},
        {"name": "Internal Master Category"},
    ]}}
    client = YnabClient(token="token", client=_mock_client(_response(payload=payload)))

    categories = await client.list_categories("budget-1")

    assert [(category.id, category.name, category.group_name) for category in categories] == [
        ("c1", "Groceries", "Everyday"),
    ]


@pytest.mark.anyio
async def test_categories_cache_ttl_expires() -> None:
    mock_client = _mock_client(_categories("Food"), _categories("Fuel"))
    client = YnabClient(token="token", client=mock_client, categories_cache_ttl=1)

    with patch("budgetbuddy.integration.ynab.monotonic", side_effect=[0.0, 2.0, 2.0]):
        first = await client.list_categories("budget-1")
        second = await client.list_categories("budget-1")

    assert [category.name for category in first] == ["Food"]
    assert [category.name for category in second] == ["Fuel"]
    assert mock_client.request.call_count == 2


@pytest.mark.anyio
async def test_categories_cache_is_reused_within_ttl() -> None:
    mock_client = _mock_client(_categories("Food"))
    client = YnabClient(token="token", client=mock_client, categories_cache_ttl=60)

    with patch("budgetbuddy.integration.ynab.monotonic", side_effect=[0.0, 10.0]):
        await client.list_categories("budget-1")
        cached = await client.list_categories("budget-1")

    assert [category.name for category in cached] == ["Food"]
    assert mock_client.request.call_count == 1


@pytest.mark.anyio
async def test_categories_refresh_invalidates_cache() -> None:
    mock_client = _mock_client(_categories("Food"), _categories("Fuel"))
    client = YnabClient(token="token", client=mock_client, categories_cache_ttl=60)

    with patch("budgetbuddy.integration.ynab.monotonic", side_effect=[0.0, 10.0]):
        await client.list_categories("budget-1")
        client.refresh("token")
        second = await client.list_categories("budget-1")

    assert [category.name for category in second] == ["Fuel"]
    assert mock_client.request.call_count == 2


@pytest.mark.anyio
async def test_categories_stale_fallback_on_error() -> None:
    mock_client = _mock_client(_categories("Food"), _response(500, {"error": {"detail": "boom"}}))
    client = YnabClient(token="token", client=mock_client, categories_cache_ttl=1)

    with patch("budgetbuddy.integration.ynab.monotonic", side_effect=[0.0, 5.0]):
        await client.list_categories("budget-1")
        stale = await client.list_categories("budget-1")

    assert [category.name for category in stale] == ["Food"]


@pytest.mark.anyio
async def test_list_recent_transactions_uses_account_path_and_skips_deleted() -> None:
    payload = {"data": {"transactions": [
        {"id": "y1", "date": "2026-03-14", "amount": -42500, "payee_name": "REWE", "memo": "Ref: R1", "import_id": "BB:tx1"},
        {"id": "y2", "date": "2026-03-13", "amount": 1000, "payee_name": None, "memo": None, "deleted": True},
    ]}}
    mock_client = _mock_client(_response(payload=payload))
    client = YnabClient(token="token", base_url="http://ynab.test/v1", client=mock_client)

    transactions = await client.list_recent_transactions("budget-1", "account-1", since_days=10)

    assert len(transactions) == 1
    assert transactions[0].amount == Decimal("-42.5")
    assert transactions[0].import_id == "BB:tx1"
    method, url = mock_client.request.call_args.args
    assert method == "GET"
    assert url == "http://ynab.test/v1/budgets/budget-1/accounts/account-1/transactions"
    assert "since_date" in mock_client.request.call_args.kwargs["params"]
    assert mock_client.request.call_args.kwargs["headers"]["Authorization"] == "Bearer token"


@pytest.mark.anyio
async def test_import_sends_milliunits_and_category() -> None:
    mock_client = _mock_client(_response(201, {"data": {"transaction_ids": ["y-9"], "duplicate_import_ids": []}}))
    client = YnabClient(token="token", client=mock_client)

    outcome = await client.import_transaction("budget-1", "account-1", _submission())

    assert outcome == Accepted(transaction_id="y-9")
    sent = mock_client.request.call_args.kwargs["json"]["transaction"]
    assert sent["amount"] == -42500
    assert sent["category_id"] == "cat-groceries"
    assert sent["import_id"] == "BB:tx1"
    assert sent["account_id"] == "account-1"
    assert sent["date"] == "2026-03-14"


@pytest.mark.anyio
async def test_import_split_has_no_parent_category() -> None:
    mock_client = _mock_client(_response(201, {"data": {"transaction_ids": ["y-1"]}}))
    client = YnabClient(token="token", client=mock_client)
    submission = _submission(
        category_id=None,
        subtransactions=[
            SubtransactionSubmission(amount=Decimal("-30.00"), category_id="cat-a", memo="food"),
            SubtransactionSubmission(amount=Decimal("-12.50"), category_id="cat-b"),
        ],
    )

    await client.import_transaction("budget-1", "account-1", submission)

    sent = mock_client.request.call_args.kwargs["json"]["transaction"]
    assert "category_id" not in sent
    assert sent["subtransactions"] == [
        {"amount": -30000, "category_id": "cat-a", "memo": "food"},
        {"amount": -12500, "category_id": "cat-b"},
    ]


@pytest.mark.anyio
async def test_import_duplicate_and_other_rejections() -> None:
    mock_client = _mock_client(
        _response(200, {"data": {"transaction_ids": [], "duplicate_import_ids": ["BB:tx1"]}}),
        _response(409, {"error": {"id": "409", "detail": "conflict"}}),
        _response(400, {"error": {"id": "400", "detail": "date must not be in the future"}}),
    )
    client = YnabClient(token="token", client=mock_client)

    assert await client.import_transaction("b", "a", _submission()) == RejectedDuplicate(import_id="BB:tx1")
    assert await client.import_transaction("b", "a", _submission()) == RejectedDuplicate(import_id="BB:tx1")
    assert await client.import_transaction("b", "a", _submission()) == RejectedOther(
        message="date must not be in the future",
    )


@pytest.mark.anyio
async def test_error_status_mapping() -> None:
    mock_client = _mock_client(
        _response(401),
        _response(404),
        _response(404),
        _response(429, headers={"Retry-After": "12"}),
        httpx.ConnectError("refused"),
    )
    client = YnabClient(token="token", client=mock_client)

    with pytest.raises(BudgetUnauthorized):
        await client.list_budgets()
    with pytest.raises(BudgetNotFound):
        await client.list_categories("budget-1", use_cache=False)
    with pytest.raises(BudgetAccountNotFound):
        await client.list_recent_transactions("budget-1", "account-1")
    with pytest.raises(RateLimitExceeded) as excinfo:
        await client.list_budgets()
    assert excinfo.value.retry_after_seconds == 12
    with pytest.raises(BudgetNetworkError):
        await client.list_budgets()


@pytest.mark.anyio
async def test_missing_token_fails_before_any_request(monkeypatch) -> None:
    monkeypatch.delenv("YNAB_TOKEN", raising=False)
    mock_client = _mock_client()
    client = YnabClient(client=mock_client)

    with pytest.raises(BudgetUnauthorized):
        await client.list_budgets()
    mock_client.request.assert_not_awaited()


@pytest.mark.anyio
async def test_aclose_closes_client() -> None:
    mock_client = _mock_client()
    mock_client.aclose = AsyncMock()
    client = YnabClient(token="token", client=mock_client)

    await client.aclose()

    mock_client.aclose.assert_awaited_once()


@pytest.mark.anyio
async def test_aclose_skips_closed_or_missing_client() -> None:
    closed = _mock_client()
    closed.is_closed = True
    closed.aclose = AsyncMock()

    await YnabClient(token="token", client=closed).aclose()
    await YnabClient(token="token").aclose()

    closed.aclose.assert_not_awaited()
