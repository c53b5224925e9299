"""Comdirect REST client: OAuth password grant, push-TAN session activation and
booked-transaction paging.

The flow is split in two halves around the human step. ``start_auth`` obtains
the first token pair, looks up the session and triggers the push-TAN;
``complete_auth`` activates the session once the user has approved it on the
phone and exchanges the token for one with banking scope.
"""
import asyncio
import json
import os
import time
import uuid
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from budgetbuddy.core.settings import BankCredentials
from budgetbuddy.domain.errors import (
    BankAuthenticationFailed,
    BankInvalidResponse,
    BankNetworkError,
    BankSessionExpired,
    InvalidBankCredentials,
    TanChallengeExpired,
    TanRejected,
)
from budgetbuddy.integration.base import BankAuthSession, BankClient, TanChallenge, Tokens
from budgetbuddy.logger import get_logger
from budgetbuddy.models import BankTransaction, Money

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.comdirect.de"
PUSH_TAN = "P_TAN_PUSH"
CHALLENGE_HEADER = "x-once-authentication-info"
MAX_PAGES = 50


def _request_info(session_id: str, request_id: str) -> str:
    return json.dumps({"clientRequestId": {"sessionId": session_id, "requestId": request_id}})


def _new_request_id() -> str:
    return str(int(time.time()))[:9]


def _parse_tokens(payload: Any, session_id: str = "", request_id: str = "") -> Tokens:
    try:
        return Tokens(
            access=str(payload["access_token"]),
            refresh=str(payload["refresh_token"]),
            session_id=session_id,
            request_id=request_id,
        )
    except (KeyError, TypeError) as exc:
        raise BankInvalidResponse(f"token response without {exc}") from exc


def parse_transaction(raw: dict[str, Any]) -> BankTransaction | None:
    """Map one entry of the ``values`` list; entries without booking date are skipped."""
    booking_date = raw.get("bookingDate")
    if not booking_date:
        return None
    try:
        amount = raw["amount"]
        reference = str(raw["reference"])
        payee = (raw.get("remitter") or {}).get("holderName") or (raw.get("creditor") or {}).get("holderName")
        return BankTransaction(
            id=reference,
            booking_date=date.fromisoformat(str(booking_date)[:10]),
            amount=Money(amount=Decimal(str(amount["value"])), currency=amount.get("unit") or "EUR"),
            payee=payee,
            memo=raw.get("remittanceInfo") or "",
            reference=reference,
            raw_data=json.dumps(raw),
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        raise BankInvalidResponse(f"malformed transaction: {exc}") from exc


class ComdirectClient(BankClient):
    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = (base_url or os.getenv("COMDIRECT_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._client = client
        self._client_lock = asyncio.Lock()
        # The secondary token exchange needs the API keys again.
        self._credentials: BankCredentials | None = None

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

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as exc:
            logger.error("[BANK] %s %s failed: %s", method, path, exc)
            raise BankNetworkError(0, str(exc) or exc.__class__.__name__) from exc

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise BankInvalidResponse("body is not JSON") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        status = response.status_code
        if status == 401:
            raise BankAuthenticationFailed(response.text or "unauthorized")
        if status == 403:
            raise BankSessionExpired()
        raise BankNetworkError(status, response.text)

    @staticmethod
    def _auth_headers(tokens: Tokens) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {tokens.access}",
            "Accept": "application/json",
            "x-http-request-info": _request_info(tokens.session_id, tokens.request_id),
        }

    async def _token(self, data: dict[str, str]) -> dict[str, Any]:
        response = await self._send(
            "POST",
            "/oauth/token",
            data=data,
            headers={"Accept": "application/json"},
        )
        if response.status_code in (400, 401):
            raise InvalidBankCredentials()
        self._raise_for_status(response)
        return self._json(response)

    async def _session_identifier(self, tokens: Tokens) -> str:
        response = await self._send(
            "GET",
            "/api/session/clients/user/v1/sessions",
            headers=self._auth_headers(tokens),
        )
        self._raise_for_status(response)
        try:
            return str(self._json(response)[0]["identifier"])
        except (IndexError, KeyError, TypeError) as exc:
            raise BankInvalidResponse("no session identifier") from exc

    async def _request_challenge(self, tokens: Tokens, session_identifier: str) -> TanChallenge:
        response = await self._send(
            "POST",
            f"/api/session/clients/user/v1/sessions/{session_identifier}/validate",
            headers=self._auth_headers(tokens),
            json={"identifier": session_identifier, "sessionTanActive": True, "activated2FA": True},
        )
        self._raise_for_status(response)
        raw = response.headers.get(CHALLENGE_HEADER)
        if not raw:
            raise BankInvalidResponse(f"missing {CHALLENGE_HEADER} header")
        try:
            info = json.loads(raw)
            challenge = TanChallenge(id=str(info["id"]), type=str(info["typ"]))
        except (ValueError, KeyError, TypeError) as exc:
            raise BankInvalidResponse(f"unreadable {CHALLENGE_HEADER} header") from exc
        if challenge.type != PUSH_TAN:
            raise BankAuthenticationFailed(f"only push-TAN ({PUSH_TAN}) is supported, got {challenge.type}")
        return challenge

    async def start_auth(self, credentials: BankCredentials) -> BankAuthSession:
        self._credentials = credentials
        payload = await self._token({
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
            "username": credentials.username,
            "password": credentials.password,
            "grant_type": "password",
        })
        tokens = _parse_tokens(payload, session_id=str(uuid.uuid4()), request_id=_new_request_id())
        session_identifier = await self._session_identifier(tokens)
        challenge = await self._request_challenge(tokens, session_identifier)
        logger.info("[BANK] Push-TAN challenge %s requested", challenge.id)
        return BankAuthSession(tokens=tokens, session_identifier=session_identifier, challenge=challenge)

    async def _activate(self, session: BankAuthSession) -> None:
        headers = self._auth_headers(session.tokens)
        headers[CHALLENGE_HEADER] = json.dumps({"id": session.challenge.id})
        # Push-TAN approval happens on the phone; the API still wants a TAN field.
        headers["x-once-authentication"] = "000000"
        response = await self._send(
            "PATCH",
            f"/api/session/clients/user/v1/sessions/{session.session_identifier}",
            headers=headers,
            json={"identifier": session.session_identifier, "sessionTanActive": True, "activated2FA": True},
        )
        if response.status_code == 403:
            raise TanRejected()
        if response.status_code in (408, 422):
            raise TanChallengeExpired()
        self._raise_for_status(response)

    async def complete_auth(self, session: BankAuthSession) -> Tokens:
        if session.challenge is None:
            raise BankAuthenticationFailed("no TAN challenge in session")
        if self._credentials is None:
            raise BankAuthenticationFailed("authentication was not started")

        await self._activate(session)
        payload = await self._token({
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
            "token": session.tokens.access,
            "grant_type": "cd_secondary",
        })
        logger.info("[BANK] Session activated")
        return _parse_tokens(payload, session_id=session.tokens.session_id, request_id=session.tokens.request_id)

    async def _transactions_page(self, tokens: Tokens, account_id: str, offset: int) -> list[BankTransaction]:
        response = await self._send(
            "GET",
            f"/api/banking/v1/accounts/{account_id}/transactions",
            headers=self._auth_headers(tokens),
            params={"transactionState": "BOOKED", "paging-first": offset},
        )
        self._raise_for_status(response)
        payload = self._json(response)
        if not isinstance(payload, dict) or not isinstance(payload.get("values"), list):
            raise BankInvalidResponse("transaction page without values")
        transactions = []
        for raw in payload["values"]:
            transaction = parse_transaction(raw)
            if transaction is not None:
                transactions.append(transaction)
        return transactions

    async def fetch_transactions(self, tokens: Tokens, account_id: str, days_back: int) -> list[BankTransaction]:
        cutoff = date.today() - timedelta(days=days_back)
        collected: list[BankTransaction] = []
        offset = 0
        for _ in range(MAX_PAGES):
            page = await self._transactions_page(tokens, account_id, offset)
            in_range = [tx for tx in page if tx.booking_date >= cutoff]
            collected.extend(in_range)
            # Pages are newest first; stop once the window is left.
            if not page or len(in_range) < len(page):
                break
            offset += len(page)
        else:
            logger.warning("[BANK] Stopped paging after %d pages", MAX_PAGES)
        return collected
