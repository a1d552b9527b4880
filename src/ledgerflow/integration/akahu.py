import asyncio
import os
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from ledgerflow.core import settings
from ledgerflow.errors import ServiceUnavailableError
from ledgerflow.logger import get_logger
from ledgerflow.models import BankTransaction

logger = get_logger(__name__)

MAX_PAGES = 50


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def parse_bank_transaction(raw: dict[str, Any]) -> BankTransaction | None:
    """Convert one provider transaction payload; malformed entries give None."""
    posted = _parse_date(raw.get("date"))
    if posted is None:
        return None
    try:
        amount = Decimal(str(raw.get("amount")))
    except (InvalidOperation, ValueError):
        return None

    merchant = raw.get("merchant") or {}
    category = raw.get("category") or {}
    meta = raw.get("meta") or {}
    return BankTransaction(
        external_id=raw.get("_id"),
        transaction_date=posted,
        amount=amount,
        description=raw.get("description") or "",
        merchant_name=merchant.get("name") if isinstance(merchant, dict) else None,
        reference=meta.get("reference") if isinstance(meta, dict) else None,
        category=category.get("name") if isinstance(category, dict) else None,
    )


class AkahuClient:
    """Minimal Akahu-style bank data client."""

    def __init__(
        self,
        base_url: str | None = None,
        app_token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("AKAHU_BASE_URL") or settings.DEFAULT_AKAHU_BASE_URL).rstrip("/")
        self.app_token = app_token or os.getenv("AKAHU_APP_TOKEN")
        self._client = client
        self._client_lock = asyncio.Lock()

    @property
    def is_configured(self) -> bool:
        return bool(self.app_token)

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
                client = httpx.AsyncClient(timeout=30.0)
                self._client = client
            return client

    def _headers(self, user_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {user_token}",
            "X-Akahu-Id": self.app_token or "",
            "Accept": "application/json",
        }

    async def _get(self, path: str, user_token: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}{path}", headers=self._headers(user_token), params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.error(f"[SYNC] Bank API request {path} failed: {e}")
            raise ServiceUnavailableError("Bank provider request failed") from e

    async def get_accounts(self, user_token: str) -> list[dict[str, Any]]:
        payload = await self._get("/accounts", user_token)
        return payload.get("items", [])

    async def get_balance(self, user_token: str, external_account_id: str) -> Decimal | None:
        """Current balance of one account, or None when the provider omits it."""
        payload = await self._get(f"/accounts/{external_account_id}", user_token)
        balance = ((payload.get("item") or {}).get("balance") or {}).get("current")
        if balance is None:
            return None
        try:
            return Decimal(str(balance))
        except InvalidOperation:
            logger.warning(f"[SYNC] Unreadable balance for account {external_account_id}: {balance!r}")
            return None

    async def get_transactions(
        self,
        user_token: str,
        external_account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[BankTransaction]:
        params: dict[str, Any] = {}
        if start is not None:
            params["start"] = start.isoformat()
        if end is not None:
            params["end"] = end.isoformat()

        transactions: list[BankTransaction] = []
        for _ in range(MAX_PAGES):
            payload = await self._get(f"/accounts/{external_account_id}/transactions", user_token, params)
            for raw in payload.get("items", []):
                parsed = parse_bank_transaction(raw)
                if parsed is None:
                    logger.debug(f"[SYNC] Skipping malformed bank transaction: {raw.get('_id')}")
                    continue
                transactions.append(parsed)
            cursor = (payload.get("cursor") or {}).get("next")
            if not cursor:
                break
            params["cursor"] = cursor
        return transactions
