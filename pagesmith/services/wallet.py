# pagesmith/services/wallet.py
"""Client for the external wallet that owns paid credit balances."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from pagesmith.errors import BalanceError, CreatorError, ErrorCode
from pagesmith.settings.config import settings

logger = logging.getLogger(__name__)


class WalletClient(Protocol):
    async def get_balance(self, user_id: str) -> int: ...

    async def debit(self, user_id: str, amount: int, metadata: Dict[str, Any]) -> str:
        """Take ``amount`` credits; returns the ledger transaction number."""
        ...

    async def credit(self, user_id: str, amount: int, metadata: Dict[str, Any]) -> str: ...


class HttpWalletClient:
    """
    Wallet over HTTP:
      GET  /balance/{user}      -> {"balance": int}
      POST /debit  {userId, amount, metadata} -> {"accountNo": str}
      POST /credit {userId, amount, metadata} -> {"accountNo": str}
    A 402 on debit means the user cannot cover the amount.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or settings.WALLET_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.WALLET_API_KEY
        self.timeout = timeout or settings.WALLET_TIMEOUT_SEC
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                 headers=self._headers(), transport=self._transport)

    async def get_balance(self, user_id: str) -> int:
        try:
            async with self._client() as c:
                r = await c.get(f"/balance/{user_id}")
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPError as e:
            raise CreatorError(f"Wallet balance lookup failed: {e}", ErrorCode.BILLING_DEDUCT_FAILED) from e
        return int((data or {}).get("balance", 0))

    async def _post(self, path: str, user_id: str, amount: int, metadata: Dict[str, Any],
                    failure_code: ErrorCode) -> str:
        payload = {"userId": user_id, "amount": amount, "metadata": metadata}
        try:
            async with self._client() as c:
                r = await c.post(path, json=payload)
        except httpx.HTTPError as e:
            raise CreatorError(f"Wallet {path} failed: {e}", failure_code) from e
        if r.status_code == 402:
            raise BalanceError.insufficient(amount)
        if r.status_code >= 400:
            raise CreatorError(f"Wallet {path} failed: HTTP {r.status_code} {r.text[:200]}", failure_code)
        data = r.json() or {}
        return str(data.get("accountNo") or data.get("id") or "")

    async def debit(self, user_id: str, amount: int, metadata: Dict[str, Any]) -> str:
        return await self._post("/debit", user_id, amount, metadata, ErrorCode.BILLING_DEDUCT_FAILED)

    async def credit(self, user_id: str, amount: int, metadata: Dict[str, Any]) -> str:
        return await self._post("/credit", user_id, amount, metadata, ErrorCode.BILLING_ROLLBACK_FAILED)


__all__ = ["WalletClient", "HttpWalletClient"]
