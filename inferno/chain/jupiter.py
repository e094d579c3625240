"""Jupiter Ultra swap API client (order, then execute)."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, Optional

import aiohttp

from inferno.errors import RemoteError, RemoteRejected, RemoteTimeout

logger = logging.getLogger(__name__)

JUPITER_ULTRA_API = "https://api.jup.ag/ultra/v1"
SOL_MINT = "So11111111111111111111111111111111111111112"


class JupiterUltraClient:
    """Thin async wrapper over /order and /execute."""

    def __init__(self, base_url: Optional[str] = None, timeout_seconds: float = 30.0):
        self.base_url = (base_url or os.environ.get("JUPITER_ULTRA_API", JUPITER_ULTRA_API)).rstrip("/")
        self.api_key = os.environ.get("JUPITER_API_KEY")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"x-api-key": self.api_key} if self.api_key else None
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def get_order(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        taker: str,
        slippage_bps: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Request an unsigned swap transaction. Nothing is sent on chain."""
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "taker": taker,
        }
        if slippage_bps is not None:
            params["slippageBps"] = str(slippage_bps)

        session = await self._get_session()
        try:
            async with session.get(f"{self.base_url}/order", params=params) as resp:
                data = await resp.json(content_type=None)
                status = resp.status
        except asyncio.TimeoutError as exc:
            raise RemoteTimeout("Jupiter order request timed out") from exc
        except aiohttp.ClientError as exc:
            raise RemoteError(f"Jupiter order request failed: {exc}", retryable=True) from exc

        if status == 429 or status >= 500:
            raise RemoteError(f"Jupiter order HTTP {status}", retryable=True)
        error = (data or {}).get("error") or (data or {}).get("errorMessage")
        if status != 200 or error:
            raise RemoteRejected(f"Jupiter order rejected: {error or status}")
        if not data.get("transaction"):
            raise RemoteRejected("Jupiter order returned no transaction")

        logger.info(
            f"Jupiter order via {data.get('router', '?')}: expected {data.get('outAmount')} out, "
            f"impact {float(data.get('priceImpact') or 0) * 100:.2f}%"
        )
        return data

    async def execute(self, signed_transaction_b64: str, request_id: str, reference: str) -> Dict[str, Any]:
        """
        Hand a signed order back to Jupiter for landing.

        `reference` is the transaction signature, attached to any error so
        callers can still verify it later.
        """
        session = await self._get_session()
        payload = {"signedTransaction": signed_transaction_b64, "requestId": request_id}
        try:
            async with session.post(f"{self.base_url}/execute", json=payload) as resp:
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise RemoteTimeout("Jupiter execute timed out", reference=reference) from exc
        except aiohttp.ClientError as exc:
            # The transaction may have been forwarded before the connection broke
            raise RemoteTimeout(f"Jupiter execute failed: {exc}", reference=reference) from exc

        if (data or {}).get("status") != "Success":
            raise RemoteRejected(
                f"Jupiter execute failed: {(data or {}).get('error') or data}",
                reference=reference,
            )
        return data
