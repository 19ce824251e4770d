"""Jupiter aggregator client.

Quotes come from ``GET {quote_api_url}/quote`` and swap transactions from
``POST {quote_api_url}/swap``. Amounts cross the API in raw base units; this
client converts to and from UI units with token decimals looked up once per
mint and cached.

Signing and submission are delegated to an injected TransactionSender.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp
import structlog

from exit_engine.core.config import SwapServiceConfig, engine_config
from exit_engine.core.exceptions import NetworkError, NoRoute, SwapServiceError
from exit_engine.core.models import Quote, SwapResult
from exit_engine.exchange.base import SwapExecutionService, TransactionSender

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)
NO_ROUTE_CODES = ("COULD_NOT_FIND_ANY_ROUTE", "NO_ROUTES_FOUND", "TOKEN_NOT_TRADABLE")


def to_raw(amount: Decimal, decimals: int) -> int:
    """UI amount to integer base units (rounded down)."""
    return int(amount * (Decimal(10) ** decimals))


def from_raw(raw: Any, decimals: int) -> Decimal:
    return Decimal(str(raw)) / (Decimal(10) ** decimals)


class JupiterSwapService(SwapExecutionService):
    """
    Swap execution through the Jupiter aggregator.

    Attributes:
        sender: Signs and submits built transactions
        config: API URLs, base asset and timeouts
    """

    def __init__(
        self,
        sender: TransactionSender,
        config: Optional[SwapServiceConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.sender = sender
        self.config = config or engine_config.swap
        self._session = session
        self._decimals: Dict[str, int] = {self.config.base_asset: self.config.base_asset_decimals}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    # -------------------------------------------------------------------------
    # Token metadata
    # -------------------------------------------------------------------------

    async def get_decimals(self, mint: str) -> int:
        """Token decimals, cached per mint."""
        if mint in self._decimals:
            return self._decimals[mint]

        session = await self._get_session()
        try:
            async with session.get(f"{self.config.token_api_url}/token/{mint}") as resp:
                if resp.status != 200:
                    raise self._status_error("token lookup", resp.status, await resp.text())
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise NetworkError(f"Token lookup failed for {mint}: {e}") from e

        decimals = data.get("decimals") if isinstance(data, dict) else None
        if decimals is None:
            raise NoRoute(f"Unknown token {mint}")
        self._decimals[mint] = int(decimals)
        return self._decimals[mint]

    # -------------------------------------------------------------------------
    # Quote / swap
    # -------------------------------------------------------------------------

    async def get_quote(
        self,
        in_asset: str,
        out_asset: str,
        amount: Decimal,
        slippage_bps: int,
    ) -> Quote:
        in_decimals = await self.get_decimals(in_asset)
        out_decimals = await self.get_decimals(out_asset)

        raw_amount = to_raw(amount, in_decimals)
        if raw_amount <= 0:
            raise NoRoute(f"Amount {amount} rounds to zero base units")

        params = {
            "inputMint": in_asset,
            "outputMint": out_asset,
            "amount": str(raw_amount),
            "slippageBps": slippage_bps,
            "swapMode": "ExactIn",
        }

        session = await self._get_session()
        try:
            async with session.get(f"{self.config.quote_api_url}/quote", params=params) as resp:
                if resp.status != 200:
                    raise self._status_error("quote", resp.status, await resp.text())
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise NetworkError(f"Quote request failed: {e}") from e

        if "error" in data:
            raise NoRoute(f"Quote error: {data['error']}")

        out_raw = int(data.get("outAmount", 0))
        if out_raw <= 0:
            raise NoRoute(f"Quote returned no output for {in_asset}")

        quote = Quote(
            in_asset=in_asset,
            out_asset=out_asset,
            in_amount=from_raw(data.get("inAmount", raw_amount), in_decimals),
            out_amount=from_raw(out_raw, out_decimals),
            price_impact_pct=Decimal(str(data.get("priceImpactPct", "0"))),
            slippage_bps=slippage_bps,
            raw=data,
        )
        logger.debug(
            "jupiter.quote",
            in_asset=in_asset,
            in_amount=str(quote.in_amount),
            out_amount=str(quote.out_amount),
            price_impact_pct=str(quote.price_impact_pct),
        )
        return quote

    async def build_swap_transaction(
        self,
        quote: Quote,
        priority_options: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Ask Jupiter for a serialized (base64) swap transaction."""
        priority_level = (priority_options or {}).get("priorityLevel", self.config.priority_fee)
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": self.sender.public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": {
                "priorityLevelWithMaxLamports": {
                    "priorityLevel": priority_level,
                    "maxLamports": 1_000_000,
                }
            },
        }

        session = await self._get_session()
        try:
            async with session.post(f"{self.config.quote_api_url}/swap", json=payload) as resp:
                if resp.status != 200:
                    raise self._status_error("swap build", resp.status, await resp.text())
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise NetworkError(f"Swap build failed: {e}") from e

        transaction = data.get("swapTransaction")
        if not transaction:
            raise SwapServiceError(f"Swap build returned no transaction: {data}")
        return transaction

    async def execute_swap(
        self,
        quote: Quote,
        priority_options: Optional[Dict[str, Any]] = None,
    ) -> SwapResult:
        transaction = await self.build_swap_transaction(quote, priority_options)
        signature = await self.sender.send(transaction)

        logger.info(
            "jupiter.swap_confirmed",
            in_asset=quote.in_asset,
            in_amount=str(quote.in_amount),
            out_amount=str(quote.out_amount),
            signature=signature,
        )
        return SwapResult(
            signature=signature,
            output_amount=quote.out_amount,
            input_amount=quote.in_amount,
        )

    @staticmethod
    def _status_error(operation: str, status: int, body: str) -> SwapServiceError:
        message = f"Jupiter {operation} failed: {status} - {body[:200]}"
        if status in RETRYABLE_STATUS:
            return NetworkError(message)
        if any(code in body for code in NO_ROUTE_CODES) or status in (400, 404):
            return NoRoute(message)
        return SwapServiceError(message)
