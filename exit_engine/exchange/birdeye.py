"""Birdeye price oracle (``GET /defi/price``).

Birdeye quotes in USD. Positions are valued in the base currency, so by
default the asset's USD price is divided by the base asset's USD price.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp
import structlog

from exit_engine.core.config import PriceOracleConfig, engine_config
from exit_engine.core.exceptions import NetworkError, NoData, PriceOracleError
from exit_engine.core.models import PriceQuote, utc_now
from exit_engine.exchange.base import PriceOracle

logger = structlog.get_logger(__name__)


class BirdeyePriceOracle(PriceOracle):
    """Price and liquidity lookups against the Birdeye public API."""

    def __init__(
        self,
        config: Optional[PriceOracleConfig] = None,
        base_asset: Optional[str] = None,
        denominate_in_base: bool = True,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or engine_config.oracle
        self.base_asset = base_asset or engine_config.swap.base_asset
        self.denominate_in_base = denominate_in_base
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "X-API-KEY": self.config.api_key,
                    "x-chain": self.config.chain,
                    "accept": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _fetch(self, address: str) -> Dict[str, Any]:
        session = await self._get_session()
        params = {"address": address, "include_liquidity": "true"}
        try:
            async with session.get(f"{self.config.api_url}/defi/price", params=params) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise NetworkError(f"Birdeye price failed: {resp.status}")
                if resp.status != 200:
                    raise PriceOracleError(f"Birdeye price failed: {resp.status}")
                body = await resp.json()
        except aiohttp.ClientError as e:
            raise NetworkError(f"Birdeye request failed: {e}") from e

        data = body.get("data") if body.get("success", True) else None
        if not data or not data.get("value"):
            raise NoData(f"No price for {address}")
        return data

    async def get_price(self, asset_id: str) -> PriceQuote:
        data = await self._fetch(asset_id)
        price = Decimal(str(data["value"]))

        if self.denominate_in_base and asset_id != self.base_asset:
            base = await self._fetch(self.base_asset)
            price = price / Decimal(str(base["value"]))

        logger.debug("birdeye.price", asset_id=asset_id, price=str(price))
        liquidity = data.get("liquidity")
        return PriceQuote(
            price=price,
            liquidity=Decimal(str(liquidity)) if liquidity is not None else None,
            observed_at=utc_now(),
        )
