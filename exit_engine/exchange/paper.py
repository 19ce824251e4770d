"""Paper swap execution for dry-run mode.

Quotes are priced from the price oracle and swaps fill instantly at the
quoted amount. Nothing is signed or sent.
"""
from collections import deque
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog

from exit_engine.core.exceptions import NetworkError, NoData, NoRoute, PriceOracleError
from exit_engine.core.models import Quote, SwapResult
from exit_engine.exchange.base import PriceOracle, SwapExecutionService

logger = structlog.get_logger(__name__)


class PaperSwapService(SwapExecutionService):
    """Simulated swaps priced from a PriceOracle."""

    def __init__(self, oracle: PriceOracle, fee_bps: int = 0, fill_history: int = 500):
        self.oracle = oracle
        self.fee_bps = fee_bps
        # Most recent fills only
        self.fills: "deque[SwapResult]" = deque(maxlen=fill_history)

    async def get_quote(
        self,
        in_asset: str,
        out_asset: str,
        amount: Decimal,
        slippage_bps: int,
    ) -> Quote:
        try:
            price = (await self.oracle.get_price(in_asset)).price
        except NoData as e:
            raise NoRoute(f"No paper price for {in_asset}") from e
        except PriceOracleError as e:
            raise NetworkError(f"Paper price lookup failed for {in_asset}: {e}") from e

        out_amount = amount * price * (1 - Decimal(self.fee_bps) / Decimal(10000))
        return Quote(
            in_asset=in_asset,
            out_asset=out_asset,
            in_amount=amount,
            out_amount=out_amount,
            slippage_bps=slippage_bps,
            raw={"paper_trade": True, "price": str(price)},
        )

    async def execute_swap(
        self,
        quote: Quote,
        priority_options: Optional[Dict[str, Any]] = None,
    ) -> SwapResult:
        signature = f"paper-{uuid4().hex}"
        logger.warning(
            "paper.swap_filled",
            in_asset=quote.in_asset,
            in_amount=str(quote.in_amount),
            out_amount=str(quote.out_amount),
            price=quote.raw.get("price"),
            signature=signature,
        )
        result = SwapResult(
            signature=signature,
            output_amount=quote.out_amount,
            input_amount=quote.in_amount,
        )
        self.fills.append(result)
        return result
