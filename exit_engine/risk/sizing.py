"""Risk sizing - position size and exit thresholds at open time.

Sizing is a pure computation: it reads the risk score of the candidate asset,
the wallet balance and the capital already committed to open positions, and
either returns a SizingResult or rejects the trade by returning None.
"""
from decimal import Decimal, ROUND_DOWN
from typing import Optional, Union

import structlog

from exit_engine.core.config import RiskSizingConfig, engine_config
from exit_engine.core.models import SizingResult, to_decimal

logger = structlog.get_logger(__name__)

Number = Union[Decimal, float, int, str]


class RiskSizer:
    """
    Computes position size from a risk score and current portfolio exposure.

    Rules:
    - risk_multiplier = clamp(1 - risk_score/100, 0.3, 1.0)
    - size = min(max_single_position_pct * balance * risk_multiplier,
                 max_portfolio_exposure_pct * balance - current_exposure)
    - Rejected when exposure headroom is <= 0 or size is below the minimum
    """

    SIZE_QUANTUM = Decimal("0.0001")

    def __init__(self, config: Optional[RiskSizingConfig] = None):
        self.config = config or engine_config.sizing

        self.max_single_position_pct = to_decimal(self.config.max_single_position_pct)
        self.max_portfolio_exposure_pct = to_decimal(self.config.max_portfolio_exposure_pct)
        self.min_position_size = to_decimal(self.config.min_position_size)
        self.min_risk_multiplier = to_decimal(self.config.min_risk_multiplier)
        self.max_risk_multiplier = to_decimal(self.config.max_risk_multiplier)

    def risk_multiplier(self, risk_score: Number) -> Decimal:
        """Scale exposure down for riskier assets (score 0-100)."""
        raw = Decimal("1") - to_decimal(risk_score) / 100
        return max(self.min_risk_multiplier, min(self.max_risk_multiplier, raw))

    def size(
        self,
        risk_score: Number,
        wallet_balance: Number,
        current_exposure: Number,
    ) -> Optional[SizingResult]:
        """
        Calculate position size and exit thresholds.

        Args:
            risk_score: Asset risk score, 0 (safe) to 100 (dangerous)
            wallet_balance: Total base-currency balance
            current_exposure: Base currency already invested in open positions

        Returns:
            SizingResult, or None when the trade is rejected
        """
        balance = to_decimal(wallet_balance)
        exposure = to_decimal(current_exposure)

        if balance <= 0:
            logger.warning("sizing.rejected", reason="no_balance", balance=str(balance))
            return None

        multiplier = self.risk_multiplier(risk_score)
        headroom = self.max_portfolio_exposure_pct * balance - exposure

        if headroom <= 0:
            logger.warning(
                "sizing.rejected",
                reason="exposure_limit",
                exposure=str(exposure),
                limit=str(self.max_portfolio_exposure_pct * balance),
            )
            return None

        base_size = self.max_single_position_pct * balance * multiplier
        position_size = min(base_size, headroom).quantize(self.SIZE_QUANTUM, rounding=ROUND_DOWN)

        if position_size < self.min_position_size:
            logger.warning(
                "sizing.rejected",
                reason="below_minimum",
                position_size=str(position_size),
                minimum=str(self.min_position_size),
            )
            return None

        result = SizingResult(
            position_size=position_size,
            risk_multiplier=multiplier,
            portfolio_exposure_pct=(exposure + position_size) / balance,
            stop_loss_pct=to_decimal(self.config.stop_loss_pct),
            take_profit_1_pct=to_decimal(self.config.take_profit_1_pct),
            take_profit_2_pct=to_decimal(self.config.take_profit_2_pct),
            trailing_activation_pct=to_decimal(self.config.trailing_activation_pct),
        )

        logger.info(
            "sizing.approved",
            position_size=str(result.position_size),
            risk_multiplier=str(multiplier),
            portfolio_exposure_pct=str(round(result.portfolio_exposure_pct, 4)),
        )
        return result


def create_risk_sizer(config: Optional[RiskSizingConfig] = None) -> RiskSizer:
    """Factory function to create a configured RiskSizer instance."""
    return RiskSizer(config)
