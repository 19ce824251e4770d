"""Risk sizing for new positions.

Computes the size of a new position from the candidate asset's risk score and
the portfolio's current exposure, and hands out the exit thresholds the
position is monitored against.
"""

from exit_engine.risk.sizing import RiskSizer, create_risk_sizer

__all__ = [
    'RiskSizer',
    'create_risk_sizer',
]
