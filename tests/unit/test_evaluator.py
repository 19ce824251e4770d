"""Unit tests for the trigger evaluator."""
from decimal import Decimal

import pytest

from conftest import TOKEN, make_thresholds
from exit_engine.core.evaluator import TriggerEvaluator
from exit_engine.core.models import Position, TriggerKey, TriggerKind


@pytest.fixture
def evaluator():
    return TriggerEvaluator()


def position_at(price, thresholds, highest=None, fired=(), trailing_active=False) -> Position:
    return Position(
        token_id=TOKEN,
        entry_price=Decimal("1.00"),
        entry_amount=Decimal("1000"),
        invested_capital=Decimal("1000"),
        current_price=Decimal(str(price)),
        highest_price=Decimal(str(highest or price)),
        trailing_active=trailing_active,
        thresholds=thresholds,
        fired_triggers=set(fired),
    )


class TestPriority:

    def test_no_trigger_inside_band(self, evaluator, thresholds):
        decision = evaluator.evaluate(position_at("1.05", thresholds))

        assert not decision.is_exit
        assert str(decision) == "none"

    def test_emergency_beats_stop_loss(self, evaluator):
        thresholds = make_thresholds(stop_loss_pct="-0.10", emergency_stop_pct="-0.20")

        decision = evaluator.evaluate(position_at("0.75", thresholds))

        assert decision.kind is TriggerKind.EMERGENCY_STOP
        assert decision.is_full

    def test_stop_loss_beats_take_profit_ladder(self, evaluator):
        # A degenerate configuration where both hold at once
        thresholds = make_thresholds(stop_loss_pct="0.20", ladder=[("0.10", "0.5")])

        decision = evaluator.evaluate(position_at("1.15", thresholds))

        assert decision.kind is TriggerKind.STOP_LOSS

    def test_partial_beats_full_take_profit(self, evaluator):
        thresholds = make_thresholds(take_profit_pct="0.25", ladder=[("0.15", "0.3")])

        decision = evaluator.evaluate(position_at("1.30", thresholds))

        assert decision.kind is TriggerKind.PARTIAL_TAKE_PROFIT
        assert decision.level.gain_pct == Decimal("0.15")

    def test_take_profit_after_ladder_exhausted(self, evaluator):
        thresholds = make_thresholds(take_profit_pct="0.25", ladder=[("0.15", "0.3")])
        fired = {TriggerKey(kind=TriggerKind.PARTIAL_TAKE_PROFIT, level=Decimal("0.15"))}

        decision = evaluator.evaluate(position_at("1.30", thresholds, fired=fired))

        assert decision.kind is TriggerKind.TAKE_PROFIT
        assert decision.sell_fraction == Decimal("1")

    def test_trigger_kinds_declared_in_priority_order(self):
        kinds = [
            TriggerKind.EMERGENCY_STOP,
            TriggerKind.STOP_LOSS,
            TriggerKind.TRAILING_STOP,
            TriggerKind.PARTIAL_TAKE_PROFIT,
            TriggerKind.TAKE_PROFIT,
        ]
        assert sorted(kinds, key=lambda k: k.priority) == kinds

    def test_inactive_position_never_triggers(self, evaluator, thresholds):
        position = position_at("0.10", thresholds)
        position.active = False

        assert not evaluator.evaluate(position).is_exit


class TestScenarios:

    def test_scenario_a_stop_loss(self, evaluator):
        thresholds = make_thresholds(stop_loss_pct="-0.15", take_profit_pct="0.30")

        decision = evaluator.evaluate(position_at("0.84", thresholds))

        assert decision.kind is TriggerKind.STOP_LOSS
        assert decision.sell_fraction == Decimal("1")
        assert decision.pnl_pct == Decimal("-0.16")

    def test_scenario_b_ladder_levels(self, evaluator):
        thresholds = make_thresholds(
            ladder=[("0.15", "0.3"), ("0.25", "0.5"), ("0.50", "1.0")]
        )

        first = evaluator.evaluate(position_at("1.16", thresholds))
        assert first.kind is TriggerKind.PARTIAL_TAKE_PROFIT
        assert first.level.gain_pct == Decimal("0.15")
        assert first.sell_fraction == Decimal("0.3")

        fired = {first.trigger_key}
        second = evaluator.evaluate(position_at("1.26", thresholds, fired=fired))
        assert second.level.gain_pct == Decimal("0.25")
        assert second.sell_fraction == Decimal("0.5")

    def test_scenario_b_multi_level_crossing_returns_lowest_rung(self, evaluator):
        thresholds = make_thresholds(
            ladder=[("0.50", "1.0"), ("0.15", "0.3"), ("0.25", "0.5")]
        )

        decision = evaluator.evaluate(position_at("1.60", thresholds))

        assert decision.level.gain_pct == Decimal("0.15")

    def test_scenario_c_trailing_stop(self, evaluator):
        thresholds = make_thresholds(
            stop_loss_pct="-0.15", trailing_activation_pct="0.5", trailing_distance_pct="0.3"
        )

        at_peak = evaluator.evaluate(position_at("1.80", thresholds, trailing_active=True))
        assert not at_peak.is_exit

        pullback = evaluator.evaluate(
            position_at("1.50", thresholds, highest="1.80", trailing_active=True)
        )
        assert not pullback.is_exit

        hit = evaluator.evaluate(position_at("1.26", thresholds, highest="1.80", trailing_active=True))
        assert hit.kind is TriggerKind.TRAILING_STOP

    def test_trailing_requires_activation(self, evaluator):
        thresholds = make_thresholds(trailing_activation_pct="0.5", trailing_distance_pct="0.05")

        decision = evaluator.evaluate(position_at("1.10", thresholds, highest="1.30"))

        assert not decision.is_exit


class TestFiredTriggers:

    def test_fired_stop_loss_not_returned_again(self, evaluator, thresholds):
        fired = {TriggerKey(kind=TriggerKind.STOP_LOSS)}

        decision = evaluator.evaluate(position_at("0.84", thresholds, fired=fired))

        assert not decision.is_exit

    def test_fired_rungs_skipped(self, evaluator):
        thresholds = make_thresholds(ladder=[("0.15", "0.3"), ("0.25", "0.5")])
        fired = {
            TriggerKey(kind=TriggerKind.PARTIAL_TAKE_PROFIT, level=Decimal("0.15")),
            TriggerKey(kind=TriggerKind.PARTIAL_TAKE_PROFIT, level=Decimal("0.25")),
        }

        decision = evaluator.evaluate(position_at("1.40", thresholds, fired=fired))

        assert not decision.is_exit

    def test_evaluate_does_not_mutate(self, evaluator, thresholds):
        position = position_at("0.84", thresholds)
        before = position.model_dump(mode="json")

        evaluator.evaluate(position)

        assert position.model_dump(mode="json") == before
