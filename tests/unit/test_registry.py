"""Unit tests for the position registry."""
import asyncio
from decimal import Decimal

import pytest

from conftest import TOKEN, make_thresholds, price_update, ts
from exit_engine.core.exceptions import (
    DataInconsistency,
    DuplicateActivePosition,
    PositionNotFound,
)
from exit_engine.core.models import BalanceUpdate, TriggerKey, TriggerKind


async def register(registry, thresholds=None, amount="1000", price="1.00", token=TOKEN):
    return await registry.register(
        token,
        Decimal(price),
        Decimal(amount),
        Decimal(price) * Decimal(amount),
        thresholds or make_thresholds(),
    )


class TestRegistration:

    @pytest.mark.asyncio
    async def test_register_initial_state(self, registry):
        position_id = await register(registry)
        position = registry.get(position_id)

        assert position.active
        assert position.remaining_amount == Decimal("1000")
        assert position.current_price == Decimal("1.00")
        assert position.highest_price == Decimal("1.00")
        assert position.fired_triggers == set()
        assert registry.active_id_for_token(TOKEN) == position_id

    @pytest.mark.asyncio
    async def test_duplicate_active_position_rejected(self, registry):
        existing = await register(registry)

        with pytest.raises(DuplicateActivePosition) as exc_info:
            await register(registry)

        assert exc_info.value.existing_id == existing

    @pytest.mark.asyncio
    async def test_reregister_after_close(self, registry):
        first = await register(registry)
        await registry.apply_full_exit(first, Decimal("900"), TriggerKind.STOP_LOSS)

        second = await register(registry)

        assert second != first
        assert registry.active_id_for_token(TOKEN) == second
        assert not registry.get(first).active

    def test_unknown_position(self, registry):
        with pytest.raises(PositionNotFound):
            registry.get("missing")

    @pytest.mark.asyncio
    async def test_snapshot_is_detached(self, registry):
        position_id = await register(registry)
        snapshot = registry.get(position_id)
        snapshot.remaining_amount = Decimal("1")

        assert registry.get(position_id).remaining_amount == Decimal("1000")


class TestApplyUpdate:

    @pytest.mark.asyncio
    async def test_price_updates_highest(self, registry):
        position_id = await register(registry)

        assert await registry.apply_update(position_id, price_update(position_id, "1.40", 1))
        assert await registry.apply_update(position_id, price_update(position_id, "1.20", 2))

        position = registry.get(position_id)
        assert position.current_price == Decimal("1.20")
        assert position.highest_price == Decimal("1.40")
        assert position.last_applied_ts == ts(2)

    @pytest.mark.asyncio
    async def test_stale_event_discarded(self, registry):
        position_id = await register(registry)
        await registry.apply_update(position_id, price_update(position_id, "1.10", 10))

        assert not await registry.apply_update(position_id, price_update(position_id, "0.50", 5))
        assert not await registry.apply_update(position_id, price_update(position_id, "0.50", 10))

        position = registry.get(position_id)
        assert position.current_price == Decimal("1.10")
        assert registry.stale_discarded == 2

    @pytest.mark.asyncio
    async def test_update_after_close_discarded(self, registry):
        position_id = await register(registry)
        await registry.apply_full_exit(position_id, Decimal("1000"), TriggerKind.TAKE_PROFIT)

        assert not await registry.apply_update(position_id, price_update(position_id, "2", 1))
        assert registry.get(position_id).current_price == Decimal("1.00")

    @pytest.mark.asyncio
    async def test_trailing_armed_on_activation(self, registry):
        thresholds = make_thresholds(trailing_activation_pct="0.5", trailing_distance_pct="0.3")
        position_id = await register(registry, thresholds)

        await registry.apply_update(position_id, price_update(position_id, "1.40", 1))
        assert not registry.get(position_id).trailing_active

        await registry.apply_update(position_id, price_update(position_id, "1.80", 2))
        position = registry.get(position_id)
        assert position.trailing_active
        assert position.trailing_stop_price == Decimal("1.260")


class TestBalanceReconciliation:

    @pytest.mark.asyncio
    async def test_external_reduction_recorded(self, registry):
        position_id = await register(registry)
        event = BalanceUpdate(position_id=position_id, amount=Decimal("600"), ts=ts(1))

        assert await registry.apply_update(position_id, event)

        position = registry.get(position_id)
        assert position.active
        assert position.remaining_amount == Decimal("600")
        assert position.exits[-1].kind is TriggerKind.EXTERNAL_CLOSE
        assert position.sold_amount == Decimal("400")

    @pytest.mark.asyncio
    async def test_zero_balance_closes_position(self, registry):
        position_id = await register(registry)
        event = BalanceUpdate(position_id=position_id, amount=Decimal("0"), ts=ts(1))

        await registry.apply_update(position_id, event)

        position = registry.get(position_id)
        assert not position.active
        assert position.exit_reason is TriggerKind.EXTERNAL_CLOSE
        assert registry.active_id_for_token(TOKEN) is None

    @pytest.mark.asyncio
    async def test_balance_above_entry_is_inconsistent(self, registry):
        position_id = await register(registry)
        event = BalanceUpdate(position_id=position_id, amount=Decimal("1500"), ts=ts(1))

        with pytest.raises(DataInconsistency):
            await registry.apply_update(position_id, event)

        assert registry.get(position_id).remaining_amount == Decimal("1000")

    @pytest.mark.asyncio
    async def test_negative_balance_is_inconsistent(self, registry):
        position_id = await register(registry)
        event = BalanceUpdate(position_id=position_id, amount=Decimal("-1"), ts=ts(1))

        with pytest.raises(DataInconsistency):
            await registry.apply_update(position_id, event)


class TestExits:

    @pytest.mark.asyncio
    async def test_partial_exit_reduces_remaining(self, registry):
        position_id = await register(registry)

        updated = await registry.apply_partial_exit(
            position_id, Decimal("0.3"), Decimal("345"), Decimal("0.15")
        )

        assert updated.remaining_amount == Decimal("700.0")
        assert updated.exits[0].amount == Decimal("300.0")
        assert updated.exits[0].realized_pnl == Decimal("45.0")
        assert updated.active

    @pytest.mark.asyncio
    async def test_sold_fraction_never_exceeds_one(self, registry):
        position_id = await register(registry)

        await registry.apply_partial_exit(position_id, Decimal("0.3"), Decimal("0"), Decimal("0.15"))
        await registry.apply_partial_exit(position_id, Decimal("0.5"), Decimal("0"), Decimal("0.25"))
        final = await registry.apply_full_exit(position_id, Decimal("0"), TriggerKind.STOP_LOSS)

        assert final.sold_fraction == Decimal("1")
        assert final.remaining_amount == Decimal("0")
        assert final.entry_amount - final.remaining_amount == final.sold_amount

    @pytest.mark.asyncio
    async def test_oversell_is_inconsistent(self, registry):
        position_id = await register(registry)

        with pytest.raises(DataInconsistency):
            await registry.apply_partial_exit(position_id, Decimal("1.5"), Decimal("0"), None)

        assert registry.get(position_id).remaining_amount == Decimal("1000")

    @pytest.mark.asyncio
    async def test_full_exit_sets_audit_fields(self, registry):
        position_id = await register(registry)

        final = await registry.apply_full_exit(
            position_id, Decimal("1200"), TriggerKind.TAKE_PROFIT, signature="sig"
        )

        assert not final.active
        assert final.exit_reason is TriggerKind.TAKE_PROFIT
        assert final.final_pnl == Decimal("200")
        assert final.final_pnl_pct == Decimal("20")
        assert final.exited_at is not None

    @pytest.mark.asyncio
    async def test_exit_on_closed_position_is_inconsistent(self, registry):
        position_id = await register(registry)
        await registry.apply_full_exit(position_id, Decimal("0"), TriggerKind.STOP_LOSS)

        with pytest.raises(DataInconsistency):
            await registry.apply_full_exit(position_id, Decimal("0"), TriggerKind.STOP_LOSS)

    @pytest.mark.asyncio
    async def test_mark_fired(self, registry):
        position_id = await register(registry)
        key = TriggerKey(kind=TriggerKind.STOP_LOSS)

        await registry.mark_fired(position_id, key)

        assert registry.get(position_id).has_fired(key)


class TestSerialization:

    @pytest.mark.asyncio
    async def test_concurrent_partial_exits_serialize(self, registry):
        position_id = await register(registry)

        await asyncio.gather(*(
            registry.apply_partial_exit(position_id, Decimal("0.5"), Decimal("0"), None)
            for _ in range(4)
        ))

        position = registry.get(position_id)
        assert position.remaining_amount == Decimal("62.5")
        assert position.entry_amount - position.remaining_amount == position.sold_amount

    @pytest.mark.asyncio
    async def test_exposure_tracks_active_cost_basis(self, registry):
        first = await register(registry, amount="100")
        await register(registry, amount="50", token="OtherMint")
        await registry.apply_partial_exit(first, Decimal("0.5"), Decimal("60"), None)

        assert registry.current_exposure() == Decimal("100.0")
