"""Tests for the trade state machine and the compare-and-swap repository."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from edgeline.services.trading import repository
from edgeline.services.trading.errors import TradeValidationError, TransitionConflict
from edgeline.services.trading.states import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    TradeStatus,
    can_cancel,
    can_transition,
    is_terminal,
)

NOW = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)


class TestTransitions:
    """Allowed lifecycle moves."""

    def test_happy_path(self):
        assert can_transition("scheduled", "active")
        assert can_transition("active", "hedged")
        assert can_transition("hedged", "settled")

    def test_hedged_only_settles(self):
        for target in TradeStatus:
            assert can_transition(TradeStatus.HEDGED, target) == (target == TradeStatus.SETTLED)

    def test_terminal_statuses_go_nowhere(self):
        for status in TERMINAL_STATUSES:
            assert is_terminal(status)
            assert ALLOWED_TRANSITIONS[status] == frozenset()

    def test_settled_never_leaves(self):
        assert not any(can_transition(TradeStatus.SETTLED, t) for t in TradeStatus)

    def test_cancel_only_before_hedge(self):
        assert can_cancel("scheduled")
        assert can_cancel("active")
        assert not can_cancel("hedged")
        assert not can_cancel("settled")
        assert not can_cancel("cancelled")

    def test_cannot_skip_back_leg(self):
        assert not can_transition("scheduled", "hedged")


class TestCompareAndSwap:
    """Every write is guarded by status and version."""

    async def test_transition_bumps_version(self, db, make_trade):
        trade_id = await make_trade(NOW + timedelta(minutes=40))
        trade = await repository.get_trade(db, trade_id)

        updated = await repository.transition(
            db, trade, TradeStatus.ACTIVE, back_size=Decimal("10.00")
        )
        assert updated.status == "active"
        assert updated.version == 1
        assert updated.back_size == Decimal("10.00")

    async def test_stale_version_conflicts(self, db, session_factory, make_trade):
        trade_id = await make_trade(NOW + timedelta(minutes=40))
        stale = await repository.get_trade(db, trade_id)

        async with session_factory() as other:
            fresh = await repository.get_trade(other, trade_id)
            await repository.update_fields(other, fresh, last_error="touched")
            await other.commit()

        with pytest.raises(TransitionConflict) as exc:
            await repository._compare_and_swap(
                db, stale, TradeStatus.SCHEDULED, {"status": "active"}
            )
        assert exc.value.actual_status == "scheduled"

    async def test_concurrent_status_change_conflicts(self, session_factory, make_trade):
        trade_id = await make_trade(NOW + timedelta(minutes=40))
        async with session_factory() as first, session_factory() as second:
            a = await repository.get_trade(first, trade_id)
            b = await repository.get_trade(second, trade_id)

            await repository.transition(first, a, TradeStatus.CANCELLED)
            await first.commit()

            with pytest.raises(TransitionConflict) as exc:
                await repository.transition(second, b, TradeStatus.ACTIVE)
            assert exc.value.actual_status == "cancelled"

    async def test_illegal_transition_is_validation_error(self, db, make_trade):
        trade_id = await make_trade(NOW, status="hedged")
        trade = await repository.get_trade(db, trade_id)
        with pytest.raises(TradeValidationError):
            await repository.transition(db, trade, TradeStatus.CANCELLED)

    async def test_leg_fields_frozen_once_hedged(self, db, make_trade):
        trade_id = await make_trade(NOW, status="hedged")
        trade = await repository.get_trade(db, trade_id)
        with pytest.raises(TradeValidationError):
            await repository.update_fields(db, trade, lay_price=Decimal("2.00"))

        updated = await repository.update_fields(db, trade, last_error="note")
        assert updated.last_error == "note"

    async def test_events_are_json_safe(self, db, make_trade):
        trade_id = await make_trade(NOW)
        await repository.record_event(
            db, trade_id, "NOTE", {"price": Decimal("2.10"), "at": NOW, "status": TradeStatus.ACTIVE}
        )
        await db.commit()
        trade = await repository.get_trade(db, trade_id)
        await db.refresh(trade, ["events"])
        assert trade.events[0].payload == {
            "price": "2.10",
            "at": NOW.isoformat(),
            "status": "active",
        }
