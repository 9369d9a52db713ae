"""
Unit tests for RiskEngine
"""

import pytest

from mod_martingale.models import TradeDirection
from mod_martingale.risk.risk_engine import RiskEngine
from mod_martingale.strategies.martingale.calculations.martingale_calculator import (
    MartingaleCalculator,
)
from mod_martingale.strategies.martingale.core.position_state import PositionState


@pytest.fixture
def position_state():
    """Позиция с максимумом 2 уровня"""
    return PositionState(MartingaleCalculator(max_entry_levels=2))


@pytest.fixture
def engine(position_state):
    return RiskEngine(
        position_state,
        minimum_profit_threshold=10.0,
        drawdown_stop_loss_percentage=30.0,
    )


@pytest.fixture
def max_level_engine(engine, position_state):
    """Позиция на максимальном уровне"""
    position_state.update_average_price(100.0, 0.01, direction=TradeDirection.LONG)
    position_state.update_average_price(98.0, 0.02)
    assert position_state.is_max_level
    return engine


class TestResetEligibility:
    """Тесты права на сброс"""

    def test_closed_profit_above_threshold(self, engine):
        engine.record_closed_profit(15.0)
        assert engine.check_reset_eligibility(0.0) is True

    def test_below_threshold(self, engine):
        engine.record_closed_profit(5.0)
        assert engine.check_reset_eligibility(0.0) is False

    def test_combined_must_exceed_drawdown(self, engine):
        engine.record_closed_profit(30.0)
        # combined=10 не больше просадки 20
        assert engine.check_reset_eligibility(-20.0) is False

    def test_combined_above_drawdown_and_threshold(self, engine):
        engine.record_closed_profit(50.0)
        assert engine.check_reset_eligibility(-20.0) is True

    def test_uses_last_open_profit(self, engine):
        engine.update_open_profit(12.0)
        assert engine.combined_pnl() == 12.0
        assert engine.check_reset_eligibility() is True

    def test_current_drawdown(self):
        assert RiskEngine.current_drawdown(-5.0) == -5.0
        assert RiskEngine.current_drawdown(5.0) == 0.0


class TestDrawdownStopLoss:
    """Тесты drawdown stop-loss на максимальном уровне"""

    def test_first_check_only_latches(self, max_level_engine):
        assert max_level_engine.check_drawdown_stop_loss(-100.0, True) is False
        assert max_level_engine.drawdown_at_max_level == -100.0
        assert max_level_engine.drawdown_trigger_level() == pytest.approx(-130.0)

    def test_triggers_at_trigger_level(self, max_level_engine):
        max_level_engine.check_drawdown_stop_loss(-100.0, True)

        assert max_level_engine.check_drawdown_stop_loss(-120.0, True) is False
        assert max_level_engine.check_drawdown_stop_loss(-130.0, True) is True
        assert max_level_engine.drawdown_at_max_level == 0.0

    def test_one_shot(self, max_level_engine):
        """После срабатывания следующий вызов только взводит заново"""
        max_level_engine.check_drawdown_stop_loss(-100.0, True)
        max_level_engine.check_drawdown_stop_loss(-150.0, True)

        assert max_level_engine.check_drawdown_stop_loss(-200.0, True) is False
        assert max_level_engine.drawdown_at_max_level == -200.0

    def test_positive_pnl_does_not_latch(self, max_level_engine):
        assert max_level_engine.check_drawdown_stop_loss(5.0, True) is False
        assert max_level_engine.drawdown_at_max_level == 0.0

    def test_ignored_below_max_level(self, engine, position_state):
        position_state.update_average_price(100.0, 0.01, direction=TradeDirection.LONG)

        assert engine.check_drawdown_stop_loss(-100.0, True) is False
        assert engine.drawdown_at_max_level == 0.0

    def test_ignored_without_open_position(self, max_level_engine):
        assert max_level_engine.check_drawdown_stop_loss(-100.0, False) is False
        assert max_level_engine.drawdown_at_max_level == 0.0

    def test_set_reference_only_once(self, engine):
        assert engine.set_drawdown_at_max_level(-50.0) is True
        assert engine.set_drawdown_at_max_level(-80.0) is False
        assert engine.drawdown_at_max_level == -50.0


class TestSystemReset:
    """Тесты сброса системы"""

    def test_refused_with_open_volume(self, max_level_engine, position_state):
        max_level_engine.record_closed_profit(7.0)

        assert max_level_engine.execute_system_reset(0.03) is False
        assert position_state.current_level == 2
        assert max_level_engine.closed_profit == 7.0
        assert max_level_engine.reset_count == 0

    def test_resets_everything_when_flat(self, max_level_engine, position_state):
        max_level_engine.record_closed_profit(7.0)
        max_level_engine.update_open_profit(-3.0)
        max_level_engine.set_drawdown_at_max_level(-3.0)

        assert max_level_engine.execute_system_reset(0.0) is True
        assert position_state.is_flat is True
        assert max_level_engine.closed_profit == 0.0
        assert max_level_engine.current_open_profit == 0.0
        assert max_level_engine.drawdown_at_max_level == 0.0
        assert max_level_engine.reset_count == 1

    def test_snapshot_round_trip(self, engine, position_state):
        engine.record_closed_profit(4.5)
        engine.set_drawdown_at_max_level(-12.0)
        snapshot = engine.to_snapshot()

        restored = RiskEngine(position_state, 10.0, 30.0)
        restored.restore_snapshot(snapshot)

        assert restored.closed_profit == 4.5
        assert restored.drawdown_at_max_level == -12.0
        assert restored.system_start_time == engine.system_start_time

    def test_restore_from_empty_section(self, engine):
        engine.restore_snapshot({})
        assert engine.closed_profit == 0.0
        assert engine.reset_count == 0
