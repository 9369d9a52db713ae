"""
Integration tests: полный цикл TickOrchestrator на бумажном брокере
"""

import pandas as pd
import pytest

from mod_martingale.config import (
    BotConfig,
    ExitConfig,
    LoggingConfig,
    MartingaleConfig,
    PersistenceConfig,
    RiskConfig,
    TradingConfig,
)
from mod_martingale.execution.paper_execution import PaperExecution, ReplayIndicator
from mod_martingale.main import load_ticks, main, run_replay
from mod_martingale.models import ExitType, TradeDirection
from mod_martingale.strategies.martingale.orchestrator import TickOrchestrator


class FakeClock:
    """Управляемые монотонные часы"""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_config(state_dir=None, min_profit=1000.0, initial_target_atr=1.0, max_levels=3):
    return BotConfig(
        trading=TradingConfig(symbol="EURUSD", magic_id=7, contract_size=100.0),
        martingale=MartingaleConfig(
            max_entry_levels=max_levels, initial_lot=0.01, lot_multiplier=2.0, max_lot=1.0
        ),
        exits=ExitConfig(initial_target_atr=initial_target_atr),
        risk=RiskConfig(minimum_profit_threshold=min_profit, drawdown_stop_loss_percentage=30.0),
        persistence=PersistenceConfig(
            enabled=state_dir is not None,
            state_dir=str(state_dir) if state_dir else "data/state",
            save_interval_seconds=5.0,
        ),
        logging=LoggingConfig(status_log_interval_seconds=60.0),
    )


class Harness:
    """Оркестратор + бумажный брокер + replay индикатор"""

    def __init__(self, config, execution=None):
        self.clock = FakeClock()
        self.execution = execution or PaperExecution(contract_size=config.trading.contract_size)
        self.indicator = ReplayIndicator(direction=TradeDirection.LONG, atr=2.0, mod=100.0)
        self.orchestrator = TickOrchestrator.from_config(
            config, self.execution, self.indicator, clock=self.clock
        )

    @property
    def state(self):
        return self.orchestrator.state

    def tick(self, price, **indicator_values):
        if indicator_values:
            self.indicator.set(**indicator_values)
        self.execution.update_price(price)
        self.clock.now += 1.0
        return self.orchestrator.on_tick(price)

    def enter_long(self):
        """Вход LONG по 100 (пересечение MOD снизу)"""
        self.tick(99.0)
        result = self.tick(100.0)
        assert result.opened is True
        return result


@pytest.fixture
def harness():
    return Harness(make_config())


class TestEntryAndScaling:
    """Тесты входа и добавлений"""

    def test_entry_on_mod_cross(self, harness):
        first = harness.tick(99.0)
        assert first.opened is False
        assert harness.state.is_flat is True

        result = harness.tick(100.0)

        assert result.opened is True
        assert harness.state.current_level == 1
        assert harness.state.direction is TradeDirection.LONG
        assert harness.state.average_entry_price == 100.0
        assert harness.state.position_ticket == harness.execution.position_ticket()
        assert harness.execution.position_volume() == pytest.approx(0.01)

    def test_no_entry_without_cross(self, harness):
        harness.tick(99.0)
        result = harness.tick(99.5)

        assert result.opened is False
        assert harness.execution.position_volume() == 0.0

    def test_no_entry_without_direction(self, harness):
        harness.tick(99.0, direction=TradeDirection.NONE)
        result = harness.tick(100.5)

        assert result.opened is False

    def test_scale_in_at_ladder_level(self, harness):
        harness.enter_long()

        assert harness.tick(98.5).scaled_in is False
        result = harness.tick(98.0)

        assert result.scaled_in is True
        assert harness.state.current_level == 2
        assert harness.state.average_entry_price == pytest.approx(98.6666667)
        assert harness.execution.position_volume() == pytest.approx(0.03)

    def test_failed_scale_in_keeps_level(self, harness):
        harness.enter_long()
        harness.execution.fail_next_open = True

        result = harness.tick(98.0)

        assert result.scaled_in is False
        assert len(result.errors) == 1
        assert harness.state.current_level == 1

        retry = harness.tick(97.9)
        assert retry.scaled_in is True
        assert harness.state.current_level == 2


class TestExits:
    """Тесты выходов"""

    def test_initial_exit_closes_half_of_initial_lot(self, harness):
        harness.enter_long()
        harness.tick(101.0)

        result = harness.tick(102.5)

        assert result.exit_type is ExitType.INITIAL_50_PERCENT
        assert result.closed_volume == pytest.approx(0.005)
        assert harness.state.initial_profit_target_reached is True
        assert harness.execution.position_volume() == pytest.approx(0.005)
        assert harness.orchestrator.risk_engine.closed_profit == pytest.approx(1.25)

    def test_exit_not_repeated_while_beyond_target(self, harness):
        harness.enter_long()
        harness.tick(101.0)
        assert harness.tick(102.5).exit_type is ExitType.INITIAL_50_PERCENT
        # Цель уровня 1 (102) пересечена тем же тиком: срабатывает следующим
        level1 = harness.tick(102.6)
        assert level1.exit_type is ExitType.ATR_LEVEL_1
        assert level1.reclassified is True

        assert harness.tick(102.7).exit_type is ExitType.NONE
        assert harness.tick(102.8).exit_type is ExitType.NONE
        assert harness.execution.position_volume() == pytest.approx(0.0025)

    def test_targets_crossed_together_fire_in_order(self, harness):
        harness.enter_long()

        results = [harness.tick(price) for price in (101.0, 102.5, 103.0, 103.5)]

        assert [r.exit_type for r in results] == [
            ExitType.NONE,
            ExitType.INITIAL_50_PERCENT,
            ExitType.ATR_LEVEL_1,
            ExitType.NONE,
        ]
        assert results[2].reclassified is True
        assert harness.state.current_level == 1
        assert harness.state.armed_exits == []

    def test_armed_exit_dropped_after_pullback(self, harness):
        harness.enter_long()
        harness.tick(101.0)
        harness.tick(102.5)

        result = harness.tick(101.8)

        assert result.exit_type is ExitType.NONE
        assert harness.state.armed_exits == []
        assert harness.state.exit_level1_executed is False
        assert harness.execution.position_volume() == pytest.approx(0.005)

    def test_failed_exit_retried_next_tick(self, harness):
        harness.enter_long()
        harness.tick(101.0)
        harness.execution.fail_next_close = True

        failed = harness.tick(102.5)
        assert failed.exit_type is ExitType.NONE
        assert harness.state.pending_exit is ExitType.INITIAL_50_PERCENT
        assert harness.state.initial_profit_target_reached is False

        retry = harness.tick(102.6)
        assert retry.exit_type is ExitType.INITIAL_50_PERCENT
        assert harness.state.pending_exit is ExitType.NONE

    def test_pending_exit_cleared_by_scale_in(self, harness):
        harness.enter_long()
        harness.tick(101.0)
        harness.execution.fail_next_close = True
        harness.tick(102.5)
        assert harness.state.pending_exit is ExitType.INITIAL_50_PERCENT

        scale_in = harness.tick(98.0)
        assert scale_in.scaled_in is True
        assert harness.state.pending_exit is ExitType.NONE
        assert harness.state.armed_exits == []

        result = harness.tick(98.2)

        assert result.exit_type is ExitType.NONE
        assert harness.execution.position_volume() == pytest.approx(0.03)

    def test_pending_exit_dropped_after_pullback(self, harness):
        harness.enter_long()
        harness.tick(101.0)
        harness.execution.fail_next_close = True
        harness.tick(102.5)

        result = harness.tick(101.5)

        assert result.exit_type is ExitType.NONE
        assert harness.state.pending_exit is ExitType.NONE
        assert harness.state.initial_profit_target_reached is False
        assert harness.execution.position_volume() == pytest.approx(0.01)

    def test_level1_exit_reclassifies_ladder(self):
        harness = Harness(make_config(initial_target_atr=0.5))
        harness.enter_long()
        harness.tick(98.0)
        assert harness.state.current_level == 2

        # Цель первичного выхода: AEP 98.667 + 0.5 * 2
        initial = harness.tick(99.8)
        assert initial.exit_type is ExitType.INITIAL_50_PERCENT

        result = harness.tick(100.7, mod=100.5)

        assert result.exit_type is ExitType.ATR_LEVEL_1
        assert result.reclassified is True
        assert harness.state.current_level == 1
        assert harness.state.mod_reference_price == 100.5
        assert harness.state.is_reclassified is True
        assert harness.execution.position_volume() == pytest.approx(0.0125)


class TestExternalClosures:
    """Тесты закрытий не по решению стратегии"""

    def test_external_partial_close_reclassifies(self, harness):
        harness.enter_long()
        harness.tick(98.0)
        harness.execution.simulate_external_close(0.01)

        result = harness.tick(98.5, mod=97.0)

        assert result.reclassified is True
        assert harness.state.current_level == 1
        assert harness.state.mod_reference_price == 97.0
        assert harness.state.total_volume == pytest.approx(0.02)

    def test_external_full_close_resets(self, harness):
        harness.enter_long()
        harness.execution.simulate_external_close(0.01)

        result = harness.tick(100.2)

        assert result.reset is True
        assert harness.state.is_flat is True
        assert harness.orchestrator.risk_engine.reset_count == 1


class TestRisk:
    """Тесты риска в цикле"""

    def test_drawdown_stop_loss_at_max_level(self, harness):
        harness.enter_long()
        harness.tick(98.0)
        latch = harness.tick(96.0)

        assert latch.scaled_in is True
        assert harness.state.is_max_level is True
        assert harness.orchestrator.risk_engine.drawdown_at_max_level == pytest.approx(-8.0)

        result = harness.tick(95.0)

        assert result.stop_loss_triggered is True
        assert result.reset is True
        assert harness.state.is_flat is True
        assert harness.execution.position_volume() == 0.0

    def test_profit_target_reset(self):
        harness = Harness(make_config(min_profit=1.0))
        harness.enter_long()

        assert harness.tick(100.5).reset is False
        result = harness.tick(101.5)

        assert result.reset is True
        assert harness.state.is_flat is True
        assert harness.execution.realized_pnl == pytest.approx(1.5)

    def test_failed_reset_close_stays_pending(self):
        harness = Harness(make_config(min_profit=1.0))
        harness.enter_long()
        harness.execution.fail_next_close = True

        failed = harness.tick(101.5)
        assert failed.reset is False
        assert harness.orchestrator.pending_reset == "profit target"
        assert harness.state.is_flat is False

        retry = harness.tick(101.4)
        assert retry.reset is True
        assert harness.orchestrator.pending_reset is None


class TestTickGuards:
    """Тесты защиты тика"""

    def test_invalid_price_skipped(self, harness):
        result = harness.orchestrator.on_tick(0.0)

        assert result.processed is False
        assert result.skipped_reason == "invalid price"

    @pytest.mark.parametrize("price", [float("nan"), float("inf"), None])
    def test_non_finite_price_skipped(self, harness, price):
        harness.enter_long()

        result = harness.orchestrator.on_tick(price)

        assert result.processed is False
        assert result.skipped_reason == "invalid price"
        assert harness.state.previous_price == 100.0

    def test_nan_mod_does_not_rebase_ladder(self, harness):
        harness.enter_long()
        harness.tick(98.0)
        harness.execution.simulate_external_close(0.01)

        result = harness.tick(98.5, mod=float("nan"))

        assert result.reclassified is False
        assert harness.state.current_level == 2
        assert harness.state.average_entry_price == pytest.approx(98.6666667)
        assert harness.state.check_invariants() is True

        # Цель первичного выхода: AEP 98.667 + 1.0 * 2
        assert harness.tick(99.5, mod=100.0).exit_type is ExitType.NONE
        assert harness.tick(101.0).exit_type is ExitType.INITIAL_50_PERCENT

    def test_nan_atr_blocks_scale_in(self, harness):
        harness.enter_long()

        blocked = harness.tick(97.0, atr=float("nan"))
        assert blocked.scaled_in is False
        assert harness.state.current_level == 1

        result = harness.tick(97.5, atr=2.0)

        assert result.scaled_in is True
        assert harness.state.current_level == 2

    def test_nan_mod_blocks_entry(self, harness):
        harness.tick(99.0)
        result = harness.tick(100.5, mod=float("nan"))

        assert result.opened is False
        assert harness.state.is_flat is True

    def test_collaborator_error_does_not_raise(self, harness):
        class BrokenIndicator(ReplayIndicator):
            def atr(self):
                raise RuntimeError("feed down")

        harness.orchestrator.indicator = BrokenIndicator()
        result = harness.orchestrator.on_tick(100.0)

        assert result.processed is False
        assert "feed down" in result.skipped_reason


class TestRestore:
    """Тесты рестарта"""

    def test_restart_restores_saved_state(self, tmp_path):
        config = make_config(state_dir=tmp_path)
        first = Harness(config)
        first.enter_long()
        first.tick(98.0)

        second = Harness(config, execution=first.execution)
        result = second.orchestrator.restore(current_price=98.0)

        assert result.loaded is True
        assert result.ticket_missing is False
        assert second.state.current_level == 2
        assert second.state.average_entry_price == pytest.approx(98.6666667)
        assert second.orchestrator.last_volume == pytest.approx(0.03)

    def test_restart_without_state_stays_flat(self, tmp_path):
        execution = PaperExecution(contract_size=100.0)
        execution.update_price(100.0)
        execution.open_position(TradeDirection.LONG, 0.03)

        harness = Harness(make_config(state_dir=tmp_path), execution=execution)
        result = harness.orchestrator.restore(current_price=100.0)

        assert result.loaded is False
        assert harness.state.is_flat is True

        harness.tick(99.0)
        entry = harness.tick(100.0)
        assert entry.opened is False
        assert execution.position_volume() == pytest.approx(0.03)

    def test_restore_without_persistence(self, harness):
        assert harness.orchestrator.restore() is None


class TestReplay:
    """Тесты replay CLI"""

    def test_run_replay_summary(self):
        config = make_config()
        ticks = pd.DataFrame(
            {
                "price": [99.0, 100.0, 98.0, 101.0, 102.5],
                "direction": ["long"] * 5,
                "atr": [2.0] * 5,
                "mod": [100.0] * 5,
            }
        )

        summary = run_replay(config, ticks)

        assert summary["ticks"] == 5
        assert summary["entries"] == 1
        assert summary["scale_ins"] == 1
        # 101: первичный выход, цель уровня 1 взведена; 102.5: уровень 1
        assert summary["exits"] == 2
        assert summary["reclassifications"] == 1
        assert summary["errors"] == 0
        assert summary["open_volume"] == pytest.approx(0.0125)

    def test_run_replay_blank_atr_cell(self):
        ticks = pd.DataFrame(
            {
                "price": [99.0, 100.0, 97.0, 97.5],
                "direction": ["long"] * 4,
                "atr": [2.0, 2.0, float("nan"), 2.0],
                "mod": [100.0] * 4,
            }
        )

        summary = run_replay(make_config(), ticks)

        assert summary["entries"] == 1
        assert summary["scale_ins"] == 1
        assert summary["errors"] == 0
        assert summary["open_volume"] == pytest.approx(0.03)

    def test_load_ticks_normalizes_columns(self, tmp_path):
        csv_file = tmp_path / "ticks.csv"
        csv_file.write_text(
            "Price,Direction,ATR,MOD,Timestamp\n"
            "1.1000,long,0.0010,1.0995,2024-01-01 00:00:00\n",
            encoding="utf-8",
        )

        frame = load_ticks(str(csv_file))

        assert list(frame.columns) == ["price", "direction", "atr", "mod", "timestamp"]
        assert frame["timestamp"].iloc[0] == pd.Timestamp("2024-01-01")

    def test_load_ticks_missing_columns(self, tmp_path):
        csv_file = tmp_path / "ticks.csv"
        csv_file.write_text("price,atr\n1.1,0.001\n", encoding="utf-8")

        with pytest.raises(ValueError):
            load_ticks(str(csv_file))

    def test_main_missing_config(self, tmp_path):
        assert main(["--config", str(tmp_path / "nope.yaml"), "--ticks", "x.csv"]) == 1
