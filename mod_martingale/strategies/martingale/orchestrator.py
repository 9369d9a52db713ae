"""
TickOrchestrator - Управление стратегией на каждом тике.

Порядок обработки тика:
1. Снимок внешних данных (направление, ATR, MOD, объем, P&L)
2. Незавершенный сброс системы
3. Детекция закрытий (изменение объема с прошлого тика)
4. Вход / добавление по лестнице
5. Выходы (50% первичного лота, ATR уровни 1 и 2)
6. Риск: drawdown stop-loss, право на сброс
7. Сохранение состояния, периодический статус

Все мутации позиции идут через PositionState/RiskEngine.
Тики строго последовательны, внутри ничего не блокируется.
"""

import time
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from mod_martingale.config import BotConfig
from mod_martingale.execution.interfaces import ExecutionClient, IndicatorSource
from mod_martingale.models import (
    VOLUME_EPSILON,
    ExitType,
    TickResult,
    TickSnapshot,
    TradeDirection,
    is_valid_price,
)
from mod_martingale.risk.risk_engine import RiskEngine

from .calculations.martingale_calculator import MartingaleCalculator
from .core.position_state import PositionState
from .core.recovery import estimate_position_state
from .core.state_store import LoadResult, StateStore


class TickOrchestrator:
    """
    Оркестратор одного экземпляра стратегии (один символ).

    Компоненты создаются снаружи и передаются явно.
    """

    def __init__(
        self,
        config: BotConfig,
        position_state: PositionState,
        risk_engine: RiskEngine,
        execution: ExecutionClient,
        indicator: IndicatorSource,
        state_store: Optional[StateStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            config: Конфигурация бота
            position_state: Состояние позиции
            risk_engine: Движок рисков
            execution: Исполнение у брокера
            indicator: Источник направления/ATR/MOD
            state_store: Хранилище состояния (опционально)
            clock: Монотонные часы (для пауз логов и сохранений)
        """
        self.config = config
        self.state = position_state
        self.risk_engine = risk_engine
        self.execution = execution
        self.indicator = indicator
        self.state_store = state_store
        self.clock = clock

        self.calculator: MartingaleCalculator = position_state.calculator
        self.martingale_config = config.martingale
        self.exit_config = config.exits

        # Память между тиками
        self.signal_direction = TradeDirection.NONE
        self.last_volume = 0.0
        self.last_profit = 0.0
        self.pending_reset: Optional[str] = None
        self.tick_count = 0

        # Сохранение
        self.dirty = False
        self._save_failed = False
        self._last_save_attempt = self.clock()
        self._last_status_log = 0.0

        logger.info(
            f"✅ TickOrchestrator initialized | {config.trading.symbol} "
            f"magic={config.trading.magic_id} | max levels={self.calculator.max_entry_levels}"
        )

    @classmethod
    def from_config(
        cls,
        config: BotConfig,
        execution: ExecutionClient,
        indicator: IndicatorSource,
        clock: Callable[[], float] = time.monotonic,
    ) -> "TickOrchestrator":
        """Собрать все компоненты из конфигурации"""
        calculator = MartingaleCalculator(
            max_entry_levels=config.martingale.max_entry_levels,
            atr_multiplier=config.martingale.atr_multiplier,
        )
        position_state = PositionState(
            calculator,
            initial_target_atr=config.exits.initial_target_atr,
            exit_level1_atr=config.exits.exit_level1_atr,
            exit_level2_atr=config.exits.exit_level2_atr,
        )
        risk_engine = RiskEngine(
            position_state,
            minimum_profit_threshold=config.risk.minimum_profit_threshold,
            drawdown_stop_loss_percentage=config.risk.drawdown_stop_loss_percentage,
        )
        state_store = None
        if config.persistence.enabled:
            state_store = StateStore(
                state_dir=config.persistence.state_dir,
                symbol=config.trading.symbol,
                magic_id=config.trading.magic_id,
                timeframe=config.trading.timeframe,
            )
        return cls(
            config,
            position_state,
            risk_engine,
            execution,
            indicator,
            state_store=state_store,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Старт
    # ------------------------------------------------------------------

    def restore(self, current_price: float = 0.0) -> Optional[LoadResult]:
        """
        Восстановление после рестарта.

        Без валидного state файла стартуем FLAT. Если у брокера при этом
        есть позиция, оценка ее уровня пишется в лог только для диагностики.

        Args:
            current_price: Последняя известная цена (для диагностической оценки)

        Returns:
            LoadResult или None если хранилище отключено
        """
        live_volume = self.execution.position_volume()
        live_open = live_volume > VOLUME_EPSILON

        if self.state_store is None:
            self.last_volume = live_volume
            return None

        result = self.state_store.load(
            self.state,
            self.risk_engine,
            live_ticket=self.execution.position_ticket(),
            live_position_open=live_open,
        )

        if result.loaded:
            # Объем из файла: если позицию закрыли, пока бот лежал,
            # первый тик увидит закрытие
            self.last_volume = self.state.total_volume if not self.state.is_flat else live_volume
            if result.ticket_missing:
                logger.warning(
                    "⚠️ [ORCHESTRATOR] Тикет из state не найден у брокера, "
                    "состояние загружено с пометкой"
                )
            return result

        if live_open:
            estimate_position_state(
                volume=live_volume,
                profit=self.execution.position_profit(),
                initial_lot=self.martingale_config.initial_lot,
                lot_multiplier=self.martingale_config.lot_multiplier,
                max_levels=self.calculator.max_entry_levels,
                direction=TradeDirection.parse(self.indicator.direction()),
                current_price=current_price,
                contract_size=self.config.trading.contract_size,
                max_lot=self.martingale_config.max_lot,
            )
            logger.warning(
                f"⚠️ [ORCHESTRATOR] У брокера объем {live_volume:.4f} без валидного state: "
                f"стартуем FLAT, позиция не управляется"
            )

        self.state.reset()
        self.last_volume = live_volume
        return result

    # ------------------------------------------------------------------
    # Тик
    # ------------------------------------------------------------------

    def on_tick(self, price: float, timestamp: Optional[datetime] = None) -> TickResult:
        """
        Обработка одного тика.

        Исключения коллабораторов не роняют процесс: тик помечается
        пропущенным, состояние остается как есть.

        Args:
            price: Текущая цена
            timestamp: Время тика (только для логов)

        Returns:
            TickResult
        """
        try:
            return self._process_tick(price, timestamp)
        except Exception as e:
            logger.exception(f"❌ [ORCHESTRATOR] Ошибка обработки тика: {e}")
            return TickResult.skipped(f"error: {e}")

    def _read_snapshot(self, price: float, timestamp: Optional[datetime]) -> TickSnapshot:
        direction = TradeDirection.parse(self.indicator.direction())
        if direction is not TradeDirection.NONE:
            # NONE не затирает последнее валидное направление
            self.signal_direction = direction

        volume = self.execution.position_volume()
        profit = self.execution.position_profit() if volume > VOLUME_EPSILON else 0.0

        # NaN/inf от индикатора приводятся к 0: все расчеты считают 0 невалидным
        atr = self.indicator.atr()
        mod = self.indicator.mod()

        return TickSnapshot(
            price=price,
            direction=self.signal_direction,
            atr=float(atr) if is_valid_price(atr) else 0.0,
            mod=float(mod) if is_valid_price(mod) else 0.0,
            position_volume=volume,
            position_profit=profit,
            timestamp=timestamp,
        )

    def _process_tick(self, price: float, timestamp: Optional[datetime]) -> TickResult:
        if not is_valid_price(price):
            logger.debug(f"[ORCHESTRATOR] Пропуск тика: невалидная цена {price}")
            return TickResult.skipped("invalid price")

        self.tick_count += 1
        snapshot = self._read_snapshot(price, timestamp)
        result = TickResult()
        self.risk_engine.update_open_profit(snapshot.position_profit)

        # Память пересечения MOD обновляется каждый тик
        open_signal = self.state.should_open_position(
            snapshot.direction, snapshot.price, snapshot.mod
        )

        if self.pending_reset:
            self._force_reset(self.pending_reset, result)
            self._finish_tick(snapshot, result)
            return result

        self._detect_closures(snapshot, result)

        if self.state.is_flat:
            if open_signal and not result.reset:
                self._open_initial(snapshot, result)
        else:
            self._try_scale_in(snapshot, result)
            if not result.scaled_in:
                self._try_exit(snapshot, result)

        if not self.state.is_flat:
            self._check_risk(result)

        self._finish_tick(snapshot, result)
        return result

    def _finish_tick(self, snapshot: TickSnapshot, result: TickResult) -> None:
        self.state.previous_price = snapshot.price
        self.last_volume = self.execution.position_volume()
        self.last_profit = (
            self.execution.position_profit() if self.last_volume > VOLUME_EPSILON else 0.0
        )
        if (
            result.opened
            or result.scaled_in
            or result.exit_type is not ExitType.NONE
            or result.reclassified
            or result.reset
        ):
            self.dirty = True
        self._maybe_save()
        self._maybe_log_status(snapshot)

    # ------------------------------------------------------------------
    # Закрытия
    # ------------------------------------------------------------------

    def _detect_closures(self, snapshot: TickSnapshot, result: TickResult) -> None:
        """
        Закрытия, которые произошли не по решению стратегии на этом тике
        (стоп брокера, ручное закрытие, закрытие пока бот лежал).
        """
        previous = self.last_volume
        current = snapshot.position_volume

        if self.state.is_flat or previous <= VOLUME_EPSILON:
            return
        if current >= previous - VOLUME_EPSILON:
            return

        closed = previous - current
        realized = self.last_profit * (closed / previous)
        self.risk_engine.record_closed_profit(realized)

        if current <= VOLUME_EPSILON:
            logger.info(
                f"📉 [ORCHESTRATOR] Позиция закрыта полностью ({previous:.4f} -> 0)"
            )
            if self.risk_engine.execute_system_reset(current):
                result.reset = True
            return

        logger.info(
            f"📉 [ORCHESTRATOR] Частичное закрытие: {previous:.4f} -> {current:.4f}"
        )
        self.state.record_partial_close(closed)
        if not self.state.is_max_level:
            if self.state.reclassify_after_partial_exit(snapshot.mod):
                result.reclassified = True

    # ------------------------------------------------------------------
    # Входы
    # ------------------------------------------------------------------

    def _open_initial(self, snapshot: TickSnapshot, result: TickResult) -> None:
        if snapshot.position_volume > VOLUME_EPSILON:
            logger.warning(
                f"⚠️ [ORCHESTRATOR] Вход пропущен: у брокера неучтенный объем "
                f"{snapshot.position_volume:.4f}"
            )
            return

        direction = snapshot.direction
        volume = self.calculator.lot_for_level(
            1,
            self.martingale_config.initial_lot,
            self.martingale_config.lot_multiplier,
            self.martingale_config.max_lot,
        )
        execution_result = self.execution.open_position(direction, volume)
        if not execution_result.success:
            self._record_failure("open", execution_result, result)
            return

        fill_price = execution_result.price if execution_result.price > 0 else snapshot.price
        filled = execution_result.volume if execution_result.volume > 0 else volume
        if self.state.update_average_price(fill_price, filled, direction=direction):
            self.state.position_ticket = self.execution.position_ticket()
            result.opened = True
            ladder = self.calculator.ladder(self.state.mod_reference_price, snapshot.atr, direction)
            logger.info(
                f"🚀 [ORCHESTRATOR] Вход {direction.value.upper()} {filled:.4f} @ {fill_price:.5f} | "
                f"лестница: {', '.join(f'{p:.5f}' for p in ladder[1:])}"
            )

    def _try_scale_in(self, snapshot: TickSnapshot, result: TickResult) -> None:
        if not self.state.should_add_to_position(snapshot.price, snapshot.atr, snapshot.mod):
            return

        next_level = self.state.current_level + 1
        volume = self.calculator.lot_for_level(
            next_level,
            self.martingale_config.initial_lot,
            self.martingale_config.lot_multiplier,
            self.martingale_config.max_lot,
        )
        existing_volume = snapshot.position_volume

        execution_result = self.execution.open_position(self.state.direction, volume)
        if not execution_result.success:
            # Уровень не увеличиваем, повтор на следующем тике
            self._record_failure(f"scale-in L{next_level}", execution_result, result)
            return

        fill_price = execution_result.price if execution_result.price > 0 else snapshot.price
        filled = execution_result.volume if execution_result.volume > 0 else volume
        base_volume = existing_volume if existing_volume > VOLUME_EPSILON else None
        if self.state.update_average_price(fill_price, filled, existing_volume=base_volume):
            result.scaled_in = True
            if self.state.is_max_level:
                logger.warning(
                    f"⚠️ [ORCHESTRATOR] Достигнут максимальный уровень "
                    f"{self.state.current_level}, включен drawdown stop-loss"
                )

    # ------------------------------------------------------------------
    # Выходы
    # ------------------------------------------------------------------

    def _exit_volume(self, exit_type: ExitType, position_volume: float) -> float:
        if exit_type is ExitType.INITIAL_50_PERCENT:
            volume = self.state.initial_lot_remaining_volume * (
                self.exit_config.initial_close_percent / 100.0
            )
            return min(volume, position_volume)
        if exit_type is ExitType.ATR_LEVEL_1:
            return position_volume * (self.exit_config.exit_level1_percent / 100.0)
        # Уровень 2 закрывает остаток (проценты в сумме 100)
        return position_volume

    def _try_exit(self, snapshot: TickSnapshot, result: TickResult) -> None:
        exit_type = self.state.pending_exit
        if exit_type is not ExitType.NONE and not self.state.is_beyond_target(
            exit_type, snapshot.price, snapshot.atr
        ):
            logger.info(
                f"[ORCHESTRATOR] Отложенный выход {exit_type.value} снят: "
                f"price={snapshot.price:.5f} уже не за целью"
            )
            self.state.pending_exit = ExitType.NONE
            exit_type = ExitType.NONE
        if exit_type is ExitType.NONE:
            exit_type = self.state.should_exit_position(
                snapshot.price, snapshot.atr, self.state.previous_price
            )
        if exit_type is ExitType.NONE:
            return

        position_volume = self.execution.position_volume()
        if position_volume <= VOLUME_EPSILON:
            return

        close_volume = self._exit_volume(exit_type, position_volume)
        if close_volume <= VOLUME_EPSILON:
            logger.info(f"[ORCHESTRATOR] Выход {exit_type.value}: объем 0, отмечаем без закрытия")
            self.state.mark_exit_executed(exit_type, 0.0)
            result.exit_type = exit_type
            return

        profit_before = self.execution.position_profit()
        execution_result = self.execution.close_position(close_volume)
        if not execution_result.success:
            self.state.pending_exit = exit_type
            self._record_failure(f"exit {exit_type.value}", execution_result, result)
            return

        closed = execution_result.volume if execution_result.volume > 0 else close_volume
        self.risk_engine.record_closed_profit(profit_before * (closed / position_volume))
        self.state.mark_exit_executed(exit_type, closed)
        result.exit_type = exit_type
        result.closed_volume = closed

        remaining = self.execution.position_volume()
        logger.info(
            f"✅ [ORCHESTRATOR] Выход {exit_type.value}: закрыто {closed:.4f}, "
            f"осталось {remaining:.4f}"
        )

        if remaining <= VOLUME_EPSILON:
            if self.risk_engine.execute_system_reset(remaining):
                result.reset = True
            return

        if exit_type is ExitType.ATR_LEVEL_1 and not self.state.is_max_level:
            if self.state.reclassify_after_partial_exit(snapshot.mod):
                result.reclassified = True

    # ------------------------------------------------------------------
    # Риск
    # ------------------------------------------------------------------

    def _check_risk(self, result: TickResult) -> None:
        position_open = self.execution.is_position_open()
        open_profit = self.execution.position_profit() if position_open else 0.0
        self.risk_engine.update_open_profit(open_profit)

        if self.risk_engine.check_drawdown_stop_loss(open_profit, position_open):
            result.stop_loss_triggered = True
            self._force_reset("drawdown stop-loss", result)
            return

        if position_open and self.risk_engine.check_reset_eligibility(open_profit):
            self._force_reset("profit target", result)

    def _force_reset(self, reason: str, result: TickResult) -> None:
        """
        Закрыть весь объем и сбросить систему.

        Сброс выполняется только когда брокер подтвердил нулевой объем,
        иначе остается в ожидании до следующего тика.
        """
        volume = self.execution.position_volume()
        if volume > VOLUME_EPSILON:
            profit = self.execution.position_profit()
            execution_result = self.execution.close_position(volume)
            if not execution_result.success:
                self.pending_reset = reason
                self._record_failure(f"close all ({reason})", execution_result, result)
                return
            closed = execution_result.volume if execution_result.volume > 0 else volume
            self.risk_engine.record_closed_profit(profit * min(closed / volume, 1.0))
            result.closed_volume += closed

        remaining = self.execution.position_volume()
        if self.risk_engine.execute_system_reset(remaining):
            logger.info(f"🔁 [ORCHESTRATOR] Сброс выполнен: {reason}")
            result.reset = True
            self.pending_reset = None
        else:
            self.pending_reset = reason

    # ------------------------------------------------------------------
    # Служебное
    # ------------------------------------------------------------------

    def _record_failure(self, action: str, execution_result, result: TickResult) -> None:
        message = (
            f"{action} failed: [{execution_result.code}] {execution_result.description}"
        )
        logger.warning(f"⚠️ [ORCHESTRATOR] {message}")
        result.errors.append(message)

    def _maybe_save(self) -> None:
        if self.state_store is None:
            return

        now = self.clock()
        interval = self.config.persistence.save_interval_seconds
        due = (now - self._last_save_attempt) >= interval
        immediate = self.dirty and not self._save_failed
        if not (immediate or due):
            return

        self._last_save_attempt = now
        if self.state_store.save(self.state, self.risk_engine):
            self.dirty = False
            self._save_failed = False
        else:
            # Повтор на следующем периодическом цикле
            self._save_failed = True
            self.dirty = True

    def _maybe_log_status(self, snapshot: TickSnapshot) -> None:
        now = self.clock()
        interval = self.config.logging.status_log_interval_seconds
        if self._last_status_log and (now - self._last_status_log) < interval:
            return
        self._last_status_log = now

        status = self.state.get_status()
        stats = self.risk_engine.get_stats()
        next_price = self.state.next_entry_price(snapshot.atr, snapshot.mod)
        logger.info(
            f"📊 [STATUS] {status['phase']} {status['direction']} "
            f"L{status['level']}/{status['max_level']} vol={status['volume']:.4f} "
            f"AEP={status['aep']:.5f} next={next_price:.5f} | "
            f"price={snapshot.price:.5f} ATR={snapshot.atr:.5f} MOD={snapshot.mod:.5f} | "
            f"closed={stats['closed_profit']:.2f} open={stats['open_profit']:.2f}"
        )
