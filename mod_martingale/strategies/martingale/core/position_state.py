"""
PositionState - Единый источник истины для позиции стратегии.

Машина состояний одной позиции:
    FLAT (уровень 0) -> INITIAL (уровень 1) -> SCALING (уровни 2..max)
    -> FLAT при полном закрытии
    -> REBASED (уровень 1, новый MOD) при частичном закрытии

Отвечает за:
- Направление, уровень, среднюю цену входа
- Жизненный цикл первичного лота (частичный выход 50%)
- Флаги выходов по ATR (edge-triggered)
- Переклассификацию лестницы после частичного выхода
- Сериализацию для state файла

Невалидные входные данные (цена/ATR/MOD <= 0) никогда не бросают
исключение и не меняют состояние.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from mod_martingale.models import (
    VOLUME_EPSILON,
    ExitType,
    PositionPhase,
    TradeDirection,
    is_valid_price,
)

from ..calculations.martingale_calculator import MartingaleCalculator
from .crossing_detector import CrossingDetector

EXIT_PRIORITY = (ExitType.INITIAL_50_PERCENT, ExitType.ATR_LEVEL_1, ExitType.ATR_LEVEL_2)


class PositionState:
    """
    Состояние единственной позиции стратегии.

    Все мутации позиции проходят через методы этого класса.
    """

    def __init__(
        self,
        calculator: MartingaleCalculator,
        initial_target_atr: float = 1.0,
        exit_level1_atr: float = 1.0,
        exit_level2_atr: float = 2.0,
    ):
        """
        Args:
            calculator: Калькулятор лестницы
            initial_target_atr: Дистанция цели первичного выхода (в ATR от AEP)
            exit_level1_atr: Дистанция выхода уровня 1 (в ATR от AEP)
            exit_level2_atr: Дистанция выхода уровня 2 (в ATR от AEP)
        """
        self.calculator = calculator
        self.initial_target_atr = initial_target_atr
        self.exit_level1_atr = exit_level1_atr
        self.exit_level2_atr = exit_level2_atr

        self.entry_crossing = CrossingDetector()
        self._clear()

    def _clear(self) -> None:
        self.direction = TradeDirection.NONE
        self.current_level = 0
        self.average_entry_price = 0.0
        self.total_volume = 0.0
        self.mod_reference_price = 0.0

        self.initial_entry_price = 0.0
        self.initial_lot_size = 0.0
        self.initial_lot_remaining_volume = 0.0
        self.has_initial_position = False
        self.initial_profit_target_reached = False

        self.lowest_entry_price = 0.0
        self.highest_entry_price = 0.0

        self.exit_level1_executed = False
        self.exit_level2_executed = False
        self.is_reclassified = False

        self.previous_price = 0.0
        self.entry_crossing.clear()
        # Выход, закрытие которого брокер отклонил (повтор на следующем тике)
        self.pending_exit = ExitType.NONE
        # Цели, пересеченные на одном тике с более приоритетной
        self.armed_exits: List[ExitType] = []

        self.position_ticket: Optional[str] = None
        self.open_time: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Свойства
    # ------------------------------------------------------------------

    @property
    def is_flat(self) -> bool:
        return self.current_level == 0

    @property
    def phase(self) -> PositionPhase:
        if self.current_level == 0:
            return PositionPhase.FLAT
        if self.is_reclassified and self.current_level == 1:
            return PositionPhase.REBASED
        if self.current_level == 1:
            return PositionPhase.INITIAL
        return PositionPhase.SCALING

    @property
    def is_max_level(self) -> bool:
        return self.calculator.is_max_level_reached(self.current_level)

    # ------------------------------------------------------------------
    # Вход
    # ------------------------------------------------------------------

    def should_open_position(self, signal_direction, price: float, mod: float) -> bool:
        """
        Нужно ли открыть первичную позицию.

        Только из FLAT. Требует направление сигнала и ПЕРЕСЕЧЕНИЕ MOD ценой
        между двумя последовательными проверками (не близость к MOD).

        Args:
            signal_direction: Направление сигнала (TradeDirection/str/int)
            price: Текущая цена
            mod: Текущий MOD

        Returns:
            True если условия входа выполнены
        """
        if not is_valid_price(price) or not is_valid_price(mod):
            logger.debug(f"[POSITION_STATE] Невалидные данные входа: price={price}, mod={mod}")
            return False

        # Память обновляется на каждом вызове, даже в позиции
        crossed = self.entry_crossing.update(price, mod)

        if not self.is_flat:
            return False

        direction = TradeDirection.parse(signal_direction)
        if direction is TradeDirection.NONE:
            return False

        if crossed:
            logger.info(
                f"🎯 [POSITION_STATE] Пересечение MOD: price={price:.5f}, mod={mod:.5f}, "
                f"direction={direction.value}"
            )
        return crossed

    def update_average_price(
        self,
        price: float,
        volume: float,
        existing_volume: Optional[float] = None,
        direction=None,
    ) -> bool:
        """
        Учесть исполненный вход.

        Первый вызов (уровень 0 -> 1) устанавливает первичную позицию и MOD
        опору на цену входа. Последующие вызовы увеличивают уровень и
        пересчитывают среднюю цену по средневзвешенному правилу.

        Args:
            price: Цена исполнения
            volume: Объем исполнения
            existing_volume: Объем позиции до исполнения (от брокера);
                по умолчанию отслеживаемый total_volume
            direction: Направление (обязательно для первого входа)

        Returns:
            True если состояние обновлено
        """
        if not is_valid_price(price) or not is_valid_price(volume):
            logger.warning(
                f"⚠️ [POSITION_STATE] Невалидный вход: price={price}, volume={volume}"
            )
            return False

        if self.is_flat:
            open_direction = TradeDirection.parse(direction)
            if open_direction is TradeDirection.NONE:
                logger.warning("⚠️ [POSITION_STATE] Первый вход без направления, пропускаем")
                return False

            self.direction = open_direction
            self.current_level = 1
            self.average_entry_price = price
            self.total_volume = volume
            self.mod_reference_price = price
            self.initial_entry_price = price
            self.initial_lot_size = volume
            self.initial_lot_remaining_volume = volume
            self.has_initial_position = True
            self.initial_profit_target_reached = False
            self.exit_level1_executed = False
            self.exit_level2_executed = False
            self.is_reclassified = False
            self.lowest_entry_price = price
            self.highest_entry_price = price
            self.open_time = datetime.now(timezone.utc)

            logger.info(
                f"✅ [POSITION_STATE] Первичная позиция {self.direction.value.upper()}: "
                f"price={price:.5f}, volume={volume:.4f}"
            )
            return True

        if self.is_max_level:
            logger.error(
                f"❌ [POSITION_STATE] Добавление отклонено: достигнут максимум "
                f"уровней ({self.current_level}/{self.calculator.max_entry_levels})"
            )
            return False

        base_volume = self.total_volume if existing_volume is None else existing_volume
        old_average = self.average_entry_price
        self.average_entry_price = self.calculator.volume_weighted_average(
            old_average, base_volume, price, volume
        )
        self.current_level += 1
        self.total_volume = max(base_volume, 0.0) + volume
        self.lowest_entry_price = min(self.lowest_entry_price or price, price)
        self.highest_entry_price = max(self.highest_entry_price, price)
        # Цели выходов считались от старой AEP
        self.pending_exit = ExitType.NONE
        self.armed_exits = []

        logger.info(
            f"📈 [POSITION_STATE] Уровень {self.current_level}: fill={price:.5f}, "
            f"volume={volume:.4f}, AEP {old_average:.5f} -> {self.average_entry_price:.5f}"
        )
        return True

    def next_entry_price(self, atr: float, mod: Optional[float] = None) -> float:
        """Цена следующего добавления от текущей опоры (0.0 если недоступно)"""
        return self.calculator.next_entry_price(
            self._ladder_reference(mod), atr, self.current_level, self.direction
        )

    def _ladder_reference(self, mod: Optional[float]) -> float:
        if is_valid_price(self.mod_reference_price):
            return self.mod_reference_price
        return float(mod) if is_valid_price(mod) else 0.0

    def should_add_to_position(
        self, price: float, atr: float, mod: Optional[float] = None
    ) -> bool:
        """
        Нужно ли добавить к позиции (следующий уровень лестницы).

        Args:
            price: Текущая цена
            atr: Текущий ATR
            mod: Свежий MOD, используется если опора не установлена

        Returns:
            True если цена дошла до следующего уровня
        """
        if self.is_flat or self.is_max_level:
            return False
        if not is_valid_price(price) or not is_valid_price(atr):
            return False

        reference = self._ladder_reference(mod)
        if reference <= 0:
            return False

        return self.calculator.should_trigger_next_entry(
            price, reference, atr, self.current_level, self.direction
        )

    # ------------------------------------------------------------------
    # Выход
    # ------------------------------------------------------------------

    def exit_target(self, exit_type: ExitType, atr: float) -> float:
        """Цена цели выхода от средней цены входа (0.0 если недоступно)"""
        if self.is_flat or not is_valid_price(atr) or not is_valid_price(self.average_entry_price):
            return 0.0

        if exit_type is ExitType.INITIAL_50_PERCENT:
            k = self.initial_target_atr
        elif exit_type is ExitType.ATR_LEVEL_1:
            k = self.exit_level1_atr
        elif exit_type is ExitType.ATR_LEVEL_2:
            k = self.exit_level2_atr
        else:
            return 0.0

        return self.average_entry_price + self.direction.sign * k * atr

    def is_exit_available(self, exit_type: ExitType) -> bool:
        """Выход еще не исполнялся в текущем цикле"""
        if exit_type is ExitType.INITIAL_50_PERCENT:
            return self.has_initial_position and not self.initial_profit_target_reached
        if exit_type is ExitType.ATR_LEVEL_1:
            return not self.exit_level1_executed
        if exit_type is ExitType.ATR_LEVEL_2:
            return not self.exit_level2_executed
        return False

    def is_beyond_target(self, exit_type: ExitType, price: float, atr: float) -> bool:
        """Цена на цели выхода или за ней (со стороны прибыли)"""
        target = self.exit_target(exit_type, atr)
        if target <= 0 or not is_valid_price(price):
            return False
        if self.direction is TradeDirection.LONG:
            return price >= target
        return price <= target

    def _crossed(self, previous_price: float, price: float, target: float) -> bool:
        # Без истории считаем, что цена пришла со стороны входа
        if self.direction is TradeDirection.LONG:
            if not is_valid_price(previous_price):
                return price >= target
            return previous_price < target <= price
        if not is_valid_price(previous_price):
            return price <= target
        return previous_price > target >= price

    def should_exit_position(
        self, price: float, atr: float, previous_price: float
    ) -> ExitType:
        """
        Определить выход на текущем тике.

        Приоритет: INITIAL_50_PERCENT, ATR_LEVEL_1, ATR_LEVEL_2.
        Каждая цель срабатывает только на пересечении между previous_price
        и price, поэтому пока цена держится за целью повторов нет.

        За тик возвращается один выход. Остальные цели, пересеченные на том
        же тике, взводятся (armed_exits) и срабатывают на следующих тиках,
        если цена все еще за целью.

        Args:
            price: Текущая цена
            atr: Текущий ATR
            previous_price: Цена прошлого тика (<= 0 если истории нет)

        Returns:
            ExitType (NONE если выхода нет)
        """
        if self.is_flat or not is_valid_price(price) or not is_valid_price(atr):
            return ExitType.NONE
        if not is_valid_price(self.average_entry_price):
            return ExitType.NONE

        while self.armed_exits:
            armed = self.armed_exits.pop(0)
            if self.is_exit_available(armed) and self.is_beyond_target(armed, price, atr):
                logger.info(
                    f"🎯 [POSITION_STATE] Взведенный выход {armed.value}: price={price:.5f}, "
                    f"target={self.exit_target(armed, atr):.5f}"
                )
                return armed
            logger.debug(f"[POSITION_STATE] Взведенный выход {armed.value} снят")

        crossed = []
        for exit_type in EXIT_PRIORITY:
            if not self.is_exit_available(exit_type):
                continue
            target = self.exit_target(exit_type, atr)
            if target > 0 and self._crossed(previous_price, price, target):
                crossed.append(exit_type)

        if not crossed:
            return ExitType.NONE

        fired = crossed[0]
        self.armed_exits = crossed[1:]
        armed_note = ', '.join(e.value for e in self.armed_exits) or '-'
        logger.info(
            f"🎯 [POSITION_STATE] Выход {fired.value}: price={price:.5f} "
            f"пересекла target={self.exit_target(fired, atr):.5f} "
            f"(prev={previous_price:.5f}, AEP={self.average_entry_price:.5f}), "
            f"взведены: {armed_note}"
        )
        return fired

    def mark_exit_executed(self, exit_type: ExitType, closed_volume: float = 0.0) -> None:
        """
        Зафиксировать подтвержденный брокером выход.

        Args:
            exit_type: Исполненный тип выхода
            closed_volume: Закрытый объем
        """
        if exit_type is ExitType.INITIAL_50_PERCENT:
            self.initial_profit_target_reached = True
            self.initial_lot_remaining_volume = max(
                0.0, self.initial_lot_remaining_volume - closed_volume
            )
        elif exit_type is ExitType.ATR_LEVEL_1:
            self.exit_level1_executed = True
        elif exit_type is ExitType.ATR_LEVEL_2:
            self.exit_level2_executed = True
        else:
            return

        self.pending_exit = ExitType.NONE
        if exit_type in self.armed_exits:
            self.armed_exits.remove(exit_type)
        if closed_volume > 0:
            self.record_partial_close(closed_volume)

    def record_partial_close(self, closed_volume: float) -> None:
        """Уменьшить отслеживаемый объем после частичного закрытия"""
        if closed_volume <= 0:
            return
        self.total_volume = max(0.0, self.total_volume - closed_volume)
        if self.total_volume < VOLUME_EPSILON:
            self.total_volume = 0.0
        self.initial_lot_remaining_volume = min(
            self.initial_lot_remaining_volume, self.total_volume
        )

    def reclassify_after_partial_exit(self, current_mod: float) -> bool:
        """
        Перебазировать лестницу на новый MOD после частичного выхода.

        Оставшаяся позиция становится новым уровнем 1 от current_mod:
        лестница и цели выхода пересчитываются от новой опоры.

        Args:
            current_mod: Текущий MOD

        Returns:
            True если переклассификация выполнена
        """
        if self.is_flat:
            return False
        if not is_valid_price(current_mod):
            logger.warning(
                f"⚠️ [POSITION_STATE] Переклассификация пропущена: невалидный MOD={current_mod}"
            )
            return False

        old_level = self.current_level
        old_reference = self.mod_reference_price

        self.mod_reference_price = current_mod
        self.current_level = 1
        self.initial_entry_price = current_mod
        # AEP тоже переносится на MOD: цели выходов считаются от новой опоры
        self.average_entry_price = current_mod
        if self.direction is TradeDirection.LONG:
            self.lowest_entry_price = current_mod
        else:
            self.highest_entry_price = current_mod
        self.exit_level1_executed = False
        self.exit_level2_executed = False
        self.has_initial_position = False
        self.is_reclassified = True
        self.pending_exit = ExitType.NONE
        self.armed_exits = []

        logger.info(
            f"🔄 [POSITION_STATE] Переклассификация: уровень {old_level} -> 1, "
            f"MOD {old_reference:.5f} -> {current_mod:.5f}, volume={self.total_volume:.4f}"
        )
        return True

    def reset(self) -> None:
        """Полный сброс - единственный путь обратно во FLAT"""
        self._clear()
        logger.info("🧹 [POSITION_STATE] Состояние сброшено (FLAT)")

    # ------------------------------------------------------------------
    # Проверки и сериализация
    # ------------------------------------------------------------------

    def check_invariants(self) -> bool:
        """Проверка инвариантов уровень/направление/AEP"""
        flat_level = self.current_level == 0
        flat_direction = self.direction is TradeDirection.NONE
        flat_price = self.average_entry_price == 0
        if not (flat_level == flat_direction == flat_price):
            logger.error(
                f"❌ [POSITION_STATE] Нарушен инвариант: level={self.current_level}, "
                f"direction={self.direction.value}, AEP={self.average_entry_price}"
            )
            return False
        if self.current_level < 0 or self.current_level > self.calculator.max_entry_levels:
            logger.error(
                f"❌ [POSITION_STATE] Уровень вне диапазона: {self.current_level}"
            )
            return False
        if self.current_level > 0 and not is_valid_price(self.average_entry_price):
            logger.error(
                f"❌ [POSITION_STATE] Невалидная AEP: {self.average_entry_price}"
            )
            return False
        if not math.isfinite(self.total_volume) or self.total_volume < 0:
            logger.error(f"❌ [POSITION_STATE] Невалидный объем: {self.total_volume}")
            return False
        return True

    def to_snapshot(self) -> Dict[str, Any]:
        """Секции state файла, которыми владеет PositionState"""
        return {
            "position": {
                "exists": not self.is_flat,
                "direction": self.direction.value,
                "currentLevel": self.current_level,
                "totalVolume": self.total_volume,
                "averageEntryPrice": self.average_entry_price,
                "initialEntryPrice": self.initial_entry_price,
                "modReferencePrice": self.mod_reference_price,
                "hasInitialPosition": self.has_initial_position,
                "initialProfitTargetReached": self.initial_profit_target_reached,
                "initialLotSize": self.initial_lot_size,
                "initialLotRemainingVolume": self.initial_lot_remaining_volume,
                "isReclassified": self.is_reclassified,
                "lowestEntryPrice": self.lowest_entry_price,
                "highestEntryPrice": self.highest_entry_price,
            },
            "exitTracking": {
                "exitLevel1Executed": self.exit_level1_executed,
                "exitLevel2Executed": self.exit_level2_executed,
            },
            "validation": {
                "positionTicket": self.position_ticket,
                "openTime": self.open_time.isoformat() if self.open_time else None,
            },
            "tracking": {
                "previousPrice": self.previous_price,
                "pendingExit": self.pending_exit.value,
                "armedExits": [e.value for e in self.armed_exits],
                **self.entry_crossing.to_dict(),
            },
        }

    def restore_snapshot(self, data: Dict[str, Any]) -> bool:
        """
        Восстановить состояние из секций state файла.

        При ошибке разбора или нарушении инвариантов состояние остается FLAT.

        Args:
            data: Словарь с секциями position/exitTracking/validation/tracking

        Returns:
            True если состояние восстановлено
        """
        position = data.get("position", {})
        exits = data.get("exitTracking", {})
        validation = data.get("validation", {})
        tracking = data.get("tracking", {})

        try:
            self.direction = TradeDirection.parse(position.get("direction"))
            self.current_level = int(position.get("currentLevel", 0))
            self.total_volume = float(position.get("totalVolume", 0.0))
            self.average_entry_price = float(position.get("averageEntryPrice", 0.0))
            self.initial_entry_price = float(position.get("initialEntryPrice", 0.0))
            self.mod_reference_price = float(position.get("modReferencePrice", 0.0))
            self.has_initial_position = bool(position.get("hasInitialPosition", False))
            self.initial_profit_target_reached = bool(
                position.get("initialProfitTargetReached", False)
            )
            self.initial_lot_size = float(position.get("initialLotSize", 0.0))
            self.initial_lot_remaining_volume = float(
                position.get("initialLotRemainingVolume", 0.0)
            )
            self.is_reclassified = bool(position.get("isReclassified", False))
            self.lowest_entry_price = float(position.get("lowestEntryPrice", 0.0))
            self.highest_entry_price = float(position.get("highestEntryPrice", 0.0))

            self.exit_level1_executed = bool(exits.get("exitLevel1Executed", False))
            self.exit_level2_executed = bool(exits.get("exitLevel2Executed", False))

            ticket = validation.get("positionTicket")
            self.position_ticket = str(ticket) if ticket else None
            open_time = validation.get("openTime")
            self.open_time = (
                datetime.fromisoformat(open_time.replace("Z", "+00:00"))
                if open_time
                else None
            )

            previous_price = tracking.get("previousPrice")
            self.previous_price = float(previous_price) if is_valid_price(previous_price) else 0.0
            self.pending_exit = ExitType(tracking.get("pendingExit", ExitType.NONE.value))
            self.armed_exits = [
                ExitType(value)
                for value in tracking.get("armedExits", [])
                if value != ExitType.NONE.value
            ]
            self.entry_crossing = CrossingDetector.from_dict(tracking)
        except (TypeError, ValueError, AttributeError) as e:
            logger.error(f"❌ [POSITION_STATE] Ошибка разбора state: {e}")
            self._clear()
            return False

        if not self.check_invariants():
            self._clear()
            return False

        return True

    def get_status(self) -> Dict[str, Any]:
        """Краткий статус для логов"""
        return {
            "phase": self.phase.value,
            "direction": self.direction.value,
            "level": self.current_level,
            "max_level": self.calculator.max_entry_levels,
            "volume": self.total_volume,
            "aep": self.average_entry_price,
            "mod_reference": self.mod_reference_price,
            "exit_level1": self.exit_level1_executed,
            "exit_level2": self.exit_level2_executed,
            "reclassified": self.is_reclassified,
        }
