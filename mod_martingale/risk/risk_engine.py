"""
Движок рисков мартингейла.

Ответственность:
- Учет закрытой и открытой прибыли
- Проверка права на сброс системы (фиксация прибыли цикла)
- Drawdown stop-loss на максимальном уровне
- Сброс системы (только без открытого объема)
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

from mod_martingale.models import VOLUME_EPSILON
from mod_martingale.strategies.martingale.core.position_state import PositionState


class RiskEngine:
    """
    Движок рисков.

    Владеет счетчиками P&L и эталонной просадкой максимального уровня.
    Сбрасывается вместе с PositionState.
    """

    def __init__(
        self,
        position_state: PositionState,
        minimum_profit_threshold: float,
        drawdown_stop_loss_percentage: float,
    ):
        """
        Args:
            position_state: Состояние позиции
            minimum_profit_threshold: Минимальная прибыль цикла для сброса
            drawdown_stop_loss_percentage: Процент от эталонной просадки для стопа
        """
        self.position_state = position_state
        self.minimum_profit_threshold = minimum_profit_threshold
        self.drawdown_stop_loss_percentage = drawdown_stop_loss_percentage

        # Состояние
        self.closed_profit = 0.0
        self.current_open_profit = 0.0
        self.drawdown_at_max_level = 0.0
        self.system_start_time = datetime.now(timezone.utc)
        self.reset_count = 0

        logger.info(
            f"✅ RiskEngine initialized | "
            f"Min profit: {self.minimum_profit_threshold} | "
            f"Drawdown SL: {self.drawdown_stop_loss_percentage}%"
        )

    # ------------------------------------------------------------------
    # P&L
    # ------------------------------------------------------------------

    def update_open_profit(self, open_profit: float) -> None:
        self.current_open_profit = open_profit

    def record_closed_profit(self, amount: float) -> None:
        """
        Записать реализованный результат закрытия.

        Args:
            amount: P&L закрытой части (с учетом издержек)
        """
        self.closed_profit += amount
        logger.info(
            f"💰 [RISK] Закрыто {amount:+.2f} | closed_profit={self.closed_profit:.2f}"
        )

    def combined_pnl(self, open_profit: Optional[float] = None) -> float:
        """closed_profit + открытая прибыль"""
        if open_profit is None:
            open_profit = self.current_open_profit
        return self.closed_profit + open_profit

    @staticmethod
    def current_drawdown(open_profit: float) -> float:
        """Просадка: открытая прибыль если отрицательна, иначе 0"""
        return open_profit if open_profit < 0 else 0.0

    def check_reset_eligibility(self, open_profit: Optional[float] = None) -> bool:
        """
        Можно ли зафиксировать цикл и сбросить систему.

        Условия:
        1. combined_pnl > |drawdown|
        2. combined_pnl >= minimum_profit_threshold

        Args:
            open_profit: Открытая прибыль (по умолчанию последний снимок)

        Returns:
            True если сброс разрешен
        """
        if open_profit is None:
            open_profit = self.current_open_profit

        combined = self.combined_pnl(open_profit)
        drawdown = abs(self.current_drawdown(open_profit))

        if combined > drawdown and combined >= self.minimum_profit_threshold:
            logger.info(
                f"✅ [RISK] Сброс разрешен: combined={combined:.2f} > "
                f"drawdown={drawdown:.2f}, threshold={self.minimum_profit_threshold:.2f}"
            )
            return True
        return False

    # ------------------------------------------------------------------
    # Drawdown stop-loss
    # ------------------------------------------------------------------

    def set_drawdown_at_max_level(self, pnl: float) -> bool:
        """
        Зафиксировать эталонную просадку один раз за эпизод max уровня.

        Args:
            pnl: Текущий P&L позиции

        Returns:
            True если эталон установлен этим вызовом
        """
        if self.drawdown_at_max_level != 0 or pnl >= 0:
            return False

        self.drawdown_at_max_level = pnl
        logger.warning(
            f"⚠️ [RISK] Максимальный уровень: эталонная просадка {pnl:.2f} зафиксирована"
        )
        return True

    def drawdown_trigger_level(self) -> float:
        """ref - |ref| * pct / 100 (0.0 если эталон не установлен)"""
        reference = self.drawdown_at_max_level
        if reference == 0:
            return 0.0
        return reference - abs(reference) * (self.drawdown_stop_loss_percentage / 100.0)

    def check_drawdown_stop_loss(self, current_pnl: float, position_open: bool) -> bool:
        """
        Проверка экстренного стопа по просадке на максимальном уровне.

        Первый отрицательный P&L на max уровне только взводит стоп.
        Срабатывание одноразовое: эталон очищается.

        Args:
            current_pnl: Текущий P&L позиции
            position_open: Есть ли открытая позиция у брокера

        Returns:
            True если нужен принудительный сброс
        """
        if not position_open:
            return False
        if not self.position_state.is_max_level or self.position_state.is_flat:
            return False

        if self.drawdown_at_max_level == 0:
            # Взводим, но не срабатываем на этом же тике
            self.set_drawdown_at_max_level(current_pnl)
            return False

        trigger_level = self.drawdown_trigger_level()
        if current_pnl <= trigger_level:
            logger.error(
                f"🛑 [RISK] DRAWDOWN STOP: pnl={current_pnl:.2f} <= trigger={trigger_level:.2f} "
                f"(ref={self.drawdown_at_max_level:.2f}, {self.drawdown_stop_loss_percentage}%)"
            )
            self.drawdown_at_max_level = 0.0
            return True

        return False

    # ------------------------------------------------------------------
    # Сброс
    # ------------------------------------------------------------------

    def execute_system_reset(self, open_volume: float) -> bool:
        """
        Полный сброс PositionState и счетчиков риска.

        Жесткое предусловие: у брокера не должно оставаться объема.
        Сброс поверх живой позиции потерял бы учет риска.

        Args:
            open_volume: Текущий объем позиции у брокера

        Returns:
            True если сброс выполнен
        """
        if open_volume > VOLUME_EPSILON:
            logger.error(
                f"❌ [RISK] Сброс ЗАПРЕЩЕН: открыт объем {open_volume:.8f}, "
                f"состояние не изменено"
            )
            return False

        final_pnl = self.closed_profit
        self.position_state.reset()
        self.closed_profit = 0.0
        self.current_open_profit = 0.0
        self.drawdown_at_max_level = 0.0
        self.system_start_time = datetime.now(timezone.utc)
        self.reset_count += 1

        logger.info(
            f"🔁 [RISK] Система сброшена (#{self.reset_count}), итог цикла {final_pnl:+.2f}"
        )
        return True

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "closedProfit": self.closed_profit,
            "drawdownAtMaxLevel": self.drawdown_at_max_level,
            "systemStartTime": self.system_start_time.isoformat(),
            "resetCount": self.reset_count,
        }

    def restore_snapshot(self, data: Dict[str, Any]) -> None:
        """Восстановить счетчики из секции risk (необязательной)"""
        self.closed_profit = float(data.get("closedProfit", 0.0) or 0.0)
        self.drawdown_at_max_level = float(data.get("drawdownAtMaxLevel", 0.0) or 0.0)
        self.reset_count = int(data.get("resetCount", 0) or 0)
        start_time = data.get("systemStartTime")
        if start_time:
            try:
                self.system_start_time = datetime.fromisoformat(
                    start_time.replace("Z", "+00:00")
                )
            except ValueError:
                logger.debug(f"⚠️ [RISK] Некорректный systemStartTime: {start_time}")

    def get_stats(self) -> Dict[str, Any]:
        """Получить статистику рисков"""
        return {
            "closed_profit": self.closed_profit,
            "open_profit": self.current_open_profit,
            "combined_pnl": self.combined_pnl(),
            "drawdown_at_max_level": self.drawdown_at_max_level,
            "system_start_time": self.system_start_time.isoformat(),
            "reset_count": self.reset_count,
        }
