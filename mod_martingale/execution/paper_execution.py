"""
PaperExecution - Бумажное исполнение в памяти.

Используется для replay CLI и тестов: одна позиция со средней ценой,
реализованный P&L, сценарные отказы брокера.
"""

import uuid
from typing import List, Optional

from loguru import logger

from mod_martingale.models import VOLUME_EPSILON, ExecutionResult, TradeDirection

# Коды ошибок (в стиле кодов ответа брокера)
ERR_INVALID_VOLUME = 10014
ERR_NO_PRICE = 10021
ERR_REJECTED = 10006
ERR_NO_POSITION = 10036


class PaperExecution:
    """
    Бумажный брокер для одного символа.

    Attributes:
        contract_size: Стоимость 1.0 изменения цены на 1 лот
        realized_pnl: Накопленный реализованный P&L
        fills: История исполнений (direction, price, volume)
    """

    def __init__(self, contract_size: float = 1.0, commission_per_lot: float = 0.0):
        """
        Args:
            contract_size: Размер контракта
            commission_per_lot: Комиссия за лот (списывается в position_profit)
        """
        self.contract_size = contract_size
        self.commission_per_lot = commission_per_lot

        self.current_price = 0.0
        self.direction = TradeDirection.NONE
        self.volume = 0.0
        self.average_price = 0.0
        self.commission = 0.0
        self.realized_pnl = 0.0
        self.ticket: Optional[str] = None
        self.fills: List[tuple] = []

        # Сценарные отказы для тестов
        self.fail_next_open = False
        self.fail_next_close = False

    def update_price(self, price: float) -> None:
        self.current_price = price

    # ------------------------------------------------------------------
    # ExecutionClient
    # ------------------------------------------------------------------

    def is_position_open(self) -> bool:
        return self.volume > VOLUME_EPSILON

    def position_volume(self) -> float:
        return self.volume

    def position_profit(self) -> float:
        if not self.is_position_open() or self.current_price <= 0:
            return 0.0
        gross = (
            (self.current_price - self.average_price)
            * self.volume
            * self.direction.sign
            * self.contract_size
        )
        return gross - self.commission

    def position_ticket(self) -> Optional[str]:
        return self.ticket if self.is_position_open() else None

    def open_position(self, direction: TradeDirection, volume: float) -> ExecutionResult:
        if self.fail_next_open:
            self.fail_next_open = False
            return ExecutionResult.failure(ERR_REJECTED, "Request rejected (scripted)")
        if volume <= 0:
            return ExecutionResult.failure(ERR_INVALID_VOLUME, f"Invalid volume {volume}")
        if self.current_price <= 0:
            return ExecutionResult.failure(ERR_NO_PRICE, "No price")
        if direction is TradeDirection.NONE:
            return ExecutionResult.failure(ERR_REJECTED, "No direction")
        if self.is_position_open() and direction is not self.direction:
            return ExecutionResult.failure(
                ERR_REJECTED, "Opposite direction while position is open"
            )

        price = self.current_price
        if not self.is_position_open():
            self.direction = direction
            self.average_price = price
            self.volume = volume
            self.commission = 0.0
            self.ticket = uuid.uuid4().hex[:12]
        else:
            total = self.volume + volume
            self.average_price = (self.average_price * self.volume + price * volume) / total
            self.volume = total

        self.commission += self.commission_per_lot * volume
        self.fills.append((direction.value, price, volume))
        logger.debug(f"[PAPER] OPEN {direction.value} {volume:.4f} @ {price:.5f}")
        return ExecutionResult(success=True, price=price, volume=volume)

    def close_position(self, volume: float) -> ExecutionResult:
        if self.fail_next_close:
            self.fail_next_close = False
            return ExecutionResult.failure(ERR_REJECTED, "Close rejected (scripted)")
        if not self.is_position_open():
            return ExecutionResult.failure(ERR_NO_POSITION, "No open position")
        if volume <= 0:
            return ExecutionResult.failure(ERR_INVALID_VOLUME, f"Invalid volume {volume}")
        if self.current_price <= 0:
            return ExecutionResult.failure(ERR_NO_PRICE, "No price")

        closed = min(volume, self.volume)
        share = closed / self.volume
        commission_part = self.commission * share
        pnl = (
            (self.current_price - self.average_price)
            * closed
            * self.direction.sign
            * self.contract_size
        ) - commission_part

        self.realized_pnl += pnl
        self.commission -= commission_part
        self.volume -= closed
        if self.volume < VOLUME_EPSILON:
            self.volume = 0.0
            self.direction = TradeDirection.NONE
            self.average_price = 0.0
            self.commission = 0.0
            self.ticket = None

        logger.debug(
            f"[PAPER] CLOSE {closed:.4f} @ {self.current_price:.5f}, pnl={pnl:+.2f}"
        )
        return ExecutionResult(success=True, price=self.current_price, volume=closed)

    def simulate_external_close(self, volume: float) -> float:
        """Закрытие не по решению стратегии (ручное/стоп брокера); возвращает P&L"""
        before = self.realized_pnl
        result = self.close_position(volume)
        if not result.success:
            return 0.0
        return self.realized_pnl - before


class ReplayIndicator:
    """Индикатор, значения которого задаются снаружи (replay/тесты)"""

    def __init__(self, direction=TradeDirection.NONE, atr: float = 0.0, mod: float = 0.0):
        self._direction = TradeDirection.parse(direction)
        self._atr = atr
        self._mod = mod

    def set(self, direction=None, atr: Optional[float] = None, mod: Optional[float] = None):
        if direction is not None:
            self._direction = TradeDirection.parse(direction)
        if atr is not None:
            self._atr = atr
        if mod is not None:
            self._mod = mod

    def direction(self) -> TradeDirection:
        return self._direction

    def atr(self) -> float:
        return self._atr

    def mod(self) -> float:
        return self._mod
