"""
Контракты внешних коллабораторов (брокер и индикатор).

Ядро стратегии не знает о конкретном брокере: оркестратор получает
объекты, реализующие эти протоколы.
"""

from typing import Optional, Protocol

from mod_martingale.models import ExecutionResult, TradeDirection


class ExecutionClient(Protocol):
    """Исполнение: позиция и ордера по одному символу"""

    def is_position_open(self) -> bool:
        ...

    def position_volume(self) -> float:
        ...

    def position_profit(self) -> float:
        """P&L открытой позиции, включая издержки удержания"""
        ...

    def position_ticket(self) -> Optional[str]:
        ...

    def open_position(self, direction: TradeDirection, volume: float) -> ExecutionResult:
        ...

    def close_position(self, volume: float) -> ExecutionResult:
        ...


class IndicatorSource(Protocol):
    """Внешние индикаторы: направление, ATR, MOD"""

    def direction(self) -> TradeDirection:
        ...

    def atr(self) -> float:
        ...

    def mod(self) -> float:
        ...
