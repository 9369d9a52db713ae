"""
Data models for the martingale engine
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

# Объем меньше этого считается нулевым
VOLUME_EPSILON = 1e-8


def is_valid_price(value) -> bool:
    """Конечное положительное число (NaN, inf, None и <= 0 невалидны)"""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number > 0


class TradeDirection(Enum):
    NONE = "none"
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        """+1 для LONG, -1 для SHORT, 0 для NONE"""
        if self is TradeDirection.LONG:
            return 1
        if self is TradeDirection.SHORT:
            return -1
        return 0

    @classmethod
    def parse(cls, value) -> "TradeDirection":
        """
        Приведение внешнего значения к направлению.

        Принимает enum, строку ("long"/"buy"/"short"/"sell") или число (+1/-1/0).
        Все нераспознанное считается NONE.
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.NONE
        if isinstance(value, (int, float)):
            if value > 0:
                return cls.LONG
            if value < 0:
                return cls.SHORT
            return cls.NONE
        text = str(value).strip().lower()
        if text in ("long", "buy", "1", "+1"):
            return cls.LONG
        if text in ("short", "sell", "-1"):
            return cls.SHORT
        return cls.NONE


class ExitType(Enum):
    """Тип выхода, порядок приоритета сохраняется"""

    NONE = "none"
    INITIAL_50_PERCENT = "initial_50_percent"
    ATR_LEVEL_1 = "atr_level_1"
    ATR_LEVEL_2 = "atr_level_2"


class PositionPhase(Enum):
    FLAT = "flat"
    INITIAL = "initial"
    SCALING = "scaling"
    REBASED = "rebased"


@dataclass
class ExecutionResult:
    """Результат операции у брокера (открытие/закрытие)"""

    success: bool
    price: float = 0.0
    volume: float = 0.0
    code: int = 0
    description: str = ""

    @classmethod
    def failure(cls, code: int, description: str) -> "ExecutionResult":
        return cls(success=False, code=code, description=description)


@dataclass
class TickSnapshot:
    """Снимок внешних данных на один тик"""

    price: float
    direction: TradeDirection
    atr: float
    mod: float
    position_volume: float
    position_profit: float
    timestamp: Optional[datetime] = None


@dataclass
class TickResult:
    """Что сделал оркестратор за тик"""

    processed: bool = True
    skipped_reason: Optional[str] = None
    opened: bool = False
    scaled_in: bool = False
    exit_type: ExitType = ExitType.NONE
    closed_volume: float = 0.0
    reclassified: bool = False
    reset: bool = False
    stop_loss_triggered: bool = False
    errors: List[str] = field(default_factory=list)

    @classmethod
    def skipped(cls, reason: str) -> "TickResult":
        return cls(processed=False, skipped_reason=reason)
