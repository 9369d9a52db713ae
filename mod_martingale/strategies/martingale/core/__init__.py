"""
Ядро состояния стратегии.

Модули:
- position_state: машина состояний позиции (единый источник истины)
- crossing_detector: память пересечений между тиками
- state_store: атомарный JSON state файл
- recovery: диагностическая оценка позиции при рестарте
"""

from .crossing_detector import CrossingDetector
from .position_state import PositionState

__all__ = ["PositionState", "CrossingDetector"]
