"""
Мартингейл от MOD.

Модули:
- calculations: лестница входов (MartingaleCalculator)
- core: состояние позиции, детектор пересечений, state файл, оценка при рестарте
- orchestrator: обработка тика (TickOrchestrator)
"""

from .calculations import MartingaleCalculator
from .core import CrossingDetector, PositionState

__all__ = ["MartingaleCalculator", "PositionState", "CrossingDetector"]
