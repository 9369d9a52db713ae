"""
Расчеты лестницы.

- martingale_calculator: шаг уровней, цена добавления, средняя цена, лот уровня
"""

from .martingale_calculator import MartingaleCalculator

__all__ = ["MartingaleCalculator"]
