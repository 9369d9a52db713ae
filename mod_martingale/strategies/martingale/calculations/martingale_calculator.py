"""
MartingaleCalculator - Расчет лестницы добавлений от MOD.

Отвечает за:
- Шаг лестницы по уровню (прогрессивный ATR шаг)
- Цену следующего добавления от MOD
- Проверку срабатывания добавления
- Средневзвешенную цену входа
- Размер лота для уровня

Не хранит состояние: все данные приходят параметрами.
"""

from typing import List

from loguru import logger

from mod_martingale.models import TradeDirection, is_valid_price

# Шаг лестницы в ATR: уровни 1-3, 4-6, 7+
LEVEL_SPACING_TIGHT = 1.0
LEVEL_SPACING_MEDIUM = 2.0
LEVEL_SPACING_WIDE = 3.0

# Сентинел невалидной цены входа
INVALID_PRICE = 0.0


class MartingaleCalculator:
    """
    Калькулятор лестницы мартингейла.

    Лестница всегда строится ПРОТИВ направления позиции:
    для LONG ниже MOD, для SHORT выше MOD.
    """

    def __init__(self, max_entry_levels: int = 8, atr_multiplier: float = 1.0):
        """
        Args:
            max_entry_levels: Максимальное количество уровней (1-8)
            atr_multiplier: Множитель ATR для всей лестницы
        """
        self.max_entry_levels = max_entry_levels
        self.atr_multiplier = atr_multiplier

    @staticmethod
    def level_spacing(level: int) -> float:
        """
        Множитель ATR для шага на уровень.

        Args:
            level: Номер уровня (1..8)

        Returns:
            1.0 для уровней 1-3, 2.0 для 4-6, 3.0 для 7 и выше
        """
        if level <= 3:
            return LEVEL_SPACING_TIGHT
        if level <= 6:
            return LEVEL_SPACING_MEDIUM
        return LEVEL_SPACING_WIDE

    def cumulative_distance(self, level: int, atr: float) -> float:
        """
        Суммарное расстояние от MOD до уровня.

        Уровень 1 стоит ровно на MOD (расстояние 0).

        Args:
            level: Номер уровня
            atr: Текущий ATR

        Returns:
            sum(level_spacing(i) * atr) для i в [2, level]
        """
        distance = 0.0
        for i in range(2, level + 1):
            distance += self.level_spacing(i) * atr
        return distance

    def is_max_level_reached(self, level: int) -> bool:
        return level >= self.max_entry_levels

    def next_entry_price(
        self,
        mod_ref: float,
        atr: float,
        current_level: int,
        direction: TradeDirection,
    ) -> float:
        """
        Цена следующего добавления.

        Args:
            mod_ref: Опорный MOD
            atr: Текущий ATR
            current_level: Текущий уровень (0 = нет позиции)
            direction: Направление позиции

        Returns:
            Цена уровня current_level + 1, либо INVALID_PRICE (0.0)
            при невалидных входных данных или достигнутом максимуме
        """
        if direction is TradeDirection.NONE or current_level < 0:
            return INVALID_PRICE
        if not is_valid_price(mod_ref) or not is_valid_price(atr):
            return INVALID_PRICE
        if self.is_max_level_reached(current_level):
            return INVALID_PRICE

        distance = self.cumulative_distance(current_level + 1, atr) * self.atr_multiplier
        if direction is TradeDirection.LONG:
            return mod_ref - distance
        return mod_ref + distance

    def should_trigger_next_entry(
        self,
        price: float,
        mod_ref: float,
        atr: float,
        current_level: int,
        direction: TradeDirection,
    ) -> bool:
        """
        Дошла ли цена до следующего уровня.

        Проверка уровня, а не пересечения: безопасно вызывать каждый тик,
        добавление само сдвигает current_level.
        """
        if not is_valid_price(price):
            return False

        target = self.next_entry_price(mod_ref, atr, current_level, direction)
        if target <= 0:
            return False

        if direction is TradeDirection.LONG:
            return price <= target
        return price >= target

    @staticmethod
    def volume_weighted_average(
        avg_price: float, volume: float, new_price: float, new_volume: float
    ) -> float:
        """(avg*vol + new_price*new_vol) / (vol + new_vol), new_price если vol <= 0"""
        if volume <= 0:
            return new_price
        total = volume + new_volume
        if total <= 0:
            return new_price
        return (avg_price * volume + new_price * new_volume) / total

    @staticmethod
    def lot_for_level(
        level: int, initial_lot: float, lot_multiplier: float, max_lot: float
    ) -> float:
        """
        Размер лота для уровня (без нормализации под шаг брокера).

        Args:
            level: Номер уровня (1 = первичный вход)
            initial_lot: Лот первого входа
            lot_multiplier: Множитель мартингейла
            max_lot: Потолок лота

        Returns:
            initial_lot * lot_multiplier ** (level - 1), не больше max_lot
        """
        if level < 1 or initial_lot <= 0:
            return 0.0
        lot = initial_lot * (lot_multiplier ** (level - 1))
        if max_lot > 0 and lot > max_lot:
            logger.debug(
                f"[MARTINGALE] Лот уровня {level} ограничен: {lot:.4f} -> {max_lot:.4f}"
            )
            lot = max_lot
        return lot

    def ladder(
        self, mod_ref: float, atr: float, direction: TradeDirection
    ) -> List[float]:
        """Цены всех уровней 1..max от MOD (пусто при невалидных данных)"""
        prices = []
        for level in range(self.max_entry_levels):
            price = self.next_entry_price(mod_ref, atr, level, direction)
            if price <= 0:
                break
            prices.append(price)
        return prices
