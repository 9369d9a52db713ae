"""
Оценка состояния позиции по живым данным брокера.

Только диагностика: при рестарте без валидного state файла оценка
пишется в лог, но НЕ применяется. Уровень и средняя цена выводятся
из объема и прибыли, а не из истории сделок, поэтому источником
истины быть не могут.
"""

from dataclasses import dataclass

from loguru import logger

from mod_martingale.models import TradeDirection

from ..calculations.martingale_calculator import MartingaleCalculator


@dataclass
class PositionEstimate:
    level: int
    average_price: float
    volume: float
    direction: TradeDirection
    exact_volume_match: bool


def estimate_position_state(
    volume: float,
    profit: float,
    initial_lot: float,
    lot_multiplier: float,
    max_levels: int,
    direction: TradeDirection,
    current_price: float,
    contract_size: float = 1.0,
    max_lot: float = 0.0,
) -> PositionEstimate:
    """
    Приблизительная оценка уровня и средней цены.

    Уровень - наибольший, для которого сумма лотов лестницы не превышает
    объем. Средняя цена - из прибыли: price - profit / (volume * contract).

    Args:
        volume: Объем позиции у брокера
        profit: P&L позиции у брокера
        initial_lot: Лот первого входа
        lot_multiplier: Множитель мартингейла
        max_levels: Максимум уровней
        direction: Направление позиции
        current_price: Текущая цена
        contract_size: Размер контракта
        max_lot: Потолок лота (0 = без потолка)

    Returns:
        PositionEstimate
    """
    if volume <= 0 or direction is TradeDirection.NONE or current_price <= 0:
        return PositionEstimate(0, 0.0, 0.0, TradeDirection.NONE, volume <= 0)

    level = 0
    cumulative = 0.0
    for candidate in range(1, max_levels + 1):
        lot = MartingaleCalculator.lot_for_level(
            candidate, initial_lot, lot_multiplier, max_lot
        )
        if cumulative + lot > volume + 1e-9:
            break
        cumulative += lot
        level = candidate

    level = max(level, 1)
    exact = abs(cumulative - volume) < 1e-6

    average = current_price - profit / (volume * contract_size) * direction.sign
    estimate = PositionEstimate(level, average, volume, direction, exact)

    logger.info(
        f"🔍 [RECOVERY] Оценка (не применяется): level~{level}, AEP~{average:.5f}, "
        f"volume={volume:.4f}, ladder_match={exact}"
    )
    return estimate
