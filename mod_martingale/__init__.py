"""
MOD Martingale - движок одной мартингейл-последовательности от уровня MOD.

Пакеты:
- strategies.martingale: калькулятор лестницы, состояние позиции, оркестратор тиков
- risk: движок рисков (P&L, drawdown stop-loss, сброс системы)
- execution: контракты брокера/индикатора и бумажное исполнение
- utils: настройка логирования
"""

__version__ = "1.0.0"
