"""
Модули риск-менеджмента.

- risk_engine.py - движок рисков (P&L цикла, drawdown stop-loss, сброс системы)
"""

from .risk_engine import RiskEngine

__all__ = ["RiskEngine"]
