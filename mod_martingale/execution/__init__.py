"""
Исполнение и внешние данные.

- interfaces.py - протоколы ExecutionClient / IndicatorSource
- paper_execution.py - бумажный брокер и replay индикатор
"""

from .interfaces import ExecutionClient, IndicatorSource
from .paper_execution import PaperExecution, ReplayIndicator

__all__ = ["ExecutionClient", "IndicatorSource", "PaperExecution", "ReplayIndicator"]
