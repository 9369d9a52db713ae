"""
Настройка логирования.

Конфигурация:
- Консоль INFO+ с цветами
- Файл на символ: martingale_<SYMBOL>_<дата>.log (DEBUG+ по умолчанию)
- Ротация по 10 MB, хранение 7 дней, сжатие
- Асинхронная запись
- Символ в каждой строке (extra["symbol"])
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[symbol]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{extra[symbol]} | "
    "{name}:{function}:{line} | "
    "{message}"
)


def setup_logging(
    log_level: str = "DEBUG",
    log_dir: str = "logs",
    symbol: str = "",
    state_dir: Optional[str] = None,
) -> Path:
    """
    Настройка логов экземпляра стратегии.

    Args:
        log_level: Уровень логирования для файла (DEBUG по умолчанию)
        log_dir: Директория для логов
        symbol: Символ инструмента (имя файла и колонка в каждой строке)
        state_dir: Директория state файлов (только для баннера)

    Returns:
        Шаблон пути файлового лога
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    tag = symbol or "-"

    logger.remove()
    logger.configure(extra={"symbol": tag})

    logger.add(sys.stderr, level="INFO", format=CONSOLE_FORMAT, colorize=True)

    prefix = f"martingale_{symbol}" if symbol else "martingale"
    log_file = log_path / (prefix + "_{time:YYYY-MM-DD}.log")
    logger.add(
        str(log_file),
        level=log_level,
        format=FILE_FORMAT,
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        encoding="utf-8",
    )

    logger.info("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    logger.info(f"📝 [LOGGING] {tag}: console INFO+, file {log_level}+")
    logger.info(f"   Log file: {log_file}")
    logger.info(f"   State dir: {state_dir or 'persistence disabled'}")
    logger.info("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    return log_file
