#!/usr/bin/env python3
"""
Точка входа: прогон стратегии по CSV тикам на бумажном исполнении.

CSV колонки: price, direction, atr, mod (timestamp - опционально).
direction: long/short/none или +1/-1/0.

    python -m mod_martingale.main --config config/config.yaml --ticks data/ticks.csv
"""

import argparse
import sys
from typing import Optional

import pandas as pd
from loguru import logger

from mod_martingale.config import BotConfig, load_config
from mod_martingale.execution.paper_execution import PaperExecution, ReplayIndicator
from mod_martingale.models import ExitType
from mod_martingale.strategies.martingale.orchestrator import TickOrchestrator
from mod_martingale.utils.logging_setup import setup_logging

REQUIRED_COLUMNS = ("price", "direction", "atr", "mod")


def load_ticks(path: str) -> pd.DataFrame:
    """
    Загрузка тиков из CSV.

    Raises:
        ValueError: Если нет обязательных колонок
    """
    frame = pd.read_csv(path)
    frame.columns = [str(c).strip().lower() for c in frame.columns]
    missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
    if missing:
        raise ValueError(f"Missing columns in {path}: {', '.join(missing)}")
    if "timestamp" in frame.columns:
        frame["timestamp"] = pd.to_datetime(frame["timestamp"], errors="coerce")
    return frame


def run_replay(config: BotConfig, ticks: pd.DataFrame) -> dict:
    """
    Прогон тиков через оркестратор.

    Args:
        config: Конфигурация бота
        ticks: Таблица тиков

    Returns:
        Сводка прогона
    """
    execution = PaperExecution(contract_size=config.trading.contract_size)
    indicator = ReplayIndicator()
    orchestrator = TickOrchestrator.from_config(config, execution, indicator)

    first_price = float(ticks["price"].iloc[0]) if len(ticks) else 0.0
    orchestrator.restore(current_price=first_price)

    summary = {
        "ticks": 0,
        "entries": 0,
        "scale_ins": 0,
        "exits": 0,
        "reclassifications": 0,
        "resets": 0,
        "stop_losses": 0,
        "errors": 0,
    }

    for row in ticks.itertuples(index=False):
        price = float(row.price)
        indicator.set(direction=row.direction, atr=float(row.atr), mod=float(row.mod))
        execution.update_price(price)

        timestamp = getattr(row, "timestamp", None)
        result = orchestrator.on_tick(price, None if pd.isna(timestamp) else timestamp)

        summary["ticks"] += 1
        summary["entries"] += int(result.opened)
        summary["scale_ins"] += int(result.scaled_in)
        summary["exits"] += int(result.exit_type is not ExitType.NONE)
        summary["reclassifications"] += int(result.reclassified)
        summary["resets"] += int(result.reset)
        summary["stop_losses"] += int(result.stop_loss_triggered)
        summary["errors"] += len(result.errors)

    summary["realized_pnl"] = execution.realized_pnl
    summary["open_volume"] = execution.position_volume()
    summary["open_profit"] = execution.position_profit()
    return summary


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MOD martingale replay")
    parser.add_argument("--config", default=None, help="YAML конфигурация")
    parser.add_argument("--ticks", required=True, help="CSV с тиками")
    parser.add_argument("--log-level", default=None, help="Уровень файлового лога")
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    """Основная функция запуска replay"""
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        logger.error(f"❌ {e}")
        return 1

    setup_logging(
        args.log_level or config.logging.log_level,
        config.logging.log_dir,
        symbol=config.trading.symbol,
        state_dir=config.persistence.state_dir if config.persistence.enabled else None,
    )

    try:
        ticks = load_ticks(args.ticks)
    except (OSError, ValueError) as e:
        logger.error(f"❌ Не удалось загрузить тики: {e}")
        return 1

    logger.info(
        f"🚀 Replay {config.trading.symbol}: {len(ticks)} тиков, "
        f"max levels={config.martingale.max_entry_levels}"
    )
    summary = run_replay(config, ticks)

    logger.info("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    logger.info("📊 REPLAY SUMMARY")
    for key, value in summary.items():
        logger.info(f"   {key}: {value:.2f}" if isinstance(value, float) else f"   {key}: {value}")
    logger.info("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    return 0


if __name__ == "__main__":
    sys.exit(main())
