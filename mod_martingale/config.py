"""
Configuration management for the martingale engine
"""
import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, model_validator

# Load environment variables
load_dotenv()

ENV_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class TradingConfig(BaseModel):
    symbol: str = Field(default="EURUSD", min_length=1)
    magic_id: int = Field(default=20240101, ge=0)
    timeframe: str = Field(default="M15")
    contract_size: float = Field(default=1.0, gt=0)


class MartingaleConfig(BaseModel):
    max_entry_levels: int = Field(default=8, ge=1, le=8)
    atr_multiplier: float = Field(default=1.0, gt=0)
    initial_lot: float = Field(default=0.01, gt=0)
    lot_multiplier: float = Field(default=2.0, ge=1.0)
    max_lot: float = Field(default=10.0, gt=0)


class ExitConfig(BaseModel):
    initial_target_atr: float = Field(default=1.0, gt=0)
    initial_close_percent: float = Field(default=50.0, gt=0, le=100.0)
    exit_level1_atr: float = Field(default=1.0, gt=0)
    exit_level2_atr: float = Field(default=2.0, gt=0)
    exit_level1_percent: float = Field(default=50.0, ge=0, le=100.0)
    exit_level2_percent: float = Field(default=50.0, ge=0, le=100.0)

    @model_validator(mode="after")
    def check_exit_levels(self) -> "ExitConfig":
        total = self.exit_level1_percent + self.exit_level2_percent
        if abs(total - 100.0) > 1e-6:
            raise ValueError(
                f"exit_level1_percent + exit_level2_percent must be 100 (got {total})"
            )
        if self.exit_level2_atr < self.exit_level1_atr:
            raise ValueError("exit_level2_atr must be >= exit_level1_atr")
        return self


class RiskConfig(BaseModel):
    minimum_profit_threshold: float = Field(default=10.0, gt=0)
    drawdown_stop_loss_percentage: float = Field(default=30.0, ge=0, le=200.0)

    @model_validator(mode="after")
    def warn_stop_loss_range(self) -> "RiskConfig":
        # Допустимо 0-200, рекомендовано 10-50
        pct = self.drawdown_stop_loss_percentage
        if pct < 10.0 or pct > 50.0:
            logger.warning(
                f"⚠️ drawdown_stop_loss_percentage={pct}% вне рекомендуемого диапазона 10-50%"
            )
        return self


class PersistenceConfig(BaseModel):
    enabled: bool = Field(default=True)
    state_dir: str = Field(default="data/state")
    save_interval_seconds: float = Field(default=5.0, ge=0)


class LoggingConfig(BaseModel):
    log_level: str = Field(default="DEBUG")
    log_dir: str = Field(default="logs")
    status_log_interval_seconds: float = Field(default=60.0, ge=0)


class BotConfig(BaseModel):
    trading: TradingConfig = Field(default_factory=TradingConfig)
    martingale: MartingaleConfig = Field(default_factory=MartingaleConfig)
    exits: ExitConfig = Field(default_factory=ExitConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load_from_file(cls, config_path: str = "config.yaml") -> "BotConfig":
        """
        Загрузка конфигурации из YAML файла.

        Читает YAML файл, подставляет переменные окружения
        и валидирует конфигурацию через Pydantic модели.

        Args:
            config_path: Путь к YAML файлу конфигурации (default: config.yaml)

        Returns:
            BotConfig: Валидированный объект конфигурации

        Raises:
            FileNotFoundError: Если файл конфигурации не найден
            yaml.YAMLError: При ошибках парсинга YAML
            pydantic.ValidationError: При невалидной конфигурации
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_file, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}

        # Replace environment variable placeholders
        raw_config = cls._substitute_env_vars(raw_config)

        return cls(**raw_config)

    @staticmethod
    def _substitute_env_vars(obj: Any) -> Any:
        """
        Рекурсивная подстановка переменных окружения в конфигурации.

        Заменяет ${VARIABLE_NAME} на значения из окружения, в том числе
        внутри строки. Незаданная переменная остается как есть.

        Example:
            >>> _substitute_env_vars({"state_dir": "data/${BOT_SYMBOL}"})
            {"state_dir": "data/XAUUSD"}
        """
        if isinstance(obj, dict):
            return {
                key: BotConfig._substitute_env_vars(value) for key, value in obj.items()
            }
        elif isinstance(obj, list):
            return [BotConfig._substitute_env_vars(item) for item in obj]
        elif isinstance(obj, str):
            return ENV_PLACEHOLDER.sub(
                lambda match: os.getenv(match.group(1), match.group(0)), obj
            )
        else:
            return obj


def load_config(config_path: Optional[str] = None) -> BotConfig:
    """
    Загрузка конфигурации.

    Без пути возвращает конфигурацию по умолчанию.

    Args:
        config_path: Путь к YAML файлу (опционально)

    Returns:
        BotConfig: Загруженная и валидированная конфигурация
    """
    if config_path is None:
        return BotConfig()
    return BotConfig.load_from_file(config_path)
