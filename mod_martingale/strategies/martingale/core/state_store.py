"""
StateStore - Сохранение и восстановление состояния стратегии.

Один JSON файл на символ + magic. Запись атомарная:
временный файл, затем os.replace, чтобы после падения процесса
на диске не оставался частично записанный state.

Формат (version 1.0):
{
    "metadata": {"symbol", "magicId", "version", "lastUpdate", "timeframe"},
    "position": {...},
    "exitTracking": {"exitLevel1Executed", "exitLevel2Executed"},
    "validation": {"positionTicket", "openTime"},
    "risk": {...},        # необязательная
    "tracking": {...}     # необязательная
}
"""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from mod_martingale.risk.risk_engine import RiskEngine

from .position_state import PositionState

STATE_VERSION = "1.0"
REQUIRED_SECTIONS = ("metadata", "position", "exitTracking", "validation")


@dataclass
class LoadResult:
    """Результат загрузки state файла"""

    loaded: bool
    reason: str = ""
    warnings: List[str] = field(default_factory=list)
    ticket_missing: bool = False


class StateStore:
    """
    Хранилище state файла одной стратегии.

    Ошибки ввода-вывода логируются и никогда не пробрасываются:
    неудачная загрузка значит "старт с нуля", неудачное сохранение
    повторится на следующем периодическом цикле.
    """

    def __init__(
        self,
        state_dir: str,
        symbol: str,
        magic_id: int,
        timeframe: str = "",
    ):
        """
        Args:
            state_dir: Директория state файлов
            symbol: Символ инструмента
            magic_id: Идентификатор экземпляра стратегии
            timeframe: Таймфрейм (только для метаданных)
        """
        self.state_dir = Path(state_dir)
        self.symbol = symbol
        self.magic_id = magic_id
        self.timeframe = timeframe
        self.state_file = self.state_dir / f"{symbol}_{magic_id}_state.json"

    def exists(self) -> bool:
        return self.state_file.exists()

    def build_payload(
        self, position_state: PositionState, risk_engine: RiskEngine
    ) -> Dict[str, Any]:
        payload = {
            "metadata": {
                "symbol": self.symbol,
                "magicId": self.magic_id,
                "version": STATE_VERSION,
                "lastUpdate": datetime.now(timezone.utc).isoformat(),
                "timeframe": self.timeframe,
            },
        }
        payload.update(position_state.to_snapshot())
        payload["risk"] = risk_engine.to_snapshot()
        return payload

    def save(self, position_state: PositionState, risk_engine: RiskEngine) -> bool:
        """
        Сохранить состояние атомарно.

        Returns:
            True если файл записан
        """
        try:
            payload = self.build_payload(position_state, risk_engine)

            self.state_dir.mkdir(parents=True, exist_ok=True)
            temp_file = str(self.state_file) + ".tmp"
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_file, self.state_file)
            logger.debug(f"💾 [STATE] Сохранено: {self.state_file}")
            return True

        except (OSError, TypeError, ValueError) as e:
            logger.error(f"❌ [STATE] Ошибка сохранения {self.state_file}: {e}")
            return False

    def _validate(self, data: Any) -> Optional[str]:
        """Причина отказа или None если файл подходит"""
        if not isinstance(data, dict):
            return "state is not a JSON object"

        missing = [s for s in REQUIRED_SECTIONS if not isinstance(data.get(s), dict)]
        if missing:
            return f"missing sections: {', '.join(missing)}"

        metadata = data["metadata"]
        if metadata.get("symbol") != self.symbol:
            return f"symbol mismatch: {metadata.get('symbol')} != {self.symbol}"
        try:
            magic = int(metadata.get("magicId"))
        except (TypeError, ValueError):
            return f"invalid magicId: {metadata.get('magicId')}"
        if magic != self.magic_id:
            return f"magic mismatch: {magic} != {self.magic_id}"

        version = str(metadata.get("version", ""))
        if version.split(".")[0] != STATE_VERSION.split(".")[0]:
            return f"unsupported version: {version}"

        return None

    def load(
        self,
        position_state: PositionState,
        risk_engine: RiskEngine,
        live_ticket: Optional[str] = None,
        live_position_open: Optional[bool] = None,
    ) -> LoadResult:
        """
        Загрузить состояние из файла.

        Args:
            position_state: Куда восстановить позицию
            risk_engine: Куда восстановить счетчики риска
            live_ticket: Тикет позиции у брокера (None если позиции нет)
            live_position_open: Есть ли позиция у брокера (None если неизвестно)

        Returns:
            LoadResult; при loaded=False позиция остается FLAT
        """
        if not self.state_file.exists():
            return LoadResult(loaded=False, reason="no state file")

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"❌ [STATE] Не удалось прочитать {self.state_file}: {e}")
            return LoadResult(loaded=False, reason=f"read error: {e}")

        reason = self._validate(data)
        if reason:
            logger.warning(f"⚠️ [STATE] State отклонен: {reason}")
            return LoadResult(loaded=False, reason=reason)

        result = LoadResult(loaded=True)

        # Нестрогие проверки: грузим, но помечаем
        recorded_ticket = data["validation"].get("positionTicket")
        if recorded_ticket and str(recorded_ticket) != (live_ticket or ""):
            result.ticket_missing = True
            result.warnings.append(
                f"recorded ticket {recorded_ticket} not reported by broker"
            )

        file_exists = bool(data["position"].get("exists", False))
        if live_position_open is not None and file_exists != live_position_open:
            result.warnings.append(
                f"position exists mismatch: file={file_exists}, broker={live_position_open}"
            )

        if not position_state.restore_snapshot(data):
            return LoadResult(loaded=False, reason="invalid position section")

        risk_engine.restore_snapshot(data.get("risk", {}))

        for warning in result.warnings:
            logger.warning(f"⚠️ [STATE] {warning}")
        logger.info(
            f"✅ [STATE] Загружено: level={position_state.current_level}, "
            f"direction={position_state.direction.value}, "
            f"AEP={position_state.average_entry_price:.5f}"
        )
        return result

    def delete(self) -> bool:
        try:
            if self.state_file.exists():
                self.state_file.unlink()
                logger.info(f"🗑️ [STATE] Удален {self.state_file}")
            return True
        except OSError as e:
            logger.error(f"❌ [STATE] Ошибка удаления {self.state_file}: {e}")
            return False
