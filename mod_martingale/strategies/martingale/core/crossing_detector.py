"""
CrossingDetector - Память для детекции пересечения цены с уровнем.

Хранит предыдущую цену и предыдущий уровень между тиками явно,
чтобы их можно было сохранить в state файл.
"""

from dataclasses import dataclass
from typing import Any, Dict

from mod_martingale.models import is_valid_price


def _side(price: float, reference: float) -> int:
    """+1 выше уровня, -1 ниже, 0 ровно на уровне"""
    if price > reference:
        return 1
    if price < reference:
        return -1
    return 0


@dataclass
class CrossingDetector:
    """Детектор пересечения (edge-triggered)"""

    previous_price: float = 0.0
    previous_reference: float = 0.0

    @property
    def has_history(self) -> bool:
        return self.previous_price > 0 and self.previous_reference > 0

    def update(self, price: float, reference: float) -> bool:
        """
        Обновить память и вернуть было ли пересечение.

        Пересечение: на прошлом тике цена была строго по одну сторону
        уровня, сейчас на другой стороне или на самом уровне.

        Args:
            price: Текущая цена
            reference: Текущий уровень (MOD)

        Returns:
            True если уровень пересечен между двумя вызовами
        """
        if not is_valid_price(price) or not is_valid_price(reference):
            return False

        crossed = False
        if self.has_history:
            prev_side = _side(self.previous_price, self.previous_reference)
            cur_side = _side(price, reference)
            crossed = prev_side != 0 and cur_side != prev_side

        self.previous_price = price
        self.previous_reference = reference
        return crossed

    def clear(self) -> None:
        self.previous_price = 0.0
        self.previous_reference = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "crossingPreviousPrice": self.previous_price,
            "crossingPreviousReference": self.previous_reference,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrossingDetector":
        price = data.get("crossingPreviousPrice")
        reference = data.get("crossingPreviousReference")
        if not is_valid_price(price) or not is_valid_price(reference):
            return cls()
        return cls(previous_price=float(price), previous_reference=float(reference))
