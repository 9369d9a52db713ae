"""
Стратегии.

- martingale: мартингейл от MOD с прогрессивным ATR шагом
"""
