"""
Утилиты.

- logging_setup.py - настройка loguru (консоль + файл с ротацией)
"""

from .logging_setup import setup_logging

__all__ = ["setup_logging"]
