# app/logs.py
from __future__ import annotations

import sys
from typing import Any

from loguru import logger


def setup_logging(log_file: str = "app.log", level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)
    logger.add(log_file, rotation="10 MB", retention=5, enqueue=True)


def log_error(error: Any, component: str, fn: str) -> None:
    """Padrão único para falhas capturadas que não devem derrubar o turno."""
    logger.error(f"[{component}][ERROR] {fn} error: {error}")
