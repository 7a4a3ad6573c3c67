# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Logger factory used by every diffusekit module."""
from __future__ import annotations

import logging
import os
import time

_LEVEL_ENV = 'DIFFUSEKIT_LOG_LEVEL'


def _default_level() -> int:
    name = os.environ.get(_LEVEL_ENV, 'INFO').upper()
    return getattr(logging, name, logging.INFO)


def setup_logger(name: str | None = None, level: int | None = None) -> logging.Logger:
    """
    Return a logger with a single timestamped stream handler.

    Args:
        name: Logger name (usually ``__name__``)
        level: Logging level; defaults to ``$DIFFUSEKIT_LOG_LEVEL`` or INFO
    """
    formatter = logging.Formatter(
        '[%(asctime)s] [%(levelname)s] [%(name)s]: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    logger = logging.getLogger(name)
    logger.setLevel(_default_level() if level is None else level)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def elapsed_ms(start: float) -> float:
    """Milliseconds since a ``time.perf_counter()`` timestamp."""
    return (time.perf_counter() - start) * 1000.0
