# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""diffusekit.utils — Utility modules."""
from __future__ import annotations

from . import logger_utils
from .logger_utils import elapsed_ms, setup_logger

__all__ = ['logger_utils', 'setup_logger', 'elapsed_ms']
