# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Progress and cancellation side-channel."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Optional

from diffusekit.errors import DiffusionCancelled
from diffusekit.tensor import Tensor


@dataclass(frozen=True)
class DiffusionProgress:
    """Emitted once per completed step; never retained by the engine.

    Attributes:
        step:        1-based index of the step just completed.
        total:       Number of steps the walk visits.
        latents:     Latents after the step.
        elapsed_ms:  Wall time of the step.
        batch_index: 1-based combination index inside a batch, else ``None``.
        batch_count: Number of combinations in the batch, else ``None``.
        timestep:    Schedule timestep the step started from.
    """

    step: int
    total: int
    latents: Optional[Tensor] = None
    elapsed_ms: float = 0.0
    batch_index: Optional[int] = None
    batch_count: Optional[int] = None
    timestep: Optional[int] = None


ProgressCallback = Callable[[DiffusionProgress], None]


class CancellationToken:
    """Thread-safe cooperative cancellation flag.

    The orchestrator polls it before every inference call; cancelling
    never interrupts a call already in flight.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, completed_steps: int = 0) -> None:
        if self._event.is_set():
            raise DiffusionCancelled(completed_steps)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"


__all__ = ['DiffusionProgress', 'ProgressCallback', 'CancellationToken']
