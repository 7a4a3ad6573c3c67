# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Exception hierarchy shared by the tensor, scheduler and diffuser layers.

``DiffusionCancelled`` is not a failure: callers that only
care about real errors can catch ``InferenceError`` / ``SchedulerError``
and let cancellation propagate untouched.
"""
from __future__ import annotations

from typing import Optional, Sequence


class DiffusionError(Exception):
    """Root of every error raised by diffusekit."""


class ShapeMismatch(DiffusionError, ValueError):
    """Two tensors combined by an elementwise operation disagree on shape."""

    def __init__(self, operation: str, *shapes: Sequence[int]):
        self.operation = operation
        self.shapes = tuple(tuple(s) for s in shapes)
        joined = ' vs '.join(str(list(s)) for s in self.shapes)
        super().__init__(f"{operation}: shape mismatch {joined}")


class SchedulerError(DiffusionError, RuntimeError):
    """A scheduler was used outside its lifecycle (uninitialised, disposed)."""


class InvalidStepOrder(SchedulerError):
    """``step`` was called with a timestep that is not the next one due."""

    def __init__(self, timestep: int, message: str):
        self.timestep = timestep
        super().__init__(f"timestep {timestep}: {message}")


class InferenceError(DiffusionError):
    """The external inference engine failed or returned an unusable result."""

    def __init__(self, model_id: str, message: str,
                 tensor_name: Optional[str] = None):
        self.model_id = model_id
        self.tensor_name = tensor_name
        detail = f" (tensor '{tensor_name}')" if tensor_name else ''
        super().__init__(f"[{model_id}] {message}{detail}")


class DiffusionCancelled(DiffusionError):
    """Cooperative cancellation was requested between two steps."""

    def __init__(self, completed_steps: int = 0):
        self.completed_steps = completed_steps
        super().__init__(f"diffusion cancelled after {completed_steps} step(s)")


__all__ = [
    'DiffusionError',
    'ShapeMismatch',
    'SchedulerError',
    'InvalidStepOrder',
    'InferenceError',
    'DiffusionCancelled',
]
