# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""
DiffuseKit — diffusion scheduling and orchestration engine.

Uses NumPy as the computational backend.  Neural-network execution,
text encoding and image I/O are supplied by the caller through the
``InferenceEngine``, ``PromptProvider`` and ``ImageCodec`` interfaces.

Usage::

    import diffusekit
    from diffusekit.diffusion import StableDiffusionService, SchedulerOptions
"""
from __future__ import annotations

__version__ = "0.1.0"
__author__ = "Pictofeed, LLC"

# ── Core tensor class & algebra ──
from .tensor import (
    Tensor,
    tensor,
    zeros,
    ones,
    full,
    add,
    subtract,
    multiply,
    scale,
    repeat,
    split,
    concat,
    lerp_guidance,
    perform_guidance,
    blend_masked,
)

# ── Errors ──
from .errors import (
    DiffusionError,
    ShapeMismatch,
    SchedulerError,
    InvalidStepOrder,
    InferenceError,
    DiffusionCancelled,
)

# ── Sub-packages ──
from . import utils
from . import diffusion

__all__ = [
    "__version__",
    "__author__",

    # Tensor
    'Tensor', 'tensor', 'zeros', 'ones', 'full',
    'add', 'subtract', 'multiply', 'scale',
    'repeat', 'split', 'concat',
    'lerp_guidance', 'perform_guidance', 'blend_masked',

    # Errors
    'DiffusionError', 'ShapeMismatch', 'SchedulerError',
    'InvalidStepOrder', 'InferenceError', 'DiffusionCancelled',

    # Sub-packages
    'utils', 'diffusion',
]
