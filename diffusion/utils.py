# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Diffusion utilities — noise helpers, schedule builders, conditioning.

Shared helpers used across schedulers and pipelines:

- ``new_seed``               — draw a fresh non-zero generation seed.
- ``randn_tensor``           — seeded standard-normal noise as a Tensor.
- ``get_beta_schedule``      — build the training β table.
- ``timestep_tensor``        — the UNet ``timestep`` input.
- ``sdxl_time_ids``          — SDXL additional ``time_ids`` conditioning.
- ``guidance_scale_embedding`` — LCM ``timestep_cond`` embedding.
"""
from __future__ import annotations

import math
import secrets
import numpy as np
from typing import Optional, Tuple, Union, Sequence

from diffusekit.tensor import Tensor

# Seeds stay within int32 range so YAML configs replay them exactly.
MAX_SEED = 2 ** 31 - 1


# ═════════════════════════════════════════════════════════════════════
#  Noise generation
# ═════════════════════════════════════════════════════════════════════

def new_seed() -> int:
    """Return a fresh random seed in ``[1, MAX_SEED]``."""
    return secrets.randbelow(MAX_SEED) + 1


def randn_tensor(
    shape: Union[Tuple[int, ...], Sequence[int]],
    generator: Optional[np.random.Generator] = None,
    dtype: np.dtype = np.float32,
) -> Tensor:
    """Generate a Tensor filled with standard normal noise.

    Args:
        shape:     Shape of the output tensor.
        generator: Session-owned generator; a fresh unseeded one if omitted.
        dtype:     NumPy dtype (default ``float32``).

    Returns:
        A Tensor with i.i.d. N(0, 1) entries.
    """
    rng = generator if generator is not None else np.random.default_rng()
    data = rng.standard_normal(tuple(shape), dtype=np.float32).astype(dtype, copy=False)
    return Tensor._wrap(data)


# ═════════════════════════════════════════════════════════════════════
#  Beta-schedule builder
# ═════════════════════════════════════════════════════════════════════

def _alpha_bar_cosine(num_timesteps: int, max_beta: float = 0.999) -> np.ndarray:
    def alpha_bar(t):
        return math.cos((t + 0.008) / 1.008 * math.pi / 2) ** 2

    betas = [
        min(1 - alpha_bar((i + 1) / num_timesteps) / alpha_bar(i / num_timesteps), max_beta)
        for i in range(num_timesteps)
    ]
    return np.asarray(betas, dtype=np.float32)


def get_beta_schedule(
    schedule: str,
    num_timesteps: int = 1000,
    beta_start: float = 0.00085,
    beta_end: float = 0.012,
    trained_betas: Optional[Sequence[float]] = None,
) -> np.ndarray:
    """Construct a beta noise schedule.

    Args:
        schedule:       One of ``'linear'``, ``'scaled_linear'``,
                        ``'squaredcos_cap_v2'``.
        num_timesteps:  Number of diffusion timesteps.
        beta_start:     Starting beta value (for linear / scaled_linear).
        beta_end:       Ending beta value.
        trained_betas:  Explicit table; wins over ``schedule`` when given.

    Returns:
        1-D float32 numpy array of length ``num_timesteps``.
    """
    if trained_betas is not None:
        betas = np.asarray(trained_betas, dtype=np.float32)
        if betas.shape != (num_timesteps,):
            raise ValueError(
                f"trained_betas has {betas.size} entries, expected {num_timesteps}"
            )
        return betas
    if schedule == 'linear':
        return np.linspace(beta_start, beta_end, num_timesteps,
                           dtype=np.float32)
    elif schedule == 'scaled_linear':
        return (np.linspace(beta_start ** 0.5, beta_end ** 0.5,
                            num_timesteps, dtype=np.float32) ** 2)
    elif schedule == 'squaredcos_cap_v2':
        return _alpha_bar_cosine(num_timesteps)
    else:
        raise ValueError(f"Unknown beta schedule: {schedule!r}")


# ═════════════════════════════════════════════════════════════════════
#  Conditioning tensors
# ═════════════════════════════════════════════════════════════════════

def timestep_tensor(timestep: int) -> Tensor:
    """UNet ``timestep`` input: a one-element int64 tensor."""
    return Tensor(np.asarray([timestep], dtype=np.int64), dtype=np.int64)


def sdxl_time_ids(height: int, width: int, batch: int = 1,
                  aesthetic_score: Optional[float] = None) -> Tensor:
    """SDXL ``time_ids``: original size, crop origin, target size.

    Refiner models replace the target size with a single aesthetic score,
    giving five values instead of six.
    """
    if aesthetic_score is None:
        row = [height, width, 0, 0, height, width]
    else:
        row = [height, width, 0, 0, aesthetic_score]
    data = np.tile(np.asarray(row, dtype=np.float32), (batch, 1))
    return Tensor._wrap(data)


def guidance_scale_embedding(guidance_scale: float, embedding_dim: int = 256,
                             batch: int = 1) -> Tensor:
    """Sinusoidal embedding of the guidance scale for consistency models.

    ``w = (guidance_scale - 1) * 1000`` is embedded as
    ``[sin(w * f_0) … sin(w * f_k), cos(w * f_0) … cos(w * f_k)]`` with
    ``f_i = exp(-i * log(10000) / (half - 1))``.
    """
    w = (guidance_scale - 1.0) * 1000.0
    half = embedding_dim // 2
    freqs = np.exp(np.arange(half, dtype=np.float32) * -(math.log(10000.0) / (half - 1)))
    emb = w * freqs
    emb = np.concatenate([np.sin(emb), np.cos(emb)])
    if embedding_dim % 2 == 1:
        emb = np.pad(emb, (0, 1))
    return Tensor._wrap(np.tile(emb.astype(np.float32), (batch, 1)))


# ═════════════════════════════════════════════════════════════════════
#  Exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
    'MAX_SEED',
    'new_seed',
    'randn_tensor',
    'get_beta_schedule',
    'timestep_tensor',
    'sdxl_time_ids',
    'guidance_scale_embedding',
]
