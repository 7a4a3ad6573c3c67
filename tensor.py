# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Dense float tensors and the elementwise algebra used by the denoising loop.

A :class:`Tensor` wraps a read-only :class:`numpy.ndarray`.  Every
operation returns a new tensor; nothing here mutates its inputs, so a
tensor can be handed from one stage to the next as-is.

All binary operations require identical shapes (no implicit broadcasting)
and raise :class:`~diffusekit.errors.ShapeMismatch` otherwise.  Only
elementwise numpy kernels are used, which keeps results bit-identical
across runs for a fixed seed.
"""
from __future__ import annotations

import numpy as np
from typing import Any, Sequence, Union

from .errors import ShapeMismatch

Scalar = Union[int, float, np.floating]


def _frozen(arr: np.ndarray) -> np.ndarray:
    if arr.flags.writeable:
        arr.flags.writeable = False
    return arr


class Tensor:
    """Immutable-shape N-dimensional array with an explicit dimension vector.

    Layout is row-major (C order).  Equality is bitwise: two tensors are
    equal when they share dtype, dimensions and raw bytes.
    """

    __slots__ = ('_data',)

    # ------------------------------------------------------------------ #
    #  Construction                                                      #
    # ------------------------------------------------------------------ #

    def __init__(self, data: Any, dtype: np.dtype | type | None = np.float32):
        if isinstance(data, Tensor):
            arr = data._data.copy()
        else:
            arr = np.array(data, copy=True)
        if dtype is not None:
            arr = arr.astype(dtype, copy=False)
        self._data: np.ndarray = _frozen(np.ascontiguousarray(arr))

    @staticmethod
    def _wrap(data: np.ndarray) -> 'Tensor':
        """Adopt *data* without copying (caller gives up ownership)."""
        t = Tensor.__new__(Tensor)
        t._data = _frozen(np.ascontiguousarray(data))
        return t

    # ------------------------------------------------------------------ #
    #  Properties                                                        #
    # ------------------------------------------------------------------ #

    @property
    def dimensions(self) -> tuple[int, ...]:
        return tuple(int(d) for d in self._data.shape)

    @property
    def shape(self) -> tuple[int, ...]:
        return self.dimensions

    @property
    def ndim(self) -> int:
        return self._data.ndim

    @property
    def dtype(self) -> np.dtype:
        return self._data.dtype

    def numel(self) -> int:
        return int(self._data.size)

    def numpy(self) -> np.ndarray:
        """Read-only view of the underlying array."""
        return self._data

    def tolist(self):
        return self._data.tolist()

    def item(self) -> float | int:
        return self._data.item()

    def __len__(self) -> int:
        return self.dimensions[0]

    def __repr__(self) -> str:
        return f"tensor({self._data!r}, dimensions={list(self.dimensions)})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Tensor):
            return NotImplemented
        return (self._data.dtype == other._data.dtype
                and self._data.shape == other._data.shape
                and self._data.tobytes() == other._data.tobytes())

    __hash__ = None  # type: ignore[assignment]

    # ------------------------------------------------------------------ #
    #  Operators                                                         #
    # ------------------------------------------------------------------ #

    def __add__(self, other: 'Tensor') -> 'Tensor':
        return add(self, other)

    def __sub__(self, other: 'Tensor') -> 'Tensor':
        return subtract(self, other)

    def __mul__(self, other: Union['Tensor', Scalar]) -> 'Tensor':
        if isinstance(other, Tensor):
            return multiply(self, other)
        return scale(self, other)

    __rmul__ = __mul__

    def __neg__(self) -> 'Tensor':
        return scale(self, -1.0)

    # ------------------------------------------------------------------ #
    #  Method forms of the algebra                                       #
    # ------------------------------------------------------------------ #

    def multiply_by(self, k: Scalar) -> 'Tensor':
        return scale(self, k)

    def repeat(self, n: int, axis: int = 0) -> 'Tensor':
        return repeat(self, n, axis)

    def split(self, parts: int = 2, axis: int = 0) -> tuple['Tensor', ...]:
        return split(self, parts, axis)


# ═════════════════════════════════════════════════════════════════════
#  Factory functions
# ═════════════════════════════════════════════════════════════════════

def tensor(data: Any, dtype=np.float32) -> Tensor:
    return Tensor(data, dtype=dtype)


def _size(size: tuple) -> tuple[int, ...]:
    if len(size) == 1 and isinstance(size[0], (tuple, list)):
        size = tuple(size[0])
    return tuple(int(s) for s in size)


def zeros(*size, dtype=np.float32) -> Tensor:
    return Tensor._wrap(np.zeros(_size(size), dtype=dtype))


def ones(*size, dtype=np.float32) -> Tensor:
    return Tensor._wrap(np.ones(_size(size), dtype=dtype))


def full(size: Sequence[int], fill_value: Scalar, dtype=np.float32) -> Tensor:
    return Tensor._wrap(np.full(tuple(size), fill_value, dtype=dtype))


# ═════════════════════════════════════════════════════════════════════
#  Elementwise algebra
# ═════════════════════════════════════════════════════════════════════

def _check_same_shape(operation: str, *tensors: Tensor) -> None:
    first = tensors[0]._data.shape
    for t in tensors[1:]:
        if t._data.shape != first:
            raise ShapeMismatch(operation, *(x._data.shape for x in tensors))


def add(a: Tensor, b: Tensor) -> Tensor:
    _check_same_shape('add', a, b)
    return Tensor._wrap(np.add(a._data, b._data, dtype=np.float32))


def subtract(a: Tensor, b: Tensor) -> Tensor:
    _check_same_shape('subtract', a, b)
    return Tensor._wrap(np.subtract(a._data, b._data, dtype=np.float32))


def multiply(a: Tensor, b: Tensor) -> Tensor:
    _check_same_shape('multiply', a, b)
    return Tensor._wrap(np.multiply(a._data, b._data, dtype=np.float32))


def scale(a: Tensor, k: Scalar) -> Tensor:
    return Tensor._wrap(np.multiply(a._data, np.float32(k), dtype=np.float32))


def repeat(a: Tensor, n: int, axis: int = 0) -> Tensor:
    """Duplicate *a* ``n`` times along *axis* (batch axis by default).

    ``repeat(x, 2)`` of a ``[1, 4, 64, 64]`` tensor gives ``[2, 4, 64, 64]``
    whose halves are both ``x``; this is how the guidance batch is built.
    """
    if n < 1:
        raise ValueError(f"repeat count must be >= 1, got {n}")
    reps = [1] * a.ndim
    reps[axis] = n
    return Tensor._wrap(np.tile(a._data, reps))


def split(a: Tensor, parts: int = 2, axis: int = 0) -> tuple[Tensor, ...]:
    """Inverse of :func:`repeat`: cut *a* into ``parts`` equal slices.

    For a guidance batch the first half is the unconditional prediction
    and the second the conditional one.
    """
    length = a._data.shape[axis]
    if parts < 1 or length % parts:
        raise ShapeMismatch(f'split into {parts}', a._data.shape)
    return tuple(Tensor._wrap(chunk.copy())
                 for chunk in np.split(a._data, parts, axis=axis))


def concat(tensors: Sequence[Tensor], axis: int = 0) -> Tensor:
    """Concatenate along *axis*; every other dimension must agree."""
    if not tensors:
        raise ValueError("concat needs at least one tensor")
    ref = list(tensors[0]._data.shape)
    for t in tensors[1:]:
        other = list(t._data.shape)
        if len(other) != len(ref) or any(
                r != o for i, (r, o) in enumerate(zip(ref, other))
                if i != axis % len(ref)):
            raise ShapeMismatch('concat', *(x._data.shape for x in tensors))
    return Tensor._wrap(np.concatenate([t._data for t in tensors], axis=axis))


def lerp_guidance(uncond: Tensor, cond: Tensor,
                  guidance_scale: float) -> Tensor:
    """``uncond + guidance_scale * (cond - uncond)``."""
    _check_same_shape('lerp_guidance', uncond, cond)
    diff = np.subtract(cond._data, uncond._data, dtype=np.float32)
    out = uncond._data + np.float32(guidance_scale) * diff
    return Tensor._wrap(out.astype(np.float32, copy=False))


def perform_guidance(noise_pred: Tensor, guidance_scale: float) -> Tensor:
    """Split a doubled-batch prediction and apply classifier-free guidance."""
    uncond, cond = split(noise_pred, 2)
    return lerp_guidance(uncond, cond, guidance_scale)


def blend_masked(step_latents: Tensor, original_latents: Tensor,
                 keep_mask: Tensor) -> Tensor:
    """``original * keep_mask + step * (1 - keep_mask)``, elementwise."""
    _check_same_shape('blend_masked', step_latents, original_latents, keep_mask)
    keep = keep_mask._data
    out = (original_latents._data * keep
           + step_latents._data * (np.float32(1.0) - keep))
    return Tensor._wrap(out.astype(np.float32, copy=False))


__all__ = [
    'Tensor',
    'tensor', 'zeros', 'ones', 'full',
    'add', 'subtract', 'multiply', 'scale',
    'repeat', 'split', 'concat',
    'lerp_guidance', 'perform_guidance', 'blend_masked',
]
