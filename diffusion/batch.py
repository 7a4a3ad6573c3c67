# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Batch controller — lazy parameter sweeps.

A ``BatchSweep`` lists values for each sweepable parameter.  Its
combinations are the cartesian product in declaration order, the first
parameter varying slowest::

    sweep = BatchSweep(seeds=[1, 2], guidance_scales=[5.0, 7.0])
    # (1, 5.0), (1, 7.0), (2, 5.0), (2, 7.0)

Each combination runs an independent generation with its own session
and scheduler.  Results are produced lazily, one per combination.
"""
from __future__ import annotations

import itertools
import math
from dataclasses import dataclass, field, replace
from typing import Iterator, Optional, Sequence

from diffusekit.errors import DiffusionCancelled, DiffusionError
from diffusekit.tensor import Tensor
from diffusekit.utils import setup_logger
from .models import ModelOptions
from .options import (
    BatchErrorPolicy,
    BatchOptions,
    BatchType,
    OptionsABC,
    PromptOptions,
    SchedulerOptions,
    SchedulerType,
)
from .pipelines import DiffuserBase
from .progress import CancellationToken, ProgressCallback
from .utils import new_seed

logger = setup_logger(__name__)

# (sweep field, SchedulerOptions field) in nesting order, outermost first
SWEEP_AXES = (
    ('seeds', 'seed'),
    ('guidance_scales', 'guidance_scale'),
    ('inference_steps', 'inference_steps'),
    ('dimensions', 'dimensions'),
    ('strengths', 'strength'),
    ('scheduler_types', 'scheduler_type'),
)


@dataclass
class BatchSweep(OptionsABC):
    r"""Value lists per parameter; an empty list keeps the base option."""

    seeds: list[int] = field(
        default_factory=list,
        metadata={"help": "Seeds to sweep."},
    )
    guidance_scales: list[float] = field(
        default_factory=list,
        metadata={"help": "Guidance scales to sweep."},
    )
    inference_steps: list[int] = field(
        default_factory=list,
        metadata={"help": "Step counts to sweep."},
    )
    dimensions: list[tuple[int, int]] = field(
        default_factory=list,
        metadata={"help": "(width, height) pairs to sweep."},
    )
    strengths: list[float] = field(
        default_factory=list,
        metadata={"help": "Strengths to sweep."},
    )
    scheduler_types: list[SchedulerType] = field(
        default_factory=list,
        metadata={"help": "Scheduler algorithms to sweep."},
    )

    def __post_init__(self):
        self.dimensions = [tuple(d) for d in self.dimensions]
        self.scheduler_types = [SchedulerType(s) for s in self.scheduler_types]
        for width, height in self.dimensions:
            if width <= 0 or height <= 0:
                raise ValueError(f"Invalid dimensions ({width}, {height})")

    def _axes(self) -> list[tuple[str, list]]:
        return [(target, getattr(self, name)) for name, target in SWEEP_AXES
                if getattr(self, name)]

    def __len__(self) -> int:
        return math.prod(len(values) for _, values in self._axes())

    def combinations(self, base: SchedulerOptions) -> Iterator[SchedulerOptions]:
        """Lazily yield one options copy per combination."""
        axes = self._axes()
        for combo in itertools.product(*(values for _, values in axes)):
            changes = {}
            for (target, _), value in zip(axes, combo):
                if target == 'dimensions':
                    changes['width'], changes['height'] = value
                else:
                    changes[target] = value
            yield replace(base, **changes)

    @classmethod
    def from_batch_options(cls, batch_options: BatchOptions,
                           scheduler_types: Optional[Sequence[SchedulerType]] = None
                           ) -> 'BatchSweep':
        """Convert a from/to/increment batch into a single-axis sweep.

        Seed batches draw ``batch_count`` fresh seeds.  Scheduler batches
        run *scheduler_types*, or every non-LCM scheduler.
        """
        kind = batch_options.batch_type
        if kind is BatchType.SEED:
            return cls(seeds=[new_seed() for _ in range(batch_options.batch_count)])
        if kind is BatchType.SCHEDULER:
            if scheduler_types is None:
                scheduler_types = [s for s in SchedulerType if s is not SchedulerType.LCM]
            return cls(scheduler_types=list(scheduler_types))

        values = _inclusive_range(batch_options.value_from, batch_options.value_to,
                                  batch_options.increment)
        if kind is BatchType.STEP:
            return cls(inference_steps=[int(v) for v in values])
        if kind is BatchType.GUIDANCE:
            return cls(guidance_scales=values)
        return cls(strengths=values)


def _inclusive_range(start: float, stop: float, step: float) -> list[float]:
    count = int(math.floor((stop - start) / step + 1e-9)) + 1
    return [round(start + i * step, 6) for i in range(count)]


class BatchResult:
    """One combination's outcome; unpacks as ``(image, options)``.

    ``image`` is ``None`` and ``error`` is set when the combination failed
    under ``BatchErrorPolicy.CONTINUE``.
    """

    __slots__ = ('image', 'options', 'index', 'error')

    def __init__(self, image: Optional[Tensor], options: SchedulerOptions,
                 index: int, error: Optional[Exception] = None):
        self.image = image
        self.options = options
        self.index = index
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None

    def __iter__(self):
        return iter((self.image, self.options))

    def __repr__(self) -> str:
        status = 'ok' if self.ok else f'error={self.error!r}'
        return f"BatchResult(index={self.index}, seed={self.options.seed}, {status})"


class BatchController:
    """Runs a sweep through one diffuser.

    Args:
        diffuser:     Diffuser variant to run per combination.
        error_policy: ``ABORT`` re-raises the first failure; ``CONTINUE``
                      yields it as a failed ``BatchResult`` and moves on.
    """

    def __init__(self, diffuser: DiffuserBase,
                 error_policy: BatchErrorPolicy = BatchErrorPolicy.ABORT):
        self.diffuser = diffuser
        self.error_policy = BatchErrorPolicy(error_policy)

    def run(
        self,
        model_options: ModelOptions,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptions,
        sweep: BatchSweep,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> Iterator[BatchResult]:
        count = len(sweep)
        logger.info(f"Batch start: {count} combination(s), policy {self.error_policy.value}")
        for index, options in enumerate(sweep.combinations(scheduler_options), start=1):
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            try:
                result = self.diffuser.run(
                    model_options, prompt_options, options,
                    progress_callback, cancellation, index, count,
                )
            except DiffusionCancelled:
                raise
            except (DiffusionError, ValueError) as exc:
                if self.error_policy is BatchErrorPolicy.ABORT:
                    raise
                logger.warning(f"Batch {index}/{count} failed: {exc}")
                yield BatchResult(None, options, index, exc)
                continue
            yield BatchResult(result.image, result.options, index)
        logger.info(f"Batch complete: {count} combination(s)")


__all__ = [
    'SWEEP_AXES',
    'BatchSweep',
    'BatchResult',
    'BatchController',
]
