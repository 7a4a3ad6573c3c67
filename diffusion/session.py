# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Per-generation working set."""
from __future__ import annotations

from typing import Any, Optional

import numpy as np

from diffusekit.tensor import Tensor
from diffusekit.utils import setup_logger
from .engine import PromptEmbeddings
from .models import ModelOptions
from .options import PromptOptions, SchedulerOptions
from .schedulers import SchedulerBase

logger = setup_logger(__name__)


class DiffusionSession:
    """Everything one generation holds: options, scheduler, tensors, step.

    Created per generation and closed on every exit path, which disposes
    the scheduler and drops every tensor reference.  A session is never
    shared between concurrent generations.

    Args:
        model_options:     Model set being run.
        prompt_options:    Prompt text and input images.
        scheduler_options: Effective options (seed already resolved).
        scheduler:         Uninitialised scheduler owned by this session.
        generator:         Seeded generator shared with the scheduler.
        perform_guidance:  Whether the loop runs classifier-free guidance.
    """

    def __init__(self, model_options: ModelOptions, prompt_options: PromptOptions,
                 scheduler_options: SchedulerOptions, scheduler: SchedulerBase,
                 generator: np.random.Generator, perform_guidance: bool):
        self.model_options = model_options
        self.prompt_options = prompt_options
        self.scheduler_options = scheduler_options
        self.scheduler = scheduler
        self.generator = generator
        self.perform_guidance = perform_guidance

        self.timesteps: list[int] = []
        self.prompt_embeddings: Optional[PromptEmbeddings] = None
        self.latents: Optional[Tensor] = None
        self.original_latents: Optional[Tensor] = None
        self.noise: Optional[Tensor] = None
        self.mask: Optional[Tensor] = None
        self.keep_mask: Optional[Tensor] = None
        self.masked_latents: Optional[Tensor] = None
        self.conditioning: dict[str, Any] = {}
        self.step = 0
        self._closed = False

    @property
    def seed(self) -> Optional[int]:
        return self.scheduler_options.seed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def latent_dimensions(self) -> tuple[int, int, int, int]:
        return self.scheduler_options.latent_dimensions(
            1, self.model_options.latent_channels
        )

    def close(self) -> None:
        if self._closed:
            return
        self.scheduler.dispose()
        self.prompt_embeddings = None
        self.latents = None
        self.original_latents = None
        self.noise = None
        self.mask = None
        self.keep_mask = None
        self.masked_latents = None
        self.conditioning = {}
        self._closed = True
        logger.debug(f"Session closed after {self.step} step(s)")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


__all__ = ['DiffusionSession']
