# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Caller-facing generation service.

``StableDiffusionService`` wires the external collaborators to the
diffuser registry and exposes ``generate`` (blocking), ``generate_async``
(awaitable) and ``generate_batch`` (lazy sweep).
"""
from __future__ import annotations

import asyncio
from typing import Any, Iterator, Optional, Union

from diffusekit.tensor import Tensor
from diffusekit.utils import setup_logger
from .batch import BatchController, BatchResult, BatchSweep
from .engine import ImageCodec, InferenceEngine, PromptProvider
from .models import ModelOptions
from .options import BatchErrorPolicy, BatchOptions, PromptOptions, SchedulerOptions
from .pipelines import DiffuserBase, DiffusionResult, get_diffuser
from .progress import CancellationToken, ProgressCallback

logger = setup_logger(__name__)


class StableDiffusionService:
    """Entry point for callers (UI, CLI, web handlers).

    Args:
        engine:          Inference engine shared by every generation.
        prompt_provider: Prompt encoder.
        image_codec:     Image conversion provider.
    """

    def __init__(self, engine: InferenceEngine, prompt_provider: PromptProvider,
                 image_codec: ImageCodec):
        self.engine = engine
        self.prompt_provider = prompt_provider
        self.image_codec = image_codec

    def get_diffuser(self, model_options: ModelOptions,
                     prompt_options: PromptOptions) -> DiffuserBase:
        return get_diffuser(model_options.pipeline_type, prompt_options.diffuser_type,
                            self.engine, self.prompt_provider, self.image_codec)

    def generate_result(
        self,
        model_options: ModelOptions,
        prompt_options: PromptOptions,
        scheduler_options: Optional[SchedulerOptions] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> DiffusionResult:
        """Like ``generate`` but also returns the effective options and final latents."""
        scheduler_options = scheduler_options or SchedulerOptions()
        diffuser = self.get_diffuser(model_options, prompt_options)
        return diffuser.run(model_options, prompt_options, scheduler_options,
                            progress_callback, cancellation)

    def generate(
        self,
        model_options: ModelOptions,
        prompt_options: PromptOptions,
        scheduler_options: Optional[SchedulerOptions] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> Tensor:
        """Generate one image tensor ``[1, 3, H, W]`` in ``[-1, 1]``."""
        return self.generate_result(model_options, prompt_options, scheduler_options,
                                    progress_callback, cancellation).image

    async def generate_async(
        self,
        model_options: ModelOptions,
        prompt_options: PromptOptions,
        scheduler_options: Optional[SchedulerOptions] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> Tensor:
        """Await ``generate`` on a worker thread.

        Progress callbacks fire on that worker thread.
        """
        return await asyncio.to_thread(
            self.generate, model_options, prompt_options, scheduler_options,
            progress_callback, cancellation,
        )

    def generate_image(self, model_options: ModelOptions, prompt_options: PromptOptions,
                       scheduler_options: Optional[SchedulerOptions] = None,
                       progress_callback: Optional[ProgressCallback] = None,
                       cancellation: Optional[CancellationToken] = None) -> Any:
        """``generate`` followed by the codec's ``decode_image``."""
        image = self.generate(model_options, prompt_options, scheduler_options,
                              progress_callback, cancellation)
        return self.image_codec.decode_image(image)

    def generate_batch(
        self,
        model_options: ModelOptions,
        prompt_options: PromptOptions,
        scheduler_options: Optional[SchedulerOptions],
        sweep: Union[BatchSweep, BatchOptions],
        progress_callback: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
        error_policy: BatchErrorPolicy = BatchErrorPolicy.ABORT,
    ) -> Iterator[BatchResult]:
        """Lazily yield one ``BatchResult`` (unpacks as ``(image, options)``) per combination."""
        scheduler_options = scheduler_options or SchedulerOptions()
        if isinstance(sweep, BatchOptions):
            sweep = BatchSweep.from_batch_options(sweep)
        diffuser = self.get_diffuser(model_options, prompt_options)
        controller = BatchController(diffuser, error_policy)
        return controller.run(model_options, prompt_options, scheduler_options,
                              sweep, progress_callback, cancellation)


__all__ = ['StableDiffusionService']
