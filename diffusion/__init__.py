# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""diffusekit.diffusion — schedulers, diffusers, batches and the service.

Usage::

    from diffusekit.diffusion import (
        StableDiffusionService,
        SchedulerOptions,
        PromptOptions,
        SchedulerType,
        stable_diffusion,
    )

    service = StableDiffusionService(engine, prompt_provider, image_codec)
    image = service.generate(
        stable_diffusion(),
        PromptOptions(prompt="a lighthouse at dusk"),
        SchedulerOptions(scheduler_type=SchedulerType.DDIM, inference_steps=20, seed=7),
    )
"""
from __future__ import annotations

# ── Options ──
from .options import (
    LATENT_SCALE,
    SchedulerType,
    DiffuserType,
    PipelineType,
    ModelType,
    BatchType,
    BatchErrorPolicy,
    SchedulerOptions,
    PromptOptions,
    BatchOptions,
)

# ── Models ──
from .models import (
    ModelComponent,
    ModelOptions,
    stable_diffusion,
    stable_diffusion_xl,
    latent_consistency,
    latent_consistency_xl,
    from_template,
)

# ── Schedulers ──
from .schedulers import (
    SchedulerBase,
    DDPMScheduler,
    DDIMScheduler,
    LCMScheduler,
    EulerDiscreteScheduler,
    EulerAncestralDiscreteScheduler,
    LMSDiscreteScheduler,
    KDPM2DiscreteScheduler,
    get_scheduler,
)

# ── Collaborators & progress ──
from .engine import InferenceEngine, PromptEmbeddings, PromptProvider, ImageCodec
from .progress import DiffusionProgress, CancellationToken
from .session import DiffusionSession

# ── Diffusers ──
from .pipelines import (
    DiffusionResult,
    DiffuserBase,
    TextToImageDiffuser,
    ImageToImageDiffuser,
    InpaintDiffuser,
    InpaintLegacyDiffuser,
    ControlNetDiffuser,
    ControlNetImageDiffuser,
    get_diffuser,
)

# ── Batch & service ──
from .batch import BatchSweep, BatchResult, BatchController
from .service import StableDiffusionService

__all__ = [
    # Options
    'LATENT_SCALE',
    'SchedulerType',
    'DiffuserType',
    'PipelineType',
    'ModelType',
    'BatchType',
    'BatchErrorPolicy',
    'SchedulerOptions',
    'PromptOptions',
    'BatchOptions',
    # Models
    'ModelComponent',
    'ModelOptions',
    'stable_diffusion',
    'stable_diffusion_xl',
    'latent_consistency',
    'latent_consistency_xl',
    'from_template',
    # Schedulers
    'SchedulerBase',
    'DDPMScheduler',
    'DDIMScheduler',
    'LCMScheduler',
    'EulerDiscreteScheduler',
    'EulerAncestralDiscreteScheduler',
    'LMSDiscreteScheduler',
    'KDPM2DiscreteScheduler',
    'get_scheduler',
    # Collaborators & progress
    'InferenceEngine',
    'PromptEmbeddings',
    'PromptProvider',
    'ImageCodec',
    'DiffusionProgress',
    'CancellationToken',
    'DiffusionSession',
    # Diffusers
    'DiffusionResult',
    'DiffuserBase',
    'TextToImageDiffuser',
    'ImageToImageDiffuser',
    'InpaintDiffuser',
    'InpaintLegacyDiffuser',
    'ControlNetDiffuser',
    'ControlNetImageDiffuser',
    'get_diffuser',
    # Batch & service
    'BatchSweep',
    'BatchResult',
    'BatchController',
    'StableDiffusionService',
]
