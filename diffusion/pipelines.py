# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Diffuser orchestrators — the per-variant denoising loop.

Every diffuser runs the same template (``DiffuserBase.run``):

1. Resolve the seed and build a session-owned scheduler.
2. Resolve the visited timesteps (strength-aware for image variants).
3. Encode the prompt, prepare the initial latents and the extra
   conditioning tensors.
4. For each timestep: poll cancellation, build the guidance batch,
   run the UNet once, combine guidance, step the scheduler, apply the
   variant's post-step hook, emit progress.
5. Decode the final latents through the VAE decoder.

Variants override only the hooks of steps 2–4:

- **TextToImageDiffuser** — random initial latents.
- **ImageToImageDiffuser** — VAE-encoded image noised to the first visited timestep.
- **InpaintDiffuser** — 9-channel UNet input (latents ‖ mask ‖ masked-image latents).
- **InpaintLegacyDiffuser** — image-to-image plus per-step re-noised blend of the kept region.
- **ControlNetDiffuser** / **ControlNetImageDiffuser** — control image fed to a ControlNet UNet.

Pipeline families differ only in the extra UNet inputs, supplied by a
``Conditioning`` strategy (SD, SDXL, LCM, LCM-XL).
"""
from __future__ import annotations

import abc
import time
import numpy as np
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Sequence, Union

from diffusekit.errors import DiffusionCancelled, DiffusionError, InferenceError
from diffusekit.tensor import (
    Tensor,
    blend_masked,
    concat,
    ones,
    perform_guidance,
    repeat,
    subtract,
)
from diffusekit.utils import elapsed_ms, setup_logger

from .engine import ImageCodec, InferenceEngine, PromptProvider
from .models import ModelComponent, ModelOptions
from .options import DiffuserType, PipelineType, PromptOptions, SchedulerOptions
from .progress import CancellationToken, DiffusionProgress, ProgressCallback
from .schedulers import get_scheduler
from .session import DiffusionSession
from .utils import (
    guidance_scale_embedding,
    new_seed,
    randn_tensor,
    sdxl_time_ids,
    timestep_tensor,
)

logger = setup_logger(__name__)

# Tensor names of the exported graphs
UNET_OUTPUT = 'out_sample'
VAE_ENCODER_INPUT = 'sample'
VAE_ENCODER_OUTPUT = 'latent_sample'
VAE_DECODER_INPUT = 'latent_sample'
VAE_DECODER_OUTPUT = 'sample'


@dataclass(frozen=True)
class DiffusionResult:
    """Decoded image plus the effective options that produced it."""

    image: Tensor
    options: SchedulerOptions
    latents: Tensor
    steps: int


def resolve_seed(options: SchedulerOptions) -> SchedulerOptions:
    """Copy of *options* with a concrete seed; 0 / ``None`` draws a fresh one."""
    if options.seed:
        return options
    return replace(options, seed=new_seed())


# ═════════════════════════════════════════════════════════════════════
#  Conditioning strategies
# ═════════════════════════════════════════════════════════════════════

class Conditioning:
    """Extra UNet inputs of a pipeline family, fixed for a whole generation."""

    pipeline_type: PipelineType = PipelineType.STABLE_DIFFUSION

    #: Whether the family runs classifier-free guidance at all.
    supports_guidance: bool = True

    def inputs(self, session: DiffusionSession) -> dict[str, Tensor]:
        return {'encoder_hidden_states': session.prompt_embeddings.prompt_embeds}


class StableDiffusionConditioning(Conditioning):
    pipeline_type = PipelineType.STABLE_DIFFUSION


class StableDiffusionXLConditioning(Conditioning):
    """Adds the pooled text embedding and ``time_ids``."""

    pipeline_type = PipelineType.STABLE_DIFFUSION_XL

    def inputs(self, session):
        inputs = super().inputs(session)
        pooled = session.prompt_embeddings.pooled_prompt_embeds
        if pooled is None:
            raise ValueError(
                f"{self.pipeline_type.value} requires a pooled prompt embedding"
            )
        options = session.scheduler_options
        batch = 2 if session.perform_guidance else 1
        aesthetic = options.aesthetic_score if session.model_options.is_refiner else None
        inputs['text_embeds'] = pooled
        inputs['time_ids'] = sdxl_time_ids(options.height, options.width, batch, aesthetic)
        return inputs


def _guidance_embedding(session: DiffusionSession) -> dict[str, Tensor]:
    return {'timestep_cond': guidance_scale_embedding(session.scheduler_options.guidance_scale)}


class LatentConsistencyConditioning(Conditioning):
    """Replaces classifier-free guidance with a guidance-scale embedding."""

    pipeline_type = PipelineType.LATENT_CONSISTENCY
    supports_guidance = False

    def inputs(self, session):
        inputs = super().inputs(session)
        inputs.update(_guidance_embedding(session))
        return inputs


class LatentConsistencyXLConditioning(StableDiffusionXLConditioning):
    pipeline_type = PipelineType.LATENT_CONSISTENCY_XL
    supports_guidance = False

    def inputs(self, session):
        inputs = super().inputs(session)
        inputs.update(_guidance_embedding(session))
        return inputs


CONDITIONING: dict[PipelineType, type[Conditioning]] = {
    PipelineType.STABLE_DIFFUSION: StableDiffusionConditioning,
    PipelineType.STABLE_DIFFUSION_XL: StableDiffusionXLConditioning,
    PipelineType.LATENT_CONSISTENCY: LatentConsistencyConditioning,
    PipelineType.LATENT_CONSISTENCY_XL: LatentConsistencyXLConditioning,
}


# ═════════════════════════════════════════════════════════════════════
#  DiffuserBase — shared template
# ═════════════════════════════════════════════════════════════════════

class DiffuserBase(abc.ABC):
    """Base class for diffuser variants.

    Provides:
    - ``run`` — the whole generation for one option set.
    - ``encode_latents`` / ``decode_latents`` — VAE round trips.
    - hooks ``validate``, ``get_timesteps``, ``prepare_latents``,
      ``prepare_conditioning``, ``compose_model_input``, ``post_step``.

    Args:
        engine:          Executes the UNet / VAE graphs.
        prompt_provider: Text encoder front-end.
        image_codec:     Image ↔ tensor conversion.
        conditioning:    Pipeline-family conditioning strategy.
    """

    diffuser_type: DiffuserType
    model_component: ModelComponent = ModelComponent.UNET

    def __init__(self, engine: InferenceEngine, prompt_provider: PromptProvider,
                 image_codec: ImageCodec, conditioning: Optional[Conditioning] = None):
        self.engine = engine
        self.prompt_provider = prompt_provider
        self.image_codec = image_codec
        self.conditioning = conditioning or StableDiffusionConditioning()

    # ---- template ----

    def run(
        self,
        model_options: ModelOptions,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptions,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
        batch_index: Optional[int] = None,
        batch_count: Optional[int] = None,
    ) -> DiffusionResult:
        """Run one generation.

        Returns:
            ``DiffusionResult`` whose ``image`` is the clipped
            ``[1, 3, H, W]`` VAE output in ``[-1, 1]``.

        Raises:
            ValueError:          invalid inputs, or a strength that visits no step.
            DiffusionCancelled:  cancellation observed before a step.
            InferenceError:      the engine failed or returned a bad tensor.
        """
        if not model_options.supports(self.diffuser_type):
            raise ValueError(
                f"Model '{model_options.name}' does not support {self.diffuser_type.value}"
            )
        self.validate(prompt_options)

        options = resolve_seed(scheduler_options)
        guidance = self.conditioning.supports_guidance and options.guidance_scale > 1.0
        generator = np.random.default_rng(options.seed)
        scheduler = get_scheduler(options.scheduler_type, generator)

        logger.info(
            f"Diffuse start: {self.diffuser_type.value}, "
            f"{options.scheduler_type.value}, seed {options.seed}, "
            f"{options.inference_steps} steps, guidance {options.guidance_scale}"
        )
        start = time.perf_counter()
        try:
            with DiffusionSession(model_options, prompt_options, options,
                                  scheduler, generator, guidance) as session:
                timesteps = scheduler.initialize(options)
                session.timesteps = list(self.get_timesteps(session, timesteps))
                if not session.timesteps:
                    raise ValueError(
                        f"strength {options.strength} with {options.inference_steps} "
                        f"steps visits no timestep"
                    )

                session.prompt_embeddings = self.prompt_provider.encode(
                    model_options, prompt_options, guidance
                )
                session.latents = self.prepare_latents(session)
                session.conditioning = {
                    **self.conditioning.inputs(session),
                    **self.prepare_conditioning(session),
                }

                self._denoise(session, progress_callback, cancellation,
                              batch_index, batch_count)

                if cancellation is not None:
                    cancellation.raise_if_cancelled(session.step)
                image = self.decode_latents(session)
                result = DiffusionResult(image, options, session.latents, session.step)
        except DiffusionCancelled as exc:
            logger.info(f"Diffuse cancelled after {exc.completed_steps} step(s)")
            raise

        logger.info(f"Diffuse complete: {result.steps} steps in {elapsed_ms(start):.0f} ms")
        return result

    def _denoise(self, session: DiffusionSession,
                 progress_callback: Optional[ProgressCallback],
                 cancellation: Optional[CancellationToken],
                 batch_index: Optional[int], batch_count: Optional[int]) -> None:
        scheduler = session.scheduler
        options = session.scheduler_options
        total = len(session.timesteps)

        for i, timestep in enumerate(session.timesteps):
            if cancellation is not None:
                cancellation.raise_if_cancelled(i)
            step_start = time.perf_counter()

            latents = session.latents
            model_input = repeat(latents, 2) if session.perform_guidance else latents
            expected = model_input.shape
            model_input = scheduler.scale_input(model_input, timestep)
            model_input = self.compose_model_input(session, model_input)

            inputs = {
                'sample': model_input,
                'timestep': timestep_tensor(timestep),
                **session.conditioning,
            }
            noise_pred = self.run_model(session.model_options, self.model_component,
                                        inputs, UNET_OUTPUT, expected)
            if session.perform_guidance:
                noise_pred = perform_guidance(noise_pred, options.guidance_scale)

            step_latents = scheduler.step(noise_pred, timestep, latents)
            session.latents = self.post_step(session, timestep, step_latents)
            session.step = i + 1

            step_ms = elapsed_ms(step_start)
            logger.debug(f"Step {i + 1}/{total} ({step_ms:.1f} ms)")
            if progress_callback is not None:
                progress_callback(DiffusionProgress(
                    step=i + 1, total=total, latents=session.latents, elapsed_ms=step_ms,
                    batch_index=batch_index, batch_count=batch_count, timestep=timestep,
                ))

    # ---- engine access ----

    def run_model(self, model_options: ModelOptions, component: ModelComponent,
                  inputs: Mapping[str, Tensor], output_name: str,
                  expected_shape: Optional[Sequence[int]] = None) -> Tensor:
        """Run one graph and return its *output_name* tensor.

        Engine failures other than ``DiffusionError`` are wrapped in
        ``InferenceError``; a missing output or a shape other than
        *expected_shape* is reported against the output name.
        """
        model_id = model_options.model_id(component)
        try:
            outputs = self.engine.run(model_id, inputs)
        except DiffusionError:
            raise
        except Exception as exc:
            logger.error(f"Inference failed on {model_id}: {exc}")
            raise InferenceError(model_id, f"engine error: {exc}") from exc

        if output_name not in outputs:
            logger.error(f"Inference on {model_id} returned no '{output_name}'")
            raise InferenceError(model_id, "missing output", output_name)
        output = outputs[output_name]
        if not isinstance(output, Tensor):
            output = Tensor(output)
        if expected_shape is not None and output.shape != tuple(expected_shape):
            logger.error(f"Inference on {model_id} returned shape {list(output.shape)}")
            raise InferenceError(
                model_id,
                f"expected shape {list(expected_shape)}, got {list(output.shape)}",
                output_name,
            )
        return output

    def encode_latents(self, session: DiffusionSession, pixels: Tensor) -> Tensor:
        """VAE-encode *pixels* and apply the model scale factor."""
        latents = self.run_model(session.model_options, ModelComponent.VAE_ENCODER,
                                 {VAE_ENCODER_INPUT: pixels}, VAE_ENCODER_OUTPUT)
        return latents.multiply_by(session.model_options.scale_factor)

    def decode_latents(self, session: DiffusionSession) -> Tensor:
        """Decode the session latents through the VAE decoder."""
        latents = session.latents.multiply_by(1.0 / session.model_options.scale_factor)
        image = self.run_model(session.model_options, ModelComponent.VAE_DECODER,
                               {VAE_DECODER_INPUT: latents}, VAE_DECODER_OUTPUT)
        return Tensor._wrap(np.clip(image.numpy(), -1.0, 1.0).astype(np.float32))

    def random_noise(self, session: DiffusionSession, dimensions: Sequence[int]) -> Tensor:
        """Unit noise from the session generator."""
        return randn_tensor(dimensions, session.generator)

    # ---- hooks ----

    def validate(self, prompt_options: PromptOptions) -> None:
        pass

    def get_timesteps(self, session: DiffusionSession, timesteps: list[int]) -> list[int]:
        return timesteps

    @abc.abstractmethod
    def prepare_latents(self, session: DiffusionSession) -> Tensor:
        ...

    def prepare_conditioning(self, session: DiffusionSession) -> dict[str, Tensor]:
        return {}

    def compose_model_input(self, session: DiffusionSession, model_input: Tensor) -> Tensor:
        return model_input

    def post_step(self, session: DiffusionSession, timestep: int, latents: Tensor) -> Tensor:
        return latents


def _require(prompt_options: PromptOptions, diffuser_type: DiffuserType, *names: str) -> None:
    missing = [n for n in names if getattr(prompt_options, n) is None]
    if missing:
        raise ValueError(f"{diffuser_type.value} requires {', '.join(missing)}")


# ═════════════════════════════════════════════════════════════════════
#  Variants
# ═════════════════════════════════════════════════════════════════════

class TextToImageDiffuser(DiffuserBase):
    diffuser_type = DiffuserType.TEXT_TO_IMAGE

    def prepare_latents(self, session):
        return session.scheduler.create_random_sample(
            session.latent_dimensions, session.scheduler_options.initial_noise_level
        )


class ImageToImageDiffuser(DiffuserBase):
    """Walks the last ``strength`` fraction of the schedule from a noised image."""

    diffuser_type = DiffuserType.IMAGE_TO_IMAGE

    def validate(self, prompt_options):
        _require(prompt_options, self.diffuser_type, 'input_image')

    def get_timesteps(self, session, timesteps):
        options = session.scheduler_options
        steps = options.inference_steps
        init_timestep = min(round(steps * options.strength), steps)
        start = max(steps - init_timestep, 0) * session.scheduler.order
        return timesteps[start:]

    def prepare_latents(self, session):
        pixels = self.image_codec.encode_image(session.prompt_options.input_image,
                                               session.scheduler_options)
        original = self.encode_latents(session, pixels)
        noise = self.random_noise(session, original.shape)
        session.original_latents = original
        session.noise = noise
        return session.scheduler.add_noise(original, noise, [session.timesteps[0]])


class InpaintDiffuser(TextToImageDiffuser):
    """Inpainting with a 9-channel UNet.

    The UNet input is the scaled latents concatenated on the channel axis
    with the latent-resolution mask and the latents of the masked image.
    """

    diffuser_type = DiffuserType.IMAGE_INPAINT

    def validate(self, prompt_options):
        _require(prompt_options, self.diffuser_type, 'input_image', 'input_image_mask')

    def prepare_conditioning(self, session):
        options = session.scheduler_options
        prompt = session.prompt_options
        session.mask = self.image_codec.rasterize_mask(
            prompt.input_image_mask, options.latent_height, options.latent_width
        )
        masked_pixels = self.image_codec.encode_masked_image(
            prompt.input_image, prompt.input_image_mask, options
        )
        session.masked_latents = self.encode_latents(session, masked_pixels)
        return {}

    def compose_model_input(self, session, model_input):
        batch = model_input.shape[0]
        return concat([
            model_input,
            repeat(session.mask, batch),
            repeat(session.masked_latents, batch),
        ], axis=1)


class InpaintLegacyDiffuser(ImageToImageDiffuser):
    """Image-to-image that re-imposes the kept region after every step.

    After each scheduler step the original latents are re-noised to the
    current timestep and blended back wherever the mask is 0, so only
    the masked region is generated.
    """

    diffuser_type = DiffuserType.IMAGE_INPAINT_LEGACY

    def validate(self, prompt_options):
        _require(prompt_options, self.diffuser_type, 'input_image', 'input_image_mask')

    def prepare_conditioning(self, session):
        options = session.scheduler_options
        channels = session.model_options.latent_channels
        mask = self.image_codec.rasterize_mask(
            session.prompt_options.input_image_mask,
            options.latent_height, options.latent_width,
        )
        session.mask = repeat(mask, channels, axis=1)
        session.keep_mask = subtract(ones(*session.mask.shape), session.mask)
        return {}

    def post_step(self, session, timestep, latents):
        renoised = session.scheduler.add_noise(
            session.original_latents, session.noise, [timestep]
        )
        return blend_masked(latents, renoised, session.keep_mask)


class _ControlNetMixin:
    """Feeds the control image and residual scale to the ControlNet UNet."""

    model_component = ModelComponent.CONTROLNET

    def validate(self, prompt_options):
        super().validate(prompt_options)
        _require(prompt_options, self.diffuser_type, 'input_control_image')

    def prepare_conditioning(self, session):
        conditioning = super().prepare_conditioning(session)
        control = self.image_codec.encode_control_image(
            session.prompt_options.input_control_image, session.scheduler_options
        )
        if session.perform_guidance:
            control = repeat(control, 2)
        conditioning['controlnet_cond'] = control
        conditioning['conditioning_scale'] = Tensor(
            [session.scheduler_options.conditioning_scale]
        )
        return conditioning


class ControlNetDiffuser(_ControlNetMixin, TextToImageDiffuser):
    diffuser_type = DiffuserType.CONTROLNET


class ControlNetImageDiffuser(_ControlNetMixin, ImageToImageDiffuser):
    diffuser_type = DiffuserType.CONTROLNET_IMAGE


# ═════════════════════════════════════════════════════════════════════
#  Registry
# ═════════════════════════════════════════════════════════════════════

DIFFUSERS: dict[DiffuserType, type[DiffuserBase]] = {
    DiffuserType.TEXT_TO_IMAGE: TextToImageDiffuser,
    DiffuserType.IMAGE_TO_IMAGE: ImageToImageDiffuser,
    DiffuserType.IMAGE_INPAINT: InpaintDiffuser,
    DiffuserType.IMAGE_INPAINT_LEGACY: InpaintLegacyDiffuser,
    DiffuserType.CONTROLNET: ControlNetDiffuser,
    DiffuserType.CONTROLNET_IMAGE: ControlNetImageDiffuser,
}

_NO_INPAINT = [d for d in DiffuserType if d is not DiffuserType.IMAGE_INPAINT]

PIPELINE_DIFFUSERS: dict[PipelineType, list[DiffuserType]] = {
    PipelineType.STABLE_DIFFUSION: list(DiffuserType),
    PipelineType.STABLE_DIFFUSION_XL: _NO_INPAINT,
    PipelineType.LATENT_CONSISTENCY: _NO_INPAINT,
    PipelineType.LATENT_CONSISTENCY_XL: _NO_INPAINT,
}


def get_diffuser(
    pipeline_type: Union[PipelineType, str],
    diffuser_type: Union[DiffuserType, str],
    engine: InferenceEngine,
    prompt_provider: PromptProvider,
    image_codec: ImageCodec,
) -> DiffuserBase:
    """Build the diffuser registered for ``(pipeline_type, diffuser_type)``."""
    pipeline_type = PipelineType(pipeline_type)
    diffuser_type = DiffuserType(diffuser_type)
    supported = PIPELINE_DIFFUSERS[pipeline_type]
    if diffuser_type not in supported:
        choices = ', '.join(d.value for d in supported)
        raise ValueError(
            f"{pipeline_type.value} has no {diffuser_type.value} diffuser; "
            f"choose one of: {choices}"
        )
    conditioning = CONDITIONING[pipeline_type]()
    return DIFFUSERS[diffuser_type](engine, prompt_provider, image_codec, conditioning)


# ═════════════════════════════════════════════════════════════════════
#  Exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
    'UNET_OUTPUT',
    'VAE_ENCODER_INPUT',
    'VAE_ENCODER_OUTPUT',
    'VAE_DECODER_INPUT',
    'VAE_DECODER_OUTPUT',
    'DiffusionResult',
    'resolve_seed',
    'Conditioning',
    'StableDiffusionConditioning',
    'StableDiffusionXLConditioning',
    'LatentConsistencyConditioning',
    'LatentConsistencyXLConditioning',
    'CONDITIONING',
    'DiffuserBase',
    'TextToImageDiffuser',
    'ImageToImageDiffuser',
    'InpaintDiffuser',
    'InpaintLegacyDiffuser',
    'ControlNetDiffuser',
    'ControlNetImageDiffuser',
    'DIFFUSERS',
    'PIPELINE_DIFFUSERS',
    'get_diffuser',
]
