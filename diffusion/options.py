# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Generation options — enums and dataclass configuration objects.

Every options class is a plain ``@dataclass`` whose fields document
themselves through ``metadata["help"]``.  They round-trip through
``to_dict`` / ``from_dict`` and print as YAML, so a generation can be
described in a config file::

    scheduler:
      scheduler_type: ddim
      inference_steps: 10
      guidance_scale: 1.0
      seed: 1

    options = SchedulerOptions.load_from_yaml("txt2img.yaml", key="scheduler")
"""
from __future__ import annotations

import enum
import yaml
from dataclasses import dataclass, field, fields, replace
from typing import Any, Optional

# Stable Diffusion VAEs downsample by 8 in each spatial dimension
LATENT_SCALE = 8


class SchedulerType(str, enum.Enum):
    LMS = 'lms'
    EULER = 'euler'
    EULER_ANCESTRAL = 'euler_ancestral'
    DDPM = 'ddpm'
    DDIM = 'ddim'
    KDPM2 = 'kdpm2'
    LCM = 'lcm'


class DiffuserType(str, enum.Enum):
    TEXT_TO_IMAGE = 'text_to_image'
    IMAGE_TO_IMAGE = 'image_to_image'
    IMAGE_INPAINT = 'image_inpaint'
    IMAGE_INPAINT_LEGACY = 'image_inpaint_legacy'
    CONTROLNET = 'controlnet'
    CONTROLNET_IMAGE = 'controlnet_image'


class PipelineType(str, enum.Enum):
    STABLE_DIFFUSION = 'stable_diffusion'
    STABLE_DIFFUSION_XL = 'stable_diffusion_xl'
    LATENT_CONSISTENCY = 'latent_consistency'
    LATENT_CONSISTENCY_XL = 'latent_consistency_xl'


class ModelType(str, enum.Enum):
    BASE = 'base'
    REFINER = 'refiner'


class BatchType(str, enum.Enum):
    SEED = 'seed'
    STEP = 'step'
    GUIDANCE = 'guidance'
    STRENGTH = 'strength'
    SCHEDULER = 'scheduler'


class BatchErrorPolicy(str, enum.Enum):
    ABORT = 'abort'
    CONTINUE = 'continue'


def _plain(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


@dataclass
class OptionsABC:
    """Shared dict / YAML plumbing for option dataclasses."""

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _plain(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]):
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown {cls.__name__} field(s): {unknown}")
        return cls(**data)

    @classmethod
    def load_from_yaml(cls, yaml_file: str, key: Optional[str] = None):
        """Load options from a YAML file, optionally from a nested *key*."""
        with open(yaml_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        if key is not None:
            data = data.get(key, {})
        return cls.from_dict(data)

    def __str__(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False, indent=2)


@dataclass
class SchedulerOptions(OptionsABC):
    r"""Arguments controlling one generation: size, seed, steps, guidance, scheduler."""

    width: int = field(
        default=512,
        metadata={"help": "Output image width in pixels (multiple of 8)."},
    )
    height: int = field(
        default=512,
        metadata={"help": "Output image height in pixels (multiple of 8)."},
    )
    seed: Optional[int] = field(
        default=0,
        metadata={"help": "Noise seed. 0 or None draws a fresh random seed per generation."},
    )
    inference_steps: int = field(
        default=30,
        metadata={"help": "Number of denoising steps."},
    )
    guidance_scale: float = field(
        default=7.5,
        metadata={"help": "Classifier-free guidance scale. Guidance runs only when > 1."},
    )
    strength: float = field(
        default=0.6,
        metadata={"help": "Fraction of the schedule walked for image-to-image variants."},
    )
    scheduler_type: SchedulerType = field(
        default=SchedulerType.EULER_ANCESTRAL,
        metadata={"help": "Sampling algorithm."},
    )
    initial_noise_level: float = field(
        default=1.0,
        metadata={"help": "Multiplier applied to the scheduler's initial noise sigma."},
    )

    # Noise-schedule configuration
    train_timesteps: int = field(
        default=1000,
        metadata={"help": "Number of discrete timesteps the model was trained with."},
    )
    beta_start: float = field(
        default=0.00085,
        metadata={"help": "First beta of the training schedule."},
    )
    beta_end: float = field(
        default=0.012,
        metadata={"help": "Last beta of the training schedule."},
    )
    beta_schedule: str = field(
        default='scaled_linear',
        metadata={"help": "One of 'linear', 'scaled_linear', 'squaredcos_cap_v2'."},
    )
    trained_betas: Optional[list[float]] = field(
        default=None,
        metadata={"help": "Explicit beta table; overrides beta_schedule when set."},
    )
    timestep_spacing: str = field(
        default='linspace',
        metadata={"help": "One of 'linspace', 'leading', 'trailing'."},
    )
    steps_offset: int = field(
        default=0,
        metadata={"help": "Offset added to 'leading' timesteps."},
    )
    prediction_type: str = field(
        default='epsilon',
        metadata={"help": "Model output type: 'epsilon', 'v_prediction' or 'sample'."},
    )
    variance_type: str = field(
        default='fixed_small',
        metadata={"help": "DDPM posterior variance: 'fixed_small' or 'fixed_large'."},
    )
    clip_sample: bool = field(
        default=False,
        metadata={"help": "Clip the predicted original sample (DDPM/DDIM/LCM)."},
    )
    clip_sample_range: float = field(
        default=1.0,
        metadata={"help": "Clipping range when clip_sample is set."},
    )
    use_karras_sigmas: bool = field(
        default=False,
        metadata={"help": "Use the Karras sigma ramp for sigma-based schedulers."},
    )
    eta: float = field(
        default=0.0,
        metadata={"help": "DDIM stochasticity; 0 is the deterministic path."},
    )
    original_inference_steps: int = field(
        default=50,
        metadata={"help": "LCM distillation step count used to build its timestep grid."},
    )

    # Variant extras
    conditioning_scale: float = field(
        default=0.7,
        metadata={"help": "ControlNet residual scale."},
    )
    aesthetic_score: float = field(
        default=6.0,
        metadata={"help": "SDXL refiner aesthetic conditioning."},
    )

    def __post_init__(self):
        self.scheduler_type = SchedulerType(self.scheduler_type)
        if self.seed is not None and self.seed < 0:
            raise ValueError(
                f"seed must be >= 0 (0 draws a random seed), got {self.seed}"
            )
        for name in ('width', 'height'):
            value = getattr(self, name)
            if value <= 0 or value % LATENT_SCALE:
                raise ValueError(f"{name} must be a positive multiple of {LATENT_SCALE}, got {value}")
        if self.inference_steps < 1:
            raise ValueError(f"inference_steps must be >= 1, got {self.inference_steps}")
        if not 0.0 <= self.strength <= 1.0:
            raise ValueError(f"strength must be within [0, 1], got {self.strength}")
        if self.guidance_scale < 0.0:
            raise ValueError(f"guidance_scale must be >= 0, got {self.guidance_scale}")
        if self.train_timesteps < self.inference_steps:
            raise ValueError(
                f"inference_steps ({self.inference_steps}) cannot exceed "
                f"train_timesteps ({self.train_timesteps})"
            )

    @property
    def latent_width(self) -> int:
        return self.width // LATENT_SCALE

    @property
    def latent_height(self) -> int:
        return self.height // LATENT_SCALE

    def latent_dimensions(self, batch: int = 1, channels: int = 4) -> tuple[int, int, int, int]:
        return (batch, channels, self.latent_height, self.latent_width)

    def with_seed(self, seed: int) -> 'SchedulerOptions':
        return replace(self, seed=seed)


@dataclass
class PromptOptions(OptionsABC):
    r"""Prompt text plus the optional input images consumed by each variant."""

    prompt: str = field(
        default='',
        metadata={"help": "Positive prompt text."},
    )
    negative_prompt: str = field(
        default='',
        metadata={"help": "Negative prompt text (unconditional branch of guidance)."},
    )
    diffuser_type: DiffuserType = field(
        default=DiffuserType.TEXT_TO_IMAGE,
        metadata={"help": "Which diffuser variant runs this prompt."},
    )
    input_image: Any = field(
        default=None,
        metadata={"help": "Source image for image-to-image / inpaint variants (codec-defined)."},
    )
    input_image_mask: Any = field(
        default=None,
        metadata={"help": "Inpaint mask image; opaque pixels are regenerated (codec-defined)."},
    )
    input_control_image: Any = field(
        default=None,
        metadata={"help": "Control signal image for ControlNet variants (codec-defined)."},
    )

    def __post_init__(self):
        self.diffuser_type = DiffuserType(self.diffuser_type)

    def to_dict(self) -> dict[str, Any]:
        # Images are opaque codec objects and are not serialised.
        return {
            'prompt': self.prompt,
            'negative_prompt': self.negative_prompt,
            'diffuser_type': self.diffuser_type.value,
        }


@dataclass
class BatchOptions(OptionsABC):
    r"""Range-style batch description: one swept parameter, from/to/increment."""

    batch_type: BatchType = field(
        default=BatchType.SEED,
        metadata={"help": "Parameter swept by the batch."},
    )
    value_from: float = field(
        default=0.0,
        metadata={"help": "First value of the sweep (inclusive)."},
    )
    value_to: float = field(
        default=0.0,
        metadata={"help": "Last value of the sweep (inclusive)."},
    )
    increment: float = field(
        default=1.0,
        metadata={"help": "Step between consecutive values."},
    )
    batch_count: int = field(
        default=1,
        metadata={"help": "Number of random seeds for a seed batch."},
    )

    def __post_init__(self):
        self.batch_type = BatchType(self.batch_type)
        if self.batch_type is not BatchType.SEED and self.batch_type is not BatchType.SCHEDULER:
            if self.increment <= 0:
                raise ValueError(f"increment must be > 0, got {self.increment}")
            if self.value_to < self.value_from:
                raise ValueError("value_to must be >= value_from")
        if self.batch_count < 1:
            raise ValueError(f"batch_count must be >= 1, got {self.batch_count}")


__all__ = [
    'LATENT_SCALE',
    'SchedulerType',
    'DiffuserType',
    'PipelineType',
    'ModelType',
    'BatchType',
    'BatchErrorPolicy',
    'OptionsABC',
    'SchedulerOptions',
    'PromptOptions',
    'BatchOptions',
]
