# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Model-set descriptors.

A model set is the group of ONNX-style graphs one pipeline family runs:
the denoising UNet, the VAE encoder/decoder pair and, for control
variants, a ControlNet.  ``ModelOptions`` names them and carries the
constants the orchestrators need (latent scale factor, channel count).
It never loads weights; execution belongs to the ``InferenceEngine``.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional

from .options import DiffuserType, ModelType, OptionsABC, PipelineType


class ModelComponent(str, enum.Enum):
    UNET = 'unet'
    VAE_ENCODER = 'vae_encoder'
    VAE_DECODER = 'vae_decoder'
    CONTROLNET = 'controlnet'


# VAE latent scaling constants
SD_SCALE_FACTOR = 0.18215
SDXL_SCALE_FACTOR = 0.13025

_ALL_DIFFUSERS = [d for d in DiffuserType]


@dataclass
class ModelOptions(OptionsABC):
    r"""Identity and constants of one installed model set."""

    name: str = field(
        default='stable-diffusion-v1-5',
        metadata={"help": "Model set name; prefixes every component id."},
    )
    pipeline_type: PipelineType = field(
        default=PipelineType.STABLE_DIFFUSION,
        metadata={"help": "Pipeline family the model set belongs to."},
    )
    model_type: ModelType = field(
        default=ModelType.BASE,
        metadata={"help": "'base' or 'refiner' (SDXL refiners use aesthetic conditioning)."},
    )
    scale_factor: float = field(
        default=SD_SCALE_FACTOR,
        metadata={"help": "VAE latent scale factor."},
    )
    sample_size: int = field(
        default=512,
        metadata={"help": "Native image size the model was trained at."},
    )
    latent_channels: int = field(
        default=4,
        metadata={"help": "Channels of the VAE latent space."},
    )
    diffusers: list[DiffuserType] = field(
        default_factory=lambda: list(_ALL_DIFFUSERS),
        metadata={"help": "Diffuser variants this model set supports."},
    )
    component_ids: dict[str, str] = field(
        default_factory=dict,
        metadata={"help": "Explicit engine model ids per component; defaults to '<name>/<component>'."},
    )

    def __post_init__(self):
        self.pipeline_type = PipelineType(self.pipeline_type)
        self.model_type = ModelType(self.model_type)
        self.diffusers = [DiffuserType(d) for d in self.diffusers]
        if self.scale_factor <= 0:
            raise ValueError(f"scale_factor must be > 0, got {self.scale_factor}")

    @property
    def is_refiner(self) -> bool:
        return self.model_type is ModelType.REFINER

    @property
    def is_xl(self) -> bool:
        return self.pipeline_type in (PipelineType.STABLE_DIFFUSION_XL,
                                      PipelineType.LATENT_CONSISTENCY_XL)

    def supports(self, diffuser_type: DiffuserType) -> bool:
        return DiffuserType(diffuser_type) in self.diffusers

    def model_id(self, component: ModelComponent) -> str:
        """Engine id of *component*, e.g. ``'stable-diffusion-v1-5/unet'``."""
        component = ModelComponent(component)
        return self.component_ids.get(component.value, f"{self.name}/{component.value}")

    def to_dict(self):
        data = super().to_dict()
        data['component_ids'] = dict(self.component_ids)
        return data


# ═════════════════════════════════════════════════════════════════════
#  Built-in templates
# ═════════════════════════════════════════════════════════════════════

def stable_diffusion(name: str = 'stable-diffusion-v1-5', **kwargs) -> ModelOptions:
    return ModelOptions(name=name, pipeline_type=PipelineType.STABLE_DIFFUSION,
                        scale_factor=SD_SCALE_FACTOR, sample_size=512, **kwargs)


def stable_diffusion_xl(name: str = 'stable-diffusion-xl-base-1.0',
                        model_type: ModelType = ModelType.BASE, **kwargs) -> ModelOptions:
    return ModelOptions(name=name, pipeline_type=PipelineType.STABLE_DIFFUSION_XL,
                        model_type=model_type, scale_factor=SDXL_SCALE_FACTOR,
                        sample_size=1024, **kwargs)


def latent_consistency(name: str = 'lcm-dreamshaper-v7', **kwargs) -> ModelOptions:
    """LCM model sets ship without inpaint and control graphs."""
    kwargs.setdefault('diffusers', [DiffuserType.TEXT_TO_IMAGE, DiffuserType.IMAGE_TO_IMAGE,
                                    DiffuserType.IMAGE_INPAINT_LEGACY])
    return ModelOptions(name=name, pipeline_type=PipelineType.LATENT_CONSISTENCY,
                        scale_factor=SD_SCALE_FACTOR, sample_size=512, **kwargs)


def latent_consistency_xl(name: str = 'lcm-sdxl', **kwargs) -> ModelOptions:
    kwargs.setdefault('diffusers', [DiffuserType.TEXT_TO_IMAGE, DiffuserType.IMAGE_TO_IMAGE,
                                    DiffuserType.IMAGE_INPAINT_LEGACY])
    return ModelOptions(name=name, pipeline_type=PipelineType.LATENT_CONSISTENCY_XL,
                        scale_factor=SDXL_SCALE_FACTOR, sample_size=1024, **kwargs)


TEMPLATES = {
    PipelineType.STABLE_DIFFUSION: stable_diffusion,
    PipelineType.STABLE_DIFFUSION_XL: stable_diffusion_xl,
    PipelineType.LATENT_CONSISTENCY: latent_consistency,
    PipelineType.LATENT_CONSISTENCY_XL: latent_consistency_xl,
}


def from_template(pipeline_type: PipelineType, name: Optional[str] = None, **kwargs) -> ModelOptions:
    factory = TEMPLATES[PipelineType(pipeline_type)]
    if name is not None:
        kwargs['name'] = name
    return factory(**kwargs)


__all__ = [
    'ModelComponent',
    'SD_SCALE_FACTOR',
    'SDXL_SCALE_FACTOR',
    'ModelOptions',
    'stable_diffusion',
    'stable_diffusion_xl',
    'latent_consistency',
    'latent_consistency_xl',
    'TEMPLATES',
    'from_template',
]
