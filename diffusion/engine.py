# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""External collaborators consumed by the orchestrators.

- ``InferenceEngine``  — runs a named model on named tensors.
- ``PromptProvider``   — turns prompt text into embedding tensors.
- ``ImageCodec``       — pixel-space conversion and mask rasterisation.

Implementations live outside diffusekit (ONNX Runtime sessions, a CLIP
tokenizer, PIL).  An engine may be shared by concurrent generations;
schedulers and sessions never are.
"""
from __future__ import annotations

import abc
import numpy as np
from dataclasses import dataclass
from typing import Any, Mapping, Optional, TYPE_CHECKING

from diffusekit.tensor import Tensor

if TYPE_CHECKING:
    from .models import ModelOptions
    from .options import PromptOptions, SchedulerOptions


# ═════════════════════════════════════════════════════════════════════
#  Inference engine
# ═════════════════════════════════════════════════════════════════════

class InferenceEngine(abc.ABC):
    """Executes one model graph: ``run(model_id, inputs) -> outputs``.

    Only the blocking form is consumed; ``StableDiffusionService.generate_async``
    runs the whole denoising loop on a worker thread.
    """

    @abc.abstractmethod
    def run(self, model_id: str, inputs: Mapping[str, Tensor]) -> Mapping[str, Tensor]:
        """Run *model_id* synchronously.

        Args:
            model_id: Engine id from ``ModelOptions.model_id``.
            inputs:   Named input tensors.

        Returns:
            Named output tensors.
        """


# ═════════════════════════════════════════════════════════════════════
#  Prompt embeddings
# ═════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PromptEmbeddings:
    """Text-encoder output for one generation.

    When guidance is active both tensors hold the negative prompt in the
    first half of the batch and the positive prompt in the second.
    """

    prompt_embeds: Tensor
    pooled_prompt_embeds: Optional[Tensor] = None


class PromptProvider(abc.ABC):

    @abc.abstractmethod
    def encode(self, model_options: 'ModelOptions', prompt_options: 'PromptOptions',
               perform_guidance: bool) -> PromptEmbeddings:
        """Encode the prompt (and, when guiding, the negative prompt)."""


# ═════════════════════════════════════════════════════════════════════
#  Image codec
# ═════════════════════════════════════════════════════════════════════

class ImageCodec(abc.ABC):
    """Converts between caller images and model-space tensors."""

    @abc.abstractmethod
    def encode_image(self, image: Any, options: 'SchedulerOptions') -> Tensor:
        """Image → ``[1, 3, H, W]`` pixel tensor in ``[-1, 1]`` for the VAE encoder."""

    @abc.abstractmethod
    def rasterize_mask(self, mask: Any, height: int, width: int) -> Tensor:
        """Mask image → ``[1, 1, height, width]`` tensor, 1 where pixels are regenerated.

        Derived from the alpha channel and resized nearest-neighbour.
        """

    @abc.abstractmethod
    def decode_image(self, image: Tensor) -> Any:
        """``[B, 3, H, W]`` VAE output in ``[-1, 1]`` → caller image."""

    def encode_masked_image(self, image: Any, mask: Any,
                            options: 'SchedulerOptions') -> Tensor:
        """Pixel tensor with the regenerated region blanked out."""
        pixels = self.encode_image(image, options)
        keep = 1.0 - self.rasterize_mask(mask, options.height, options.width).numpy()
        return Tensor._wrap((pixels.numpy() * keep).astype(np.float32))

    def encode_control_image(self, image: Any, options: 'SchedulerOptions') -> Tensor:
        """Control signal → ``[1, 3, H, W]`` tensor; defaults to ``encode_image``."""
        return self.encode_image(image, options)


__all__ = [
    'InferenceEngine',
    'PromptEmbeddings',
    'PromptProvider',
    'ImageCodec',
]
