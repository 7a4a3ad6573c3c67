"""
Shared fakes for the diffusekit test-suite.

``FakeEngine`` stands in for the ONNX graphs: every output is a cheap
deterministic function of its inputs, so runs are reproducible and the
recorded calls can be asserted on.
"""
from dataclasses import dataclass

import numpy as np
import pytest

from diffusekit.tensor import Tensor
from diffusekit.diffusion import (
    ImageCodec,
    InferenceEngine,
    PromptEmbeddings,
    PromptProvider,
    StableDiffusionService,
    stable_diffusion,
)


@dataclass
class EngineCall:
    model_id: str
    inputs: dict

    @property
    def component(self) -> str:
        return self.model_id.rsplit('/', 1)[-1]

    def shape(self, name):
        return self.inputs[name].shape


class FakeEngine(InferenceEngine):
    """Deterministic UNet / VAE stand-in that records every call."""

    def __init__(self, fail_component=None, drop_output=None, bad_shape=False):
        self.calls: list[EngineCall] = []
        self.fail_component = fail_component
        self.drop_output = drop_output
        self.bad_shape = bad_shape

    def calls_to(self, *components):
        return [c for c in self.calls if c.component in components]

    def run(self, model_id, inputs):
        call = EngineCall(model_id, dict(inputs))
        self.calls.append(call)
        if call.component == self.fail_component:
            raise RuntimeError("device lost")

        if call.component in ('unet', 'controlnet'):
            sample = inputs['sample'].numpy()[:, :4]
            embeds = inputs['encoder_hidden_states'].numpy()
            bias = embeds.mean(axis=(1, 2)).reshape(-1, 1, 1, 1)
            t = float(inputs['timestep'].item())
            out = 0.5 * sample + bias + 0.001 * t
            if self.bad_shape:
                out = out[:, :3]
            name = 'out_sample'
        elif call.component == 'vae_encoder':
            pixels = inputs['sample'].numpy()
            b, c, h, w = pixels.shape
            pooled = pixels.reshape(b, c, h // 8, 8, w // 8, 8).mean(axis=(3, 5))
            out = np.concatenate([pooled, pooled[:, :1]], axis=1)
            name = 'latent_sample'
        elif call.component == 'vae_decoder':
            latents = inputs['latent_sample'].numpy()
            out = np.tanh(np.repeat(np.repeat(latents[:, :3], 8, axis=2), 8, axis=3))
            name = 'sample'
        else:
            raise KeyError(model_id)

        if name == self.drop_output:
            return {}
        return {name: Tensor(out.astype(np.float32))}


class FakePromptProvider(PromptProvider):
    """Constant embeddings; the negative half differs from the positive one."""

    def __init__(self, sequence_length=77, embedding_dim=16):
        self.sequence_length = sequence_length
        self.embedding_dim = embedding_dim
        self.calls = []

    def encode(self, model_options, prompt_options, perform_guidance):
        self.calls.append(perform_guidance)
        shape = (1, self.sequence_length, self.embedding_dim)
        positive = np.full(shape, 0.5, dtype=np.float32)
        negative = np.full(shape, -0.25, dtype=np.float32)
        embeds = np.concatenate([negative, positive]) if perform_guidance else positive
        pooled = None
        if model_options.is_xl:
            pooled = np.full((embeds.shape[0], self.embedding_dim), 0.1, dtype=np.float32)
            pooled = Tensor(pooled)
        return PromptEmbeddings(Tensor(embeds), pooled)


class FakeCodec(ImageCodec):
    """Images are plain ``[1, 3, H, W]`` arrays, masks ``[H, W]`` arrays."""

    def encode_image(self, image, options):
        pixels = np.asarray(image, dtype=np.float32)
        return Tensor(pixels.reshape(1, 3, options.height, options.width))

    def rasterize_mask(self, mask, height, width):
        m = np.asarray(mask, dtype=np.float32)
        step_h, step_w = m.shape[0] // height, m.shape[1] // width
        return Tensor(m[::step_h, ::step_w][:height, :width][None, None])

    def decode_image(self, image):
        return np.round((image.numpy() + 1.0) * 127.5).astype(np.uint8)


def make_image(height, width):
    """Smooth deterministic test pattern in [-1, 1]."""
    y, x = np.mgrid[0:height, 0:width].astype(np.float32)
    channels = [np.sin(x / 7.0), np.cos(y / 5.0), np.sin((x + y) / 11.0)]
    return np.stack(channels)[None].astype(np.float32)


def make_mask(height, width, value):
    return np.full((height, width), value, dtype=np.float32)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def prompt_provider():
    return FakePromptProvider()


@pytest.fixture
def codec():
    return FakeCodec()


@pytest.fixture
def service(engine, prompt_provider, codec):
    return StableDiffusionService(engine, prompt_provider, codec)


@pytest.fixture
def sd_model():
    return stable_diffusion('sd15')
